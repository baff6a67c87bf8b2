"""Tests for normalising Razorpay and Play Store notifications."""

from datetime import datetime, timezone

import pytest

from coursegate.platform.errors import ValidationError
from coursegate.webhooks import EventKind
from coursegate.webhooks.adapters import decode_pubsub_envelope, from_play_rtdn, from_razorpay
from coursegate.tests.webhooks.payloads import play_notification, pubsub_envelope, razorpay_body

NOW_MS = int(datetime.now(timezone.utc).timestamp() * 1000)
DAY_MS = 24 * 60 * 60 * 1000


class TestFromRazorpay:

    def test_invoice_paid(self):
        body = razorpay_body(
            "invoice.paid",
            invoice={
                "id": "inv_1",
                "subscription_id": "sub_1",
                "payment_id": "pay_1",
                "amount_paid": 49900,
                "currency": "INR",
                "billing_start": 1767225600,
                "billing_end": 1769904000,
            },
            payment={"id": "pay_1", "method": "upi", "amount": 49900, "currency": "INR"},
        )

        event = from_razorpay(body, event_id="evt_1")

        assert event.kind == EventKind.CHARGED
        assert event.gateway_subscription_id == "sub_1"
        assert (event.invoice_id, event.payment_id) == ("inv_1", "pay_1")
        assert event.amount == 49900
        assert event.payment_method == "upi"
        assert event.period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert event.reason == "webhook:invoice.paid"

    def test_subscription_charged_reads_subscription_periods(self):
        body = razorpay_body(
            "subscription.charged",
            subscription={"id": "sub_1", "current_start": 1767225600, "current_end": 1769904000, "charge_at": 1769904000},
            payment={"id": "pay_2", "amount": 49900, "currency": "INR"},
        )

        event = from_razorpay(body)

        assert event.kind == EventKind.CHARGED
        assert event.period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert event.charge_at == event.period_end

    def test_payment_failed_carries_error(self):
        body = razorpay_body(
            "payment.failed",
            payment={"id": "pay_3", "order_id": "order_9", "error_code": "BAD_REQUEST_ERROR",
                     "error_description": "Card declined"},
        )

        event = from_razorpay(body)

        assert event.kind == EventKind.PAYMENT_ERROR
        assert event.order_id == "order_9"
        assert event.error == {"error_code": "BAD_REQUEST_ERROR", "error_description": "Card declined"}

    def test_unhandled_event_is_none(self):
        assert from_razorpay(razorpay_body("refund.created")) is None


class TestPubSub:

    def test_decode_envelope(self):
        data, message_id = decode_pubsub_envelope(pubsub_envelope({"a": 1}, message_id="m-7"))
        assert data == {"a": 1}
        assert message_id == "m-7"

    @pytest.mark.parametrize("envelope", [
        {},
        {"message": {}},
        {"message": {"data": "%%%not-base64%%%"}},
        {"message": {"data": "WzEsMl0="}},  # base64 of a JSON list
    ])
    def test_malformed_envelope(self, envelope):
        with pytest.raises(ValidationError):
            decode_pubsub_envelope(envelope)


class TestFromPlayRtdn:

    def test_cancel_with_future_expiry_ends_at_period_end(self):
        data = play_notification(3, "tok-1", expiry_ms=NOW_MS + 10 * DAY_MS, event_ms=NOW_MS)

        event = from_play_rtdn(data, message_id="m-1")

        assert event.kind == EventKind.CANCELLED
        assert event.at_period_end is True
        assert event.gateway_subscription_id == "tok-1"
        assert event.event_type == "play.3"
        assert event.event_id == "m-1"

    def test_revocation_is_immediate(self):
        data = play_notification(12, "tok-1", expiry_ms=NOW_MS + 10 * DAY_MS, event_ms=NOW_MS)
        assert from_play_rtdn(data).at_period_end is False

    def test_renewal_is_a_charge(self):
        data = play_notification(2, "tok-1", expiry_ms=NOW_MS + 30 * DAY_MS)
        event = from_play_rtdn(data)
        assert event.kind == EventKind.CHARGED
        assert event.period_end is not None

    def test_test_notification_ignored(self):
        assert from_play_rtdn({"version": "1.0", "testNotification": {"version": "1.0"}}) is None

    def test_unknown_notification_type_ignored(self):
        assert from_play_rtdn(play_notification(20, "tok-1")) is None

    def test_missing_purchase_token(self):
        data = play_notification(2, "")
        with pytest.raises(ValidationError):
            from_play_rtdn(data)
