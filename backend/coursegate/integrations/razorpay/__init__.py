from coursegate.integrations.razorpay.client import (
    RazorpayClient,
    PaymentGatewayError,
    GatewayPlan,
    GatewayOrder,
    GatewaySubscription,
    GatewayAddon,
    verify_webhook_signature,
    verify_payment_signature,
)

__all__ = [
    "RazorpayClient",
    "PaymentGatewayError",
    "GatewayPlan",
    "GatewayOrder",
    "GatewaySubscription",
    "GatewayAddon",
    "verify_webhook_signature",
    "verify_payment_signature",
]
