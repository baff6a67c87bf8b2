"""Gateway and store notifications, normalised and reconciled."""

from coursegate.webhooks.events import EventKind, GatewayEvent
from coursegate.webhooks.reconciler import ReconcileOutcome, WebhookReconciler

__all__ = ["EventKind", "GatewayEvent", "ReconcileOutcome", "WebhookReconciler"]
