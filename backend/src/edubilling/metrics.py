"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Checkout metrics
checkouts_created_total = Counter(
    "checkouts_created_total",
    "Total checkouts started",
    labelnames=["flow", "mode"],  # flow: session, intent
)

guardrail_rejections_total = Counter(
    "guardrail_rejections_total",
    "Purchases rejected by a guardrail",
    labelnames=["code"],
)

upgrades_created_total = Counter(
    "upgrades_created_total",
    "Total plan upgrades and cycle conversions started",
    labelnames=["conversion_type", "charged"],
)

amount_mismatch_total = Counter(
    "amount_mismatch_total",
    "Stripe amounts that disagreed with the computed amount",
    labelnames=["operation"],
)

orphaned_stripe_objects_total = Counter(
    "orphaned_stripe_objects_total",
    "Stripe objects left behind after a local failure",
    labelnames=["object_type", "cancelled"],
)

# Payment metrics
payments_settled_total = Counter(
    "payments_settled_total",
    "Ledger rows moved to a terminal status",
    labelnames=["status", "mode"],
)

payment_amount_total = Counter(
    "payment_amount_total",
    "Total settled payment amount in cents",
    labelnames=["currency"],
)

# Webhook metrics
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Stripe webhook events received",
    labelnames=["event_type", "outcome"],  # outcome: handled, ignored, duplicate, error
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Refund requests by status",
    labelnames=["status"],
)
