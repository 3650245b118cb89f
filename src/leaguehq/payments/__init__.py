"""Payment-state reconciliation and eligibility gating.

Session issuance, payout and subscription state machines, webhook/poll
reconciliation and the pure eligibility gate, plus the REST surface.
"""

from leaguehq.payments.services import PaymentServices, build_services
from leaguehq.payments.webhooks import handle_webhook

__all__ = [
    "PaymentServices",
    "build_services",
    "handle_webhook",
]
