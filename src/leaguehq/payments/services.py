"""Wiring of the payment core around one store, processor and lock registry."""

from dataclasses import dataclass

from leaguehq.config.settings import AppConfig, get_config
from leaguehq.payments.base import PaymentProcessor, PaymentStore
from leaguehq.payments.competitions import CompetitionService
from leaguehq.payments.locks import SubjectLocks
from leaguehq.payments.payouts import PayoutAccountStateMachine
from leaguehq.payments.reconciliation import ReconciliationService
from leaguehq.payments.sessions import Clock, SessionBroker, utcnow
from leaguehq.payments.subscriptions import SubscriptionStateMachine


@dataclass
class PaymentServices:
    store: PaymentStore
    processor: PaymentProcessor
    broker: SessionBroker
    payouts: PayoutAccountStateMachine
    subscriptions: SubscriptionStateMachine
    reconciliation: ReconciliationService
    competitions: CompetitionService
    config: AppConfig


def build_services(
    store: PaymentStore,
    processor: PaymentProcessor,
    config: AppConfig | None = None,
    clock: Clock = utcnow,
) -> PaymentServices:
    """Assemble the core. All components share one SubjectLocks registry."""
    config = config or get_config()
    locks = SubjectLocks()
    broker = SessionBroker(store, locks, clock)
    payouts = PayoutAccountStateMachine(store, broker, processor, locks, config, clock)
    subscriptions = SubscriptionStateMachine(store, broker, locks, config, clock)
    return PaymentServices(
        store=store,
        processor=processor,
        broker=broker,
        payouts=payouts,
        subscriptions=subscriptions,
        reconciliation=ReconciliationService(store, processor, payouts, subscriptions, locks),
        competitions=CompetitionService(store, broker, processor, locks, config, clock),
        config=config,
    )
