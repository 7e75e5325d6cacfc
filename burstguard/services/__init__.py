"""Business logic services package."""

from burstguard.services.fingerprint import (
    Fingerprinter,
    build_canonicalizer,
)
from burstguard.services.ledger import (
    Ledger,
    InMemoryLedger,
)
from burstguard.services.redis_ledger import RedisLedger
from burstguard.services.cache import (
    DecisionCache,
    CachedLedger,
)
from burstguard.services.notifier import (
    EscalationNotifier,
    DeliveryChannel,
    LoggingChannel,
    WebhookChannel,
)
from burstguard.services.engine import (
    DecisionEngine,
    create_engine,
)

__all__ = [
    'Fingerprinter',
    'build_canonicalizer',
    'Ledger',
    'InMemoryLedger',
    'RedisLedger',
    'DecisionCache',
    'CachedLedger',
    'EscalationNotifier',
    'DeliveryChannel',
    'LoggingChannel',
    'WebhookChannel',
    'DecisionEngine',
    'create_engine',
]
