from jobrelay.core.brokers.postgres import PostgresJobStore
from jobrelay.core.brokers.listener import (
    DISPATCH_CHANNEL,
    PROGRESS_CHANNEL,
    STATUS_CHANNEL,
    PostgresListener,
)
from jobrelay.core.brokers.result_types import (
    BrokerErrorCode,
    BrokerOperationError,
    BrokerResult,
)

__all__ = [
    'PostgresJobStore',
    'PostgresListener',
    'DISPATCH_CHANNEL',
    'PROGRESS_CHANNEL',
    'STATUS_CHANNEL',
    'BrokerErrorCode',
    'BrokerOperationError',
    'BrokerResult',
]
