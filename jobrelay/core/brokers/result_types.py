"""Typed error types for job store and listener operations.

Result propagation policy
-------------------------
Two error systems coexist:

1. Runtime job errors (``jobrelay.core.exceptions``) -- raised to callers of
   ``submit``/``observe`` and mapped to HTTP status codes. They carry a
   public message that is safe to show to the job's owner.

2. ``BrokerResult[T]`` (this module) -- infrastructure operation outcomes.
   Returned by ``PostgresJobStore`` and ``PostgresListener`` methods. Carries
   ``BrokerOperationError`` with a ``retryable`` flag and ``BrokerErrorCode``.

Where Result stops and exceptions take over:

* **Store / listener** -- return ``BrokerResult``. Never raise for
  operational failures (only for ``asyncio.CancelledError``).

* **Worker and reaper** -- handle ``BrokerResult`` with real decisions:
  back off on retryable errors, count permanent failures, leave a job
  ``running`` for the watchdog when its terminal write cannot land.

* **Service boundaries** (submission service, channel, consumer) -- convert
  ``Err`` into ``SubmissionFailed`` / ``ChannelUnavailable`` so HTTP
  handlers map them to 503 without leaking driver messages.

* **Process boundaries** (CLI startup) -- convert ``Err`` to an exception and
  let the process exit.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from result import Result


class BrokerErrorCode(str, Enum):
    """Categorized store/listener failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    JOB_CREATE_FAILED = 'JOB_CREATE_FAILED'
    JOB_CLAIM_FAILED = 'JOB_CLAIM_FAILED'
    PROGRESS_WRITE_FAILED = 'PROGRESS_WRITE_FAILED'
    FINALIZE_FAILED = 'FINALIZE_FAILED'
    JOB_QUERY_FAILED = 'JOB_QUERY_FAILED'
    HEARTBEAT_FAILED = 'HEARTBEAT_FAILED'
    RECOVERY_FAILED = 'RECOVERY_FAILED'
    CLEANUP_FAILED = 'CLEANUP_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'
    LISTENER_START_FAILED = 'LISTENER_START_FAILED'
    LISTENER_SUBSCRIBE_FAILED = 'LISTENER_SUBSCRIBE_FAILED'


@dataclass(slots=True, frozen=True)
class BrokerOperationError:
    """Error payload carried inside Err(...) for store/listener operations.

    Fields:
        code: which operation category failed
        message: human-readable description (operator facing, may hold driver text)
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: BrokerErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type BrokerResult[T] = Result[T, BrokerOperationError]
