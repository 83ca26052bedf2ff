"""
Retry Executors

Bounded, classified retry around Square calls and database calls. A classifier
turns an exception into ``Retryable`` (with the delay to wait) or ``Fatal``;
``with_retry`` drives tenacity with that verdict.
"""
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union
import asyncio
import inspect
import logging
import random
import threading

from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import AsyncRetrying, stop_after_attempt

from app.config import settings

logger = logging.getLogger(__name__)


class SquareAPIError(Exception):
    """Non-2xx response from the Square API"""

    def __init__(self, status_code: int, message: str, errors: Optional[list] = None):
        super().__init__(f"Square API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.errors = errors or []


class ExhaustedRetries(Exception):
    """Every attempt failed with a retryable error"""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


# Tagged outcomes

@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Retryable:
    error: BaseException
    delay: float = 0.0


@dataclass(frozen=True)
class Fatal:
    error: BaseException


@dataclass(frozen=True)
class ItemError:
    context: Dict[str, Any]
    error: BaseException = field(compare=False)


Verdict = Union[Retryable, Fatal]
Classifier = Callable[[BaseException, int], Verdict]


class RetryStats:
    """Process-wide retry counters, safe to bump from worker threads"""

    def __init__(self):
        self._lock = threading.Lock()
        self.retries = 0
        self.exhausted = 0

    def record_retry(self):
        with self._lock:
            self.retries += 1

    def record_exhausted(self):
        with self._lock:
            self.exhausted += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {"retries": self.retries, "exhausted": self.exhausted}

    def reset(self):
        with self._lock:
            self.retries = 0
            self.exhausted = 0


retry_stats = RetryStats()

# Thread pool for blocking database calls; None means the event loop default
storage_executor: Optional[Executor] = None


def _status_code(error: BaseException) -> Optional[int]:
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        response = getattr(error, "response", None)
        status_code = getattr(response, "status_code", None)
    return status_code


def network_classifier(base_delay_ms: Optional[int] = None) -> Classifier:
    """
    Classify Square API failures.

    429 backs off exponentially with jitter, 5xx backs off linearly,
    everything else is fatal.
    """
    base = (base_delay_ms if base_delay_ms is not None else settings.SQUARE_RETRY_BASE_DELAY_MS) / 1000

    def classify(error: BaseException, attempt: int) -> Verdict:
        status_code = _status_code(error)
        if status_code == 429:
            return Retryable(error, base * (2 ** attempt) + random.uniform(0, base))
        if status_code is not None and 500 <= status_code < 600:
            return Retryable(error, base * attempt)
        return Fatal(error)

    return classify


_CONNECTION_MARKERS = (
    "connection refused",
    "could not connect",
    "connection reset",
    "server closed the connection",
    "terminating connection",
    "connection terminated",
    "connection is closed",
    "can't reach database",
    "unreachable",
)


def is_connection_error(error: BaseException) -> bool:
    if isinstance(error, (ConnectionRefusedError, ConnectionResetError)):
        return True
    if isinstance(error, DBAPIError):
        if error.connection_invalidated:
            return True
        if not isinstance(error, OperationalError):
            return False
    message = str(error).lower()
    return any(marker in message for marker in _CONNECTION_MARKERS)


def storage_classifier(base_delay_ms: Optional[int] = None) -> Classifier:
    """Classify database failures: lost connections retry, anything else is fatal"""
    base = (base_delay_ms if base_delay_ms is not None else settings.STORAGE_RETRY_BASE_DELAY_MS) / 1000

    def classify(error: BaseException, attempt: int) -> Verdict:
        if is_connection_error(error):
            return Retryable(error, base * (2 ** (attempt - 1)))
        return Fatal(error)

    return classify


async def with_retry(
    operation: Callable[[], Union[Any, Awaitable[Any]]],
    classifier: Classifier,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
    in_thread: bool = False,
) -> Any:
    """
    Run an operation with classified retry.

    Args:
        operation: Zero-argument callable, sync or async
        classifier: Maps (error, attempt number) to Retryable or Fatal
        max_attempts: Total attempts including the first one
        sleep: Awaitable sleep used between attempts
        label: Name used in log lines
        in_thread: Run a blocking operation on storage_executor instead of the event loop

    Returns:
        The operation's result

    Raises:
        ExhaustedRetries: when every attempt failed with a retryable error
        The original exception, unchanged, when it is classified as fatal
    """
    max_attempts = max_attempts or settings.SQUARE_MAX_RETRIES
    verdicts: Dict[int, Verdict] = {}

    async def call():
        if in_thread:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(storage_executor, operation)
        else:
            result = operation()
        if inspect.isawaitable(result):
            result = await result
        return result

    def should_retry(retry_state) -> bool:
        outcome = retry_state.outcome
        if not outcome.failed:
            return False
        verdict = classifier(outcome.exception(), retry_state.attempt_number)
        verdicts[retry_state.attempt_number] = verdict
        return isinstance(verdict, Retryable)

    def wait(retry_state) -> float:
        verdict = verdicts.get(retry_state.attempt_number)
        return verdict.delay if isinstance(verdict, Retryable) else 0.0

    def before_sleep(retry_state):
        retry_stats.record_retry()
        logger.warning(
            "%s failed (attempt %d/%d), retrying in %.2fs: %s",
            label,
            retry_state.attempt_number,
            max_attempts,
            wait(retry_state),
            retry_state.outcome.exception(),
        )

    def exhausted(retry_state):
        retry_stats.record_exhausted()
        last_error = retry_state.outcome.exception()
        logger.error("%s exhausted %d attempts: %s", label, retry_state.attempt_number, last_error)
        raise ExhaustedRetries(last_error, retry_state.attempt_number) from last_error

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        retry=should_retry,
        wait=wait,
        before_sleep=before_sleep,
        retry_error_callback=exhausted,
        sleep=sleep,
    )
    return await retrying(call)


async def with_network_retry(operation, max_attempts: Optional[int] = None, base_delay_ms: Optional[int] = None,
                             sleep=asyncio.sleep, label: str = "Square request") -> Any:
    return await with_retry(operation, network_classifier(base_delay_ms), max_attempts, sleep, label)


async def with_storage_retry(operation, max_attempts: Optional[int] = None, base_delay_ms: Optional[int] = None,
                             sleep=asyncio.sleep, label: str = "database call") -> Any:
    return await with_retry(operation, storage_classifier(base_delay_ms), max_attempts, sleep, label, in_thread=True)
