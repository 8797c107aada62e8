import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from relay.core.config import STORE_RETRY_ATTEMPTS, STORE_RETRY_BASE_DELAY
from relay.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: Exception) -> bool:
    """Connection-level failures that a fresh session may not hit again."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


async def with_store_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    attempts: int = STORE_RETRY_ATTEMPTS,
    base_delay: float = STORE_RETRY_BASE_DELAY,
) -> T:
    """
    Runs `operation` (which must open its own session) and retries it with
    exponential backoff on transient store failures.
    Domain errors and anything non-transient propagate on the first attempt.
    """
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as e:
            error = e
        except (DBAPIError, InterfaceError) as e:
            if not is_transient(e):
                raise
            error = TransientStoreError(details={"operation": label})
            error.__cause__ = e

        if attempt == attempts:
            logger.error(f"[Store] {label} failed after {attempts} attempts: {error.__cause__ or error}")
            raise error

        delay = base_delay * (2 ** (attempt - 1))
        logger.warning(f"[Store] {label} failed (attempt {attempt}/{attempts}), retrying in {delay:.2f}s")
        await asyncio.sleep(delay)

    raise TransientStoreError(details={"operation": label})
