import logging

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from reconciler.errors import TransientError

logger = logging.getLogger(__name__)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (TransientError, OperationalError, InterfaceError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, httpx.TransportError)


def db_retrying(attempts: int = 3) -> AsyncRetrying:
    """Bounded retry for one unit of work; the last error is re-raised."""
    return AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def run_with_db_retry(unit_of_work, attempts: int = 3):
    """Run ``unit_of_work()`` (a coroutine function) under ``db_retrying``.

    The whole unit re-runs on a transient failure, so it must open and
    commit its own transaction.
    """
    async for attempt in db_retrying(attempts):
        with attempt:
            return await unit_of_work()
