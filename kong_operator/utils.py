import asyncio
import logging

import httpx

from easykube import ApiError

from .config import settings


logger = logging.getLogger(__name__)


#: HTTP status codes that indicate the API server may succeed if asked again
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def is_not_found(exc):
    """
    Returns true if the exception is an API error indicating that the object is missing.
    """
    return isinstance(exc, ApiError) and exc.status_code == 404


def is_conflict(exc):
    """
    Returns true if the exception is an API error caused by a stale resource version
    or an object that already exists.
    """
    return isinstance(exc, ApiError) and exc.status_code == 409


def is_gone(exc):
    """
    Returns true if the exception is an API error indicating that the requested
    resource version is too old to watch from.
    """
    return isinstance(exc, ApiError) and exc.status_code == 410


def is_transient(exc):
    """
    Returns true if the exception represents a failure that is worth retrying, i.e.
    a timeout, a dropped connection or an overloaded server.
    """
    if isinstance(exc, ApiError):
        return exc.status_code in TRANSIENT_STATUS_CODES
    return isinstance(exc, (httpx.TransportError, asyncio.TimeoutError))


def backoff_delays(base_delay, max_delay):
    """
    Yields an infinite sequence of exponentially increasing delays, capped at max_delay.
    """
    delay = base_delay
    while True:
        yield delay
        delay = min(delay * 2, max_delay)


async def retry(
    func,
    *args,
    max_attempts,
    base_delay,
    max_delay = None,
    retry_if = is_transient,
    description = None,
    **kwargs
):
    """
    Awaits func(*args, **kwargs), retrying with exponential backoff when it raises an
    exception that satisfies retry_if.

    At most max_attempts attempts are made. The exception from the last attempt, or
    any exception that does not satisfy retry_if, is propagated to the caller.
    """
    delays = backoff_delays(base_delay, max_delay or base_delay * 2 ** (max_attempts - 1))
    attempt = 1
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            if attempt >= max_attempts or not retry_if(exc):
                raise
            delay = next(delays)
            logger.warning(
                "%s failed (attempt %d of %d) - retrying in %.1fs: %s",
                description or getattr(func, "__name__", "call"),
                attempt,
                max_attempts,
                delay,
                exc
            )
            await asyncio.sleep(delay)
            attempt += 1


async def ekresource_for_model(client, model):
    """
    Returns an easykube resource for the given model.
    """
    api = client.api(f"{settings.api_group}/{model._meta.version}")
    return await api.resource(model._meta.plural_name)
