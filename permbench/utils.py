# (c) Copyright Datacraft, 2026
import logging
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, TypeVar

from sqlalchemy.exc import DisconnectionError, OperationalError, TimeoutError as PoolTimeoutError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)


def as_id(value: int | str) -> str:
    """Tuple object and subject ids are stored as strings."""
    return str(value)


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate driver-level connectivity failures into TransientStorageError."""
    try:
        yield
    except TRANSIENT_ERRORS as e:
        raise TransientStorageError(str(e)) from e


def retry_transient(
    attempts: int = 3,
    backoff_seconds: float = 0.05,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a mutation on TransientStorageError with exponential backoff.

    Only for writes. Read-only checks surface the failure immediately.
    """
    return retry(
        retry=retry_if_exception_type(TransientStorageError),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Split ``items`` into lists of at most ``size`` elements."""
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
