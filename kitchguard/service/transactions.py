from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Protocol, TypeVar

from kitchguard.logging import get_logger
from kitchguard.service.errors import ConflictError, ServiceUnavailableError, ValidationError
from kitchguard.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


class TransactionalStore(Protocol):
    def run_in_transaction(self, fn: Callable[[], T]) -> T: ...


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map storage exceptions onto the service error taxonomy."""
    try:
        yield
    except ConstraintViolation as exc:
        if exc.kind == "unique":
            raise ConflictError(exc.message, detail=exc.detail) from exc
        raise ValidationError(exc.message, detail=exc.detail) from exc
    except StoreUnavailable as exc:
        logger.error("store_unavailable", error=str(exc))
        raise ServiceUnavailableError("service temporarily unavailable") from exc


def run_unit_of_work(store: TransactionalStore, fn: Callable[[], T]) -> T:
    """Run ``fn`` in one store transaction with storage errors translated."""
    with translate_store_errors():
        return store.run_in_transaction(fn)
