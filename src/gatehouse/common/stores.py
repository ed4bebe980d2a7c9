"""Deadlines for hot-path store calls."""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from gatehouse.common.exceptions import ServiceError
from gatehouse.common.logging import get_logger

logger = get_logger("stores")

STORE_ERRORS = (RedisError, SQLAlchemyError, OSError)

FailureHook = Callable[[str, str, BaseException], None]


class StoreGuard:
    """Run a store awaitable under a deadline.

    Timeouts and driver errors become ``ServiceError`` so the envelope never
    carries internals; ``on_failure(operation, kind, exc)`` is told about each
    one with ``kind`` of ``"timeout"`` or ``"failure"``.
    """

    def __init__(self, timeout: float = 5.0, on_failure: Optional[FailureHook] = None):
        self.timeout = timeout
        self.on_failure = on_failure

    async def run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as exc:
            self._report(operation, "timeout", exc)
            raise ServiceError(operation=operation) from exc
        except STORE_ERRORS as exc:
            self._report(operation, "failure", exc)
            raise ServiceError(operation=operation) from exc

    def _report(self, operation: str, kind: str, exc: BaseException) -> None:
        logger.error(
            "Store %s during %s: %s", kind, operation, exc,
            extra={"context": {"operation": operation, "kind": kind}},
        )
        if self.on_failure is not None:
            self.on_failure(operation, kind, exc)
