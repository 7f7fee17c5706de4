from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from authwarden.logging import get_logger, sanitize_error_message
from authwarden.service.errors import InternalError
from authwarden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")


async def guarded(awaitable: Awaitable[T], *, timeout: float, op: str) -> T:
    """Await a backend call, turning timeouts and failures into InternalError.

    ConstraintViolation passes through untouched so callers can map it to a
    domain conflict.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except ConstraintViolation:
        raise
    except asyncio.TimeoutError:
        logger.error("backend_call_timeout", op=op, timeout=timeout)
        raise InternalError() from None
    except Exception as exc:
        logger.error(
            "backend_call_failed",
            op=op,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise InternalError() from exc


async def store_call(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run a blocking store method in a worker thread under ``timeout``."""
    return await guarded(
        asyncio.to_thread(func, *args, **kwargs),
        timeout=timeout,
        op=getattr(func, "__name__", "store_call"),
    )


async def fire_and_forget(
    func: Callable[..., Any], *args: Any, timeout: float, **kwargs: Any
) -> bool:
    """Run a blocking notification; failures are logged and never raised."""
    op = getattr(func, "__name__", "notify")
    try:
        sent = await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError:
        logger.warning("notification_timeout", op=op, timeout=timeout)
        return False
    except Exception as exc:
        logger.warning(
            "notification_failed",
            op=op,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return False
    if sent is False:
        logger.warning("notification_not_sent", op=op)
        return False
    return True


__all__ = ["fire_and_forget", "guarded", "store_call"]
