import functools
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, aclosing
from datetime import UTC, datetime
from typing import Any, TypeVar

import iso8601


T_co = TypeVar("T_co", covariant=True)


def asyncgeneratorcontextmanager(
    func: Callable[..., AsyncGenerator[T_co, Any]],
) -> Callable[..., AbstractAsyncContextManager[AsyncGenerator[T_co, Any]]]:
    @functools.wraps(func)
    def wrapper(
        *args: Any, **kwargs: Any
    ) -> AbstractAsyncContextManager[AsyncGenerator[T_co, Any]]:
        return aclosing(func(*args, **kwargs))

    return wrapper


def parse_date(s: str) -> datetime:
    return iso8601.parse_date(s)


def format_date(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(tz=UTC)
