import sys
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, AbstractContextManager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Concatenate, ParamSpec, TypeGuard, TypeVar, cast

import structlog

T = TypeVar("T")
R_co = TypeVar("R_co", covariant=True)
P = ParamSpec("P")

if TYPE_CHECKING:
    ClassMethod = classmethod
else:
    ClassMethod = Callable[[Callable[Concatenate[T, P], R_co]], Callable[Concatenate[T, P], R_co]]


def is_dict(obj: Any) -> TypeGuard[dict[str, Any]]:
    return isinstance(obj, dict)


def is_list(obj: Any) -> TypeGuard[list[Any]]:
    return isinstance(obj, list)


def get_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC (SQLite drops tzinfo on some paths)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if name is None:
        # 0 would be get_logger, 1 is the caller
        frame = sys._getframe(1)  # type: ignore
        name = frame.f_globals["__name__"].rsplit(".", 1)[-1]
    return structlog.stdlib.get_logger(name)


class ContextVarManager(AbstractContextManager[T], AbstractAsyncContextManager[T]):
    """Both a sync and an async context manager around a ContextVar value."""

    _var: ContextVar[T]
    _value: T
    _token: Token[T] | None

    def __init__(self, var: ContextVar[T], value: T) -> None:
        self._var = var
        self._value = value
        self._token = None

    def __enter__(self) -> T:
        self._token = self._var.set(self._value)
        return self._value

    def __exit__(self, *exc_details: object) -> None:
        if self._token is not None:
            self._var.reset(self._token)

    async def __aenter__(self) -> T:
        return self.__enter__()

    async def __aexit__(self, *exc_details: object) -> None:
        self.__exit__(*exc_details)


def use_context_var(var: ContextVar[T], value: T) -> ContextVarManager[T]:
    return ContextVarManager(var, value)


def cached_classmethod[T, **P, R_co](func: Callable[Concatenate[T, P], R_co]) -> ClassMethod[T, P, R_co]:
    def wrapper(cls: T, *args: P.args, **kwargs: P.kwargs) -> R_co:
        if not hasattr(cls, "_cache"):
            setattr(cls, "_cache", {})
        cache = getattr(cls, "_cache")
        key = (func, args, frozenset(kwargs.items()))
        if key not in cache:
            cache[key] = func(cls, *args, **kwargs)
        return cache[key]

    return classmethod(wrapper)  # type: ignore


def deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary that will be updated
        update: Dictionary with values to update

    Returns:
        Updated dictionary with deeply merged values
    """
    merged = base.copy()

    for key, value in update.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], cast(dict[str, Any], value))
        else:
            merged[key] = value

    return merged
