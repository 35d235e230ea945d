"""msgspec-backed JSON codec used for log rendering, the pack catalog and webhook payloads.

msgspec handles datetimes, UUIDs, decimals and enums natively; ``default_serializer`` only
covers what it cannot, most importantly ``JsonModel`` instances (rendered camelCase).
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from enum import Enum
from pathlib import PurePath
from typing import Any, Final, Literal, overload

import msgspec

from common.utils.json_model import JsonModel

__all__ = (
    "SerializationError",
    "decode_json",
    "default_serializer",
    "encode_json",
    "encode_json_str",
)


class _EmptyEnum(Enum):
    EMPTY = 0


EmptyType = Literal[_EmptyEnum.EMPTY]
Empty: Final = _EmptyEnum.EMPTY


class SerializationError(Exception):
    """Encoding or decoding of an object failed."""


TYPE_ENCODERS: dict[type, Callable[[Any], Any]] = {
    JsonModel: lambda val: val.to_dict(mode="json"),
    PurePath: str,
    deque: list,
    BaseException: repr,
}


def default_serializer(value: Any) -> Any:
    """Raises:
    TypeError: if value is not supported
    """
    # SQLAlchemy rows are rendered column by column
    if hasattr(value, "__tablename__") and hasattr(value, "__table__"):
        return {c.name: getattr(value, c.name) for c in value.__table__.columns}

    for base in value.__class__.__mro__[:-1]:
        encoder = TYPE_ENCODERS.get(base)
        if encoder is not None:
            return encoder(value)

    raise TypeError(f"Unsupported type: {type(value)!r}")


_encoder = msgspec.json.Encoder(enc_hook=default_serializer)
_decoder = msgspec.json.Decoder()


def encode_json(value: Any) -> bytes:
    """Raises:
    SerializationError: If error encoding ``value``.
    """
    try:
        return _encoder.encode(value)
    except (TypeError, msgspec.EncodeError) as msgspec_error:
        raise SerializationError(str(msgspec_error)) from msgspec_error


def encode_json_str(value: Any) -> str:
    return encode_json(value).decode("utf-8")


@overload
def decode_json(value: str | bytes) -> Any: ...


@overload
def decode_json[T](value: str | bytes, target_type: type[T]) -> T: ...


def decode_json[T](value: str | bytes, target_type: type[T] | EmptyType = Empty) -> T:  # type: ignore[misc]
    """Plain Python objects, or ``target_type`` when given.

    Raises:
        SerializationError: If error decoding ``value``.
    """
    try:
        if target_type is Empty:
            return _decoder.decode(value)
        return msgspec.json.decode(value, type=target_type)
    except (msgspec.DecodeError, msgspec.ValidationError) as msgspec_error:
        raise SerializationError(str(msgspec_error)) from msgspec_error
