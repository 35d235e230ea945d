from .json_model import JsonModel, JsonSnakeCaseModel
from .msgspec import SerializationError, decode_json, encode_json, encode_json_str
from .utils import (
    ContextVarManager,
    cached_classmethod,
    deep_merge,
    ensure_utc,
    get_logger,
    get_now,
    is_dict,
    is_list,
    use_context_var,
)

__all__ = [
    "ContextVarManager",
    "JsonModel",
    "JsonSnakeCaseModel",
    "SerializationError",
    "cached_classmethod",
    "decode_json",
    "deep_merge",
    "encode_json",
    "encode_json_str",
    "ensure_utc",
    "get_logger",
    "get_now",
    "is_dict",
    "is_list",
    "use_context_var",
]
