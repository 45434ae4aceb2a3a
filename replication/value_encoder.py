"""
Value Encoder
=============

Renders BSON-decoded values as ClickHouse literals and field names as
ClickHouse identifiers.

Every destination column is ``String``, so scalars are rendered as text the
server can cast, and arrays / sub-documents are serialized to relaxed
extended JSON and stored as a single quoted blob.
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from bson import json_util
from bson.code import Code
from bson.int64 import Int64
from bson.json_util import RELAXED_JSON_OPTIONS
from bson.objectid import ObjectId
from bson.timestamp import Timestamp

from .errors import EncodingError

NULL_LITERAL = "NULL"
DEFAULT_MAX_DEPTH = 100

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

_PLAIN_IDENTIFIER = re.compile(r"[A-Za-z0-9_]+")


class ValueKind(str, Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    INT32 = "int32"
    INT64 = "int64"
    DOUBLE = "double"
    STRING = "string"
    BINARY = "binary"
    TIMESTAMP = "timestamp"
    ARRAY = "array"
    DOCUMENT = "document"
    OTHER = "other"


def classify(value: Any) -> ValueKind:
    """Return the variant of a decoded BSON value."""
    if value is None:
        return ValueKind.NULL
    # bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, Int64):
        return ValueKind.INT64
    if isinstance(value, int):
        return ValueKind.INT32 if INT32_MIN <= value <= INT32_MAX else ValueKind.INT64
    if isinstance(value, float):
        return ValueKind.DOUBLE
    # Code is a str subclass
    if isinstance(value, Code):
        return ValueKind.OTHER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (ObjectId, uuid.UUID, bytes)):
        return ValueKind.BINARY
    if isinstance(value, (datetime, Timestamp)):
        return ValueKind.TIMESTAMP
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, Mapping):
        return ValueKind.DOCUMENT
    return ValueKind.OTHER


def escape_string(text: str) -> str:
    """Escape backslashes and single quotes for use inside a quoted literal."""
    return text.replace("\\", "\\\\").replace("'", "\\'")


def quote_literal(text: str) -> str:
    return f"'{escape_string(text)}'"


def escape_identifier(name: str) -> str:
    """
    Make a field name usable as a ClickHouse identifier.

    Names made only of ASCII letters, digits and underscores are returned
    unchanged. Anything else (spaces, hyphens, dots, unicode, ...) is wrapped
    in backticks with embedded backslashes and backticks escaped.
    """
    if _PLAIN_IDENTIFIER.fullmatch(name):
        return name
    escaped = name.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def nesting_depth(value: Any, limit: int = DEFAULT_MAX_DEPTH) -> int:
    """
    Compute how deeply arrays and documents nest inside ``value``.

    Scalars have depth 0. Raises EncodingError as soon as ``limit`` is
    exceeded so adversarial inputs are never walked completely.
    """
    deepest = 0
    stack = [(value, 0)]
    while stack:
        current, depth = stack.pop()
        kind = classify(current)
        if kind is ValueKind.ARRAY:
            children = current
        elif kind is ValueKind.DOCUMENT:
            children = current.values()
        else:
            continue
        depth += 1
        if depth > limit:
            raise EncodingError(f"Value nests deeper than {limit} levels")
        deepest = max(deepest, depth)
        stack.extend((child, depth) for child in children)
    return deepest


def _render_binary(value: Any) -> str:
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def _render_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _serialize_nested(value: Any) -> str:
    try:
        return json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS, separators=(",", ":"))
    except RecursionError:
        raise EncodingError("Value nests too deeply to serialize")
    except (TypeError, ValueError):
        return str(value)


def encode(value: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> str:
    """
    Render a decoded BSON value as a sink-safe literal.

    Args:
        value: Any value produced by the BSON decoder
        max_depth: Maximum nesting of arrays / documents accepted

    Returns:
        Non-empty literal text ready to be placed in a VALUES list

    Raises:
        EncodingError: if the value nests deeper than ``max_depth``
    """
    kind = classify(value)

    if kind is ValueKind.NULL:
        return NULL_LITERAL
    if kind is ValueKind.BOOLEAN:
        return "1" if value else "0"
    if kind in (ValueKind.INT32, ValueKind.INT64):
        return str(int(value))
    if kind is ValueKind.DOUBLE:
        return repr(value)
    if kind is ValueKind.STRING:
        return quote_literal(value)
    if kind is ValueKind.BINARY:
        return quote_literal(_render_binary(value))
    if kind is ValueKind.TIMESTAMP:
        return quote_literal(_render_timestamp(value))
    if kind in (ValueKind.ARRAY, ValueKind.DOCUMENT):
        nesting_depth(value, max_depth)
        return quote_literal(_serialize_nested(value))
    return quote_literal(str(value))
