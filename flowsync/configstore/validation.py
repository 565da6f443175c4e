"""Value coercion, JSON Schema validation, and (de)serialization for config items.

Values are stored as text. The declared ``value_type`` decides how the text
is produced and parsed; the optional per-key JSON Schema decides what is
acceptable.
"""

import json
from typing import Any, Optional

import jsonschema
from jsonschema import Draft7Validator, FormatChecker
from jsonschema.exceptions import SchemaError

from flowsync.exceptions import ValidationError
from flowsync.types import ConfigValueType

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def coerce_value(key: str, value: Any, value_type: ConfigValueType) -> Any:
    """Turn form-style input (``"30"``, ``"true"``) into the declared type."""
    if value is None:
        return None
    if value_type == ConfigValueType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
        raise ValidationError(f"{key}: expected a boolean, got {value!r}", key=key)
    if value_type == ConfigValueType.NUMBER:
        if isinstance(value, bool):
            raise ValidationError(f"{key}: expected a number, got a boolean", key=key)
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, (int, float)) and not isinstance(parsed, bool):
                return parsed
        raise ValidationError(f"{key}: expected a number, got {value!r}", key=key)
    if value_type == ConfigValueType.JSON:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"{key}: invalid JSON ({exc.msg})", key=key) from exc
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{key}: expected a string, got {type(value).__name__}", key=key)
    return value


def validate_value(key: str, value: Any, schema: Optional[dict]) -> None:
    """Check *value* against the key's JSON Schema (Draft 7, with format checking).

    Raises:
        ValidationError: naming the most relevant violation.
    """
    if not schema or value is None:
        return
    try:
        jsonschema.validate(value, schema, cls=Draft7Validator, format_checker=FormatChecker())
    except SchemaError as exc:
        raise ValidationError(f"{key}: declared schema is invalid: {exc.message}", key=key) from exc
    except jsonschema.ValidationError as exc:
        raise ValidationError(f"{key}: {exc.message}", key=key, errors=[exc.message]) from exc


def serialize_value(value: Any, value_type: ConfigValueType) -> Optional[str]:
    if value is None:
        return None
    if value_type == ConfigValueType.BOOLEAN:
        return "true" if value else "false"
    if value_type in (ConfigValueType.NUMBER, ConfigValueType.JSON):
        return json.dumps(value)
    return str(value)


def deserialize_value(text: Optional[str], value_type: ConfigValueType) -> Any:
    if text is None:
        return None
    if value_type == ConfigValueType.BOOLEAN:
        return text.lower() in _TRUE
    if value_type in (ConfigValueType.NUMBER, ConfigValueType.JSON):
        return json.loads(text)
    return text
