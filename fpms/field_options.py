"""Typed field options.

A field's options are stored as an opaque JSON payload, but they are only
ever handled through the variant that matches the field kind. Each variant
carries only the settings meaningful for its kinds:

- TextOptions: text, textarea, email, phone (length bounds, pattern)
- NumberOptions: number (min/max)
- RatingOptions: rating (scale bounds, defaults 1..5)
- DateOptions: date (earliest/latest date)
- ChoiceOptions: radio, checkbox, dropdown (non-empty choice list)
- FileOptions: file (accepted MIME types, size ceiling)
- NoOptions: yesno

``decode_options`` validates the raw payload against a per-kind JSON Schema
and returns the variant; ``encode_options`` turns it back into the stored
payload.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from jsonschema import Draft7Validator

from fpms.errors import FieldError, ValidationError
from fpms.types import FieldErrorCode, FieldKind


@dataclass(frozen=True)
class Choice:
    value: str
    label: str


@dataclass(frozen=True)
class TextOptions:
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None


@dataclass(frozen=True)
class NumberOptions:
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass(frozen=True)
class RatingOptions:
    minimum: int = 1
    maximum: int = 5


@dataclass(frozen=True)
class DateOptions:
    min_date: Optional[str] = None
    max_date: Optional[str] = None


@dataclass(frozen=True)
class ChoiceOptions:
    choices: Tuple[Choice, ...]

    @property
    def values(self) -> Tuple[str, ...]:
        return tuple(c.value for c in self.choices)


@dataclass(frozen=True)
class FileOptions:
    accept: Tuple[str, ...] = ()
    max_bytes: Optional[int] = None


@dataclass(frozen=True)
class NoOptions:
    pass


FieldOptions = Union[TextOptions, NumberOptions, RatingOptions, DateOptions, ChoiceOptions, FileOptions, NoOptions]


_TEXT_SCHEMA = {
    "type": "object",
    "properties": {
        "min_length": {"type": "integer", "minimum": 0},
        "max_length": {"type": "integer", "minimum": 1},
        "pattern": {"type": "string", "minLength": 1, "format": "regex"},
    },
    "additionalProperties": False,
}

_NUMBER_SCHEMA = {
    "type": "object",
    "properties": {
        "minimum": {"type": "number"},
        "maximum": {"type": "number"},
    },
    "additionalProperties": False,
}

_RATING_SCHEMA = {
    "type": "object",
    "properties": {
        "minimum": {"type": "integer"},
        "maximum": {"type": "integer"},
    },
    "additionalProperties": False,
}

_DATE_SCHEMA = {
    "type": "object",
    "properties": {
        "min_date": {"type": "string", "format": "date"},
        "max_date": {"type": "string", "format": "date"},
    },
    "additionalProperties": False,
}

_CHOICE_SCHEMA = {
    "type": "object",
    "properties": {
        "choices": {
            "type": "array",
            "minItems": 1,
            "items": {
                "anyOf": [
                    {"type": "string", "minLength": 1},
                    {
                        "type": "object",
                        "properties": {
                            "value": {"type": "string", "minLength": 1},
                            "label": {"type": "string"},
                        },
                        "required": ["value"],
                    },
                ]
            },
        },
    },
    "required": ["choices"],
    "additionalProperties": False,
}

_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "accept": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "max_bytes": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

_EMPTY_SCHEMA = {"type": "object", "maxProperties": 0}

OPTION_SCHEMAS: Dict[FieldKind, Dict[str, Any]] = {
    FieldKind.TEXT: _TEXT_SCHEMA,
    FieldKind.TEXTAREA: _TEXT_SCHEMA,
    FieldKind.EMAIL: _TEXT_SCHEMA,
    FieldKind.PHONE: _TEXT_SCHEMA,
    FieldKind.NUMBER: _NUMBER_SCHEMA,
    FieldKind.RATING: _RATING_SCHEMA,
    FieldKind.DATE: _DATE_SCHEMA,
    FieldKind.RADIO: _CHOICE_SCHEMA,
    FieldKind.CHECKBOX: _CHOICE_SCHEMA,
    FieldKind.DROPDOWN: _CHOICE_SCHEMA,
    FieldKind.FILE: _FILE_SCHEMA,
    FieldKind.YESNO: _EMPTY_SCHEMA,
}

_VALIDATORS: Dict[FieldKind, Draft7Validator] = {
    kind: Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    for kind, schema in OPTION_SCHEMAS.items()
}


def decode_options(kind: FieldKind, payload: Optional[Dict[str, Any]]) -> FieldOptions:
    """Validate a stored options payload and return its typed variant.

    Args:
        kind: The field kind the payload belongs to
        payload: Raw options (``None`` and ``{}`` mean "no options")

    Raises:
        ValidationError: If the payload does not fit the field kind
    """
    kind = FieldKind(kind)
    data = dict(payload or {})
    errors = sorted(_VALIDATORS[kind].iter_errors(data), key=lambda e: list(e.path))
    if errors:
        field_errors = [
            FieldError(
                path="options" + "".join(f".{p}" for p in error.path),
                code=FieldErrorCode.INVALID_VALUE,
                message=error.message,
            )
            for error in errors
        ]
        raise ValidationError(f"Invalid options for a {kind.value} field", fields=field_errors)

    if kind in (FieldKind.TEXT, FieldKind.TEXTAREA, FieldKind.EMAIL, FieldKind.PHONE):
        options: FieldOptions = TextOptions(**data)
        if options.min_length is not None and options.max_length is not None and options.min_length > options.max_length:
            raise ValidationError("Invalid options: min_length is greater than max_length")
        return options
    if kind is FieldKind.NUMBER:
        number = NumberOptions(**data)
        if number.minimum is not None and number.maximum is not None and number.minimum > number.maximum:
            raise ValidationError("Invalid options: minimum is greater than maximum")
        return number
    if kind is FieldKind.RATING:
        rating = RatingOptions(**data)
        if rating.minimum >= rating.maximum:
            raise ValidationError("Invalid options: rating scale is empty")
        return rating
    if kind is FieldKind.DATE:
        return DateOptions(**data)
    if kind in (FieldKind.RADIO, FieldKind.CHECKBOX, FieldKind.DROPDOWN):
        choices = []
        for item in data["choices"]:
            if isinstance(item, str):
                choices.append(Choice(value=item, label=item))
            else:
                choices.append(Choice(value=item["value"], label=item.get("label") or item["value"]))
        values = [c.value for c in choices]
        if len(set(values)) != len(values):
            raise ValidationError("Invalid options: duplicate choice values")
        return ChoiceOptions(choices=tuple(choices))
    if kind is FieldKind.FILE:
        return FileOptions(accept=tuple(data.get("accept", ())), max_bytes=data.get("max_bytes"))
    return NoOptions()


def encode_options(options: FieldOptions) -> Dict[str, Any]:
    """Turn a typed variant back into its stored payload (unset keys dropped)."""
    if isinstance(options, ChoiceOptions):
        return {"choices": [{"value": c.value, "label": c.label} for c in options.choices]}
    if isinstance(options, FileOptions):
        result: Dict[str, Any] = {}
        if options.accept:
            result["accept"] = list(options.accept)
        if options.max_bytes is not None:
            result["max_bytes"] = options.max_bytes
        return result
    if isinstance(options, RatingOptions):
        return {"minimum": options.minimum, "maximum": options.maximum}
    if isinstance(options, NoOptions):
        return {}
    return {k: v for k, v in vars(options).items() if v is not None}


__all__ = [
    "Choice",
    "TextOptions",
    "NumberOptions",
    "RatingOptions",
    "DateOptions",
    "ChoiceOptions",
    "FileOptions",
    "NoOptions",
    "FieldOptions",
    "OPTION_SCHEMAS",
    "decode_options",
    "encode_options",
]
