"""Response validation engine.

Builds a JSON Schema from a form's field schemas and validates response
values against it, translating jsonschema errors into structured
FieldError records keyed by field code.

Caller-supplied values are first coerced into the JSON instance their field
kind expects (numbers parsed, dates normalized with dateutil, multi-choice
values turned into lists). Values that cannot be coerced are passed through
unchanged so that the schema reports them with a precise error code.

The required-field gate is deliberately separate: it only asks whether
every field currently marked required has a non-empty stored response.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import jsonschema
from dateutil import parser as date_parser
from jsonschema import Draft7Validator

from fpms.errors import FieldError, ValidationError
from fpms.field_options import ChoiceOptions, DateOptions, NumberOptions, RatingOptions, TextOptions
from fpms.schema_registry import FieldSchema
from fpms.types import FieldErrorCode, FieldKind

PHONE_PATTERN = r"^\+?[0-9][0-9 ()\-]{6,19}$"

_YES = {"yes", "y", "true", "1"}
_NO = {"no", "n", "false", "0"}


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating response values against a form's fields.

    Attributes:
        is_valid: Whether every supplied value passed
        errors: Field-level errors (empty if valid)
        data: Normalized stored text per field code
        missing_fields: Codes of required fields with no value
        invalid_fields: Codes of fields whose value failed validation
    """
    is_valid: bool
    errors: List[FieldError]
    data: Optional[Dict[str, str]] = None
    missing_fields: Optional[List[str]] = None
    invalid_fields: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "isValid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.data is not None:
            result["data"] = self.data
        if self.missing_fields:
            result["missingFields"] = self.missing_fields
        if self.invalid_fields:
            result["invalidFields"] = self.invalid_fields
        return result

    def raise_if_invalid(self, message: str = "Some responses are invalid") -> None:
        if not self.is_valid:
            raise ValidationError(message, fields=self.errors)


def is_blank(value: Any) -> bool:
    """Whether a raw value counts as "no answer"."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() in ("", "[]")
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def coerce_value(kind: FieldKind, raw: Any) -> Any:
    """Turn a caller value into the JSON instance checked for ``kind``.

    Returns None for blank input.
    """
    if is_blank(raw):
        return None
    if isinstance(raw, str):
        raw = raw.strip()

    if kind is FieldKind.CHECKBOX:
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = [part.strip() for part in raw.split(",") if part.strip()]
            raw = parsed if isinstance(parsed, list) else [parsed]
        if isinstance(raw, (list, tuple, set)):
            return [str(v) for v in raw]
        return [str(raw)]

    if kind in (FieldKind.NUMBER, FieldKind.RATING):
        if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
            return raw
        if isinstance(raw, str):
            for convert in (int, float):
                try:
                    return convert(raw)
                except ValueError:
                    continue
            return raw
        if kind is FieldKind.RATING and isinstance(raw, float) and raw.is_integer():
            return int(raw)
        return raw

    if kind is FieldKind.DATE:
        if isinstance(raw, datetime):
            return raw.date().isoformat()
        if isinstance(raw, date):
            return raw.isoformat()
        if isinstance(raw, str):
            try:
                return date_parser.isoparse(raw).date().isoformat()
            except (ValueError, OverflowError):
                return raw
        return raw

    if kind is FieldKind.YESNO:
        if isinstance(raw, bool):
            return "yes" if raw else "no"
        text = str(raw).lower()
        if text in _YES:
            return "yes"
        if text in _NO:
            return "no"
        return raw

    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    return raw


def encode_value(instance: Any) -> str:
    """Stored text for a validated instance."""
    if instance is None:
        return ""
    if isinstance(instance, list):
        return json.dumps(instance)
    return str(instance)


def value_schema(field: FieldSchema) -> Dict[str, Any]:
    """JSON Schema fragment for one field's value."""
    options = field.options
    kind = field.kind

    if kind in (FieldKind.TEXT, FieldKind.TEXTAREA, FieldKind.EMAIL, FieldKind.PHONE):
        schema: Dict[str, Any] = {"type": "string"}
        if kind is FieldKind.EMAIL:
            schema["format"] = "email"
        if kind is FieldKind.PHONE:
            schema["pattern"] = PHONE_PATTERN
        if isinstance(options, TextOptions):
            if options.min_length is not None:
                schema["minLength"] = options.min_length
            if options.max_length is not None:
                schema["maxLength"] = options.max_length
            if options.pattern:
                if "pattern" in schema:
                    return {"allOf": [schema, {"pattern": options.pattern}]}
                schema["pattern"] = options.pattern
        return schema

    if kind in (FieldKind.NUMBER, FieldKind.RATING):
        schema = {"type": "integer" if kind is FieldKind.RATING else "number"}
        if isinstance(options, (NumberOptions, RatingOptions)):
            if options.minimum is not None:
                schema["minimum"] = options.minimum
            if options.maximum is not None:
                schema["maximum"] = options.maximum
        return schema

    if kind is FieldKind.DATE:
        return {"type": "string", "format": "date"}

    if kind in (FieldKind.RADIO, FieldKind.DROPDOWN):
        return {"type": "string", "enum": list(options.values)}

    if kind is FieldKind.CHECKBOX:
        return {
            "type": "array",
            "items": {"type": "string", "enum": list(options.values)},
            "uniqueItems": True,
        }

    if kind is FieldKind.YESNO:
        return {"type": "string", "enum": ["yes", "no"]}

    return {"type": "string"}


def build_schema(fields: Sequence[FieldSchema], include_required: bool = False) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": {f.code: value_schema(f) for f in fields},
    }
    if include_required:
        required = [f.code for f in fields if f.is_required]
        if required:
            schema["required"] = required
    return schema


class ValidationEngine:
    """Validates response values for one form's current field schema.

    Examples:
        >>> engine = ValidationEngine(registry.fields_for(session, form_id))
        >>> result = engine.validate({"age": "41", "head_name": "Perera"})
        >>> result.data["age"]
        '41'
    """

    def __init__(self, fields: Sequence[FieldSchema]) -> None:
        self.fields = list(fields)
        self._by_code = {f.code: f for f in self.fields}
        self.schema = build_schema(self.fields)
        self.strict_schema = build_schema(self.fields, include_required=True)
        Draft7Validator.check_schema(self.strict_schema)
        self.validator = Draft7Validator(self.schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        self.strict_validator = Draft7Validator(self.strict_schema, format_checker=Draft7Validator.FORMAT_CHECKER)

    def validate(self, values: Mapping[str, Any], check_required: bool = False) -> ValidationResult:
        """Validate values keyed by field code.

        Blank values are accepted and normalized to "". With
        ``check_required`` every required field must carry a value.
        """
        field_errors: List[FieldError] = []
        instance: Dict[str, Any] = {}
        data: Dict[str, str] = {}

        for code, raw in values.items():
            field = self._by_code.get(code)
            if field is None:
                field_errors.append(
                    FieldError(
                        path=code,
                        code=FieldErrorCode.UNKNOWN_FIELD,
                        message=f"Field '{code}' does not belong to this form",
                    )
                )
                continue
            coerced = coerce_value(field.kind, raw)
            data[code] = encode_value(coerced)
            if coerced is not None:
                instance[code] = coerced

        validator = self.strict_validator if check_required else self.validator
        for error in sorted(validator.iter_errors(instance), key=lambda e: list(e.path)):
            field_errors.append(self._translate_error(error))
        field_errors.extend(self._check_date_bounds(instance, field_errors))

        if not field_errors:
            return ValidationResult(is_valid=True, errors=[], data=data, missing_fields=[], invalid_fields=[])

        missing_fields: List[str] = []
        invalid_fields: List[str] = []
        for field_error in field_errors:
            if field_error.code == FieldErrorCode.REQUIRED:
                missing_fields.append(field_error.path)
            elif field_error.path not in invalid_fields:
                invalid_fields.append(field_error.path)

        return ValidationResult(
            is_valid=False,
            errors=field_errors,
            data=data,
            missing_fields=missing_fields,
            invalid_fields=invalid_fields,
        )

    def validate_value(self, field: FieldSchema, raw: Any) -> str:
        """Validate a single value and return its stored text.

        Raises:
            ValidationError: If the value does not fit the field
        """
        result = ValidationEngine([field]).validate({field.code: raw})
        result.raise_if_invalid(f"Invalid value for field '{field.label}'")
        return result.data[field.code]

    def _check_date_bounds(self, instance: Dict[str, Any], already: List[FieldError]) -> List[FieldError]:
        failed = {e.path for e in already}
        errors = []
        for code, value in instance.items():
            field = self._by_code[code]
            if field.kind is not FieldKind.DATE or code in failed or not isinstance(field.options, DateOptions):
                continue
            if field.options.min_date and value < field.options.min_date:
                errors.append(
                    FieldError(
                        path=code,
                        code=FieldErrorCode.INVALID_VALUE,
                        message=f"Field '{code}' must not be before {field.options.min_date}",
                        expected=f"on or after {field.options.min_date}",
                        received=value,
                    )
                )
            elif field.options.max_date and value > field.options.max_date:
                errors.append(
                    FieldError(
                        path=code,
                        code=FieldErrorCode.INVALID_VALUE,
                        message=f"Field '{code}' must not be after {field.options.max_date}",
                        expected=f"on or before {field.options.max_date}",
                        received=value,
                    )
                )
        return errors

    def _translate_error(self, error: jsonschema.ValidationError) -> FieldError:
        return translate_error(error)


def translate_error(error: jsonschema.ValidationError) -> FieldError:
    """Translate a jsonschema error into a FieldError.

    Error mapping:
        - 'required' -> REQUIRED
        - 'type' -> INVALID_TYPE
        - 'format', 'pattern' -> INVALID_FORMAT
        - 'enum' -> INVALID_VALUE
        - 'minLength' / 'maxLength' -> TOO_SHORT / TOO_LONG
        - numeric bounds, 'uniqueItems' -> INVALID_VALUE
    """
    path = str(error.path[0]) if error.path else ""

    if error.validator == "required":
        missing = error.message.split("'")[1] if "'" in error.message else "field"
        return FieldError(
            path=missing,
            code=FieldErrorCode.REQUIRED,
            message=f"Field '{missing}' is required but was not provided",
            expected="required field",
        )

    if error.validator == "type":
        received_type = type(error.instance).__name__
        return FieldError(
            path=path,
            code=FieldErrorCode.INVALID_TYPE,
            message=f"Field '{path}' has invalid type. Expected {error.validator_value}, got {received_type}",
            expected=error.validator_value,
            received=received_type,
        )

    if error.validator == "format":
        return FieldError(
            path=path,
            code=FieldErrorCode.INVALID_FORMAT,
            message=f"Field '{path}' has invalid format. Expected format: {error.validator_value}",
            expected=error.validator_value,
            received=error.instance,
        )

    if error.validator == "pattern":
        return FieldError(
            path=path,
            code=FieldErrorCode.INVALID_FORMAT,
            message=f"Field '{path}' does not match required pattern: {error.validator_value}",
            expected=f"pattern: {error.validator_value}",
            received=error.instance,
        )

    if error.validator == "enum":
        return FieldError(
            path=path,
            code=FieldErrorCode.INVALID_VALUE,
            message=f"Field '{path}' has invalid value. Must be one of: {error.validator_value}",
            expected=error.validator_value,
            received=error.instance,
        )

    if error.validator == "minLength":
        actual = len(error.instance) if error.instance else 0
        return FieldError(
            path=path,
            code=FieldErrorCode.TOO_SHORT,
            message=f"Field '{path}' is too short. Minimum length: {error.validator_value}, got: {actual}",
            expected=f"minimum {error.validator_value} characters",
            received=f"{actual} characters",
        )

    if error.validator == "maxLength":
        actual = len(error.instance) if error.instance else 0
        return FieldError(
            path=path,
            code=FieldErrorCode.TOO_LONG,
            message=f"Field '{path}' is too long. Maximum length: {error.validator_value}, got: {actual}",
            expected=f"maximum {error.validator_value} characters",
            received=f"{actual} characters",
        )

    if error.validator in ("minimum", "maximum", "exclusiveMinimum", "exclusiveMaximum", "uniqueItems"):
        return FieldError(
            path=path,
            code=FieldErrorCode.INVALID_VALUE,
            message=f"Field '{path}' violates {error.validator} constraint: {error.validator_value}",
            expected=f"{error.validator}: {error.validator_value}",
            received=error.instance,
        )

    if error.validator == "additionalProperties":
        extras = sorted(set(error.instance) - set(error.schema.get("properties", {})))
        unexpected = ", ".join(extras)
        return FieldError(
            path=extras[0] if extras else path,
            code=FieldErrorCode.UNKNOWN_FIELD,
            message=f"Unknown attribute(s): {unexpected}",
            received=extras,
        )

    return FieldError(
        path=path,
        code=FieldErrorCode.CUSTOM,
        message=f"Field '{path}' validation failed: {error.message}",
        expected=error.validator_value,
        received=error.instance,
    )


def validate_payload(schema: Dict[str, Any], data: Mapping[str, Any], message: str) -> None:
    """Check an input definition (form, field, grant) against a JSON Schema.

    Raises:
        ValidationError: With one FieldError per violation
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(validator.iter_errors(dict(data)), key=lambda e: list(e.path))
    if errors:
        field_errors = [translate_error(e) for e in errors]
        raise ValidationError(f"{message}: {field_errors[0].message}", fields=field_errors)


def missing_required(fields: Iterable[FieldSchema], filled_field_ids: Iterable[int]) -> List[str]:
    """Codes of required fields that have no non-empty stored response."""
    filled = set(filled_field_ids)
    return [f.code for f in fields if f.is_required and f.id not in filled]


__all__ = [
    "ValidationEngine",
    "ValidationResult",
    "coerce_value",
    "encode_value",
    "value_schema",
    "build_schema",
    "is_blank",
    "missing_required",
    "translate_error",
    "validate_payload",
    "PHONE_PATTERN",
]
