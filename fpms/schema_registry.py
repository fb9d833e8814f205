"""Field Schema Registry.

Provides the typed, ordered view of a form's fields that the rest of the
core works with. Stored rows carry an opaque options payload; the registry
decodes it once into the variant matching the field kind, so no caller ever
re-interprets raw options.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fpms.field_options import FieldOptions, decode_options, encode_options
from fpms.models import FormField
from fpms.types import FieldKind


@dataclass(frozen=True)
class FieldSchema:
    """Immutable typed view of one form field.

    Attributes:
        id: Field id
        form_id: Owning form id
        code: Field code, unique within the form
        label: Display label
        kind: Field kind
        options: Decoded options variant for the kind
        is_required: Whether the field gates submission
        display_order: Sort key for display and validation sequencing
    """
    id: int
    form_id: int
    code: str
    label: str
    kind: FieldKind
    options: FieldOptions
    is_required: bool
    display_order: int
    default_value: str = ""
    placeholder: str = ""
    help_text: str = ""
    visibility_condition: str = ""

    @classmethod
    def from_row(cls, row: FormField) -> "FieldSchema":
        kind = FieldKind(row.kind)
        return cls(
            id=row.id,
            form_id=row.form_id,
            code=row.code,
            label=row.label,
            kind=kind,
            options=decode_options(kind, row.options),
            is_required=bool(row.is_required),
            display_order=row.display_order,
            default_value=row.default_value or "",
            placeholder=row.placeholder or "",
            help_text=row.help_text or "",
            visibility_condition=row.visibility_condition or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "form_id": self.form_id,
            "code": self.code,
            "label": self.label,
            "kind": self.kind.value,
            "options": encode_options(self.options),
            "is_required": self.is_required,
            "display_order": self.display_order,
            "default_value": self.default_value,
            "placeholder": self.placeholder,
            "help_text": self.help_text,
            "visibility_condition": self.visibility_condition,
        }


class SchemaRegistry:
    """Read access to form field schemas inside a caller's session."""

    def fields_for(self, session: Session, form_id: int) -> List[FieldSchema]:
        """All fields of a form in display order (ties broken by id)."""
        rows = session.scalars(
            select(FormField)
            .where(FormField.form_id == form_id)
            .order_by(FormField.display_order, FormField.id)
        ).all()
        return [FieldSchema.from_row(row) for row in rows]

    def required_fields(self, session: Session, form_id: int) -> List[FieldSchema]:
        return [f for f in self.fields_for(session, form_id) if f.is_required]

    def field_by_id(self, session: Session, field_id: int) -> Optional[FieldSchema]:
        row = session.get(FormField, field_id)
        return FieldSchema.from_row(row) if row is not None else None

    def field_by_code(self, session: Session, form_id: int, code: str) -> Optional[FieldSchema]:
        row = session.scalars(
            select(FormField).where(FormField.form_id == form_id, FormField.code == code)
        ).first()
        return FieldSchema.from_row(row) if row is not None else None


__all__ = ["FieldSchema", "SchemaRegistry"]
