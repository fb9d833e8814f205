"""Form Catalog.

Owns form definitions (code, name, target entity, activation window,
per-entity submission cap) and their field schemas. Every write runs in
one unit of work and produces an audit record after commit.

Usage:
    >>> catalog = FormCatalog(db)
    >>> form_id = catalog.create_form({"code": "FAM01", "name": "Household survey", "target_entity": "family"})
    >>> field_id = catalog.add_field(form_id, {"code": "head_name", "label": "Head of household", "kind": "text"})
    >>> catalog.form_code_exists("FAM01")
    True
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.orm import Session
from typing_extensions import TypedDict

from fpms.clock import Instant, coerce_instant, utcnow
from fpms.config import Settings, load_settings
from fpms.db import Database
from fpms.errors import ConflictError, NotFoundError, ValidationError
from fpms.events import AuditTrail
from fpms.field_options import decode_options, encode_options
from fpms.models import Form, FormAssignment, FormField, Response, Submission
from fpms.query import QuerySpec, apply_query
from fpms.schema_registry import FieldSchema, SchemaRegistry
from fpms.types import EntityKind, EventType, FieldKind, Principal, SubmissionStatus, TargetEntity
from fpms.validation import validate_payload

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ["General", "Health", "Education", "Employment", "Housing", "Social", "Economic", "Demographic"]


class FormDefinition(TypedDict, total=False):
    code: str
    name: str
    description: str
    category: str
    target_entity: str
    is_active: bool
    start_at: Instant
    end_at: Instant
    max_submissions_per_entity: int
    created_by: int


class FieldDefinition(TypedDict, total=False):
    code: str
    label: str
    kind: str
    options: Dict[str, Any]
    is_required: bool
    display_order: int
    default_value: str
    placeholder: str
    help_text: str
    visibility_condition: str


# Parsed by coerce_instant
_INSTANT: Dict[str, Any] = {}

FORM_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "code": {"type": "string", "minLength": 1, "maxLength": 50, "pattern": r"^\S+$"},
        "name": {"type": "string", "minLength": 1, "maxLength": 255, "pattern": r"\S"},
        "description": {"type": ["string", "null"]},
        "category": {"type": ["string", "null"], "maxLength": 100},
        "target_entity": {"type": "string", "enum": [t.value for t in TargetEntity]},
        "is_active": {"type": "boolean"},
        "start_at": _INSTANT,
        "end_at": _INSTANT,
        "max_submissions_per_entity": {"type": "integer", "minimum": 0},
        "created_by": {"type": ["integer", "null"]},
    },
    "required": ["code", "name", "target_entity"],
    "additionalProperties": False,
}

FIELD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "code": {"type": "string", "minLength": 1, "maxLength": 50, "pattern": r"^\S+$"},
        "label": {"type": "string", "minLength": 1, "maxLength": 255, "pattern": r"\S"},
        "kind": {"type": "string", "enum": [k.value for k in FieldKind]},
        "options": {"type": ["object", "null"]},
        "is_required": {"type": "boolean"},
        "display_order": {"type": "integer"},
        "default_value": {"type": ["string", "null"]},
        "placeholder": {"type": ["string", "null"], "maxLength": 255},
        "help_text": {"type": ["string", "null"]},
        "visibility_condition": {"type": ["string", "null"]},
    },
    "required": ["code", "label", "kind"],
    "additionalProperties": False,
}


def _update_schema(schema: Dict[str, Any], fixed: Tuple[str, ...] = ()) -> Dict[str, Any]:
    result = {k: v for k, v in schema.items() if k != "required"}
    result["properties"] = {k: v for k, v in schema["properties"].items() if k not in fixed}
    return result


class FormCatalog:
    """Administration of forms and their fields.

    Attributes:
        db: Storage backend
        registry: Typed field schema access
        trail: Audit trail receiving committed records
    """

    def __init__(
        self,
        db: Database,
        registry: Optional[SchemaRegistry] = None,
        trail: Optional[AuditTrail] = None,
        settings: Optional[Settings] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.registry = registry or SchemaRegistry()
        self.trail = trail
        self.settings = settings or load_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    def create_form(self, definition: FormDefinition, actor: Optional[Principal] = None) -> int:
        """Persist a new form and return its id.

        Raises:
            ValidationError: Missing or invalid attribute
            ConflictError: The code is already in use
        """
        validate_payload(FORM_SCHEMA, definition, "Invalid form definition")
        start_at, end_at = self._window(definition.get("start_at"), definition.get("end_at"))
        code = definition["code"]
        now = self.clock()

        with self.db.unit_of_work(self.trail) as uow:
            if self._code_taken(uow.session, code):
                raise ConflictError(f"Form code '{code}' already exists")
            form = Form(
                code=code,
                name=definition["name"].strip(),
                description=definition.get("description") or "",
                category=definition.get("category") or "",
                target_entity=definition["target_entity"],
                is_active=definition.get("is_active", True),
                start_at=start_at,
                end_at=end_at,
                max_submissions_per_entity=definition.get("max_submissions_per_entity", 1),
                created_by=definition.get("created_by", actor.user_id if actor else None),
                created_at=now,
                updated_at=now,
            )
            uow.session.add(form)
            uow.session.flush()
            uow.record(_actor_id(actor), EventType.FORM_CREATED, "forms", form.id, new_value={"code": code, "name": form.name})
            form_id = form.id

        logger.info("Created form %s (id=%s)", code, form_id)
        return form_id

    def form_code_exists(self, code: str, exclude_form_id: Optional[int] = None) -> bool:
        """Case-sensitive exact check of form code usage."""
        with self.db.transaction() as session:
            return self._code_taken(session, code, exclude_form_id)

    def get_form(self, form_id: int) -> Form:
        with self.db.transaction() as session:
            return self._load_form(session, form_id)

    def get_form_with_fields(self, form_id: int) -> Dict[str, Any]:
        """Form attributes plus its ordered fields and completion metadata."""
        with self.db.transaction() as session:
            form = self._load_form(session, form_id)
            fields = self.registry.fields_for(session, form_id)
            required = self.registry.required_fields(session, form_id)
        result = form.to_dict()
        result["fields"] = [f.to_dict() for f in fields]
        result["total_fields"] = len(fields)
        result["required_fields"] = len(required)
        result["is_currently_active"] = form.is_open_at(self.clock())
        return result

    def list_forms(self, spec: Optional[QuerySpec] = None) -> List[Form]:
        """Forms matching ``spec`` (newest first unless ordered otherwise).

        Filterable: search (name, code, description), code, created_by,
        is_active, target_entity, category, created_at.
        """
        spec = spec or QuerySpec()
        if not spec.ordering:
            spec = spec.order("created_at", "desc").order("id", "desc")
        columns = {
            "search": (Form.name, Form.code, Form.description),
            "id": Form.id,
            "code": Form.code,
            "name": Form.name,
            "created_by": Form.created_by,
            "is_active": Form.is_active,
            "target_entity": Form.target_entity,
            "category": Form.category,
            "created_at": Form.created_at,
            "updated_at": Form.updated_at,
        }
        with self.db.transaction() as session:
            return list(session.scalars(apply_query(select(Form), spec, columns)).all())

    def update_form(self, form_id: int, changes: FormDefinition, actor: Optional[Principal] = None) -> Form:
        """Apply any subset of mutable attributes; always stamps update time.

        Raises:
            NotFoundError: Unknown form id
            ValidationError: Nothing to update, or an invalid attribute
            ConflictError: A changed code is already in use
        """
        if not changes:
            raise ValidationError("No fields to update")
        validate_payload(_update_schema(FORM_SCHEMA, fixed=("created_by",)), changes, "Invalid form update")
        updates = dict(changes)

        with self.db.unit_of_work(self.trail) as uow:
            form = self._load_form(uow.session, form_id)
            before = form.to_dict()
            if "code" in updates and updates["code"] != form.code:
                if self._code_taken(uow.session, updates["code"], form_id):
                    raise ConflictError(f"Form code '{updates['code']}' already exists")

            start_at = updates.pop("start_at") if "start_at" in updates else form.start_at
            end_at = updates.pop("end_at") if "end_at" in updates else form.end_at
            form.start_at, form.end_at = self._window(start_at, end_at)
            for key, value in updates.items():
                if key in ("description", "category") and value is None:
                    value = ""
                setattr(form, key, value.strip() if key == "name" else value)
            form.updated_at = self.clock()
            uow.session.flush()
            after = form.to_dict()
            uow.record(
                _actor_id(actor),
                EventType.FORM_UPDATED,
                "forms",
                form.id,
                old_value={k: before[k] for k in changes},
                new_value={k: after[k] for k in changes},
            )
        logger.info("Updated form id=%s (%s)", form_id, ", ".join(sorted(changes)))
        return form

    def set_form_active(self, form_id: int, is_active: bool, actor: Optional[Principal] = None) -> Form:
        with self.db.unit_of_work(self.trail) as uow:
            form = self._load_form(uow.session, form_id)
            previous = form.is_active
            form.is_active = bool(is_active)
            form.updated_at = self.clock()
            uow.record(
                _actor_id(actor),
                EventType.FORM_STATUS_CHANGED,
                "forms",
                form.id,
                old_value={"is_active": previous},
                new_value={"is_active": form.is_active},
            )
        logger.info("Form id=%s %s", form_id, "activated" if is_active else "deactivated")
        return form

    def list_categories(self) -> List[str]:
        """Distinct non-empty categories in use, or the default set when none are."""
        with self.db.transaction() as session:
            rows = session.scalars(
                select(distinct(Form.category)).where(Form.category != "").order_by(Form.category)
            ).all()
        return [c for c in rows if c] or list(DEFAULT_CATEGORIES)

    def submission_counts(self, form_id: int) -> Dict[str, int]:
        """Submission row counts per entity kind and per status."""
        with self.db.transaction() as session:
            self._load_form(session, form_id)
            return self._submission_counts(session, form_id)

    def delete_form(self, form_id: int, force: bool = False, actor: Optional[Principal] = None) -> Dict[str, int]:
        """Delete a form with all dependent rows, children first.

        Refused while submissions exist unless ``force`` is set.

        Returns:
            Number of deleted rows per table
        """
        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            form = self._load_form(session, form_id)
            counts = self._submission_counts(session, form_id)
            if counts["total"] > 0 and not force:
                raise ConflictError(f"Form has {counts['total']} submissions. Cannot delete.")

            submission_ids = select(Submission.id).where(Submission.form_id == form_id)
            deleted = {
                "form_responses": session.execute(
                    delete(Response).where(Response.submission_id.in_(submission_ids))
                ).rowcount,
                "form_submissions": session.execute(delete(Submission).where(Submission.form_id == form_id)).rowcount,
                "form_assignments": session.execute(
                    delete(FormAssignment).where(FormAssignment.form_id == form_id)
                ).rowcount,
                "form_fields": session.execute(delete(FormField).where(FormField.form_id == form_id)).rowcount,
            }
            snapshot = form.to_dict()
            session.delete(form)
            session.flush()
            deleted["forms"] = 1
            uow.record(_actor_id(actor), EventType.FORM_DELETED, "forms", form_id, old_value=snapshot, new_value=None)

        logger.info("Deleted form id=%s (forced=%s, rows=%s)", form_id, force, deleted)
        return deleted

    def duplicate_form(
        self,
        form_id: int,
        suffix: Optional[str] = None,
        new_name: Optional[str] = None,
        is_active: bool = False,
        copy_assignments: bool = False,
        actor: Optional[Principal] = None,
    ) -> Form:
        """Deep-copy a form and its fields under a fresh code.

        The new code is ``<code><suffix><n>`` with the smallest free ``n``
        starting at 1. The copy has a cleared activation window and is
        inactive unless ``is_active`` is given.
        """
        suffix = suffix if suffix is not None else self.settings.duplicate_suffix
        now = self.clock()

        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            original = self._load_form(session, form_id)
            counter = 1
            new_code = f"{original.code}{suffix}{counter}"
            while self._code_taken(session, new_code):
                counter += 1
                new_code = f"{original.code}{suffix}{counter}"

            copy = Form(
                code=new_code,
                name=new_name or f"{original.name} (Copy)",
                description=original.description,
                category=original.category,
                target_entity=original.target_entity,
                is_active=bool(is_active),
                start_at=None,
                end_at=None,
                max_submissions_per_entity=original.max_submissions_per_entity,
                created_by=actor.user_id if actor else None,
                created_at=now,
                updated_at=now,
            )
            session.add(copy)
            session.flush()

            for field in self.registry.fields_for(session, form_id):
                session.add(
                    FormField(
                        form_id=copy.id,
                        code=field.code,
                        label=field.label,
                        kind=field.kind.value,
                        options=encode_options(field.options),
                        is_required=field.is_required,
                        display_order=field.display_order,
                        default_value=field.default_value,
                        placeholder=field.placeholder,
                        help_text=field.help_text,
                        visibility_condition=field.visibility_condition,
                        created_at=now,
                        updated_at=now,
                    )
                )

            copied_grants = 0
            if copy_assignments:
                grants = session.scalars(
                    select(FormAssignment).where(FormAssignment.form_id == form_id, FormAssignment.is_active.is_(True))
                ).all()
                for grant in grants:
                    session.add(
                        FormAssignment(
                            form_id=copy.id,
                            office_kind=grant.office_kind,
                            office_code=grant.office_code,
                            user_id=grant.user_id,
                            purpose=grant.purpose,
                            can_edit=grant.can_edit,
                            can_delete=grant.can_delete,
                            can_review=grant.can_review,
                            granted_by=actor.user_id if actor else grant.granted_by,
                            granted_at=now,
                            expires_at=grant.expires_at,
                        )
                    )
                    copied_grants += 1
            session.flush()
            uow.record(
                _actor_id(actor),
                EventType.FORM_DUPLICATED,
                "forms",
                copy.id,
                old_value={"form_id": form_id, "code": original.code},
                new_value={"code": new_code, "assignments_copied": copied_grants},
            )

        logger.info("Duplicated form id=%s as %s (id=%s)", form_id, copy.code, copy.id)
        return copy

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def field_code_exists(self, form_id: int, code: str, exclude_field_id: Optional[int] = None) -> bool:
        with self.db.transaction() as session:
            return self._field_code_taken(session, form_id, code, exclude_field_id)

    def check_field_code(self, form_id: int, code: str, exclude_field_id: Optional[int] = None) -> Dict[str, Any]:
        available = not self.field_code_exists(form_id, code, exclude_field_id)
        return {
            "available": available,
            "message": "Field code is available" if available else "Field code already exists",
        }

    def fields_for(self, form_id: int) -> List[FieldSchema]:
        with self.db.transaction() as session:
            self._load_form(session, form_id)
            return self.registry.fields_for(session, form_id)

    def get_field(self, field_id: int) -> FieldSchema:
        with self.db.transaction() as session:
            field = self.registry.field_by_id(session, field_id)
        if field is None:
            raise NotFoundError("Field not found")
        return field

    def get_field_by_code(self, form_id: int, code: str) -> FieldSchema:
        with self.db.transaction() as session:
            self._load_form(session, form_id)
            field = self.registry.field_by_code(session, form_id, code)
        if field is None:
            raise NotFoundError(f"Field '{code}' not found on this form")
        return field

    def add_field(self, form_id: int, definition: FieldDefinition, actor: Optional[Principal] = None) -> int:
        """Add a field; without a display order it goes after the last one.

        Raises:
            ValidationError: Missing attribute, unknown kind or bad options
            NotFoundError: Unknown form id
            ConflictError: Field code already used in this form
        """
        validate_payload(FIELD_SCHEMA, definition, "Invalid field definition")
        kind = FieldKind(definition["kind"])
        options = decode_options(kind, definition.get("options"))
        now = self.clock()

        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            self._load_form(session, form_id)
            if self._field_code_taken(session, form_id, definition["code"]):
                raise ConflictError(f"Field code '{definition['code']}' already exists in this form")
            display_order = definition.get("display_order")
            if display_order is None:
                display_order = self._next_order(session, form_id)
            field = FormField(
                form_id=form_id,
                code=definition["code"],
                label=definition["label"].strip(),
                kind=kind.value,
                options=encode_options(options),
                is_required=definition.get("is_required", False),
                display_order=display_order,
                default_value=definition.get("default_value") or "",
                placeholder=definition.get("placeholder") or "",
                help_text=definition.get("help_text") or "",
                visibility_condition=definition.get("visibility_condition") or "",
                created_at=now,
                updated_at=now,
            )
            session.add(field)
            session.flush()
            uow.record(
                _actor_id(actor),
                EventType.FIELD_ADDED,
                "form_fields",
                field.id,
                new_value={"form_id": form_id, "code": field.code, "kind": field.kind},
            )
            field_id = field.id

        logger.info("Added field %s to form id=%s", definition["code"], form_id)
        return field_id

    def update_field(self, field_id: int, changes: FieldDefinition, actor: Optional[Principal] = None) -> FieldSchema:
        """Apply any subset of mutable field attributes.

        Changing the kind re-validates the (new or existing) options against
        the new kind.
        """
        if not changes:
            raise ValidationError("No fields to update")
        validate_payload(_update_schema(FIELD_SCHEMA), changes, "Invalid field update")

        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            field = session.get(FormField, field_id)
            if field is None:
                raise NotFoundError("Field not found")
            before = FieldSchema.from_row(field).to_dict()

            if "code" in changes and changes["code"] != field.code:
                if self._field_code_taken(session, field.form_id, changes["code"], field_id):
                    raise ConflictError(f"Field code '{changes['code']}' already exists in this form")

            kind = FieldKind(changes.get("kind", field.kind))
            if "kind" in changes or "options" in changes:
                raw_options = changes["options"] if "options" in changes else field.options
                field.options = encode_options(decode_options(kind, raw_options))
                field.kind = kind.value

            for key in ("code", "label", "is_required", "display_order"):
                if key in changes:
                    setattr(field, key, changes[key].strip() if key == "label" else changes[key])
            for key in ("default_value", "placeholder", "help_text", "visibility_condition"):
                if key in changes:
                    setattr(field, key, changes[key] or "")
            field.updated_at = self.clock()
            session.flush()

            after = FieldSchema.from_row(field)
            after_values = after.to_dict()
            uow.record(
                _actor_id(actor),
                EventType.FIELD_UPDATED,
                "form_fields",
                field_id,
                old_value={k: before[k] for k in changes},
                new_value={k: after_values[k] for k in changes},
            )
        return after

    def delete_field(self, field_id: int, actor: Optional[Principal] = None) -> None:
        """Delete a field that no response references yet.

        Raises:
            NotFoundError: Unknown field id
            ConflictError: Responses already reference the field
        """
        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            field = session.get(FormField, field_id)
            if field is None:
                raise NotFoundError("Field not found")
            used = session.scalar(select(func.count(Response.id)).where(Response.field_id == field_id))
            if used:
                raise ConflictError("Cannot delete field with existing responses")
            snapshot = {"form_id": field.form_id, "code": field.code, "label": field.label}
            session.delete(field)
            uow.record(_actor_id(actor), EventType.FIELD_DELETED, "form_fields", field_id, old_value=snapshot)
        logger.info("Deleted field %s from form id=%s", snapshot["code"], snapshot["form_id"])

    def reorder_fields(
        self,
        form_id: int,
        orders: Union[Mapping[int, int], Iterable[Tuple[int, int]]],
        actor: Optional[Principal] = None,
    ) -> List[FieldSchema]:
        """Set display orders for fields of one form.

        Args:
            orders: ``{field_id: display_order}`` or ``(field_id, display_order)`` pairs

        Returns:
            The form's fields in their new order
        """
        pairs = list(orders.items()) if isinstance(orders, Mapping) else [tuple(p) for p in orders]
        if not pairs:
            raise ValidationError("Invalid field order data")
        for pair in pairs:
            if len(pair) != 2 or not all(isinstance(v, int) and not isinstance(v, bool) for v in pair):
                raise ValidationError("Invalid field order data")

        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            self._load_form(session, form_id)
            rows = {
                f.id: f
                for f in session.scalars(select(FormField).where(FormField.form_id == form_id)).all()
            }
            now = self.clock()
            for field_id, display_order in pairs:
                field = rows.get(field_id)
                if field is None:
                    raise ValidationError(f"Field {field_id} does not belong to form {form_id}")
                field.display_order = display_order
                field.updated_at = now
            session.flush()
            uow.record(
                _actor_id(actor),
                EventType.FIELDS_REORDERED,
                "forms",
                form_id,
                new_value={str(fid): order for fid, order in pairs},
            )
            return self.registry.fields_for(session, form_id)

    # ------------------------------------------------------------------
    # Helpers usable inside another component's transaction
    # ------------------------------------------------------------------

    def load_form(self, session: Session, form_id: int) -> Form:
        return self._load_form(session, form_id)

    def _load_form(self, session: Session, form_id: int) -> Form:
        form = session.get(Form, form_id)
        if form is None:
            raise NotFoundError("Form not found")
        return form

    def _code_taken(self, session: Session, code: str, exclude_form_id: Optional[int] = None) -> bool:
        stmt = select(func.count(Form.id)).where(Form.code == code)
        if exclude_form_id:
            stmt = stmt.where(Form.id != exclude_form_id)
        return bool(session.scalar(stmt))

    def _field_code_taken(
        self, session: Session, form_id: int, code: str, exclude_field_id: Optional[int] = None
    ) -> bool:
        stmt = select(func.count(FormField.id)).where(FormField.form_id == form_id, FormField.code == code)
        if exclude_field_id:
            stmt = stmt.where(FormField.id != exclude_field_id)
        return bool(session.scalar(stmt))

    def _next_order(self, session: Session, form_id: int) -> int:
        current = session.scalar(select(func.max(FormField.display_order)).where(FormField.form_id == form_id))
        return (current or 0) + 1

    def _submission_counts(self, session: Session, form_id: int) -> Dict[str, int]:
        counts: Dict[str, int] = {EntityKind.FAMILY.value: 0, EntityKind.MEMBER.value: 0}
        counts.update({s.value: 0 for s in SubmissionStatus})
        rows = session.execute(
            select(Submission.entity_kind, Submission.status, func.count(Submission.id))
            .where(Submission.form_id == form_id)
            .group_by(Submission.entity_kind, Submission.status)
        ).all()
        for entity_kind, status, count in rows:
            counts[entity_kind] += count
            counts[status] += count
        counts["total"] = counts[EntityKind.FAMILY.value] + counts[EntityKind.MEMBER.value]
        return counts

    def _window(self, start: Optional[Instant], end: Optional[Instant]):
        start_at = coerce_instant(start, label="start date")
        end_at = coerce_instant(end, end_of_day=True, label="end date")
        if start_at is not None and end_at is not None and start_at > end_at:
            raise ValidationError("The activation window ends before it starts")
        return start_at, end_at


def _actor_id(actor: Optional[Principal]) -> Optional[int]:
    return actor.user_id if actor is not None else None


__all__ = [
    "FormCatalog",
    "FormDefinition",
    "FieldDefinition",
    "FORM_SCHEMA",
    "FIELD_SCHEMA",
    "DEFAULT_CATEGORIES",
]
