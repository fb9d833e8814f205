"""Assignment Directory.

Grants an office (kind + code) and/or a specific user the capability to
fill and/or review a form, optionally until an expiry instant. The
directory answers only "is this principal granted X"; form-level gates
(active flag, activation window, submission cap) are composed by the
workflow engine.

A grant matches a principal when either its user id equals the principal's
user id, or its (office kind, office code) equals the principal's office.
A grant is live while it is active (not revoked) and its expiry, if any,
is not before the instant asked about.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session
from typing_extensions import TypedDict

from fpms.clock import Instant, coerce_instant, utcnow
from fpms.db import Database
from fpms.errors import ConflictError, NotFoundError, StateError, ValidationError
from fpms.events import AuditTrail
from fpms.models import Form, FormAssignment
from fpms.query import QuerySpec, apply_query
from fpms.types import AssignmentPurpose, EntityKind, EventType, OfficeKind, Principal, TargetEntity
from fpms.validation import validate_payload

logger = logging.getLogger(__name__)


class GrantDefinition(TypedDict, total=False):
    office_kind: str
    office_code: str
    user_id: int
    purpose: str
    can_edit: bool
    can_delete: bool
    can_review: bool
    expires_at: Instant


GRANT_SCHEMA = {
    "type": "object",
    "properties": {
        "office_kind": {"type": ["string", "null"], "enum": [k.value for k in OfficeKind] + [None]},
        "office_code": {"type": ["string", "null"], "maxLength": 50},
        "user_id": {"type": ["integer", "null"]},
        "purpose": {"type": "string", "enum": [p.value for p in AssignmentPurpose]},
        "can_edit": {"type": "boolean"},
        "can_delete": {"type": "boolean"},
        "can_review": {"type": "boolean"},
        "expires_at": {},
    },
    "additionalProperties": False,
}

CAPABILITIES = ("fill", "review", "delete")


class AssignmentDirectory:
    """Issues, revokes and answers questions about form grants."""

    def __init__(self, db: Database, trail: Optional[AuditTrail] = None, clock: Callable = utcnow):
        self.db = db
        self.trail = trail
        self.clock = clock

    def assign(self, form_id: int, grant: GrantDefinition, granted_by: Optional[Principal] = None) -> int:
        """Persist a new grant and return its id.

        Raises:
            ValidationError: Invalid grant (no principal named, bad kind or purpose)
            NotFoundError: Unknown form id
            ConflictError: A live grant for the same form, principal and purpose exists
        """
        validate_payload(GRANT_SCHEMA, grant, "Invalid assignment")
        office_kind = grant.get("office_kind")
        office_code = (grant.get("office_code") or "").strip()
        user_id = grant.get("user_id")
        if bool(office_kind) != bool(office_code):
            raise ValidationError("An office grant needs both the office kind and the office code")
        if not office_kind and user_id is None:
            raise ValidationError("A grant must name an office or a user")

        purpose = AssignmentPurpose(grant.get("purpose", AssignmentPurpose.FILL.value))
        can_review = purpose.grants_review or bool(grant.get("can_review", False))
        expires_at = coerce_instant(grant.get("expires_at"), end_of_day=True, label="expiry")
        now = self.clock()

        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            if session.get(Form, form_id) is None:
                raise NotFoundError("Form not found")
            if self._duplicate_exists(session, form_id, office_kind, office_code, user_id, purpose, now):
                raise ConflictError("This assignment already exists")
            row = FormAssignment(
                form_id=form_id,
                office_kind=office_kind,
                office_code=office_code,
                user_id=user_id,
                purpose=purpose.value,
                can_edit=grant.get("can_edit", True),
                can_delete=grant.get("can_delete", False),
                can_review=can_review,
                granted_by=granted_by.user_id if granted_by else None,
                granted_at=now,
                expires_at=expires_at,
                is_active=True,
            )
            session.add(row)
            session.flush()
            uow.record(
                granted_by.user_id if granted_by else None,
                EventType.ASSIGNMENT_CREATED,
                "form_assignments",
                row.id,
                new_value=row.to_dict(),
            )
            assignment_id = row.id

        logger.info(
            "Assigned form id=%s to %s (purpose=%s)",
            form_id,
            f"{office_kind}:{office_code}" if office_kind else f"user {user_id}",
            purpose.value,
        )
        return assignment_id

    def revoke(self, assignment_id: int, actor: Optional[Principal] = None) -> FormAssignment:
        """Deactivate a grant; the row is kept for history."""
        with self.db.unit_of_work(self.trail) as uow:
            row = uow.session.get(FormAssignment, assignment_id)
            if row is None:
                raise NotFoundError("Assignment not found")
            if not row.is_active:
                raise StateError("Assignment is already revoked")
            row.is_active = False
            uow.record(
                actor.user_id if actor else None,
                EventType.ASSIGNMENT_REVOKED,
                "form_assignments",
                row.id,
                old_value={"is_active": True},
                new_value={"is_active": False},
            )
        logger.info("Revoked assignment id=%s", assignment_id)
        return row

    def list_assignments(self, form_id: int) -> List[FormAssignment]:
        """Every grant ever issued for a form, including expired and revoked ones."""
        with self.db.transaction() as session:
            if session.get(Form, form_id) is None:
                raise NotFoundError("Form not found")
            return list(
                session.scalars(
                    select(FormAssignment)
                    .where(FormAssignment.form_id == form_id)
                    .order_by(FormAssignment.granted_at.desc(), FormAssignment.id.desc())
                ).all()
            )

    def list_grants(self, spec: Optional[QuerySpec] = None, as_of: Optional[Instant] = None) -> List[FormAssignment]:
        """Live grants matching ``spec``.

        Filterable: form_id, office_kind, office_code, user_id, purpose,
        can_review, can_delete.
        """
        instant = coerce_instant(as_of) or self.clock()
        spec = spec or QuerySpec()
        if not spec.ordering:
            spec = spec.order("granted_at", "desc")
        columns = {
            "form_id": FormAssignment.form_id,
            "office_kind": FormAssignment.office_kind,
            "office_code": FormAssignment.office_code,
            "user_id": FormAssignment.user_id,
            "purpose": FormAssignment.purpose,
            "can_review": FormAssignment.can_review,
            "can_delete": FormAssignment.can_delete,
            "granted_at": FormAssignment.granted_at,
            "expires_at": FormAssignment.expires_at,
        }
        stmt = select(FormAssignment).where(_live(instant))
        with self.db.transaction() as session:
            return list(session.scalars(apply_query(stmt, spec, columns)).all())

    def list_assigned_forms(
        self,
        office_kind: OfficeKind,
        office_code: str,
        entity_kind: Optional[EntityKind] = None,
        as_of: Optional[Instant] = None,
    ) -> List[Form]:
        """Forms an office may fill right now.

        A form is returned when it is active, accepts ``entity_kind`` (any
        kind when omitted), lies inside its activation window at ``as_of``
        and has a live fill-type grant to the office.
        """
        instant = coerce_instant(as_of) or self.clock()
        office_kind = OfficeKind(office_kind)
        fill_purposes = [p.value for p in AssignmentPurpose if p.grants_fill]

        stmt = (
            select(Form)
            .join(FormAssignment, FormAssignment.form_id == Form.id)
            .where(
                Form.is_active.is_(True),
                or_(Form.start_at.is_(None), Form.start_at <= instant),
                or_(Form.end_at.is_(None), Form.end_at >= instant),
                FormAssignment.office_kind == office_kind.value,
                FormAssignment.office_code == office_code,
                FormAssignment.purpose.in_(fill_purposes),
                _live(instant),
            )
            .order_by(Form.name, Form.id)
            .distinct()
        )
        if entity_kind is not None:
            entity_kind = EntityKind(entity_kind)
            stmt = stmt.where(Form.target_entity.in_([entity_kind.value, TargetEntity.BOTH.value]))
        with self.db.transaction() as session:
            return list(session.scalars(stmt).all())

    def can_fill(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> bool:
        with self.db.transaction() as session:
            return self.has_capability(session, form_id, principal, "fill", as_of)

    def can_review(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> bool:
        with self.db.transaction() as session:
            return self.has_capability(session, form_id, principal, "review", as_of)

    def can_delete(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> bool:
        with self.db.transaction() as session:
            return self.has_capability(session, form_id, principal, "delete", as_of)

    def has_capability(
        self,
        session: Session,
        form_id: int,
        principal: Principal,
        capability: str,
        as_of: Optional[Instant] = None,
    ) -> bool:
        """Whether a live grant gives ``principal`` the capability on the form.

        Runs inside the caller's session so the workflow can compose it with
        its own reads and writes.
        """
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")
        instant = coerce_instant(as_of) or self.clock()

        if capability == "fill":
            flag = FormAssignment.purpose.in_([p.value for p in AssignmentPurpose if p.grants_fill])
        elif capability == "review":
            flag = FormAssignment.can_review.is_(True)
        else:
            flag = FormAssignment.can_delete.is_(True)

        stmt = (
            select(FormAssignment.id)
            .where(
                FormAssignment.form_id == form_id,
                _matches(principal),
                flag,
                _live(instant),
            )
            .limit(1)
        )
        return session.scalar(stmt) is not None

    def reviewable_form_ids(self, session: Session, principal: Principal, as_of: Optional[datetime] = None) -> List[int]:
        instant = as_of or self.clock()
        stmt = (
            select(FormAssignment.form_id)
            .where(_matches(principal), FormAssignment.can_review.is_(True), _live(instant))
            .distinct()
        )
        return list(session.scalars(stmt).all())

    def _duplicate_exists(
        self,
        session: Session,
        form_id: int,
        office_kind: Optional[str],
        office_code: str,
        user_id: Optional[int],
        purpose: AssignmentPurpose,
        now: datetime,
    ) -> bool:
        stmt = select(FormAssignment.id).where(
            FormAssignment.form_id == form_id,
            FormAssignment.purpose == purpose.value,
            FormAssignment.office_code == office_code,
            FormAssignment.office_kind.is_(None) if office_kind is None else FormAssignment.office_kind == office_kind,
            FormAssignment.user_id.is_(None) if user_id is None else FormAssignment.user_id == user_id,
            _live(now),
        )
        return session.scalar(stmt.limit(1)) is not None


def _live(instant: datetime):
    return and_(
        FormAssignment.is_active.is_(True),
        or_(FormAssignment.expires_at.is_(None), FormAssignment.expires_at >= instant),
    )


def _matches(principal: Principal):
    return or_(
        FormAssignment.user_id == principal.user_id,
        and_(
            FormAssignment.office_kind == principal.office_kind.value,
            FormAssignment.office_code == principal.office_code,
        ),
    )


__all__ = ["AssignmentDirectory", "GrantDefinition", "GRANT_SCHEMA"]
