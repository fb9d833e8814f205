"""Workflow Engine.

Composes the Form Catalog, the Assignment Directory, the Field Schema
Registry and the Submission Store into the submission lifecycle:

    (none) --save--> draft --submit_for_review--> submitted
    submitted --mark_pending_review--> pending_review
    submitted / pending_review --review--> approved | rejected
    draft / rejected / approved --save with id--> new version in draft

Every public operation is one unit of work: it runs in a single
transaction, and its audit records are emitted only after commit.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session
from typing_extensions import TypedDict

from fpms.assignments import AssignmentDirectory
from fpms.catalog import FormCatalog
from fpms.clock import Instant, coerce_instant, utcnow
from fpms.collaborators import FamilyRegistry, FileStorage, FileUpload, JurisdictionResolver, StoredFile
from fpms.db import Database
from fpms.errors import (
    AuthorizationError,
    ConflictError,
    FieldError,
    FPMSError,
    NotFoundError,
    PersistenceError,
    StateError,
    ValidationError,
)
from fpms.events import AuditTrail
from fpms.field_options import FileOptions
from fpms.models import Form, Submission
from fpms.query import QuerySpec, apply_query
from fpms.schema_registry import FieldSchema, SchemaRegistry
from fpms.state_machine import EDITABLE_STATES, REVIEWABLE_STATES, SubmissionStateMachine
from fpms.submissions import SUBMISSION_COLUMNS, SubmissionStore
from fpms.types import (
    EntityKind,
    ErrorKind,
    EventType,
    FieldErrorCode,
    FieldKind,
    OfficeKind,
    Principal,
    ReviewAction,
    SubmissionStatus,
    TargetEntity,
)
from fpms.validation import ValidationEngine, is_blank, missing_required, validate_payload

logger = logging.getLogger(__name__)


class SubmissionData(TypedDict, total=False):
    form_id: int
    entity_id: str
    submission_id: int
    status: str
    responses: Dict[str, Any]
    files: Dict[str, FileUpload]
    family_id: str


SUBMISSION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "form_id": {"type": "integer"},
        "entity_id": {"type": ["string", "integer"], "minLength": 1, "pattern": r"\S"},
        "submission_id": {"type": ["integer", "null"]},
        "status": {"type": "string", "enum": [SubmissionStatus.DRAFT.value, SubmissionStatus.SUBMITTED.value]},
        "responses": {"type": "object"},
        "files": {"type": "object"},
        "family_id": {"type": ["string", "integer", "null"]},
    },
    "required": ["form_id", "entity_id"],
    "additionalProperties": False,
}

BulkItem = Union[str, Tuple[Union[EntityKind, str], int]]

_REFUSALS = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.STATE: StateError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.CONFLICT: ConflictError,
}


@dataclass(frozen=True)
class SubmitCheck:
    """Answer of ``can_submit``: allowed, or the reason it is not."""
    allowed: bool
    reason: str = ""
    error_kind: Optional[ErrorKind] = None

    def raise_if_refused(self) -> None:
        if not self.allowed:
            raise _REFUSALS[self.error_kind](self.reason)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"allowed": self.allowed}
        if not self.allowed:
            result["reason"] = self.reason
            result["errorKind"] = self.error_kind.value
        return result


@dataclass(frozen=True)
class SaveResult:
    """Outcome of ``save``.

    Attributes:
        submission_id: Id of the row written by this call
        version: Its version number in the chain
        status: draft, or submitted when requested and complete
        missing_fields: Codes of required fields still without a value
        completed_fields: Non-empty responses on current fields
        total_fields: Field count of the form at save time
    """
    submission_id: int
    version: int
    status: SubmissionStatus
    missing_fields: List[str]
    completed_fields: int
    total_fields: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submissionId": self.submission_id,
            "version": self.version,
            "status": self.status.value,
            "missingFields": list(self.missing_fields),
            "completedFields": self.completed_fields,
            "totalFields": self.total_fields,
        }


@dataclass(frozen=True)
class BulkItemResult:
    item: str
    ok: bool
    message: str = ""


@dataclass
class BulkReport:
    """Per-item outcome of a bulk operation."""
    action: str
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [r.item for r in self.results if r.ok]

    @property
    def failed(self) -> List[BulkItemResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return bool(self.succeeded)

    @property
    def message(self) -> str:
        errors = ", ".join(f"Submission {r.item}: {r.message}" for r in self.failed)
        if self.succeeded:
            message = f"Successfully processed {len(self.succeeded)} submission(s)"
            return f"{message}. Errors: {errors}" if errors else message
        return f"No submissions processed. Errors: {errors}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "ok": self.ok,
            "message": self.message,
            "succeeded": self.succeeded,
            "failed": [{"item": r.item, "message": r.message} for r in self.failed],
        }


class WorkflowEngine:
    """Submission lifecycle over versioned chains.

    Attributes:
        db: Storage backend
        catalog: Form Catalog (form lookups)
        assignments: Assignment Directory (capability checks)
        store: Submission Store
        registry: Field Schema Registry
        storage: File storage collaborator for file-kind fields
        families: Family registry resolving a member's family
        trail: Audit trail receiving committed records
    """

    def __init__(
        self,
        db: Database,
        catalog: FormCatalog,
        assignments: AssignmentDirectory,
        store: Optional[SubmissionStore] = None,
        registry: Optional[SchemaRegistry] = None,
        storage: Optional[FileStorage] = None,
        families: Optional[FamilyRegistry] = None,
        trail: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.catalog = catalog
        self.assignments = assignments
        self.store = store or SubmissionStore()
        self.registry = registry or catalog.registry
        self.storage = storage
        self.families = families
        self.trail = trail
        self.clock = clock

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def can_submit(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> SubmitCheck:
        """Whether ``principal`` may open a new submission on the form now."""
        instant = coerce_instant(as_of) or self.clock()
        with self.db.transaction() as session:
            return self._gate(session, form_id, principal, instant, count_cap=True)

    def _gate(
        self,
        session: Session,
        form_id: int,
        principal: Principal,
        instant: datetime,
        count_cap: bool,
    ) -> SubmitCheck:
        form = session.get(Form, form_id)
        if form is None:
            return SubmitCheck(False, "Form not found", ErrorKind.NOT_FOUND)
        if not form.is_active:
            return SubmitCheck(False, "Form is not active", ErrorKind.STATE)
        if form.start_at is not None and instant < form.start_at:
            return SubmitCheck(False, "Form has not started yet", ErrorKind.STATE)
        if form.end_at is not None and instant > form.end_at:
            return SubmitCheck(False, "Form has expired", ErrorKind.STATE)
        if not self.assignments.has_capability(session, form_id, principal, "fill", instant):
            return SubmitCheck(False, "You do not have permission to fill this form", ErrorKind.AUTHORIZATION)
        if count_cap and form.max_submissions_per_entity > 0:
            opened = self.store.count_open_chains(session, form_id, principal.user_id)
            if opened >= form.max_submissions_per_entity:
                return SubmitCheck(False, "Maximum submissions reached for this form", ErrorKind.CONFLICT)
        return SubmitCheck(True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, principal: Principal, entity_kind: EntityKind, data: SubmissionData) -> SaveResult:
        """Create a chain or save a new version of one.

        Without ``submission_id`` version 1 of a new chain is opened. With
        it, that row (which must be the chain's latest) is superseded by a
        new draft version carrying its responses forward; the prior row's
        status is left untouched. Supplied responses (by field code) and
        files then overwrite the carried values. A preset ``submitted``
        status is honoured only when every required field is filled.

        Raises:
            ValidationError: Bad payload, invalid response values
            NotFoundError: Unknown form or submission
            AuthorizationError: No live fill grant
            StateError: Form closed, or the prior version is under review
            ConflictError: Cap reached, chain already open, stale id
        """
        validate_payload(SUBMISSION_SCHEMA, data, "Invalid submission")
        entity_kind = _entity_kind(entity_kind)
        entity_id = str(data["entity_id"]).strip()
        submission_id = data.get("submission_id")
        wanted = SubmissionStatus(data.get("status") or SubmissionStatus.DRAFT.value)
        responses = dict(data.get("responses") or {})
        files = dict(data.get("files") or {})
        now = self.clock()

        with self._staged_uploads() as staged, self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            form = self.catalog.load_form(session, data["form_id"])
            if not TargetEntity(form.target_entity).accepts(entity_kind):
                raise ValidationError(f"This form does not accept {entity_kind.value} submissions")

            fields = self.registry.fields_for(session, form.id)
            by_code = {f.code: f for f in fields}
            self._check_file_entries(by_code, responses, files)
            checked = ValidationEngine(fields).validate(responses)
            checked.raise_if_invalid("Some responses are invalid")

            if submission_id is None:
                self._gate(session, form.id, principal, now, count_cap=True).raise_if_refused()
                existing = self.store.latest(session, form.id, entity_kind, entity_id)
                if existing is not None:
                    raise ConflictError(
                        f"A submission already exists for this {entity_kind.value}; "
                        f"edit submission #{existing.id} instead"
                    )
                row = self.store.open_chain(
                    session,
                    form_id=form.id,
                    entity_kind=entity_kind,
                    entity_id=entity_id,
                    family_id=self._family_id(entity_kind, entity_id, data.get("family_id")),
                    office_kind=principal.office_kind.value,
                    office_code=principal.office_code,
                    submitted_by=principal.user_id,
                    total_fields=len(fields),
                    now=now,
                )
                uow.record(principal.user_id, EventType.SUBMISSION_CREATED, "form_submissions", row.id,
                           new_value={"form_id": form.id, "entity_kind": entity_kind.value, "entity_id": entity_id})
            else:
                prior = self.store.get(session, submission_id)
                if prior.chain_key != (form.id, entity_kind.value, entity_id):
                    raise ValidationError("The submission does not belong to this form and entity")
                if not prior.is_latest:
                    raise ConflictError(
                        f"Submission #{prior.id} has been superseded by a newer version. Please reload and try again."
                    )
                if SubmissionStatus(prior.status) not in EDITABLE_STATES:
                    raise StateError(f"A submission that is {prior.status} cannot be edited until it is reviewed")
                self._gate(session, form.id, principal, now, count_cap=False).raise_if_refused()
                row = self.store.bump_version(
                    session,
                    prior,
                    office_kind=principal.office_kind.value,
                    office_code=principal.office_code,
                    submitted_by=principal.user_id,
                    total_fields=len(fields),
                    now=now,
                )
                self.store.carry_forward(session, prior.id, row.id, now)
                uow.record(principal.user_id, EventType.SUBMISSION_VERSIONED, "form_submissions", row.id,
                           old_value={"id": prior.id, "version": prior.version, "status": prior.status},
                           new_value={"id": row.id, "version": row.version})

            for code, text in checked.data.items():
                self.store.upsert_response(session, row.id, by_code[code].id, text, now)
            for code, upload in files.items():
                stored = self._store_file(by_code[code], upload, staged)
                self.store.upsert_response(session, row.id, by_code[code].id, stored.name, now, stored=stored)

            completed = self.store.recompute_completed(session, row, _field_ids(fields))
            missing = missing_required(fields, self.store.filled_field_ids(session, row.id))

            if wanted is SubmissionStatus.SUBMITTED:
                if missing:
                    logger.info("Submission id=%s kept in draft; missing required fields %s", row.id, missing)
                else:
                    machine = SubmissionStateMachine(row.id, row.status)
                    machine.transition_to(SubmissionStatus.SUBMITTED, principal.user_id)
                    row.status = machine.state.value
                    row.submitted_at = now
                    uow.extend(machine.get_records())

            result = SaveResult(
                submission_id=row.id,
                version=row.version,
                status=SubmissionStatus(row.status),
                missing_fields=missing,
                completed_fields=completed,
                total_fields=row.total_fields,
            )

        logger.info(
            "Saved %s submission id=%s (form=%s entity=%s version=%s status=%s)",
            entity_kind.value, result.submission_id, data["form_id"], entity_id, result.version, result.status.value,
        )
        return result

    def save_response(
        self,
        principal: Principal,
        submission_id: int,
        field_id: int,
        value: Any = None,
        upload: Optional[FileUpload] = None,
    ) -> Dict[str, Any]:
        """Upsert one response of a draft and refresh its completion count.

        File-kind fields take an ``upload``, which is handed to the file
        storage collaborator; only the stored reference is kept. A blank
        value without an upload clears the response.
        """
        now = self.clock()
        with self._staged_uploads() as staged, self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            row = self.store.get(session, submission_id)
            if row.submitted_by != principal.user_id:
                raise AuthorizationError("Only the submitter can change this submission")
            if not row.is_latest:
                raise StateError("Only the latest version of a submission can be changed")
            if row.status != SubmissionStatus.DRAFT.value:
                raise StateError("Only draft submissions can be changed; save a new version first")

            schema = self.registry.field_by_id(session, field_id)
            if schema is None or schema.form_id != row.form_id:
                raise NotFoundError("Field not found on this form")

            stored: Optional[StoredFile] = None
            if schema.kind is FieldKind.FILE:
                if upload is not None:
                    stored = self._store_file(schema, upload, staged)
                    text = stored.name
                elif is_blank(value):
                    text = ""
                else:
                    raise _file_required(schema)
            else:
                if upload is not None:
                    raise ValidationError(f"Field '{schema.label}' does not accept files")
                text = ValidationEngine([schema]).validate_value(schema, value)

            response = self.store.upsert_response(session, row.id, schema.id, text, now, stored=stored)
            fields = self.registry.fields_for(session, row.form_id)
            row.total_fields = len(fields)
            self.store.recompute_completed(session, row, _field_ids(fields))
            row.updated_at = now
            uow.record(principal.user_id, EventType.RESPONSE_SAVED, "form_responses", response.id,
                       new_value={"submission_id": row.id, "field_id": schema.id, "value": text})
            result = response.to_dict()
            result["completed_fields"] = row.completed_fields
            result["total_fields"] = row.total_fields
        return result

    def submit_for_review(self, principal: Principal, submission_id: int) -> Submission:
        """Move a complete draft to submitted.

        Required fields are those of the form's current schema, so fields
        added after the draft was started are enforced too.

        Raises:
            StateError: Not the latest row, or not a draft
            ValidationError: A required field has no non-empty response
        """
        now = self.clock()
        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            row = self.store.get(session, submission_id)
            if row.submitted_by != principal.user_id and not self.assignments.has_capability(
                session, row.form_id, principal, "fill", now
            ):
                raise AuthorizationError("You do not have permission to submit this submission")
            if not row.is_latest:
                raise StateError("Only the latest version of a submission can be submitted")
            machine = SubmissionStateMachine(row.id, row.status)
            if not machine.can_transition_to(SubmissionStatus.SUBMITTED):
                raise StateError(f"Only draft submissions can be submitted (current status: {row.status})")

            fields = self.registry.fields_for(session, row.form_id)
            row.total_fields = len(fields)
            self.store.recompute_completed(session, row, _field_ids(fields))
            missing = missing_required(fields, self.store.filled_field_ids(session, row.id))
            if missing:
                raise ValidationError(
                    "Please fill all required fields before submitting",
                    fields=[
                        FieldError(path=code, code=FieldErrorCode.REQUIRED, message=f"Field '{code}' is required")
                        for code in missing
                    ],
                )

            machine.transition_to(SubmissionStatus.SUBMITTED, principal.user_id)
            row.status = machine.state.value
            row.submitted_at = now
            row.updated_at = now
            uow.extend(machine.get_records())
        logger.info("Submission id=%s submitted by user %s", submission_id, principal.user_id)
        return row

    def mark_pending_review(
        self, principal: Principal, submission_id: int, entity_kind: Optional[EntityKind] = None
    ) -> Submission:
        """Flag a submitted row as being under review."""
        now = self.clock()
        with self.db.unit_of_work(self.trail) as uow:
            row = self._load(uow.session, submission_id, entity_kind)
            self._require_reviewer(uow.session, row, principal, now)
            machine = SubmissionStateMachine(row.id, row.status)
            machine.transition_to(SubmissionStatus.PENDING_REVIEW, principal.user_id)
            row.status = machine.state.value
            row.updated_at = now
            uow.extend(machine.get_records())
        return row

    def review(
        self,
        principal: Principal,
        submission_id: int,
        action: ReviewAction,
        notes: str = "",
        entity_kind: Optional[EntityKind] = None,
    ) -> Submission:
        """Approve or reject a submitted row.

        Rejection keeps the row; a later save produces a new draft version.

        Raises:
            AuthorizationError: The reviewer holds no live review grant
            StateError: The row is not latest, or not submitted/pending review
        """
        try:
            action = ReviewAction(action)
        except ValueError:
            raise ValidationError(f"Invalid review action: {action}") from None
        now = self.clock()
        with self.db.unit_of_work(self.trail) as uow:
            row = self._load(uow.session, submission_id, entity_kind)
            self._require_reviewer(uow.session, row, principal, now)
            machine = SubmissionStateMachine(row.id, row.status)
            machine.transition_to(action.target_status, principal.user_id)
            row.status = machine.state.value
            row.reviewed_by = principal.user_id
            row.reviewed_at = now
            row.review_notes = notes or ""
            row.updated_at = now
            uow.extend(machine.get_records())
        logger.info("Submission id=%s %s by user %s", submission_id, row.status, principal.user_id)
        return row

    def delete(
        self, principal: Principal, submission_id: int, entity_kind: Optional[EntityKind] = None
    ) -> Optional[int]:
        """Delete the latest version of a chain with its responses.

        Allowed for the submitter while no review decision has been made
        (draft, submitted or pending review), or for a principal whose grant
        carries the delete capability. The previous version, if any, becomes
        latest again.

        Returns:
            Id of the version that is latest again, or None
        """
        now = self.clock()
        with self.db.unit_of_work(self.trail) as uow:
            session = uow.session
            row = self._load(session, submission_id, entity_kind)
            if not row.is_latest:
                raise StateError("Only the latest version of a submission can be deleted")
            own_unreviewed = row.submitted_by == principal.user_id and row.status in (
                SubmissionStatus.DRAFT.value,
                SubmissionStatus.SUBMITTED.value,
                SubmissionStatus.PENDING_REVIEW.value,
            )
            if not own_unreviewed and not self.assignments.has_capability(
                session, row.form_id, principal, "delete", now
            ):
                raise AuthorizationError("You do not have permission to delete this submission")
            snapshot = row.to_dict()
            predecessor = self.store.remove(session, row)
            restored = predecessor.id if predecessor is not None else None
            uow.record(principal.user_id, EventType.SUBMISSION_DELETED, "form_submissions", submission_id,
                       old_value=snapshot, new_value={"latest_id": restored})
        logger.info("Deleted submission id=%s (latest now %s)", submission_id, restored)
        return restored

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    def bulk_approve(self, principal: Principal, items: Iterable[BulkItem], notes: str = "Bulk approval") -> BulkReport:
        return self._bulk("approve", items, lambda kind, sid: self.review(principal, sid, ReviewAction.APPROVE, notes, kind))

    def bulk_reject(self, principal: Principal, items: Iterable[BulkItem], notes: str = "Bulk rejection") -> BulkReport:
        return self._bulk("reject", items, lambda kind, sid: self.review(principal, sid, ReviewAction.REJECT, notes, kind))

    def bulk_delete(self, principal: Principal, items: Iterable[BulkItem]) -> BulkReport:
        return self._bulk("delete", items, lambda kind, sid: self.delete(principal, sid, kind))

    def bulk_mark_pending(self, principal: Principal, items: Iterable[BulkItem]) -> BulkReport:
        return self._bulk("pending", items, lambda kind, sid: self.mark_pending_review(principal, sid, kind))

    def _bulk(self, action: str, items: Iterable[BulkItem], operation: Callable[[EntityKind, int], Any]) -> BulkReport:
        """Run ``operation`` per item, each in its own transaction."""
        report = BulkReport(action=action)
        for item in items:
            label = _item_label(item)
            try:
                entity_kind, submission_id = parse_bulk_item(item)
                operation(entity_kind, submission_id)
            except FPMSError as e:
                report.results.append(BulkItemResult(label, False, e.message))
            else:
                report.results.append(BulkItemResult(label, True))
        logger.info("Bulk %s: %d ok, %d failed", action, len(report.succeeded), len(report.failed))
        return report

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_submission(self, submission_id: int) -> Dict[str, Any]:
        """Submission attributes with its responses."""
        with self.db.transaction() as session:
            return self.store.describe(session, self.store.get(session, submission_id))

    def history(self, form_id: int, entity_kind: EntityKind, entity_id: str) -> List[Submission]:
        """All versions of a chain, oldest first."""
        with self.db.transaction() as session:
            return self.store.history(session, form_id, _entity_kind(entity_kind), entity_id)

    def list_submissions(self, spec: Optional[QuerySpec] = None) -> List[Submission]:
        """Submissions matching ``spec`` (newest first unless ordered otherwise)."""
        with self.db.transaction() as session:
            return self.store.search(session, spec or QuerySpec())

    def review_queue(
        self,
        principal: Principal,
        resolver: JurisdictionResolver,
        spec: Optional[QuerySpec] = None,
        as_of: Optional[Instant] = None,
    ) -> List[Submission]:
        """Latest rows awaiting review that ``principal`` may decide.

        A row is listed when it is submitted or pending review, the
        principal holds a live review grant on its form, and the
        principal's office manages the office that filed it.
        """
        instant = coerce_instant(as_of) or self.clock()
        spec = spec or QuerySpec()
        if not spec.ordering:
            spec = spec.order("submitted_at", "asc").order("id", "asc")
        unpaged = replace(spec, limit=None, offset=0)

        with self.db.transaction() as session:
            form_ids = self.assignments.reviewable_form_ids(session, principal, instant)
            if not form_ids:
                return []
            stmt = select(Submission).where(
                Submission.is_latest.is_(True),
                Submission.status.in_([s.value for s in REVIEWABLE_STATES]),
                Submission.form_id.in_(form_ids),
            )
            rows = session.scalars(apply_query(stmt, unpaged, SUBMISSION_COLUMNS)).all()

        queue = [
            r for r in rows
            if resolver.manages(principal.office_kind, principal.office_code, OfficeKind(r.office_kind), r.office_code)
        ]
        if spec.limit is not None:
            return queue[spec.offset:spec.offset + spec.limit]
        return queue

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, session: Session, submission_id: int, entity_kind: Optional[EntityKind]) -> Submission:
        row = self.store.get(session, submission_id)
        if entity_kind is not None and row.entity_kind != _entity_kind(entity_kind).value:
            raise NotFoundError("Submission not found")
        return row

    def _require_reviewer(self, session: Session, row: Submission, principal: Principal, now: datetime) -> None:
        if not self.assignments.has_capability(session, row.form_id, principal, "review", now):
            raise AuthorizationError("You do not have permission to review this form")
        if not row.is_latest:
            raise StateError("Only the latest version of a submission can be reviewed")

    def _family_id(self, entity_kind: EntityKind, entity_id: str, declared: Optional[Any]) -> str:
        if entity_kind is EntityKind.FAMILY:
            return entity_id
        declared = str(declared).strip() if declared not in (None, "") else None
        if self.families is None:
            if declared is None:
                raise ValidationError("family_id is required for member submissions")
            return declared
        family_id = self.families.family_of(entity_id)
        if family_id is None:
            raise NotFoundError(f"Member {entity_id} is not registered to a family")
        if declared is not None and declared != str(family_id):
            raise ValidationError(f"Member {entity_id} does not belong to family {declared}")
        return str(family_id)

    def _check_file_entries(
        self, by_code: Dict[str, FieldSchema], responses: Dict[str, Any], files: Dict[str, FileUpload]
    ) -> None:
        for code, upload in files.items():
            schema = by_code.get(code)
            if schema is None:
                raise ValidationError(
                    f"Field '{code}' does not belong to this form",
                    fields=[FieldError(path=code, code=FieldErrorCode.UNKNOWN_FIELD, message="Unknown field")],
                )
            if schema.kind is not FieldKind.FILE:
                raise ValidationError(f"Field '{schema.label}' does not accept files")
            if not isinstance(upload, FileUpload):
                raise ValidationError(f"Invalid upload for field '{schema.label}'")
        for code, value in responses.items():
            schema = by_code.get(code)
            if schema is not None and schema.kind is FieldKind.FILE and not is_blank(value):
                raise _file_required(schema)

    @contextmanager
    def _staged_uploads(self) -> Iterator[List[StoredFile]]:
        """Collect files stored inside the block; discard them if it fails."""
        staged: List[StoredFile] = []
        try:
            yield staged
        except Exception:
            for stored in staged:
                self.storage.discard(stored)
            raise

    def _store_file(self, schema: FieldSchema, upload: FileUpload, staged: List[StoredFile]) -> StoredFile:
        """Check field-level file options, then hand the bytes to storage."""
        options = schema.options
        if isinstance(options, FileOptions):
            if options.max_bytes is not None and upload.size > options.max_bytes:
                raise ValidationError(
                    f"File too large for field '{schema.label}'",
                    fields=[FieldError(path=schema.code, code=FieldErrorCode.FILE_TOO_LARGE,
                                       message="File exceeds the size limit",
                                       expected=options.max_bytes, received=upload.size)],
                )
            if options.accept and upload.content_type not in options.accept:
                raise ValidationError(
                    f"Invalid file type for field '{schema.label}'",
                    fields=[FieldError(path=schema.code, code=FieldErrorCode.FILE_WRONG_TYPE,
                                       message="File type is not accepted",
                                       expected=list(options.accept), received=upload.content_type)],
                )
        if self.storage is None:
            raise PersistenceError("File storage is not configured")
        try:
            stored = self.storage.store(schema.id, upload.data, upload.name, upload.content_type)
        except OSError as e:
            logger.error("File storage failed for field %s", schema.id, exc_info=True)
            raise PersistenceError("Failed to save file") from e
        staged.append(stored)
        return stored


def _field_ids(fields: Sequence[FieldSchema]) -> List[int]:
    return [f.id for f in fields]


def parse_bulk_item(item: BulkItem) -> Tuple[EntityKind, int]:
    """Accept ``("family", 12)`` pairs or ``"family-12"`` strings."""
    if isinstance(item, str):
        kind, sep, raw_id = item.partition("-")
        if not sep:
            raise ValidationError(f"Invalid submission reference: {item}")
    else:
        try:
            kind, raw_id = item
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid submission reference: {item!r}") from None
    try:
        return _entity_kind(kind), int(raw_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid submission reference: {item!r}") from None


def _item_label(item: BulkItem) -> str:
    if isinstance(item, str):
        return item
    try:
        kind, raw_id = item
    except (TypeError, ValueError):
        return repr(item)
    return f"{getattr(kind, 'value', kind)}-{raw_id}"


def _entity_kind(value: Any) -> EntityKind:
    try:
        return EntityKind(value)
    except ValueError:
        raise ValidationError(f"Invalid entity kind: {value}") from None


def _file_required(schema: FieldSchema) -> ValidationError:
    return ValidationError(
        f"Field '{schema.label}' needs an uploaded file",
        fields=[FieldError(path=schema.code, code=FieldErrorCode.FILE_REQUIRED, message="Upload a file")],
    )


__all__ = [
    "WorkflowEngine",
    "SubmissionData",
    "SubmitCheck",
    "SaveResult",
    "BulkReport",
    "BulkItemResult",
    "SUBMISSION_SCHEMA",
    "parse_bulk_item",
]
