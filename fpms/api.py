"""Result-envelope facade.

``FormsAPI`` exposes every public operation of the core and returns an
``OperationResult``: a success flag, a human-readable message and any
generated identifiers. Core errors are returned as failures carrying their
kind; anything unexpected is logged and reported with a generic message so
lower-layer details never reach an end user.

Usage:
    >>> api = FormsAPI.from_settings()
    >>> result = api.create_form({"code": "FAM01", "name": "Household survey", "target_entity": "family"})
    >>> result.ok, result.message
    (True, 'Form created successfully')
"""

import logging
from typing import Any, Callable, Iterable, Optional

from fpms.assignments import AssignmentDirectory, GrantDefinition
from fpms.catalog import FieldDefinition, FormCatalog, FormDefinition
from fpms.clock import Instant
from fpms.collaborators import FamilyRegistry, FileStorage, FileUpload, JurisdictionResolver, LocalFileStorage
from fpms.config import Settings, load_settings
from fpms.db import Database
from fpms.errors import FPMSError, OperationResult, PersistenceError, ValidationError
from fpms.events import AuditTrail
from fpms.logging_setup import configure_logging
from fpms.query import QuerySpec
from fpms.runtime import BulkItem, SubmissionData, WorkflowEngine
from fpms.types import EntityKind, OfficeKind, Principal, ReviewAction

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "An unexpected error occurred. No changes were saved."


class FormsAPI:
    """Public surface of the form catalog, assignments and submissions."""

    def __init__(self, catalog: FormCatalog, assignments: AssignmentDirectory, workflow: WorkflowEngine):
        self.catalog = catalog
        self.assignments = assignments
        self.workflow = workflow

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        storage: Optional[FileStorage] = None,
        families: Optional[FamilyRegistry] = None,
        trail: Optional[AuditTrail] = None,
        create_schema: bool = True,
    ) -> "FormsAPI":
        """Wire every component against the configured database."""
        settings = settings or load_settings()
        configure_logging(settings.log_level)
        db = Database(settings.database_url)
        if create_schema:
            db.create_schema()
        trail = trail or AuditTrail()
        catalog = FormCatalog(db, trail=trail, settings=settings)
        assignments = AssignmentDirectory(db, trail=trail)
        workflow = WorkflowEngine(
            db,
            catalog,
            assignments,
            storage=storage or LocalFileStorage(settings=settings),
            families=families,
            trail=trail,
        )
        return cls(catalog, assignments, workflow)

    def _call(self, operation: str, run: Callable[[], OperationResult]) -> OperationResult:
        try:
            return run()
        except FPMSError as e:
            logger.info("%s failed (%s): %s", operation, e.kind.value, e.message)
            return OperationResult.failure(e)
        except Exception:
            logger.exception("Unexpected error in %s", operation)
            return OperationResult.failure(PersistenceError(GENERIC_FAILURE))

    # Forms

    def create_form(self, definition: FormDefinition, actor: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "create_form",
            lambda: OperationResult.success(
                "Form created successfully", form_id=self.catalog.create_form(definition, actor)
            ),
        )

    def update_form(self, form_id: int, changes: FormDefinition, actor: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "update_form",
            lambda: OperationResult.success(
                "Form updated successfully", form=self.catalog.update_form(form_id, changes, actor).to_dict()
            ),
        )

    def set_form_active(self, form_id: int, is_active: bool, actor: Optional[Principal] = None) -> OperationResult:
        def run() -> OperationResult:
            form = self.catalog.set_form_active(form_id, is_active, actor)
            status = "activated" if form.is_active else "deactivated"
            return OperationResult.success(f"Form {status} successfully", form_id=form.id, is_active=form.is_active)

        return self._call("set_form_active", run)

    def delete_form(self, form_id: int, force: bool = False, actor: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "delete_form",
            lambda: OperationResult.success(
                "Form deleted successfully", deleted=self.catalog.delete_form(form_id, force=force, actor=actor)
            ),
        )

    def duplicate_form(self, form_id: int, actor: Optional[Principal] = None, **options: Any) -> OperationResult:
        def run() -> OperationResult:
            form = self.catalog.duplicate_form(form_id, actor=actor, **options)
            return OperationResult.success("Form duplicated successfully", form_id=form.id, code=form.code)

        return self._call("duplicate_form", run)

    def get_form(self, form_id: int) -> OperationResult:
        return self._call(
            "get_form", lambda: OperationResult.success("", form=self.catalog.get_form_with_fields(form_id))
        )

    def list_forms(self, spec: Optional[QuerySpec] = None) -> OperationResult:
        return self._call(
            "list_forms",
            lambda: OperationResult.success("", forms=[f.to_dict() for f in self.catalog.list_forms(spec)]),
        )

    def form_code_exists(self, code: str, exclude_form_id: Optional[int] = None) -> OperationResult:
        return self._call(
            "form_code_exists",
            lambda: OperationResult.success("", exists=self.catalog.form_code_exists(code, exclude_form_id)),
        )

    def list_categories(self) -> OperationResult:
        return self._call("list_categories", lambda: OperationResult.success("", categories=self.catalog.list_categories()))

    # Fields

    def add_field(self, form_id: int, definition: FieldDefinition, actor: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "add_field",
            lambda: OperationResult.success(
                "Field added successfully", field_id=self.catalog.add_field(form_id, definition, actor)
            ),
        )

    def update_field(self, field_id: int, changes: FieldDefinition, actor: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "update_field",
            lambda: OperationResult.success(
                "Field updated successfully", field=self.catalog.update_field(field_id, changes, actor).to_dict()
            ),
        )

    def delete_field(self, field_id: int, actor: Optional[Principal] = None) -> OperationResult:
        def run() -> OperationResult:
            self.catalog.delete_field(field_id, actor)
            return OperationResult.success("Field deleted successfully", field_id=field_id)

        return self._call("delete_field", run)

    def reorder_fields(self, form_id: int, orders: Any, actor: Optional[Principal] = None) -> OperationResult:
        def run() -> OperationResult:
            fields = self.catalog.reorder_fields(form_id, orders, actor)
            return OperationResult.success("Fields reordered successfully", fields=[f.to_dict() for f in fields])

        return self._call("reorder_fields", run)

    def check_field_code(self, form_id: int, code: str, exclude_field_id: Optional[int] = None) -> OperationResult:
        def run() -> OperationResult:
            answer = self.catalog.check_field_code(form_id, code, exclude_field_id)
            return OperationResult.success(answer["message"], available=answer["available"])

        return self._call("check_field_code", run)

    # Assignments

    def assign(self, form_id: int, grant: GrantDefinition, granted_by: Optional[Principal] = None) -> OperationResult:
        return self._call(
            "assign",
            lambda: OperationResult.success(
                "Form assigned successfully", assignment_id=self.assignments.assign(form_id, grant, granted_by)
            ),
        )

    def revoke(self, assignment_id: int, actor: Optional[Principal] = None) -> OperationResult:
        def run() -> OperationResult:
            self.assignments.revoke(assignment_id, actor)
            return OperationResult.success("Assignment revoked successfully", assignment_id=assignment_id)

        return self._call("revoke", run)

    def list_assignments(self, form_id: int) -> OperationResult:
        return self._call(
            "list_assignments",
            lambda: OperationResult.success(
                "", assignments=[a.to_dict() for a in self.assignments.list_assignments(form_id)]
            ),
        )

    def list_grants(self, spec: Optional[QuerySpec] = None, as_of: Optional[Instant] = None) -> OperationResult:
        return self._call(
            "list_grants",
            lambda: OperationResult.success(
                "", assignments=[a.to_dict() for a in self.assignments.list_grants(spec, as_of)]
            ),
        )

    def list_assigned_forms(
        self,
        office_kind: OfficeKind,
        office_code: str,
        entity_kind: Optional[EntityKind] = None,
        as_of: Optional[Instant] = None,
    ) -> OperationResult:
        def run() -> OperationResult:
            forms = self.assignments.list_assigned_forms(office_kind, office_code, entity_kind, as_of)
            return OperationResult.success("", forms=[f.to_dict() for f in forms])

        return self._call("list_assigned_forms", run)

    def can_fill(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> OperationResult:
        return self._call(
            "can_fill",
            lambda: OperationResult.success("", can_fill=self.assignments.can_fill(form_id, principal, as_of)),
        )

    def can_review(self, form_id: int, principal: Principal, as_of: Optional[Instant] = None) -> OperationResult:
        return self._call(
            "can_review",
            lambda: OperationResult.success("", can_review=self.assignments.can_review(form_id, principal, as_of)),
        )

    # Submissions

    def can_submit(self, form_id: int, principal: Principal) -> OperationResult:
        def run() -> OperationResult:
            self.workflow.can_submit(form_id, principal).raise_if_refused()
            return OperationResult.success("", can_submit=True)

        return self._call("can_submit", run)

    def save(self, principal: Principal, entity_kind: EntityKind, data: SubmissionData) -> OperationResult:
        def run() -> OperationResult:
            saved = self.workflow.save(principal, entity_kind, data)
            return OperationResult.success(
                "Form saved successfully",
                submission_id=saved.submission_id,
                version=saved.version,
                status=saved.status.value,
                missing_fields=saved.missing_fields,
            )

        return self._call("save", run)

    def save_response(
        self,
        principal: Principal,
        submission_id: int,
        field_id: int,
        value: Any = None,
        upload: Optional[FileUpload] = None,
    ) -> OperationResult:
        def run() -> OperationResult:
            response = self.workflow.save_response(principal, submission_id, field_id, value, upload)
            return OperationResult.success(
                "Response saved successfully",
                submission_id=submission_id,
                completed_fields=response["completed_fields"],
            )

        return self._call("save_response", run)

    def submit_for_review(self, principal: Principal, submission_id: int) -> OperationResult:
        def run() -> OperationResult:
            row = self.workflow.submit_for_review(principal, submission_id)
            return OperationResult.success("Submission submitted successfully", submission_id=row.id, status=row.status)

        return self._call("submit_for_review", run)

    def mark_pending_review(self, principal: Principal, submission_id: int) -> OperationResult:
        def run() -> OperationResult:
            row = self.workflow.mark_pending_review(principal, submission_id)
            return OperationResult.success(
                "Submission marked for review successfully", submission_id=row.id, status=row.status
            )

        return self._call("mark_pending_review", run)

    def review(self, principal: Principal, submission_id: int, action: ReviewAction, notes: str = "") -> OperationResult:
        def run() -> OperationResult:
            row = self.workflow.review(principal, submission_id, action, notes)
            return OperationResult.success(f"Submission {row.status} successfully", submission_id=row.id, status=row.status)

        return self._call("review", run)

    def delete_submission(self, principal: Principal, submission_id: int) -> OperationResult:
        def run() -> OperationResult:
            restored = self.workflow.delete(principal, submission_id)
            return OperationResult.success("Submission deleted successfully", latest_id=restored)

        return self._call("delete_submission", run)

    def bulk_action(self, principal: Principal, action: str, items: Iterable[BulkItem]) -> OperationResult:
        """Apply approve, reject, delete or pending to many submissions."""
        operations = {
            "approve": self.workflow.bulk_approve,
            "reject": self.workflow.bulk_reject,
            "delete": self.workflow.bulk_delete,
            "pending": self.workflow.bulk_mark_pending,
        }

        def run() -> OperationResult:
            if action not in operations:
                raise ValidationError("Invalid action")
            report = operations[action](principal, items)
            return OperationResult(
                ok=report.ok,
                message=report.message,
                data={"succeeded": report.succeeded, "failed": [r.item for r in report.failed]},
            )

        return self._call("bulk_action", run)

    def get_submission(self, submission_id: int) -> OperationResult:
        return self._call(
            "get_submission",
            lambda: OperationResult.success("", submission=self.workflow.get_submission(submission_id)),
        )

    def history(self, form_id: int, entity_kind: EntityKind, entity_id: str) -> OperationResult:
        return self._call(
            "history",
            lambda: OperationResult.success(
                "", versions=[r.to_dict() for r in self.workflow.history(form_id, entity_kind, entity_id)]
            ),
        )

    def list_submissions(self, spec: Optional[QuerySpec] = None) -> OperationResult:
        return self._call(
            "list_submissions",
            lambda: OperationResult.success(
                "", submissions=[r.to_dict() for r in self.workflow.list_submissions(spec)]
            ),
        )

    def review_queue(
        self,
        principal: Principal,
        resolver: JurisdictionResolver,
        spec: Optional[QuerySpec] = None,
        as_of: Optional[Instant] = None,
    ) -> OperationResult:
        def run() -> OperationResult:
            rows = self.workflow.review_queue(principal, resolver, spec, as_of)
            return OperationResult.success("", submissions=[r.to_dict() for r in rows])

        return self._call("review_queue", run)


__all__ = ["FormsAPI", "GENERIC_FAILURE"]
