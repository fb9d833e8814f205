"""Submission & Versioning Store.

Holds one append-only version chain per (form, entity kind, entity id).
Exactly one row of a chain is latest. A new version is created by clearing
the latest flag on the prior row and inserting the successor with
``version = prior.version + 1``, both inside the caller's transaction; the
flag flip is flushed before the insert so that the partial unique index on
latest rows is never violated by a single writer. Two writers racing on the
same chain collide on that index (or on the version uniqueness constraint)
and the loser's transaction is rolled back.

All methods run inside a session owned by the workflow engine.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from fpms.collaborators import StoredFile
from fpms.errors import NotFoundError
from fpms.models import FormField, Response, Submission
from fpms.query import QuerySpec, apply_query
from fpms.types import EntityKind, SubmissionStatus

logger = logging.getLogger(__name__)

SUBMISSION_COLUMNS = {
    "id": Submission.id,
    "form_id": Submission.form_id,
    "entity_kind": Submission.entity_kind,
    "entity_id": Submission.entity_id,
    "family_id": Submission.family_id,
    "office_kind": Submission.office_kind,
    "office_code": Submission.office_code,
    "submitted_by": Submission.submitted_by,
    "reviewed_by": Submission.reviewed_by,
    "status": Submission.status,
    "version": Submission.version,
    "is_latest": Submission.is_latest,
    "created_at": Submission.created_at,
    "submitted_at": Submission.submitted_at,
    "reviewed_at": Submission.reviewed_at,
    "search": (Submission.entity_id, Submission.family_id),
}


class SubmissionStore:
    """Session-scoped persistence of submission chains and responses."""

    def get(self, session: Session, submission_id: int) -> Submission:
        row = session.get(Submission, submission_id)
        if row is None:
            raise NotFoundError("Submission not found")
        return row

    def latest(self, session: Session, form_id: int, entity_kind: EntityKind, entity_id: str) -> Optional[Submission]:
        return session.scalars(
            select(Submission).where(
                Submission.form_id == form_id,
                Submission.entity_kind == EntityKind(entity_kind).value,
                Submission.entity_id == str(entity_id),
                Submission.is_latest.is_(True),
            )
        ).first()

    def open_chain(
        self,
        session: Session,
        *,
        form_id: int,
        entity_kind: EntityKind,
        entity_id: str,
        family_id: str,
        office_kind: str,
        office_code: str,
        submitted_by: int,
        total_fields: int,
        now: datetime,
    ) -> Submission:
        """Insert version 1 of a new chain, in draft."""
        row = Submission(
            form_id=form_id,
            entity_kind=EntityKind(entity_kind).value,
            entity_id=str(entity_id),
            family_id=str(family_id),
            office_kind=office_kind,
            office_code=office_code,
            submitted_by=submitted_by,
            status=SubmissionStatus.DRAFT.value,
            total_fields=total_fields,
            completed_fields=0,
            version=1,
            is_latest=True,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        return row

    def bump_version(
        self,
        session: Session,
        prior: Submission,
        *,
        office_kind: str,
        office_code: str,
        submitted_by: int,
        total_fields: int,
        now: datetime,
    ) -> Submission:
        """Supersede ``prior`` (which must be latest) with a new draft version.

        The prior row keeps its status; only its latest flag is cleared.
        """
        prior.is_latest = False
        prior.updated_at = now
        session.flush()

        row = Submission(
            form_id=prior.form_id,
            entity_kind=prior.entity_kind,
            entity_id=prior.entity_id,
            family_id=prior.family_id,
            office_kind=office_kind,
            office_code=office_code,
            submitted_by=submitted_by,
            status=SubmissionStatus.DRAFT.value,
            total_fields=total_fields,
            completed_fields=0,
            version=prior.version + 1,
            is_latest=True,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()
        logger.debug("Chain %s moved to version %s", row.chain_key, row.version)
        return row

    def responses(self, session: Session, submission_id: int) -> Dict[int, Response]:
        """Responses of one submission keyed by field id."""
        rows = session.scalars(select(Response).where(Response.submission_id == submission_id)).all()
        return {r.field_id: r for r in rows}

    def upsert_response(
        self,
        session: Session,
        submission_id: int,
        field_id: int,
        value: str,
        now: datetime,
        stored: Optional[StoredFile] = None,
    ) -> Response:
        """Insert or replace the response of one field.

        A plain value replaces any earlier file reference; an empty value
        clears the answer.
        """
        row = session.scalars(
            select(Response).where(Response.submission_id == submission_id, Response.field_id == field_id)
        ).first()
        if row is None:
            row = Response(submission_id=submission_id, field_id=field_id, created_at=now)
            session.add(row)
        row.value = value
        row.file_path = stored.path if stored else None
        row.file_name = stored.name if stored else None
        row.file_size = stored.size if stored else None
        row.file_type = stored.content_type if stored else None
        row.updated_at = now
        session.flush()
        return row

    def carry_forward(self, session: Session, source_id: int, target_id: int, now: datetime) -> int:
        """Copy every response of ``source_id`` onto ``target_id``."""
        copied = 0
        for response in self.responses(session, source_id).values():
            session.add(
                Response(
                    submission_id=target_id,
                    field_id=response.field_id,
                    value=response.value,
                    file_path=response.file_path,
                    file_name=response.file_name,
                    file_size=response.file_size,
                    file_type=response.file_type,
                    created_at=now,
                    updated_at=now,
                )
            )
            copied += 1
        session.flush()
        return copied

    def filled_field_ids(self, session: Session, submission_id: int) -> List[int]:
        return [fid for fid, r in self.responses(session, submission_id).items() if r.is_filled]

    def recompute_completed(self, session: Session, submission: Submission, current_field_ids: Iterable[int]) -> int:
        """Count non-empty responses for fields that still exist on the form."""
        current = set(current_field_ids)
        submission.completed_fields = len([f for f in self.filled_field_ids(session, submission.id) if f in current])
        return submission.completed_fields

    def history(self, session: Session, form_id: int, entity_kind: EntityKind, entity_id: str) -> List[Submission]:
        """Every version of a chain, oldest first."""
        return list(
            session.scalars(
                select(Submission)
                .where(
                    Submission.form_id == form_id,
                    Submission.entity_kind == EntityKind(entity_kind).value,
                    Submission.entity_id == str(entity_id),
                )
                .order_by(Submission.version)
            ).all()
        )

    def count_open_chains(self, session: Session, form_id: int, user_id: int) -> int:
        """Latest rows of a form opened by one user (each chain counted once)."""
        return session.scalar(
            select(func.count(Submission.id)).where(
                Submission.form_id == form_id,
                Submission.submitted_by == user_id,
                Submission.is_latest.is_(True),
            )
        ) or 0

    def remove(self, session: Session, submission: Submission) -> Optional[Submission]:
        """Delete a latest row with its responses and re-promote its predecessor.

        Returns:
            The row that became latest again, if the chain has one
        """
        session.execute(delete(Response).where(Response.submission_id == submission.id))
        predecessor = session.scalars(
            select(Submission).where(
                Submission.form_id == submission.form_id,
                Submission.entity_kind == submission.entity_kind,
                Submission.entity_id == submission.entity_id,
                Submission.version == submission.version - 1,
            )
        ).first()
        session.delete(submission)
        session.flush()
        if predecessor is not None:
            predecessor.is_latest = True
            session.flush()
        return predecessor

    def search(self, session: Session, spec: QuerySpec) -> List[Submission]:
        if not spec.ordering:
            spec = spec.order("created_at", "desc").order("id", "desc")
        return list(session.scalars(apply_query(select(Submission), spec, SUBMISSION_COLUMNS)).all())

    def describe(self, session: Session, submission: Submission) -> Dict[str, Any]:
        """Submission attributes plus its responses labelled with field codes."""
        fields = {
            f.id: f
            for f in session.scalars(select(FormField).where(FormField.form_id == submission.form_id)).all()
        }
        result = submission.to_dict()
        responses = []
        for field_id, response in sorted(self.responses(session, submission.id).items()):
            entry = response.to_dict()
            field = fields.get(field_id)
            entry["field_code"] = field.code if field else None
            entry["field_label"] = field.label if field else None
            responses.append(entry)
        result["responses"] = responses
        return result


__all__ = ["SubmissionStore", "SUBMISSION_COLUMNS"]
