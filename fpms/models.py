"""SQLAlchemy tables of the form collection core.

Five tables back the five entities: forms, their fields, assignment grants,
submission versions (both entity kinds in one table, discriminated by
``entity_kind``) and per-field responses.

A submission chain is keyed by (form_id, entity_kind, entity_id). Two guards
keep chains well formed under concurrent writers: versions are unique per
chain, and a partial unique index allows at most one latest row per chain.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fpms.clock import utcnow


class Base(DeclarativeBase):
    pass


class Form(Base):
    __tablename__ = "forms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(100), default="", index=True)
    target_entity: Mapped[str] = mapped_column(String(10))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    start_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    max_submissions_per_entity: Mapped[int] = mapped_column(Integer, default=1)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def is_open_at(self, instant: datetime) -> bool:
        """Active and inside the activation window at ``instant``."""
        if not self.is_active:
            return False
        if self.start_at is not None and instant < self.start_at:
            return False
        if self.end_at is not None and instant > self.end_at:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "target_entity": self.target_entity,
            "is_active": self.is_active,
            "start_at": self.start_at.isoformat() if self.start_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "max_submissions_per_entity": self.max_submissions_per_entity,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class FormField(Base):
    __tablename__ = "form_fields"
    __table_args__ = (UniqueConstraint("form_id", "code", name="uq_form_field_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    form_id: Mapped[int] = mapped_column(ForeignKey("forms.id"), index=True)
    code: Mapped[str] = mapped_column(String(50))
    label: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(20))
    options: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    default_value: Mapped[str] = mapped_column(Text, default="")
    placeholder: Mapped[str] = mapped_column(String(255), default="")
    help_text: Mapped[str] = mapped_column(Text, default="")
    visibility_condition: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class FormAssignment(Base):
    __tablename__ = "form_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    form_id: Mapped[int] = mapped_column(ForeignKey("forms.id"), index=True)
    office_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    office_code: Mapped[str] = mapped_column(String(50), default="")
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    purpose: Mapped[str] = mapped_column(String(20))
    can_edit: Mapped[bool] = mapped_column(Boolean, default=True)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False)
    can_review: Mapped[bool] = mapped_column(Boolean, default=False)
    granted_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "form_id": self.form_id,
            "office_kind": self.office_kind,
            "office_code": self.office_code,
            "user_id": self.user_id,
            "purpose": self.purpose,
            "can_edit": self.can_edit,
            "can_delete": self.can_delete,
            "can_review": self.can_review,
            "granted_by": self.granted_by,
            "granted_at": self.granted_at.isoformat() if self.granted_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }


class Submission(Base):
    __tablename__ = "form_submissions"
    __table_args__ = (
        UniqueConstraint("form_id", "entity_kind", "entity_id", "version", name="uq_submission_version"),
        Index(
            "uq_submission_latest",
            "form_id",
            "entity_kind",
            "entity_id",
            unique=True,
            sqlite_where=text("is_latest = 1"),
            postgresql_where=text("is_latest"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    form_id: Mapped[int] = mapped_column(ForeignKey("forms.id"), index=True)
    entity_kind: Mapped[str] = mapped_column(String(10))
    entity_id: Mapped[str] = mapped_column(String(50))
    family_id: Mapped[str] = mapped_column(String(50), index=True)
    office_kind: Mapped[str] = mapped_column(String(20), default="gn")
    office_code: Mapped[str] = mapped_column(String(50), index=True)
    submitted_by: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    total_fields: Mapped[int] = mapped_column(Integer, default=0)
    completed_fields: Mapped[int] = mapped_column(Integer, default=0)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str] = mapped_column(Text, default="")
    version: Mapped[int] = mapped_column(Integer, default=1)
    is_latest: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def chain_key(self):
        return (self.form_id, self.entity_kind, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "form_id": self.form_id,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "family_id": self.family_id,
            "office_kind": self.office_kind,
            "office_code": self.office_code,
            "submitted_by": self.submitted_by,
            "status": self.status,
            "total_fields": self.total_fields,
            "completed_fields": self.completed_fields,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_notes": self.review_notes,
            "version": self.version,
            "is_latest": self.is_latest,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Response(Base):
    __tablename__ = "form_responses"
    __table_args__ = (UniqueConstraint("submission_id", "field_id", name="uq_response_field"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_id: Mapped[int] = mapped_column(ForeignKey("form_submissions.id"), index=True)
    field_id: Mapped[int] = mapped_column(ForeignKey("form_fields.id"), index=True)
    value: Mapped[str] = mapped_column(Text, default="")
    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def is_filled(self) -> bool:
        if self.file_path:
            return True
        text = (self.value or "").strip()
        return text not in ("", "[]")

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "submission_id": self.submission_id,
            "field_id": self.field_id,
            "value": self.value,
        }
        if self.file_path:
            result.update(
                {
                    "file_path": self.file_path,
                    "file_name": self.file_name,
                    "file_size": self.file_size,
                    "file_type": self.file_type,
                }
            )
        return result


__all__ = ["Base", "Form", "FormField", "FormAssignment", "Submission", "Response"]
