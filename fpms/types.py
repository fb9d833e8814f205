"""Core type definitions for the FPMS form collection core.

This module defines the fundamental types used throughout the package:
- EntityKind / TargetEntity: what a submission (or a form) is about
- FieldKind: the enumerated set of field kinds a form field may take
- OfficeKind: the four tiers of the office hierarchy
- AssignmentPurpose: what a grant allows (fill, review or both)
- SubmissionStatus: lifecycle states of a submission version
- ReviewAction: reviewer decisions
- EventType: audit action tags recorded for every write
- FieldErrorCode / ErrorKind: structured error categories
- Principal: the resolved identity every operation is performed by

These types form the contract between callers and the workflow core.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EntityKind(str, Enum):
    """The kind of registry record a submission is filed against."""
    FAMILY = "family"
    MEMBER = "member"


class TargetEntity(str, Enum):
    """The kind of registry record a form may be filled for."""
    FAMILY = "family"
    MEMBER = "member"
    BOTH = "both"

    def accepts(self, entity_kind: EntityKind) -> bool:
        """Check whether a form with this target accepts the entity kind."""
        return self is TargetEntity.BOTH or self.value == EntityKind(entity_kind).value


class FieldKind(str, Enum):
    """Field kinds a form field may be declared with."""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATE = "date"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    DROPDOWN = "dropdown"
    EMAIL = "email"
    PHONE = "phone"
    YESNO = "yesno"
    FILE = "file"
    RATING = "rating"


CHOICE_KINDS = frozenset({FieldKind.RADIO, FieldKind.CHECKBOX, FieldKind.DROPDOWN})
TEXTUAL_KINDS = frozenset({FieldKind.TEXT, FieldKind.TEXTAREA, FieldKind.EMAIL, FieldKind.PHONE})


class OfficeKind(str, Enum):
    """Tiers of the administrative office hierarchy, top-down."""
    MINISTRY = "moha"
    DISTRICT = "district"
    DIVISION = "division"
    LOCAL_OFFICE = "gn"


class AssignmentPurpose(str, Enum):
    """What a grant was issued for."""
    FILL = "fill"
    REVIEW = "review"
    FILL_AND_REVIEW = "fill_and_review"

    @property
    def grants_fill(self) -> bool:
        return self in (AssignmentPurpose.FILL, AssignmentPurpose.FILL_AND_REVIEW)

    @property
    def grants_review(self) -> bool:
        return self in (AssignmentPurpose.REVIEW, AssignmentPurpose.FILL_AND_REVIEW)


class SubmissionStatus(str, Enum):
    """Submission lifecycle states.

    Terminal states: approved, rejected. Leaving a terminal state is only
    possible by saving a new version of the submission chain.
    """
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewAction(str, Enum):
    """Decisions a reviewer can take on a submitted version."""
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def target_status(self) -> SubmissionStatus:
        if self is ReviewAction.APPROVE:
            return SubmissionStatus.APPROVED
        return SubmissionStatus.REJECTED


class EventType(str, Enum):
    """Audit action tags.

    Every write performed by the core emits one typed audit record.
    """
    FORM_CREATED = "form.created"
    FORM_UPDATED = "form.updated"
    FORM_DELETED = "form.deleted"
    FORM_DUPLICATED = "form.duplicated"
    FORM_STATUS_CHANGED = "form.status_changed"
    FIELD_ADDED = "field.added"
    FIELD_UPDATED = "field.updated"
    FIELD_DELETED = "field.deleted"
    FIELDS_REORDERED = "field.reordered"
    ASSIGNMENT_CREATED = "assignment.created"
    ASSIGNMENT_REVOKED = "assignment.revoked"
    SUBMISSION_CREATED = "submission.created"
    SUBMISSION_VERSIONED = "submission.versioned"
    RESPONSE_SAVED = "response.saved"
    SUBMISSION_SUBMITTED = "submission.submitted"
    REVIEW_STARTED = "review.started"
    REVIEW_APPROVED = "review.approved"
    REVIEW_REJECTED = "review.rejected"
    SUBMISSION_DELETED = "submission.deleted"


class FieldErrorCode(str, Enum):
    """Validation error codes for individual field failures."""
    REQUIRED = "required"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_VALUE = "invalid_value"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    UNKNOWN_FIELD = "unknown_field"
    FILE_REQUIRED = "file_required"
    FILE_TOO_LARGE = "file_too_large"
    FILE_WRONG_TYPE = "file_wrong_type"
    CUSTOM = "custom"


class ErrorKind(str, Enum):
    """Error categories surfaced to callers.

    Only PERSISTENCE is considered possibly non-recoverable.
    """
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    STATE = "state"
    PERSISTENCE = "persistence"


@dataclass(frozen=True)
class Principal:
    """Resolved identity of the caller of a core operation.

    The core never authenticates; the identity/session collaborator resolves
    the principal and passes it into every call explicitly.

    Attributes:
        user_id: Numeric id of the acting user
        office_kind: Tier of the office the user works for
        office_code: Code of that office (e.g. a local office id)
        name: Optional display name

    Examples:
        >>> officer = Principal(user_id=7, office_kind=OfficeKind.LOCAL_OFFICE, office_code="GN-001")
        >>> officer.office_kind.value
        'gn'
    """
    user_id: int
    office_kind: OfficeKind
    office_code: str
    name: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.office_kind, str) and not isinstance(self.office_kind, OfficeKind):
            object.__setattr__(self, "office_kind", OfficeKind(self.office_kind))


__all__ = [
    "EntityKind",
    "TargetEntity",
    "FieldKind",
    "CHOICE_KINDS",
    "TEXTUAL_KINDS",
    "OfficeKind",
    "AssignmentPurpose",
    "SubmissionStatus",
    "ReviewAction",
    "EventType",
    "FieldErrorCode",
    "ErrorKind",
    "Principal",
]
