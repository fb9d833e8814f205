"""Submission state machine.

Enforces the legal lifecycle transitions of one submission version:

    draft --submit--> submitted
    submitted --mark under review--> pending_review
    submitted / pending_review --approve--> approved   [terminal]
    submitted / pending_review --reject--> rejected     [terminal]

Leaving a terminal state (or editing a draft) is not a transition of the
row itself: the store saves a new version of the chain instead.

Usage:
    >>> sm = SubmissionStateMachine(submission_id=5)
    >>> sm.transition_to(SubmissionStatus.SUBMITTED, actor_id=7)
    >>> sm.state
    <SubmissionStatus.SUBMITTED: 'submitted'>
    >>> [r.action.value for r in sm.get_records()]
    ['submission.submitted']
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from fpms.errors import StateError
from fpms.events import AuditRecord
from fpms.types import EventType, SubmissionStatus


class InvalidStateTransitionError(StateError):
    """Raised when attempting a transition the lifecycle does not allow.

    Attributes:
        current_state: The state before the attempted transition
        target_state: The state that was attempted
    """

    def __init__(self, current_state: SubmissionStatus, target_state: SubmissionStatus, message: str):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(message)


STATE_TO_EVENT_TYPE: Dict[SubmissionStatus, EventType] = {
    SubmissionStatus.SUBMITTED: EventType.SUBMISSION_SUBMITTED,
    SubmissionStatus.PENDING_REVIEW: EventType.REVIEW_STARTED,
    SubmissionStatus.APPROVED: EventType.REVIEW_APPROVED,
    SubmissionStatus.REJECTED: EventType.REVIEW_REJECTED,
}


VALID_TRANSITIONS: Dict[SubmissionStatus, Set[SubmissionStatus]] = {
    SubmissionStatus.DRAFT: {SubmissionStatus.SUBMITTED},
    SubmissionStatus.SUBMITTED: {
        SubmissionStatus.PENDING_REVIEW,
        SubmissionStatus.APPROVED,
        SubmissionStatus.REJECTED,
    },
    SubmissionStatus.PENDING_REVIEW: {
        SubmissionStatus.APPROVED,
        SubmissionStatus.REJECTED,
    },
    # Terminal
    SubmissionStatus.APPROVED: set(),
    SubmissionStatus.REJECTED: set(),
}

REVIEWABLE_STATES = frozenset({SubmissionStatus.SUBMITTED, SubmissionStatus.PENDING_REVIEW})

# States from which a new version of the chain may be saved
EDITABLE_STATES = frozenset({SubmissionStatus.DRAFT, SubmissionStatus.REJECTED, SubmissionStatus.APPROVED})


@dataclass
class SubmissionStateMachine:
    """Lifecycle guard for one submission row.

    Attributes:
        submission_id: Id of the submission row
        state: Current status
    """

    submission_id: Optional[int]
    state: SubmissionStatus = SubmissionStatus.DRAFT
    _records: List[AuditRecord] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        if not isinstance(self.state, SubmissionStatus):
            self.state = SubmissionStatus(self.state)

    def can_transition_to(self, target_state: SubmissionStatus) -> bool:
        return target_state in VALID_TRANSITIONS.get(self.state, set())

    def transition_to(self, target_state: SubmissionStatus, actor_id: Optional[int] = None) -> None:
        """Move to ``target_state`` and record an audit entry.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if not self.can_transition_to(target_state):
            if VALID_TRANSITIONS[self.state]:
                message = (
                    f"Cannot move a submission from '{self.state.value}' to '{target_state.value}'. "
                    f"Allowed: {', '.join(sorted(s.value for s in VALID_TRANSITIONS[self.state]))}"
                )
            else:
                message = (
                    f"The submission is already {self.state.value}; "
                    f"save a new version to change it."
                )
            raise InvalidStateTransitionError(self.state, target_state, message)

        old_state = self.state
        self.state = target_state
        self._records.append(
            AuditRecord(
                actor_id=actor_id,
                action=STATE_TO_EVENT_TYPE[target_state],
                entity_table="form_submissions",
                entity_id=self.submission_id,
                old_value={"status": old_state.value},
                new_value={"status": target_state.value},
            )
        )

    def is_terminal(self) -> bool:
        return len(VALID_TRANSITIONS[self.state]) == 0

    def is_reviewable(self) -> bool:
        return self.state in REVIEWABLE_STATES

    def get_records(self) -> List[AuditRecord]:
        """Audit records produced by this machine, oldest first."""
        return list(self._records)


__all__ = [
    "SubmissionStateMachine",
    "InvalidStateTransitionError",
    "VALID_TRANSITIONS",
    "REVIEWABLE_STATES",
    "EDITABLE_STATES",
    "STATE_TO_EVENT_TYPE",
]
