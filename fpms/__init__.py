"""FPMS form collection core.

A configurable data-collection core for a family/citizen registry run by a
four-tier office hierarchy. It provides:
- A form catalog with typed field schemas
- An assignment directory granting offices or users fill/review rights
- Versioned submission chains with a draft/submitted/reviewed lifecycle
- A required-field gate evaluated against the form's current schema
- An audit trail of every write, emitted after commit

Basic usage:
    >>> from fpms import FormsAPI, Principal
    >>> api = FormsAPI.from_settings()
    >>> form = api.create_form({"code": "FAM01", "name": "Household survey", "target_entity": "family"})
    >>> api.add_field(form["form_id"], {"code": "head", "label": "Head of household", "kind": "text"}).message
    'Field added successfully'
"""

__version__ = "0.1.0"
__author__ = "FPMS Team"

VERSION = (0, 1, 0)

from fpms.api import FormsAPI
from fpms.errors import OperationResult
from fpms.runtime import WorkflowEngine
from fpms.types import EntityKind, OfficeKind, Principal, ReviewAction, SubmissionStatus

__all__ = [
    "__version__",
    "VERSION",
    "FormsAPI",
    "OperationResult",
    "WorkflowEngine",
    "EntityKind",
    "OfficeKind",
    "Principal",
    "ReviewAction",
    "SubmissionStatus",
]
