"""Shared fixtures.

Every test gets a fresh in-memory SQLite database, a frozen clock, an audit
trail recording into memory, and the core components wired against them.
"""

from datetime import datetime, timedelta

import pytest

from fpms.assignments import AssignmentDirectory
from fpms.catalog import FormCatalog
from fpms.collaborators import LocalFileStorage, StaticFamilyRegistry
from fpms.config import Settings
from fpms.db import Database
from fpms.events import AuditTrail, MemoryAuditSink
from fpms.runtime import WorkflowEngine
from fpms.types import OfficeKind, Principal

NOW = datetime(2026, 3, 2, 9, 30)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def settings(tmp_path):
    return Settings(upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def db():
    database = Database("sqlite+pysqlite:///:memory:")
    database.create_schema()
    yield database
    database.drop_schema()
    database.engine.dispose()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def trail(audit):
    trail = AuditTrail()
    trail.on_any(audit)
    return trail


@pytest.fixture
def catalog(db, trail, settings, clock):
    return FormCatalog(db, trail=trail, settings=settings, clock=clock)


@pytest.fixture
def assignments(db, trail, clock):
    return AssignmentDirectory(db, trail=trail, clock=clock)


@pytest.fixture
def families():
    return StaticFamilyRegistry({"M-100": "F-100", "M-101": "F-100", "M-200": "F-200"})


@pytest.fixture
def storage(settings):
    return LocalFileStorage(settings=settings)


@pytest.fixture
def workflow(db, catalog, assignments, storage, families, trail, clock):
    return WorkflowEngine(db, catalog, assignments, storage=storage, families=families, trail=trail, clock=clock)


@pytest.fixture
def admin():
    return Principal(user_id=1, office_kind=OfficeKind.MINISTRY, office_code="MOHA", name="Administrator")


@pytest.fixture
def officer():
    return Principal(user_id=10, office_kind=OfficeKind.LOCAL_OFFICE, office_code="GN-001")


@pytest.fixture
def colleague():
    return Principal(user_id=11, office_kind=OfficeKind.LOCAL_OFFICE, office_code="GN-001")


@pytest.fixture
def reviewer():
    return Principal(user_id=20, office_kind=OfficeKind.DIVISION, office_code="DIV-01")


@pytest.fixture
def outsider():
    return Principal(user_id=30, office_kind=OfficeKind.LOCAL_OFFICE, office_code="GN-999")


@pytest.fixture
def family_form(catalog, assignments, admin, reviewer):
    """FAM01: two required fields (head_name, members) and an optional note.

    The GN-001 office may fill it; user 20 may review it.
    """
    form_id = catalog.create_form(
        {
            "code": "FAM01",
            "name": "Household survey",
            "target_entity": "family",
            "max_submissions_per_entity": 0,
        },
        actor=admin,
    )
    catalog.add_field(form_id, {"code": "head_name", "label": "Head of household", "kind": "text", "is_required": True})
    catalog.add_field(
        form_id,
        {"code": "members", "label": "Members", "kind": "number", "is_required": True, "options": {"minimum": 1}},
    )
    catalog.add_field(form_id, {"code": "notes", "label": "Notes", "kind": "textarea"})
    assignments.assign(form_id, {"office_kind": "gn", "office_code": "GN-001", "purpose": "fill"}, granted_by=admin)
    assignments.assign(form_id, {"user_id": reviewer.user_id, "purpose": "review"}, granted_by=admin)
    return form_id


@pytest.fixture
def field_ids(catalog, family_form):
    return {f.code: f.id for f in catalog.fields_for(family_form)}
