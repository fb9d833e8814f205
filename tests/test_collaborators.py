"""Tests for the reference collaborator adapters."""

from pathlib import Path

import pytest

from fpms.collaborators import (
    FamilyRegistry,
    FileStorage,
    FileUpload,
    JurisdictionResolver,
    LocalFileStorage,
    OfficeHierarchy,
    StaticFamilyRegistry,
)
from fpms.errors import PersistenceError, ValidationError
from fpms.types import FieldErrorCode, OfficeKind


@pytest.fixture
def tree():
    tree = OfficeHierarchy()
    tree.add(OfficeKind.MINISTRY, "MOHA")
    tree.add(OfficeKind.DISTRICT, "DIST-01", parent=(OfficeKind.MINISTRY, "MOHA"))
    tree.add(OfficeKind.DIVISION, "DIV-01", parent=(OfficeKind.DISTRICT, "DIST-01"))
    tree.add(OfficeKind.DIVISION, "DIV-02", parent=(OfficeKind.DISTRICT, "DIST-01"))
    tree.add(OfficeKind.LOCAL_OFFICE, "GN-001", parent=(OfficeKind.DIVISION, "DIV-01"))
    tree.add(OfficeKind.LOCAL_OFFICE, "GN-002", parent=(OfficeKind.DIVISION, "DIV-02"))
    return tree


class TestLocalFileStorage:
    """Test the local directory adapter."""

    def test_store(self, settings, tmp_path):
        storage = LocalFileStorage(settings=settings)
        stored = storage.store(7, b"%PDF-1.4", "deed.pdf", "application/pdf")
        assert stored.name == "deed.pdf"
        assert stored.size == 8
        assert stored.content_type == "application/pdf"
        assert stored.path.startswith(str(tmp_path / "uploads"))
        assert "field_7_" in stored.path
        assert stored.path.endswith(".pdf")
        with open(stored.path, "rb") as handle:
            assert handle.read() == b"%PDF-1.4"

    def test_stored_names_are_unique(self, settings):
        storage = LocalFileStorage(settings=settings)
        first = storage.store(7, b"a", "photo.png", "image/png")
        second = storage.store(7, b"b", "photo.png", "image/png")
        assert first.path != second.path

    def test_size_limit(self, settings):
        storage = LocalFileStorage(settings=settings, max_bytes=4)
        with pytest.raises(ValidationError) as exc_info:
            storage.store(7, b"12345", "a.pdf", "application/pdf")
        assert exc_info.value.fields[0].code == FieldErrorCode.FILE_TOO_LARGE

    def test_type_allow_list(self, settings):
        storage = LocalFileStorage(settings=settings)
        with pytest.raises(ValidationError) as exc_info:
            storage.store(7, b"MZ", "tool.exe", "application/x-msdownload")
        assert exc_info.value.fields[0].code == FieldErrorCode.FILE_WRONG_TYPE

    def test_unwritable_root(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        storage = LocalFileStorage(root=blocker / "uploads", allowed_types=["text/plain"])
        with pytest.raises(PersistenceError):
            storage.store(1, b"hello", "a.txt", "text/plain")

    def test_discard(self, settings):
        storage = LocalFileStorage(settings=settings)
        stored = storage.store(7, b"%PDF-1.4", "deed.pdf", "application/pdf")
        storage.discard(stored)
        assert not Path(stored.path).exists()
        storage.discard(stored)

    def test_satisfies_protocol(self, settings):
        assert isinstance(LocalFileStorage(settings=settings), FileStorage)

    def test_upload_size(self):
        assert FileUpload(b"abc", "a.txt", "text/plain").size == 3


class TestStaticFamilyRegistry:
    def test_lookup(self, families):
        assert families.family_of("M-100") == "F-100"
        assert families.family_of("M-999") is None

    def test_add(self):
        registry = StaticFamilyRegistry()
        registry.add(5, 9)
        assert registry.family_of("5") == "9"
        assert isinstance(registry, FamilyRegistry)


class TestOfficeHierarchy:
    """Test jurisdiction answers over the office tree."""

    def test_office_manages_itself(self, tree):
        assert tree.manages(OfficeKind.LOCAL_OFFICE, "GN-001", OfficeKind.LOCAL_OFFICE, "GN-001")

    def test_ancestors_manage(self, tree):
        assert tree.manages(OfficeKind.DIVISION, "DIV-01", OfficeKind.LOCAL_OFFICE, "GN-001")
        assert tree.manages(OfficeKind.DISTRICT, "DIST-01", OfficeKind.LOCAL_OFFICE, "GN-002")

    def test_siblings_do_not(self, tree):
        assert not tree.manages(OfficeKind.DIVISION, "DIV-01", OfficeKind.LOCAL_OFFICE, "GN-002")
        assert not tree.manages(OfficeKind.LOCAL_OFFICE, "GN-001", OfficeKind.DIVISION, "DIV-01")

    def test_ministry_manages_everything(self, tree):
        assert tree.manages(OfficeKind.MINISTRY, "MOHA", OfficeKind.LOCAL_OFFICE, "GN-404")

    def test_ancestors(self, tree):
        assert list(tree.ancestors(OfficeKind.LOCAL_OFFICE, "GN-001")) == [
            (OfficeKind.DIVISION, "DIV-01"),
            (OfficeKind.DISTRICT, "DIST-01"),
            (OfficeKind.MINISTRY, "MOHA"),
        ]

    def test_parent_must_be_higher(self, tree):
        with pytest.raises(ValidationError):
            tree.add(OfficeKind.DISTRICT, "DIST-02", parent=(OfficeKind.LOCAL_OFFICE, "GN-001"))

    def test_accepts_string_kinds(self, tree):
        assert tree.manages("division", "DIV-02", "gn", "GN-002")
        assert isinstance(tree, JurisdictionResolver)
