"""External collaborators.

The core depends on four collaborators it does not own, described here as
protocols, plus small reference adapters usable in development and tests:

- FileStorage: persists uploaded bytes, returns a stored reference
- FamilyRegistry: resolves a member id to its owning family id
- JurisdictionResolver: answers "does office A manage office B"
- AuditSink: see fpms.events

The identity/session collaborator is represented by the Principal value
passed into every operation.
"""

import logging
import mimetypes
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from typing_extensions import Protocol, runtime_checkable

from fpms.config import Settings, load_settings
from fpms.errors import FieldError, PersistenceError, ValidationError
from fpms.types import FieldErrorCode, OfficeKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileUpload:
    """An uploaded file as handed to the workflow.

    Attributes:
        data: Raw bytes
        name: Original file name as declared by the client
        content_type: Declared MIME type
    """
    data: bytes
    name: str
    content_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredFile:
    """Reference to a file accepted by the storage collaborator."""
    path: str
    name: str
    size: int
    content_type: str


@runtime_checkable
class FileStorage(Protocol):
    def store(self, field_id: int, data: bytes, declared_name: str, declared_type: str) -> StoredFile:
        """Persist the bytes; raise ValidationError on rejection."""
        ...

    def discard(self, stored: StoredFile) -> None:
        """Remove a stored file whose transaction did not commit."""
        ...


@runtime_checkable
class FamilyRegistry(Protocol):
    def family_of(self, member_id: str) -> Optional[str]:
        """Owning family id of a member, or None if unknown."""
        ...


@runtime_checkable
class JurisdictionResolver(Protocol):
    def manages(self, manager_kind: OfficeKind, manager_code: str, office_kind: OfficeKind, office_code: str) -> bool:
        """Whether office (manager_kind, manager_code) manages the other office."""
        ...


class LocalFileStorage:
    """Stores uploads under a local directory.

    Enforces the configured size ceiling and MIME allow-list. Stored names
    are ``field_<field id>_<unix time>_<random token>.<ext>``.
    """

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        max_bytes: Optional[int] = None,
        allowed_types: Optional[Iterable[str]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or load_settings()
        self.root = Path(root if root is not None else settings.upload_dir)
        self.max_bytes = max_bytes if max_bytes is not None else settings.upload_max_bytes
        self.allowed_types = tuple(allowed_types if allowed_types is not None else settings.allowed_upload_types)

    def store(self, field_id: int, data: bytes, declared_name: str, declared_type: str) -> StoredFile:
        if len(data) > self.max_bytes:
            raise ValidationError(
                f"File too large (max {self.max_bytes // (1024 * 1024)}MB)",
                fields=[
                    FieldError(
                        path=str(field_id),
                        code=FieldErrorCode.FILE_TOO_LARGE,
                        message="File exceeds the size limit",
                        expected=self.max_bytes,
                        received=len(data),
                    )
                ],
            )
        if declared_type not in self.allowed_types:
            raise ValidationError(
                "Invalid file type. Allowed: JPG, PNG, GIF, PDF, DOC, DOCX",
                fields=[
                    FieldError(
                        path=str(field_id),
                        code=FieldErrorCode.FILE_WRONG_TYPE,
                        message="File type is not accepted",
                        expected=list(self.allowed_types),
                        received=declared_type,
                    )
                ],
            )

        extension = Path(declared_name).suffix or (mimetypes.guess_extension(declared_type) or "")
        stored_name = f"field_{field_id}_{int(time.time())}_{secrets.token_hex(6)}{extension}"
        target = self.root / stored_name
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error("Failed to store upload for field %s", field_id, exc_info=True)
            raise PersistenceError("Failed to save file") from e
        logger.info("Stored upload for field %s as %s (%d bytes)", field_id, stored_name, len(data))
        return StoredFile(path=str(target), name=declared_name, size=len(data), content_type=declared_type)

    def discard(self, stored: StoredFile) -> None:
        try:
            Path(stored.path).unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove orphaned upload %s", stored.path, exc_info=True)
        else:
            logger.info("Removed orphaned upload %s", stored.path)


class StaticFamilyRegistry:
    """Family registry backed by a fixed member -> family mapping."""

    def __init__(self, members: Optional[Mapping[str, str]] = None):
        self._members: Dict[str, str] = {str(k): str(v) for k, v in (members or {}).items()}

    def add(self, member_id: str, family_id: str) -> None:
        self._members[str(member_id)] = str(family_id)

    def family_of(self, member_id: str) -> Optional[str]:
        return self._members.get(str(member_id))


_TIER = {
    OfficeKind.MINISTRY: 0,
    OfficeKind.DISTRICT: 1,
    OfficeKind.DIVISION: 2,
    OfficeKind.LOCAL_OFFICE: 3,
}


class OfficeHierarchy:
    """Jurisdiction resolver over an explicit office tree.

    Each office is registered with its parent; the ministry is the root and
    manages every office. An office manages itself and everything below it.

    Examples:
        >>> tree = OfficeHierarchy()
        >>> tree.add(OfficeKind.DISTRICT, "D1")
        >>> tree.add(OfficeKind.DIVISION, "DV1", parent=(OfficeKind.DISTRICT, "D1"))
        >>> tree.add(OfficeKind.LOCAL_OFFICE, "GN1", parent=(OfficeKind.DIVISION, "DV1"))
        >>> tree.manages(OfficeKind.DISTRICT, "D1", OfficeKind.LOCAL_OFFICE, "GN1")
        True
    """

    def __init__(self):
        self._parents: Dict[Tuple[OfficeKind, str], Optional[Tuple[OfficeKind, str]]] = {}

    def add(self, kind: OfficeKind, code: str, parent: Optional[Tuple[OfficeKind, str]] = None) -> None:
        kind = OfficeKind(kind)
        if parent is not None:
            parent = (OfficeKind(parent[0]), parent[1])
            if _TIER[parent[0]] >= _TIER[kind]:
                raise ValidationError(f"A {parent[0].value} office cannot be the parent of a {kind.value} office")
        self._parents[(kind, code)] = parent

    def ancestors(self, kind: OfficeKind, code: str):
        node = self._parents.get((OfficeKind(kind), code))
        while node is not None:
            yield node
            node = self._parents.get(node)

    def manages(self, manager_kind: OfficeKind, manager_code: str, office_kind: OfficeKind, office_code: str) -> bool:
        manager = (OfficeKind(manager_kind), manager_code)
        office = (OfficeKind(office_kind), office_code)
        if manager[0] is OfficeKind.MINISTRY or manager == office:
            return True
        return manager in set(self.ancestors(*office))


__all__ = [
    "FileUpload",
    "StoredFile",
    "FileStorage",
    "FamilyRegistry",
    "JurisdictionResolver",
    "LocalFileStorage",
    "StaticFamilyRegistry",
    "OfficeHierarchy",
]
