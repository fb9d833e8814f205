"""Runtime settings for the FPMS form collection core.

Settings are read from environment variables over safe development
defaults and validated with pydantic:

- FPMS_DATABASE_URL: SQLAlchemy URL (default: in-memory SQLite)
- FPMS_UPLOAD_DIR: directory used by the local file storage adapter
- FPMS_UPLOAD_MAX_BYTES: size ceiling for uploaded files (default 5 MiB)
- FPMS_ALLOWED_UPLOAD_TYPES: comma-separated MIME allow-list
- FPMS_DUPLICATE_SUFFIX: suffix used when duplicating a form code
- FPMS_LOG_LEVEL: root log level
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Tuple

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_UPLOAD_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
)


class Settings(BaseModel):
    database_url: str = "sqlite+pysqlite:///:memory:"
    upload_dir: str = "uploads/form_files"
    upload_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    allowed_upload_types: Tuple[str, ...] = DEFAULT_ALLOWED_UPLOAD_TYPES
    duplicate_suffix: str = "_copy"
    log_level: str = "INFO"

    @field_validator("database_url", "duplicate_suffix")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        return v

    @field_validator("log_level")
    @classmethod
    def level_must_be_known(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)


def load_settings() -> Settings:
    """Load settings with validation.

    Precedence (highest first):
    1) Environment variables
    2) Defaults suitable for development and tests
    """
    values: dict = {}
    if _env("FPMS_DATABASE_URL"):
        values["database_url"] = _env("FPMS_DATABASE_URL")
    if _env("FPMS_UPLOAD_DIR"):
        values["upload_dir"] = _env("FPMS_UPLOAD_DIR")
    if _env("FPMS_DUPLICATE_SUFFIX"):
        values["duplicate_suffix"] = _env("FPMS_DUPLICATE_SUFFIX")
    if _env("FPMS_LOG_LEVEL"):
        values["log_level"] = _env("FPMS_LOG_LEVEL")
    allowed = _env("FPMS_ALLOWED_UPLOAD_TYPES")
    if allowed:
        values["allowed_upload_types"] = tuple(t.strip() for t in allowed.split(",") if t.strip())

    try:
        max_bytes = _env("FPMS_UPLOAD_MAX_BYTES")
        if max_bytes:
            values["upload_max_bytes"] = int(max_bytes.strip())
        return Settings(**values)
    except (ValueError, PydanticValidationError) as e:
        logger.error("Invalid FPMS settings: %s", e)
        raise


__all__ = ["Settings", "load_settings", "DEFAULT_ALLOWED_UPLOAD_TYPES"]
