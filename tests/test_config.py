"""Tests for settings loading and logging setup."""

import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from fpms.config import DEFAULT_ALLOWED_UPLOAD_TYPES, Settings, load_settings
from fpms.logging_setup import configure_logging


class TestSettings:
    def test_defaults(self, monkeypatch):
        for key in ("FPMS_DATABASE_URL", "FPMS_UPLOAD_DIR", "FPMS_LOG_LEVEL", "FPMS_UPLOAD_MAX_BYTES"):
            monkeypatch.delenv(key, raising=False)
        settings = load_settings()
        assert settings.database_url == "sqlite+pysqlite:///:memory:"
        assert settings.upload_max_bytes == 5 * 1024 * 1024
        assert settings.allowed_upload_types == DEFAULT_ALLOWED_UPLOAD_TYPES
        assert settings.duplicate_suffix == "_copy"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FPMS_DATABASE_URL", "sqlite+pysqlite:///fpms.db")
        monkeypatch.setenv("FPMS_UPLOAD_MAX_BYTES", " 1024 ")
        monkeypatch.setenv("FPMS_ALLOWED_UPLOAD_TYPES", "application/pdf, image/png,")
        monkeypatch.setenv("FPMS_LOG_LEVEL", "debug")
        settings = load_settings()
        assert settings.database_url == "sqlite+pysqlite:///fpms.db"
        assert settings.upload_max_bytes == 1024
        assert settings.allowed_upload_types == ("application/pdf", "image/png")
        assert settings.log_level == "DEBUG"

    def test_bad_size(self, monkeypatch):
        monkeypatch.setenv("FPMS_UPLOAD_MAX_BYTES", "lots")
        with pytest.raises(ValueError):
            load_settings()

    def test_unknown_level(self):
        with pytest.raises(PydanticValidationError):
            Settings(log_level="chatty")

    def test_blank_suffix(self):
        with pytest.raises(PydanticValidationError):
            Settings(duplicate_suffix="  ")


class TestConfigureLogging:
    def test_leaves_existing_handlers_alone(self):
        root = logging.getLogger()
        handler = logging.NullHandler()
        root.addHandler(handler)
        try:
            before = list(root.handlers)
            configure_logging("DEBUG")
            assert root.handlers == before
        finally:
            root.removeHandler(handler)
