"""Tests for the environment checks of the super admin bootstrap script."""

import importlib.util
import os

import pytest

from conftest import ROOT


@pytest.fixture
def bootstrap(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "JWT_SECRET", "FIELD_ENCRYPTION_KEY", "USE_MEMORY_STORE"):
        monkeypatch.delenv(name, raising=False)
    spec = importlib.util.spec_from_file_location(
        "bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_memory_store_gets_generated_secret(bootstrap):
    assert bootstrap.prepare_environment() is None
    assert os.environ["USE_MEMORY_STORE"] == "true"
    assert len(os.environ["JWT_SECRET"]) >= 32


def test_database_without_key_material_is_refused(bootstrap, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://db:5432/campusauth")
    error = bootstrap.prepare_environment()
    assert "FIELD_ENCRYPTION_KEY" in error
    assert "JWT_SECRET" not in os.environ


def test_database_key_can_come_from_env_file(bootstrap, tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://db:5432/campusauth")
    (tmp_path / ".env").write_text("JWT_SECRET=" + "s" * 40 + "\n")
    assert bootstrap.prepare_environment() is None
    assert "JWT_SECRET" not in os.environ


def test_field_key_alone_is_enough(bootstrap, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://db:5432/campusauth")
    monkeypatch.setenv("FIELD_ENCRYPTION_KEY", "f" * 40)
    assert bootstrap.prepare_environment() is None
    assert "JWT_SECRET" in os.environ
