"""Shared fixtures for the rollout control plane tests."""

import os
import tempfile

# Settings are read at import time; keep tests off the real database and config dir
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("CONFIG_STORAGE_PATH", tempfile.mkdtemp(prefix="rollout-config-"))

import pytest

from api.config_resolver import resolve_rollout_definition
from api.config_storage import FileDefinitionStore
from api.database import Database
from api.models import (
    EnvironmentDescriptor,
    RolloutDefinitionInput,
    RolloutDefinitionResolved,
    ValidationSettings,
)


@pytest.fixture
def database() -> Database:
    """Fresh in-memory database per test."""
    return Database("sqlite://")


@pytest.fixture
def storage(tmp_path) -> FileDefinitionStore:
    return FileDefinitionStore(base_path=str(tmp_path / "config"))


@pytest.fixture
def blue() -> EnvironmentDescriptor:
    return EnvironmentDescriptor(name="blue", version="1.20")


@pytest.fixture
def green() -> EnvironmentDescriptor:
    return EnvironmentDescriptor(name="green", version="1.21")


@pytest.fixture
def definition_input(blue, green) -> RolloutDefinitionInput:
    return RolloutDefinitionInput(
        rollout_id="blue-green",
        domain_name="example.com",
        hosted_zone_id="Z123EXAMPLE",
        environments=[blue, green],
        promotion_target="green",
        validation=ValidationSettings(max_attempts=3, interval_seconds=0.01),
    )


@pytest.fixture
def definition(definition_input) -> RolloutDefinitionResolved:
    return resolve_rollout_definition(definition_input)
