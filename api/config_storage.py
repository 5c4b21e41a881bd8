"""Rollout definition storage.

Definitions live as one JSON document each under ``definitions/``. When a run
starts, the definition it runs with is frozen under ``runs/<run_id>.json``, so
editing or deleting the definition later never changes what that run cuts
over to or decommissions.
"""

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from api.models import RolloutDefinitionResolved
from api.settings import settings

logger = logging.getLogger(__name__)


class DefinitionListing(BaseModel):
    """Readable definitions plus the names of stored files that failed to load."""

    definitions: list[RolloutDefinitionResolved]
    skipped: list[str]


class DefinitionStore(ABC):

    @abstractmethod
    def save(self, definition: RolloutDefinitionResolved) -> RolloutDefinitionResolved:
        """Store a definition under its rollout_id and return the stored copy."""

    @abstractmethod
    def get(self, rollout_id: str) -> Optional[RolloutDefinitionResolved]:
        pass

    @abstractmethod
    def delete(self, rollout_id: str) -> bool:
        """Delete a definition. Copies frozen for runs are kept."""

    @abstractmethod
    def list_all(self) -> DefinitionListing:
        pass

    @abstractmethod
    def exists(self, rollout_id: str) -> bool:
        pass

    @abstractmethod
    def freeze(self, run_id: str, definition: RolloutDefinitionResolved) -> None:
        """Keep the definition a run was started with."""

    @abstractmethod
    def frozen(self, run_id: str) -> Optional[RolloutDefinitionResolved]:
        """Definition a run was started with, if it was frozen."""


class FileDefinitionStore(DefinitionStore):
    """JSON files on local disk. Writes go through a temp file and a rename."""

    def __init__(self, base_path: str = "config") -> None:
        self.base_path = Path(base_path)
        self.definitions_dir = self.base_path / "definitions"
        self.runs_dir = self.base_path / "runs"
        self.definitions_dir.mkdir(parents=True, exist_ok=True)
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def _definition_path(self, rollout_id: str) -> Path:
        return self.definitions_dir / f"{rollout_id}.json"

    @staticmethod
    def _write(path: Path, definition: RolloutDefinitionResolved) -> None:
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(definition.model_dump_json(indent=2))
        os.replace(tmp_path, path)

    @staticmethod
    def _read(path: Path) -> Optional[RolloutDefinitionResolved]:
        if not path.exists():
            return None
        return RolloutDefinitionResolved.model_validate_json(path.read_text())

    def save(self, definition: RolloutDefinitionResolved) -> RolloutDefinitionResolved:
        stored = definition.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self._write(self._definition_path(stored.rollout_id), stored)
        logger.info("Saved rollout definition %s", stored.rollout_id)
        return stored

    def get(self, rollout_id: str) -> Optional[RolloutDefinitionResolved]:
        return self._read(self._definition_path(rollout_id))

    def delete(self, rollout_id: str) -> bool:
        path = self._definition_path(rollout_id)
        if not path.exists():
            return False

        path.unlink()
        logger.info("Deleted rollout definition %s", rollout_id)
        return True

    def list_all(self) -> DefinitionListing:
        definitions: list[RolloutDefinitionResolved] = []
        skipped: list[str] = []
        for path in sorted(self.definitions_dir.glob("*.json")):
            try:
                definitions.append(RolloutDefinitionResolved.model_validate_json(path.read_text()))
            except ValidationError as e:
                logger.warning("Skipping unreadable rollout definition %s: %s", path.name, e)
                skipped.append(path.name)
        return DefinitionListing(definitions=definitions, skipped=skipped)

    def exists(self, rollout_id: str) -> bool:
        return self._definition_path(rollout_id).exists()

    def freeze(self, run_id: str, definition: RolloutDefinitionResolved) -> None:
        self._write(self.runs_dir / f"{run_id}.json", definition)

    def frozen(self, run_id: str) -> Optional[RolloutDefinitionResolved]:
        return self._read(self.runs_dir / f"{run_id}.json")


config_storage = FileDefinitionStore(base_path=settings.config_storage_path)
