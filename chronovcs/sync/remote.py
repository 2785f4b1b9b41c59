"""Remote binding of a local repository, stored in ``.vcs/remote.json``."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator

from chronovcs.config import REMOTE_FILE, VCS_DIR
from chronovcs.errors import NotFoundError, ValidationError
from chronovcs.models import WireModel
from chronovcs.vcs.fileio import atomic_write_text

logger = logging.getLogger(__name__)


class RemoteConfig(WireModel):
    base_url: str
    repo_key: str

    @field_validator("base_url", "repo_key")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @staticmethod
    def path_for(root: str | Path) -> Path:
        return Path(root) / VCS_DIR / REMOTE_FILE

    @classmethod
    def load(cls, root: str | Path) -> RemoteConfig:
        path = cls.path_for(root)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(f"No remote configured ({path} is missing).") from None
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid remote config {path}: {exc}") from exc
        try:
            return cls.from_wire(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid remote config {path}: {exc}") from exc

    def save(self, root: str | Path) -> Path:
        path = self.path_for(root)
        atomic_write_text(path, json.dumps(self.to_wire(), indent=2))
        logger.debug("Saved remote %s (%s)", self.base_url, self.repo_key)
        return path
