"""Global configuration: layout constants and layered settings."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Repository marker directory and its contents
VCS_DIR = ".vcs"
OBJECTS_DIR = "objects"
COMMITS_DIR = "commits"
REFS_HEADS_DIR = "refs/heads"
REFS_REMOTES_DIR = "refs/remotes"
HEAD_FILE = "HEAD"
CONFIG_FILE = "config"
INDEX_FILE = "index.json"
RELEASE_FILE = "RELEASE"
REMOTE_FILE = "remote.json"
SETTINGS_FILE = "settings.json"

# Ignore file at the working-tree root
IGNORE_FILE = ".chronoignore"

DEFAULT_BRANCH = "main"
DEFAULT_REMOTE = "origin"
DEFAULT_VERSIONING_MODE = "project"

# Sync protocol tuning
DEFAULT_BATCH_SIZE = 50
DEFAULT_HISTORY_LIMIT = 100

DEFAULT_AUTHOR = "ChronoVCS <chronovcs@localhost>"

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "CHRONO_ENV": {"default": "development", "description": "Environment profile"},
    "CHRONO_LOG_LEVEL": {"default": "INFO", "description": "Logging level for host applications (the library adds no handlers)"},
    "CHRONO_AUTHOR": {"default": DEFAULT_AUTHOR, "description": "Commit author identity"},
    "CHRONO_REMOTE_URL": {"default": "", "description": "Base URL of the sync server"},
    "CHRONO_TOKEN": {"default": "", "description": "Access token for the sync server (secret)"},
    "CHRONO_BATCH_SIZE": {"default": str(DEFAULT_BATCH_SIZE), "description": "Objects per batch request"},
    "CHRONO_HISTORY_LIMIT": {"default": str(DEFAULT_HISTORY_LIMIT), "description": "Commits per history page"},
    "CHRONO_SERVER_DB": {"default": "chronovcs.db", "description": "Server database path"},
    "CHRONO_AUDIT_DB": {"default": "audit.db", "description": "Audit database path"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "CHRONO_ENV": "development",
        "CHRONO_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "CHRONO_ENV": "production",
        "CHRONO_LOG_LEVEL": "WARNING",
    },
    "testing": {
        "CHRONO_ENV": "testing",
        "CHRONO_LOG_LEVEL": "DEBUG",
        "CHRONO_SERVER_DB": ":memory:",
        "CHRONO_AUDIT_DB": ":memory:",
    },
}


class ConfigManager:
    """Resolve ChronoVCS settings across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# ChronoVCS Configuration Template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> settings.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        env_name = os.environ.get("CHRONO_ENV", config["CHRONO_ENV"])
        config.update(_PROFILES.get(env_name, {}))

        settings = root / VCS_DIR / SETTINGS_FILE
        if settings.is_file():
            try:
                data = json.loads(settings.read_text(encoding="utf-8"))
                for k, v in data.items():
                    config[k] = str(v)
            except (json.JSONDecodeError, OSError, AttributeError):
                logger.warning("Ignoring unreadable settings file %s", settings)

        env_file = root / ".env"
        if env_file.is_file():
            try:
                for line in env_file.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        k, v = line.split("=", 1)
                        config[k.strip()] = v.strip()
            except OSError:
                logger.debug("Could not read %s", env_file, exc_info=True)

        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config

    def get_int(self, config: dict[str, str], key: str) -> int:
        """Return *key* as an int, falling back to its default when malformed."""
        raw = config.get(key, _CONFIG_KEYS[key]["default"])
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid integer for %s: %r", key, raw)
            value = int(_CONFIG_KEYS[key]["default"])
        return value if value > 0 else int(_CONFIG_KEYS[key]["default"])
