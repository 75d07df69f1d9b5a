"""
Peridot configuration.

Process-wide settings come from environment variables, read once at import.
Per-vault settings live in `<vault>/.peridot/config.json` and are loaded
through VaultSettings.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config: ignoring non-numeric %s=%r", name, raw)
        return default


class Settings:
    """Application settings from environment variables."""

    # Package registry
    PACKAGE_REGISTRY_URL: str = os.environ.get("PERIDOT_PACKAGE_REGISTRY", "https://packages.typst.org").rstrip("/")
    FETCH_TIMEOUT_SECONDS: float = _float_env("PERIDOT_FETCH_TIMEOUT", 30.0)

    # Vault layout
    VAULT_DATA_DIR: str = ".peridot"
    VAULT_CONFIG_FILE: str = "config.json"
    PACKAGES_DIR: str = os.environ.get("PERIDOT_PACKAGES_DIR", ".peridot/packages")

    # Render pipeline
    RENDER_MAX_ATTEMPTS: int = int(_float_env("PERIDOT_RENDER_MAX_ATTEMPTS", 8))
    RENDER_TIMEOUT_SECONDS: float = _float_env("PERIDOT_RENDER_TIMEOUT", 0.0)  # 0 = wait forever
    RENDER_DEBOUNCE_SECONDS: float = _float_env("PERIDOT_RENDER_DEBOUNCE", 0.05)
    WORKER_INIT_TIMEOUT_SECONDS: float = _float_env("PERIDOT_WORKER_INIT_TIMEOUT", 30.0)

    # Worker
    WORKER_COMPILER: str = os.environ.get("PERIDOT_COMPILER", "")  # "module:attr" compiler factory

    # Logging
    LOG_LEVEL: str = os.environ.get("PERIDOT_LOG_LEVEL", "INFO").upper()


# Singleton instance
settings = Settings()


class VaultSettings(BaseModel):
    """
    Settings stored inside a vault. Keys are camelCase on disk so existing
    vault config files keep working.
    """

    model_config = ConfigDict(populate_by_name=True)

    enable_vim: bool = Field(default=False, alias="enableVim")
    preamble: str = ""
    new_note_directory: str = Field(default="", alias="newNoteDirectory")

    @staticmethod
    def path_for(vault_dir: Path) -> Path:
        return Path(vault_dir) / settings.VAULT_DATA_DIR / settings.VAULT_CONFIG_FILE

    @classmethod
    def load(cls, vault_dir: Path) -> VaultSettings:
        """Read the vault's settings, writing the defaults first if the file does not exist."""
        path = cls.path_for(vault_dir)
        if not path.exists():
            defaults = cls()
            defaults.save(vault_dir)
            return defaults
        with open(path, encoding="utf-8") as f:
            return cls.model_validate(json.load(f))

    def save(self, vault_dir: Path) -> None:
        path = self.path_for(vault_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(by_alias=True), f, indent=2)
