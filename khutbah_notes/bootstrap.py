"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from .config import AppConfig, _ensure_writable_directory, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for path in (
            self._config.storage_root,
            self._config.recordings_root,
            self._config.shared_root,
            self._config.blob_root,
        ):
            if not _ensure_writable_directory(path):
                raise BootstrapError(f"Directory is not writable: {path}")
            LOGGER.debug("Ensured directory exists: %s", path)

        prepared_root = self._config.prepared_root
        prepared_root.mkdir(parents=True, exist_ok=True)
        for child in prepared_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove prepared file %s: %s", child, error)
        LOGGER.debug("Cleared prepared upload directory: %s", prepared_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Cannot open database {self._config.database_file}: {error}"
            ) from error
        try:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    user_id TEXT NOT NULL,
                    collection TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    data TEXT NOT NULL DEFAULT '{}',
                    PRIMARY KEY (user_id, collection, document_id)
                );

                CREATE INDEX IF NOT EXISTS idx_documents_collection
                    ON documents (user_id, collection);
                """
            )
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Cannot prepare database schema: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
