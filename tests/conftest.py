from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from khutbah_notes.bootstrap import Bootstrapper
from khutbah_notes.config import AppConfig


_MAPPING = {
    "storage_root": "storage",
    "database_file": "storage/documents.db",
    "recordings_root": "storage/recordings",
    "shared_root": "storage/shared",
}


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(json.dumps(_MAPPING), encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(dict(_MAPPING), base_path=tmp_path)

    Bootstrapper(config).initialize()
    return config
