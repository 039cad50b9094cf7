from __future__ import annotations

import shutil
import sqlite3
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path


_REPO_ROOT = Path(__file__).resolve().parents[2]


def assert_safe_temp_db_path(db_path: str) -> None:
    resolved = Path(db_path).resolve()
    temp_root = Path(tempfile.gettempdir()).resolve()
    if temp_root not in resolved.parents:
        raise ValueError(f"Temporary DB must live under TEMP: {resolved}")
    if _REPO_ROOT in resolved.parents:
        raise ValueError(f"Temporary DB cannot live inside repository: {resolved}")


def _unlink_with_retry(path: Path, attempts: int = 6, base_delay: float = 0.05) -> None:
    for attempt in range(attempts):
        try:
            path.unlink(missing_ok=True)
            return
        except PermissionError:
            time.sleep(base_delay * (2**attempt))


@dataclass
class TempDbSandbox:
    """Throwaway SQLite file under the system temp dir, one per test case."""

    prefix: str = "orderflow_tests"
    db_name: str = "orderflow_test.db"
    temp_dir: str = field(init=False)
    db_path: str = field(init=False)

    def __post_init__(self) -> None:
        folder = Path(tempfile.gettempdir()).resolve() / f"{self.prefix}_{uuid.uuid4().hex}"
        folder.mkdir(parents=True, exist_ok=False)
        self.temp_dir = str(folder)
        self.db_path = str(folder / self.db_name)
        assert_safe_temp_db_path(self.db_path)
        sqlite3.connect(self.db_path, timeout=30.0).close()

    def make_config(self, base_config, **overrides):
        attrs = {
            "DATABASE_URL": None,
            "DATABASE_DIR": self.temp_dir,
            "DB_PATH": self.db_path,
            "ERP_MODE": "mock",
            "LOG_JSON": False,
        }
        attrs.update(overrides)
        return type("TempConfig", (base_config,), attrs)

    def cleanup(self) -> None:
        db_file = Path(self.db_path)
        for suffix in ("", "-journal", "-wal", "-shm"):
            _unlink_with_retry(db_file.with_name(db_file.name + suffix))
        shutil.rmtree(self.temp_dir, ignore_errors=True)
