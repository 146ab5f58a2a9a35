from __future__ import annotations

from pathlib import Path

DB_NAME = "feed-relay.sqlite"


def module_root() -> Path:
    return Path(__file__).resolve().parents[2]


def data_root(root_override: Path | None = None) -> Path:
    return root_override if root_override is not None else module_root() / "data"


def ensure_data_dirs(root: Path) -> None:
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "failures").mkdir(parents=True, exist_ok=True)


def db_path(root: Path) -> Path:
    return root / DB_NAME
