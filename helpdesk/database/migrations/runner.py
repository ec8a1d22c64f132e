from __future__ import annotations

import logging
from pathlib import Path

from database.base import Database
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent

SCHEMA_VERSIONS_SQL = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""


def pending_migrations(migrations_path: Path, applied: set[str]) -> list[Path]:
    """SQL files not yet recorded in ``schema_versions``, in file-name order."""
    return [path for path in sorted(migrations_path.glob("*.sql")) if path.stem not in applied]


async def run_migrations(database: Database, migrations_path: Path = MIGRATIONS_DIR) -> list[str]:
    await database.executescript(SCHEMA_VERSIONS_SQL)
    rows = await database.fetchall("SELECT version FROM schema_versions;")
    applied = {row["version"] for row in rows}

    versions: list[str] = []
    for path in pending_migrations(migrations_path, applied):
        LOGGER.info("Applying schema version %s", path.stem)
        await database.executescript(path.read_text(encoding="utf-8"))
        await database.execute(
            "INSERT INTO schema_versions(version, applied_at) VALUES (?, ?);",
            [path.stem, to_iso(utc_now())],
        )
        versions.append(path.stem)
    return versions
