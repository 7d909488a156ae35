from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def split_sql_statements(sql: str) -> list[str]:
    statements = []
    current: list[str] = []
    in_dollar = False
    for line in sql.splitlines(keepends=True):
        stripped = line.strip()
        if stripped.startswith("--") and not current:
            continue
        if "$$" in line:
            in_dollar = not in_dollar
        current.append(line)
        if not in_dollar and stripped.endswith(";"):
            statements.append("".join(current).strip())
            current = []
    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return [s for s in statements if s and not s.startswith("--")]


def apply_migrations(engine: Engine, migrations_dir: Path = MIGRATIONS_DIR) -> list[str]:
    """Apply every ``*.sql`` file not yet recorded in ``schema_migrations``.

    Returns the file names applied by this call, in order.
    """
    migration_files = sorted(migrations_dir.glob("*.sql"))
    applied_now: list[str] = []
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                create table if not exists schema_migrations (
                  filename text primary key,
                  applied_at text not null
                )
                """
            )
        )
        applied = {row[0] for row in conn.execute(text("select filename from schema_migrations")).fetchall()}
        for file in migration_files:
            if file.name in applied:
                continue
            for stmt in split_sql_statements(file.read_text(encoding="utf-8")):
                conn.execute(text(stmt))
            conn.execute(
                text("insert into schema_migrations (filename, applied_at) values (:filename, :applied_at)"),
                {"filename": file.name, "applied_at": datetime.now(timezone.utc).isoformat()},
            )
            logger.info("Applied migration %s", file.name)
            applied_now.append(file.name)
    return applied_now
