from __future__ import annotations

import logging
import sys
from pathlib import Path

from sqlalchemy import create_engine

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from finance_tracker.config import settings  # noqa: E402
from finance_tracker.migrate import apply_migrations  # noqa: E402


def main() -> None:
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")
    engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
    try:
        applied = apply_migrations(engine)
    finally:
        engine.dispose()
    if not applied:
        print("No pending migrations.")
    print("Migration run finished.")


if __name__ == "__main__":
    main()
