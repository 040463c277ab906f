#!/usr/bin/env python3
"""Database bootstrap: wait for the canonical store, then run Alembic migrations.

- Always run `alembic upgrade head` on startup.
- If migrations fail, fail fast (the plan sync engine must not run against
  an unknown schema).
"""

import os
import sys
import time
from dotenv import load_dotenv

load_dotenv()


def _get_alembic_config():
    """Load Alembic config for programmatic migrations."""
    from alembic.config import Config

    here = os.path.dirname(os.path.abspath(__file__))
    cfg = Config(os.path.join(here, "alembic.ini"))
    cfg.set_main_option("script_location", os.path.join(here, "alembic"))
    return cfg


def alembic_upgrade_head() -> None:
    """Apply all pending migrations."""
    from alembic import command

    command.upgrade(_get_alembic_config(), "head")


def wait_for_database(max_retries: int = 30, delay_s: float = 1.0) -> bool:
    from core.database import check_db_connection

    for attempt in range(1, max_retries + 1):
        if check_db_connection():
            return True
        print(f"Database is unavailable - sleeping (attempt {attempt}/{max_retries})")
        time.sleep(delay_s)
    return False


def main():
    print("Waiting for database to be ready...")
    if not wait_for_database():
        print("ERROR: Database is not ready after maximum retries")
        sys.exit(1)
    print("Database is ready!")

    try:
        alembic_upgrade_head()
    except Exception as e:
        print(f"ERROR: Alembic upgrade failed: {e}")
        sys.exit(1)
    print("Migrations completed successfully!")


if __name__ == '__main__':
    main()
