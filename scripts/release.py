"""
Release phase: migrate, verify, seed.

1. Refuse to run without DATABASE_URL (and on SQLite in production).
2. `alembic upgrade head`.
3. Check that every table the order pipeline needs exists.
4. Seed the upstream refresh token from BARRON_REFRESH_TOKEN unless one is already stored
   (a stored token may have rotated since the env var was set).

Usage:
  python scripts/release.py
  python scripts/release.py --skip-seed
  python scripts/release.py --check-only     # no migrations, just the schema check
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set; refusing to release against an implicit SQLite file.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must point at Postgres in production.")
    return db_url


def upgrade_schema(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    # configparser interpolation: a literal % in a password must be doubled
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def missing_tables(db_url: str) -> list[str]:
    from sqlalchemy import create_engine, inspect

    from app.merchops import REQUIRED_TABLES

    engine = create_engine(db_url, future=True)
    try:
        insp = inspect(engine)
        return [t for t in REQUIRED_TABLES if not insp.has_table(t)]
    finally:
        engine.dispose()


def run_release(*, seed: bool = True, check_only: bool = False) -> None:
    db_url = _database_url()
    print("=== merchops release ===", flush=True)

    if not check_only:
        print("alembic upgrade head ...", flush=True)
        upgrade_schema(db_url)

    missing = missing_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema is missing tables after upgrade: {', '.join(missing)}")
    print("Schema OK.", flush=True)

    if seed and not check_only:
        from scripts import init_db

        init_db.seed_only(database_url=db_url)
    print("=== release done ===", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run migrations and seed the refresh token")
    parser.add_argument("--skip-seed", action="store_true", help="Do not seed BARRON_REFRESH_TOKEN")
    parser.add_argument("--check-only", action="store_true", help="Only verify that the schema is current")
    args = parser.parse_args(argv)
    run_release(seed=not args.skip_seed, check_only=args.check_only)


if __name__ == "__main__":
    main()
