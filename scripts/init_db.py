#!/usr/bin/env python
"""
Initialize the database and (optionally) store the upstream refresh token.

Usage:
    # Create tables directly (local/dev; production uses `alembic upgrade head`)
    python scripts/init_db.py --create-tables

    # Store a refresh token obtained out-of-band (overwrites the durable copy)
    python scripts/init_db.py --refresh-token <token>

Environment:
    DATABASE_URL: database connection string
    BARRON_REFRESH_TOKEN: seeded into api_tokens on first release if no token is stored yet
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.merchops.db import make_sessionmaker
from app.merchops.models import Base
from app.merchops.modules.order_tracking import models as _order_tracking_models  # noqa: F401
from app.merchops.modules.order_tracking.token_manager import RefreshTokenStore


def _db_url(database_url: str | None) -> str:
    return (database_url or os.environ.get("DATABASE_URL") or "sqlite:///merchops.db").strip()


def script_sessionmaker(database_url: str | None = None) -> sessionmaker:
    engine = create_engine(_db_url(database_url), future=True, pool_pre_ping=True)
    return make_sessionmaker(engine)


def create_tables(*, database_url: str | None = None) -> None:
    sm = script_sessionmaker(database_url)
    Base.metadata.create_all(bind=sm.kw["bind"])
    print("Created tables (create_all).")


def store_refresh_token(token: str, *, database_url: str | None = None, actor: str = "init_db") -> None:
    token = (token or "").strip()
    if not token:
        raise ValueError("Refresh token is empty.")
    RefreshTokenStore(script_sessionmaker(database_url)).save(token, actor=actor)
    print(f"Stored refresh token (len={len(token)}).")


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed the durable refresh token from BARRON_REFRESH_TOKEN in an idempotent way.
    Does NOT overwrite a token that is already stored (it may have rotated since).
    """
    env_token = (os.environ.get("BARRON_REFRESH_TOKEN") or "").strip()
    if not env_token:
        print("BARRON_REFRESH_TOKEN not set; nothing to seed.")
        return
    store = RefreshTokenStore(script_sessionmaker(database_url))
    if store.load():
        print("Refresh token already stored; leaving it as is.")
        return
    store.save(env_token, actor="release_seed")
    print("Seeded refresh token from BARRON_REFRESH_TOKEN.")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Initialize merchops database")
    parser.add_argument("--create-tables", action="store_true", help="Create tables with metadata.create_all")
    parser.add_argument("--refresh-token", default="", help="Store this upstream refresh token durably")
    parser.add_argument("--database-url", default=None)
    args = parser.parse_args(argv)

    if args.create_tables:
        create_tables(database_url=args.database_url)
    if args.refresh_token:
        store_refresh_token(args.refresh_token, database_url=args.database_url)
    else:
        seed_only(database_url=args.database_url)


if __name__ == "__main__":
    main()
