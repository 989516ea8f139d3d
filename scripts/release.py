"""
Release phase for the shop API: validate config, migrate, seed, report.

Demo catalog content is skipped in production unless SEED_DEMO_DATA is set
explicitly; permissions, roles and the admin account are always ensured.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def _report(app) -> None:
    from sqlalchemy import func

    from app.shop.db import session_scope
    from app.shop.models import User
    from app.shop.modules.catalog.models import Category, Product
    from app.shop.modules.home_sections.models import HomeSection

    with session_scope(app) as s:
        for label, model in (("users", User), ("categories", Category), ("products", Product), ("home sections", HomeSection)):
            print(f"  {label}: {s.query(func.count(model.id)).scalar()}", flush=True)


def run_release() -> None:
    # create_app() applies the production guardrails (Postgres, SECRET_KEY, webhook secrets).
    from app.shop import create_app

    app = create_app()
    db_url = app.config["DATABASE_URL"]
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        os.environ.setdefault("SEED_DEMO_DATA", "0")

    print(f"=== shop release ({env or 'development'}) ===", flush=True)
    print("[1/3] alembic upgrade head", flush=True)
    _migrate(db_url)

    print("[2/3] seeding roles, admin account and storefront content", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)

    print("[3/3] row counts", flush=True)
    _report(app)
    app.extensions["sqlalchemy_engine"].dispose()
    print("=== release done ===", flush=True)


if __name__ == "__main__":
    run_release()
