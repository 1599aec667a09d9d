"""
Release phase for the field ops console. Every step is idempotent.

1. Check the environment (Postgres and the auth service in production).
2. Alembic upgrade to head.
3. Seed the Admin/Seller/Merchandiser roles and their page permissions.
4. Bootstrap the first administrator when ADMIN_EMAIL and ADMIN_PASSWORD are set.

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


def check_environment(config: dict) -> list[str]:
    """Problems that must stop a release; empty when the release may proceed."""
    problems: list[str] = []
    db_url = (config.get("DATABASE_URL") or "").strip()
    if not (os.environ.get("DATABASE_URL") or "").strip():
        problems.append("DATABASE_URL is not set.")
    env = (config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if db_url.startswith("sqlite"):
            problems.append("DATABASE_URL must be Postgres in production (not sqlite).")
        # Without the auth service nobody can log in and no account can be provisioned.
        if not config.get("AUTH_URL") or not config.get("AUTH_API_KEY"):
            problems.append("AUTH_URL and AUTH_API_KEY are required in production.")
    return problems


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    # configparser treats % as interpolation.
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def bootstrap_admin(config: dict) -> None:
    from app.fieldops.auth_client import auth_settings_from_config
    from app.fieldops.modules.provisioning.errors import ProvisioningError
    from scripts.create_admin import ensure_admin

    email = (os.environ.get("ADMIN_EMAIL") or "").strip()
    password = os.environ.get("ADMIN_PASSWORD") or ""
    if not email or not password:
        print("ADMIN_EMAIL/ADMIN_PASSWORD not set; skipping admin bootstrap.", flush=True)
        return
    try:
        created, profile_id = ensure_admin(
            database_url=config["DATABASE_URL"],
            settings=auth_settings_from_config(config),
            email=email,
            password=password,
            name=(os.environ.get("ADMIN_NAME") or "Administrator").strip(),
        )
    except ProvisioningError as e:
        # An orphaned login for this email needs manual cleanup; do not block the deploy.
        print(f"WARNING: admin bootstrap failed ({e.code}): {e.message}", flush=True)
        return
    print(f"Admin {'created' if created else 'already present'}: {email} (id={profile_id})", flush=True)


def run_release() -> None:
    from app.fieldops.config import load_config
    from scripts import init_db

    config = load_config()
    problems = check_environment(config)
    if problems:
        raise RuntimeError(" ".join(problems))

    print("=== fieldops release start ===", flush=True)
    print(f"ENV={config['ENV']}", flush=True)

    print("Running Alembic migrations...", flush=True)
    migrate(config["DATABASE_URL"])
    print("Migrations complete.", flush=True)

    print("Seeding roles/permissions (idempotent)...", flush=True)
    init_db.seed_only(database_url=config["DATABASE_URL"])

    bootstrap_admin(config)
    print("=== fieldops release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
