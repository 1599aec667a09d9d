#!/usr/bin/env python3
"""Create the first console administrator (login + profile with the Admin role).

Runs the same provisioning flow the console uses, so the login is created in the
authentication service and the profile in DATABASE_URL. Safe to re-run: an existing
profile with the same email is left alone. scripts/release.py calls `ensure_admin`
when ADMIN_EMAIL and ADMIN_PASSWORD are set.

Usage:
  ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=... python scripts/create_admin.py --name "Ops Admin"
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv  # noqa: E402

from app.fieldops.auth_client import AuthSettings, auth_settings_from_config  # noqa: E402
from app.fieldops.config import load_config  # noqa: E402
from app.fieldops.models import User  # noqa: E402
from app.fieldops.modules.provisioning.errors import ProvisioningError  # noqa: E402
from app.fieldops.modules.provisioning.kinds import ADMIN_ROLE_NAME, USER  # noqa: E402
from app.fieldops.modules.provisioning.service import AccountDraft, find_role_by_name, provision_account  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def ensure_admin(*, database_url: str, settings: AuthSettings, email: str, password: str, name: str) -> tuple[bool, str]:
    """
    Returns (created, profile_id). Raises RuntimeError when the Admin role is missing
    and lets ProvisioningError through when the auth service refuses the sign-up.
    """
    email = email.strip().lower()
    with script_session(database_url) as s:
        existing = s.query(User).filter(User.email == email).one_or_none()
        if existing is not None:
            return False, existing.id
        role = find_role_by_name(s, ADMIN_ROLE_NAME)
        if not role:
            raise RuntimeError("Admin role not found. Run python scripts/init_db.py first.")
        account = provision_account(
            s,
            USER,
            AccountDraft(email=email, display_name=name, role_id=role.id),
            password,
            actor=None,
            settings=settings,
        )
        return True, account.profile.id


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="Admin login email (default: ADMIN_EMAIL)")
    parser.add_argument("--name", default="Administrator", help="Display name")
    args = parser.parse_args()

    password = os.environ.get("ADMIN_PASSWORD") or ""
    if not args.email or not password:
        print("Both --email (or ADMIN_EMAIL) and ADMIN_PASSWORD are required.")
        sys.exit(2)

    config = load_config()
    try:
        created, profile_id = ensure_admin(
            database_url=config["DATABASE_URL"],
            settings=auth_settings_from_config(config),
            email=args.email,
            password=password,
            name=args.name,
        )
    except ProvisioningError as e:
        print(f"Could not create admin ({e.code}): {e.message}")
        sys.exit(1)
    except RuntimeError as e:
        print(str(e))
        sys.exit(1)

    if created:
        print(f"Admin created: {args.email} (id={profile_id})")
    else:
        print(f"Admin already present: {args.email} (id={profile_id})")


if __name__ == "__main__":
    main()
