import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.fieldops.models import Permission, Role  # noqa: E402
from app.fieldops.modules.provisioning.kinds import (  # noqa: E402
    ADMIN_ROLE_NAME,
    MERCHANDISER_ROLE_NAME,
    SELLER_ROLE_NAME,
)
from scripts._db_utils import script_session  # noqa: E402

# role name -> (description, is_admin, {page_name: (view, create, edit, delete)})
ROLE_SEED: dict[str, tuple[str, bool, dict[str, tuple[bool, bool, bool, bool]]]] = {
    ADMIN_ROLE_NAME: ("Full access to the console", True, {}),
    SELLER_ROLE_NAME: (
        "Field seller",
        False,
        {
            "Daily Plan": (True, False, False, False),
            "Customer Visit": (True, True, False, False),
        },
    ),
    MERCHANDISER_ROLE_NAME: (
        "Field merchandiser",
        False,
        {
            "Daily Plan": (True, False, False, False),
            "Merch Visit": (True, True, False, False),
        },
    ),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed reference roles and their page permissions in an idempotent way.
    Existing permission flags are left untouched so admin edits survive redeploys.
    """
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///fieldops.db").strip()

    with script_session(db_url) as s:
        for name, (description, is_admin, pages) in ROLE_SEED.items():
            role = s.query(Role).filter(Role.name == name).one_or_none()
            if not role:
                role = Role(name=name, description=description, is_admin=is_admin)
                s.add(role)
                s.flush()
            existing = {p.page_name for p in role.permissions}
            for page_name, (can_view, can_create, can_edit, can_delete) in pages.items():
                if page_name in existing:
                    continue
                role.permissions.append(
                    Permission(
                        page_name=page_name,
                        can_view=can_view,
                        can_create=can_create,
                        can_edit=can_edit,
                        can_delete=can_delete,
                    )
                )

    print("Initialized database (seed_only).")
    print(f"Roles: {', '.join(ROLE_SEED)}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
