from __future__ import annotations

from dataclasses import dataclass

from app.fieldops.modules.field_staff.models import Merch, Seller

ROLE_REQUIRED = "required"  # caller must pick a role
ROLE_DEFAULT = "default"  # caller may pick; falls back to `role_name`
ROLE_FIXED = "fixed"  # always `role_name`, caller choice ignored

SELLER_ROLE_NAME = "Seller"
MERCHANDISER_ROLE_NAME = "Merchandiser"
ADMIN_ROLE_NAME = "Admin"


@dataclass(frozen=True)
class RoleKind:
    """Describes one account flavour: its role rule and the shape of its role record."""

    key: str
    label: str
    page_name: str
    role_policy: str
    role_name: str | None = None
    model: type | None = None
    code_field: str | None = None
    code_label: str | None = None

    @property
    def requires_role_record(self) -> bool:
        return self.model is not None

    @property
    def role_editable(self) -> bool:
        return self.role_policy != ROLE_FIXED


USER = RoleKind(
    key="user",
    label="User",
    page_name="Users",
    role_policy=ROLE_REQUIRED,
)

SELLER = RoleKind(
    key="seller",
    label="Seller",
    page_name="Sellers",
    role_policy=ROLE_DEFAULT,
    role_name=SELLER_ROLE_NAME,
    model=Seller,
    code_field="seller_code",
    code_label="Seller code",
)

MERCHANDISER = RoleKind(
    key="merchandiser",
    label="Merchandiser",
    page_name="Merchandisers",
    role_policy=ROLE_FIXED,
    role_name=MERCHANDISER_ROLE_NAME,
    model=Merch,
    code_field="merch_code",
    code_label="Merchandiser code",
)

# Keyed by the URL segment used in /admin/accounts/<kind>.
KINDS: dict[str, RoleKind] = {
    "users": USER,
    "sellers": SELLER,
    "merchandisers": MERCHANDISER,
}


def get_kind(slug: str) -> RoleKind | None:
    return KINDS.get((slug or "").strip().lower())
