from __future__ import annotations

"""backend/app/services/report_formats/context.py

Caller context and authorization for report format operations.

Every registry, trust and pipeline operation receives a Principal
explicitly instead of reading a process-wide "current user". A Principal
whose user_id is None is the system context: the command line, startup
integrity checks and the feed sync run as the system.

Authorization decisions are delegated to an AccessOracle so deployments
can plug in their own policy; RoleAccessOracle is the default used by the
HTTP layer and the Celery tasks.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Protocol


ROLE_ADMIN = "Admin"
ROLE_USER = "User"
ROLE_OBSERVER = "Observer"
ROLE_GUEST = "Guest"

# Roles granted read access to every predefined format by the feed sync
FEED_READER_ROLES = (ROLE_ADMIN, ROLE_GUEST, ROLE_OBSERVER, ROLE_USER)

READ_PERMISSIONS: FrozenSet[str] = frozenset(
    {"get_report_formats", "verify_report_format"}
)
WRITE_PERMISSIONS: FrozenSet[str] = frozenset(
    {
        "create_report_format",
        "modify_report_format",
        "delete_report_format",
        "restore",
        "empty_trashcan",
    }
)


@dataclass(frozen=True)
class Principal:
    """Who is calling: a user (with roles) or the system itself."""

    user_id: str | None = None
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def system(cls) -> "Principal":
        return cls(user_id=None, roles=frozenset())

    @classmethod
    def user(cls, user_id: str, roles: Iterable[str] = ()) -> "Principal":
        return cls(user_id=user_id, roles=frozenset(roles))

    @property
    def is_system(self) -> bool:
        return self.user_id is None


class AccessOracle(Protocol):
    """Yes/no authorization decisions for report format commands."""

    def user_may(self, principal: Principal, permission: str) -> bool:
        ...

    def can_everything(self, principal: Principal) -> bool:
        ...

    def may_access(
        self, principal: Principal, permission: str, owner_id: str | None
    ) -> bool:
        ...


class RoleAccessOracle:
    """
    Role based default policy.

    - the system context and the Admin role may do everything
    - other roles may run the commands listed for them in `grants`
    - a user may touch formats they own; global (owner-less) formats are
      readable by anyone holding the read permission
    """

    def __init__(self, grants: Dict[str, FrozenSet[str]] | None = None) -> None:
        self.grants = grants or {
            ROLE_USER: READ_PERMISSIONS | WRITE_PERMISSIONS,
            ROLE_OBSERVER: READ_PERMISSIONS,
            ROLE_GUEST: READ_PERMISSIONS,
        }

    def can_everything(self, principal: Principal) -> bool:
        return principal.is_system or ROLE_ADMIN in principal.roles

    def user_may(self, principal: Principal, permission: str) -> bool:
        if self.can_everything(principal):
            return True
        return any(permission in self.grants.get(role, ()) for role in principal.roles)

    def may_access(
        self, principal: Principal, permission: str, owner_id: str | None
    ) -> bool:
        if self.can_everything(principal):
            return True
        if not self.user_may(principal, permission):
            return False
        if owner_id is None:
            return permission in READ_PERMISSIONS
        return owner_id == principal.user_id
