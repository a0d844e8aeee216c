"""Authorization collaborator.

The registry never manages users. It only asks whether a user may act on
restricted catalog entries.
"""

from __future__ import annotations

from typing import Protocol


class Authorizer(Protocol):
    def is_privileged(self, tenant_id: str, user_id: str | None) -> bool: ...


class StaticAuthorizer:
    """Privileged users per tenant, from configuration.

    A tenant entry of "*" makes every user of that tenant privileged.
    """

    def __init__(self, privileged_users: dict[str, list[str]] | None = None):
        self._users = {tenant: set(users) for tenant, users in (privileged_users or {}).items()}

    def is_privileged(self, tenant_id: str, user_id: str | None) -> bool:
        users = self._users.get(tenant_id, set())
        if "*" in users:
            return True
        return user_id is not None and user_id in users
