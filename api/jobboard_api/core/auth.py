from dataclasses import dataclass
from enum import Enum

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {"catalog:read"},
    "job_seeker": {"catalog:read"},
    "company": {"catalog:read", "listings:write"},
    "admin": {"catalog:read", "listings:write", "admin:write"},
}

# Highest privilege first; used when a user carries several roles.
ROLE_PRIORITY = ("admin", "company", "job_seeker", "user")


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def scopes_for_role(role: str) -> set[str]:
    return set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"]))
