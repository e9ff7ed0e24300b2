from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Literal, Optional

from .errors import FORBIDDEN, ServiceError
from .orm_models import UserRole

Action = Literal[
    "template.read",
    "template.preview",
    "template.create",
    "template.update",
    "template.delete",
    "template.clone",
    "quote.create",
    "quote.read",
    "quote.update",
    "quote.convert",
    "document.read",
    "usage.track",
    "usage.read_own",
    "usage.template_stats",
    "usage.analytics",
    "settings.read",
    "settings.update",
]

READ_TIER: FrozenSet[str] = frozenset(
    {
        "template.read",
        "template.preview",
        "quote.read",
        "document.read",
        "usage.read_own",
        "settings.read",
    }
)

EDIT_TIER: FrozenSet[str] = READ_TIER | frozenset(
    {
        "template.create",
        "template.update",
        "template.delete",
        "template.clone",
        "quote.create",
        "quote.update",
        "quote.convert",
        "usage.track",
        "usage.template_stats",
    }
)

CAPABILITY_RULES: Dict[str, FrozenSet[str]] = {
    UserRole.INTERNAL_ADMIN.value: EDIT_TIER | frozenset({"usage.analytics", "settings.update"}),
    UserRole.INTERNAL_USER.value: EDIT_TIER,
    UserRole.CLIENT_ADMIN.value: READ_TIER | frozenset({"usage.track"}),
    UserRole.CLIENT_USER.value: READ_TIER,
}

# Roles that may act on records owned by someone else in the same company.
OWNERSHIP_EXEMPT_ROLES: FrozenSet[str] = frozenset({UserRole.INTERNAL_ADMIN.value})


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Optional[str] = None
    company_id: Optional[str] = None


@dataclass(frozen=True)
class Resource:
    kind: str
    id: Optional[str] = None
    owner_id: Optional[str] = None
    company_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


def normalize_role(value: object | None) -> Optional[str]:
    raw = getattr(value, "value", value)
    if not isinstance(raw, str):
        return None
    normalized = raw.strip().lower()
    return normalized or None


def check_capability(identity: Identity, action: Action, resource: Optional[Resource] = None) -> Decision:
    role = normalize_role(identity.role)
    if role is None:
        return Decision(False, "no role assigned")

    allowed_actions = CAPABILITY_RULES.get(role)
    if not allowed_actions or action not in allowed_actions:
        return Decision(False, f"role {role} may not perform {action}")

    if resource is None:
        return Decision(True)

    if resource.company_id and identity.company_id and resource.company_id != identity.company_id:
        return Decision(False, f"{resource.kind} belongs to another company")

    if resource.owner_id and resource.owner_id != identity.user_id and role not in OWNERSHIP_EXEMPT_ROLES:
        return Decision(False, f"{resource.kind} is owned by another user")

    return Decision(True)


def ensure_capability(identity: Identity, action: Action, resource: Optional[Resource] = None) -> None:
    decision = check_capability(identity, action, resource)
    if not decision:
        details = {"action": action}
        if resource is not None and resource.id:
            details["resource"] = f"{resource.kind}:{resource.id}"
        raise ServiceError(FORBIDDEN, f"Insufficient permissions: {decision.reason}", details)


__all__ = [
    "Action",
    "CAPABILITY_RULES",
    "Decision",
    "Identity",
    "Resource",
    "check_capability",
    "ensure_capability",
    "normalize_role",
]
