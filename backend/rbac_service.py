"""
Role-Based Access Control (RBAC) Service
Cash call permissions for the parent organization and its affiliates.

Roles and what they do:
- Admin: full control, including audited status overrides, deletes, affiliate
  management and assigning cash calls to finance users
- Approver: reviews submitted cash calls (approve/reject) and marks approved ones paid
- Affiliate: raises and submits cash calls for its own company only
- Viewer: read-only access to every cash call

Affiliate users and approvers may comment on the cash calls they can see;
internal comments are hidden from affiliate users.

A second, coarser vocabulary (ADMIN / CFO / AFFILIATE / FINANCE) is used by the
role-management screens. It is an alias table over the four roles above, not a
separate permission system.
"""

from dataclasses import dataclass
from typing import Optional, List, Dict, Any
from functools import wraps
import logging

from cash_call_errors import ActorIntegrityError, Forbidden

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# OPERATIONAL ROLE DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════════════

ROLES = {
    "admin": {
        "level": 100,
        "display_name": "Administrator",
        "description": "Full system access",
        "permissions": ["*"]  # All permissions
    },

    "approver": {
        "level": 80,
        "display_name": "Approver",
        "description": "Approves or rejects submitted cash calls; marks approved calls paid",
        "permissions": [
            "read_all",
            "read_audit",
            "comment",
            "read_internal_comments",
            "transition:under_review->approved",
            "transition:under_review->rejected",
            "transition:approved->paid",
        ]
    },

    "affiliate": {
        "level": 40,
        "display_name": "Affiliate User",
        "description": "Creates and submits cash calls for its own affiliate",
        "permissions": [
            "read_own",
            "create_own_only",
            "comment",
            "transition:draft->under_review",
        ]
    },

    "viewer": {
        "level": 10,
        "display_name": "Viewer",
        "description": "Read-only access to all cash calls and their discussion",
        "permissions": [
            "read_all",
            "read_internal_comments",
        ]
    }
}

# Every operation name the engine checks
OPERATIONS = [
    "read_all", "read_own", "read_audit",
    "create", "create_own_only",
    "transition:draft->under_review",
    "transition:under_review->approved",
    "transition:under_review->rejected",
    "transition:approved->paid",
    "bulk_transition", "override", "delete",
    "comment", "read_internal_comments", "moderate_comments",
    "manage_users", "manage_affiliates",
]

# ═══════════════════════════════════════════════════════════════════════════════
# MANAGEMENT-UI ROLE ALIASES
# ═══════════════════════════════════════════════════════════════════════════════

MANAGEMENT_ROLE_ALIASES = {
    "ADMIN": "admin",
    "CFO": "approver",
    "AFFILIATE": "affiliate",
    "FINANCE": "viewer",
}

MANAGEMENT_ROLE_DISPLAY = {
    "ADMIN": {
        "name": "Administrator",
        "description": "Full system access and control",
    },
    "CFO": {
        "name": "CFO",
        "description": "Approves cash calls and oversees workflows",
    },
    "AFFILIATE": {
        "name": "Affiliate User",
        "description": "Can create and manage their affiliate's cash calls",
    },
    "FINANCE": {
        "name": "Finance",
        "description": "Reviews cash calls (read-only)",
    },
}


@dataclass(frozen=True)
class Actor:
    """Resolved identity performing an engine operation."""
    id: str
    role: str
    owned_affiliate_id: Optional[str] = None
    email: Optional[str] = None


def resolve_role(role_name: Optional[str]) -> Optional[str]:
    """
    Map a role name from either vocabulary onto an operational role.

    Returns None for unknown names.
    """
    if not role_name:
        return None
    name = role_name.strip()
    if name.lower() in ROLES:
        return name.lower()
    return MANAGEMENT_ROLE_ALIASES.get(name.upper())


def resolve_actor(
    user_id: Optional[str],
    role: Optional[str],
    owned_affiliate_id: Optional[str] = None,
    email: Optional[str] = None
) -> Actor:
    """
    Build an Actor from raw identity fields.

    Raises:
        ActorIntegrityError: missing id, unknown role, or an affiliate actor
            without an owning affiliate
    """
    if not user_id or not user_id.strip():
        raise ActorIntegrityError("Actor id is required")

    operational_role = resolve_role(role)
    if operational_role is None:
        raise ActorIntegrityError(f"Unknown role: {role}")

    affiliate_id = owned_affiliate_id.strip() if owned_affiliate_id else None
    if operational_role == "affiliate" and not affiliate_id:
        logger.warning(f"Affiliate actor {user_id} has no owning affiliate")
        raise ActorIntegrityError("Affiliate actors must carry an owning affiliate")

    return Actor(
        id=user_id.strip(),
        role=operational_role,
        owned_affiliate_id=affiliate_id,
        email=email
    )


def has_permission(role: str, permission: str) -> bool:
    """Check if role has specific permission"""
    if role not in ROLES:
        return False

    role_perms = ROLES[role]["permissions"]

    # Admin has all permissions
    if "*" in role_perms:
        return True

    # Check exact permission
    if permission in role_perms:
        return True

    # Check wildcard permission (e.g., "transition:*" matches "transition:draft->under_review")
    perm_parts = permission.split(":")
    if len(perm_parts) == 2:
        wildcard_perm = f"{perm_parts[0]}:*"
        if wildcard_perm in role_perms:
            return True

    return False


def can(actor: Optional[Actor], operation: str) -> bool:
    """
    Pure, total permission check. Unknown roles and malformed actors get False.
    """
    role = getattr(actor, "role", None)
    if not isinstance(role, str) or not isinstance(operation, str):
        return False
    return has_permission(role, operation)


def can_transition_at_all(actor: Optional[Actor]) -> bool:
    """True if the actor holds at least one transition permission."""
    return any(
        can(actor, op) for op in OPERATIONS if op.startswith("transition:")
    )


def require_permission(permission: str):
    """Decorator to require specific permission for an endpoint taking `actor`"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, actor: Actor, **kwargs):
            if not can(actor, permission):
                logger.warning(f"Permission {permission} denied for {actor.id} ({actor.role})")
                raise Forbidden()
            return func(*args, actor=actor, **kwargs)
        return wrapper
    return decorator


def get_permissions_for_role(role: str) -> List[str]:
    """Get all permissions for a role"""
    if role not in ROLES:
        return []
    if "*" in ROLES[role]["permissions"]:
        return list(OPERATIONS)
    return list(ROLES[role]["permissions"])


def get_role_display(role_name: str) -> Dict[str, Any]:
    """Presentation metadata for a role from either vocabulary."""
    operational = resolve_role(role_name)
    management = next(
        (alias for alias, target in MANAGEMENT_ROLE_ALIASES.items() if target == operational),
        "FINANCE"
    )
    return {
        "role": operational,
        "management_role": management,
        **MANAGEMENT_ROLE_DISPLAY[management],
    }


def get_role_hierarchy() -> Dict[str, Any]:
    """Get role hierarchy for UI display"""
    return {
        role: {
            "level": config["level"],
            "display_name": config["display_name"],
            "description": config["description"],
            "permissions": get_permissions_for_role(role),
            "management_role": get_role_display(role)["management_role"],
        }
        for role, config in sorted(ROLES.items(), key=lambda x: -x[1]["level"])
    }
