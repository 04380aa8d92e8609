"""
Role-Based Access Control (RBAC) for CommandGate.

Two gates are enforced here:

* **Permission table** -- which roles may decide approval tasks, view the
  review queue, manage policy, or query and export the audit log.
* **Approver roles** -- a decision on a task must come from one of the
  approver roles named by that command kind's approval rule.

This is a lightweight in-process model.  Production deployments should
take the caller's role from an enterprise identity provider (OAuth2/OIDC,
SAML) rather than trusting a client-supplied value.
"""

from __future__ import annotations

from typing import Iterable

from commandgate.models import Role


# ---------------------------------------------------------------------------
# Permission definitions
# ---------------------------------------------------------------------------

# Maps (role, action) -> allowed
_PERMISSIONS: dict[tuple[Role, str], bool] = {
    # Practitioner permissions
    (Role.PRACTITIONER, "decide_approval"): True,
    (Role.PRACTITIONER, "view_review_queue"): True,
    (Role.PRACTITIONER, "manage_policy"): False,
    (Role.PRACTITIONER, "query_audit"): True,
    (Role.PRACTITIONER, "export_audit"): False,
    # Nurse permissions
    (Role.NURSE, "decide_approval"): True,
    (Role.NURSE, "view_review_queue"): True,
    (Role.NURSE, "manage_policy"): False,
    (Role.NURSE, "query_audit"): False,
    (Role.NURSE, "export_audit"): False,
    # Pharmacist permissions
    (Role.PHARMACIST, "decide_approval"): True,
    (Role.PHARMACIST, "view_review_queue"): True,
    (Role.PHARMACIST, "manage_policy"): False,
    (Role.PHARMACIST, "query_audit"): False,
    (Role.PHARMACIST, "export_audit"): False,
    # Billing specialist permissions
    (Role.BILLING_SPECIALIST, "decide_approval"): True,
    (Role.BILLING_SPECIALIST, "view_review_queue"): True,
    (Role.BILLING_SPECIALIST, "manage_policy"): False,
    (Role.BILLING_SPECIALIST, "query_audit"): False,
    (Role.BILLING_SPECIALIST, "export_audit"): False,
    # Admin permissions
    (Role.ADMIN, "decide_approval"): False,
    (Role.ADMIN, "view_review_queue"): True,
    (Role.ADMIN, "manage_policy"): True,
    (Role.ADMIN, "query_audit"): True,
    (Role.ADMIN, "export_audit"): True,
    # Auditor permissions
    (Role.AUDITOR, "decide_approval"): False,
    (Role.AUDITOR, "view_review_queue"): True,
    (Role.AUDITOR, "manage_policy"): False,
    (Role.AUDITOR, "query_audit"): True,
    (Role.AUDITOR, "export_audit"): True,
}


def _as_role(role: Role | str) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        raise PermissionError(f"Unknown role '{role}'.") from None


def check_permission(role: Role | str, action: str) -> bool:
    """Check whether a role has permission to perform an action.

    Unknown roles and unknown actions are denied.
    """
    try:
        resolved = _as_role(role)
    except PermissionError:
        return False
    return _PERMISSIONS.get((resolved, action), False)


def require_permission(role: Role | str, action: str) -> None:
    """Enforce a permission check; raise if denied.

    Raises:
        PermissionError: If the role is not permitted.
    """
    if not check_permission(role, action):
        label = role.value if isinstance(role, Role) else role
        raise PermissionError(
            f"Role '{label}' is not permitted to perform action '{action}'."
        )


def require_approver_role(role: Role | str, approver_roles: Iterable[str]) -> None:
    """Enforce that ``role`` may decide a task governed by ``approver_roles``.

    The role must hold ``decide_approval`` and, when the rule names
    approver roles, be one of them.

    Raises:
        PermissionError: If either check fails.
    """
    require_permission(role, "decide_approval")
    allowed = set(approver_roles)
    resolved = _as_role(role)
    if allowed and resolved.value not in allowed:
        raise PermissionError(
            f"Role '{resolved.value}' is not an approver for this task. "
            f"Allowed roles: {sorted(allowed)}"
        )
