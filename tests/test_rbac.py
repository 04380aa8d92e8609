"""
Tests for commandgate.rbac -- Role-Based Access Control.
"""

import pytest

from commandgate.models import Role
from commandgate.rbac import (
    check_permission,
    require_approver_role,
    require_permission,
)


class TestRBAC:
    def test_practitioner_can_decide_approval(self):
        assert check_permission(Role.PRACTITIONER, "decide_approval") is True

    def test_auditor_cannot_decide_approval(self):
        assert check_permission(Role.AUDITOR, "decide_approval") is False

    def test_auditor_can_export_audit(self):
        assert check_permission(Role.AUDITOR, "export_audit") is True

    def test_practitioner_cannot_manage_policy(self):
        assert check_permission(Role.PRACTITIONER, "manage_policy") is False

    def test_admin_can_manage_policy(self):
        assert check_permission(Role.ADMIN, "manage_policy") is True

    def test_role_by_name(self):
        assert check_permission("Pharmacist", "view_review_queue") is True

    def test_unknown_role_and_action_denied(self):
        assert check_permission("Janitor", "decide_approval") is False
        assert check_permission(Role.ADMIN, "delete_audit") is False

    def test_require_permission_raises_on_denied(self):
        with pytest.raises(PermissionError):
            require_permission(Role.NURSE, "export_audit")

    def test_require_permission_passes_on_allowed(self):
        require_permission(Role.ADMIN, "export_audit")  # should not raise


class TestApproverRoles:
    def test_listed_role_may_decide(self):
        require_approver_role(Role.PHARMACIST, ["Practitioner", "Pharmacist"])

    def test_unlisted_role_denied(self):
        with pytest.raises(PermissionError, match="not an approver"):
            require_approver_role(Role.NURSE, ["Practitioner", "Pharmacist"])

    def test_role_without_decide_permission_denied(self):
        with pytest.raises(PermissionError):
            require_approver_role(Role.ADMIN, ["Admin"])

    def test_empty_approver_list_allows_any_decider(self):
        require_approver_role("BillingSpecialist", [])

    def test_unknown_role_denied(self):
        with pytest.raises(PermissionError):
            require_approver_role("Janitor", ["Practitioner"])
