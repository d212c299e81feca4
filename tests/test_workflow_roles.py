"""
Actor resolution and matter / contact access tests.
"""

from types import SimpleNamespace

import pytest

from app.core.exceptions import ConflictError, ForbiddenError, NotFoundError
from app.models import db
from app.models.crm import MatterTask
from app.services.access_service import (
    accessible_contact_ids,
    accessible_matter_ids,
    assert_contact_access,
    assert_matter_access,
)
from app.services.workflow_roles import (
    ActorSnapshot,
    assert_claimable,
    can_perform_action,
    load_actor_snapshot,
    load_contact_actor_snapshot,
    load_snapshot_for_instance,
    resolve_eligible_actor_ids,
)


def _assign(matter, user, title="Draft motion"):
    db.session.add(MatterTask(matter_id=matter.id, title=title, assignee_id=user.id))
    db.session.commit()


# ═════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════


class TestSnapshots:
    def test_matter_team(self, matter, admin, lawyer, paralegal, portal_user):
        snap = load_actor_snapshot(matter.id)
        assert snap.to_dict() == {
            "admins": [admin.id],
            "lawyers": [lawyer.id],
            "paralegals": [paralegal.id],
            "clients": [portal_user.id],
        }

    def test_lawyer_assignees_join_owner(self, matter, lawyer, make_user):
        colleague = make_user("LAWYER")
        _assign(matter, colleague)
        _assign(matter, colleague, title="Second task")
        assert load_actor_snapshot(matter.id).lawyers == [lawyer.id, colleague.id]

    def test_inactive_assignee_excluded(self, matter, paralegal, make_user):
        _assign(matter, make_user("PARALEGAL", is_active=False))
        assert load_actor_snapshot(matter.id).paralegals == [paralegal.id]

    def test_inactive_admin_excluded(self, matter, admin, make_user):
        make_user("ADMIN", is_active=False)
        assert load_actor_snapshot(matter.id).admins == [admin.id]

    def test_missing_matter(self):
        with pytest.raises(NotFoundError):
            load_actor_snapshot(4040)

    def test_contact_team(self, contact, admin, lawyer, portal_user):
        snap = load_contact_actor_snapshot(contact.id)
        assert snap.admins == [admin.id]
        assert snap.lawyers == [lawyer.id]
        assert snap.paralegals == []
        assert snap.clients == [portal_user.id]

    def test_instance_without_subject(self):
        with pytest.raises(ForbiddenError):
            load_snapshot_for_instance(SimpleNamespace(matter_id=None, contact_id=None))


# ═════════════════════════════════════════════════════════════════════════
# Eligibility
# ═════════════════════════════════════════════════════════════════════════


class TestEligibility:
    SNAP = ActorSnapshot(admins=[1], lawyers=[2, 3], paralegals=[4], clients=[5])

    @pytest.mark.parametrize("scope,expected", [
        ("ADMIN", [1]),
        ("LAWYER", [2, 3, 1]),
        ("PARALEGAL", [4, 1]),
        ("CLIENT", [5, 1]),
    ])
    def test_scope_resolution(self, scope, expected):
        assert resolve_eligible_actor_ids(scope, self.SNAP) == expected

    def test_without_admin_override(self):
        assert resolve_eligible_actor_ids("LAWYER", self.SNAP, include_admins=False) == [2, 3]

    def test_can_perform(self):
        step = SimpleNamespace(role_scope="LAWYER")

        def user(uid, role="LAWYER", active=True):
            return SimpleNamespace(id=uid, role=role, is_active=active)

        assert can_perform_action(user(2), step, self.SNAP) == (True, None)
        assert can_perform_action(user(1, "ADMIN"), step, self.SNAP) == (True, None)
        assert can_perform_action(user(4, "PARALEGAL"), step, self.SNAP)[0] is False
        assert can_perform_action(user(2, active=False), step, self.SNAP)[0] is False
        assert can_perform_action(None, step, self.SNAP)[0] is False

    def test_claims(self, lawyer, admin, make_user):
        held = SimpleNamespace(assigned_to_id=lawyer.id)
        assert_claimable(held, lawyer)
        assert_claimable(held, admin)
        assert_claimable(SimpleNamespace(assigned_to_id=None), make_user("LAWYER"))
        with pytest.raises(ConflictError):
            assert_claimable(held, make_user("LAWYER"))


# ═════════════════════════════════════════════════════════════════════════
# Record access
# ═════════════════════════════════════════════════════════════════════════


class TestAccess:
    def test_matter_team_can_see_matter(self, matter, admin, lawyer, paralegal, portal_user):
        for user in (admin, lawyer, paralegal, portal_user):
            assert assert_matter_access(user, matter.id).id == matter.id

    def test_outsider_gets_not_found(self, matter, make_user):
        with pytest.raises(NotFoundError):
            assert_matter_access(make_user("LAWYER"), matter.id)

    def test_accessible_matter_ids(self, matter, admin, paralegal, make_user):
        assert accessible_matter_ids(admin) is None
        assert accessible_matter_ids(paralegal) == {matter.id}
        assert accessible_matter_ids(make_user("PARALEGAL")) == set()

    def test_contact_access(self, contact, lawyer, portal_user, paralegal):
        assert assert_contact_access(lawyer, contact.id).id == contact.id
        assert assert_contact_access(portal_user, contact.id).id == contact.id
        with pytest.raises(NotFoundError):
            assert_contact_access(paralegal, contact.id)
        assert accessible_contact_ids(paralegal) == set()
        assert contact.id in accessible_contact_ids(lawyer)
