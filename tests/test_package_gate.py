"""
Project package stage gate tests.

Tests cover:
  - forward flow PM_DRAFT → PJM_REVIEW → PM_ACTIVATE → ACTIVE
  - wrong-stage operations are conflicts
  - stage access (role, ownership, delivery assignment, SUPER_ADMIN)
  - send-back targets (PM, PJM, legacy ENG), forward targets refused, resubmission
  - timeline / badge / can_edit projection
  - submit → send-back → resubmit scenario through the API
"""
import pytest

from delivery.core.exceptions import AuthorizationError, ConflictError, ValidationError
from delivery.models import db
from delivery.models.audit import AuditLog
from delivery.models.notification import Notification
from delivery.models.task import Task
from delivery.services import package_gate


def _reload(project):
    db.session.refresh(project)
    return project


# ═════════════════════════════════════════════════════════════════════════
# FORWARD FLOW
# ═════════════════════════════════════════════════════════════════════════

class TestForwardFlow:
    def test_full_flow(self, cast):
        project = package_gate.submit(cast.project.id, cast.pm)
        assert project.package_status == "PJM_REVIEW"
        assert project.is_draft is False

        project = package_gate.accept(cast.project.id, cast.pjm)
        assert project.package_status == "PM_ACTIVATE"

        project = package_gate.activate(cast.project.id, cast.pm)
        assert project.package_status == "ACTIVE"
        assert project.status == "ACTIVE"
        assert package_gate.resolve_active_stage(project) is None

    def test_activation_plans_new_tasks(self, cast, make_task):
        done = make_task(cast.project, title="Already running")
        done.status = "IN_PROGRESS"
        db.session.commit()

        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        package_gate.activate(cast.project.id, cast.pm)

        assert db.session.get(Task, cast.task.id).status == "PLANNED"
        assert db.session.get(Task, done.id).status == "IN_PROGRESS"
        log = AuditLog.query.filter_by(action="project.package_activate").one()
        assert log.diff["tasks_planned"] == [cast.task.id]

    def test_each_transition_audited(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        logs = AuditLog.query.filter_by(entity_type="project").order_by(AuditLog.id).all()
        assert [log.action for log in logs] == ["project.package_submit", "project.package_accept"]
        assert logs[0].diff["package_status"] == {"old": "PM_DRAFT", "new": "PJM_REVIEW"}
        assert logs[1].actor_user_id == cast.pjm.id

    def test_submit_notifies_delivery_manager(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        notes = Notification.query.filter_by(category="package_assigned").all()
        assert [n.recipient_user_id for n in notes] == [cast.pjm.id]

    def test_submit_requires_a_task(self, cast, make_project):
        empty = make_project(owner=cast.pm, delivery_manager=cast.pjm)
        with pytest.raises(ValidationError):
            package_gate.submit(empty.id, cast.pm)
        assert _reload(empty).package_status == "PM_DRAFT"

    def test_task_requirement_is_configurable(self, app, cast, make_project):
        empty = make_project(owner=cast.pm, delivery_manager=cast.pjm)
        app.config["PACKAGE_REQUIRE_TASKS"] = False
        try:
            assert package_gate.submit(empty.id, cast.pm).package_status == "PJM_REVIEW"
        finally:
            app.config["PACKAGE_REQUIRE_TASKS"] = True


class TestWrongStage:
    @pytest.mark.parametrize("operation", ["accept", "activate"])
    def test_from_draft(self, cast, operation):
        with pytest.raises(ConflictError) as exc:
            getattr(package_gate, operation)(cast.project.id, cast.admin)
        assert exc.value.current_status == "PM_DRAFT"

    @pytest.mark.parametrize("operation", ["submit", "activate"])
    def test_from_pjm_review(self, cast, operation):
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(ConflictError):
            getattr(package_gate, operation)(cast.project.id, cast.admin)

    @pytest.mark.parametrize("operation", ["submit", "accept"])
    def test_from_pm_activate(self, cast, operation):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        with pytest.raises(ConflictError):
            getattr(package_gate, operation)(cast.project.id, cast.admin)

    @pytest.mark.parametrize("operation", ["submit", "accept", "activate"])
    def test_from_active(self, cast, operation):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        package_gate.activate(cast.project.id, cast.pm)
        with pytest.raises(ConflictError):
            getattr(package_gate, operation)(cast.project.id, cast.admin)

    def test_refusal_writes_no_audit(self, cast):
        with pytest.raises(ConflictError):
            package_gate.accept(cast.project.id, cast.pjm)
        assert AuditLog.query.filter_by(entity_type="project").count() == 0


# ═════════════════════════════════════════════════════════════════════════
# ACCESS
# ═════════════════════════════════════════════════════════════════════════

class TestStageAccess:
    def test_non_owner_pm_cannot_submit(self, cast):
        with pytest.raises(AuthorizationError):
            package_gate.submit(cast.project.id, cast.other_pm)

    def test_co_owner_can_submit(self, cast):
        cast.project.owner_ids = [cast.pm.id, cast.other_pm.id]
        db.session.commit()
        assert package_gate.submit(cast.project.id, cast.other_pm).package_status == "PJM_REVIEW"

    def test_engineer_cannot_accept(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(AuthorizationError):
            package_gate.accept(cast.project.id, cast.engineer)

    def test_vendor_project_manager_can_accept(self, cast, make_user):
        colleague = make_user("PROJECT_MANAGER", company=cast.vendor)
        package_gate.submit(cast.project.id, cast.pm)
        assert package_gate.accept(cast.project.id, colleague).package_status == "PM_ACTIVATE"

    def test_unrelated_project_manager_cannot_accept(self, cast, make_user):
        stranger = make_user("PROJECT_MANAGER")
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(AuthorizationError):
            package_gate.accept(cast.project.id, stranger)

    def test_super_admin_drives_every_stage(self, cast):
        package_gate.submit(cast.project.id, cast.admin)
        package_gate.accept(cast.project.id, cast.admin)
        assert package_gate.activate(cast.project.id, cast.admin).package_status == "ACTIVE"


# ═════════════════════════════════════════════════════════════════════════
# SEND BACK
# ═════════════════════════════════════════════════════════════════════════

class TestSendBack:
    def test_send_back_to_pm_and_resubmit(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        project = package_gate.send_back(cast.project.id, cast.pjm, "PM", "scope unclear")
        assert project.package_status == "SENT_BACK"
        assert project.package_sent_back_to == "PM"
        assert project.package_sent_back_reason == "scope unclear"
        assert project.is_draft is True

        project = package_gate.submit(cast.project.id, cast.pm)
        assert project.package_status == "PJM_REVIEW"
        assert project.package_sent_back_to is None
        assert project.package_sent_back_reason is None

    def test_send_back_to_pjm_from_final_stage(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        project = package_gate.send_back(cast.project.id, cast.pm, "pjm", "missing staffing")
        assert project.package_sent_back_to == "PJM"
        assert package_gate.resolve_active_stage(project).id == "PJM"

        project = package_gate.accept(cast.project.id, cast.pjm)
        assert project.package_status == "PM_ACTIVATE"

    def test_eng_target_maps_to_pjm_stage(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        project = package_gate.send_back(cast.project.id, cast.pm, "ENG", "estimates missing")
        assert package_gate.resolve_active_stage(project).id == "PJM"
        assert package_gate.package_badge(project) == "Sent back to Project Manager"

    def test_legacy_eng_review_status_is_pjm_stage(self, cast):
        cast.project.package_status = "ENG_REVIEW"
        db.session.commit()
        assert package_gate.resolve_active_stage(cast.project).id == "PJM"
        assert package_gate.accept(cast.project.id, cast.pjm).package_status == "PM_ACTIVATE"

    def test_reason_too_short(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(ValidationError) as exc:
            package_gate.send_back(cast.project.id, cast.pjm, "PM", "no")
        assert exc.value.details["reason"] == "too_short"
        assert _reload(cast.project).package_status == "PJM_REVIEW"

    def test_unknown_target(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(ValidationError):
            package_gate.send_back(cast.project.id, cast.pjm, "VP", "not my call")

    @pytest.mark.parametrize("target", ["PJM", "ENG"])
    def test_draft_cannot_skip_forward(self, cast, make_project, target):
        empty = make_project(owner=cast.pm, delivery_manager=cast.pjm)
        with pytest.raises(ValidationError) as exc:
            package_gate.send_back(empty.id, cast.pm, target, "skip the review")
        assert exc.value.details["current_stage"] == "PM"
        assert _reload(empty).package_status == "PM_DRAFT"
        with pytest.raises(ConflictError):
            package_gate.accept(empty.id, cast.pjm)

    def test_returned_package_cannot_jump_to_later_stage(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.send_back(cast.project.id, cast.pjm, "PM", "scope unclear")
        with pytest.raises(ValidationError):
            package_gate.send_back(cast.project.id, cast.pm, "PJM", "never mind")
        assert _reload(cast.project).package_sent_back_to == "PM"

    def test_only_current_stage_may_send_back(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        with pytest.raises(AuthorizationError):
            package_gate.send_back(cast.project.id, cast.pm, "PM", "changed my mind")

    def test_active_project_cannot_be_sent_back(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        package_gate.activate(cast.project.id, cast.pm)
        with pytest.raises(ConflictError):
            package_gate.send_back(cast.project.id, cast.admin, "PM", "too late")

    def test_send_back_notifies_target(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.send_back(cast.project.id, cast.pjm, "PM", "scope unclear")
        notes = Notification.query.filter_by(category="package_sent_back").all()
        assert [n.recipient_user_id for n in notes] == [cast.pm.id]
        assert notes[0].message == "scope unclear"


# ═════════════════════════════════════════════════════════════════════════
# PROJECTION
# ═════════════════════════════════════════════════════════════════════════

class TestProjection:
    def test_timeline_draft(self, cast):
        timeline = package_gate.package_timeline(cast.project)
        assert [s["status"] for s in timeline["stages"]] == ["active", "upcoming", "upcoming"]
        assert timeline["badge"] == "Product Manager Prep"

    def test_timeline_sent_back(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        project = package_gate.send_back(cast.project.id, cast.pjm, "PM", "scope unclear")
        timeline = package_gate.package_timeline(project)
        assert timeline["stages"][0]["is_sent_back"] is True
        assert timeline["badge"] == "Sent back to Product Manager Prep"

    def test_timeline_active(self, cast):
        package_gate.submit(cast.project.id, cast.pm)
        package_gate.accept(cast.project.id, cast.pjm)
        project = package_gate.activate(cast.project.id, cast.pm)
        timeline = package_gate.package_timeline(project)
        assert [s["status"] for s in timeline["stages"]] == ["done", "done", "done"]
        assert timeline["badge"] == "Activated"

    def test_can_edit(self, cast):
        assert package_gate.can_edit_package(cast.pm, cast.project) is True
        assert package_gate.can_edit_package(cast.pjm, cast.project) is False
        assert package_gate.can_edit_package(cast.admin, cast.project) is True


# ═════════════════════════════════════════════════════════════════════════
# API — submit, send back, resubmit
# ═════════════════════════════════════════════════════════════════════════

class TestPackageAPI:
    def test_send_back_and_resubmit(self, client, cast, as_user):
        pid = cast.project.id
        res = client.get(f"/api/v1/projects/{pid}/package", headers=as_user(cast.pm))
        assert res.status_code == 200
        assert res.get_json()["package_status"] == "PM_DRAFT"
        assert res.get_json()["can_edit"] is True

        res = client.post(f"/api/v1/projects/{pid}/package/submit", headers=as_user(cast.pm))
        assert res.status_code == 200
        assert res.get_json()["package"]["package_status"] == "PJM_REVIEW"

        res = client.post(
            f"/api/v1/projects/{pid}/package/send-back",
            json={"targetStage": "PM", "reason": "scope unclear"},
            headers=as_user(cast.pjm),
        )
        assert res.status_code == 200
        package = res.get_json()["package"]
        assert package["package_status"] == "SENT_BACK"
        assert package["package_sent_back_to"] == "PM"

        res = client.post(f"/api/v1/projects/{pid}/package/submit", headers=as_user(cast.pm))
        assert res.status_code == 200
        project = res.get_json()["project"]
        assert project["package_status"] == "PJM_REVIEW"
        assert project["package_sent_back_to"] is None

    def test_wrong_stage_is_409(self, client, cast, as_user):
        res = client.post(f"/api/v1/projects/{cast.project.id}/package/activate", headers=as_user(cast.pm))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_wrong_actor_is_403(self, client, cast, as_user):
        res = client.post(f"/api/v1/projects/{cast.project.id}/package/submit", headers=as_user(cast.engineer))
        assert res.status_code == 403

    def test_unknown_project(self, client, cast, as_user):
        res = client.post("/api/v1/projects/99999/package/submit", headers=as_user(cast.pm))
        assert res.status_code == 404

    def test_full_flow_over_http(self, client, cast, as_user):
        pid = cast.project.id
        assert client.post(f"/api/v1/projects/{pid}/package/submit", headers=as_user(cast.pm)).status_code == 200
        assert client.post(f"/api/v1/projects/{pid}/package/accept", headers=as_user(cast.pjm)).status_code == 200
        res = client.post(f"/api/v1/projects/{pid}/package/activate", headers=as_user(cast.pm))
        assert res.status_code == 200
        data = res.get_json()
        assert data["project"]["status"] == "ACTIVE"
        assert data["package"]["stage"] is None
