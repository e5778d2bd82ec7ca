"""
Workflow instance engine tests — start and status projection.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from delivery.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from delivery.models import db
from delivery.models.audit import AuditLog
from delivery.models.notification import Notification
from delivery.models.task import Task
from delivery.models.workflow import WorkflowDefinition, WorkflowInstance
from delivery.services import workflow_definition_service as definitions
from delivery.services import workflow_engine

THREE_STEPS = [
    {"name": "PM review", "approver_role": "PM"},
    {"name": "Engineering estimate", "dynamic_approver_type": "ENGINEERING_TEAM"},
    {"name": "Delivery review", "dynamic_approver_type": "TASK_PROJECT_MANAGER"},
]


class TestStartInstance:
    @pytest.mark.parametrize("n_steps", [1, 2, 5])
    def test_fresh_instance_shape(self, cast, make_definition, n_steps):
        make_definition([{"name": f"Step {i}", "approver_role": "PM"} for i in range(n_steps)])
        instance = workflow_engine.start_for_task(cast.task.id, cast.pm)

        assert instance.status == "IN_PROGRESS"
        statuses = [s.status for s in instance.steps]
        assert statuses == ["ACTIVE"] + ["PENDING"] * (n_steps - 1)
        assert instance.current_step_id == instance.steps[0].id
        assert instance.current_step.position == 0

    def test_binds_task_and_snapshots_steps(self, cast, make_definition):
        definition = make_definition(THREE_STEPS)
        instance = workflow_engine.start_for_task(cast.task.id, cast.pm)
        db.session.refresh(cast.task)
        assert cast.task.workflow_instance_id == instance.id
        assert instance.definition_id == definition.id
        assert [s.step_definition_id for s in instance.steps] == [s.id for s in definition.steps]
        assert instance.steps[1].dynamic_approver_type == "ENGINEERING_TEAM"

    def test_start_is_audited(self, cast, make_definition):
        make_definition(THREE_STEPS)
        instance = workflow_engine.start_for_task(cast.task.id, cast.pm)
        log = AuditLog.query.filter_by(action="task.workflow_start").one()
        assert log.entity_id == str(cast.task.id)
        assert log.project_id == cast.project.id
        assert log.diff["instance_id"] == instance.id

    def test_first_step_approvers_notified(self, cast, make_definition):
        make_definition([{"name": "Delivery review", "dynamic_approver_type": "TASK_PROJECT_MANAGER"}])
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        notes = Notification.query.filter_by(category="workflow_action_required").all()
        assert [n.recipient_user_id for n in notes] == [cast.pjm.id]

    def test_second_start_conflicts(self, cast, make_definition):
        make_definition(THREE_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        with pytest.raises(ConflictError):
            workflow_engine.start_for_task(cast.task.id, cast.pm)

    def test_second_start_conflicts_after_definition_change(self, cast, make_definition):
        first = make_definition(THREE_STEPS, name="Chain A")
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        make_definition(THREE_STEPS[:1], name="Chain B")
        assert not db.session.get(WorkflowDefinition, first.id).is_active

        with pytest.raises(ConflictError):
            workflow_engine.start_for_task(cast.task.id, cast.pm)

        live = WorkflowInstance.query.filter_by(entity_id=cast.task.id, status="IN_PROGRESS").all()
        assert [i.definition_id for i in live] == [first.id]
        assert workflow_engine.latest_instance("TASK", cast.task.id).definition_id == first.id

    def test_database_allows_one_live_instance_per_task(self, cast, make_definition):
        definition = make_definition(THREE_STEPS)
        for _ in range(2):
            db.session.add(WorkflowInstance(
                definition_id=definition.id, entity_type="TASK",
                entity_id=cast.task.id, status="IN_PROGRESS",
            ))
        with pytest.raises(IntegrityError):
            db.session.flush()
        db.session.rollback()

    def test_restart_after_terminal_outcome(self, cast, make_definition):
        make_definition(THREE_STEPS)
        first = workflow_engine.start_for_task(cast.task.id, cast.pm)
        first.status = "CHANGES_REQUESTED"
        first.current_step_id = None
        db.session.commit()

        second = workflow_engine.start_for_task(cast.task.id, cast.pm)
        assert second.id != first.id
        assert workflow_engine.latest_instance("TASK", cast.task.id).id == second.id

    def test_inactive_definition_refused(self, cast, make_definition):
        definition = make_definition(THREE_STEPS, is_active=False)
        with pytest.raises(ValidationError):
            workflow_engine.start_instance(definition, cast.task, cast.pm)

    def test_no_definition(self, cast):
        with pytest.raises(NotFoundError):
            workflow_engine.start_for_task(cast.task.id, cast.pm)

    def test_unknown_task(self, cast, make_definition):
        make_definition(THREE_STEPS)
        with pytest.raises(NotFoundError):
            workflow_engine.start_for_task(99999, cast.pm)


class TestStatusProjection:
    def test_status(self, cast, make_definition):
        definition = make_definition(THREE_STEPS)
        instance = workflow_engine.start_for_task(cast.task.id, cast.pm)
        status = workflow_engine.get_status("TASK", cast.task.id)
        assert status["instance"]["id"] == instance.id
        assert status["current_step"]["name"] == "PM review"
        assert status["actions"] == []
        assert status["definition"] == {
            "id": definition.id, "name": definition.name, "is_active": True, "retired": False,
        }

    def test_status_survives_definition_edit(self, cast, make_definition):
        definition = make_definition(THREE_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        definitions.update_definition(definition.id, {"name": "Renamed", "steps": [{"name": "X", "approver_role": "VP"}]})
        status = workflow_engine.get_status("TASK", cast.task.id)
        assert [s["name"] for s in status["instance"]["steps"]] == [s["name"] for s in THREE_STEPS]
        assert status["definition"]["name"] == "Renamed"

    def test_status_without_instance(self, cast):
        with pytest.raises(NotFoundError):
            workflow_engine.get_status("TASK", cast.task.id)


class TestWorkflowAPI:
    def test_start_and_read(self, client, cast, make_definition, as_user):
        make_definition(THREE_STEPS)
        res = client.post(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.pm))
        assert res.status_code == 201
        data = res.get_json()
        assert data["status"] == "IN_PROGRESS"
        assert len(data["steps"]) == 3

        res = client.get(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.viewer))
        assert res.status_code == 200
        assert res.get_json()["current_step"]["position"] == 0

    def test_start_twice(self, client, cast, make_definition, as_user):
        make_definition(THREE_STEPS)
        client.post(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.pm))
        res = client.post(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.pm))
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "IN_PROGRESS"

    def test_status_unknown_task(self, client, cast, as_user):
        res = client.get("/api/v1/tasks/99999/workflow", headers=as_user(cast.pm))
        assert res.status_code == 404

    @pytest.mark.parametrize("who", ["viewer", "engineer", "pjm"])
    def test_only_product_managers_may_start(self, client, cast, make_definition, as_user, who):
        make_definition(THREE_STEPS)
        res = client.post(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(getattr(cast, who)))
        assert res.status_code == 403
        assert workflow_engine.latest_instance("TASK", cast.task.id) is None

    def test_start_with_estimate(self, client, cast, make_definition, as_user):
        make_definition(THREE_STEPS)
        res = client.post(
            f"/api/v1/tasks/{cast.task.id}/workflow",
            json={"quantity": 3, "unit": "days", "confidence": "high", "notes": "  needs a spike  "},
            headers=as_user(cast.pm),
        )
        assert res.status_code == 201
        estimation = res.get_json()["estimation"]
        assert estimation["status"] == "UNDER_REVIEW"
        assert (estimation["quantity"], estimation["unit"]) == (3.0, "DAYS")
        assert estimation["confidence"] == "HIGH"
        assert estimation["notes"] == "needs a spike"
        assert estimation["submitted_by_id"] == cast.pm.id

        status = client.get(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.viewer)).get_json()
        assert status["estimation"]["status"] == "UNDER_REVIEW"

    def test_invalid_estimate_rejected(self, client, cast, make_definition, as_user):
        make_definition(THREE_STEPS)
        res = client.post(
            f"/api/v1/tasks/{cast.task.id}/workflow",
            json={"quantity": 3, "unit": "WEEKS"},
            headers=as_user(cast.pm),
        )
        assert res.status_code == 400
        assert workflow_engine.latest_instance("TASK", cast.task.id) is None


class TestStartPermissions:
    def test_pm_outside_the_project_refused(self, cast, make_definition):
        make_definition(THREE_STEPS)
        with pytest.raises(AuthorizationError):
            workflow_engine.start_for_task(cast.task.id, cast.other_pm)
        assert WorkflowInstance.query.count() == 0

    def test_task_creator_may_start(self, cast, make_definition, make_task):
        make_definition(THREE_STEPS)
        own = make_task(cast.project, creator=cast.other_pm, title="Spike")
        instance = workflow_engine.start_for_task(own.id, cast.other_pm)
        assert instance.started_by_id == cast.other_pm.id

    def test_super_admin_may_start(self, cast, make_definition):
        make_definition(THREE_STEPS)
        assert workflow_engine.start_for_task(cast.task.id, cast.admin).status == "IN_PROGRESS"


class TestEstimateSubmission:
    @pytest.mark.parametrize("estimate", [
        {"quantity": 0, "unit": "HOURS"},
        {"quantity": -2, "unit": "HOURS"},
        {"quantity": "3", "unit": "HOURS"},
        {"quantity": True, "unit": "HOURS"},
        {"quantity": 3},
        {"quantity": 3, "unit": "HOURS", "confidence": "SURE"},
        {"quantity": 3, "unit": "HOURS", "notes": "x" * 1025},
    ])
    def test_invalid_estimate(self, cast, make_definition, estimate):
        make_definition(THREE_STEPS)
        with pytest.raises(ValidationError):
            workflow_engine.start_for_task(cast.task.id, cast.pm, estimate=estimate)
        assert WorkflowInstance.query.count() == 0
        assert db.session.get(Task, cast.task.id).estimation_status == "NOT_SUBMITTED"

    def test_estimate_recorded_and_audited(self, cast, make_definition):
        make_definition(THREE_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm, estimate={"quantity": 8, "unit": "HOURS"})

        task = db.session.get(Task, cast.task.id)
        assert task.estimation_status == "UNDER_REVIEW"
        assert task.estimate_submitted_by_id == cast.pm.id
        assert task.estimate_confidence is None
        log = AuditLog.query.filter_by(action="task.workflow_start").one()
        assert log.diff["estimation"]["status"] == {"old": "NOT_SUBMITTED", "new": "UNDER_REVIEW"}

    def test_start_without_estimate(self, cast, make_definition):
        make_definition(THREE_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        assert db.session.get(Task, cast.task.id).estimation_dict() is None
        assert AuditLog.query.filter_by(action="task.workflow_start").one().diff["estimation"] is None
