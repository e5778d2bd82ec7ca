"""
Workflow definition store tests.

Tests cover:
  - create: validation, step ordering/renumbering, one active per entity type
  - update: partial fields, step replacement, retired definitions locked
  - delete: hard delete, retire when history exists, refusal with live instances
  - definition resolution for a task (project pin, active fallback)
  - API: role guard, camelCase payloads, error envelope
"""
import pytest

from delivery.core.exceptions import ConflictError, NotFoundError, ValidationError
from delivery.models import db
from delivery.models.audit import AuditLog
from delivery.models.workflow import WorkflowDefinition
from delivery.services import workflow_definition_service as definitions
from delivery.services import workflow_engine

TWO_STEPS = [
    {"name": "PM review", "approver_type": "ROLE", "approver_role": "PM"},
    {"name": "Vendor review", "approver_type": "DYNAMIC", "dynamic_approver_type": "TASK_PROJECT_MANAGER"},
]


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateDefinition:
    def test_create(self, make_definition):
        definition = make_definition(TWO_STEPS)
        assert definition.id is not None
        assert definition.is_active is True
        assert [s.order for s in definition.steps] == [1, 2]
        assert definition.steps[1].approver_type == "DYNAMIC"
        assert definition.steps[0].actions == ["APPROVE", "REJECT", "SEND_BACK", "REQUEST_CHANGE"]

    def test_steps_sorted_and_renumbered(self, make_definition):
        definition = make_definition([
            {"name": "Last", "order": 30, "approver_role": "PM"},
            {"name": "First", "order": 5, "approver_role": "VP"},
            {"name": "Middle", "order": 10, "dynamic_approver_type": "TASK_PM"},
        ])
        assert [(s.order, s.name) for s in definition.steps] == [(1, "First"), (2, "Middle"), (3, "Last")]

    def test_duplicate_orders_rejected(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({
                "name": "Dup",
                "steps": [
                    {"name": "A", "order": 1, "approver_role": "PM"},
                    {"name": "B", "order": 1, "approver_role": "PM"},
                ],
            })

    def test_requires_steps(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({"name": "Empty", "steps": []})

    def test_requires_name(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({"steps": TWO_STEPS})

    def test_unknown_entity_type(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({"entity_type": "INVOICE", "name": "X", "steps": TWO_STEPS})

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({
                "name": "X",
                "steps": [{"name": "A", "approver_role": "PM", "actions": ["APPROVE", "ESCALATE"]}],
            })

    def test_step_with_both_approver_kinds_rejected(self):
        with pytest.raises(ValidationError):
            definitions.create_definition({
                "name": "X",
                "steps": [{"name": "A", "approver_role": "PM", "dynamic_approver_type": "TASK_PM"}],
            })

    @pytest.mark.parametrize("flags", [
        {"is_active": "false"},
        {"is_active": 0},
    ])
    def test_is_active_must_be_boolean(self, flags):
        with pytest.raises(ValidationError):
            definitions.create_definition({"name": "X", "steps": TWO_STEPS, **flags})
        assert WorkflowDefinition.query.count() == 0

    @pytest.mark.parametrize("field", ["requires_comment_on_reject", "requires_comment_on_send_back"])
    def test_step_comment_flags_must_be_boolean(self, field):
        with pytest.raises(ValidationError) as exc:
            definitions.create_definition({
                "name": "X",
                "steps": [{"name": "A", "approver_role": "PM", field: "false"}],
            })
        assert field in exc.value.details

    def test_new_active_definition_deactivates_siblings(self, make_definition):
        first = make_definition(TWO_STEPS, name="First")
        second = make_definition(TWO_STEPS, name="Second")
        db.session.refresh(first)
        assert first.is_active is False
        assert second.is_active is True
        assert definitions.get_active_definition("TASK").id == second.id

    def test_inactive_definition_leaves_siblings(self, make_definition):
        first = make_definition(TWO_STEPS, name="First")
        make_definition(TWO_STEPS, name="Draft", is_active=False)
        db.session.refresh(first)
        assert first.is_active is True

    def test_create_is_audited(self, make_definition):
        definition = make_definition(TWO_STEPS)
        log = AuditLog.query.filter_by(entity_type="workflow_definition", entity_id=str(definition.id)).one()
        assert log.action == "workflow_definition.create"
        assert log.diff["steps"] == 2


# ═════════════════════════════════════════════════════════════════════════
# UPDATE
# ═════════════════════════════════════════════════════════════════════════

class TestUpdateDefinition:
    def test_partial_update(self, make_definition):
        definition = make_definition(TWO_STEPS)
        updated = definitions.update_definition(definition.id, {"name": "Renamed"})
        assert updated.name == "Renamed"
        assert len(updated.steps) == 2

    def test_update_is_active_must_be_boolean(self, make_definition):
        definition = make_definition(TWO_STEPS)
        with pytest.raises(ValidationError):
            definitions.update_definition(definition.id, {"is_active": "false"})
        assert db.session.get(WorkflowDefinition, definition.id).is_active is True

    def test_replace_steps(self, make_definition):
        definition = make_definition(TWO_STEPS)
        updated = definitions.update_definition(
            definition.id, {"steps": [{"name": "Only", "approver_role": "VP"}]},
        )
        assert [s.name for s in updated.steps] == ["Only"]

    def test_reactivating_deactivates_siblings(self, make_definition):
        first = make_definition(TWO_STEPS, name="First")
        second = make_definition(TWO_STEPS, name="Second")
        definitions.update_definition(first.id, {"is_active": True})
        db.session.refresh(second)
        assert second.is_active is False

    def test_running_instance_keeps_its_snapshot(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        instance = workflow_engine.start_for_task(cast.task.id, cast.pm)
        definitions.update_definition(
            definition.id, {"steps": [{"name": "Replacement", "approver_role": "VP"}]},
        )
        db.session.refresh(instance)
        assert [s.name for s in instance.steps] == ["PM review", "Vendor review"]

    def test_update_missing(self):
        with pytest.raises(NotFoundError):
            definitions.update_definition(99999, {"name": "X"})

    def test_retired_definition_locked(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        definitions.delete_definition(definition.id, force=True)
        with pytest.raises(ConflictError):
            definitions.update_definition(definition.id, {"name": "Back from the dead"})


# ═════════════════════════════════════════════════════════════════════════
# DELETE
# ═════════════════════════════════════════════════════════════════════════

class TestDeleteDefinition:
    def test_hard_delete_when_never_used(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        cast.project.task_workflow_definition_id = definition.id
        db.session.commit()
        result = definitions.delete_definition(definition.id)
        assert result == {"deleted": True, "retired": False, "warning": None, "live_instances": 0}
        assert db.session.get(WorkflowDefinition, definition.id) is None
        db.session.refresh(cast.project)
        assert cast.project.task_workflow_definition_id is None

    def test_refused_with_live_instances(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        with pytest.raises(ConflictError) as exc:
            definitions.delete_definition(definition.id)
        assert exc.value.details["live_instances"] == 1
        assert "in progress" in exc.value.details["warning"]
        assert db.session.get(WorkflowDefinition, definition.id).retired_at is None

    def test_force_retires_with_warning(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        result = definitions.delete_definition(definition.id, force=True)
        assert result["deleted"] is False
        assert result["retired"] is True
        assert result["live_instances"] == 1
        assert result["warning"]
        kept = db.session.get(WorkflowDefinition, definition.id)
        assert kept.is_active is False
        assert kept.retired_at is not None

    def test_status_reports_retired_definition(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        workflow_engine.start_for_task(cast.task.id, cast.pm)
        definitions.delete_definition(definition.id, force=True)
        status = workflow_engine.get_status("TASK", cast.task.id)
        assert status["definition"]["retired"] is True
        assert status["instance"]["status"] == "IN_PROGRESS"


# ═════════════════════════════════════════════════════════════════════════
# RESOLUTION FOR A TASK
# ═════════════════════════════════════════════════════════════════════════

class TestResolveForTask:
    def test_uses_active_definition(self, cast, make_definition):
        definition = make_definition(TWO_STEPS)
        assert definitions.resolve_definition_for_task(cast.task).id == definition.id

    def test_project_pin(self, cast, make_definition):
        pinned = make_definition(TWO_STEPS, name="Pinned")
        cast.project.task_workflow_definition_id = pinned.id
        db.session.commit()
        assert definitions.resolve_definition_for_task(cast.task).id == pinned.id

    def test_inactive_pin_refused(self, cast, make_definition):
        pinned = make_definition(TWO_STEPS, name="Pinned")
        make_definition(TWO_STEPS, name="Newer")
        cast.project.task_workflow_definition_id = pinned.id
        db.session.commit()
        with pytest.raises(ValidationError):
            definitions.resolve_definition_for_task(cast.task)

    def test_no_definition(self, cast):
        with pytest.raises(NotFoundError):
            definitions.resolve_definition_for_task(cast.task)


# ═════════════════════════════════════════════════════════════════════════
# API
# ═════════════════════════════════════════════════════════════════════════

class TestDefinitionAPI:
    def test_create_camel_case(self, client, cast, as_user):
        res = client.post(
            "/api/v1/workflows/definitions",
            json={
                "entityType": "TASK",
                "name": "Estimate approval",
                "steps": [
                    {"name": "PM review", "approverType": "ROLE", "approverRole": "PM",
                     "requiresCommentOnReject": True},
                    {"name": "Vendor review", "approverType": "DYNAMIC",
                     "dynamicApproverType": "TASK_PROJECT_MANAGER"},
                ],
            },
            headers=as_user(cast.pm),
        )
        assert res.status_code == 201
        data = res.get_json()
        assert data["entity_type"] == "TASK"
        assert data["steps"][0]["requires_comment_on_reject"] is True
        assert data["steps"][1]["dynamic_approver_type"] == "TASK_PROJECT_MANAGER"

    def test_create_forbidden_for_engineer(self, client, cast, as_user):
        res = client.post(
            "/api/v1/workflows/definitions",
            json={"name": "X", "steps": TWO_STEPS},
            headers=as_user(cast.engineer),
        )
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_super_admin_may_create(self, client, cast, as_user):
        res = client.post(
            "/api/v1/workflows/definitions",
            json={"name": "X", "steps": TWO_STEPS},
            headers=as_user(cast.admin),
        )
        assert res.status_code == 201

    def test_requires_actor(self, client):
        res = client.get("/api/v1/workflows/definitions")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_validation_envelope(self, client, cast, as_user):
        res = client.post(
            "/api/v1/workflows/definitions",
            json={"name": "X", "steps": []},
            headers=as_user(cast.pm),
        )
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert "step" in body["error"]

    def test_string_flag_rejected(self, client, cast, make_definition, as_user):
        definition = make_definition(TWO_STEPS)
        res = client.patch(
            f"/api/v1/workflows/definitions/{definition.id}",
            json={"isActive": "false"},
            headers=as_user(cast.pm),
        )
        assert res.status_code == 400
        assert res.get_json()["details"]["is_active"] == "false"

    def test_list_filters(self, client, cast, make_definition, as_user):
        make_definition(TWO_STEPS, name="Old")
        make_definition(TWO_STEPS, name="Current")
        res = client.get("/api/v1/workflows/definitions?entityType=TASK", headers=as_user(cast.viewer))
        assert res.status_code == 200
        assert res.get_json()["total"] == 2

        res = client.get("/api/v1/workflows/definitions?active=true", headers=as_user(cast.viewer))
        assert [d["name"] for d in res.get_json()["items"]] == ["Current"]

    def test_get_and_patch(self, client, cast, make_definition, as_user):
        definition = make_definition(TWO_STEPS)
        res = client.get(f"/api/v1/workflows/definitions/{definition.id}", headers=as_user(cast.viewer))
        assert res.status_code == 200
        assert len(res.get_json()["steps"]) == 2

        res = client.patch(
            f"/api/v1/workflows/definitions/{definition.id}",
            json={"description": "Updated"},
            headers=as_user(cast.pm),
        )
        assert res.status_code == 200
        assert res.get_json()["description"] == "Updated"

    def test_delete_with_live_instance_then_force(self, client, cast, make_definition, as_user):
        definition = make_definition(TWO_STEPS)
        client.post(f"/api/v1/tasks/{cast.task.id}/workflow", headers=as_user(cast.pm))

        res = client.delete(f"/api/v1/workflows/definitions/{definition.id}", headers=as_user(cast.pm))
        assert res.status_code == 409
        assert res.get_json()["details"]["live_instances"] == 1

        res = client.delete(f"/api/v1/workflows/definitions/{definition.id}?force=true", headers=as_user(cast.pm))
        assert res.status_code == 200
        assert res.get_json()["retired"] is True

    def test_get_missing(self, client, cast, as_user):
        res = client.get("/api/v1/workflows/definitions/99999", headers=as_user(cast.pm))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"
