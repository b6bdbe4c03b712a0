"""
בדיקות ל-endpoint העברת תלמיד לאונליין — POST /api/admin/students/move-online
"""
import pytest
from sqlalchemy import select

from app.db.models.student import StudentProgramMigrationStaging
from app.domain.services import move_online as move_online_module
from tests.conftest import auth_headers

MOVE_URL = "/api/admin/students/move-online"


@pytest.fixture
async def tenant(tenant_factory):
    return await tenant_factory()


@pytest.fixture
def apply_procedure(monkeypatch):
    """פרוצדורת ההחלה מדומה — מחילה בדיוק את שורת ה-staging שנשלחה"""
    calls = []

    async def fake_procedure(db, function, args):
        calls.append(args)
        staging = await db.get(StudentProgramMigrationStaging, args["p_staging_id"])
        return [{
            "processed": 1,
            "enrollments_upserted": 1,
            "previous_enrollments_closed": 1,
            "class_assignments_cleared": 1 if staging.clear_class_on_online_switch else 0,
            "processed_staging_id": staging.id,
            "processed_student_id": staging.student_id,
            "target_status": "active",
        }]

    monkeypatch.setattr(move_online_module, "call_procedure", fake_procedure)
    return calls


class TestMoveOnlineEndpoint:

    @pytest.mark.integration
    async def test_parent_role_forbidden(self, test_client, tenant):
        response = await test_client.post(
            MOVE_URL, json={"student_id": "s1"}, headers=auth_headers("parent-1", tenant.id)
        )
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    @pytest.mark.integration
    async def test_student_id_required(self, test_client, tenant):
        response = await test_client.post(
            MOVE_URL, json={"student_id": " "}, headers=auth_headers("admin-1", tenant.id, role="admin")
        )
        assert response.status_code == 400
        assert response.json()["field"] == "student_id"

    @pytest.mark.integration
    async def test_unknown_student(self, test_client, tenant, apply_procedure):
        response = await test_client.post(
            MOVE_URL, json={"student_id": "missing"}, headers=auth_headers("admin-1", tenant.id, role="admin")
        )
        assert response.status_code == 404
        assert response.json()["code"] == "STUDENT_NOT_FOUND"
        assert apply_procedure == []

    @pytest.mark.integration
    async def test_moves_with_defaults(self, test_client, db_session, tenant, student_factory, apply_procedure):
        student = await student_factory(tenant.id)

        response = await test_client.post(
            MOVE_URL, json={"student_id": student.id}, headers=auth_headers("owner-1", tenant.id, role="owner")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["request_id"] == response.headers["X-Request-ID"]
        assert body["result"]["processed_student_id"] == student.id
        assert body["result"]["class_assignments_cleared"] == 1

        staging = (await db_session.execute(select(StudentProgramMigrationStaging))).scalar_one()
        assert staging.transition_mode == "switch"
        assert staging.close_previous_status == "paused"
        assert staging.clear_class_on_online_switch is True
        assert staging.created_by == "owner-1"

    @pytest.mark.integration
    async def test_unknown_option_values_fall_back(self, test_client, db_session, tenant, student_factory, apply_procedure):
        student = await student_factory(tenant.id)

        await test_client.post(
            MOVE_URL,
            json={
                "student_id": student.id,
                "transition_mode": "teleport",
                "close_previous_status": "deleted",
                "clear_class_on_online_switch": False,
            },
            headers=auth_headers("admin-1", tenant.id, role="admin"),
        )

        staging = (await db_session.execute(select(StudentProgramMigrationStaging))).scalar_one()
        assert staging.transition_mode == "switch"
        assert staging.close_previous_status == "paused"
        assert staging.clear_class_on_online_switch is False

    @pytest.mark.integration
    async def test_coexist_cancelled(self, test_client, db_session, tenant, student_factory, apply_procedure):
        student = await student_factory(tenant.id)

        response = await test_client.post(
            MOVE_URL,
            json={"student_id": student.id, "transition_mode": "coexist", "close_previous_status": "cancelled"},
            headers=auth_headers("admin-1", tenant.id, role="admin"),
        )

        assert response.status_code == 200
        staging = (await db_session.execute(select(StudentProgramMigrationStaging))).scalar_one()
        assert (staging.transition_mode, staging.close_previous_status) == ("coexist", "cancelled")

    @pytest.mark.integration
    async def test_second_move_blocked_by_pending_row(self, test_client, db_session, tenant, student_factory, monkeypatch):
        student = await student_factory(tenant.id)
        db_session.add(StudentProgramMigrationStaging(tenant_id=tenant.id, student_id=student.id))
        await db_session.commit()

        response = await test_client.post(
            MOVE_URL, json={"student_id": student.id}, headers=auth_headers("admin-1", tenant.id, role="admin")
        )

        assert response.status_code == 409
        assert response.json()["code"] == "PENDING_MIGRATION_EXISTS"
        assert response.json()["error"] == "This student already has a pending migration. Clear it first."

    @pytest.mark.integration
    async def test_mismatched_apply_result(self, test_client, tenant, student_factory, monkeypatch):
        student = await student_factory(tenant.id)

        async def wrong_row(db, function, args):
            return [{
                "processed": 1,
                "processed_staging_id": "another-staging-row",
                "processed_student_id": student.id,
                "target_status": "active",
            }]

        monkeypatch.setattr(move_online_module, "call_procedure", wrong_row)

        response = await test_client.post(
            MOVE_URL, json={"student_id": student.id}, headers=auth_headers("admin-1", tenant.id, role="admin")
        )

        assert response.status_code == 409
        assert response.json()["code"] == "MOVE_ONLINE_TARGET_MISMATCH"
        assert "another-staging-row" not in response.text
