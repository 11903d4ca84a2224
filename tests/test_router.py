"""
Tests for the operator HTTP API
"""

import httpx
import pytest

from dr_orchestrator.app import create_app
from dr_orchestrator.models import DrRole, DrState


@pytest.fixture
async def api(harness):
    app = create_app(harness.orchestrator, manage_lifecycle=False)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


def _workload_body(**overrides):
    body = {
        "name": "orders-db",
        "namespace": "shop",
        "dump_executor": "pg",
        "restore_executor": "pg",
        "cadence_seconds": 3600,
        "replicas": 2,
    }
    body.update(overrides)
    return body


class TestDisasterRecoveryAPI:

    async def test_register_workload_accepted(self, api, harness):
        response = await api.post("/api/v1/dr/workloads", json=_workload_body())

        assert response.status_code == 202
        body = response.json()
        assert body["outcome"] == "accepted"
        assert body["data"]["workload_id"] == "shop/orders-db"
        assert await harness.repository.get_workload("shop/orders-db") is not None

    async def test_invalid_workload_is_bad_request(self, api):
        response = await api.post("/api/v1/dr/workloads", json=_workload_body(cadence_seconds=0))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_backup_of_unknown_workload_is_not_found(self, api):
        response = await api.post("/api/v1/dr/workloads/shop/missing/backups")

        assert response.status_code == 404
        assert response.json()["outcome"] == "rejected"

    async def test_backup_and_restore(self, api, harness, spec):
        await harness.register(spec)

        response = await api.post("/api/v1/dr/workloads/shop/orders-db/backups")
        assert response.status_code == 202
        await harness.orchestrator.wait_background()

        response = await api.post("/api/v1/dr/workloads/shop/orders-db/restores", json={"sequence": 1})
        assert response.status_code == 202
        await harness.orchestrator.wait_background()
        assert spec.workload_id in harness.executors["primary"].restored

    async def test_restore_sequence_is_validated(self, api):
        response = await api.post("/api/v1/dr/workloads/shop/orders-db/restores", json={"sequence": 0})

        assert response.status_code == 422

    async def test_promote_without_data_conflicts(self, api, harness, spec):
        await harness.register(spec)

        response = await api.post("/api/v1/dr/promote", json={"actor": "alice", "reason": "drill"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "NO_VERIFIED_DATA"

    async def test_promote_without_body_uses_defaults(self, api, harness, spec):
        await harness.register(spec)
        await harness.backup(spec)
        await harness.replicate(spec)

        response = await api.post("/api/v1/dr/promote")
        await harness.orchestrator.wait_background()

        assert response.status_code == 202
        state = await harness.repository.load_dr_state()
        assert state.role == DrRole.PROMOTED
        assert state.history[0].actor == "operator"

    async def test_failback_in_wrong_state_conflicts(self, api):
        response = await api.post("/api/v1/dr/failback")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_DR_STATE"

    async def test_clear_halt(self, api, harness):
        await harness.repository.save_dr_state(DrState(halted=True, halt_reason="promotion failed"))

        response = await api.post("/api/v1/dr/clear-halt", json={"actor": "alice"})

        assert response.status_code == 202
        assert response.json()["data"]["halted"] is False

    async def test_status(self, api, harness, spec):
        await harness.register(spec)

        response = await api.get("/api/v1/dr/status")

        assert response.status_code == 200
        body = response.json()
        assert body["dr_state"]["role"] == "primary_active"
        assert body["workloads"][0]["workload_id"] == "shop/orders-db"


class TestServiceEndpoints:

    async def test_health_reports_role(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "role": "primary_active", "halted": False}

    async def test_metrics_exposed_in_prometheus_format(self, api, harness, spec):
        await harness.register(spec)
        await harness.backup(spec)

        response = await api.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "dr_backup_runs_total" in response.text

    async def test_endpoints_unavailable_before_startup(self):
        app = create_app(manage_lifecycle=False)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            health = await client.get("/health")
            status = await client.get("/api/v1/dr/status")

        assert health.status_code == 503
        assert status.status_code == 503
