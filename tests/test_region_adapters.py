"""
Tests for the Kubernetes workload handle and region probes
"""

from unittest.mock import MagicMock

import httpx
import pytest
from kubernetes.client.rest import ApiException

from dr_orchestrator.adapters.kubernetes_handle import (
    HOOK_UNSAFE_EXIT_CODE, KubernetesWorkloadHandle, StaticWorkloadHandle, kubernetes_handle_factory,
)
from dr_orchestrator.adapters.probes import HttpRegionProbe, StaticRegionProbe
from dr_orchestrator.error_models import HookUnsafeError

from conftest import make_spec


def _statefulset(replicas=2, ready=2, generation=3, observed=3, annotations=None):
    statefulset = MagicMock()
    statefulset.spec.replicas = replicas
    statefulset.status.ready_replicas = ready
    statefulset.status.observed_generation = observed
    statefulset.metadata.generation = generation
    statefulset.metadata.annotations = annotations
    return statefulset


@pytest.fixture
def handle():
    handle = KubernetesWorkloadHandle(make_spec(), MagicMock(), hook_timeout_seconds=5)
    handle.apps = MagicMock()
    handle.core = MagicMock()
    return handle


class TestKubernetesWorkloadHandle:

    async def test_scale_patches_statefulset_scale(self, handle):
        await handle.scale(3)

        handle.apps.patch_namespaced_stateful_set_scale.assert_called_once_with(
            "orders-db", "shop", {"spec": {"replicas": 3}}
        )

    async def test_ready_when_all_replicas_ready_for_current_generation(self, handle):
        handle.apps.read_namespaced_stateful_set_status.return_value = _statefulset()

        assert await handle.is_ready() is True

    async def test_not_ready_while_rolling(self, handle):
        handle.apps.read_namespaced_stateful_set_status.return_value = _statefulset(ready=1)
        assert await handle.is_ready() is False

        handle.apps.read_namespaced_stateful_set_status.return_value = _statefulset(observed=2)
        assert await handle.is_ready() is False

    async def test_hook_without_annotation_is_skipped(self, handle):
        handle.apps.read_namespaced_stateful_set.return_value = _statefulset(annotations={})
        handle._exec = MagicMock()

        await handle.run_hook("pre-backup")

        handle._exec.assert_not_called()

    async def test_hook_on_missing_statefulset_is_skipped(self, handle):
        handle.apps.read_namespaced_stateful_set.side_effect = ApiException(status=404)

        await handle.run_hook("pre-backup")

    async def test_hook_runs_annotated_command(self, handle):
        handle.apps.read_namespaced_stateful_set.return_value = _statefulset(
            annotations={"dr-orchestrator/hook.pre-backup": "psql -c CHECKPOINT"}
        )
        handle._exec = MagicMock(return_value=(0, "CHECKPOINT"))

        await handle.run_hook("pre-backup")

        handle._exec.assert_called_once_with("psql -c CHECKPOINT")

    async def test_unsafe_exit_code_vetoes(self, handle):
        handle.apps.read_namespaced_stateful_set.return_value = _statefulset(
            annotations={"dr-orchestrator/hook.pre-restore": "check-lag"}
        )
        handle._exec = MagicMock(return_value=(HOOK_UNSAFE_EXIT_CODE, "replication lag too high\n"))

        with pytest.raises(HookUnsafeError) as exc_info:
            await handle.run_hook("pre-restore")
        assert "replication lag too high" in exc_info.value.message

    async def test_other_nonzero_exit_is_a_hook_crash(self, handle):
        handle.apps.read_namespaced_stateful_set.return_value = _statefulset(
            annotations={"dr-orchestrator/hook.post-backup": "false"}
        )
        handle._exec = MagicMock(return_value=(1, ""))

        with pytest.raises(RuntimeError, match="exited with 1"):
            await handle.run_hook("post-backup")

    def test_factory_builds_handles_per_spec(self):
        factory = kubernetes_handle_factory(MagicMock(), hook_timeout_seconds=10)

        handle = factory(make_spec("cache"))

        assert handle.spec.workload_id == "shop/cache"
        assert handle.hook_timeout_seconds == 10


async def test_static_handle_tracks_replicas():
    handle = StaticWorkloadHandle(make_spec())

    await handle.scale(2)

    assert handle.replicas == 2
    assert await handle.is_ready() is True
    assert await handle.run_hook("pre-backup") is None


class TestRegionProbes:

    async def test_http_probe_success(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
        probe = HttpRegionProbe("primary", "https://primary.example.com/healthz", client=client)

        assert await probe.check() is True
        await probe.aclose()

    async def test_http_probe_error_status_is_unreachable(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        probe = HttpRegionProbe("primary", "https://primary.example.com/healthz", client=client)

        assert await probe.check() is False

    async def test_http_probe_transport_error_propagates(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        probe = HttpRegionProbe("primary", "https://primary.example.com/healthz", client=client)

        with pytest.raises(httpx.ConnectError):
            await probe.check()

    async def test_static_probe_is_always_reachable(self):
        assert await StaticRegionProbe("standby").check() is True
