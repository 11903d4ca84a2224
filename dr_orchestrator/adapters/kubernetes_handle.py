"""
Kubernetes StatefulSet workload handles
The kubernetes client is synchronous, so API calls run in worker threads.
Hooks are shell commands taken from StatefulSet annotations and executed in
the first pod.
"""

import asyncio
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from ..error_models import HookUnsafeError
from ..logging_adapter import get_safe_logger
from ..models import WorkloadSpec
from ..sites import HandleFactory

logger = get_safe_logger("dr_orchestrator.kubernetes_handle")

HOOK_ANNOTATION_PREFIX = "dr-orchestrator/hook."
# Hook exit status meaning "unsafe to proceed" (EX_TEMPFAIL)
HOOK_UNSAFE_EXIT_CODE = 75


def load_api_client(context: Optional[str] = None) -> client.ApiClient:
    """In-cluster config when available, otherwise the kubeconfig context."""
    if context is None:
        try:
            config.load_incluster_config()
            return client.ApiClient()
        except config.ConfigException:
            pass
    return config.new_client_from_config(context=context)


class KubernetesWorkloadHandle:
    """WorkloadHandle for one StatefulSet named after the workload"""

    def __init__(self, spec: WorkloadSpec, api_client: client.ApiClient,
                 hook_timeout_seconds: float = 60.0):
        self.spec = spec
        self.apps = client.AppsV1Api(api_client)
        self.core = client.CoreV1Api(api_client)
        self.hook_timeout_seconds = hook_timeout_seconds

    async def scale(self, replicas: int) -> None:
        await asyncio.to_thread(
            self.apps.patch_namespaced_stateful_set_scale,
            self.spec.name,
            self.spec.namespace,
            {"spec": {"replicas": replicas}},
        )
        logger.info("workload_scaled", workload_id=self.spec.workload_id, replicas=replicas)

    async def is_ready(self) -> bool:
        statefulset = await asyncio.to_thread(
            self.apps.read_namespaced_stateful_set_status, self.spec.name, self.spec.namespace
        )
        desired = statefulset.spec.replicas or 0
        status = statefulset.status
        ready = status.ready_replicas or 0
        observed = (status.observed_generation or 0) >= (statefulset.metadata.generation or 0)
        return observed and ready == desired

    async def run_hook(self, name: str) -> None:
        command = await self._hook_command(name)
        if command is None:
            logger.debug("hook_not_configured", workload_id=self.spec.workload_id, hook=name)
            return
        exit_code, output = await asyncio.to_thread(self._exec, command)
        if exit_code == HOOK_UNSAFE_EXIT_CODE:
            raise HookUnsafeError(name, output.strip() or "hook reported unsafe to proceed",
                                  details={"workload_id": self.spec.workload_id})
        if exit_code != 0:
            raise RuntimeError(f"hook {name} exited with {exit_code}: {output.strip()[-500:]}")
        logger.info("hook_completed", workload_id=self.spec.workload_id, hook=name)

    async def _hook_command(self, name: str) -> Optional[str]:
        try:
            statefulset = await asyncio.to_thread(
                self.apps.read_namespaced_stateful_set, self.spec.name, self.spec.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        annotations = statefulset.metadata.annotations or {}
        return annotations.get(HOOK_ANNOTATION_PREFIX + name)

    def _exec(self, command: str):
        pod = f"{self.spec.name}-0"
        response = stream(
            self.core.connect_get_namespaced_pod_exec,
            pod,
            self.spec.namespace,
            command=["/bin/sh", "-c", command],
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )
        output = []
        try:
            response.run_forever(timeout=self.hook_timeout_seconds)
            output.append(response.read_stdout() or "")
            output.append(response.read_stderr() or "")
            return response.returncode, "".join(output)
        finally:
            response.close()


def kubernetes_handle_factory(api_client: client.ApiClient,
                              hook_timeout_seconds: float = 60.0) -> HandleFactory:
    def factory(spec: WorkloadSpec) -> KubernetesWorkloadHandle:
        return KubernetesWorkloadHandle(spec, api_client, hook_timeout_seconds)
    return factory


class StaticWorkloadHandle:
    """
    Handle for workloads not managed by a cluster (local development): tracks
    the requested replica count, is always ready, runs no hooks.
    """

    def __init__(self, spec: WorkloadSpec):
        self.spec = spec
        self.replicas = 0

    async def scale(self, replicas: int) -> None:
        self.replicas = replicas
        logger.info("static_workload_scaled", workload_id=self.spec.workload_id, replicas=replicas)

    async def is_ready(self) -> bool:
        return True

    async def run_hook(self, name: str) -> None:
        return None
