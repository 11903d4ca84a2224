"""
Pytest configuration and in-memory fakes for DR orchestrator tests
"""

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest

from dr_orchestrator.config import OrchestratorSettings
from dr_orchestrator.error_models import HookUnsafeError
from dr_orchestrator.models import EventSeverity, RetentionPolicy, WorkloadSpec
from dr_orchestrator.orchestrator import Orchestrator
from dr_orchestrator.repository import StateRepository
from dr_orchestrator.sites import RegionSite, SiteDirectory
from dr_orchestrator.state_store import InMemoryStateStore
from dr_orchestrator.storage.blob_store import InMemoryBlobStore

TEST_MASTER_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


async def wait_until(predicate, turns: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds"""
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class FakeHandle:
    """WorkloadHandle recording scale calls and hook invocations"""

    def __init__(self, spec: WorkloadSpec):
        self.spec = spec
        self.replicas = 0
        self.ready = True
        self.hooks: List[str] = []
        self.unsafe_hooks: Set[str] = set()
        self.failing_hooks: Set[str] = set()
        self.scale_error: Optional[BaseException] = None

    async def scale(self, replicas: int) -> None:
        if self.scale_error is not None:
            raise self.scale_error
        self.replicas = replicas

    async def is_ready(self) -> bool:
        return self.ready

    async def run_hook(self, name: str) -> None:
        self.hooks.append(name)
        if name in self.unsafe_hooks:
            raise HookUnsafeError(name)
        if name in self.failing_hooks:
            raise RuntimeError(f"hook {name} crashed")


class FakeExecutor:
    """DumpRestoreExecutor producing a fixed payload and capturing restores"""

    def __init__(self, payload: bytes = b"row-1\nrow-2\nrow-3\n" * 64):
        self.payload = payload
        self.dump_error: Optional[Exception] = None
        self.restore_error: Optional[Exception] = None
        # When set, dumps pause between halves and restores before applying
        self.dump_gate: Optional[asyncio.Event] = None
        self.restore_gate: Optional[asyncio.Event] = None
        self.dumps = 0
        self.active_dumps = 0
        self.peak_dumps = 0
        self.restored: Dict[str, bytes] = {}

    async def dump(self, spec: WorkloadSpec):
        self.dumps += 1
        self.active_dumps += 1
        self.peak_dumps = max(self.peak_dumps, self.active_dumps)
        try:
            half = len(self.payload) // 2
            yield self.payload[:half]
            if self.dump_gate is not None:
                await self.dump_gate.wait()
            if self.dump_error is not None:
                raise self.dump_error
            yield self.payload[half:]
        finally:
            self.active_dumps -= 1

    async def restore(self, spec: WorkloadSpec, chunks) -> None:
        data = bytearray()
        async for chunk in chunks:
            data += chunk
        if self.restore_gate is not None:
            await self.restore_gate.wait()
        if self.restore_error is not None:
            raise self.restore_error
        self.restored[spec.workload_id] = bytes(data)


class CorruptingBlobStore(InMemoryBlobStore):
    """In-memory store that flips a byte on reads of selected keys"""

    def __init__(self, region: str):
        super().__init__(region)
        self.corrupt_keys: Set[str] = set()

    async def get(self, key: str) -> bytes:
        data = await super().get(key)
        if key in self.corrupt_keys:
            return bytes([data[0] ^ 0xFF]) + data[1:]
        return data


class FakeProbe:
    """RegionProbe returning queued results, then ``default``"""

    def __init__(self, region: str, default: bool = True):
        self.region = region
        self.default = default
        self.results: List[Any] = []

    async def check(self) -> bool:
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        return result


class MemoryEventSink:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def emit(self, severity: EventSeverity, message: str,
                   context: Optional[Dict[str, Any]] = None) -> None:
        self.events.append({"severity": severity, "message": message, "context": context or {}})

    def with_severity(self, severity: EventSeverity) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["severity"] == severity]


class Harness:
    """Sites, fakes and an orchestrator sharing one in-memory state store"""

    def __init__(self, store: Optional[InMemoryStateStore] = None, **overrides):
        self.store = store or InMemoryStateStore()
        self.repository = StateRepository(self.store)
        self.clock = FakeClock()
        self.events = MemoryEventSink()
        self.handles: Dict[str, Dict[str, FakeHandle]] = {"primary": {}, "standby": {}}
        self.executors = {"primary": FakeExecutor(), "standby": FakeExecutor()}
        self.blobs = {"primary": CorruptingBlobStore("primary"), "standby": CorruptingBlobStore("standby")}
        self.probes = {"primary": FakeProbe("primary"), "standby": FakeProbe("standby")}
        self.settings = make_settings(**overrides)
        self.sites = SiteDirectory(self._site("primary"), self._site("standby"))
        self.orchestrator = self.build()

    def _site(self, region: str) -> RegionSite:
        def factory(spec: WorkloadSpec) -> FakeHandle:
            handle = FakeHandle(spec)
            self.handles[region][spec.workload_id] = handle
            return handle

        return RegionSite(
            name=region,
            blob_store=self.blobs[region],
            handle_factory=factory,
            executors={"pg": self.executors[region]},
        )

    def build(self) -> Orchestrator:
        """A fresh orchestrator over the same state, as after a process restart"""
        return Orchestrator(
            self.settings, self.repository, self.sites, self.events,
            self.probes["primary"], self.probes["standby"],
            clock=self.clock, sleep=no_sleep,
        )

    def handle(self, region: str, spec: WorkloadSpec) -> FakeHandle:
        return self.sites.by_name(region).handle(spec)

    async def register(self, spec: WorkloadSpec) -> WorkloadSpec:
        result = await self.orchestrator.register_workload(spec)
        assert result.outcome.value == "accepted", result.message
        return spec

    async def backup(self, spec: WorkloadSpec):
        """One scheduled backup at the current clock time"""
        orchestrator = self.orchestrator
        await orchestrator.scheduler.trigger(spec.workload_id, self.clock())
        await orchestrator.scheduler.wait_idle()
        return await self.repository.latest_record(spec.workload_id)

    async def replicate(self, spec: WorkloadSpec):
        return await self.orchestrator.relay.sync(spec.workload_id, self.clock())


def make_settings(**overrides) -> OrchestratorSettings:
    values = dict(
        _env_file=None,
        master_key=TEST_MASTER_KEY,
        ready_timeout_seconds=0.2,
        ready_poll_seconds=0.01,
        failover_grace_seconds=0,
        store_retry_attempts=1,
    )
    values.update(overrides)
    return OrchestratorSettings(**values)


def make_spec(name: str = "orders-db", namespace: str = "shop", cadence_seconds: int = 3600,
              min_keep: int = 3, max_age_days: int = 7) -> WorkloadSpec:
    return WorkloadSpec(
        name=name,
        namespace=namespace,
        dump_executor="pg",
        restore_executor="pg",
        cadence_seconds=cadence_seconds,
        retention=RetentionPolicy(min_keep=min_keep, max_age_days=max_age_days),
        replicas=2,
    )


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def spec():
    return make_spec()


@pytest.fixture
def settings():
    return make_settings()
