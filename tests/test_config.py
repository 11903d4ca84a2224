"""
Tests for settings loading and validation
"""

import base64

import pytest
from pydantic import ValidationError

from dr_orchestrator.config import OrchestratorSettings, StateBackend, decode_key

from conftest import TEST_MASTER_KEY, make_settings

OTHER_KEY = base64.b64encode(b"\x01" * 32).decode("ascii")


class TestOrchestratorSettings:

    def test_defaults(self):
        settings = make_settings()

        assert settings.auto_failover_enabled is False
        assert settings.state_backend == StateBackend.MEMORY
        assert settings.down_threshold == 3
        assert settings.recovery_threshold == 3
        assert settings.master_key_bytes() == bytes(range(32))

    def test_loaded_from_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("DR_MASTER_KEY", TEST_MASTER_KEY)
        monkeypatch.setenv("DR_DOWN_THRESHOLD", "5")
        monkeypatch.setenv("DR_AUTO_FAILOVER_ENABLED", "true")
        monkeypatch.setenv("DR_EXECUTORS", '{"pg": {"dump": ["pg_dump", "{name}"], "restore": ["psql"]}}')

        settings = OrchestratorSettings(_env_file=None)

        assert settings.down_threshold == 5
        assert settings.auto_failover_enabled is True
        assert settings.executors["pg"].dump == ["pg_dump", "{name}"]

    def test_master_key_is_required(self, monkeypatch):
        monkeypatch.delenv("DR_MASTER_KEY", raising=False)
        with pytest.raises(ValidationError):
            OrchestratorSettings(_env_file=None)

    def test_master_key_must_be_32_bytes(self):
        with pytest.raises(ValidationError):
            make_settings(master_key=base64.b64encode(b"short").decode("ascii"))

    def test_master_key_secret_is_not_rendered(self):
        assert TEST_MASTER_KEY not in repr(make_settings())

    def test_lease_ttl_must_exceed_snapshot_timeout_plus_margin(self):
        with pytest.raises(ValidationError, match="lease_ttl_seconds"):
            make_settings(lease_ttl_seconds=3000, snapshot_timeout_seconds=3000)

    def test_lease_ttl_covers_hooks_and_store_retries(self):
        # 3600 dump + 2 * 60 hooks + 3 * (3 * 30 + 2 * 11) store calls
        settings = make_settings(store_retry_attempts=3, lease_margin_seconds=300, lease_ttl_seconds=4357)
        assert settings.lease_budget_seconds() == pytest.approx(4056)

        with pytest.raises(ValidationError, match="lease_ttl_seconds"):
            make_settings(store_retry_attempts=3, lease_margin_seconds=300, lease_ttl_seconds=4000)

    def test_lease_ttl_covers_the_restore_deadline(self):
        with pytest.raises(ValidationError, match="lease_ttl_seconds"):
            make_settings(restore_timeout_seconds=7200)

    def test_production_rejects_memory_state(self):
        with pytest.raises(ValidationError, match="state_backend redis"):
            make_settings(environment="production", blob_backend="s3",
                          primary_bucket="dr-primary", standby_bucket="dr-standby")

    def test_production_rejects_memory_blobs(self):
        with pytest.raises(ValidationError, match="durable blob_backend"):
            make_settings(environment="production", state_backend="redis", redis_url="redis://redis:6379/0")

    def test_production_with_durable_backends(self):
        settings = make_settings(environment="production", state_backend="redis",
                                 redis_url="redis://redis:6379/0", blob_backend="s3",
                                 primary_bucket="dr-primary", standby_bucket="dr-standby")

        assert settings.environment.value == "production"

    def test_recovery_threshold_must_exceed_one(self):
        with pytest.raises(ValidationError, match="recovery_threshold"):
            make_settings(recovery_threshold=1)

    def test_regions_must_differ(self):
        with pytest.raises(ValidationError):
            make_settings(primary_region="eu", standby_region="eu")

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValidationError, match="redis_url"):
            make_settings(state_backend="redis")

    def test_s3_backend_requires_buckets(self):
        with pytest.raises(ValidationError):
            make_settings(blob_backend="s3", primary_bucket="dr-primary")

    def test_log_level_is_normalized(self):
        assert make_settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            make_settings(log_level="verbose")

    def test_key_ring_includes_previous_keys(self):
        settings = make_settings(master_key_id="k2", previous_keys={"k1": OTHER_KEY})

        ring = settings.key_ring()
        assert set(ring) == {"k1", "k2"}
        assert ring["k1"] == b"\x01" * 32

    def test_current_key_id_cannot_be_a_previous_key(self):
        with pytest.raises(ValidationError):
            make_settings(master_key_id="k1", previous_keys={"k1": OTHER_KEY})


def test_decode_key_rejects_invalid_base64():
    with pytest.raises(ValueError):
        decode_key("not base64!")
