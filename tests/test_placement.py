"""Tests for placement strategy selection, failover and health gating."""

import pytest

from common.constants import KIB, MIB
from orchestrator.exceptions import BackendUnavailableError, UploadFailedError
from orchestrator.health import BackendHealthMonitor, HealthTable
from orchestrator.placement import (
    STRATEGY_CRITICAL,
    STRATEGY_LARGE,
    STRATEGY_MEDIUM,
    STRATEGY_PERMANENT,
    STRATEGY_SMALL,
    PlacementEngine,
)
from orchestrator.types import UploadFlags
from tests.doubles import ARCHIVAL, PRIMARY, RecordingObserver, mark_all_healthy


def make_engine(backends, healthy=(PRIMARY, ARCHIVAL), observer=None, failover_enabled=True, upload_timeout=None):
    table = HealthTable(backends)
    for name in healthy:
        table.mark(name, True)
    engine = PlacementEngine(
        backends,
        table,
        primary_backend=PRIMARY,
        archival_backend=ARCHIVAL,
        failover_enabled=failover_enabled,
        upload_timeout=upload_timeout,
        observer=observer,
    )
    return engine, table


class TestClassify:
    """Test the strategy rule table."""

    @pytest.mark.parametrize("size, flags, expected", [
        (5, UploadFlags(permanent=True), (STRATEGY_PERMANENT, ARCHIVAL, PRIMARY)),
        (500 * MIB, UploadFlags(permanent=True, critical=True), (STRATEGY_PERMANENT, ARCHIVAL, PRIMARY)),
        (150 * MIB, UploadFlags(critical=True), (STRATEGY_CRITICAL, PRIMARY, ARCHIVAL)),
        (250 * MIB, UploadFlags(critical=True), (STRATEGY_LARGE, PRIMARY, None)),
        (5, UploadFlags(), (STRATEGY_SMALL, PRIMARY, ARCHIVAL)),
        (10 * MIB - 1, UploadFlags(), (STRATEGY_SMALL, PRIMARY, ARCHIVAL)),
        (10 * MIB, UploadFlags(), (STRATEGY_MEDIUM, PRIMARY, None)),
        (150 * MIB, UploadFlags(), (STRATEGY_LARGE, PRIMARY, None)),
    ])
    def test_rules(self, memory_backends, size, flags, expected):
        engine, _ = make_engine(memory_backends)

        assert engine.classify(size, flags) == expected

    def test_unknown_backend_name_rejected(self, memory_backends):
        with pytest.raises(ValueError):
            PlacementEngine(memory_backends, HealthTable(memory_backends), primary_backend="nope", archival_backend=ARCHIVAL)


class TestSelectPlacement:
    """Test health gating and fallback."""

    def test_unhealthy_backup_is_dropped(self, memory_backends):
        engine, _ = make_engine(memory_backends, healthy=(PRIMARY,))
        placement = engine.select_placement(5, UploadFlags())

        assert placement.primary == PRIMARY
        assert placement.backup is None

    def test_permanent_falls_back_to_primary_when_archival_unhealthy(self, memory_backends):
        engine, _ = make_engine(memory_backends, healthy=(PRIMARY,))
        placement = engine.select_placement(5, UploadFlags(permanent=True))

        assert placement.strategy == STRATEGY_PERMANENT
        assert placement.primary == PRIMARY
        assert placement.backup is None

    def test_medium_falls_back_to_any_healthy_backend(self, memory_backends):
        engine, _ = make_engine(memory_backends, healthy=(ARCHIVAL,))
        placement = engine.select_placement(50 * MIB, UploadFlags())

        assert placement.primary == ARCHIVAL

    def test_no_healthy_backend(self, memory_backends):
        engine, _ = make_engine(memory_backends, healthy=())

        with pytest.raises(BackendUnavailableError):
            engine.select_placement(5, UploadFlags())

    def test_unchecked_backends_count_as_unhealthy(self, memory_backends):
        table = HealthTable(memory_backends)

        assert table.healthy_backends() == []
        assert not table.is_healthy(PRIMARY)


class TestUpload:
    """Test uploads through the engine."""

    @pytest.mark.asyncio
    async def test_small_upload_gets_backup(self, memory_backends):
        engine, _ = make_engine(memory_backends)
        result = await engine.upload("uploads/k", b"hello", "h", UploadFlags())

        assert [(p.backend_name, p.role) for p in result.placements] == [(PRIMARY, "primary"), (ARCHIVAL, "backup")]
        assert result.backup_error is None
        assert (await memory_backends[ARCHIVAL].get("uploads/k")).data == b"hello"

    @pytest.mark.asyncio
    async def test_create_backup_flag_skips_backup(self, memory_backends):
        engine, _ = make_engine(memory_backends)
        result = await engine.upload("uploads/k", b"hello", "h", UploadFlags(create_backup=False))

        assert len(result.placements) == 1
        assert memory_backends[ARCHIVAL].put_calls == 0

    @pytest.mark.asyncio
    async def test_backup_failure_is_best_effort(self, memory_backends):
        observer = RecordingObserver()
        memory_backends[ARCHIVAL].fail_put = True
        engine, _ = make_engine(memory_backends, observer=observer)
        result = await engine.upload("uploads/k", b"hello", "h", UploadFlags())

        assert len(result.placements) == 1
        assert result.placements[0].backend_name == PRIMARY
        assert "refused put" in result.backup_error
        assert observer.of_kind("backup_failed") == [("backup_failed", ARCHIVAL)]

    @pytest.mark.asyncio
    async def test_primary_failure_fails_over_to_backup(self, memory_backends):
        memory_backends[PRIMARY].fail_put = True
        engine, _ = make_engine(memory_backends)
        result = await engine.upload("uploads/k", b"hello", "h", UploadFlags())

        assert result.failed_over
        assert [(p.backend_name, p.role) for p in result.placements] == [(ARCHIVAL, "primary")]

    @pytest.mark.asyncio
    async def test_failover_disabled(self, memory_backends):
        memory_backends[PRIMARY].fail_put = True
        engine, _ = make_engine(memory_backends, failover_enabled=False)

        with pytest.raises(UploadFailedError) as exc_info:
            await engine.upload("uploads/k", b"hello", "h", UploadFlags())
        assert set(exc_info.value.causes) == {PRIMARY}

    @pytest.mark.asyncio
    async def test_both_fail_reports_every_cause(self, memory_backends):
        memory_backends[PRIMARY].fail_put = True
        memory_backends[ARCHIVAL].fail_put = True
        engine, _ = make_engine(memory_backends)

        with pytest.raises(UploadFailedError) as exc_info:
            await engine.upload("uploads/k", b"hello", "h", UploadFlags())
        assert set(exc_info.value.causes) == {PRIMARY, ARCHIVAL}

    @pytest.mark.asyncio
    async def test_chunked_blob_uses_multipart(self, memory_backends):
        observer = RecordingObserver()
        engine, _ = make_engine(memory_backends, observer=observer)
        parts = [b"a" * KIB, b"b" * KIB, b"c" * 10]
        blob = b"".join(parts)
        result = await engine.upload("uploads/k", blob, "h", UploadFlags(create_backup=False), parts=parts)

        assert result.placements[0].etag.endswith("-3")
        assert (await memory_backends[PRIMARY].get("uploads/k")).data == blob
        assert len(observer.of_kind("progress")) == 3

    @pytest.mark.asyncio
    async def test_timeout_aborts_started_multipart_session(self, memory_backends):
        memory_backends[PRIMARY].part_delay = 1.0
        engine, _ = make_engine(memory_backends, failover_enabled=False, upload_timeout=0.05)
        parts = [b"a" * KIB, b"b" * KIB]

        with pytest.raises(UploadFailedError) as exc_info:
            await engine.upload("uploads/k", b"".join(parts), "h", UploadFlags(create_backup=False), parts=parts)

        assert exc_info.value.causes == {PRIMARY: "Upload to primary timed out after 0.05s"}
        assert len(memory_backends[PRIMARY].aborted) == 1
        assert memory_backends[PRIMARY].open_upload_count() == 0

    @pytest.mark.asyncio
    async def test_timeout_fails_over_to_backup(self, memory_backends):
        memory_backends[PRIMARY].part_delay = 1.0
        engine, _ = make_engine(memory_backends, upload_timeout=0.05)
        parts = [b"a" * KIB, b"b" * KIB]

        result = await engine.upload("uploads/k", b"".join(parts), "h", UploadFlags(), parts=parts)

        assert result.failed_over
        assert [p.backend_name for p in result.placements] == [ARCHIVAL]
        assert memory_backends[PRIMARY].open_upload_count() == 0

    @pytest.mark.asyncio
    async def test_placement_records_final_hash(self, memory_backends):
        engine, _ = make_engine(memory_backends)
        result = await engine.upload("uploads/k", b"hello", "final-hash", UploadFlags())

        assert all(p.sha256 == "final-hash" for p in result.placements)
        assert all(p.size_bytes == 5 for p in result.placements)


class TestBackendHealthMonitor:
    """Test health probing and publication."""

    @pytest.mark.asyncio
    async def test_check_all_publishes_and_notifies(self, memory_backends):
        observer = RecordingObserver()
        table = HealthTable(memory_backends)
        memory_backends[ARCHIVAL].healthy = False
        monitor = BackendHealthMonitor(memory_backends, table, observer=observer)

        snapshot = await monitor.check_all()

        assert snapshot[PRIMARY].healthy
        assert not snapshot[ARCHIVAL].healthy
        assert ("health", PRIMARY, True) in observer.events
        assert ("health", ARCHIVAL, False) in observer.events

    @pytest.mark.asyncio
    async def test_unchanged_health_does_not_notify(self, memory_backends):
        observer = RecordingObserver()
        table = HealthTable(memory_backends)
        mark_all_healthy(table, memory_backends)
        monitor = BackendHealthMonitor(memory_backends, table, observer=observer)

        await monitor.check_all()

        assert observer.of_kind("health") == []

    @pytest.mark.asyncio
    async def test_failing_health_check_marks_unhealthy(self, memory_backends):
        class UnhealthyBackend(type(memory_backends[PRIMARY])):
            async def health_check(self):
                raise ConnectionError("unreachable")

        backends = {PRIMARY: UnhealthyBackend(PRIMARY), ARCHIVAL: memory_backends[ARCHIVAL]}
        table = HealthTable(backends)
        await BackendHealthMonitor(backends, table).check_all()

        assert not table.is_healthy(PRIMARY)
        assert table.snapshot()[PRIMARY].detail == "unreachable"
        assert table.healthy_backends() == [ARCHIVAL]

    def test_snapshot_is_read_only(self, memory_backends):
        table = HealthTable(memory_backends)

        with pytest.raises(TypeError):
            table.snapshot()[PRIMARY] = None
