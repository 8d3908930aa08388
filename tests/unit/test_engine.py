"""
Unit tests for ReconciliationRun

Runs go against in-memory source and target tables; the fixtures in
conftest.py give a source with keys 1, 2, 3, 5 and a target with keys 1
(equal), 2 (changed) and 4 (orphan).
"""

import threading

import pytest

from fakes import STAMP, CollatedTable, FailingMemoryTable, MemoryTable
from table_mirror.engine import ReconciliationRun, RunResult, RunState
from table_mirror.mapping import MirrorSettings, TableMapping
from utils.metrics import MirrorMetrics


def _failing_target(target, **kwargs):
    return FailingMemoryTable(
        list(target.schema.names), target.rows, schema="bronze", table="Customer", **kwargs
    )


# ============================================================================
# Successful runs
# ============================================================================

class TestSuccessfulRun:
    """Test a complete run against the fixture tables"""

    def test_counts(self, mapping, source, target, settings):
        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert result.state is RunState.DONE
        assert result.error is None
        assert result.inserted == 2
        assert result.updated == 1
        assert result.unchanged == 1
        assert result.deleted == 1
        assert result.duplicates == 0
        assert result.rows_read == 4
        assert result.chunks_committed == 2
        assert result.rows_written == 3
        assert result.duration_seconds >= 0
        assert result.finished_at >= result.started_at

    def test_target_mirrors_source(self, mapping, source, target, settings):
        ReconciliationRun(mapping, source, target, settings).execute()

        rows = target.as_dicts()
        assert sorted(rows) == [(1,), (2,), (3,), (5,)]
        for key, expected in source.as_dicts().items():
            for column, value in expected.items():
                assert rows[key][column] == value

    def test_stamps(self, mapping, source, target, settings):
        ReconciliationRun(mapping, source, target, settings).execute()

        rows = target.as_dicts()
        assert rows[(3,)]["created_at"] == STAMP
        assert rows[(2,)]["updated_at"] == STAMP
        assert rows[(2,)]["created_at"] is None
        assert rows[(1,)]["updated_at"] is None

    def test_second_run_is_noop(self, mapping, source, target, settings):
        ReconciliationRun(mapping, source, target, settings).execute()
        snapshot = target.as_dicts()

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert (result.inserted, result.updated, result.deleted) == (0, 0, 0)
        assert result.unchanged == 4
        assert target.as_dicts() == snapshot

    def test_auto_strategy_picks_full_for_small_target(self, mapping, source, target, settings):
        result = ReconciliationRun(mapping, source, target, settings).execute()
        assert result.strategy == "full"

    @pytest.mark.parametrize("strategy", ["paged", "full", "point"])
    def test_every_strategy_mirrors(self, source, target, settings, strategy):
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("id",), strategy=strategy)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert result.strategy == strategy
        assert sorted(target.as_dicts()) == [(1,), (2,), (3,), (5,)]

    def test_empty_source_empties_target(self, mapping, target, settings):
        empty = MemoryTable(["id", "name", "balance"], [], table="Customer")

        result = ReconciliationRun(mapping, empty, target, settings).execute()

        assert result.success is True
        assert result.deleted == 3
        assert target.rows == []

    def test_empty_target_inserts_everything(self, mapping, source, settings):
        empty = MemoryTable(["id", "name", "balance", "created_at", "updated_at"], [],
                            schema="bronze", table="Customer")

        result = ReconciliationRun(mapping, source, empty, settings).execute()

        assert result.inserted == 4
        assert sorted(empty.as_dicts()) == [(1,), (2,), (3,), (5,)]

    def test_writer_closed_and_tracker_cleared(self, mapping, source, target, settings):
        run = ReconciliationRun(mapping, source, target, settings)
        run.execute()

        assert target.writers[0].closed is True
        assert len(run.tracker) == 0
        assert run.log.context == {"mapping": mapping.label, "strategy": "full"}


class TestCleanupSwitches:
    """Test that orphan deletion can be turned off"""

    def test_settings_disable_cleanup(self, mapping, source, target):
        settings = MirrorSettings(chunk_size=2, page_size=3, cleanup=False)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert result.deleted == 0
        assert (4,) in target.as_dicts()

    def test_mapping_disables_cleanup(self, source, target, settings):
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("id",), delete_orphans=False)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert (4,) in target.as_dicts()


class TestDuplicateKeys:
    """Test duplicate source keys"""

    def test_duplicate_is_recorded_not_fatal(self, mapping, target):
        source = MemoryTable(["id", "name", "balance"], [
            {"id": 1, "name": "Ada", "balance": 10.0},
            {"id": 3, "name": "first", "balance": 1.0},
            {"id": 3, "name": "second", "balance": 2.0},
        ], table="Customer")
        settings = MirrorSettings(chunk_size=10, page_size=10)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert result.duplicates == 1
        assert [a.key for a in result.anomalies] == [(3,)]
        assert result.inserted == 1
        assert result.unchanged == 1
        assert target.as_dicts()[(3,)]["name"] == "first"


class TestKeyOrdering:
    """Test keys the database orders or matches differently from Python"""

    def test_unchanged_text_keys_are_noop(self):
        rows = [{"code": code, "name": code.lower()} for code in ["A_1", "A_2", "AB", "AC"]]
        source = CollatedTable(["code", "name"], rows, key_columns=("code",), table="Customer")
        target = CollatedTable(["code", "name"], rows, key_columns=("code",),
                               schema="bronze", table="Customer")
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("code",), strategy="paged")
        settings = MirrorSettings(chunk_size=2, page_size=2)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert (result.inserted, result.updated, result.deleted) == (0, 0, 0)
        assert result.unchanged == 4
        assert target.writers[0].chunks == []

    def test_composite_key_run(self):
        columns = ["region", "id", "v"]
        source = CollatedTable(columns, [
            {"region": "EU_N", "id": 1, "v": "a"},
            {"region": "EU_N", "id": 2, "v": "b"},
            {"region": "EUW", "id": 1, "v": "c"},
            {"region": "EUW", "id": 2, "v": "d"},
            {"region": "US", "id": 1, "v": "e"},
        ], key_columns=("region", "id"), table="Customer")
        target = CollatedTable(columns, [
            {"region": "AA", "id": 1, "v": "gone"},
            {"region": "EU_N", "id": 1, "v": "a"},
            {"region": "EU_N", "id": 2, "v": "b"},
            {"region": "EUW", "id": 1, "v": "old"},
            {"region": "US", "id": 1, "v": "e"},
        ], key_columns=("region", "id"), schema="bronze", table="Customer")
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("region", "id"),
                               strategy="paged")
        settings = MirrorSettings(chunk_size=2, page_size=2, delete_batch_size=2)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert (result.inserted, result.updated, result.deleted) == (1, 1, 1)
        assert result.unchanged == 3
        assert target.as_dicts() == source.as_dicts()

        again = ReconciliationRun(mapping, source, target, settings).execute()
        assert (again.inserted, again.updated, again.deleted) == (0, 0, 0)

    @pytest.mark.parametrize("strategy", ["paged", "full", "point"])
    def test_uuid_keys_match_across_case(self, strategy):
        key = "6f1c2a4e-9b7d-4c3e-8a1f-0123456789ab"
        source = MemoryTable(["id", "name"], [{"id": key, "name": "Ada"}], table="Customer")
        # the target driver returns uniqueidentifier text in uppercase
        target = CollatedTable(["id", "name"], [{"id": key.upper(), "name": "Ada"}],
                               schema="bronze", table="Customer")
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("id",), strategy=strategy)
        settings = MirrorSettings(chunk_size=2, page_size=2)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is True
        assert (result.inserted, result.updated, result.deleted) == (0, 0, 0)
        assert list(target.as_dicts()) == [(key.upper(),)]


# ============================================================================
# Failures
# ============================================================================

class TestFailures:
    """Test failure handling and partial progress"""

    def test_chunk_failure_keeps_committed_chunks(self, mapping, source, target, settings):
        failing = _failing_target(target, fail_on_chunk=2)

        result = ReconciliationRun(mapping, source, failing, settings).execute()

        assert result.success is False
        assert result.state is RunState.FAILED
        assert result.error_type == "ChunkWriteError"
        assert result.chunks_committed == 1
        assert result.updated == 1
        assert result.inserted == 0
        rows = failing.as_dicts()
        assert rows[(2,)]["name"] == "Grace"
        assert (3,) not in rows

    def test_failed_run_skips_cleanup(self, mapping, source, target, settings):
        failing = _failing_target(target, fail_on_chunk=1)

        result = ReconciliationRun(mapping, source, failing, settings).execute()

        assert result.deleted == 0
        assert (4,) in failing.as_dicts()
        assert failing.writers[0].deleted_batches == []

    def test_cleanup_failure_keeps_merges(self, mapping, source, target, settings):
        failing = _failing_target(target, fail_delete=True)

        result = ReconciliationRun(mapping, source, failing, settings).execute()

        assert result.success is False
        assert result.error_type == "CleanupError"
        assert result.inserted == 2
        assert result.chunks_committed == 2
        assert (4,) in failing.as_dicts()

    def test_transient_read_failure(self, mapping, target, settings):
        source = MemoryTable(["id", "name", "balance"],
                             [{"id": i, "name": "x", "balance": 0.0} for i in range(1, 8)],
                             table="Customer", fail_fetch_after=1)

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is False
        assert result.error_type == "TransientIOError"
        assert (4,) in target.as_dicts()

    def test_mismatched_key_columns(self, source, target, settings):
        mapping = TableMapping("dbo", "Customer", "bronze", "Customer", ("name",))

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.success is False
        assert result.error_type == "ConfigurationError"
        assert result.chunks_committed == 0

    def test_missing_key_column_in_schema(self, mapping, target, settings):
        source = MemoryTable(["name"], [{"name": "x"}], table="Customer", key_columns=("id",))

        result = ReconciliationRun(mapping, source, target, settings).execute()

        assert result.error_type == "ConfigurationError"

    def test_source_column_missing_on_target(self, mapping, source, settings):
        narrow = MemoryTable(["id", "name"], [], schema="bronze", table="Customer")

        result = ReconciliationRun(mapping, source, narrow, settings).execute()

        assert result.error_type == "DataShapeError"


class TestCancellation:
    """Test cancellation at chunk boundaries"""

    def test_cancel_stops_after_committed_chunk(self, mapping, source, target, settings):
        cancel = threading.Event()
        cancel.set()

        result = ReconciliationRun(mapping, source, target, settings, cancel_event=cancel).execute()

        assert result.success is False
        assert result.error_type == "RunCancelled"
        assert result.chunks_committed == 1
        assert result.deleted == 0
        assert (4,) in target.as_dicts()


# ============================================================================
# Metrics and serialization
# ============================================================================

def test_metrics_recorded(mapping, source, target, settings, registry):
    metrics = MirrorMetrics(registry)

    ReconciliationRun(mapping, source, target, settings, metrics=metrics).execute()

    labels = {"mapping": "bronze.Customer"}
    assert registry.get_sample_value("mirror_runs_total", {**labels, "status": "success"}) == 1
    assert registry.get_sample_value(
        "mirror_rows_classified_total", {**labels, "classification": "insert"}
    ) == 2
    assert registry.get_sample_value("mirror_rows_deleted_total", labels) == 1
    assert registry.get_sample_value("mirror_chunks_total", {**labels, "status": "committed"}) == 2


def test_result_round_trip(mapping, source, target, settings):
    result = ReconciliationRun(mapping, source, target, settings).execute()

    restored = RunResult.from_dict(result.to_dict())

    assert restored.to_dict() == result.to_dict()
    assert restored.state is RunState.DONE
