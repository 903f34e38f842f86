"""
Tests for status snapshots, status sinks and the HTTP health endpoint.
"""

import json
import logging
import urllib.error
import urllib.request
from io import StringIO
from unittest.mock import MagicMock, patch

import psutil
import pytest
from rich.console import Console

from core.health_endpoint import SnapshotStore, build_health_response, start_health_server
from core.monitoring import (
    KeyStatus,
    LoggingStatusSink,
    RichStatusSink,
    StatusSnapshot,
    emit_all,
    process_rss_mb,
)


@pytest.fixture
def snapshot():
    return StatusSnapshot(
        timestamp=1_700_000_000.0,
        outstanding_slots=2,
        capacity=3,
        queue_depth=5,
        ready=1,
        completed=17,
        rss_mb=120.0,
        keys=[
            KeyStatus(label="[1] abcdefgh...", phase="running", eligible_at=None, next_run_at=None),
            KeyStatus(label="[2] ijklmnop...", phase="queued", eligible_at=1_700_000_840.0,
                      next_run_at=1_700_000_900.0, successes=3, failures=1,
                      last_reason="Button not found"),
        ],
    )


class TestStatusSnapshot:

    def test_healthy_while_work_exists(self, snapshot):
        assert snapshot.healthy
        idle = StatusSnapshot(timestamp=0, outstanding_slots=0, capacity=None,
                              queue_depth=0, ready=0, completed=0)
        assert not idle.healthy

    def test_to_dict_is_json_serialisable(self, snapshot):
        data = json.loads(json.dumps(snapshot.to_dict()))
        assert data["queue_depth"] == 5
        assert data["keys"][1]["last_reason"] == "Button not found"

    def test_process_rss(self):
        assert process_rss_mb() > 0

    def test_process_rss_lookup_failure(self):
        with patch("core.monitoring.psutil.Process", side_effect=psutil.NoSuchProcess(1)):
            assert process_rss_mb() == 0.0


class TestSinks:

    def test_logging_sink(self, snapshot, caplog):
        """One summary line; no memory warning below the threshold."""
        caplog.set_level(logging.INFO, logger="core.monitoring")
        LoggingStatusSink().emit(snapshot)
        assert "2/3 browsers active" in caplog.text
        assert "queue 5 (1 ready)" in caplog.text
        assert "High memory" not in caplog.text

    def test_logging_sink_memory_warning(self, snapshot, caplog):
        caplog.set_level(logging.INFO, logger="core.monitoring")
        LoggingStatusSink(high_memory_mb=100).emit(snapshot)
        assert "High memory usage detected: 120 MB" in caplog.text

    def test_logging_sink_unbounded(self, snapshot, caplog):
        caplog.set_level(logging.INFO, logger="core.monitoring")
        snapshot.capacity = None
        LoggingStatusSink().emit(snapshot)
        assert "2/∞ browsers active" in caplog.text

    def test_rich_sink_renders_one_row_per_key(self, snapshot):
        buffer = StringIO()
        sink = RichStatusSink(console=Console(file=buffer, width=160))
        table = sink.build_table(snapshot)
        assert table.row_count == 2

        sink.emit(snapshot)
        output = buffer.getvalue()
        assert "[2] ijklmnop..." in output
        assert "Button not found" in output

    def test_emit_all_isolates_failures(self, snapshot):
        broken = MagicMock()
        broken.emit.side_effect = RuntimeError("boom")
        good = MagicMock()
        emit_all([broken, good], snapshot)
        good.emit.assert_called_once_with(snapshot)


class TestHealthEndpoint:

    def test_health_response_before_first_snapshot(self):
        assert build_health_response(None) == (503, {"status": "starting"})

    def test_health_response_healthy(self, snapshot):
        status, body = build_health_response(snapshot)
        assert status == 200
        assert body["status"] == "healthy"

    def test_health_response_idle(self, snapshot):
        snapshot.queue_depth = 0
        snapshot.outstanding_slots = 0
        status, body = build_health_response(snapshot)
        assert status == 503
        assert body["status"] == "idle"

    def test_store_keeps_latest(self, snapshot):
        store = SnapshotStore()
        assert store.latest() is None
        store.emit(snapshot)
        assert store.latest() is snapshot

    def test_server_serves_health_and_metrics(self, snapshot):
        """The HTTP server answers /health, /metrics and 404s anything else."""
        store = SnapshotStore()
        store.emit(snapshot)
        server = start_health_server(store, 0, host="127.0.0.1")
        base = f"http://127.0.0.1:{server.server_port}"
        try:
            with urllib.request.urlopen(f"{base}/health", timeout=5) as resp:
                assert resp.status == 200
                assert json.loads(resp.read())["status"] == "healthy"

            with urllib.request.urlopen(f"{base}/metrics", timeout=5) as resp:
                metrics = json.loads(resp.read())
                assert metrics["completed"] == 17
                assert len(metrics["keys"]) == 2

            with pytest.raises(urllib.error.HTTPError) as excinfo:
                urllib.request.urlopen(f"{base}/nope", timeout=5)
            assert excinfo.value.code == 404
        finally:
            server.shutdown()
            server.server_close()

    def test_server_reports_starting(self):
        store = SnapshotStore()
        server = start_health_server(store, 0, host="127.0.0.1")
        try:
            with pytest.raises(urllib.error.HTTPError) as excinfo:
                urllib.request.urlopen(f"http://127.0.0.1:{server.server_port}/health", timeout=5)
            assert excinfo.value.code == 503
        finally:
            server.shutdown()
            server.server_close()
