"""Tests for Prometheus metrics functionality."""

from prometheus_client import REGISTRY

from tests.fixtures.doubles import ScriptedTranscoder, StaticJobStore
from worker.metrics import (
    JOB_DELIVERY_COUNT,
    JOB_DISPOSITIONS_TOTAL,
    TRANSCODE_DURATION_SECONDS,
    TRANSCODE_JOBS_ACTIVE,
    get_metrics,
    init_app_info,
    record_disposition,
)
from worker.profiles import ProfileRegistry
from worker.worker_loop import Worker, WorkerState


def sample(name, labels=None):
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricsModule:
    """Tests for the metrics module."""

    def test_get_metrics_returns_bytes(self):
        metrics = get_metrics()

        assert isinstance(metrics, bytes)
        assert b"media_engine_job_dispositions_total" in metrics
        assert b"media_engine_transcode_duration_seconds" in metrics

    def test_init_app_info(self):
        init_app_info(version="1.2.3", consumer="worker-1")

        metrics = get_metrics()
        assert b"media_engine_info" in metrics
        assert b'version="1.2.3"' in metrics
        assert b'consumer="worker-1"' in metrics

    def test_record_disposition(self):
        before = sample("media_engine_job_dispositions_total", {"disposition": "retried"})
        observed = sample("media_engine_job_delivery_count_count")

        record_disposition("retried", 2)

        assert sample("media_engine_job_dispositions_total", {"disposition": "retried"}) == before + 1
        assert sample("media_engine_job_delivery_count_count") == observed + 1

    def test_metric_names(self):
        assert "job_dispositions" in JOB_DISPOSITIONS_TOTAL._name
        assert JOB_DELIVERY_COUNT._name == "media_engine_job_delivery_count"
        assert TRANSCODE_DURATION_SECONDS._name == "media_engine_transcode_duration_seconds"
        assert TRANSCODE_JOBS_ACTIVE._name == "media_engine_transcode_jobs_active"


class TestWorkerMetrics:
    """Metrics recorded by the worker loop."""

    async def test_successful_job_counted(self, broker):
        broker.add({"jobID": "abc123"})
        state = WorkerState(worker_id="worker-1")
        worker = Worker(
            broker.consumer("worker-1"),
            ScriptedTranscoder(),
            StaticJobStore(),
            ProfileRegistry.load(),
            state,
        )
        acked = sample("media_engine_job_dispositions_total", {"disposition": "acknowledged"})
        successes = sample("media_engine_transcode_duration_seconds_count", {"result": "success"})

        await worker.run_once()

        assert sample("media_engine_job_dispositions_total", {"disposition": "acknowledged"}) == acked + 1
        assert sample("media_engine_transcode_duration_seconds_count", {"result": "success"}) == successes + 1
        assert sample("media_engine_transcode_jobs_active") == 0
