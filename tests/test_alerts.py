"""Tests for the worker alerting system."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_job_dead_lettered,
    alert_job_failed,
    alert_malformed_entry,
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)

WEBHOOK_URL = "http://alerts.example.com/hook"


@pytest.fixture
def mock_client():
    """Patch httpx.AsyncClient and yield the client used inside `async with`."""
    with patch("worker.alerts.httpx.AsyncClient") as client_cls:
        client = MagicMock()
        response = MagicMock()
        response.raise_for_status = MagicMock()
        client.post = AsyncMock(return_value=response)
        client_cls.return_value.__aenter__ = AsyncMock(return_value=client)
        client_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client


@pytest.fixture
def webhook_configured():
    with patch("worker.alerts.ALERT_WEBHOOK_URL", WEBHOOK_URL):
        yield


class TestAlertMetrics:
    """Tests for AlertMetrics class."""

    def test_initial_state(self):
        metrics = AlertMetrics()
        assert metrics.jobs_acknowledged == 0
        assert metrics.jobs_dead_lettered == 0
        assert metrics.alerts_sent == 0
        assert metrics.jobs_lease_lost == 0

    def test_rate_limiting(self):
        metrics = AlertMetrics()
        assert metrics.can_send_alert("job_failed", 300) is True

        metrics.record_alert_sent("job_failed")

        assert metrics.can_send_alert("job_failed", 300) is False
        assert metrics.can_send_alert("malformed_entry", 300) is True
        assert metrics.can_send_alert("job_failed", 0) is True

    def test_to_dict(self):
        metrics = AlertMetrics(jobs_acknowledged=3, ack_failures=1)

        result = metrics.to_dict()

        assert result["jobs_acknowledged"] == 3
        assert result["ack_failures"] == 1
        assert result["jobs_lease_lost"] == 0
        assert "jobs_with_failures" not in result

    def test_get_metrics_is_shared(self):
        assert get_metrics() is get_metrics()


class TestSendWebhookAlert:
    """Tests for send_webhook_alert."""

    @pytest.mark.asyncio
    async def test_no_url_configured(self, mock_client):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", ""):
            result = await send_webhook_alert(AlertType.JOB_FAILED, {"job_id": "abc123"})

        assert result is False
        mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_send(self, webhook_configured, mock_client):
        result = await send_webhook_alert(AlertType.JOB_FAILED, {"job_id": "abc123"})

        assert result is True
        mock_client.post.assert_called_once()
        assert mock_client.post.call_args.args[0] == WEBHOOK_URL
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["event"] == "job_failed"
        assert payload["details"] == {"job_id": "abc123"}
        assert "metrics" in payload
        assert get_metrics().alerts_sent == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self, webhook_configured, mock_client):
        await send_webhook_alert(AlertType.JOB_FAILED, {})
        result = await send_webhook_alert(AlertType.JOB_FAILED, {})

        assert result is False
        assert mock_client.post.call_count == 1
        assert get_metrics().alerts_rate_limited == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_rate_limit(self, webhook_configured, mock_client):
        await send_webhook_alert(AlertType.JOB_FAILED, {})
        result = await send_webhook_alert(AlertType.JOB_FAILED, {}, force=True)

        assert result is True
        assert mock_client.post.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout(self, webhook_configured, mock_client):
        mock_client.post.side_effect = httpx.TimeoutException("timed out")

        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False
        assert get_metrics().alerts_failed == 1

    @pytest.mark.asyncio
    async def test_http_error(self, webhook_configured, mock_client):
        request = httpx.Request("POST", WEBHOOK_URL)
        response = httpx.Response(500, request=request)
        mock_client.post.return_value.raise_for_status.side_effect = httpx.HTTPStatusError(
            "server error", request=request, response=response
        )

        assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False
        assert get_metrics().alerts_failed == 1


class TestAlertFunctions:
    """Tests for the specific alert helpers."""

    @pytest.mark.asyncio
    async def test_dead_letter_alert_always_sent(self, webhook_configured, mock_client):
        """Dead-letter alerts bypass rate limiting."""
        for _ in range(2):
            await alert_job_dead_lettered(
                job_id="abc123",
                message_id="1700000000000-0",
                delivery_count=3,
                max_redeliveries=3,
                last_error="ffmpeg exited with code 1",
                consumer="worker-1",
            )

        assert mock_client.post.call_count == 2
        details = mock_client.post.call_args.kwargs["json"]["details"]
        assert details["job_id"] == "abc123"
        assert details["delivery_count"] == 3
        assert details["last_error"] == "ffmpeg exited with code 1"

    @pytest.mark.asyncio
    async def test_dead_letter_error_clipped(self, webhook_configured, mock_client):
        await alert_job_dead_lettered("abc123", "1-0", 3, 3, last_error="e" * 10000)

        details = mock_client.post.call_args.kwargs["json"]["details"]
        assert len(details["last_error"]) < 10000

    @pytest.mark.asyncio
    async def test_job_failed_only_after_repeats(self, webhook_configured, mock_client):
        await alert_job_failed("abc123", delivery_count=1, error="boom", will_retry=True)
        mock_client.post.assert_not_called()

        await alert_job_failed("abc123", delivery_count=2, error="boom", will_retry=True)
        mock_client.post.assert_called_once()
        assert mock_client.post.call_args.kwargs["json"]["details"]["delivery_count"] == 2

    @pytest.mark.asyncio
    async def test_job_failed_uses_delivery_count_only(self, webhook_configured, mock_client):
        """The repeat decision comes from the broker's delivery count, not from worker memory."""
        await alert_job_failed("abc123", delivery_count=3, error="boom", will_retry=True)

        mock_client.post.assert_called_once()
        assert not hasattr(get_metrics(), "job_failure_counts")

        for n in range(50):
            await alert_job_failed(f"job-{n}", delivery_count=1, error="boom", will_retry=True)
        assert mock_client.post.call_count == 1

    @pytest.mark.asyncio
    async def test_malformed_entry_alert(self, webhook_configured, mock_client):
        await alert_malformed_entry("1-0", "transcode_jobs", "missing jobID", {"foo": "bar"})

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["event"] == "malformed_entry"
        assert payload["details"]["fields"] == {"foo": "bar"}

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, webhook_configured, mock_client):
        await alert_worker_startup("worker-1", "transcode_jobs", "media_engine_group")
        await alert_worker_shutdown("worker-1", jobs_released=1)

        events = [c.kwargs["json"]["event"] for c in mock_client.post.call_args_list]
        assert events == ["worker_startup", "worker_shutdown"]
        details = mock_client.post.call_args.kwargs["json"]["details"]
        assert details["jobs_released"] == 1
        assert "final_metrics" in details


class TestFireAndForget:
    """Tests for send_alert_fire_and_forget."""

    @pytest.mark.asyncio
    async def test_schedules_task(self):
        sent = AsyncMock()

        task = send_alert_fire_and_forget(sent())
        await task

        sent.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_errors_swallowed(self):
        async def failing():
            raise RuntimeError("webhook down")

        task = send_alert_fire_and_forget(failing())
        await task

        assert task.exception() is None

    def test_without_event_loop(self):
        async def never_run():
            pass

        coro = never_run()
        assert send_alert_fire_and_forget(coro) is None
        # Closed coroutines drop their frame
        assert coro.cr_frame is None
