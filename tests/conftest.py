"""
Pytest fixtures for media engine tests.

Test doubles live in tests/fixtures/doubles.py; this module wires them into
fixtures and pins the environment before config is imported.
"""

import json
import logging
import os
from typing import Any, Dict, List

import pytest

# Set up environment BEFORE importing config
os.environ["MEDIA_ENGINE_CONSUMER_NAME"] = "test-worker"
os.environ["MEDIA_ENGINE_ALERT_WEBHOOK_URL"] = ""
os.environ["MEDIA_ENGINE_HEALTH_ENABLED"] = "false"

from tests.fixtures.doubles import InMemoryBroker  # noqa: E402
from worker.alerts import reset_metrics  # noqa: E402
from worker.events import EVENT_LOGGER_NAME  # noqa: E402


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    """Reset metrics before each test."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def broker():
    return InMemoryBroker(lease_ms=1000)


@pytest.fixture
def captured_events():
    """Collect disposition events as dicts."""
    events: List[Dict[str, Any]] = []

    class _Collector(logging.Handler):
        def emit(self, record):
            events.append(json.loads(record.getMessage()))

    handler = _Collector()
    event_log = logging.getLogger(EVENT_LOGGER_NAME)
    event_log.addHandler(handler)
    yield events
    event_log.removeHandler(handler)


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """
    Factory for a shell script standing in for ffmpeg.

    The script writes a playlist and one segment the way ffmpeg's HLS muxer
    names them, then runs `body` (default: exit 0).
    """

    def _make(body: str = "exit 0") -> str:
        script = tmp_path / "fake-ffmpeg"
        script.write_text(
            "#!/bin/sh\n"
            'segment=""\n'
            'playlist=""\n'
            "while [ $# -gt 0 ]; do\n"
            '  case "$1" in\n'
            '    -hls_segment_filename) segment="$2"; shift ;;\n'
            "  esac\n"
            '  playlist="$1"\n'
            "  shift\n"
            "done\n"
            'seg_file=$(printf "$segment" 0)\n'
            'echo "frame=  100 fps=50 q=28.0 size=N/A time=00:00:04.00"\n'
            'printf "x" > "$seg_file"\n'
            'printf "#EXTM3U\\n#EXT-X-VERSION:3\\n#EXTINF:4.0,\\n%s\\n#EXT-X-ENDLIST\\n" '
            '"$(basename "$seg_file")" > "$playlist"\n'
            f"{body}\n"
        )
        script.chmod(0o755)
        return str(script)

    return _make
