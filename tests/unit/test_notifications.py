# tests/unit/test_notifications.py

import json

import httpx
import pytest

from photo_bundler.notifications import NotificationDispatcher
from photo_bundler.schemas import Job, JobOutcome, JobStatus


@pytest.fixture
def job(job_body) -> Job:
    return Job.model_validate(job_body)


@pytest.fixture
def success_outcome() -> JobOutcome:
    return JobOutcome(
        status=JobStatus.COMPLETED,
        succeeded_count=2,
        failed_items=(),
        processing_time_seconds=4.2,
        download_url="https://downloads.example.com/k.zip",
        archive_size_bytes=1_048_576,
        total_items=2,
    )


def _dispatcher(handler, endpoints, **kwargs) -> NotificationDispatcher:
    return NotificationDispatcher(endpoints, transport=httpx.MockTransport(handler), **kwargs)


def test_first_successful_endpoint_wins(job, success_outcome):
    # Arrange
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"ok": True})

    dispatcher = _dispatcher(
        handler, ["https://a.example.com/hook", "https://b.example.com/hook"], source="worker"
    )

    # Act
    delivered = dispatcher.notify(job, success_outcome)

    # Assert
    assert delivered is True
    assert calls == ["https://a.example.com/hook"]
    dispatcher.close()


def test_falls_back_to_next_endpoint(job, success_outcome):
    # Arrange
    bodies = {}

    def handler(request: httpx.Request) -> httpx.Response:
        bodies[request.url.host] = json.loads(request.content)
        if request.url.host == "a.example.com":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(202)

    dispatcher = _dispatcher(handler, ["https://a.example.com/hook", "https://b.example.com/hook"])

    # Act
    delivered = dispatcher.notify(job, success_outcome)

    # Assert
    assert delivered is True
    assert bodies["a.example.com"] == bodies["b.example.com"]
    assert bodies["b.example.com"]["downloadUrl"] == "https://downloads.example.com/k.zip"
    assert bodies["b.example.com"]["fileCount"] == 2


def test_all_endpoints_failing_returns_false(job, success_outcome):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    dispatcher = _dispatcher(handler, ["https://a.example.com/hook", "https://b.example.com/hook"])

    assert dispatcher.notify(job, success_outcome) is False


def test_malformed_endpoint_url_falls_back(job, success_outcome):
    """A URL httpx cannot even parse is one failed endpoint, not a crash."""
    # Arrange
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(200)

    dispatcher = _dispatcher(
        handler, ["https://a.example.com/\x07hook", "https://b.example.com/hook"]
    )

    # Act
    delivered = dispatcher.notify(job, success_outcome)

    # Assert
    assert delivered is True
    assert hosts == ["b.example.com"]


def test_malformed_endpoint_url_only_returns_false(job, success_outcome):
    dispatcher = _dispatcher(lambda request: httpx.Response(200), ["https://a.example.com/\x07hook"])

    assert dispatcher.notify(job, success_outcome) is False


def test_failure_outcome_posts_error_payload(job):
    # Arrange
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(200)

    dispatcher = _dispatcher(handler, ["https://a.example.com/hook"])
    outcome = JobOutcome(
        status=JobStatus.FAILED,
        succeeded_count=0,
        failed_items=(),
        processing_time_seconds=1.0,
        error="No photos provided for processing",
    )

    # Act
    dispatcher.notify(job, outcome)

    # Assert
    assert received == [
        {
            "eventId": "evt-42",
            "email": "guest@example.com",
            "error": "No photos provided for processing",
            "isError": True,
            "requestId": "req12345",
        }
    ]


def test_no_endpoints_configured(job, success_outcome):
    dispatcher = NotificationDispatcher([])

    assert dispatcher.notify(job, success_outcome) is False
    dispatcher.close()
