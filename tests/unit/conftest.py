"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import json
import os
import uuid

import pytest


@pytest.fixture(scope="session", autouse=True)
def _env_vars():
    """
    Ensures a deterministic environment for every test run.
    Overwrite *only* the variables needed by the worker.
    """
    original = os.environ.copy()
    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "photo-bundler-test")
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", "INFO")
    os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "PhotoBundler")
    yield
    os.environ.clear()
    os.environ.update(original)


@pytest.fixture
def valid_env(monkeypatch):
    """The minimal environment the worker needs to start."""
    monkeypatch.setenv("JOB_QUEUE_URL", "https://sqs.eu-west-1.amazonaws.com/000000000000/jobs")
    monkeypatch.setenv("DISTRIBUTION_BUCKET_NAME", "test-dist-bucket")
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.setenv("ENVIRONMENT", "test")


# ---------- Minimal, realistic job messages ---------- #
@pytest.fixture
def job_body() -> dict:
    """A job as the upload API enqueues it."""
    return {
        "eventId": "evt-42",
        "email": "guest@example.com",
        "requestId": "req12345",
        "photos": [
            {"fileName": "IMG_0001.jpg", "url": "https://media.example.com/1.jpg", "size": 11},
            {"fileName": "IMG_0002.jpg", "url": "https://media.example.com/2.jpg", "size": 11},
        ],
    }


@pytest.fixture
def sqs_message(job_body: dict) -> dict:
    """One message as returned by sqs.receive_message."""
    return {
        "MessageId": str(uuid.uuid4()),
        "ReceiptHandle": "receipt-" + uuid.uuid4().hex,
        "Body": json.dumps(job_body),
        "Attributes": {"ApproximateReceiveCount": "1"},
        "MessageAttributes": {},
        "MD5OfBody": "dummy",
    }
