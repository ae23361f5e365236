"""Completion and failure notifications posted to the email webhook."""

import logging
from typing import Sequence

import httpx

from .exceptions import NotificationFailedError
from .schemas import Job, JobOutcome, build_notification_payload

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Posts a job outcome to an ordered list of equivalent webhook endpoints.

    The first endpoint answering 2xx wins; the rest are only tried as fallbacks.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        timeout: float = 10.0,
        source: str | None = None,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._endpoints = tuple(endpoints)
        self._source = source
        self._client = client or httpx.Client(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._owns_client = client is None

    @property
    def endpoints(self) -> tuple[str, ...]:
        return self._endpoints

    def notify(self, job: Job, outcome: JobOutcome) -> bool:
        """Returns True once an endpoint accepted the payload, False if none did."""
        payload = build_notification_payload(job, outcome, source=self._source)
        if not self._endpoints:
            logger.warning("No notification endpoints configured; dropping notification")
            return False

        for endpoint in self._endpoints:
            try:
                self._post(endpoint, payload)
            except NotificationFailedError as exc:
                logger.warning("Notification endpoint rejected payload", extra=exc.to_dict())
                continue
            logger.info(
                "Notification delivered",
                extra={"endpoint": endpoint, "is_error": not outcome.is_success},
            )
            return True

        logger.error(
            "All notification endpoints failed",
            extra={"endpoints": list(self._endpoints), "event_id": job.event_id},
        )
        return False

    def _post(self, endpoint: str, payload: dict) -> None:
        try:
            response = self._client.post(endpoint, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NotificationFailedError(endpoint, str(exc) or type(exc).__name__) from exc

        if not response.is_success:
            raise NotificationFailedError(
                endpoint, f"HTTP {response.status_code}: {response.text[:200]}"
            )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
