"""HTTP streaming downloads of remotely hosted media."""

import logging
import time
from typing import Callable, Iterator

import httpx

from .exceptions import FetchFailedError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class MediaStream:
    """
    Read-only, file-like view over a streamed HTTP response body.

    ``read`` enforces an overall deadline for the item, so a server trickling
    bytes cannot hold the job up longer than the fetch timeout. Transport
    errors while draining surface as :class:`FetchFailedError`.
    """

    def __init__(
        self,
        response: httpx.Response,
        url: str,
        deadline: float,
        *,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._response = response
        self._url = url
        self._deadline = deadline
        self._time_source = time_source
        self._chunks: Iterator[bytes] = response.iter_bytes(_CHUNK_SIZE)
        self._pending = b""
        self._exhausted = False
        self.closed = False

    @property
    def content_length(self) -> int | None:
        value = self._response.headers.get("content-length")
        return int(value) if value and value.isdigit() else None

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed media stream")

        while not self._exhausted and (size < 0 or len(self._pending) < size):
            if self._time_source() > self._deadline:
                raise FetchFailedError(self._url, "download timed out")
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self._exhausted = True
                break
            except httpx.TimeoutException as e:
                raise FetchFailedError(self._url, "download timed out") from e
            except httpx.HTTPError as e:
                raise FetchFailedError(self._url, f"download interrupted: {e}") from e
            self._pending += chunk

        if size < 0:
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:size], self._pending[size:]
        return data

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._response.close()

    def __enter__(self) -> "MediaStream":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()


class MediaFetcher:
    """
    Opens media URLs as byte streams.

    Redirects are followed by hand rather than by httpx so the hop count can be
    bounded; each hop re-enters the same status handling.
    """

    def __init__(
        self,
        *,
        timeout: float = 60.0,
        max_redirects: int = 5,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timeout = timeout
        self._max_redirects = max_redirects
        self._time_source = time_source
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": httpx.Timeout(self._timeout),
            "follow_redirects": False,
            "headers": {"User-Agent": "photo-bundler/1.0"},
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def fetch(self, url: str) -> MediaStream:
        """
        Start downloading ``url`` and return its body as a stream.

        Raises:
            FetchFailedError: non-2xx status, too many redirects, timeout or
                transport failure.
        """
        deadline = self._time_source() + self._timeout
        current = url
        for hop in range(self._max_redirects + 1):
            try:
                request = self._client.build_request("GET", current)
                response = self._client.send(request, stream=True)
            except httpx.InvalidURL as e:
                raise FetchFailedError(url, f"invalid url: {e}") from e
            except httpx.TimeoutException as e:
                raise FetchFailedError(url, "request timed out") from e
            except httpx.HTTPError as e:
                raise FetchFailedError(url, f"request failed: {e}") from e

            if response.is_redirect:
                next_request = response.next_request
                response.close()
                if next_request is None:
                    raise FetchFailedError(
                        url, "redirect without location", status_code=response.status_code
                    )
                logger.debug(
                    "Following redirect %d for %s -> %s", hop + 1, url, next_request.url
                )
                current = str(next_request.url)
                continue

            if not response.is_success:
                response.close()
                raise FetchFailedError(
                    url, f"HTTP {response.status_code}", status_code=response.status_code
                )

            return MediaStream(response, url, deadline, time_source=self._time_source)

        raise FetchFailedError(url, f"exceeded {self._max_redirects} redirects")

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "MediaFetcher":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()
