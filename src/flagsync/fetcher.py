from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Literal

import httpx


logger = logging.getLogger(__name__)

type FetchErrorCause = Literal["abort", "timeout", "failure"]


class FetchRequest:
    __slots__ = ("url", "last_etag", "headers", "timeout_seconds")
    url: str
    last_etag: str | None
    headers: dict[str, str]
    timeout_seconds: float

    def __init__(self, url: str, last_etag: str | None, headers: dict[str, str], timeout_seconds: float):
        self.url = url
        self.last_etag = last_etag
        self.headers = headers
        self.timeout_seconds = timeout_seconds


class FetchResponse:
    __slots__ = ("status_code", "reason_phrase", "etag", "body")
    status_code: int
    reason_phrase: str
    etag: str | None
    body: str | None

    def __init__(self, status_code: int, reason_phrase: str = "", etag: str | None = None, body: str | None = None):
        self.status_code = status_code
        self.reason_phrase = reason_phrase
        self.etag = etag
        self.body = body


class FetchError(Exception):
    """
    Raised by fetchers when no HTTP response could be obtained.

    cause: "abort" when the request was cancelled, "timeout" when it didn't
      complete in time, "failure" for network and protocol errors.
    """

    def __init__(self, cause: FetchErrorCause, timeout_seconds: float | None = None, error: BaseException | None = None):
        match cause:
            case "abort":
                message = "Request was aborted."
            case "timeout":
                message = f"Request timed out. Timeout value: {timeout_seconds}s"
            case _:
                message = "Request failed due to a network or protocol error."
                if error is not None:
                    message += f" {error}"
        super().__init__(message)
        self.cause = cause
        self.timeout_seconds = timeout_seconds
        self.error = error


class ConfigFetcher(ABC):
    """
    Transport used to download config documents. Implementations return the
    response for any HTTP status and raise FetchError only when no response
    was received.
    """

    @abstractmethod
    async def fetch(self, request: FetchRequest) -> FetchResponse: ...


class HttpxConfigFetcher(ConfigFetcher):
    """
    Fetches config documents with httpx.
    """

    def __init__(self, proxy: str | None = None):
        self._proxy = proxy

    def _make_client(self, request: FetchRequest) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=request.timeout_seconds, proxy=self._proxy)

    async def fetch(self, request: FetchRequest) -> FetchResponse:
        headers = dict(request.headers)
        if request.last_etag:
            headers["If-None-Match"] = request.last_etag

        logger.debug("Fetching config from %s", request.url)
        try:
            async with self._make_client(request) as client:
                resp = await client.get(request.url, headers=headers)
        except httpx.TimeoutException as e:
            raise FetchError("timeout", timeout_seconds=request.timeout_seconds, error=e) from e
        except httpx.HTTPError as e:
            raise FetchError("failure", error=e) from e

        if resp.status_code == 200:
            return FetchResponse(resp.status_code, resp.reason_phrase, resp.headers.get("ETag"), resp.text)
        return FetchResponse(resp.status_code, resp.reason_phrase)
