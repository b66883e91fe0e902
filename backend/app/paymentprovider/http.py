"""Outbound HTTP used by provider adapters to enrich webhook payloads."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Protocol
from urllib import error as urllib_error, request as urllib_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HTTPResponse:
    status_code: int
    body: bytes


class HTTPClient(Protocol):
    """Minimal GET capable client."""

    def get(self, url: str, *, headers: Mapping[str, str]) -> HTTPResponse:
        ...


class UrllibHTTPClient(HTTPClient):
    """HTTP client backed by :mod:`urllib.request`.

    Non-2xx responses are returned rather than raised so callers can decide how
    to interpret them. Transport failures propagate as :class:`OSError`.
    """

    def __init__(self, *, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def get(self, url: str, *, headers: Mapping[str, str]) -> HTTPResponse:
        request = urllib_request.Request(url, headers=dict(headers), method="GET")
        try:
            with urllib_request.urlopen(request, timeout=self.timeout) as response:
                return HTTPResponse(status_code=response.status, body=response.read())
        except urllib_error.HTTPError as exc:
            logger.debug("Provider API responded with status %s for %s", exc.code, url)
            return HTTPResponse(status_code=exc.code, body=exc.read() or b"")


__all__ = ["HTTPClient", "HTTPResponse", "UrllibHTTPClient"]
