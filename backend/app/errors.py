"""Keyed domain errors translated to HTTP responses through error manifests."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(frozen=True)
class ErrorDetail:
    """Human friendly description of an error key."""

    title: str
    detail: str
    status_code: int
    code: str = ""


_INTERNAL_ERROR = ErrorDetail(
    title="Internal Server Error",
    detail="An unexpected error occurred",
    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
)


class ManifestError(Exception):
    """Base class for errors identified by a key registered in a manifest.

    Subclasses set ``manifest`` to the mapping of keys they may raise. Keys that
    are missing from the manifest are reported as internal errors.
    """

    manifest: ClassVar[Mapping[str, ErrorDetail]] = {}

    def __init__(self, key: str, message: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message or key)

    @property
    def error_detail(self) -> ErrorDetail:
        return self.manifest.get(self.key, _INTERNAL_ERROR)

    @property
    def status_code(self) -> int:
        return self.error_detail.status_code

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        detail = self.error_detail
        body: Dict[str, Any] = {
            "key": self.key,
            "title": detail.title,
            "detail": detail.detail,
        }
        if detail.code:
            body["code"] = detail.code
        return body

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


__all__ = ["ErrorDetail", "ManifestError"]
