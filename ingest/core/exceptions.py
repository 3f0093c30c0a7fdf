# ingest/core/exceptions.py
from __future__ import annotations

"""
BBMovie Ingest: Application Exceptions
=======================================
A small, consistent layer on top of FastAPI/Starlette's `HTTPException` that
lets services raise typed errors with structured metadata, rendered by the
Problem+JSON handlers in `ingest.core.exception_handlers`.

Key ideas
---------
- One base `AppException` that carries `code`, `request_id`, `details`, `extra`.
- Ingest-domain exceptions inherit from it and set sane defaults.
- Worker-side failures (`ProbeException`, `BlobStoreError`) are plain runtime
  errors: they never cross the HTTP boundary.

Usage
-----
    raise IncompleteUpload(upload_id="u-1", missing_parts=[2, 5])

    try:
        await machine.transition(db, media_id, MediaStatus.UPLOADED, MediaStatus.VALIDATED)
    except StaleStateError as e:
        current = e.actual  # re-read and decide, never retry blindly
"""

from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException, status

__all__ = [
    "AppException",
    "InvalidRequest",
    "ChecksumMismatch",
    "IllegalTransition",
    "SessionNotFound",
    "MediaNotFound",
    "IncompleteUpload",
    "SessionExpired",
    "StaleStateError",
    "DeleteNotAllowed",
    "ProbeException",
    "BlobStoreError",
]


# ──────────────────────────────────────────────────────────────
# 📦 Core: AppException
# ──────────────────────────────────────────────────────────────
class AppException(HTTPException):
    """Base application-level exception with optional metadata.

    Attributes
    -----------
    status_code : int
        HTTP status code (400/403/404/409/410/500).
    message : str
        Human-readable error message (serialized as `detail` as well).
    code : int
        Optional internal/typed error code. Defaults to `status_code`.
    request_id : str | None
        Optional request correlation id.
    details : dict | list | str | None
        Machine-readable details (missing part numbers, expected/actual states).
    extra : dict | None
        Additional non-sensitive metadata to surface to clients.
    """

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Any] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code: int = int(code or status_code)
        self.message: str = message
        self.request_id: Optional[str] = request_id
        self.details: Optional[Any] = details
        self.extra: Dict[str, Any] = extra or {}

    def __str__(self) -> str:
        return self.message

    # ── [Helper] Canonical body used by handlers ───────────────────────────
    def to_problem(self, *, fallback_request_id: Optional[str] = None) -> Dict[str, Any]:
        """Return a dict matching our problem-like JSON shape."""
        body: Dict[str, Any] = {
            "error": True,
            "message": self.message,
            "code": self.code,
            "request_id": self.request_id or fallback_request_id or "N/A",
        }
        if self.details is not None:
            body["details"] = self.details
        extra_sanitized = dict(self.extra) if self.extra else {}
        for k in ("token", "authorization", "password", "secret", "url"):
            extra_sanitized.pop(k, None)
        body.update(extra_sanitized)
        return body


# ──────────────────────────────────────────────────────────────
# 🧾 Caller-input errors (not retried)
# ──────────────────────────────────────────────────────────────
class InvalidRequest(AppException):
    """Malformed caller input; surfaced as 400."""

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            message=message,
            details=details,
        )


class ChecksumMismatch(InvalidRequest):
    """Client-declared checksum does not match the stored object."""

    def __init__(self, *, expected: str, actual: str) -> None:
        super().__init__(
            "Checksum mismatch",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class IllegalTransition(InvalidRequest):
    """Requested transition is not an edge of the media state graph."""

    def __init__(self, *, source: str, target: str) -> None:
        super().__init__(
            f"Illegal transition {source} -> {target}",
            details={"from": source, "to": target},
        )


class DeleteNotAllowed(AppException):
    """Delete requested without explicit authorization."""

    def __init__(self, media_id: Any) -> None:
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            message="Delete not allowed",
            details={"media_id": str(media_id)},
        )


# ──────────────────────────────────────────────────────────────
# 🔎 Lookups
# ──────────────────────────────────────────────────────────────
class SessionNotFound(AppException):
    def __init__(self, upload_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            message="Upload session not found",
            details={"upload_id": upload_id},
        )


class MediaNotFound(AppException):
    def __init__(self, media_id: Any) -> None:
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            message="Media file not found",
            details={"media_id": str(media_id)},
        )


# ──────────────────────────────────────────────────────────────
# ♻️ Client-recoverable upload errors
# ──────────────────────────────────────────────────────────────
class IncompleteUpload(AppException):
    """Completion attempted while some expected parts are not UPLOADED."""

    def __init__(self, *, upload_id: str, missing_parts: Iterable[int]) -> None:
        missing: List[int] = sorted(int(p) for p in missing_parts)
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            message=f"Upload incomplete: {len(missing)} part(s) missing",
            details={"upload_id": upload_id, "missing_parts": missing},
        )
        self.upload_id = upload_id
        self.missing_parts = missing


class SessionExpired(AppException):
    """Session is past `expires_at`; the client must reopen."""

    def __init__(self, upload_id: str) -> None:
        super().__init__(
            status_code=status.HTTP_410_GONE,
            message="Upload session expired",
            details={"upload_id": upload_id},
        )
        self.upload_id = upload_id


# ──────────────────────────────────────────────────────────────
# ⚔️ Races
# ──────────────────────────────────────────────────────────────
class StaleStateError(AppException):
    """Compare-and-swap lost: persisted status differs from the expected one."""

    def __init__(self, *, media_id: Any, expected: Any, actual: Any) -> None:
        exp = getattr(expected, "value", expected)
        act = getattr(actual, "value", actual)
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            message=f"Stale state: expected {exp}, found {act}",
            details={"media_id": str(media_id), "expected": exp, "actual": act},
        )
        self.media_id = media_id
        self.expected = expected
        self.actual = actual


# ──────────────────────────────────────────────────────────────
# 🛠️ Worker / infrastructure (never rendered as HTTP)
# ──────────────────────────────────────────────────────────────
class ProbeException(RuntimeError):
    """Every probe strategy failed; wraps the last underlying error."""

    def __init__(self, message: str, *, last_error: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


class BlobStoreError(RuntimeError):
    """Raised when a storage operation fails (network, auth, policy, etc.)."""
