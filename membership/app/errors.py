"""Error taxonomy shared by the membership services."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class MembershipError(Exception):
    """Represents an actionable failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class BadRequestError(MembershipError):
    def __init__(self, message: str, *, code: str = "bad_request", detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(code=code, message=message, status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class NotFoundError(MembershipError):
    def __init__(self, message: str, *, code: str = "not_found", detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(code=code, message=message, status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ConflictError(MembershipError):
    def __init__(self, message: str, *, code: str = "conflict", detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(code=code, message=message, status_code=status.HTTP_409_CONFLICT, detail=detail)


class RecoverableDegradation(MembershipError):
    """A reconciliation step fell back to reduced fidelity; never propagated."""

    def __init__(self, message: str, *, code: str, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(code=code, message=message, status_code=status.HTTP_200_OK, detail=detail)


class StoreIntegrityError(Exception):
    """A persistence constraint rejected a write."""


class DuplicateRecordError(StoreIntegrityError):
    """A unique key already exists."""


__all__ = [
    "BadRequestError",
    "ConflictError",
    "DuplicateRecordError",
    "MembershipError",
    "NotFoundError",
    "RecoverableDegradation",
    "StoreIntegrityError",
]
