from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class NotFoundError(AppError):
    pass


class ValidationError(AppError):
    pass


class SessionNotReadyError(AppError):
    pass


class StoreError(AppError):
    """Raised by MessageStore backends."""


class StoreUnavailable(StoreError):
    """Transient transport failure."""


class StoreRejected(StoreError):
    """The backend refused the operation."""


class ReconciliationAmbiguous(AppError):
    """More than one local entry matches a remote echo."""

    def __init__(self, detail: str, candidates: list[Any]) -> None:
        self.candidates = candidates
        super().__init__(detail)
