from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class NotFoundError(AppError):
    pass


class ValidationError(AppError):
    pass


class TransportUnavailable(AppError):
    """Connection never established or lost beyond the retry budget."""


class SnapshotLoadFailed(AppError):
    pass


class WriteFailed(AppError):
    """A send, edit or delete did not reach the store. Retry is explicit."""


class AuthorizationDenied(AppError):
    """Edit/delete of a message owned by someone else."""


class MalformedEvent(AppError):
    pass
