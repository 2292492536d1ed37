from __future__ import annotations

from dataclasses import dataclass

from chat_sync.application.exceptions import AppError
from chat_sync.domain.entities.message import Message


@dataclass(frozen=True, slots=True)
class OperationResult:
    success: bool
    error: AppError | None = None

    @classmethod
    def ok(cls) -> OperationResult:
        return cls(success=True)

    @classmethod
    def fail(cls, error: AppError) -> OperationResult:
        return cls(success=False, error=error)


@dataclass(frozen=True, slots=True)
class SendResult:
    success: bool
    message: Message | None = None
    error: AppError | None = None
