from __future__ import annotations

from typing import Any

from keysync.domain.error_codes import ErrorCode
from keysync.errors import AppError


class RemoteUnavailableError(AppError):
    """
    Назначение:
        Удалённый каталог ключей не ответил или ответил непригодными данными.
    Инварианты/гарантии:
        - code = ErrorCode.REMOTE_UNAVAILABLE.
        - Исходная ошибка (ApiError, KeyBlockParseError) доступна через __cause__.
    """

    def __init__(self, message: str, operation: str | None = None, details: dict[str, Any] | None = None):
        merged = dict(details or {})
        if operation:
            merged["operation"] = operation
        super().__init__(
            category="remote",
            code=ErrorCode.REMOTE_UNAVAILABLE.value,
            message=message,
            retryable=True,
            details=merged,
        )
        self.operation = operation


class KeyBlockParseError(AppError):
    """Сериализованный блок ключа не удалось разобрать."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            category="codec",
            code=ErrorCode.INVALID_KEY_BLOCK.value,
            message=message,
            details=details or {},
        )


class KeyStoreError(AppError):
    """
    Назначение:
        Ошибка локального хранилища ключей.
    Ограничения:
        Слой сверки её не перехватывает: она доходит до вызывающего как есть.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            category="store",
            code=ErrorCode.KEY_STORE_ERROR.value,
            message=message,
            details=details or {},
        )


__all__ = ["RemoteUnavailableError", "KeyBlockParseError", "KeyStoreError"]
