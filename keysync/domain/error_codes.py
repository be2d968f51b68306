from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """
    Назначение:
        Единая таксономия кодов ошибок keysync.
    """

    REMOTE_UNAVAILABLE = "REMOTE_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_ERROR = "HTTP_ERROR"
    INVALID_JSON = "INVALID_JSON"
    INVALID_KEY_BLOCK = "INVALID_KEY_BLOCK"
    KEY_STORE_ERROR = "KEY_STORE_ERROR"
