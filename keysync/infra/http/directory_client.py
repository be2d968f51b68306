from __future__ import annotations

import asyncio
from typing import Any

import httpx

from keysync.common.sanitize import truncateText
from keysync.domain.error_codes import ErrorCode
from keysync.errors import AppError


class ApiError(AppError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body_snippet: str | None = None,
        retryable: bool = False,
        details: dict | None = None,
        code: str | None = None,
    ):
        """
        Назначение:
            Исключение для ошибок HTTP/API уровня DirectoryApiClient.
        Контракт:
            - code: HTTP_<status>, NETWORK_ERROR, INVALID_JSON.
            - status_code/body_snippet используются для диагностики.
        """
        super().__init__(
            category="api",
            code=code or (f"HTTP_{status_code}" if status_code else ErrorCode.HTTP_ERROR.value),
            message=message,
            retryable=retryable,
            details=details or {},
        )
        self.status_code = status_code
        self.body_snippet = body_snippet


class DirectoryApiClient:
    def __init__(
        self,
        baseUrl: str,
        token: str | None = None,
        timeoutSeconds: float = 10.0,
        tlsSkipVerify: bool = False,
        caFile: str | None = None,
        retries: int = 2,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Назначение:
            Асинхронный клиент каталога ключей с простой политикой ретраев.
        Контракт:
            - baseUrl обязателен, token передаётся как Bearer.
            - Ретраи на 429/5xx и сетевые ошибки с экспоненциальной задержкой.
            - Таймаут задаётся здесь: слой сверки вызовы не отменяет.
        """
        verify: bool | str = True
        if tlsSkipVerify:
            verify = False
        elif caFile:
            verify = caFile

        self.baseUrl = baseUrl.rstrip("/")
        self.token = token
        self.retries = retries
        self.retryBackoffSeconds = retryBackoffSeconds
        self.retry_attempts = 0

        self.client = httpx.AsyncClient(
            base_url=self.baseUrl,
            timeout=timeoutSeconds,
            verify=verify,
            transport=transport,
        )

    async def __aenter__(self) -> "DirectoryApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def getRetryAttempts(self) -> int:
        """Возвращает количество выполненных повторных попыток."""
        return self.retry_attempts

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self.token:
            headers["authorization"] = f"Bearer {self.token}"
        return headers

    def _should_retry(self, resp: httpx.Response) -> bool:
        """429 и 5xx повторяются."""
        return resp.status_code == 429 or 500 <= resp.status_code <= 599

    async def _sleep_backoff(self, attempt: int) -> None:
        await asyncio.sleep(self.retryBackoffSeconds * (2 ** attempt))

    async def _send(self, method: str, path: str, params: dict[str, Any] | None, jsonBody: Any | None) -> httpx.Response:
        attempt = 0
        while True:
            try:
                resp = await self.client.request(method, path, params=params, json=jsonBody, headers=self._headers())
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt >= self.retries:
                    raise ApiError(
                        "Network error",
                        retryable=True,
                        code=ErrorCode.NETWORK_ERROR.value,
                        details={"path": path, "error": str(exc)},
                    ) from exc
                self.retry_attempts += 1
                await self._sleep_backoff(attempt)
                attempt += 1
                continue

            if self._should_retry(resp) and attempt < self.retries:
                self.retry_attempts += 1
                await self._sleep_backoff(attempt)
                attempt += 1
                continue
            return resp

    async def requestJson(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        jsonBody: Any | None = None,
        allowNotFound: bool = False,
    ) -> tuple[int, Any]:
        """
        JSON-запрос с ретраями. Ожидает 200/201/204 (и 404 при allowNotFound).
        Возвращает (status_code, json|None) или бросает ApiError.
        """
        resp = await self._send(method, path, params, jsonBody)

        if resp.status_code == 404 and allowNotFound:
            return resp.status_code, None

        if resp.status_code not in (200, 201, 204):
            body_snippet = truncateText(resp.text) if resp.text else None
            raise ApiError(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                body_snippet=body_snippet,
                retryable=self._should_retry(resp),
                details={"path": path, "body_snippet": body_snippet},
            )

        if not resp.content:
            return resp.status_code, None
        try:
            return resp.status_code, resp.json()
        except ValueError as exc:
            raise ApiError(
                "Invalid JSON response",
                status_code=resp.status_code,
                code=ErrorCode.INVALID_JSON.value,
                details={"path": path},
            ) from exc

    async def getJson(self, path: str, params: dict[str, Any] | None = None, allowNotFound: bool = False) -> Any:
        _status, data = await self.requestJson("GET", path, params=params, allowNotFound=allowNotFound)
        return data


__all__ = ["ApiError", "DirectoryApiClient"]
