"""
Sinks receiving finished lien records.

A sink accepts an ordered batch and returns how many rows it accepted. It is
fire-and-forget from the pipeline's point of view (no read-back), but a
failed delivery raises ``SinkError`` so the job that produced the records
stays retryable.

- ``SheetsSink`` appends rows to a Google Sheet through the Sheets REST API
  (httpx, service-account credentials via google-auth).
- ``WebhookSink`` POSTs the batch as JSON to an HTTP endpoint.
- ``MemorySink`` keeps records in memory (dry runs, tests).
"""

import asyncio
import json
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from lienflow.core.config import Settings, get_settings
from lienflow.extractors.base import create_retry_decorator
from lienflow.models.records import LienRecord
from lienflow.utils.exceptions import ConfigurationError, SinkError
from lienflow.utils.logging import get_logger

logger = get_logger(__name__)

SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"

TokenProvider = Callable[[], Awaitable[str]]


class Sink(Protocol):
    name: str

    async def append(self, records: Sequence[LienRecord]) -> int: ...

    async def close(self) -> None: ...


def sheet_row(record: LienRecord) -> list[str]:
    """Spreadsheet columns: state, type, debtor, file number, status, filed, lapses."""
    return [
        record.state,
        record.ucc_type,
        record.debtor_name,
        record.file_number,
        record.status,
        record.filing_date,
        record.lapse_date,
    ]


def _worth_retrying(error: BaseException) -> bool:
    """Transport failures and 5xx answers; a 4xx will fail the same way again."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, SinkError):
        status_code = error.details.get("status_code")
        return status_code is not None and status_code >= 500
    return False


def _http_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        follow_redirects=True,
        headers={
            "User-Agent": "Lienflow/1.0",
            "Accept": "application/json",
        },
        timeout=httpx.Timeout(
            connect=10.0,
            read=timeout,
            write=10.0,
            pool=5.0,
        ),
    )


class MemorySink:
    """Keeps appended records in ``records``."""

    name = "memory"

    def __init__(self) -> None:
        self.records: list[LienRecord] = []

    async def append(self, records: Sequence[LienRecord]) -> int:
        self.records.extend(records)
        return len(records)

    async def close(self) -> None:
        return None


class WebhookSink:
    """
    Delivers record batches to an HTTP endpoint.

    Payload: ``{"count": n, "records": [...]}``. Non-2xx responses and
    transport errors are retried with jittered backoff, then raised as
    ``SinkError``.

    Usage:
        sink = WebhookSink("https://hooks.example.com/liens")
        accepted = await sink.append(records)
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client
        self._retry = create_retry_decorator(
            max_attempts=max_attempts,
            max_delay=30,
            min_wait=1,
            max_wait=10,
            retry_when=_worth_retrying,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = _http_client(self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(self, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        response = await client.post(self._url, json=payload)
        if response.status_code >= 400:
            logger.warning(
                "Webhook received error response",
                url=self._url,
                status_code=response.status_code,
                response_body=response.text[:500],
            )
            raise SinkError(
                f"Webhook failed with status {response.status_code}",
                sink=self.name,
                status_code=response.status_code,
            )

    async def append(self, records: Sequence[LienRecord]) -> int:
        if not records:
            return 0

        payload = {
            "count": len(records),
            "records": [record.model_dump(mode="json") for record in records],
        }
        try:
            await self._retry(self._post)(payload)
        except httpx.HTTPError as e:
            raise SinkError(f"Webhook HTTP error: {e}", sink=self.name) from e

        logger.info("Rows delivered", sink=self.name, rows=len(records))
        return len(records)


class SheetsSink:
    """
    Appends records to a Google Sheet (``values:append``, USER_ENTERED).

    Args:
        sheet_id: Spreadsheet id
        credentials_info: Parsed service-account JSON
        sheet_range: A1 range the rows are appended after
        token_provider: Coroutine returning a bearer token (defaults to
            google-auth service-account credentials)
        client: Optional preconfigured httpx client
    """

    name = "sheets"

    def __init__(
        self,
        sheet_id: str,
        *,
        credentials_info: dict[str, Any] | None = None,
        sheet_range: str = "Sheet1!A1",
        token_provider: TokenProvider | None = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if token_provider is None and credentials_info is None:
            raise ConfigurationError("Sheets sink needs service account credentials")

        self._sheet_id = sheet_id
        self._range = sheet_range
        self._credentials_info = credentials_info
        self._credentials: Any = None
        self._token_provider = token_provider or self._service_account_token
        self._timeout = timeout
        self._client = client
        self._retry = create_retry_decorator(
            max_attempts=max_attempts,
            max_delay=30,
            min_wait=1,
            max_wait=10,
            retry_exceptions=(httpx.TransportError,),
        )

    async def _service_account_token(self) -> str:
        from google.auth.transport.requests import Request
        from google.oauth2 import service_account

        if self._credentials is None:
            self._credentials = service_account.Credentials.from_service_account_info(
                self._credentials_info, scopes=[SHEETS_SCOPE]
            )
        if not self._credentials.valid:
            await asyncio.to_thread(self._credentials.refresh, Request())
        return self._credentials.token

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = _http_client(self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _append_values(self, values: list[list[str]]) -> httpx.Response:
        client = await self._get_client()
        token = await self._token_provider()
        return await client.post(
            f"{SHEETS_API}/{self._sheet_id}/values/{quote(self._range)}:append",
            params={"valueInputOption": "USER_ENTERED"},
            headers={"Authorization": f"Bearer {token}"},
            json={"values": values},
        )

    async def append(self, records: Sequence[LienRecord]) -> int:
        if not records:
            return 0

        values = [sheet_row(record) for record in records]
        try:
            response = await self._retry(self._append_values)(values)
        except httpx.HTTPError as e:
            raise SinkError(f"Sheets append failed: {e}", sink=self.name) from e

        if response.status_code >= 400:
            raise SinkError(
                f"Sheets append failed with status {response.status_code}",
                sink=self.name,
                status_code=response.status_code,
                details={"response_body": response.text[:500]},
            )

        updated = response.json().get("updates", {}).get("updatedRows", len(values))
        logger.info("Rows delivered", sink=self.name, rows=updated)
        return int(updated)


def build_sink(settings: Settings | None = None) -> Sink:
    """
    Sink selected by ``settings.sink``.

    Raises:
        ConfigurationError: If the chosen sink is missing its settings
    """
    settings = settings or get_settings()

    match settings.sink:
        case "memory":
            return MemorySink()
        case "webhook":
            if not settings.webhook_url:
                raise ConfigurationError("WEBHOOK_URL is required for the webhook sink")
            return WebhookSink(settings.webhook_url, timeout=settings.webhook_timeout)
        case "sheets":
            if not settings.sheet_id:
                raise ConfigurationError("SHEET_ID is required for the sheets sink")
            if not settings.sheets_key:
                raise ConfigurationError("SHEETS_KEY is required for the sheets sink")
            try:
                credentials_info = json.loads(settings.sheets_key)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"SHEETS_KEY is not valid JSON: {e}") from e
            return SheetsSink(
                settings.sheet_id,
                credentials_info=credentials_info,
                sheet_range=settings.sheet_range,
            )
        case _:
            raise ConfigurationError(f"Unknown sink: {settings.sink}")
