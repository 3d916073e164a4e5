from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from telemetry.api.schemas import HistoryQuery, HistoryResponse
from telemetry.errors import QueryError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {502, 503, 504}


class HistoryClient:
    """Blocking HTTP access to the historical range endpoint, awaited from a worker thread."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.trust_env = False
        self._headers = {"X-API-Key": api_key} if api_key else {}

    async def fetch(self, query: HistoryQuery) -> HistoryResponse:
        return await asyncio.to_thread(self.fetch_blocking, query)

    def fetch_blocking(self, query: HistoryQuery) -> HistoryResponse:
        logger.debug("GET %s/history params=%s", self.base_url, query.to_params())
        try:
            response = self._session.get(
                f"{self.base_url}/history",
                params=query.to_params(),
                headers=self._headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise QueryError(f"history request failed: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            detail = response.text
            try:
                payload = response.json()
                if isinstance(payload, dict):
                    detail = str(payload.get("detail") or payload)
            except ValueError:
                pass
            raise QueryError(
                f"history request failed: {response.status_code} {detail}",
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
                status_code=response.status_code,
            )

        try:
            payload: Any = response.json() if response.content else {}
            return HistoryResponse.model_validate(payload)
        except ValueError as exc:
            raise QueryError(f"invalid history response: {exc}") from exc

    def close(self) -> None:
        self._session.close()
