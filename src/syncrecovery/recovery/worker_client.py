"""
Outbound client for the platform sync workers.

Each platform worker is an HTTP endpoint at {worker_base_url}/{platform}-sync
accepting a JSON payload. Workers are expected to be idempotent under
re-delivery of the same offset. Any transport error, timeout or non-2xx
response surfaces as WorkerCallError.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from syncrecovery.config import get_settings

logger = logging.getLogger(__name__)


class WorkerCallError(RuntimeError):
    """Raised when a worker invocation fails or times out."""


class WorkerClient:
    """Thin async wrapper over httpx for worker invocations."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: worker functions root. Defaults to settings.worker_base_url.
            auth_token: bearer token. Defaults to settings.worker_auth_token.
            timeout: per-call timeout in seconds. Defaults to settings.resume_timeout_seconds.
            transport: httpx transport override (httpx.MockTransport in tests).
        """
        settings = get_settings()
        self.base_url = (base_url or settings.worker_base_url).rstrip("/")
        self.auth_token = auth_token if auth_token is not None else settings.worker_auth_token
        self.timeout = timeout if timeout is not None else settings.resume_timeout_seconds
        self._transport = transport

    def url_for(self, platform: str) -> str:
        return f"{self.base_url}/{platform}-sync"

    async def trigger(self, platform: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a payload to the platform's worker.

        Returns:
            The decoded JSON body, or {} if the worker returned none.

        Raises:
            WorkerCallError: on timeout, transport failure or non-2xx status.
        """
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        url = self.url_for(platform)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise WorkerCallError(f"Timed out after {self.timeout}s calling {url}") from exc
        except httpx.HTTPError as exc:
            raise WorkerCallError(f"{type(exc).__name__} calling {url}: {exc}") from exc

        if not resp.is_success:
            raise WorkerCallError(f"{resp.status_code} {resp.text[:500]}")

        logger.debug("Worker %s accepted payload (HTTP %d)", platform, resp.status_code)
        try:
            body = resp.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
