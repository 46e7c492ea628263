"""Generation provider gateway (fal.ai) over a shared httpx client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlparse

import httpx

from config import settings
from services.errors import ProviderFailure

logger = logging.getLogger(__name__)

# Provider statuses that describe the caller's input and are safe to forward.
FORWARDED_ERROR_STATUSES = {400, 422}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text[:500] or f"Provider returned HTTP {response.status_code}"
    if isinstance(body, Mapping):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if isinstance(detail, list) and detail:
            first = detail[0]
            detail = first.get("msg") if isinstance(first, Mapping) else first
        if detail:
            return str(detail)[:500]
    return f"Provider returned HTTP {response.status_code}"


class GenerationProvider:
    """Invoke provider models, stream proxied requests, and poll queued jobs."""

    def __init__(
        self,
        api_key: str,
        *,
        run_url: str = "https://fal.run",
        queue_url: str = "https://queue.fal.run",
        allowed_hosts: Iterable[str] = ("fal.run", "fal.ai", "fal.media"),
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.run_url = run_url.rstrip("/")
        self.queue_url = queue_url.rstrip("/")
        self.allowed_hosts = tuple(host.lower() for host in allowed_hosts)
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, transport: Optional[httpx.AsyncBaseTransport] = None) -> "GenerationProvider":
        return cls(
            settings.FAL_KEY,
            run_url=settings.FAL_RUN_URL,
            queue_url=settings.FAL_QUEUE_URL,
            allowed_hosts=settings.FAL_ALLOWED_HOSTS,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Key {self.api_key}"}

    async def run(self, endpoint: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Run ``endpoint`` synchronously and return its JSON result."""
        url = f"{self.run_url}/{endpoint.strip('/')}"
        try:
            response = await self._client.post(url, json=dict(payload), headers=self._auth_headers())
        except httpx.TimeoutException as exc:
            logger.warning("Provider call to %s timed out", endpoint)
            raise ProviderFailure("Generation timed out", status_code=504) from exc
        except httpx.HTTPError as exc:
            logger.warning("Provider call to %s failed: %s", endpoint, exc)
            raise ProviderFailure("Generation provider unavailable", status_code=502) from exc

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Provider %s returned %s: %s", endpoint, response.status_code, message)
            status = response.status_code if response.status_code in FORWARDED_ERROR_STATUSES else 502
            raise ProviderFailure(message, status_code=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderFailure("Provider returned a malformed response", status_code=502) from exc
        if not isinstance(body, dict):
            raise ProviderFailure("Provider returned a malformed response", status_code=502)
        return body

    async def download(self, url: str) -> Tuple[bytes, str]:
        """Fetch generated media and return its bytes and content type."""
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise ProviderFailure("Failed to download result image", status_code=502) from exc
        if response.status_code >= 400:
            raise ProviderFailure("Failed to download result image", status_code=502)
        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
        return response.content, content_type

    def is_allowed_target(self, target_url: str) -> bool:
        parsed = urlparse(target_url or "")
        if parsed.scheme != "https" or not parsed.hostname:
            return False
        host = parsed.hostname.lower()
        return any(host == allowed or host.endswith(f".{allowed}") for allowed in self.allowed_hosts)

    async def open_stream(
        self,
        method: str,
        target_url: str,
        *,
        headers: Mapping[str, str],
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        """Send a proxied request and return the unread streaming response.

        The caller owns the response and must close it.
        """
        outbound = dict(headers)
        outbound.update(self._auth_headers())
        request = self._client.build_request(method, target_url, headers=outbound, content=content)
        try:
            return await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise ProviderFailure("Generation timed out", status_code=504) from exc
        except httpx.HTTPError as exc:
            raise ProviderFailure("Generation provider unavailable", status_code=502) from exc

    def queue_urls(self, endpoint: str, request_id: str) -> Tuple[str, str]:
        """Status and result URLs for a request submitted to the queue API."""
        base = f"{self.queue_url}/{endpoint.strip('/')}/requests/{request_id}"
        return f"{base}/status", base

    async def get_json(self, url: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        """GET a queue status/result URL; returns ``(status_code, body)``."""
        try:
            response = await self._client.get(url, headers=self._auth_headers())
        except httpx.HTTPError as exc:
            raise ProviderFailure("Generation provider unavailable", status_code=502) from exc
        try:
            body = response.json()
        except ValueError:
            body = None
        return response.status_code, body if isinstance(body, dict) else None
