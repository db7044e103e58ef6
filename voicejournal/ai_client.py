"""
HTTP client for the AI backend.

Wraps the backend's three operations (transcribe, summarize, suggest
tags) plus a health check behind a uniform error contract:

- AiBackendError: the backend answered but the call failed (non-2xx,
  malformed or empty response).
- BackendUnreachableError: the request never got an answer (connection
  refused, DNS failure, timeout). The worker turns this into an
  actionable message about the backend address.

The client does not retry. Retries belong to the job queue.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx

from .errors import PreconditionError
from .types import MAX_SUGGESTED_TAGS, MAX_SUMMARY_BULLETS, SummaryResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
HEALTH_TIMEOUT = 10.0

DEFAULT_AUDIO_TYPE = "audio/m4a"


class AiBackendError(Exception):
    """The AI backend rejected a request or returned an unusable response."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendUnreachableError(AiBackendError):
    """The AI backend could not be reached at all."""

    def __init__(self, url: str, reason: str):
        super().__init__(
            f"Cannot reach AI backend at {url} ({reason}). "
            "Is the AI server running and reachable from this device?"
        )
        self.url = url
        self.reason = reason


@dataclass(frozen=True)
class HealthStatus:
    ok: bool
    service: Optional[str] = None


def _is_local_host(host: str) -> bool:
    """True for loopback, private-network and mDNS (.local) hosts."""
    if host in ("localhost",) or host.endswith(".local"):
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private or addr.is_link_local


def _audio_path(audio_location: str) -> Path:
    """Resolve a filesystem path or file:// URI to a Path."""
    parsed = urlparse(audio_location)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(audio_location).expanduser()


def _error_message(response: httpx.Response) -> str:
    """Best error text from a failed response: {error}, {message}, body, status."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error", "message"):
            if isinstance(data.get(key), str) and data[key]:
                return data[key]
    text = response.text.strip()
    if text:
        return text
    return f"Request failed with status {response.status_code}"


class AiBackendClient:
    """Async HTTP client for the AI backend."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url or not base_url.strip():
            raise ValueError(
                "Missing AI backend base URL. Set [backend] base_url in "
                "voicejournal.toml or VOICEJOURNAL_AI_API_BASE_URL."
            )
        self._base_url = base_url.strip().rstrip("/")
        self._token = token or None

        # Refuse to send a bearer token in cleartext over the internet
        parsed = urlparse(self._base_url)
        if self._token and parsed.scheme != "https":
            host = parsed.hostname or ""
            if not _is_local_host(host):
                raise ValueError(
                    f"AI backend URL must use HTTPS when a token is configured (got {self._base_url}). "
                    "Use HTTPS, or a local/private network address for development."
                )

        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, mapping transport failures and non-2xx responses."""
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendUnreachableError(url, f"timed out: {e}" if str(e) else "timed out") from e
        except httpx.TransportError as e:
            raise BackendUnreachableError(url, str(e) or type(e).__name__) from e

        if response.is_error:
            message = _error_message(response)
            logger.debug("%s %s -> %d: %s", method, path, response.status_code, message)
            raise AiBackendError(message, status_code=response.status_code)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise AiBackendError("Backend returned a malformed (non-JSON) response.") from e
        if not isinstance(data, dict):
            raise AiBackendError("Backend returned a malformed response.")
        return data

    async def health(self) -> HealthStatus:
        """GET /health -> {ok, service}."""
        response = await self._request("GET", "/health", timeout=HEALTH_TIMEOUT)
        data = self._json(response)
        if not data.get("ok"):
            raise AiBackendError("AI backend health check returned not ok.")
        service = data.get("service")
        return HealthStatus(ok=True, service=service if isinstance(service, str) else None)

    async def transcribe(self, audio_location: str) -> str:
        """POST /transcribe (multipart field 'file') -> transcript text."""
        path = _audio_path(audio_location)
        if not path.is_file():
            raise PreconditionError(f"Audio file not found: {path}")
        content = await asyncio.to_thread(path.read_bytes)
        content_type = mimetypes.guess_type(path.name)[0] or DEFAULT_AUDIO_TYPE

        response = await self._request(
            "POST", "/transcribe",
            files={"file": (path.name, content, content_type)},
        )
        data = self._json(response)
        transcript = data.get("transcript") or data.get("text") or ""
        transcript = str(transcript).strip()
        if not transcript:
            raise AiBackendError("Backend returned empty transcript.")
        return transcript

    async def summarize(self, transcript: str) -> SummaryResult:
        """POST /summarize {transcript} -> title and up to five bullets."""
        response = await self._request("POST", "/summarize", json={"transcript": transcript})
        data = self._json(response)

        title = str(data.get("title") or "").strip()
        raw_bullets = data.get("bullets")
        if raw_bullets is not None and not isinstance(raw_bullets, list):
            raise AiBackendError("Backend returned malformed summary bullets.")
        bullets = [str(item).strip() for item in raw_bullets or []]
        bullets = [b for b in bullets if b][:MAX_SUMMARY_BULLETS]

        if not title:
            raise AiBackendError("Backend returned empty summary title.")
        return SummaryResult(title=title, bullets=tuple(bullets))

    async def suggest_tags(self, transcript: str, summary: str | None = None) -> list[str]:
        """POST /tags {transcript, summary} -> short lowercase tag names.

        An empty list is a valid answer meaning "no suggestions".
        """
        payload: dict = {"transcript": transcript}
        if summary:
            payload["summary"] = summary
        response = await self._request("POST", "/tags", json=payload)
        data = self._json(response)

        tags = data.get("tags")
        if not isinstance(tags, list):
            return []
        cleaned: list[str] = []
        for tag in tags:
            name = " ".join(str(tag).split()).lower()
            if name and name not in cleaned:
                cleaned.append(name)
        return cleaned[:MAX_SUGGESTED_TAGS]

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
