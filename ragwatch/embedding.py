"""Text embedding through an OpenAI-compatible backend.

Every request goes through a process-wide throttle and is retried with linear
backoff when the backend reports a transient failure.  For a local Ollama
server a missing model is pulled once before the client gives up.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Awaitable, Callable, TypeVar

import numpy as np
import openai
from openai import AsyncOpenAI

from ragwatch import config
from ragwatch.config import EmbeddingSettings, RetrySettings
from ragwatch.errors import ConfigurationError, EmbeddingError, TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Throttle ─────────────────────────────────────────────────────────────


class EmbeddingThrottle:
    """Minimum interval between consecutive embedding calls.

    Slots are reserved under a thread lock, so callers on any thread or event
    loop share the same rate limit.
    """

    def __init__(self, min_interval: float) -> None:
        self.min_interval = max(0.0, min_interval)
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def reserve(self) -> float:
        """Reserve the next call slot and return the seconds to wait for it."""
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
            return slot - now

    async def wait(self) -> None:
        delay = self.reserve()
        if delay > 0:
            await asyncio.sleep(delay)


_shared_throttle: EmbeddingThrottle | None = None
_shared_throttle_lock = threading.Lock()


def shared_throttle() -> EmbeddingThrottle:
    """Return the process-wide throttle used by default."""
    global _shared_throttle
    with _shared_throttle_lock:
        if _shared_throttle is None:
            _shared_throttle = EmbeddingThrottle(config.THROTTLE_MS / 1000.0)
        return _shared_throttle


# ── Retry ────────────────────────────────────────────────────────────────


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 4,
    base_delay: float = 0.15,
    increment: float = 0.15,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call *fn*, retrying ``TransientBackendError`` up to *attempts* times.

    The wait before retry ``n`` (1-based) is ``base_delay + n * increment``.
    Any other exception propagates immediately.
    """
    attempts = max(1, attempts)
    attempt = 1
    while True:
        try:
            return await fn()
        except TransientBackendError as e:
            if attempt >= attempts:
                raise
            delay = base_delay + attempt * increment
            logger.debug(
                "Transient embedding failure (attempt %d/%d): %s; retrying in %.2fs",
                attempt,
                attempts,
                e,
                delay,
            )
            await sleep(delay)
            attempt += 1


# ── Ollama helpers (pure I/O) ────────────────────────────────────────────


def _get_tags(base_url: str, timeout: float = 8.0) -> dict | None:
    """Return the parsed ``/api/tags`` listing, or None if unreachable."""
    url = base_url.rstrip("/") + "/api/tags"
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            data = json.loads(resp.read().decode())
            return data if isinstance(data, dict) else None
    except (urllib.error.URLError, OSError, ValueError):
        return None


def _has_model(tags: dict, model: str) -> bool:
    for entry in tags.get("models", []):
        name = str(entry.get("name") or entry.get("model") or "")
        if name == model or name.startswith(model + ":"):
            return True
    return False


def _pull_model(base_url: str, model: str, timeout: float = 600.0) -> bool:
    """Pull *model* synchronously; returns True once the server reports success."""
    url = base_url.rstrip("/") + "/api/pull"
    payload = json.dumps({"name": model, "stream": False}).encode()
    req = urllib.request.Request(
        url,
        data=payload,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            resp.read()
            return 200 <= resp.status < 300
    except (urllib.error.URLError, OSError):
        return False


def _not_reachable_message(base_url: str, model: str) -> str:
    return (
        f"Ollama not reachable at {base_url}\n\n"
        f"To enable embeddings for {model}:\n"
        "  • Install: https://ollama.com/download\n"
        "  • Start:   ollama serve\n"
        f"  • Pull:    ollama pull {model}"
    )


# ── Client ───────────────────────────────────────────────────────────────


class EmbeddingClient:
    """Embeds text with a single configured backend and model."""

    def __init__(
        self,
        settings: EmbeddingSettings | None = None,
        retry: RetrySettings | None = None,
        throttle: EmbeddingThrottle | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.settings = settings or config.embedding_settings()
        self.retry = retry or config.retry_settings()
        self.throttle = throttle or shared_throttle()
        self.model = self.settings.resolved_model()
        self.base_url = self.settings.resolved_base_url()
        self._client = client
        self._dimension: int | None = None
        self._provision_attempted = False
        self._provision_lock = asyncio.Lock()

    @property
    def is_local(self) -> bool:
        return self.settings.provider == "ollama"

    @property
    def dimension(self) -> int | None:
        """Length of the vectors returned so far, once known."""
        return self._dimension

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client

        provider = self.settings.provider
        if provider == "openai":
            if not self.settings.api_key:
                raise ConfigurationError(
                    "OPENAI_API_KEY missing for OpenAI embeddings. Set it, or "
                    "switch RAGWATCH_EMBED_PROVIDER to 'ollama' for local embeddings."
                )
            api_base = self.base_url
            api_key = self.settings.api_key
        elif provider == "ollama":
            api_base = self.base_url + "/v1"
            api_key = self.settings.api_key or "ollama"
        else:
            raise ConfigurationError(f"Unsupported embedding provider: {provider}")

        self._client = AsyncOpenAI(
            base_url=api_base,
            api_key=api_key,
            timeout=self.settings.timeout,
            max_retries=0,
        )
        return self._client

    async def embed(self, text: str) -> np.ndarray:
        """Return the float32 embedding of *text*."""
        return await with_retry(
            lambda: self._embed_once(text),
            attempts=self.retry.attempts,
            base_delay=self.retry.base_delay,
            increment=self.retry.increment,
        )

    async def check_backend(self) -> None:
        """Verify the backend is usable, provisioning a local model if needed."""
        if not self.is_local:
            self._get_client()
            return
        tags = await asyncio.to_thread(_get_tags, self.base_url)
        if tags is None:
            raise ConfigurationError(_not_reachable_message(self.base_url, self.model))
        if not _has_model(tags, self.model):
            await self._provision_model()

    async def _embed_once(self, text: str) -> np.ndarray:
        try:
            return await self._request(text)
        except openai.NotFoundError as e:
            if not self.is_local:
                raise ConfigurationError(
                    f"Embedding model '{self.model}' is not available at "
                    f"{self.base_url}: {e}"
                ) from e
            logger.info("Embedding model %s not available; pulling it", self.model)
            await self._provision_model()

        try:
            return await self._request(text)
        except openai.NotFoundError as e:
            raise ConfigurationError(
                f"Ollama model '{self.model}' is still unavailable after pulling it. "
                f"Try: ollama pull {self.model}"
            ) from e

    async def _provision_model(self) -> None:
        async with self._provision_lock:
            if self._provision_attempted:
                return
            self._provision_attempted = True

            pulled = await asyncio.to_thread(_pull_model, self.base_url, self.model)
            if not pulled:
                raise ConfigurationError(
                    f"Failed to pull Ollama model '{self.model}'. "
                    f"Try: ollama pull {self.model}"
                )
            tags = await asyncio.to_thread(_get_tags, self.base_url)
            if tags is None:
                raise ConfigurationError(
                    _not_reachable_message(self.base_url, self.model)
                )
            if not _has_model(tags, self.model):
                raise ConfigurationError(
                    f"Ollama model '{self.model}' still not listed after pulling it."
                )
            logger.info("Pulled embedding model %s", self.model)

    async def _request(self, text: str) -> np.ndarray:
        client = self._get_client()
        await self.throttle.wait()
        try:
            response = await client.embeddings.create(model=self.model, input=text)
        except openai.NotFoundError:
            raise
        except (openai.APIConnectionError, openai.RateLimitError) as e:
            # APITimeoutError is an APIConnectionError
            raise TransientBackendError(str(e)) from e
        except openai.InternalServerError as e:
            raise TransientBackendError(str(e)) from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise ConfigurationError(
                f"Embedding backend at {self.base_url} rejected the credentials: {e}"
            ) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientBackendError(str(e)) from e
            raise EmbeddingError(str(e)) from e

        if not response.data:
            raise EmbeddingError("Embedding backend returned no vectors")
        vector = np.asarray(response.data[0].embedding, dtype=np.float32)
        if self._dimension is None:
            self._dimension = int(vector.shape[0])
        return vector
