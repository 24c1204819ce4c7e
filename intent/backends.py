"""
Completion backends for the Completion Router.

Each backend owns its health flag, its rolling-minute usage counters and its
rate budget. Provider-specific adapters translate one uniform
CompletionRequest into a provider call and map the provider's response shape
back onto a uniform CompletionResponse.

Providers:
    - AnthropicBackend: Anthropic Messages API over httpx
    - GeminiBackend: google.generativeai SDK (blocking, run in a thread)
    - OpenAICompatibleBackend: OpenRouter / Together chat completions over httpx
    - OllamaBackend: local Ollama /api/chat, no credentials required
"""

import time
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import google.generativeai as genai

from .config import BackendSettings, IntentConfig
from .retry import parse_retry_after

logger = logging.getLogger(__name__)

USAGE_WINDOW_SECONDS = 60.0
RATE_LIMIT_PENALTY = 0.8

COMPLEXITY_LEVELS = ("low", "medium", "high")


class BackendError(Exception):
    """
    Uniform error raised by a backend adapter.

    Attributes:
        backend: Backend name
        status_code: Provider HTTP status, when known
        retry_after: Server-advised retry delay in seconds, when provided
    """

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass
class CompletionRequest:
    prompt: str
    system_prompt: Optional[str] = None
    temperature: float = 0.3
    max_tokens: Optional[int] = None
    response_format: str = "text"
    complexity: str = "medium"

    def __post_init__(self):
        if self.complexity not in COMPLEXITY_LEVELS:
            raise ValueError(f"complexity must be one of {COMPLEXITY_LEVELS}, got {self.complexity!r}")
        if self.response_format not in ("text", "json"):
            raise ValueError(f"response_format must be 'text' or 'json', got {self.response_format!r}")


@dataclass
class CompletionResponse:
    content: str
    backend_name: str
    model_name: str
    tokens_used: int
    response_time: float
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "backend_name": self.backend_name,
            "model_name": self.model_name,
            "tokens_used": self.tokens_used,
            "response_time": round(self.response_time, 4),
            "cached": self.cached,
        }


@dataclass
class BackendUsage:
    requests: int = 0
    tokens: int = 0
    last_reset: float = 0.0


class Backend(ABC):
    """
    Base class for an interchangeable completion backend.

    Health is a circuit-breaker flag: ``mark_unhealthy`` excludes the backend
    until a cool-down deadline, after which it heals on the next read.
    """

    requires_api_key = True

    def __init__(self, settings: BackendSettings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self._clock = clock
        self.usage = BackendUsage(last_reset=clock())
        self._unhealthy_until: Optional[float] = None
        self.last_error: Optional[str] = None
        self.total_requests = 0
        self.total_failures = 0
        self.total_tokens = 0

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def model(self) -> str:
        return self.settings.model

    @property
    def priority(self) -> int:
        return self.settings.priority

    @property
    def has_credentials(self) -> bool:
        return self.settings.has_credentials or not self.requires_api_key

    @property
    def healthy(self) -> bool:
        if self._unhealthy_until is None:
            return True
        if self._clock() >= self._unhealthy_until:
            self._unhealthy_until = None
            logger.info(f"💚 Backend {self.name} cool-down elapsed, marked healthy")
            return True
        return False

    def mark_unhealthy(self, cooldown: float, error: Optional[BaseException] = None) -> None:
        self._unhealthy_until = self._clock() + cooldown
        if error is not None:
            self.last_error = str(error)
        logger.warning(f"💔 Backend {self.name} marked unhealthy for {cooldown:.0f}s")

    def mark_healthy(self) -> None:
        self._unhealthy_until = None

    def reset_usage_if_stale(self) -> bool:
        now = self._clock()
        if now - self.usage.last_reset > USAGE_WINDOW_SECONDS:
            self.usage = BackendUsage(last_reset=now)
            return True
        return False

    def within_rate_budget(self) -> bool:
        return (
            self.usage.requests < self.settings.requests_per_minute
            and self.usage.tokens < self.settings.tokens_per_minute
        )

    def is_available(self) -> bool:
        return self.healthy and self.has_credentials and self.within_rate_budget()

    def record_usage(self, tokens: int) -> None:
        self.usage.requests += 1
        self.usage.tokens += max(0, tokens)
        self.total_tokens += max(0, tokens)

    def apply_rate_limit_penalty(self) -> None:
        """Push the request counter close to the budget after a provider 429."""
        floor = int(self.settings.requests_per_minute * RATE_LIMIT_PENALTY)
        self.usage.requests = max(self.usage.requests, floor)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        start = time.perf_counter()
        self.total_requests += 1
        try:
            content, tokens = await self._invoke(request)
        except Exception:
            self.total_failures += 1
            raise
        return CompletionResponse(
            content=content,
            backend_name=self.name,
            model_name=self.model,
            tokens_used=tokens,
            response_time=time.perf_counter() - start,
        )

    @abstractmethod
    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        """Call the provider and return (content, tokens_used)."""

    def _max_tokens(self, request: CompletionRequest) -> int:
        return min(request.max_tokens or self.settings.max_tokens, self.settings.max_tokens)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "model": self.model,
            "priority": self.priority,
            "healthy": self.healthy,
            "available": self.is_available(),
            "usage": {
                "requests": self.usage.requests,
                "tokens": self.usage.tokens,
                "requests_per_minute": self.settings.requests_per_minute,
                "tokens_per_minute": self.settings.tokens_per_minute,
            },
            "total_requests": self.total_requests,
            "total_failures": self.total_failures,
            "total_tokens": self.total_tokens,
            "cost_per_1k_tokens": self.settings.cost_per_1k_tokens,
            "last_error": self.last_error,
        }


class HTTPBackend(Backend):
    """Backend reached through a shared httpx.AsyncClient."""

    def __init__(
        self,
        settings: BackendSettings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(settings, clock)
        self.http_client = http_client

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.http_client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise BackendError(f"{self.name} request timed out: {e}", backend=self.name) from e
        except httpx.HTTPError as e:
            raise BackendError(f"{self.name} network error: {e}", backend=self.name) from e

        if response.status_code >= 400:
            raise BackendError(
                f"{self.name} HTTP {response.status_code}: {response.text[:200]}",
                backend=self.name,
                status_code=response.status_code,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"{self.name} returned non-JSON body", backend=self.name) from e

    def _messages(self, request: CompletionRequest) -> List[Dict[str, str]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return messages


class AnthropicBackend(HTTPBackend):
    API_VERSION = "2023-06-01"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.settings.api_key or "",
            "anthropic-version": self.API_VERSION,
        }

    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self._max_tokens(request),
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        data = await self._post_json(f"{self.settings.endpoint}/messages", payload)
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> Tuple[str, int]:
        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = data.get("usage") or {}
        tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
        return text, tokens


class OpenAICompatibleBackend(HTTPBackend):
    """OpenRouter, Together and any other /chat/completions provider."""

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }
        if self.name == "openrouter":
            headers["X-Title"] = "Assistant Intent Service"
        return headers

    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        payload = {
            "model": self.model,
            "messages": self._messages(request),
            "temperature": request.temperature,
            "max_tokens": self._max_tokens(request),
        }
        data = await self._post_json(f"{self.settings.endpoint}/chat/completions", payload)
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> Tuple[str, int]:
        choices = data.get("choices") or []
        if not choices:
            raise BackendError("Completion response contained no choices")
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return message.get("content") or "", int(usage.get("total_tokens", 0))


class OllamaBackend(HTTPBackend):
    requires_api_key = False

    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._messages(request),
            "stream": False,
            "options": {
                "temperature": request.temperature,
                "num_predict": self._max_tokens(request),
            },
        }
        if request.response_format == "json":
            payload["format"] = "json"
        data = await self._post_json(f"{self.settings.endpoint}/api/chat", payload)
        return self.parse_response(data)

    @staticmethod
    def parse_response(data: Dict[str, Any]) -> Tuple[str, int]:
        message = data.get("message") or {}
        tokens = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))
        return message.get("content") or "", tokens


class GeminiBackend(Backend):
    """Gemini through the google.generativeai SDK, offloaded to a worker thread."""

    def __init__(self, settings: BackendSettings, clock: Callable[[], float] = time.monotonic):
        super().__init__(settings, clock)
        genai.configure(api_key=settings.api_key)
        logger.info(f"✅ Gemini backend configured: {settings.model}")

    async def _invoke(self, request: CompletionRequest) -> Tuple[str, int]:
        model = genai.GenerativeModel(
            model_name=self.model,
            system_instruction=request.system_prompt or None,
        )
        generation_config = genai.GenerationConfig(
            temperature=request.temperature,
            max_output_tokens=self._max_tokens(request),
            response_mime_type="application/json" if request.response_format == "json" else "text/plain",
        )
        try:
            response = await asyncio.to_thread(
                model.generate_content,
                request.prompt,
                generation_config=generation_config,
            )
        except Exception as e:
            status = getattr(e, "code", None)
            raise BackendError(
                f"gemini error: {e}",
                backend=self.name,
                status_code=status if isinstance(status, int) else None,
            ) from e
        return self.parse_response(response)

    @staticmethod
    def parse_response(response: Any) -> Tuple[str, int]:
        try:
            text = response.text
        except ValueError as e:
            # Raised by the SDK when the candidate was blocked or empty
            raise BackendError(f"gemini returned no text: {e}", backend="gemini") from e
        usage = getattr(response, "usage_metadata", None)
        tokens = int(getattr(usage, "total_token_count", 0) or 0)
        return text or "", tokens


HTTP_BACKENDS = {
    "anthropic": AnthropicBackend,
    "openrouter": OpenAICompatibleBackend,
    "together": OpenAICompatibleBackend,
}


def build_backends(
    config: IntentConfig,
    http_client: httpx.AsyncClient,
    clock: Callable[[], float] = time.monotonic,
) -> List[Backend]:
    """
    Instantiate every backend that can actually be called.

    Backends without credentials are skipped; the local Ollama backend is
    added only when enabled.
    """
    backends: List[Backend] = []
    for settings in config.backends:
        if not settings.has_credentials:
            logger.info(f"ℹ️ Skipping backend {settings.name}: no API key configured")
            continue
        if settings.name == "gemini":
            backends.append(GeminiBackend(settings, clock=clock))
        else:
            backend_cls = HTTP_BACKENDS.get(settings.name, OpenAICompatibleBackend)
            backends.append(backend_cls(settings, http_client, clock=clock))

    if config.ollama_enabled:
        ollama_settings = BackendSettings(
            name="ollama",
            api_key=None,
            model=config.ollama_model,
            endpoint=config.ollama_url.rstrip("/"),
            priority=5,
            max_tokens=2048,
            requests_per_minute=1000,
            tokens_per_minute=1000000,
            cost_per_1k_tokens=0.0,
        )
        backends.append(OllamaBackend(ollama_settings, http_client, clock=clock))

    logger.info(f"✅ Registered completion backends: {[b.name for b in backends]}")
    return backends
