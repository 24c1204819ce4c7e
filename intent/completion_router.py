"""
Completion Router - resilient multi-backend text completion

Routes a CompletionRequest to one of several interchangeable backends:

1. Memoized responses are served from a bounded cache.
2. Eligible backends (healthy, credentialed, under rate budget) are ordered
   by priority, with a complexity-based preference for the primary.
3. Each backend call runs with bounded retry (exponential backoff + jitter)
   and a per-attempt inference timeout.
4. A backend whose retries are exhausted is marked unhealthy for a fixed
   cool-down and the next backend in the chain is tried.

Callers only see an error once the whole chain is exhausted.
"""

import time
import asyncio
import hashlib
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from shared.observability import record_backend_call

from .backends import Backend, BackendError, CompletionRequest, CompletionResponse, build_backends
from .cache import BoundedCache
from .config import IntentConfig
from .parsing import strip_reasoning
from .retry import RetryPolicy, execute_with_retry, extract_retry_after

logger = logging.getLogger(__name__)

CACHE_PREFIX_CHARS = 100
WARMUP_PROMPT = "Respond with: OK"

# Backends preferred as primary for a given request complexity
COMPLEXITY_PREFERENCES: Dict[str, Sequence[str]] = {
    "high": ("anthropic",),
    "low": ("openrouter", "together"),
}


class CompletionRouterError(Exception):
    """Base class for router failures visible to callers."""


class NoBackendAvailableError(CompletionRouterError):
    """No backend is healthy, credentialed and under its rate budget."""


class AllBackendsFailedError(CompletionRouterError):
    """Every backend in the fallback chain failed."""

    def __init__(self, attempted: List[str], last_error: Optional[BaseException]):
        super().__init__(
            f"All completion backends failed ({', '.join(attempted)}): {last_error}"
        )
        self.attempted = attempted
        self.last_error = last_error


class CompletionRouter:
    """
    Prioritized registry of completion backends with failover.

    Args:
        backends: Registered backends
        retry_policy: Backoff schedule applied per backend
        cache: Response cache (default: 1000 entries, 1h TTL)
        inference_timeout: Per-attempt timeout in seconds
        max_retry_after: Retry-after hints above this defer to the next backend
        backend_cooldown: Seconds a failed backend stays excluded
        http_client: Shared client, closed by ``aclose`` when owned
        sleep: Awaitable sleep used between retries (injectable for tests)
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[BoundedCache[CompletionResponse]] = None,
        inference_timeout: float = 30.0,
        warmup_timeout: float = 60.0,
        max_retry_after: float = 30.0,
        backend_cooldown: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backends: List[Backend] = list(backends)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache if cache is not None else BoundedCache(1000, 3600.0, name="completion-cache")
        self.inference_timeout = inference_timeout
        self.warmup_timeout = warmup_timeout
        self.max_retry_after = max_retry_after
        self.backend_cooldown = backend_cooldown
        self._http_client = http_client
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: IntentConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CompletionRouter":
        client = http_client or httpx.AsyncClient(timeout=config.inference_timeout)
        return cls(
            backends=build_backends(config, client, clock=clock),
            retry_policy=RetryPolicy(
                max_attempts=config.retry_attempts,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            ),
            cache=BoundedCache(
                config.completion_cache_max_size,
                config.completion_cache_ttl_seconds,
                name="completion-cache",
                clock=clock,
            ),
            inference_timeout=config.inference_timeout,
            warmup_timeout=config.warmup_timeout,
            max_retry_after=config.max_retry_after,
            backend_cooldown=config.backend_cooldown,
            http_client=client,
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(request: CompletionRequest) -> str:
        raw = f"{request.complexity}:{request.prompt[:CACHE_PREFIX_CHARS]}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def get_backend(self, name: str) -> Optional[Backend]:
        for backend in self.backends:
            if backend.name == name:
                return backend
        return None

    def eligible_backends(self) -> List[Backend]:
        for backend in self.backends:
            backend.reset_usage_if_stale()
        eligible = [b for b in self.backends if b.is_available()]
        return sorted(eligible, key=lambda b: b.priority)

    def select_chain(self, complexity: str = "medium") -> List[Backend]:
        """Primary backend first, then the remaining fallbacks in priority order."""
        eligible = self.eligible_backends()
        if not eligible:
            return []

        preferred = COMPLEXITY_PREFERENCES.get(complexity, ())
        primary = next((b for b in eligible if b.name in preferred), eligible[0])
        return [primary] + [b for b in eligible if b is not primary]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """
        Produce a completion, failing over across backends.

        Raises:
            NoBackendAvailableError: No backend is eligible
            AllBackendsFailedError: Every backend in the chain failed
        """
        key = self.cache_key(request)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Completion cache hit: {key}")
            return replace(cached, cached=True)

        chain = self.select_chain(request.complexity)
        if not chain:
            raise NoBackendAvailableError("No completion backend is currently available")

        last_error: Optional[BaseException] = None
        attempted: List[str] = []
        for backend in chain:
            attempted.append(backend.name)
            start = time.perf_counter()
            try:
                response = await self._call_backend(backend, request)
            except Exception as e:
                last_error = e
                backend.mark_unhealthy(self.backend_cooldown, e)
                record_backend_call(backend.name, "failure", time.perf_counter() - start)
                logger.warning(f"⚠️ Backend {backend.name} failed, trying next: {e}")
                continue

            record_backend_call(backend.name, "success", time.perf_counter() - start)
            response = replace(response, content=strip_reasoning(response.content))
            backend.record_usage(response.tokens_used)
            self.cache.set(key, response)
            if backend is not chain[0]:
                logger.info(f"✅ Fallback backend {backend.name} served request after {attempted[:-1]}")
            return response

        raise AllBackendsFailedError(attempted, last_error)

    async def _call_backend(self, backend: Backend, request: CompletionRequest) -> CompletionResponse:
        async def attempt() -> CompletionResponse:
            try:
                return await asyncio.wait_for(backend.complete(request), timeout=self.inference_timeout)
            except BackendError as e:
                if e.status_code == 429:
                    backend.apply_rate_limit_penalty()
                raise

        def retry_condition(error: BaseException, attempt_number: int) -> bool:
            if not backend.healthy:
                logger.info(f"Not retrying {backend.name}: marked unhealthy mid-attempt")
                return False
            hint = extract_retry_after(error)
            if hint is not None and hint > self.max_retry_after:
                logger.info(
                    f"Not retrying {backend.name}: retry-after {hint:.0f}s exceeds {self.max_retry_after:.0f}s"
                )
                return False
            return True

        return await execute_with_retry(
            attempt,
            self.retry_policy,
            retry_condition=retry_condition,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Warm-up & administration
    # ------------------------------------------------------------------

    async def warm_up(self, models: Optional[Sequence[str]] = None) -> Dict[str, Dict[str, Any]]:
        """
        Send a tiny prompt to each eligible backend (or the named subset).

        Failures are logged and reported, never raised.
        """
        targets = [
            b for b in self.eligible_backends()
            if not models or b.name in models
        ]
        if not targets:
            logger.info("ℹ️ No backends to warm up")
            return {}

        warmup_request = CompletionRequest(
            prompt=WARMUP_PROMPT, max_tokens=5, temperature=0.0, complexity="low"
        )

        async def warm(backend: Backend):
            start = time.perf_counter()
            try:
                await asyncio.wait_for(backend.complete(warmup_request), timeout=self.inference_timeout)
            except Exception as e:
                logger.warning(f"⚠️ Warm-up failed for {backend.name}: {e}")
                return backend.name, {"ok": False, "error": str(e)}
            latency_ms = (time.perf_counter() - start) * 1000
            logger.info(f"🔥 Warmed {backend.name} in {latency_ms:.0f}ms")
            return backend.name, {"ok": True, "latency_ms": round(latency_ms, 1)}

        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(warm(b) for b in targets)),
                timeout=self.warmup_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Warm-up exceeded {self.warmup_timeout:.0f}s")
            return {b.name: {"ok": False, "error": "warm-up timed out"} for b in targets}
        return dict(results)

    def healthy_backends(self) -> List[str]:
        return [b.name for b in self.backends if b.healthy]

    def reset_backend_health(self, name: Optional[str] = None) -> None:
        for backend in self.backends:
            if name is None or backend.name == name:
                backend.mark_healthy()

    def get_backend_stats(self) -> Dict[str, Any]:
        return {
            "backends": {b.name: b.stats() for b in self.backends},
            "available": [b.name for b in self.eligible_backends()],
            "cache": self.cache.stats().to_dict(),
        }

    def clear_cache(self) -> int:
        return self.cache.clear()

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
