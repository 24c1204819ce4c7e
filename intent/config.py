"""
Configuration for the Intent Classification Microservice

One explicit, validated configuration object covers the completion backends,
the classification cascade thresholds, retry/timeout tuning and the caches.
Every tunable has a documented default; API keys are only read from the
environment.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_DATA_PATH = str(Path(__file__).parent / "data" / "training_examples.json")

_TRUE_VALUES = ("true", "1", "yes")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in _TRUE_VALUES


@dataclass
class BackendSettings:
    """
    Connection settings for one completion backend.

    Attributes:
        name: Registry name (anthropic, gemini, openrouter, together, ollama)
        api_key: Credential; backends without one are not registered
        model: Model identifier sent to the provider
        endpoint: Base URL of the provider API
        priority: Selection rank, lower is preferred
        max_tokens: Default completion budget
        requests_per_minute: Request budget per rolling minute
        tokens_per_minute: Token budget per rolling minute
        cost_per_1k_tokens: Relative cost weight (reporting only)
    """

    name: str
    api_key: Optional[str]
    model: str
    endpoint: str
    priority: int
    max_tokens: int = 4096
    requests_per_minute: int = 60
    tokens_per_minute: int = 60000
    cost_per_1k_tokens: float = 0.0

    def __post_init__(self):
        if self.priority < 0:
            raise ValueError(f"{self.name}: priority must be >= 0, got {self.priority}")
        if self.max_tokens <= 0:
            raise ValueError(f"{self.name}: max_tokens must be positive, got {self.max_tokens}")
        if self.requests_per_minute <= 0 or self.tokens_per_minute <= 0:
            raise ValueError(f"{self.name}: rate limits must be positive")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)


def _default_backends() -> List[BackendSettings]:
    return [
        BackendSettings(
            name="together", api_key=None, model="deepseek-ai/DeepSeek-R1-Distill-Llama-70B",
            endpoint="https://api.together.xyz/v1", priority=1, max_tokens=4096,
            requests_per_minute=60, tokens_per_minute=100000, cost_per_1k_tokens=0.0009,
        ),
        BackendSettings(
            name="gemini", api_key=None, model="gemini-2.5-flash-lite",
            endpoint="https://generativelanguage.googleapis.com", priority=2, max_tokens=8192,
            requests_per_minute=60, tokens_per_minute=60000, cost_per_1k_tokens=0.0001,
        ),
        BackendSettings(
            name="openrouter", api_key=None, model="meta-llama/llama-3.1-8b-instruct:free",
            endpoint="https://openrouter.ai/api/v1", priority=3, max_tokens=4096,
            requests_per_minute=20, tokens_per_minute=20000, cost_per_1k_tokens=0.0,
        ),
        BackendSettings(
            name="anthropic", api_key=None, model="claude-3-5-haiku-latest",
            endpoint="https://api.anthropic.com/v1", priority=4, max_tokens=4096,
            requests_per_minute=1000, tokens_per_minute=100000, cost_per_1k_tokens=0.001,
        ),
    ]


@dataclass
class IntentConfig:
    """
    Configuration for the Intent Classification service.

    Attributes:
        backends: Completion backend settings (credentials may be empty)
        ollama_enabled: Register the local Ollama backend (default: False)
        ollama_url: Ollama base URL (default: http://localhost:11434)
        ollama_model: Ollama model name (default: llama3.2:3b)
        warmup_enabled: Warm backends at startup (default: False)
        warmup_models: Backend names to warm; empty means all (default: [])
        warmup_timeout: Whole warm-up budget in seconds (default: 60.0)
        inference_timeout: Per-attempt completion timeout (default: 30.0)
        classification_timeout: Race budget for the cascade's completion call (default: 1.0)
        slot_refinement_timeout: Budget for completion-assisted slot refinement (default: 2.0)
        retry_attempts: Attempts per backend (default: 3)
        retry_base_delay: First backoff delay in seconds (default: 1.0)
        retry_max_delay: Backoff cap in seconds (default: 10.0)
        max_retry_after: Largest server retry-after hint honoured locally (default: 30.0)
        backend_cooldown: Seconds a failed backend stays excluded (default: 60.0)
        cache_max_size: Classification cache capacity (default: 500)
        cache_ttl_seconds: Classification cache TTL (default: 1800)
        completion_cache_max_size: Completion cache capacity (default: 1000)
        completion_cache_ttl_seconds: Completion cache TTL (default: 3600)
        knn_acceptance_threshold: Nearest-neighbor confidence that short-circuits the cascade (default: 0.85)
        confirmation_threshold: Results below this need user confirmation (default: 0.65)
        slot_ambiguity_threshold: Below this, slot refinement is attempted (default: 0.7)
        training_data_path: Bulk labeled-example dataset (default: bundled JSON)
        redis_url: Redis URL for the prediction/correction log
        store_max_entries: Length cap for each Redis log list (default: 10000)
        log_classifications: Log every classification (default: True)
    """

    backends: List[BackendSettings] = field(default_factory=_default_backends)
    ollama_enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:3b"
    warmup_enabled: bool = False
    warmup_models: List[str] = field(default_factory=list)
    warmup_timeout: float = 60.0
    inference_timeout: float = 30.0
    classification_timeout: float = 1.0
    slot_refinement_timeout: float = 2.0
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    max_retry_after: float = 30.0
    backend_cooldown: float = 60.0
    cache_max_size: int = 500
    cache_ttl_seconds: float = 1800.0
    completion_cache_max_size: int = 1000
    completion_cache_ttl_seconds: float = 3600.0
    knn_acceptance_threshold: float = 0.85
    confirmation_threshold: float = 0.65
    slot_ambiguity_threshold: float = 0.7
    training_data_path: Optional[str] = DEFAULT_TRAINING_DATA_PATH
    redis_url: str = "redis://localhost:6379"
    store_max_entries: int = 10000
    log_classifications: bool = True

    def __post_init__(self):
        """Validate configuration after initialization"""
        for name in ("knn_acceptance_threshold", "confirmation_threshold", "slot_ambiguity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0, got {value}")

        for name in (
            "warmup_timeout", "inference_timeout", "classification_timeout",
            "slot_refinement_timeout", "backend_cooldown",
            "cache_ttl_seconds", "completion_cache_ttl_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")

        if self.retry_base_delay < 0:
            raise ValueError(f"retry_base_delay must be >= 0, got {self.retry_base_delay}")

        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError(
                f"retry_max_delay ({self.retry_max_delay}) must be >= retry_base_delay ({self.retry_base_delay})"
            )

        if self.max_retry_after < 0:
            raise ValueError(f"max_retry_after must be >= 0, got {self.max_retry_after}")

        for name in ("cache_max_size", "completion_cache_max_size", "store_max_entries"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        names = [b.name for b in self.backends]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate backend names: {names}")

        if not self.configured_backends and not self.ollama_enabled:
            logger.warning(
                "⚠️ No completion backend credentials set. Classification will rely on "
                "the nearest-neighbor index and rule-based fallback only."
            )

        if self.log_classifications:
            logger.info(
                f"IntentConfig loaded: backends={self.configured_backends}, "
                f"ollama={self.ollama_enabled}, knn_threshold={self.knn_acceptance_threshold}, "
                f"race_timeout={self.classification_timeout}s, inference_timeout={self.inference_timeout}s, "
                f"retries={self.retry_attempts}, cache={self.cache_max_size}/{self.cache_ttl_seconds}s"
            )

    @property
    def configured_backends(self) -> List[str]:
        return [b.name for b in self.backends if b.has_credentials]

    def backend(self, name: str) -> Optional[BackendSettings]:
        for settings in self.backends:
            if settings.name == name:
                return settings
        return None

    @staticmethod
    def from_env() -> "IntentConfig":
        """
        Load configuration from environment variables.

        Environment Variables:
            ANTHROPIC_API_KEY / ANTHROPIC_MODEL / ANTHROPIC_PRIORITY
            GEMINI_API_KEY / GEMINI_MODEL / GEMINI_PRIORITY
            OPENROUTER_API_KEY / OPENROUTER_MODEL / OPENROUTER_PRIORITY
            TOGETHER_API_KEY / TOGETHER_MODEL / TOGETHER_PRIORITY
            <NAME>_ENDPOINT: Override a backend base URL
            OLLAMA_ENABLED / OLLAMA_URL / OLLAMA_MODEL: Local backend (default: disabled)
            INTENT_WARMUP_ENABLED: Warm backends at startup (default: false)
            INTENT_WARMUP_MODELS: Comma-separated backend names to warm (default: all)
            INTENT_WARMUP_TIMEOUT: Warm-up budget in seconds (default: 60)
            INTENT_INFERENCE_TIMEOUT: Per-attempt completion timeout (default: 30)
            INTENT_CLASSIFICATION_TIMEOUT: Cascade race timeout (default: 1.0)
            INTENT_SLOT_REFINEMENT_TIMEOUT: Slot refinement budget (default: 2.0)
            INTENT_RETRY_ATTEMPTS: Attempts per backend (default: 3)
            INTENT_RETRY_BASE_DELAY: First backoff delay (default: 1.0)
            INTENT_RETRY_MAX_DELAY: Backoff cap (default: 10.0)
            INTENT_MAX_RETRY_AFTER: Largest retry-after hint honoured (default: 30)
            INTENT_BACKEND_COOLDOWN: Unhealthy backend cool-down (default: 60)
            INTENT_CACHE_MAX_SIZE / INTENT_CACHE_TTL: Classification cache (default: 500 / 1800)
            INTENT_COMPLETION_CACHE_MAX_SIZE / INTENT_COMPLETION_CACHE_TTL (default: 1000 / 3600)
            INTENT_KNN_THRESHOLD: Nearest-neighbor acceptance threshold (default: 0.85)
            INTENT_CONFIRMATION_THRESHOLD: Needs-confirmation threshold (default: 0.65)
            INTENT_SLOT_AMBIGUITY_THRESHOLD: Slot refinement threshold (default: 0.7)
            INTENT_TRAINING_DATA_PATH: Labeled-example dataset (default: bundled)
            REDIS_URL: Redis URL (default: redis://localhost:6379)
            INTENT_STORE_MAX_ENTRIES: Per-list cap for Redis logs (default: 10000)
            INTENT_LOG_CLASSIFICATIONS: Log classifications (default: true)

        Returns:
            IntentConfig instance loaded from environment
        """
        backends = []
        for defaults in _default_backends():
            prefix = defaults.name.upper()
            backends.append(
                BackendSettings(
                    name=defaults.name,
                    api_key=os.getenv(f"{prefix}_API_KEY") or None,
                    model=os.getenv(f"{prefix}_MODEL", defaults.model),
                    endpoint=os.getenv(f"{prefix}_ENDPOINT", defaults.endpoint),
                    priority=_int_env(f"{prefix}_PRIORITY", defaults.priority),
                    max_tokens=_int_env(f"{prefix}_MAX_TOKENS", defaults.max_tokens),
                    requests_per_minute=_int_env(f"{prefix}_RPM", defaults.requests_per_minute),
                    tokens_per_minute=_int_env(f"{prefix}_TPM", defaults.tokens_per_minute),
                    cost_per_1k_tokens=defaults.cost_per_1k_tokens,
                )
            )

        warmup_models_env = os.getenv("INTENT_WARMUP_MODELS", "")
        warmup_models = [m.strip() for m in warmup_models_env.split(",") if m.strip()]

        return IntentConfig(
            backends=backends,
            ollama_enabled=_bool_env("OLLAMA_ENABLED", False),
            ollama_url=os.getenv("OLLAMA_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.2:3b"),
            warmup_enabled=_bool_env("INTENT_WARMUP_ENABLED", False),
            warmup_models=warmup_models,
            warmup_timeout=_float_env("INTENT_WARMUP_TIMEOUT", 60.0),
            inference_timeout=_float_env("INTENT_INFERENCE_TIMEOUT", 30.0),
            classification_timeout=_float_env("INTENT_CLASSIFICATION_TIMEOUT", 1.0),
            slot_refinement_timeout=_float_env("INTENT_SLOT_REFINEMENT_TIMEOUT", 2.0),
            retry_attempts=_int_env("INTENT_RETRY_ATTEMPTS", 3),
            retry_base_delay=_float_env("INTENT_RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_float_env("INTENT_RETRY_MAX_DELAY", 10.0),
            max_retry_after=_float_env("INTENT_MAX_RETRY_AFTER", 30.0),
            backend_cooldown=_float_env("INTENT_BACKEND_COOLDOWN", 60.0),
            cache_max_size=_int_env("INTENT_CACHE_MAX_SIZE", 500),
            cache_ttl_seconds=_float_env("INTENT_CACHE_TTL", 1800.0),
            completion_cache_max_size=_int_env("INTENT_COMPLETION_CACHE_MAX_SIZE", 1000),
            completion_cache_ttl_seconds=_float_env("INTENT_COMPLETION_CACHE_TTL", 3600.0),
            knn_acceptance_threshold=_float_env("INTENT_KNN_THRESHOLD", 0.85),
            confirmation_threshold=_float_env("INTENT_CONFIRMATION_THRESHOLD", 0.65),
            slot_ambiguity_threshold=_float_env("INTENT_SLOT_AMBIGUITY_THRESHOLD", 0.7),
            training_data_path=os.getenv("INTENT_TRAINING_DATA_PATH", DEFAULT_TRAINING_DATA_PATH) or None,
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            store_max_entries=_int_env("INTENT_STORE_MAX_ENTRIES", 10000),
            log_classifications=_bool_env("INTENT_LOG_CLASSIFICATIONS", True),
        )
