"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from contentgen.ai.adaptive import AdaptiveConfig
from contentgen.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_PREFIX = "CONTENTGEN_"
_GENERATOR_PROVIDERS = {"ollama", "openai"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the generation engine."""

  environment: str
  debug: bool
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  redis_url: str
  qdrant_url: str
  qdrant_api_key: str | None
  embedding_dim: int
  generator_provider: str
  generator_model: str
  generator_base_url: str | None
  generator_api_key: str | None
  embedding_provider: str
  embedding_model: str
  embedding_base_url: str | None
  tavily_api_key: str | None
  search_max_results: int
  generation_timeout_seconds: float
  embedding_timeout_seconds: float
  similarity_timeout_seconds: float
  call_max_attempts: int
  generation_max_tokens: int
  min_item_chars: int
  worker_concurrency: int
  worker_poll_interval_seconds: float
  recover_active_on_start: bool
  job_lease_seconds: float
  job_max_attempts: int
  job_retry_base_seconds: float
  job_retry_max_seconds: float
  persistence_max_attempts: int
  retention_completed_age_seconds: int
  retention_completed_count: int
  retention_failed_age_seconds: int
  retention_sweep_interval_seconds: float
  rate_limit_capacity: int
  rate_limit_window_seconds: float
  rate_limit_wait_seconds: float
  breaker_failure_threshold: int
  breaker_timeout_seconds: float
  breaker_success_threshold: int
  backoff_base_seconds: float
  backoff_max_seconds: float
  cache_ttl_seconds: int
  cache_semantic_threshold: float
  cache_collection: str
  corpus_collection: str
  curriculum_collection: str
  session_threshold_offset: float
  corpus_threshold_offset: float
  adaptive: AdaptiveConfig = field(default_factory=AdaptiveConfig)

  @property
  def rate_limit_refill_per_second(self) -> float:
    return self.rate_limit_capacity / self.rate_limit_window_seconds


def _env(name: str) -> str | None:
  return os.getenv(f"{_PREFIX}{name}")


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_bool(raw: str | None, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: int, *, allow_zero: bool = False) -> int:
  raw = _env(name)
  value = default if raw is None or raw.strip() == "" else int(raw)
  if value < 0 or (value == 0 and not allow_zero):
    qualifier = "zero or a positive integer" if allow_zero else "a positive integer"
    raise ValueError(f"{_PREFIX}{name} must be {qualifier}.")
  return value


def _positive_float(name: str, default: float) -> float:
  raw = _env(name)
  value = default if raw is None or raw.strip() == "" else float(raw)
  if value <= 0:
    raise ValueError(f"{_PREFIX}{name} must be a positive number.")
  return value


def _unit_float(name: str, default: float) -> float:
  raw = _env(name)
  value = default if raw is None or raw.strip() == "" else float(raw)
  if not 0.0 < value <= 1.0:
    raise ValueError(f"{_PREFIX}{name} must be within (0, 1].")
  return value


def _offset(name: str) -> float:
  raw = _env(name)
  value = 0.0 if raw is None or raw.strip() == "" else float(raw)
  if abs(value) > 0.2:
    raise ValueError(f"{_PREFIX}{name} must be within [-0.2, 0.2].")
  return value


def _load_adaptive() -> AdaptiveConfig:
  """Build the adaptive controller constants, keeping the tuned defaults unless overridden."""
  defaults = AdaptiveConfig()
  raw_per_item = _env("SATURATION_PER_ITEM")
  saturation_per_item = defaults.saturation_per_item if not raw_per_item else float(raw_per_item)
  if saturation_per_item < 0:
    raise ValueError(f"{_PREFIX}SATURATION_PER_ITEM must be zero or positive.")
  return AdaptiveConfig(
    soft_stall=_positive_int("ADAPTIVE_SOFT_STALL", defaults.soft_stall),
    soft_relaxation=_unit_float("ADAPTIVE_SOFT_RELAXATION", defaults.soft_relaxation),
    hard_stall=_positive_int("ADAPTIVE_HARD_STALL", defaults.hard_stall),
    hard_relaxation=_unit_float("ADAPTIVE_HARD_RELAXATION", defaults.hard_relaxation),
    saturation_limit=_positive_int("SATURATION_LIMIT", defaults.saturation_limit),
    saturation_per_item=saturation_per_item,
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = (_env("ENV") or "development").strip().lower()
  debug = _parse_bool(_env("DEBUG"))

  generator_provider = (_env("GENERATOR_PROVIDER") or "ollama").strip().lower()
  if generator_provider not in _GENERATOR_PROVIDERS:
    raise ValueError(f"{_PREFIX}GENERATOR_PROVIDER must be one of: {', '.join(sorted(_GENERATOR_PROVIDERS))}.")

  embedding_provider = (_env("EMBEDDING_PROVIDER") or generator_provider).strip().lower()
  if embedding_provider not in _GENERATOR_PROVIDERS:
    raise ValueError(f"{_PREFIX}EMBEDDING_PROVIDER must be one of: {', '.join(sorted(_GENERATOR_PROVIDERS))}.")

  generator_api_key = _optional_str(_env("GENERATOR_API_KEY")) or _optional_str(os.getenv("OPENAI_API_KEY"))
  # The OpenAI-compatible client cannot start without a key; fail at load time rather than on the first job.
  if "openai" in {generator_provider, embedding_provider} and not generator_api_key:
    raise ValueError(f"{_PREFIX}GENERATOR_API_KEY (or OPENAI_API_KEY) must be set for the openai provider.")

  cache_semantic_threshold = _unit_float("CACHE_SEMANTIC_THRESHOLD", 0.85)
  job_retry_base_seconds = _positive_float("JOB_RETRY_BASE_SECONDS", 2.0)
  job_retry_max_seconds = _positive_float("JOB_RETRY_MAX_SECONDS", 60.0)
  if job_retry_max_seconds < job_retry_base_seconds:
    raise ValueError(f"{_PREFIX}JOB_RETRY_MAX_SECONDS must be at least {_PREFIX}JOB_RETRY_BASE_SECONDS.")

  worker_poll_interval_seconds = _positive_float("WORKER_POLL_INTERVAL_SECONDS", 2.0)
  job_lease_seconds = _positive_float("JOB_LEASE_SECONDS", 120.0)
  # Leases are renewed from the dispatch loop, which may sleep a full poll interval.
  if job_lease_seconds < 3 * worker_poll_interval_seconds:
    raise ValueError(f"{_PREFIX}JOB_LEASE_SECONDS must be at least three times {_PREFIX}WORKER_POLL_INTERVAL_SECONDS.")

  backoff_base_seconds = _positive_float("BACKOFF_BASE_SECONDS", 1.0)
  backoff_max_seconds = _positive_float("BACKOFF_MAX_SECONDS", 32.0)
  if backoff_max_seconds < backoff_base_seconds:
    raise ValueError(f"{_PREFIX}BACKOFF_MAX_SECONDS must be at least {_PREFIX}BACKOFF_BASE_SECONDS.")

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=(_env("LOG_DIR") or "./logs").strip(),
    log_max_bytes=_positive_int("LOG_MAX_BYTES", 5 * 1024 * 1024),
    log_backup_count=_positive_int("LOG_BACKUP_COUNT", 10, allow_zero=True),
    pg_dsn=_optional_str(_env("PG_DSN")) or _optional_str(os.getenv("DATABASE_URL")),
    pg_connect_timeout=_positive_int("PG_CONNECT_TIMEOUT", 5),
    redis_url=(_env("REDIS_URL") or "redis://localhost:6379/0").strip(),
    qdrant_url=(_env("QDRANT_URL") or "http://localhost:6333").strip(),
    qdrant_api_key=_optional_str(_env("QDRANT_API_KEY")),
    embedding_dim=_positive_int("EMBEDDING_DIM", 768),
    generator_provider=generator_provider,
    generator_model=(_env("GENERATOR_MODEL") or "llama3.1").strip(),
    generator_base_url=_optional_str(_env("GENERATOR_BASE_URL")),
    generator_api_key=generator_api_key,
    embedding_provider=embedding_provider,
    embedding_model=(_env("EMBEDDING_MODEL") or "nomic-embed-text").strip(),
    embedding_base_url=_optional_str(_env("EMBEDDING_BASE_URL")),
    tavily_api_key=_optional_str(_env("TAVILY_API_KEY")) or _optional_str(os.getenv("TAVILY_API_KEY")),
    search_max_results=_positive_int("SEARCH_MAX_RESULTS", 5),
    generation_timeout_seconds=_positive_float("GENERATION_TIMEOUT_SECONDS", 60.0),
    embedding_timeout_seconds=_positive_float("EMBEDDING_TIMEOUT_SECONDS", 15.0),
    similarity_timeout_seconds=_positive_float("SIMILARITY_TIMEOUT_SECONDS", 10.0),
    call_max_attempts=_positive_int("CALL_MAX_ATTEMPTS", 3),
    generation_max_tokens=_positive_int("GENERATION_MAX_TOKENS", 1024),
    min_item_chars=_positive_int("MIN_ITEM_CHARS", 10),
    worker_concurrency=_positive_int("WORKER_CONCURRENCY", 2),
    worker_poll_interval_seconds=worker_poll_interval_seconds,
    recover_active_on_start=_parse_bool(_env("RECOVER_ACTIVE_ON_START"), default=True),
    job_lease_seconds=job_lease_seconds,
    job_max_attempts=_positive_int("JOB_MAX_ATTEMPTS", 3),
    job_retry_base_seconds=job_retry_base_seconds,
    job_retry_max_seconds=job_retry_max_seconds,
    persistence_max_attempts=_positive_int("PERSISTENCE_MAX_ATTEMPTS", 3),
    retention_completed_age_seconds=_positive_int("RETENTION_COMPLETED_AGE_SECONDS", 24 * 3600),
    retention_completed_count=_positive_int("RETENTION_COMPLETED_COUNT", 1000),
    retention_failed_age_seconds=_positive_int("RETENTION_FAILED_AGE_SECONDS", 7 * 24 * 3600),
    retention_sweep_interval_seconds=_positive_float("RETENTION_SWEEP_INTERVAL_SECONDS", 300.0),
    rate_limit_capacity=_positive_int("RATE_LIMIT_CAPACITY", 10),
    rate_limit_window_seconds=_positive_float("RATE_LIMIT_WINDOW_SECONDS", 60.0),
    rate_limit_wait_seconds=_positive_float("RATE_LIMIT_WAIT_SECONDS", 30.0),
    breaker_failure_threshold=_positive_int("BREAKER_FAILURE_THRESHOLD", 5),
    breaker_timeout_seconds=_positive_float("BREAKER_TIMEOUT_SECONDS", 60.0),
    breaker_success_threshold=_positive_int("BREAKER_SUCCESS_THRESHOLD", 2),
    backoff_base_seconds=backoff_base_seconds,
    backoff_max_seconds=backoff_max_seconds,
    cache_ttl_seconds=_positive_int("CACHE_TTL_SECONDS", 7 * 24 * 3600),
    cache_semantic_threshold=cache_semantic_threshold,
    cache_collection=(_env("CACHE_COLLECTION") or "curriculum-searches").strip(),
    corpus_collection=(_env("CORPUS_COLLECTION") or "generated-items").strip(),
    curriculum_collection=(_env("CURRICULUM_COLLECTION") or "curriculum-drafts").strip(),
    session_threshold_offset=_offset("SESSION_THRESHOLD_OFFSET"),
    corpus_threshold_offset=_offset("CORPUS_THRESHOLD_OFFSET"),
    adaptive=_load_adaptive(),
  )
