"""
Configuration management and loading.

Loads provider, token, plan, retry and queue settings from YAML with strict
validation. Every value the orchestrator depends on comes from here; no
limit or rate is a literal in the core modules.
"""

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import yaml

from ugc_guard.core.plans import PlanTier

KNOWN_PLATFORMS = ("tiktok", "instagram", "x", "youtube")


@dataclass(frozen=True)
class ProviderSettings:
    """Registration and pricing for one generation provider."""
    id: str
    priority: int
    enabled: bool
    model: str
    cost_per_million_input: float
    cost_per_million_output: float
    max_tokens: int
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    speed_optimized: bool = False
    premium_quality: bool = False

    def __post_init__(self):
        if self.priority < 1:
            raise ValueError(f"provider '{self.id}' priority must be >= 1")
        if self.cost_per_million_input < 0 or self.cost_per_million_output < 0:
            raise ValueError(f"provider '{self.id}' costs cannot be negative")
        if self.max_tokens <= 0:
            raise ValueError(f"provider '{self.id}' max_tokens must be > 0")


@dataclass(frozen=True)
class TokenSettings:
    """Base token envelope that per-plan allocations are scaled from."""
    base_input_tokens: int
    base_output_tokens: int
    base_cost_limit: float
    cost_per_token: float  # converts a token budget into a cost ceiling

    def __post_init__(self):
        if self.base_input_tokens <= 0 or self.base_output_tokens <= 0:
            raise ValueError("base token counts must be > 0")
        if self.base_cost_limit <= 0:
            raise ValueError("base_cost_limit must be > 0")
        if self.cost_per_token <= 0:
            raise ValueError("cost_per_token must be > 0")


@dataclass(frozen=True)
class PlanSettings:
    """Generation limits, scaling factors and entitlements for one plan."""
    daily_generations: int
    monthly_generations: int
    token_scale: float
    cost_scale: float
    trial_generations: int = 0
    trial_generations_unverified: int = 0
    trial_days: int = 0
    team_members: int = 0
    watermark: bool = False
    platforms: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.daily_generations < 0 or self.monthly_generations < 0:
            raise ValueError("generation limits cannot be negative")
        if self.token_scale <= 0 or self.cost_scale <= 0:
            raise ValueError("scaling factors must be > 0")


@dataclass(frozen=True)
class RetrySettings:
    """Retry, backoff and timeout envelope for generation attempts."""
    max_retries: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 30000
    backoff_multiplier: float = 2
    max_delay_ms: int = 30000

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays cannot be negative")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass(frozen=True)
class QueueSettings:
    """Job queue worker and polling settings."""
    workers: int = 2
    poll_interval_ms: int = 1000
    wait_timeout_ms: int = 30000
    default_attempts: int = 3
    backoff_delay_ms: int = 2000
    remove_on_complete: int = 100
    remove_on_fail: int = 50

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be > 0")
        if self.default_attempts < 1:
            raise ValueError("default_attempts must be >= 1")


@dataclass(frozen=True)
class CircuitBreakerSettings:
    """Per-provider circuit breaker thresholds."""
    failure_threshold: int = 3
    base_backoff_ms: int = 1000
    max_backoff_ms: int = 30000

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")


@dataclass(frozen=True)
class AppConfig:
    """Complete, validated configuration."""
    providers: Tuple[ProviderSettings, ...]
    tokens: TokenSettings
    plans: Dict[PlanTier, PlanSettings]
    retry: RetrySettings
    queue: QueueSettings
    circuit_breaker: CircuitBreakerSettings
    database_path: str = "ugc_guard.db"

    def get_plan(self, plan: PlanTier) -> PlanSettings:
        return self.plans[plan]

    def get_provider(self, provider_id: str) -> ProviderSettings:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        raise ValueError(f"Unknown provider: {provider_id}")


DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {"path": "ugc_guard.db"},
    "providers": [
        {
            "id": "gemini",
            "priority": 1,
            "enabled": True,
            "model": "gemini-2.0-flash",
            "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
            "api_key_env": "GEMINI_API_KEY",
            "cost_per_million_input": 0.10,
            "cost_per_million_output": 0.40,
            "max_tokens": 8192,
        },
        {
            "id": "groq",
            "priority": 2,
            "enabled": True,
            "model": "llama-3.3-70b-versatile",
            "base_url": "https://api.groq.com/openai/v1",
            "api_key_env": "GROQ_API_KEY",
            "cost_per_million_input": 0.11,
            "cost_per_million_output": 0.34,
            "max_tokens": 8192,
            "speed_optimized": True,
        },
        {
            "id": "openai",
            "priority": 3,
            "enabled": True,
            "model": "gpt-4o-mini",
            "api_key_env": "OPENAI_API_KEY",
            "cost_per_million_input": 0.15,
            "cost_per_million_output": 0.60,
            "max_tokens": 16384,
            "premium_quality": True,
        },
    ],
    "tokens": {
        "base_input_tokens": 1000,
        "base_output_tokens": 2000,
        "base_cost_limit": 0.005,
        "cost_per_token": 0.0005,
    },
    "plans": {
        "trial": {
            "daily_generations": 5,
            "monthly_generations": 15,
            "token_scale": 0.8,
            "cost_scale": 0.5,
            "trial_generations": 15,
            "trial_generations_unverified": 5,
            "trial_days": 7,
            "team_members": 0,
            "watermark": True,
            "platforms": ["tiktok"],
            "features": ["basic_generation", "basic_templates"],
        },
        "starter": {
            "daily_generations": 20,
            "monthly_generations": 50,
            "token_scale": 1.0,
            "cost_scale": 0.8,
            "team_members": 0,
            "platforms": ["tiktok", "instagram"],
            "features": [
                "basic_generation", "basic_templates",
                "advanced_templates", "export_formats",
            ],
        },
        "pro": {
            "daily_generations": 50,
            "monthly_generations": 200,
            "token_scale": 1.2,
            "cost_scale": 1.0,
            "team_members": 3,
            "platforms": ["tiktok", "instagram", "x"],
            "features": [
                "basic_generation", "basic_templates", "advanced_templates",
                "export_formats", "batch_generation", "team_collaboration",
                "performance_analytics",
            ],
        },
        "agency": {
            "daily_generations": 100,
            "monthly_generations": 500,
            "token_scale": 1.5,
            "cost_scale": 1.5,
            "team_members": 10,
            "platforms": ["tiktok", "instagram", "x", "youtube"],
            "features": [
                "basic_generation", "basic_templates", "advanced_templates",
                "export_formats", "batch_generation", "team_collaboration",
                "performance_analytics", "api_access", "white_label",
                "priority_support",
            ],
        },
    },
    "retry": {
        "max_retries": 3,
        "retry_delay_ms": 1000,
        "timeout_ms": 30000,
        "backoff_multiplier": 2,
        "max_delay_ms": 30000,
    },
    "queue": {
        "workers": 2,
        "poll_interval_ms": 1000,
        "wait_timeout_ms": 30000,
        "default_attempts": 3,
        "backoff_delay_ms": 2000,
        "remove_on_complete": 100,
        "remove_on_fail": 50,
    },
    "circuit_breaker": {
        "failure_threshold": 3,
        "base_backoff_ms": 1000,
        "max_backoff_ms": 30000,
    },
}

_PROVIDER_KEYS = {
    "id", "priority", "enabled", "model", "base_url", "api_key_env",
    "cost_per_million_input", "cost_per_million_output", "max_tokens",
    "speed_optimized", "premium_quality",
}
_PROVIDER_REQUIRED = {
    "id", "priority", "model", "cost_per_million_input",
    "cost_per_million_output", "max_tokens",
}
_PLAN_KEYS = {
    "daily_generations", "monthly_generations", "token_scale", "cost_scale",
    "trial_generations", "trial_generations_unverified", "trial_days",
    "team_members", "watermark", "platforms", "features",
}
_PLAN_REQUIRED = {"daily_generations", "monthly_generations", "token_scale", "cost_scale"}


def default_config() -> AppConfig:
    """Return the built-in configuration."""
    return parse_config(copy.deepcopy(DEFAULT_CONFIG))


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Sections missing from the file fall back to the built-in defaults;
    sections that are present are validated strictly.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    merged = copy.deepcopy(DEFAULT_CONFIG)
    merged.update(raw_config)
    return parse_config(merged)


def parse_config(raw_config: Dict[str, Any]) -> AppConfig:
    """Validate a raw configuration mapping into an AppConfig.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(
        raw_config,
        allowed=set(DEFAULT_CONFIG.keys()),
        required={"providers", "tokens", "plans"},
        path="config",
    )

    providers = _parse_providers(raw_config["providers"])
    tokens = TokenSettings(**_section(raw_config, "tokens", required={
        "base_input_tokens", "base_output_tokens", "base_cost_limit", "cost_per_token",
    }))
    plans = _parse_plans(raw_config["plans"])
    retry = RetrySettings(**_section(raw_config, "retry"))
    queue = QueueSettings(**_section(raw_config, "queue"))
    breaker = CircuitBreakerSettings(**_section(raw_config, "circuit_breaker"))

    database = raw_config.get("database") or {}
    _check_keys(database, allowed={"path"}, required=set(), path="database")

    return AppConfig(
        providers=providers,
        tokens=tokens,
        plans=plans,
        retry=retry,
        queue=queue,
        circuit_breaker=breaker,
        database_path=str(database.get("path", "ugc_guard.db")),
    )


def _section(raw_config: Dict[str, Any], name: str, required: Iterable[str] = ()) -> Dict[str, Any]:
    """Validate a flat numeric section against its dataclass defaults."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    allowed = set(DEFAULT_CONFIG[name].keys())
    _check_keys(data, allowed=allowed, required=set(required), path=name)
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{name}.{key}' must be a number")
    return dict(data)


def _parse_providers(data: Any) -> Tuple[ProviderSettings, ...]:
    if not isinstance(data, list) or not data:
        raise ValueError("'providers' must be a non-empty list")

    providers = []
    seen = set()
    for index, item in enumerate(data):
        path = f"providers[{index}]"
        if not isinstance(item, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _check_keys(item, allowed=_PROVIDER_KEYS, required=_PROVIDER_REQUIRED, path=path)

        provider_id = item["id"]
        if not isinstance(provider_id, str) or not provider_id.strip():
            raise ValueError(f"'{path}.id' must be a non-empty string")
        if provider_id in seen:
            raise ValueError(f"Duplicate provider id: {provider_id}")
        seen.add(provider_id)

        for flag in ("enabled", "speed_optimized", "premium_quality"):
            if flag in item and not isinstance(item[flag], bool):
                raise ValueError(f"'{path}.{flag}' must be a boolean")

        providers.append(ProviderSettings(
            id=provider_id,
            priority=int(item["priority"]),
            enabled=item.get("enabled", True),
            model=str(item["model"]),
            base_url=item.get("base_url"),
            api_key_env=item.get("api_key_env"),
            cost_per_million_input=float(item["cost_per_million_input"]),
            cost_per_million_output=float(item["cost_per_million_output"]),
            max_tokens=int(item["max_tokens"]),
            speed_optimized=item.get("speed_optimized", False),
            premium_quality=item.get("premium_quality", False),
        ))
    return tuple(providers)


def _parse_plans(data: Any) -> Dict[PlanTier, PlanSettings]:
    if not isinstance(data, dict):
        raise ValueError("'plans' must be a dictionary")

    plans = {}
    for name, plan_data in data.items():
        tier = PlanTier.parse(str(name))
        path = f"plans.{tier.value}"
        if not isinstance(plan_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _check_keys(plan_data, allowed=_PLAN_KEYS, required=_PLAN_REQUIRED, path=path)

        platforms = tuple(str(p).lower() for p in plan_data.get("platforms", []))
        unknown_platforms = set(platforms) - set(KNOWN_PLATFORMS)
        if unknown_platforms:
            raise ValueError(f"Unknown platforms in {path}: {unknown_platforms}")

        plans[tier] = PlanSettings(
            daily_generations=int(plan_data["daily_generations"]),
            monthly_generations=int(plan_data["monthly_generations"]),
            token_scale=float(plan_data["token_scale"]),
            cost_scale=float(plan_data["cost_scale"]),
            trial_generations=int(plan_data.get("trial_generations", 0)),
            trial_generations_unverified=int(plan_data.get("trial_generations_unverified", 0)),
            trial_days=int(plan_data.get("trial_days", 0)),
            team_members=int(plan_data.get("team_members", 0)),
            watermark=bool(plan_data.get("watermark", False)),
            platforms=platforms,
            features=tuple(str(f) for f in plan_data.get("features", [])),
        )

    missing = [tier.value for tier in PlanTier if tier not in plans]
    if missing:
        raise ValueError(f"Missing plan definitions: {missing}")
    return plans


def _check_keys(data: Dict[str, Any], allowed: set, required: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    for key in sorted(required):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
