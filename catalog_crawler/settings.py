import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from catalog_crawler import config_loader

ENV_PREFIX = "CATALOG_CRAWLER_"


def _load_environment() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    load_dotenv(env_path, override=False)


_load_environment()


class ConfigurationError(RuntimeError):
    """Raised when crawler settings are missing or invalid."""


def get_env_variable(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def get_env_variable_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


@dataclass
class CrawlerConfig:
    listing_url: Optional[str] = None
    page_range_limit: int = 10
    products_per_page: int = 12
    list_retry_count: int = 9
    detail_retry_count: int = 9
    initial_concurrency: int = 16
    detail_concurrency: int = 16
    retry_concurrency: int = 9
    page_timeout: float = 20.0
    min_request_delay: float = 0.1
    max_request_delay: float = 2.2
    retry_delay: float = 1.0
    cache_ttl: float = 300.0
    totals_retry_count: int = 3
    enable_batch_processing: bool = False
    batch_size: int = 30
    batch_delay: float = 2.0
    adaptive_concurrency: bool = False
    collect_details: bool = True
    progress_interval: float = 0.1
    newest_first: bool = True
    parser: Optional[str] = None
    transport: str = "auto"
    store_file: Optional[str] = "records.json"

    def validate(self) -> "CrawlerConfig":
        if self.products_per_page <= 0:
            raise ConfigurationError("products_per_page must be positive")
        if self.page_range_limit < 0:
            raise ConfigurationError("page_range_limit must be 0 (unlimited) or positive")
        for name in ("initial_concurrency", "detail_concurrency", "retry_concurrency", "batch_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        for name in ("list_retry_count", "detail_retry_count", "totals_retry_count"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.min_request_delay < 0 or self.max_request_delay < self.min_request_delay:
            raise ConfigurationError("request delays must satisfy 0 <= min <= max")
        if self.transport not in {"auto", "requests", "httpx"}:
            raise ConfigurationError(f"Unknown transport '{self.transport}'")
        return self


def _coerce(value: Any, default: Any, name: str) -> Any:
    if value is None:
        return default
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for '{name}': {value!r}") from exc
    return value


def build_config(
    overrides: Optional[Dict[str, Any]] = None,
    task_config: Optional[Dict[str, Any]] = None,
    global_config: Optional[Dict[str, Any]] = None,
) -> CrawlerConfig:
    """Resolve every setting with precedence CLI > env > task > global > default."""

    overrides = overrides or {}
    values: Dict[str, Any] = {}
    for field_info in fields(CrawlerConfig):
        name = field_info.name
        default = field_info.default
        env_name = f"{ENV_PREFIX}{name.upper()}"
        env_value: Any = get_env_variable(env_name)
        if env_value is not None and isinstance(default, bool):
            env_value = get_env_variable_bool(env_name, default)
        cli_value = overrides.get(name)
        if cli_value is None:
            cli_value = env_value
        selected = config_loader.select_task_value(
            cli_value, task_config, global_config, name, default
        )
        values[name] = _coerce(selected, default, name)
    return CrawlerConfig(**values).validate()
