"""Server configuration with YAML, env var resolution and Pydantic validation.

Sources (later wins):
1. Defaults on the models below
2. YAML file: ``DATA_PORTRAIT_CONFIG_PATH``, else ./data-portrait.yaml
3. Well-known env vars (GETGATHER_URL, GEMINI_API_KEY, ...), also read
   from a ``.env`` file in the working directory
4. ``DATA_PORTRAIT_<SECTION>_<KEY>`` overrides

``${VAR}`` references in YAML values resolve from the environment at load
time. Only ``getgather.url`` is required; every other credential is
optional and its feature degrades gracefully when missing.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_OVERRIDE_PREFIX = "DATA_PORTRAIT_"

# Flat env var names kept compatible with existing deployments.
_ENV_ALIASES: dict[str, tuple[str, str]] = {
    "GETGATHER_URL": ("getgather", "url"),
    "GETGATHER_API_KEY": ("getgather", "api_key"),
    "APP_HOST": ("server", "app_host"),
    "DATA_PORTRAIT_TRUST_PROXY": ("server", "trust_proxy"),
    "SESSION_SECRET": ("server", "session_secret"),
    "ALLOWED_ORIGINS": ("server", "allowed_origins"),
    "MAXMIND_ACCOUNT_ID": ("geolocation", "maxmind_account_id"),
    "MAXMIND_LICENSE_KEY": ("geolocation", "maxmind_license_key"),
    "TOGETHER_API_KEY": ("images", "together_api_key"),
    "GEMINI_API_KEY": ("images", "gemini_api_key"),
    "SEGMENT_WRITE_KEY": ("analytics", "segment_write_key"),
}


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class GetgatherConfig(BaseModel):
    """Remote tool-calling service."""

    url: str = ""
    api_key: str = ""

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")


class ServerConfig(BaseModel):
    """HTTP server and session cookie settings."""

    host: str = "0.0.0.0"
    port: int = 3000
    app_host: str = ""
    session_secret: str = "dev-session-secret-change-me"
    session_max_age_seconds: int = 24 * 60 * 60
    https_only: bool = False
    trust_proxy: bool = False
    allowed_origins: list[str] = []
    log_level: str = "info"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v


class PoolConfig(BaseModel):
    """External Tool Client pool tunables."""

    idle_timeout_minutes: float = 60
    sweep_interval_seconds: float = 600
    max_retries: int = 3
    call_timeout_minutes: float = 10
    detail_concurrency: int = 4


class PollingConfig(BaseModel):
    """Hosted-link polling cadence; total wait is max_attempts * interval."""

    max_attempts: int = 120
    interval_seconds: float = 1.0


class GeolocationConfig(BaseModel):
    """MaxMind GeoIP2 web service credentials."""

    maxmind_account_id: str = ""
    maxmind_license_key: str = ""
    cache_ttl_seconds: float = 300

    @property
    def enabled(self) -> bool:
        return bool(self.maxmind_account_id and self.maxmind_license_key)


class ImagesConfig(BaseModel):
    """Portrait image provider credentials and storage."""

    together_api_key: str = ""
    gemini_api_key: str = ""
    output_dir: str = "public"
    timeout_seconds: float = 20
    max_age_hours: float = 24
    cleanup_interval_minutes: float = 60


class AnalyticsConfig(BaseModel):
    """Segment analytics write key; empty disables tracking."""

    segment_write_key: str = ""
    source: str = "data-portrait"


class Settings(BaseModel):
    """Top-level configuration for the Data Portrait server."""

    getgather: GetgatherConfig = GetgatherConfig()
    server: ServerConfig = ServerConfig()
    pool: PoolConfig = PoolConfig()
    polling: PollingConfig = PollingConfig()
    geolocation: GeolocationConfig = GeolocationConfig()
    images: ImagesConfig = ImagesConfig()
    analytics: AnalyticsConfig = AnalyticsConfig()

    def validate_required(self) -> None:
        """Fail fast when the tool service URL is missing.

        Raises:
            ValueError: If getgather.url is not configured.
        """
        if not self.getgather.url:
            raise ValueError(
                "GETGATHER_URL is not configured. Set it in the environment, "
                ".env, or data-portrait.yaml (getgather.url)."
            )


def _find_config_file() -> Path | None:
    candidates = [
        Path.cwd() / "data-portrait.yaml",
        Path.cwd() / "data-portrait.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _set(data: dict[str, Any], section: str, key: str, value: Any) -> None:
    if not isinstance(data.get(section), dict):
        data[section] = {}
    data[section][key] = value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply flat env aliases, then DATA_PORTRAIT_<SECTION>_<KEY> overrides.

    Sections are matched by longest prefix. Values stay strings; the
    pydantic models convert them to the declared field types.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    for env_name, (section, key) in _ENV_ALIASES.items():
        value = os.environ.get(env_name)
        if value:
            _set(data, section, key, value)

    known_sections = sorted(Settings.model_fields.keys(), key=len, reverse=True)
    for env_name, value in os.environ.items():
        if not env_name.startswith(_OVERRIDE_PREFIX):
            continue
        suffix = env_name[len(_OVERRIDE_PREFIX):].lower()
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix) and len(suffix) > len(section_prefix):
                _set(data, section, suffix[len(section_prefix):], value)
                break
    return data


def load_settings(config_path: str | None = None, *, use_dotenv: bool = True) -> Settings:
    """Load settings from YAML and environment.

    Args:
        config_path: Explicit YAML path. Defaults to DATA_PORTRAIT_CONFIG_PATH,
            then ./data-portrait.yaml. Missing default files are fine.
        use_dotenv: Load ./.env into the environment first.

    Returns:
        Validated Settings.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
    """
    if use_dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    config_path = config_path or os.environ.get("DATA_PORTRAIT_CONFIG_PATH")
    raw_data: dict[str, Any] = {}
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return Settings(**data)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Replace the process-wide settings. Used by tests and the CLI."""
    global _settings
    _settings = settings
