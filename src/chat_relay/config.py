"""Configuration for chat-relay.

Config discovery (first match wins):
  1. explicit path passed to :func:`load_config`
  2. ``./chat_relay.yaml``
  3. ``~/.config/chat-relay/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from chat_relay.errors import ConfigError

_logger = logging.getLogger(__name__)

PROVIDER_KINDS = ("openai", "azure_openai", "gemini")


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProviderProfile:
    """A named provider profile.

    ``models`` is an ordered list where position implies tier:
    index 0 = smallest/fastest, last = largest.  For Azure the entries are
    deployment names.
    """

    provider: str = "openai"
    url: str = "https://api.openai.com/v1"
    url_env: str = ""
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    models: list[str] = field(default_factory=lambda: ["gpt-5-mini", "gpt-5"])
    api_version: str = ""
    timeout: float = 120.0
    extra_params: dict[str, Any] = field(default_factory=dict)

    @property
    def tier_count(self) -> int:
        return len(self.models)

    def model_for_tier(self, tier: int) -> str:
        """Return model name for a tier index (clamped to valid range)."""
        if not self.models:
            raise ConfigError(f"Profile for {self.provider} lists no models")
        idx = max(0, min(tier, len(self.models) - 1))
        return self.models[idx]

    def resolve_api_key(self) -> str:
        """Explicit key first, then the environment variable."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""

    def resolve_url(self) -> str:
        if self.url_env and os.environ.get(self.url_env):
            return os.environ[self.url_env]
        return self.url


def _default_profiles() -> dict[str, ProviderProfile]:
    return {
        "openai": ProviderProfile(),
        "azure_openai": ProviderProfile(
            provider="azure_openai",
            url="",
            url_env="AZURE_OPENAI_ENDPOINT",
            api_key_env="AZURE_OPENAI_API_KEY",
            models=["gpt-4.1-mini", "gpt-4.1"],
            api_version="2025-03-01-preview",
        ),
        "gemini": ProviderProfile(
            provider="gemini",
            url="https://generativelanguage.googleapis.com/v1beta",
            api_key_env="GOOGLE_GEMINI_API_KEY",
            models=["gemini-3-flash-preview"],
        ),
    }


@dataclass
class RetrySpec:
    """Backoff settings for provider calls.

    ``max_attempts`` counts retries after the first call.
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter_ratio: float = 0.1


@dataclass
class OrchestrationSpec:
    """Bounds for the tool-call loop."""

    max_rounds: int = 10
    dedup_clear_interval: int = 3
    loop_repeat_limit: int = 2
    signature_window: int = 64
    concurrent_functions: bool = True


@dataclass
class StreamSpec:
    """Streaming knobs.

    ``payload_quote_window`` is how many non-whitespace characters after an
    opening brace are inspected for a quote before the brace is treated as
    narrative text.  ``0`` disables payload suppression.
    """

    payload_quote_window: int = 1
    fallback_chunk_delay: float = 0.05


@dataclass
class RelayConfig:
    """Top-level config for chat-relay."""

    # Active profile name
    provider: str = "openai"

    # Named profiles
    profiles: dict[str, ProviderProfile] = field(default_factory=_default_profiles)

    retry: RetrySpec = field(default_factory=RetrySpec)
    orchestration: OrchestrationSpec = field(default_factory=OrchestrationSpec)
    stream: StreamSpec = field(default_factory=StreamSpec)

    log_level: str = "WARNING"

    @property
    def active_profile(self) -> ProviderProfile:
        try:
            return self.profiles[self.provider]
        except KeyError:
            raise ConfigError(
                f"Unknown provider profile: {self.provider}. "
                f"Available: {', '.join(self.profiles)}"
            ) from None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./chat_relay.yaml"),
    Path.home() / ".config" / "chat-relay" / "config.yaml",
]


def _parse_section(cls: type, raw: dict[str, Any] | None) -> Any:
    """Build dataclass *cls* from *raw*, ignoring unknown and null keys."""
    if not raw:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping for {cls.__name__}, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    values = {k: v for k, v in raw.items() if k in known and v is not None}
    unknown = set(raw) - known
    if unknown:
        _logger.warning(
            "Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)),
        )
    return cls(**values)


def _parse_profile(name: str, raw: dict[str, Any]) -> ProviderProfile:
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Profile {name!r} must be a mapping, got {type(raw).__name__}"
        )
    defaults = _default_profiles().get(raw.get("provider", name))
    base: dict[str, Any] = {}
    if defaults is not None:
        base = {f.name: getattr(defaults, f.name) for f in fields(ProviderProfile)}
    base.update({k: v for k, v in raw.items() if v is not None})
    profile = _parse_section(ProviderProfile, base)
    if profile.provider not in PROVIDER_KINDS:
        raise ConfigError(
            f"Profile {name!r} has unknown provider {profile.provider!r}. "
            f"Expected one of: {', '.join(PROVIDER_KINDS)}"
        )
    return profile


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    RelayConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return RelayConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return RelayConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {config_path}")

    profiles = _default_profiles()
    profiles_raw = raw.get("profiles") or {}
    if not isinstance(profiles_raw, dict):
        raise ConfigError(f"Expected a mapping for profiles in {config_path}")
    for name, praw in profiles_raw.items():
        profiles[name] = _parse_profile(name, praw or {})

    config = RelayConfig(
        provider=raw.get("provider", "openai"),
        profiles=profiles,
        retry=_parse_section(RetrySpec, raw.get("retry")),
        orchestration=_parse_section(OrchestrationSpec, raw.get("orchestration")),
        stream=_parse_section(StreamSpec, raw.get("stream")),
        log_level=str(raw.get("log_level", "WARNING")).upper(),
    )
    # Fail early on a dangling active profile
    config.active_profile
    return config


def configure_logging(config: RelayConfig | None = None) -> None:
    """Configure root logging at the configured level."""
    level_name = (config.log_level if config else "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
