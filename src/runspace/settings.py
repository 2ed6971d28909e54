"""
Centralized settings for runspace.

Manifesto:
    One validated, cached settings object instead of constructor
    defaults scattered across the host, the collectors and the engines.
    Values come from ``RUNSPACE_*`` environment variables or a ``.env``
    file; an explicit ``settings=`` argument always wins.

Examples:
    >>> import os
    >>> os.environ["RUNSPACE_STREAM_CAPACITY"] = "1000"
    >>> get_settings(_force_reload=True).stream_capacity
    1000

Tags:
    runspace, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunspaceSettings(BaseSettings):
    """Runspace configuration.

    Fields
    ──────
    log_level          : structlog level used by ``configure_logging``
    log_json           : JSON logs (True), console (False), auto by TTY (None)
    stream_capacity    : Default collector capacity (None = unbounded)
    join_timeout       : Seconds ``ExecutionHost.close()`` waits for its worker
    worker_name_prefix : Thread name prefix for asynchronous invocations
    trace_checkpoints  : Python engine checks stop requests between lines
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNSPACE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    # ── Streams ──────────────────────────────────────────────────
    stream_capacity: int | None = Field(
        default=None,
        ge=1,
        description="Maximum retained items per channel; oldest are evicted",
    )

    # ── Workers ──────────────────────────────────────────────────
    join_timeout: float = Field(default=5.0, gt=0)
    worker_name_prefix: str = "runspace-worker"

    # ── Engines ──────────────────────────────────────────────────
    trace_checkpoints: bool = True

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, RunspaceSettings] = {}


def get_settings(*, _force_reload: bool = False) -> RunspaceSettings:
    """Load, validate, and cache a :class:`RunspaceSettings` instance.

    Parameters
    ----------
    _force_reload:
        Bypass cache and reload from the environment.
    """
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]

    settings = RunspaceSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Drop the cached settings (tests and reconfiguration)."""
    _settings_cache.clear()


__all__ = ["RunspaceSettings", "get_settings", "clear_settings_cache"]
