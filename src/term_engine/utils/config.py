from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from term_engine.exceptions.core import ConfigError


class RouterConfig(BaseModel):
    lanes: int = Field(8, ge=1, le=1024, description="Number of sequential worker lanes.")
    queue_maxsize: int = Field(256, ge=1, description="Per-lane queue bound; a full lane blocks intake.")
    resequence_window: int = Field(64, ge=0, description="Max events buffered per key while waiting for a gap.")
    max_hold_ms: int = Field(2_000, ge=0, description="Release buffered events held longer than this (0 = never).")


class PublisherConfig(BaseModel):
    max_attempts: int = Field(5, ge=1)
    base_backoff_ms: int = Field(50, ge=0)
    max_backoff_ms: int = Field(5_000, ge=0)
    attempt_timeout_ms: int = Field(2_000, ge=1)
    confirmed_cache_size: int = Field(100_000, ge=0, description="LRU of dedup keys already confirmed by the sink.")

    @model_validator(mode="after")
    def _check_backoff(self) -> "PublisherConfig":
        if self.max_backoff_ms < self.base_backoff_ms:
            raise ValueError("max_backoff_ms must be >= base_backoff_ms")
        return self


class TermFeedConfig(BaseModel):
    retry_base_ms: int = Field(500, ge=0, description="First backoff after a failed term bootstrap.")
    retry_max_ms: int = Field(30_000, ge=0)

    @model_validator(mode="after")
    def _check_backoff(self) -> "TermFeedConfig":
        if self.retry_max_ms < self.retry_base_ms:
            raise ValueError("retry_max_ms must be >= retry_base_ms")
        return self


class EngineConfig(BaseModel):
    router: RouterConfig = Field(default_factory=RouterConfig)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    term_feed: TermFeedConfig = Field(default_factory=TermFeedConfig)
    publish_rounds: int = Field(3, ge=1, description="Engine-level rounds re-publishing the unpublished subset.")
    skip_malformed_and_ack: bool = False
    allow_empty_registry: bool = False
    registry_wait_timeout_s: float | None = Field(None, gt=0)
    drain_timeout_s: float = Field(30.0, gt=0)
    heartbeat_interval_s: float = Field(30.0, gt=0)


def load_engine_config(path: str | Path) -> EngineConfig:
    p = Path(path)
    try:
        with p.open("r", encoding="utf-8") as f:
            raw: Any = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read engine config {p}: {exc}") from exc
    return engine_config_from_dict(raw)


def engine_config_from_dict(raw: Any) -> EngineConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"engine config must be a JSON object, got {type(raw).__name__}")
    try:
        return EngineConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
