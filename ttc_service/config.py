"""Configuration utilities for the TT&C gateway service."""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ttc_core.config import ScorerConfig, ScoringWeights, WindowConfig
from ttc_core.state import MissionPhase


load_dotenv()


def _default_role_tokens() -> Dict[str, str]:
    return {"admin-token": "admin", "engineer-token": "engineer"}


def _default_rate_limits() -> Dict[str, int]:
    return {"deorbit": 1, "orbit_change": 2, "payload_toggle": 10}


class Settings(BaseSettings):
    """Environment-backed settings for the gateway.

    Mapping fields (``ROLE_TOKENS``, ``RATE_LIMITS``) are read from the
    environment as JSON objects.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    service_name: str = Field(default="ttc-gateway")
    satellite_sim_url: str = Field(default="http://satellite-sim:8082")
    space_soc_url: Optional[str] = Field(default=None)
    mission_phase: MissionPhase = Field(default=MissionPhase.NORMAL)

    forward_timeout: float = Field(default=5.0, gt=0)
    audit_timeout: float = Field(default=2.0, gt=0)
    audit_retries: int = Field(default=1, ge=0, le=1)
    request_deadline: Optional[float] = Field(default=10.0)

    role_tokens: Dict[str, str] = Field(default_factory=_default_role_tokens)
    default_role: str = Field(default="operator")

    default_rate_limit: int = Field(default=30, gt=0)
    rate_limits: Dict[str, int] = Field(default_factory=_default_rate_limits)
    normal_hours_start: int = Field(default=8, ge=0, le=23)
    normal_hours_end: int = Field(default=20, ge=0, le=23)
    burst_threshold: int = Field(default=10, gt=0)
    burst_window_seconds: float = Field(default=10.0, gt=0)
    role_activity_threshold: int = Field(default=50, gt=0)

    anomaly_threshold: float = Field(default=0.7, ge=0, le=1)
    alert_threshold: float = Field(default=0.8, ge=0, le=1)
    block_threshold: float = Field(default=0.9, ge=0, le=1)
    command_weight: float = Field(default=0.30, ge=0)
    role_weight: float = Field(default=0.25, ge=0)
    temporal_weight: float = Field(default=0.25, ge=0)
    frequency_weight: float = Field(default=0.20, ge=0)
    max_history: int = Field(default=1000, ge=10)

    model_path: Optional[Path] = Field(default=None)
    model_encryption_key: Optional[str] = Field(default=None)
    save_interval: int = Field(default=100, ge=1)

    @field_validator("mission_phase", mode="before")
    @classmethod
    def _coerce_phase(cls, value):
        if value in (None, ""):
            return MissionPhase.NORMAL
        return MissionPhase.coerce(value)

    @field_validator("satellite_sim_url", "space_soc_url", mode="before")
    @classmethod
    def _strip_url(cls, value):
        if value is None:
            return None
        value = str(value).strip().rstrip("/")
        return value or None

    @field_validator("model_path", mode="before")
    @classmethod
    def _optional_path(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        raise ValueError("model_path must be a filesystem path")

    @field_validator("request_deadline", mode="before")
    @classmethod
    def _optional_deadline(cls, value):
        if value in (None, "", 0, "0"):
            return None
        return value

    @model_validator(mode="after")
    def _check_core_configs(self) -> "Settings":
        # Surface core validation errors as settings errors at startup.
        self.window_config()
        self.scorer_config()
        return self

    def window_config(self) -> WindowConfig:
        return WindowConfig(
            default_rate_limit=self.default_rate_limit,
            rate_limits=self.rate_limits,
            normal_hours_start=self.normal_hours_start,
            normal_hours_end=self.normal_hours_end,
            burst_threshold=self.burst_threshold,
            burst_window=timedelta(seconds=self.burst_window_seconds),
            role_activity_threshold=self.role_activity_threshold,
        )

    def scorer_config(self) -> ScorerConfig:
        return ScorerConfig(
            weights=ScoringWeights(
                command=self.command_weight,
                role=self.role_weight,
                temporal=self.temporal_weight,
                frequency=self.frequency_weight,
            ),
            anomaly_threshold=self.anomaly_threshold,
            alert_threshold=self.alert_threshold,
            block_threshold=self.block_threshold,
            max_history=self.max_history,
            save_interval=self.save_interval,
        )

    def role_for_token(self, token: str) -> str:
        return self.role_tokens.get(token, self.default_role)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
