"""Release pipeline configuration using pydantic-settings.

This module defines the PipelineSettings class that reads configuration
from environment variables with the RELEASE_PIPELINE_ prefix. Every field
has a default so the service starts with an in-memory store, the HTTP
cluster deployer and logging + metrics events.

The stage layout itself (environments, approvals, gate policies, canary
steps) is not an environment setting; it comes from the YAML pipeline
definition named by ``pipeline_definition_path``.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from release_pipeline.events.emitter import EventSinkType


class DeployerKind(str, Enum):
    """Deployment tool adapter to use."""

    HTTP = "http"
    HELM = "helm"
    KUSTOMIZE = "kustomize"


class PipelineSettings(BaseSettings):
    """Release pipeline configuration from environment variables.

    All environment variables are prefixed with RELEASE_PIPELINE_
    (e.g., RELEASE_PIPELINE_DATABASE_URL).
    """

    model_config = SettingsConfigDict(
        env_prefix="RELEASE_PIPELINE_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset means the in-memory store
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Pipeline definition
    # -------------------------------------------------------------------------
    # YAML stage definition; unset means dev -> staging -> production
    pipeline_definition_path: Optional[str] = None

    # -------------------------------------------------------------------------
    # Deployer
    # -------------------------------------------------------------------------
    deployer: DeployerKind = DeployerKind.HTTP

    # HTTP cluster control plane
    cluster_api_url: str = "http://localhost:8081"
    cluster_api_token: Optional[str] = None

    # Health source for the helm and kustomize deployers
    prometheus_url: str = "http://prometheus:9090"

    helm_path: str = "helm"
    helm_chart_path: str = "./helm/app"
    helm_release_name: str = "app"

    kustomize_path: str = "kustomize"
    kubectl_path: str = "kubectl"
    kustomize_overlays_dir: str = "./k8s/overlays"
    kustomize_image_name: str = "app"
    # Defaults to "<kustomize_image_name>-canary"
    kustomize_canary_image_name: Optional[str] = None

    # Per-command timeout for helm/kubectl
    deploy_timeout_seconds: int = 300

    # Attempts per traffic shift or health read inside the deployer adapter
    deploy_max_attempts: int = 3
    deploy_retry_base_delay_seconds: float = 1.0

    # -------------------------------------------------------------------------
    # Artifact and scanner sources
    # -------------------------------------------------------------------------
    # OCI registry; unset accepts digest-pinned references as-is
    registry_url: Optional[str] = None
    registry_token: Optional[str] = None

    scanner_report_dir: str = "./reports"

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------
    # Comma-separated: logging, metrics, webhook
    event_sinks: str = "logging,metrics"
    notification_webhook_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Timing
    # -------------------------------------------------------------------------
    poll_interval_seconds: int = 10
    # Must outlast one deploy command plus two polls
    lease_ttl_seconds: int = 600
    gate_timeout_seconds: int = 1800
    reconcile_enabled: bool = True

    # -------------------------------------------------------------------------
    # Rollout thresholds
    # -------------------------------------------------------------------------
    rollout_absolute_error_threshold: float = 0.10
    rollout_relative_multiple: float = 5.0
    rollout_min_sample_size: int = 20
    rollout_observation_window: int = 3
    rollout_max_window_extensions: int = 10

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------
    rollback_max_attempts: int = 3
    rollback_base_delay_seconds: float = 2.0

    # -------------------------------------------------------------------------
    # Server and logging
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    log_format: str = "json"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator(
        "cluster_api_url", "prometheus_url", "registry_url", "notification_webhook_url"
    )
    @classmethod
    def validate_http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("pipeline_definition_path")
    @classmethod
    def validate_definition_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if Path(v).suffix not in (".yaml", ".yml"):
            raise ValueError("pipeline_definition_path must be a .yaml or .yml file")
        return v

    @field_validator("event_sinks")
    @classmethod
    def validate_event_sinks(cls, v: str) -> str:
        known = {sink.value for sink in EventSinkType}
        for item in v.split(","):
            if item.strip() and item.strip() not in known:
                raise ValueError(f"unknown event sink: {item.strip()}")
        return v

    @property
    def sink_types(self) -> List[EventSinkType]:
        items = [item.strip() for item in self.event_sinks.split(",")]
        return [EventSinkType(item) for item in items if item]

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        if not 1 <= v <= 300:
            raise ValueError("poll_interval_seconds must be between 1 and 300")
        return v

    @field_validator(
        "lease_ttl_seconds",
        "gate_timeout_seconds",
        "deploy_timeout_seconds",
        "rollout_min_sample_size",
        "rollout_observation_window",
        "rollback_max_attempts",
        "deploy_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("rollout_max_window_extensions")
    @classmethod
    def validate_extensions(cls, v: int) -> int:
        if v < 0:
            raise ValueError("rollout_max_window_extensions cannot be negative")
        return v

    @field_validator("rollout_absolute_error_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError("rollout_absolute_error_threshold must be within (0, 1]")
        return v

    @field_validator("rollout_relative_multiple")
    @classmethod
    def validate_relative_multiple(cls, v: float) -> float:
        if v <= 1.0:
            raise ValueError("rollout_relative_multiple must be greater than 1")
        return v

    @field_validator("rollback_base_delay_seconds", "deploy_retry_base_delay_seconds")
    @classmethod
    def validate_base_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delay cannot be negative")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log_format must be json or console")
        return v

    @model_validator(mode="after")
    def validate_lease_ttl(self) -> "PipelineSettings":
        minimum = self.deploy_timeout_seconds + 2 * self.poll_interval_seconds
        if self.lease_ttl_seconds < minimum:
            raise ValueError(
                f"lease_ttl_seconds must be at least deploy_timeout_seconds + "
                f"2 * poll_interval_seconds ({minimum})"
            )
        return self


def get_settings() -> PipelineSettings:
    """Create PipelineSettings from the environment.

    Raises:
        pydantic.ValidationError: If a value is invalid.
    """
    return PipelineSettings()
