"""
config/settings.py — Canonical configuration contract for the monitoring lab.

Uses pydantic-settings to load, validate, and type-check every option the
provisioner and the verifier understand. The Settings object is built once at
startup and handed to the pipeline and the probes; nothing below the CLI
entry points reads os.environ.

Two usage modes:
  Production / scripts:
      cfg = load_settings()              # reads from .env + os.environ
      cfg = load_settings("env/ci.env")  # override env file path

  Tests (isolated — no env file, no os.environ bleed):
      cfg = Settings(CLUSTER_NAME="lab", PROBE_WORKERS=1)
      # All values come exclusively from kwargs → clean, reproducible.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
SECRET_FIELDS = frozenset({"NGROK_AUTHTOKEN", "GRAFANA_ADMIN_PASSWORD"})


class Settings(BaseSettings):
    # Only init kwargs are a settings source. load_settings() is the explicit
    # production entry point that supplies env-file and os.environ values.
    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings,)

    # -------------------------------------------------------------------------
    # Cluster identity
    # -------------------------------------------------------------------------
    CLUSTER_NAME: str = "petclinic-monitoring"
    APP_NAMESPACE: str = "petclinic"
    MONITORING_NAMESPACE: str = "monitoring"
    HELM_RELEASE_NAME: str = "prometheus"
    KIND_VERSION: str = "v0.25.0"
    RECREATE_CLUSTER: bool = False

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------
    PROJECT_ROOT: str = "."
    K8S_DIR: str = "k8s"
    LAB_MANIFEST: str = "lab.yml"
    JAVA_HOME: str = "/usr/lib/jvm/java-17-openjdk"
    DOCKERD_LOG_PATH: str = "/tmp/dockerd.log"

    # -------------------------------------------------------------------------
    # NodePorts published by the kind cluster
    # -------------------------------------------------------------------------
    PROMETHEUS_PORT: int = 30090
    GRAFANA_PORT: int = 30030
    ALERTMANAGER_PORT: int = 30093
    GATEWAY_PORT: int = 30080

    # -------------------------------------------------------------------------
    # Tunnel
    # -------------------------------------------------------------------------
    NGROK_API_URL: str = "http://localhost:4040"
    NGROK_CONFIG_PATH: str = "~/.config/ngrok/ngrok-petclinic.yml"
    NGROK_LOG_PATH: str = "/tmp/ngrok.log"

    # -------------------------------------------------------------------------
    # Credentials (never defaulted)
    # -------------------------------------------------------------------------
    NGROK_AUTHTOKEN: Optional[str] = None
    GRAFANA_ADMIN_USER: str = "admin"
    GRAFANA_ADMIN_PASSWORD: Optional[str] = None

    # -------------------------------------------------------------------------
    # Timeouts and polling
    # -------------------------------------------------------------------------
    COMMAND_TIMEOUT_SECONDS: int = 900
    READY_TIMEOUT_SECONDS: int = 300
    POLL_INITIAL_SECONDS: float = 1.0
    POLL_MAX_SECONDS: float = 15.0
    PROBE_TIMEOUT_SECONDS: float = 10.0
    PROBE_WORKERS: int = 4
    VERIFY_WAIT_SECONDS: int = 0

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # -------------------------------------------------------------------------
    # Convenience properties
    # -------------------------------------------------------------------------

    @property
    def kube_context(self) -> str:
        """kubectl context name kind registers for the cluster."""
        return f"kind-{self.CLUSTER_NAME}"

    @property
    def control_plane_node(self) -> str:
        return f"{self.CLUSTER_NAME}-control-plane"

    @property
    def project_root(self) -> Path:
        return Path(self.PROJECT_ROOT).expanduser().resolve()

    @property
    def k8s_dir(self) -> Path:
        path = Path(self.K8S_DIR).expanduser()
        return path if path.is_absolute() else self.project_root / path

    @property
    def lab_manifest_path(self) -> Path:
        path = Path(self.LAB_MANIFEST).expanduser()
        return path if path.is_absolute() else self.project_root / path

    @property
    def ngrok_config_path(self) -> Path:
        return Path(self.NGROK_CONFIG_PATH).expanduser()

    @property
    def ports(self) -> dict[str, int]:
        """Port lookup used by endpoint probes and tunnel definitions."""
        return {
            "prometheus": self.PROMETHEUS_PORT,
            "grafana": self.GRAFANA_PORT,
            "alertmanager": self.ALERTMANAGER_PORT,
            "gateway": self.GATEWAY_PORT,
        }

    def local_url(self, port_key: str, path: str = "") -> str:
        return f"http://localhost:{self.ports[port_key]}{path}"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------

    @field_validator(
        "CLUSTER_NAME",
        "APP_NAMESPACE",
        "MONITORING_NAMESPACE",
        "HELM_RELEASE_NAME",
        "LOG_LEVEL",
        mode="before",
    )
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Strip trailing whitespace that GNU make leaves after include .env."""
        return v.strip() if isinstance(v, str) else v

    @field_validator("NGROK_AUTHTOKEN", "GRAFANA_ADMIN_PASSWORD", mode="before")
    @classmethod
    def blank_secret_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("CLUSTER_NAME", "APP_NAMESPACE", "MONITORING_NAMESPACE", "HELM_RELEASE_NAME")
    @classmethod
    def validate_dns_label(cls, v: str) -> str:
        if not _DNS_LABEL_RE.match(v):
            raise ValueError(f"'{v}' is not a valid DNS-1123 label")
        return v

    @field_validator("PROMETHEUS_PORT", "GRAFANA_PORT", "ALERTMANAGER_PORT", "GATEWAY_PORT")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be in 1..65535, got {v}")
        return v

    @field_validator(
        "COMMAND_TIMEOUT_SECONDS",
        "READY_TIMEOUT_SECONDS",
        "POLL_INITIAL_SECONDS",
        "POLL_MAX_SECONDS",
        "PROBE_TIMEOUT_SECONDS",
    )
    @classmethod
    def validate_positive(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator("PROBE_WORKERS")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("PROBE_WORKERS must be >= 1")
        return v

    @field_validator("VERIFY_WAIT_SECONDS")
    @classmethod
    def validate_wait(cls, v: int) -> int:
        if v < 0:
            raise ValueError("VERIFY_WAIT_SECONDS must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_polling_window(self) -> Settings:
        if self.POLL_INITIAL_SECONDS > self.POLL_MAX_SECONDS:
            raise ValueError(
                "POLL_INITIAL_SECONDS must be <= POLL_MAX_SECONDS "
                f"(got {self.POLL_INITIAL_SECONDS} > {self.POLL_MAX_SECONDS})"
            )
        return self

    def describe(self) -> list[tuple[str, str]]:
        """Recognized options and their effective values, secrets masked."""
        rows = []
        for name in type(self).model_fields:
            value = getattr(self, name)
            if name in SECRET_FIELDS:
                shown = "<set>" if value else "<unset>"
            else:
                shown = str(value)
            rows.append((name, shown))
        return rows


def load_settings(env_file: str = ".env") -> Settings:
    """Load and validate settings from an env file + os.environ.

    Manually parses the env file and merges with os.environ (os.environ wins),
    then passes only known Settings fields as explicit kwargs. Settings()
    itself never reads the environment, so the returned object is the single
    snapshot of configuration for the whole run.

    Raises:
        ValidationError: if any value is invalid.
    """
    file_vals: dict[str, str] = {}
    try:
        with open(env_file, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                k, _, v = line.partition("=")
                k = k.strip()
                # Strip inline comments: "petclinic   # app namespace" → "petclinic"
                v = re.sub(r"\s+#.*$", "", v.strip())
                if k:
                    file_vals[k] = v
    except FileNotFoundError:
        pass
    merged = {**file_vals, **os.environ}  # os.environ wins
    known = {k: v for k, v in merged.items() if k in Settings.model_fields}
    return Settings(**known)
