"""
Typed lab manifest contract.

lab.yml declares what the provisioner builds and deploys and what the
verifier probes: application services, deploy stages, the monitoring chart,
monitoring components, NodePort endpoints, and tunnels. Cluster identity,
namespaces, and port numbers stay in config/settings.py.

The manifest is treated as an API contract:
  - strict required fields
  - `manifest_version` for forward compatibility
  - clear validation errors for common mistakes
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

REPO_ROOT = Path(__file__).parent.parent
DEFAULT_MANIFEST = REPO_ROOT / "lab.yml"
SUPPORTED_MANIFEST_VERSION = 1
_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

PortKey = Literal["prometheus", "grafana", "alertmanager", "gateway"]


class ServiceSpec(BaseModel):
    """One application microservice: maven module, image, and container port."""

    name: str
    port: int
    module: str | None = None
    metrics: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not _NAME_RE.match(value):
            raise ValueError(f"'{value}' is not a valid kubernetes name")
        return value

    @field_validator("port")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError(f"port must be in 1..65535, got {value}")
        return value


class DeployStage(BaseModel):
    manifest: str
    wait_for: str | None = "all"
    label: str = ""

    @field_validator("manifest")
    @classmethod
    def non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("manifest must be a non-empty string")
        return value


class HelmChart(BaseModel):
    repo_name: str
    repo_url: str
    chart: str
    values_file: str
    timeout: str = "10m"


class MonitoringComponent(BaseModel):
    name: str
    label: str


class EndpointSpec(BaseModel):
    name: str
    port_key: PortKey
    path: str

    @field_validator("path")
    @classmethod
    def leading_slash(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        return value


class TunnelSpec(BaseModel):
    name: str
    port_key: PortKey
    description: str = ""


class LabManifest(BaseModel):
    """Versioned contract for lab.yml."""

    manifest_version: int = Field(..., description="Manifest schema version")
    name: str
    image_repo: str
    image_tag: str = "latest"
    module_prefix: str = ""
    dockerfile: str = "docker/Dockerfile"
    kind_config: str = "kind-config.yaml"
    namespaces_manifest: str = "namespaces.yaml"
    services: list[ServiceSpec]
    deploy_stages: list[DeployStage]
    helm: HelmChart
    monitoring_manifests: list[str] = Field(default_factory=list)
    monitoring_components: list[MonitoringComponent]
    endpoints: list[EndpointSpec]
    metrics_marker: str = "jvm_memory"
    tunnels: list[TunnelSpec] = Field(default_factory=list)

    @field_validator("manifest_version")
    @classmethod
    def validate_manifest_version(cls, value: int) -> int:
        if value != SUPPORTED_MANIFEST_VERSION:
            raise ValueError(
                f"unsupported manifest_version={value}; expected {SUPPORTED_MANIFEST_VERSION}"
            )
        return value

    @field_validator("services")
    @classmethod
    def validate_services(cls, value: list[ServiceSpec]) -> list[ServiceSpec]:
        if not value:
            raise ValueError("must declare at least one service")
        return value

    @model_validator(mode="after")
    def validate_cross_field_constraints(self) -> LabManifest:
        names = [s.name for s in self.services]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"services contain duplicate names: {', '.join(duplicates)}")

        unknown_waits = sorted(
            {st.wait_for for st in self.deploy_stages if st.wait_for not in (None, "all")} - set(names)
        )
        if unknown_waits:
            raise ValueError(
                f"deploy_stages wait_for unknown deployment(s): {', '.join(unknown_waits)}"
            )

        tunnel_names = [t.name for t in self.tunnels]
        if len(tunnel_names) != len(set(tunnel_names)):
            raise ValueError("tunnels contain duplicate names")
        return self

    def module_for(self, service: ServiceSpec) -> str:
        return service.module or f"{self.module_prefix}{service.name}"

    def image_for(self, service: ServiceSpec) -> str:
        return f"{self.image_repo}/{self.module_for(service)}:{self.image_tag}"

    @property
    def images(self) -> list[str]:
        return [self.image_for(s) for s in self.services]

    @property
    def metrics_services(self) -> list[ServiceSpec]:
        return [s for s in self.services if s.metrics]


def load_manifest_yaml(path: Path) -> dict:
    with open(path, encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError("manifest root must be a YAML mapping/object")
        return payload


def parse_manifest(path: Path = DEFAULT_MANIFEST) -> LabManifest:
    if not path.exists():
        raise FileNotFoundError(f"Lab manifest not found: {path}")
    payload = load_manifest_yaml(path)
    try:
        return LabManifest.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(exc) from exc
