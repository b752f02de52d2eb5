import pytest
import yaml

from scripts.lab_manifest import DEFAULT_MANIFEST, load_manifest_yaml, parse_manifest


def _write_manifest(tmp_path, mutate):
    payload = load_manifest_yaml(DEFAULT_MANIFEST)
    mutate(payload)
    path = tmp_path / "lab.yml"
    path.write_text(yaml.safe_dump(payload, sort_keys=False))
    return path


def test_default_manifest_parses():
    manifest = parse_manifest(DEFAULT_MANIFEST)
    assert manifest.manifest_version == 1
    assert [s.name for s in manifest.services] == [
        "config-server",
        "discovery-server",
        "customers-service",
        "visits-service",
        "vets-service",
        "api-gateway",
        "admin-server",
    ]
    assert [s.name for s in manifest.metrics_services] == [
        "customers-service",
        "visits-service",
        "vets-service",
        "api-gateway",
    ]
    assert len(manifest.monitoring_components) == 5
    assert [t.name for t in manifest.tunnels] == ["prometheus", "alertmanager", "grafana", "api-gateway"]


def test_image_names_follow_module_prefix():
    manifest = parse_manifest(DEFAULT_MANIFEST)
    assert manifest.images[0] == "springcommunity/spring-petclinic-config-server:latest"


def test_explicit_module_overrides_prefix(tmp_path):
    def mutate(payload):
        payload["services"][0]["module"] = "custom-config"

    manifest = parse_manifest(_write_manifest(tmp_path, mutate))
    assert manifest.module_for(manifest.services[0]) == "custom-config"
    assert manifest.image_for(manifest.services[0]) == "springcommunity/custom-config:latest"


def test_deploy_stage_without_wait(tmp_path):
    manifest = parse_manifest(DEFAULT_MANIFEST)
    waits = [stage.wait_for for stage in manifest.deploy_stages]
    assert waits == ["config-server", "discovery-server", None, "all"]


def test_missing_manifest_raises(tmp_path):
    with pytest.raises(FileNotFoundError, match="Lab manifest not found"):
        parse_manifest(tmp_path / "absent.yml")


def test_unsupported_version_raises(tmp_path):
    path = _write_manifest(tmp_path, lambda p: p.update(manifest_version=2))
    with pytest.raises(ValueError, match="unsupported manifest_version"):
        parse_manifest(path)


def test_duplicate_service_names_raise(tmp_path):
    def mutate(payload):
        payload["services"].append({"name": "config-server", "port": 9999})

    with pytest.raises(ValueError, match="duplicate names: config-server"):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_empty_services_raise(tmp_path):
    def mutate(payload):
        payload["services"] = []
        payload["deploy_stages"] = []

    with pytest.raises(ValueError, match="at least one service"):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_unknown_wait_for_raises(tmp_path):
    def mutate(payload):
        payload["deploy_stages"][0]["wait_for"] = "billing-service"

    with pytest.raises(ValueError, match="billing-service"):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_invalid_service_name_raises(tmp_path):
    def mutate(payload):
        payload["services"][0]["name"] = "Config_Server"

    with pytest.raises(ValueError, match="not a valid kubernetes name"):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_endpoint_path_needs_leading_slash(tmp_path):
    def mutate(payload):
        payload["endpoints"][0]["path"] = "-/healthy"

    with pytest.raises(ValueError, match="must start with '/'"):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_unknown_port_key_raises(tmp_path):
    def mutate(payload):
        payload["tunnels"][0]["port_key"] = "kibana"

    with pytest.raises(ValueError):
        parse_manifest(_write_manifest(tmp_path, mutate))


def test_non_mapping_root_raises(tmp_path):
    path = tmp_path / "lab.yml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="YAML mapping"):
        parse_manifest(path)
