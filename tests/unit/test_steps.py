"""
tests/unit/test_steps.py — The concrete lab pipeline in scripts/steps.py.

Every external command is answered by the fake_runner fixture; readiness
waits are replaced so nothing polls.
"""

import pytest

import scripts.steps as steps
from config.settings import Settings
from scripts.checks import Verdict
from scripts.errors import StepFailed
from scripts.provisioner import STATUS_DONE, STATUS_SATISFIED, Provisioner

PIPELINE_ORDER = [
    "docker",
    "java",
    "build",
    "kubectl",
    "kind",
    "helm",
    "cluster",
    "load",
    "deploy",
    "monitoring",
    "ngrok",
    "tunnels",
    "summary",
]


@pytest.fixture
def waits(monkeypatch):
    """Record readiness waits instead of polling."""
    seen = []

    def _wait_until(check, **kwargs):
        seen.append(check.description)
        return Verdict(True, "ready")

    monkeypatch.setattr(steps, "wait_until", _wait_until)
    return seen


def test_pipeline_order(cfg, manifest, out):
    assert steps.build_pipeline(cfg, manifest, out).names() == PIPELINE_ORDER


def test_only_summary_lacks_a_check(cfg, manifest, out):
    unchecked = [s.name for s in steps.build_pipeline(cfg, manifest, out).steps if s.check is None]
    assert unchecked == ["summary"]


def test_recreate_cluster_drops_cluster_check(manifest, out):
    pipeline = steps.build_pipeline(Settings(RECREATE_CLUSTER=True), manifest, out)
    assert pipeline.get("cluster").check is None


@pytest.mark.parametrize(
    "machine, arch",
    [("x86_64", "amd64"), ("aarch64", "arm64"), ("arm64", "arm64"), ("riscv64", "riscv64")],
)
def test_host_arch(machine, arch):
    assert steps.host_arch(machine) == arch


# ---------------------------------------------------------------------------
# Idempotency checks
# ---------------------------------------------------------------------------


def test_cluster_check_matches_exact_name(cfg, fake_runner):
    fake_runner.on(["kind", "get", "clusters"], stdout="petclinic-monitoring-old\n")
    assert not steps.cluster_listed(cfg).evaluate(5).ok
    fake_runner.rules.clear()
    fake_runner.on(["kind", "get", "clusters"], stdout="kind\npetclinic-monitoring\n")
    assert steps.cluster_listed(cfg).evaluate(5).ok


def test_images_in_node(cfg, manifest, runner_for):
    runner = runner_for(steps)
    listing = "\n".join(f"docker.io/{img.rsplit(':', 1)[0]}   latest   abc123" for img in manifest.images)
    runner.on(["docker", "exec"], stdout=listing)
    verdict = steps.images_in_node(cfg, manifest).evaluate(5)
    assert verdict.ok
    assert runner.calls[0] == ["docker", "exec", "petclinic-monitoring-control-plane", "crictl", "images"]


def test_images_in_node_reports_missing(cfg, manifest, runner_for):
    runner = runner_for(steps)
    runner.on(["docker", "exec"], stdout="docker.io/springcommunity/spring-petclinic-config-server latest x\n")
    verdict = steps.images_in_node(cfg, manifest).evaluate(5)
    assert not verdict.ok
    assert verdict.message == "6 image(s) not loaded"


def test_deploy_check_requires_every_deployment(cfg, manifest, fake_runner):
    fake_runner.on(["kubectl"], stdout="True")
    assert steps.all_deployments_available(cfg, manifest).evaluate(5).ok
    assert len(fake_runner.calls) == 7


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def test_build_skips_services_without_jar(tmp_path, manifest, out, fake_runner):
    cfg = Settings(PROJECT_ROOT=str(tmp_path))
    target = tmp_path / "spring-petclinic-api-gateway" / "target"
    target.mkdir(parents=True)
    (target / "spring-petclinic-api-gateway-3.2.0.jar").write_bytes(b"")

    steps.make_build_images(manifest, out)(cfg)

    builds = [argv for argv in fake_runner.calls if argv[:2] == ["docker", "build"]]
    assert len(builds) == 1
    assert "ARTIFACT_NAME=spring-petclinic-api-gateway-3.2.0" in builds[0]
    assert "EXPOSED_PORT=8080" in builds[0]
    assert "springcommunity/spring-petclinic-api-gateway:latest" in builds[0]
    assert "JAR not found for config-server" in out.file.getvalue()

    maven = next(argv for argv in fake_runner.calls if argv[0] == "./mvnw")
    assert "-DskipTests" in maven
    assert maven[maven.index("-pl") + 1].startswith("spring-petclinic-config-server,")


def test_deploy_applies_stages_and_waits(cfg, manifest, fake_runner, waits):
    steps.make_deploy(manifest)(cfg)
    applied = [argv[-1].rsplit("/", 1)[-1] for argv in fake_runner.calls if "apply" in argv]
    assert applied == [
        "namespaces.yaml",
        "01-config-server.yaml",
        "02-discovery-server.yaml",
        "03-business-services.yaml",
        "04-api-gateway-admin.yaml",
    ]
    assert waits == [
        "deployment/config-server available",
        "deployment/discovery-server available",
        "all deployments in petclinic available",
    ]


def test_cluster_recreate_deletes_existing(manifest, fake_runner):
    cfg = Settings(RECREATE_CLUSTER=True)
    fake_runner.on(["kind", "get", "clusters"], stdout="petclinic-monitoring\n")
    steps.make_create_cluster(manifest)(cfg)
    commands = [argv[:3] for argv in fake_runner.calls]
    assert ["kind", "delete", "cluster"] in commands
    assert commands.index(["kind", "delete", "cluster"]) < commands.index(["kind", "create", "cluster"])


def test_load_skips_absent_images(cfg, manifest, out, fake_runner):
    fake_runner.on(["docker", "image", "inspect", "springcommunity/spring-petclinic-vets-service:latest"])
    fake_runner.on(["docker", "image", "inspect"], returncode=1)
    steps.make_load_images(manifest, out)(cfg)
    loads = [argv for argv in fake_runner.calls if argv[:2] == ["kind", "load"]]
    assert loads == [
        [
            "kind",
            "load",
            "docker-image",
            "springcommunity/spring-petclinic-vets-service:latest",
            "--name",
            "petclinic-monitoring",
        ]
    ]


def test_monitoring_actions(cfg, manifest):
    described = [check.description for check in steps.monitoring_actions(cfg, manifest)]
    assert described[2] == "helm upgrade --install prometheus"
    assert len(described) == 3 + len(manifest.monitoring_manifests)


def test_ngrok_step_without_token_fails(fake_runner, monkeypatch):
    monkeypatch.setattr(steps.shutil, "which", lambda name: f"/usr/local/bin/{name}")
    fake_runner.on(["ngrok", "config", "check"], returncode=1)
    with pytest.raises(steps.ActionFailed, match="NGROK_AUTHTOKEN"):
        steps.setup_ngrok(Settings())


def test_summary_hides_grafana_password(manifest, out):
    cfg = Settings(GRAFANA_ADMIN_PASSWORD="s3cret-pw")
    steps.make_summary(manifest, out)(cfg)
    text = out.file.getvalue()
    assert "s3cret-pw" not in text
    assert "http://localhost:30030" in text
    assert "kind delete cluster --name petclinic-monitoring" in text


def test_build_exports_java_home(tmp_path, manifest, out, fake_runner):
    jdk = tmp_path / "jdk"
    (jdk / "bin").mkdir(parents=True)
    cfg = Settings(PROJECT_ROOT=str(tmp_path), JAVA_HOME=str(jdk))

    steps.make_build_images(manifest, out)(cfg)

    maven = next(i for i, argv in enumerate(fake_runner.calls) if argv[0] == "./mvnw")
    env = fake_runner.envs[maven]
    assert env["JAVA_HOME"] == str(jdk)
    assert env["PATH"].startswith(str(jdk / "bin"))


def test_java_env_absent_jdk(tmp_path):
    assert steps.java_env(Settings(JAVA_HOME=str(tmp_path / "missing"))) is None


# ---------------------------------------------------------------------------
# Re-running a step that stopped partway
# ---------------------------------------------------------------------------


@pytest.fixture
def tools_on_path(monkeypatch):
    monkeypatch.setattr(steps.shutil, "which", lambda name: f"/usr/local/bin/{name}")


def _run(cfg, manifest, out, name):
    return Provisioner(steps.build_pipeline(cfg, manifest, out), cfg, out=out).run_step(name)


def test_monitoring_rerun_applies_missing_manifests(cfg, manifest, out, fake_runner, tools_on_path):
    kubectl = ["kubectl", "--context", cfg.kube_context]
    fake_runner.on(["helm", "status"], returncode=1, stderr="release: not found")
    fake_runner.on(kubectl + ["apply"], returncode=1, stderr="connection refused")
    with pytest.raises(StepFailed):
        _run(cfg, manifest, out, "monitoring")

    # helm finished on the first run; the extra manifests never landed
    fake_runner.rules.clear()
    fake_runner.calls.clear()
    fake_runner.on(["helm", "status"], stdout="NAME: prometheus\nSTATUS: deployed\n")
    fake_runner.on(kubectl + ["get", "-f"], returncode=1, stderr="NotFound")

    record = _run(cfg, manifest, out, "monitoring")

    assert record.status == STATUS_DONE
    applied = [argv[-1].rsplit("/", 1)[-1] for argv in fake_runner.calls if "apply" in argv]
    assert applied == [m.rsplit("/", 1)[-1] for m in manifest.monitoring_manifests]


def test_monitoring_satisfied_when_everything_present(cfg, manifest, out, fake_runner, tools_on_path):
    fake_runner.on(["helm", "status"], stdout="STATUS: deployed\n")
    record = _run(cfg, manifest, out, "monitoring")
    assert record.status == STATUS_SATISFIED
    assert not [argv for argv in fake_runner.calls if "apply" in argv or argv[:2] == ["helm", "upgrade"]]


def test_docker_rerun_starts_dead_daemon(cfg, manifest, out, fake_runner, runner_for, tools_on_path, waits):
    runner_for(steps)
    fake_runner.on(["docker", "info"], returncode=1, stderr="Cannot connect to the Docker daemon")
    record = _run(cfg, manifest, out, "docker")

    assert record.status == STATUS_DONE
    assert ["sudo", "service", "docker", "start"] in fake_runner.calls
    assert not [argv for argv in fake_runner.calls if argv[:2] == ["sudo", "apk"]]
    assert waits == ["docker daemon"]


def test_docker_falls_back_to_dockerd(
    cfg, manifest, out, fake_runner, runner_for, tools_on_path, waits, monkeypatch
):
    runner_for(steps)
    started = []
    monkeypatch.setattr(steps, "start_dockerd", lambda cfg: started.append(cfg))
    fake_runner.on(["docker", "info"], returncode=1)
    fake_runner.on(["sudo", "service", "docker", "start"], returncode=1, stderr="service not found")

    _run(cfg, manifest, out, "docker")

    assert len(started) == 1
    assert waits == ["docker daemon"]


def test_docker_satisfied_only_with_running_daemon(cfg, manifest, out, fake_runner, tools_on_path):
    fake_runner.on(["docker", "info"], stdout="Server Version: 27.0\n")
    assert _run(cfg, manifest, out, "docker").status == STATUS_SATISFIED
