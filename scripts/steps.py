"""
scripts/steps.py — The concrete monitoring-lab pipeline.

build_pipeline(cfg, manifest) returns the ordered steps the provisioner runs:

  docker      install and start the Docker daemon (apk)
  java        install OpenJDK 17 (apk)
  build       maven package + docker build per service
  kubectl     download the stable kubectl release
  kind        download kind KIND_VERSION
  helm        run the get-helm-3 installer
  cluster     create the kind cluster (optionally recreate)
  load        load service images into the kind node
  deploy      apply namespaces and staged manifests, wait for availability
  monitoring  helm install kube-prometheus-stack + ServiceMonitor/dashboards
  ngrok       install ngrok and register NGROK_AUTHTOKEN
  tunnels     render tunnel config, start ngrok in the background
  summary     print access URLs and useful commands

Every step except summary carries an idempotency check, so a second run of
the whole pipeline only re-prints the summary.
"""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

from scripts import output, tunnel
from scripts.checks import (
    AllOf,
    CallableCheck,
    Check,
    ExternalProcess,
    ToolCheck,
    Verdict,
    run_command,
)
from scripts.errors import ActionFailed, ReadyTimeout
from scripts.polling import wait_until
from scripts.provisioner import Pipeline, Step

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

logger = logging.getLogger(__name__)

KUBECTL_STABLE_URL = "https://dl.k8s.io/release/stable.txt"
KUBECTL_URL = "https://dl.k8s.io/release/{version}/bin/linux/{arch}/kubectl"
KIND_URL = "https://kind.sigs.k8s.io/dl/{version}/kind-linux-{arch}"
HELM_INSTALLER_URL = "https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3"
NGROK_URL = "https://bin.equinox.io/c/bNyj1mQVY4c/ngrok-v3-stable-linux-{arch}.tgz"
INSTALL_DIR = "/usr/local/bin"

_ARCH = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}


def host_arch(machine: str | None = None) -> str:
    """Map the host machine name to the release-artifact architecture."""
    machine = (machine or platform.machine()).lower()
    return _ARCH.get(machine, machine)


def _cmd(
    *argv: str,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    description: str | None = None,
) -> ExternalProcess:
    return ExternalProcess(list(argv), cwd=cwd, env=env, description=description)


def java_env(cfg: Settings) -> dict[str, str] | None:
    """Environment with JAVA_HOME first on PATH, or None when that JDK is absent."""
    home = Path(cfg.JAVA_HOME)
    if not (home / "bin").is_dir():
        return None
    path = os.environ.get("PATH", "")
    return {**os.environ, "JAVA_HOME": str(home), "PATH": f"{home / 'bin'}{os.pathsep}{path}"}


def _kubectl(cfg: Settings, *args: str) -> ExternalProcess:
    return _cmd("kubectl", "--context", cfg.kube_context, *args)


def _install_binary(url: str, name: str) -> list[Check]:
    tmp = f"/tmp/{name}"
    return [
        _cmd("curl", "-fsSLo", tmp, url, description=f"download {name}"),
        _cmd("chmod", "+x", tmp),
        _cmd("sudo", "mv", tmp, f"{INSTALL_DIR}/{name}"),
    ]


def _wait(cfg: Settings, check: Check, what: str | None = None) -> Verdict:
    return wait_until(
        check,
        timeout=cfg.READY_TIMEOUT_SECONDS,
        initial=cfg.POLL_INITIAL_SECONDS,
        maximum=cfg.POLL_MAX_SECONDS,
        attempt_timeout=cfg.COMMAND_TIMEOUT_SECONDS,
        what=what,
    )


# ---------------------------------------------------------------------------
# Checks reused by several steps
# ---------------------------------------------------------------------------


def image_present(image: str) -> ExternalProcess:
    return _cmd("docker", "image", "inspect", image, description=f"image {image}")


def docker_daemon() -> ExternalProcess:
    return _cmd("docker", "info", description="docker daemon")


def docker_running() -> AllOf:
    return AllOf([ToolCheck("docker"), docker_daemon()], description="docker installed and running")


def cluster_listed(cfg: Settings) -> ExternalProcess:
    return ExternalProcess(
        ["kind", "get", "clusters"],
        expect_output=rf"^{re.escape(cfg.CLUSTER_NAME)}$",
        description=f"kind cluster {cfg.CLUSTER_NAME}",
    )


def deployment_available(cfg: Settings, name: str) -> ExternalProcess:
    return ExternalProcess(
        [
            "kubectl",
            "--context",
            cfg.kube_context,
            "get",
            "deployment",
            name,
            "-n",
            cfg.APP_NAMESPACE,
            "-o",
            'jsonpath={.status.conditions[?(@.type=="Available")].status}',
        ],
        expect_output=r"^True$",
        description=f"deployment/{name} available",
    )


def all_deployments_available(cfg: Settings, manifest: LabManifest) -> AllOf:
    return AllOf(
        [deployment_available(cfg, s.name) for s in manifest.services],
        description=f"all deployments in {cfg.APP_NAMESPACE} available",
    )


def monitoring_applied(cfg: Settings, manifest: LabManifest) -> AllOf:
    """Helm release deployed and every extra monitoring manifest present in the cluster."""
    release = ExternalProcess(
        [
            "helm", "status", cfg.HELM_RELEASE_NAME,
            "--kube-context", cfg.kube_context,
            "-n", cfg.MONITORING_NAMESPACE,
        ],
        expect_output=r"^STATUS: deployed$",
        description=f"helm release {cfg.HELM_RELEASE_NAME} deployed",
    )
    applied = [
        ExternalProcess(
            ["kubectl", "--context", cfg.kube_context, "get", "-f", str(cfg.k8s_dir / m)],
            description=f"{m} applied",
        )
        for m in manifest.monitoring_manifests
    ]
    return AllOf([release, *applied], description="monitoring stack deployed")


def images_in_node(cfg: Settings, manifest: LabManifest) -> CallableCheck:
    """Every service image is listed by crictl on the control-plane node."""

    def _listed(timeout: float | None) -> Verdict:
        result = run_command(
            ["docker", "exec", cfg.control_plane_node, "crictl", "images"],
            timeout=timeout,
        )
        if result.returncode != 0:
            return Verdict(False, f"crictl images failed on {cfg.control_plane_node}")
        missing = [
            img for img in manifest.images if img.rsplit(":", 1)[0] not in result.stdout
        ]
        if missing:
            return Verdict(False, f"{len(missing)} image(s) not loaded", detail=", ".join(missing))
        return Verdict(True, f"{len(manifest.images)} image(s) loaded")

    return CallableCheck(_listed, f"images loaded into {cfg.control_plane_node}")


# ---------------------------------------------------------------------------
# Step actions
# ---------------------------------------------------------------------------


def start_dockerd(cfg: Settings) -> subprocess.Popen:
    log_path = Path(cfg.DOCKERD_LOG_PATH)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log:
        proc = subprocess.Popen(
            ["sudo", "dockerd", "--host=unix:///var/run/docker.sock"],
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info("dockerd started (pid %s), log %s", proc.pid, log_path)
    return proc


def make_install_docker(out: Console):
    def install_docker(cfg: Settings) -> None:
        timeout = cfg.COMMAND_TIMEOUT_SECONDS
        if not ToolCheck("docker").evaluate().ok:
            _cmd("sudo", "apk", "update").perform(timeout)
            _cmd("sudo", "apk", "add", "docker", "docker-cli", "docker-compose", "openrc").perform(timeout)
            if not _cmd("sudo", "rc-update", "add", "docker", "default").evaluate(timeout).ok:
                logger.warning("rc-update add docker failed; docker will not start on boot")
        started = _cmd("sudo", "service", "docker", "start").evaluate(timeout)
        if not started.ok:
            logger.warning("service docker start failed (%s); running dockerd directly", started.message)
            start_dockerd(cfg)
        _wait(cfg, docker_daemon())
        user = run_command(["whoami"], timeout=timeout).stdout.strip()
        if user and not _cmd("sudo", "addgroup", user, "docker").evaluate(timeout).ok:
            output.status_line("warn", f"could not add {user} to the docker group", out=out)

    return install_docker


def make_build_images(manifest: LabManifest, out: Console):
    def build_images(cfg: Settings) -> None:
        root = cfg.project_root
        timeout = cfg.COMMAND_TIMEOUT_SECONDS
        modules = ",".join(manifest.module_for(s) for s in manifest.services)
        _cmd("chmod", "+x", "mvnw", cwd=root).perform(timeout)
        _cmd(
            "./mvnw", "clean", "package", "-DskipTests", "-pl", modules, "-am",
            cwd=root,
            env=java_env(cfg),
            description="maven package",
        ).perform(timeout)

        dockerfile = root / manifest.dockerfile
        for svc in manifest.services:
            target = root / manifest.module_for(svc) / "target"
            jars = sorted(target.glob("*.jar")) if target.is_dir() else []
            if not jars:
                output.status_line("warn", f"JAR not found for {svc.name}, skipping", out=out)
                continue
            image = manifest.image_for(svc)
            logger.info("building %s (port %s)", image, svc.port)
            _cmd(
                "docker", "build",
                "-f", str(dockerfile),
                "--build-arg", f"ARTIFACT_NAME={jars[0].stem}",
                "--build-arg", f"EXPOSED_PORT={svc.port}",
                "-t", image,
                str(target),
                description=f"docker build {image}",
            ).perform(timeout)

    return build_images


def install_kubectl(cfg: Settings) -> None:
    timeout = cfg.COMMAND_TIMEOUT_SECONDS
    stable = run_command(["curl", "-fsSL", KUBECTL_STABLE_URL], timeout=timeout)
    version = stable.stdout.strip()
    if stable.returncode != 0 or not version:
        raise ActionFailed("could not resolve the stable kubectl release", stable.stderr.strip() or None)
    url = KUBECTL_URL.format(version=version, arch=host_arch())
    for check in _install_binary(url, "kubectl"):
        check.perform(timeout)


def install_kind(cfg: Settings) -> None:
    url = KIND_URL.format(version=cfg.KIND_VERSION, arch=host_arch())
    for check in _install_binary(url, "kind"):
        check.perform(cfg.COMMAND_TIMEOUT_SECONDS)


def make_create_cluster(manifest: LabManifest):
    def create_cluster(cfg: Settings) -> None:
        timeout = cfg.COMMAND_TIMEOUT_SECONDS
        if cfg.RECREATE_CLUSTER and cluster_listed(cfg).evaluate(timeout).ok:
            logger.info("deleting existing cluster %s", cfg.CLUSTER_NAME)
            _cmd("kind", "delete", "cluster", "--name", cfg.CLUSTER_NAME).perform(timeout)
        _cmd(
            "kind", "create", "cluster",
            "--name", cfg.CLUSTER_NAME,
            "--config", str(cfg.k8s_dir / manifest.kind_config),
            "--wait", "60s",
        ).perform(timeout)
        _cmd("kubectl", "cluster-info", "--context", cfg.kube_context).perform(timeout)

    return create_cluster


def make_load_images(manifest: LabManifest, out: Console):
    def load_images(cfg: Settings) -> None:
        timeout = cfg.COMMAND_TIMEOUT_SECONDS
        for image in manifest.images:
            if not image_present(image).evaluate(timeout).ok:
                output.status_line("warn", f"image {image} not found locally, skipping", out=out)
                continue
            _cmd("kind", "load", "docker-image", image, "--name", cfg.CLUSTER_NAME).perform(timeout)

    return load_images


def make_deploy(manifest: LabManifest):
    def deploy(cfg: Settings) -> None:
        timeout = cfg.COMMAND_TIMEOUT_SECONDS
        _kubectl(cfg, "apply", "-f", str(cfg.k8s_dir / manifest.namespaces_manifest)).perform(timeout)
        for stage in manifest.deploy_stages:
            logger.info("deploying %s", stage.label or stage.manifest)
            _kubectl(cfg, "apply", "-f", str(cfg.k8s_dir / stage.manifest)).perform(timeout)
            if stage.wait_for is None:
                continue
            if stage.wait_for == "all":
                _wait(cfg, all_deployments_available(cfg, manifest))
            else:
                _wait(cfg, deployment_available(cfg, stage.wait_for))

    return deploy


def monitoring_actions(cfg: Settings, manifest: LabManifest) -> list[Check]:
    chart = manifest.helm
    actions: list[Check] = [
        _cmd("helm", "repo", "add", chart.repo_name, chart.repo_url, "--force-update"),
        _cmd("helm", "repo", "update"),
        _cmd(
            "helm", "upgrade", "--install", cfg.HELM_RELEASE_NAME, chart.chart,
            "--kube-context", cfg.kube_context,
            "--namespace", cfg.MONITORING_NAMESPACE,
            "--create-namespace",
            "--values", str(cfg.k8s_dir / chart.values_file),
            "--wait",
            "--timeout", chart.timeout,
            description=f"helm upgrade --install {cfg.HELM_RELEASE_NAME}",
        ),
    ]
    actions.extend(
        _kubectl(cfg, "apply", "-f", str(cfg.k8s_dir / m)) for m in manifest.monitoring_manifests
    )
    return actions


def setup_ngrok(cfg: Settings) -> None:
    timeout = cfg.COMMAND_TIMEOUT_SECONDS
    if shutil.which("ngrok") is None:
        archive = "/tmp/ngrok.tgz"
        for check in (
            _cmd("curl", "-fsSLo", archive, NGROK_URL.format(arch=host_arch()), description="download ngrok"),
            _cmd("tar", "-xzf", archive, "-C", "/tmp/"),
            _cmd("chmod", "+x", "/tmp/ngrok"),
            _cmd("sudo", "mv", "/tmp/ngrok", f"{INSTALL_DIR}/ngrok"),
            _cmd("rm", "-f", archive),
        ):
            check.perform(timeout)
    tunnel.ensure_authtoken(cfg, timeout)


def make_start_tunnels(manifest: LabManifest, out: Console):
    def start_tunnels(cfg: Settings) -> None:
        tunnel.write_tunnel_config(cfg, manifest)
        output.status_line("warn", "Free ngrok accounts only support 1 tunnel at a time.", out=out)
        proc = tunnel.start_all_background(cfg)
        listed = tunnel.tunnels_listed(cfg)

        def _settled(timeout: float | None) -> Verdict:
            if proc.poll() is not None:
                return Verdict(True, f"ngrok exited with code {proc.returncode}")
            return listed.evaluate(timeout)

        try:
            _wait(cfg, CallableCheck(_settled, "ngrok tunnels"))
        except ReadyTimeout as exc:
            logger.warning("ngrok tunnels did not come up: %s", exc)

        if proc.poll() is not None:
            output.status_line("warn", "ngrok failed to start with all tunnels.", out=out)
            out.print("  Run these commands individually to start tunnels:")
            for line in tunnel.fallback_commands(cfg, manifest):
                out.print(f"    {line}", markup=False)
            return

        try:
            urls = tunnel.fetch_tunnel_urls(cfg.NGROK_API_URL, timeout=cfg.PROBE_TIMEOUT_SECONDS)
        except (OSError, ValueError):
            output.status_line("warn", f"Could not fetch tunnel URLs. Check {cfg.NGROK_API_URL}", out=out)
            return
        for name, url in urls:
            out.print(f"  {name:20s} -> {url}", markup=False)
        out.print(f"  ngrok Web Inspector: {cfg.NGROK_API_URL}", markup=False)

    return start_tunnels


def make_summary(manifest: LabManifest, out: Console):
    def summary(cfg: Settings) -> None:
        output.banner("Spring PetClinic Monitoring Lab - Ready!", out=out, style="bold green")
        out.print("\n[blue]Local Access (via Kind NodePorts):[/blue]")
        for endpoint in manifest.endpoints:
            line = f"  {endpoint.name + ':':18s} {cfg.local_url(endpoint.port_key)}"
            if endpoint.port_key == "grafana":
                line += f"  ({cfg.GRAFANA_ADMIN_USER} / $GRAFANA_ADMIN_PASSWORD)"
            out.print(line, markup=False)

        out.print("\n[blue]Kubernetes:[/blue]")
        out.print(f"  kubectl --context {cfg.kube_context} get pods -n {cfg.APP_NAMESPACE}", markup=False)
        out.print(f"  kubectl --context {cfg.kube_context} get pods -n {cfg.MONITORING_NAMESPACE}", markup=False)

        out.print("\n[blue]ngrok External Access:[/blue]")
        out.print(f"  Check ngrok dashboard: {cfg.NGROK_API_URL}", markup=False)
        out.print("  Or run individual tunnels:")
        for line in tunnel.fallback_commands(cfg, manifest):
            out.print(f"    {line}", markup=False)

        out.print("\n[blue]Useful Commands:[/blue]")
        out.print("  python3 scripts/verify.py", markup=False)
        out.print(f"  curl -s {cfg.local_url('prometheus', '/api/v1/targets')}", markup=False)
        out.print(f"  # Cleanup:\n  kind delete cluster --name {cfg.CLUSTER_NAME}", markup=False)
        out.print()

    return summary


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def build_pipeline(cfg: Settings, manifest: LabManifest, out: Console | None = None) -> Pipeline:
    out = out or output.console
    return Pipeline(
        (
            Step("docker", "Installing Docker", make_install_docker(out), docker_running()),
            Step(
                "java",
                "Checking Java",
                _cmd("sudo", "apk", "add", "openjdk17"),
                ToolCheck("java"),
            ),
            Step(
                "build",
                "Building Docker Images for all microservices",
                make_build_images(manifest, out),
                AllOf([image_present(img) for img in manifest.images], description="service images built"),
                requires=("docker", "java"),
            ),
            Step("kubectl", "Installing kubectl", install_kubectl, ToolCheck("kubectl")),
            Step("kind", "Installing Kind (Kubernetes in Docker)", install_kind, ToolCheck("kind")),
            Step(
                "helm",
                "Installing Helm",
                _cmd("bash", "-c", f"curl -fsSL {HELM_INSTALLER_URL} | bash", description="get-helm-3"),
                ToolCheck("helm"),
            ),
            Step(
                "cluster",
                "Creating Kind Cluster",
                make_create_cluster(manifest),
                None if cfg.RECREATE_CLUSTER else cluster_listed(cfg),
                requires=("docker", "kind", "kubectl"),
            ),
            Step(
                "load",
                "Loading Docker images into Kind cluster",
                make_load_images(manifest, out),
                images_in_node(cfg, manifest),
                requires=("docker", "kind"),
            ),
            Step(
                "deploy",
                "Deploying PetClinic Microservices to Kubernetes",
                make_deploy(manifest),
                all_deployments_available(cfg, manifest),
                requires=("kubectl",),
            ),
            Step(
                "monitoring",
                "Deploying Prometheus + Grafana + Alertmanager (kube-prometheus-stack)",
                monitoring_actions(cfg, manifest),
                monitoring_applied(cfg, manifest),
                requires=("helm", "kubectl"),
            ),
            Step(
                "ngrok",
                "Installing ngrok",
                setup_ngrok,
                ExternalProcess(["ngrok", "config", "check"], description="ngrok configured"),
            ),
            Step(
                "tunnels",
                "Setting up ngrok tunnels",
                make_start_tunnels(manifest, out),
                tunnel.tunnels_listed(cfg),
                requires=("ngrok",),
            ),
            Step("summary", "SETUP COMPLETE - Summary", make_summary(manifest, out)),
        )
    )
