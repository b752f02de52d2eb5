#!/usr/bin/env python3
"""
scripts/tunnel.py — ngrok tunnels for the monitoring lab UIs.

Renders templates/ngrok-tunnels.yml.j2 into NGROK_CONFIG_PATH, registers the
authtoken when ngrok has none, and starts tunnels either one at a time in the
foreground (free ngrok accounts) or all at once (paid plans).

The authtoken is never defaulted: it must come from NGROK_AUTHTOKEN.

Usage:
    python3 scripts/tunnel.py grafana
    python3 scripts/tunnel.py all
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import subprocess
import sys
import urllib.error
from typing import TYPE_CHECKING, Any

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from jinja2 import Environment, FileSystemLoader, StrictUndefined  # noqa: E402
from pydantic import ValidationError  # noqa: E402
from rich.markup import escape  # noqa: E402

from config.settings import load_settings  # noqa: E402
from scripts import output  # noqa: E402
from scripts.checks import CallableCheck, ExternalProcess, Verdict, fetch_json  # noqa: E402
from scripts.errors import ActionFailed  # noqa: E402

if TYPE_CHECKING:
    from config.settings import Settings
    from scripts.lab_manifest import LabManifest

logger = logging.getLogger(__name__)

TEMPLATE_DIR = _ROOT / "templates"
TUNNEL_TEMPLATE = "ngrok-tunnels.yml.j2"

# CLI target -> Settings.ports key
TARGETS = {
    "grafana": "grafana",
    "prometheus": "prometheus",
    "alertmanager": "alertmanager",
    "gateway": "gateway",
}


def build_jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def tunnel_context(cfg: Settings, manifest: LabManifest) -> dict[str, Any]:
    return {
        "tunnels": [
            {
                "name": t.name,
                "port": cfg.ports[t.port_key],
                "description": t.description or t.name,
            }
            for t in manifest.tunnels
        ]
    }


def render_tunnel_config(cfg: Settings, manifest: LabManifest) -> str:
    template = build_jinja_env().get_template(TUNNEL_TEMPLATE)
    return template.render(**tunnel_context(cfg, manifest))


def write_tunnel_config(cfg: Settings, manifest: LabManifest) -> pathlib.Path:
    path = cfg.ngrok_config_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_tunnel_config(cfg, manifest), encoding="utf-8")
    logger.info("wrote ngrok tunnel config %s", path)
    return path


def ensure_authtoken(cfg: Settings, timeout: float | None = None) -> None:
    """Register NGROK_AUTHTOKEN with ngrok unless its config already validates."""
    if ExternalProcess(["ngrok", "config", "check"]).evaluate(timeout).ok:
        return
    if not cfg.NGROK_AUTHTOKEN:
        raise ActionFailed(
            "NGROK_AUTHTOKEN is not set",
            "export NGROK_AUTHTOKEN=<token> or add it to .env",
        )
    ExternalProcess(
        ["ngrok", "config", "add-authtoken", cfg.NGROK_AUTHTOKEN],
        description="ngrok config add-authtoken ****",
    ).perform(timeout)


def fetch_tunnel_urls(api_url: str, timeout: float | None = None) -> list[tuple[str, str]]:
    payload = fetch_json(f"{api_url.rstrip('/')}/api/tunnels", timeout=timeout)
    tunnels = payload.get("tunnels", []) if isinstance(payload, dict) else []
    return [(t.get("name", "?"), t.get("public_url", "?")) for t in tunnels if isinstance(t, dict)]


def tunnels_listed(cfg: Settings) -> CallableCheck:
    """Check: the local ngrok agent API answers and lists at least one tunnel."""

    def _listed(timeout: float | None) -> Verdict:
        try:
            urls = fetch_tunnel_urls(cfg.NGROK_API_URL, timeout=timeout)
        except (urllib.error.URLError, ValueError) as exc:
            return Verdict(False, f"ngrok API not reachable at {cfg.NGROK_API_URL}", detail=str(exc))
        if not urls:
            return Verdict(False, "ngrok API lists no tunnels")
        return Verdict(True, f"{len(urls)} tunnel(s) up")

    return CallableCheck(_listed, "ngrok tunnels listed")


def start_all_background(cfg: Settings) -> subprocess.Popen:
    log_path = pathlib.Path(cfg.NGROK_LOG_PATH)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "ab") as log:
        proc = subprocess.Popen(
            ["ngrok", "start", "--config", str(cfg.ngrok_config_path), "--all"],
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info("ngrok started (pid %s), log %s", proc.pid, log_path)
    return proc


def fallback_commands(cfg: Settings, manifest: LabManifest) -> list[str]:
    return [f"ngrok http {cfg.ports[t.port_key]}  # {t.name}" for t in manifest.tunnels]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Start ngrok tunnels one at a time (free accounts) or all at once (paid plans).",
    )
    parser.add_argument("target", nargs="?", default="")
    args = parser.parse_args(argv)

    if args.target not in (*TARGETS, "all"):
        print(f"Usage: {parser.prog} {{{'|'.join((*TARGETS, 'all'))}}}")
        print()
        print("Free ngrok accounts: Run one tunnel at a time")
        print("Paid ngrok accounts: Use 'all' to start all tunnels")
        return 1

    try:
        cfg = load_settings()
    except (ValidationError, ValueError) as exc:
        output.console.print(f"[red]Configuration error:[/red] {escape(str(exc))}", highlight=False)
        return 2
    output.configure_logging(cfg.LOG_LEVEL)
    try:
        ensure_authtoken(cfg, timeout=cfg.COMMAND_TIMEOUT_SECONDS)
    except (ActionFailed, FileNotFoundError) as exc:
        output.console.print(f"[red]{escape(str(exc))}[/red]")
        return 1

    if args.target == "all":
        output.console.print("[green]Starting ALL ngrok tunnels (requires paid ngrok plan)...[/green]")
        argv_ngrok = ["ngrok", "start", "--config", str(cfg.ngrok_config_path), "--all"]
    else:
        port = cfg.ports[TARGETS[args.target]]
        output.console.print(f"[green]Starting ngrok tunnel for {args.target} (port {port})...[/green]")
        if args.target == "grafana":
            output.console.print(f"[yellow]Login: {cfg.GRAFANA_ADMIN_USER} / $GRAFANA_ADMIN_PASSWORD[/yellow]")
        argv_ngrok = ["ngrok", "http", str(port)]

    try:
        return subprocess.run(argv_ngrok).returncode
    except FileNotFoundError:
        output.console.print("[red]ngrok not found on PATH (run: scripts/setup_lab.py run ngrok)[/red]")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
