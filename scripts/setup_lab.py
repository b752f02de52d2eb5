#!/usr/bin/env python3
"""
scripts/setup_lab.py — Provision the Spring PetClinic monitoring lab.

Runs the ordered, idempotent pipeline from scripts/steps.py: a step whose
check already passes is skipped, and the first failing step stops the run.
Re-running resumes where the last run stopped.

Usage:
    python3 scripts/setup_lab.py               # same as: run all
    python3 scripts/setup_lab.py run cluster   # one step in isolation
    python3 scripts/setup_lab.py list          # step names in order

Exit codes:
  0  pipeline (or step) completed
  1  a step failed or a required tool is missing
  2  usage, configuration, or lab manifest error
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys

_ROOT = pathlib.Path(__file__).parent.parent
sys.path.insert(0, str(_ROOT))

from pydantic import ValidationError  # noqa: E402
from rich.markup import escape  # noqa: E402

from config.settings import load_settings  # noqa: E402
from scripts import output  # noqa: E402
from scripts.errors import DependencyMissing, StepFailed  # noqa: E402
from scripts.lab_manifest import parse_manifest  # noqa: E402
from scripts.provisioner import Provisioner  # noqa: E402
from scripts.steps import build_pipeline  # noqa: E402

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Provision the Spring PetClinic monitoring lab (kind + kube-prometheus-stack + ngrok).",
    )
    parser.add_argument("--env-file", default=".env", help="env file merged under os.environ")
    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="run every step, or one named step")
    run.add_argument("step", nargs="?", default="all")
    sub.add_parser("list", help="list step names in pipeline order")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return EXIT_OK if exc.code == 0 else EXIT_USAGE
    command = args.command or "run"
    step_name = getattr(args, "step", "all")

    try:
        cfg = load_settings(args.env_file)
        manifest = parse_manifest(cfg.lab_manifest_path)
    except (ValidationError, ValueError, FileNotFoundError) as exc:
        output.console.print(f"[red]Configuration error:[/red] {escape(str(exc))}", highlight=False)
        return EXIT_USAGE

    output.configure_logging(cfg.LOG_LEVEL)
    pipeline = build_pipeline(cfg, manifest)

    if command == "list":
        for name in pipeline.names():
            print(name)
        return EXIT_OK

    if step_name != "all" and step_name not in pipeline.names():
        output.console.print(
            f"Usage: {parser.prog} run {{all|{'|'.join(pipeline.names())}}}", markup=False
        )
        return EXIT_USAGE

    output.print_settings(cfg.describe())
    logger.info("project root: %s", cfg.project_root)
    provisioner = Provisioner(pipeline, cfg)
    try:
        if step_name == "all":
            provisioner.run()
        else:
            provisioner.run_step(step_name)
    except StepFailed as exc:
        output.console.print(f"[red]Provisioning stopped:[/red] {escape(str(exc))}", highlight=False)
        if exc.completed:
            done = ", ".join(f"{r.name} ({r.status})" for r in exc.completed)
            output.console.print(f"  completed before failure: {done}", markup=False)
        output.console.print("  Fix the problem and re-run; finished steps will be skipped.")
        return EXIT_STEP_FAILED
    except DependencyMissing as exc:
        output.console.print(f"[red]Provisioning stopped:[/red] {escape(str(exc))}", highlight=False)
        return EXIT_STEP_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
