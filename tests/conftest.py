"""
tests/conftest.py — Shared fixtures and path setup for all tests.

Adds the project root to sys.path so unit tests can import:
    from config.settings import Settings
    from scripts.provisioner import Provisioner, Pipeline, Step
    from scripts.health import Probe, Report
"""
import io
import pathlib
import subprocess
import sys

import pytest

# Make project root importable without installing as a package
PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rich.console import Console  # noqa: E402

from config.settings import Settings  # noqa: E402
from scripts.lab_manifest import DEFAULT_MANIFEST, parse_manifest  # noqa: E402


@pytest.fixture
def cfg():
    """Settings built from kwargs only: no .env, no os.environ."""
    return Settings(PROJECT_ROOT=str(PROJECT_ROOT), PROBE_WORKERS=1)


@pytest.fixture
def manifest():
    return parse_manifest(DEFAULT_MANIFEST)


@pytest.fixture
def out():
    """A Console writing to memory; read it back with out.file.getvalue()."""
    return Console(file=io.StringIO(), width=200, color_system=None)


class FakeRunner:
    """Stand-in for checks.run_command that records argv and answers by prefix."""

    def __init__(self, default=(0, "", "")):
        self.calls = []
        self.envs = []
        self.rules = []
        self.default = default

    def on(self, prefix, returncode=0, stdout="", stderr=""):
        self.rules.append((list(prefix), (returncode, stdout, stderr)))
        return self

    def __call__(self, argv, timeout=None, cwd=None, env=None):
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(env)
        for prefix, (rc, stdout, stderr) in self.rules:
            if argv[: len(prefix)] == prefix:
                return subprocess.CompletedProcess(argv, rc, stdout, stderr)
        rc, stdout, stderr = self.default
        return subprocess.CompletedProcess(argv, rc, stdout, stderr)


@pytest.fixture
def fake_runner(monkeypatch):
    """Route every ExternalProcess through a FakeRunner."""
    import scripts.checks as checks

    runner = FakeRunner()
    monkeypatch.setattr(checks, "run_command", runner)
    return runner


@pytest.fixture
def runner_for(monkeypatch):
    """Patch run_command on a module that imported it by name."""

    def _patch(module):
        runner = FakeRunner()
        monkeypatch.setattr(module, "run_command", runner)
        return runner

    return _patch
