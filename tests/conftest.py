"""Shared test fixtures for preview host tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from fastapi.testclient import TestClient

from preview_host.config import settings
from preview_host.deps import ServiceContainer
from preview_host.exceptions import CommandFailed, PreviewHostError
from preview_host.main import app
from preview_host.managers.commands import CommandResult, CommandRunner
from preview_host.managers.installer import DependencyInstaller
from preview_host.managers.registry import PreviewRegistry
from preview_host.managers.staging import ProjectStaging
from preview_host.models.preview import LogRing

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable, Generator

# Dev server stand-in: answers HTTP on the allocated port
HTTP_SERVER_COMMAND = [sys.executable, "-m", "http.server", "{port}", "--bind", "127.0.0.1"]

# Installer stand-in: creates the artifact the dev server needs
INSTALL_SCRIPT = (
    "import pathlib; "
    "p = pathlib.Path('node_modules/.bin'); "
    "p.mkdir(parents=True, exist_ok=True); "
    "(p / 'next').touch()"
)


# ============================================
# Settings Fixtures
# ============================================


def _make_template(root: Path) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "package.json").write_text('{"name": "template", "private": true}')
    (root / "src").mkdir(exist_ok=True)
    (root / "src" / "page.tsx").write_text("export default function Page() { return null }\n")
    (root / "node_modules" / "left-pad").mkdir(parents=True, exist_ok=True)
    (root / ".next").mkdir(exist_ok=True)
    return root


@pytest.fixture(autouse=True)
def test_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Any:
    """Point every path at tmp_path and make timings test-friendly."""
    farcaster = _make_template(tmp_path / "templates" / "farcaster")
    web3 = _make_template(tmp_path / "templates" / "web3")
    (web3 / "contracts").mkdir()

    overrides: dict[str, Any] = {
        "environment": "test",
        "preview_auth_token": "",
        "railway_environment": False,
        "force_external_deployment": False,
        "previews_root": str(tmp_path / "previews"),
        "pnpm_store_dir": str(tmp_path / "store"),
        "farcaster_boilerplate_dir": str(farcaster),
        "web3_boilerplate_dir": str(web3),
        "base_port": 47100,
        "port_window": 200,
        "readiness_timeout_seconds": 10.0,
        "restart_readiness_timeout_seconds": 10.0,
        "readiness_poll_interval_seconds": 0.05,
        "stop_grace_seconds": 2.0,
        "dir_remove_backoff_seconds": 0.01,
        "install_program": sys.executable,
        "install_args": ["-c", INSTALL_SCRIPT],
        "dev_command": list(HTTP_SERVER_COMMAND),
        "enable_vercel_deployment": False,
        "enable_netlify_deployment": False,
        "enable_contract_deployment": False,
        "enable_custom_domains": False,
        "deployment_token_secret": "",
        "netlify_token": "",
        "vercel_team_id": None,
        "miniapp_creator_url": "http://creator.test",
        "deploy_response_threshold_seconds": 5.0,
    }
    for name, value in overrides.items():
        monkeypatch.setattr(settings, name, value)

    ServiceContainer.clear_instance()
    yield settings
    ServiceContainer.clear_instance()


@pytest.fixture
def previews_root() -> Path:
    root = settings.previews_path
    root.mkdir(parents=True, exist_ok=True)
    return root


# ============================================
# Fake Collaborators
# ============================================


class FakeRunner:
    """Records calls to ``run`` and replays scripted outcomes.

    Each scripted outcome is either an exception to raise, a callable
    invoked with the call's ``cwd`` (for side effects), or None.
    """

    def __init__(self, outcomes: list[Any] | None = None, delay: float = 0.0) -> None:
        self.calls: list[dict[str, Any]] = []
        self._outcomes = list(outcomes or [])
        self._delay = delay

    async def run(
        self,
        program: str,
        args: list[str],
        *,
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        logs: LogRing | None = None,
        label: str | None = None,
    ) -> CommandResult:
        self.calls.append({"program": program, "args": list(args), "cwd": cwd, "env": env})
        if self._delay:
            await asyncio.sleep(self._delay)
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome(Path(cwd) if cwd is not None else None)
        return CommandResult(stdout="ok\n", stderr="", output="ok\n")


def create_artifact(directory: Path | None) -> None:
    assert directory is not None
    target = directory / "node_modules" / ".bin"
    target.mkdir(parents=True, exist_ok=True)
    (target / "next").touch()


def command_failed(program: str = "npm", code: int = 1, output: str = "boom\n") -> CommandFailed:
    return CommandFailed(program, code, stdout="", stderr=output, output=output)


class FakeInstaller:
    """Installer that only creates the artifact."""

    def __init__(self, error: PreviewHostError | None = None) -> None:
        self.installed: list[Path] = []
        self._error = error

    def needs_install(self, directory: Path) -> bool:
        return not (directory / settings.install_artifact).exists()

    async def install(
        self,
        directory: Path,
        *,
        logs: LogRing | None = None,
        label: str | None = None,
    ) -> None:
        self.installed.append(directory)
        if self._error is not None:
            raise self._error
        create_artifact(directory)


# ============================================
# Registry Fixtures
# ============================================


@pytest.fixture
def staging(previews_root: Path) -> ProjectStaging:
    return ProjectStaging(previews_root, remove_attempts=2, remove_backoff=0.01)


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
async def runner() -> AsyncGenerator[CommandRunner, None]:
    command_runner = CommandRunner(echo=False)
    yield command_runner
    await command_runner.close()


@pytest.fixture
def installer(runner: CommandRunner) -> DependencyInstaller:
    return DependencyInstaller(
        runner,
        program=settings.install_program,
        args=settings.install_args,
        artifact=settings.install_artifact,
        timeout=30.0,
        store_dir=settings.package_store_path,
    )


@pytest.fixture
async def registry(
    runner: CommandRunner,
    installer: DependencyInstaller,
    staging: ProjectStaging,
    http_client: httpx.AsyncClient,
) -> AsyncGenerator[PreviewRegistry, None]:
    """Registry wired to real subprocesses; every dev server is stopped afterwards."""
    preview_registry = PreviewRegistry(runner, installer, staging, http_client)
    yield preview_registry
    await preview_registry.shutdown()


async def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """TestClient with the app lifespan running."""
    with TestClient(app) as test_client:
        yield test_client
