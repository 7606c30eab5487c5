"""Tests for smart contract deployment."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from preview_host.config import settings
from preview_host.exceptions import (
    CommandFailed,
    DeploymentFailed,
    PlatformUnavailable,
    ValidationRejected,
)
from preview_host.managers.contracts import (
    DEFAULT_DEPLOYMENT_INFO,
    NETWORK,
    ContractDeployer,
    is_contract_file,
)
from preview_host.managers.staging import ProjectStaging
from preview_host.models.preview import LogRing
from tests.conftest import FakeRunner, command_failed

CONTRACT_FILES = {
    "contracts/package.json": '{"name": "contracts"}',
    "contracts/contracts/Token.sol": "pragma solidity ^0.8.20;",
    "contracts/scripts/deploy.js": "async function main() {}",
    "src/page.tsx": "export default 1",
}


@pytest.fixture
def contracts_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "enable_contract_deployment", True)
    monkeypatch.setattr(settings, "private_key", "0xkey")


def write_deployment_info(cwd: Path | None) -> None:
    assert cwd is not None
    (cwd / "deployment-info.json").write_text(json.dumps({"Token": "0xabc"}))


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("contracts/Token.sol", True),
        ("scripts/deploy.js", True),
        ("hardhat.config.ts", True),
        ("package.json", True),
        ("src/app/page.tsx", False),
        ("public/logo.png", False),
    ],
)
def test_is_contract_file(path: str, expected: bool) -> None:
    assert is_contract_file(path) is expected


class TestDeployForProject:
    async def test_skipped(self, staging: ProjectStaging, contracts_enabled: None, tmp_path: Path) -> None:
        runner = FakeRunner()
        deployer = ContractDeployer(runner, staging)  # type: ignore[arg-type]
        assert await deployer.deploy_for_project(tmp_path, "app1", LogRing(), skip=True) is None
        assert runner.calls == []

    async def test_disabled(self, staging: ProjectStaging, tmp_path: Path) -> None:
        (tmp_path / "contracts").mkdir()
        runner = FakeRunner()
        deployer = ContractDeployer(runner, staging)  # type: ignore[arg-type]
        assert await deployer.deploy_for_project(tmp_path, "app1", LogRing()) is None
        assert runner.calls == []

    async def test_no_contracts_directory(
        self, staging: ProjectStaging, contracts_enabled: None, tmp_path: Path
    ) -> None:
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]
        assert await deployer.deploy_for_project(tmp_path, "app1", LogRing()) is None

    async def test_runs_hardhat_pipeline(
        self, staging: ProjectStaging, contracts_enabled: None, tmp_path: Path
    ) -> None:
        contracts_dir = tmp_path / "contracts"
        contracts_dir.mkdir()
        (contracts_dir / "package.json").write_text("{}")
        # clean fails and is tolerated
        runner = FakeRunner([None, command_failed("npx"), None, write_deployment_info])
        deployer = ContractDeployer(runner, staging)  # type: ignore[arg-type]

        info = await deployer.deploy_for_project(tmp_path, "app1", LogRing())

        assert info == {"Token": "0xabc"}
        assert [c["args"][:2] for c in runner.calls] == [
            ["install"],
            ["hardhat", "clean"],
            ["hardhat", "compile"],
            ["hardhat", "run"],
        ]
        deploy_env = runner.calls[-1]["env"]
        assert deploy_env["PRIVATE_KEY"] == "0xkey"
        assert deploy_env["HARDHAT_NETWORK"] == NETWORK

    async def test_default_info_without_file(
        self, staging: ProjectStaging, contracts_enabled: None, tmp_path: Path
    ) -> None:
        contracts_dir = tmp_path / "contracts"
        contracts_dir.mkdir()
        (contracts_dir / "package.json").write_text("{}")
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]

        assert await deployer.deploy_for_project(tmp_path, "app1", LogRing()) == DEFAULT_DEPLOYMENT_INFO


class TestDeployStandalone:
    async def test_disabled(self, staging: ProjectStaging) -> None:
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]
        with pytest.raises(PlatformUnavailable, match="not enabled"):
            await deployer.deploy_standalone("app1", CONTRACT_FILES, LogRing())

    async def test_requires_private_key(self, staging: ProjectStaging, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "enable_contract_deployment", True)
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]
        with pytest.raises(PlatformUnavailable, match="PRIVATE_KEY"):
            await deployer.deploy_standalone("app1", CONTRACT_FILES, LogRing())

    async def test_requires_contract_files(self, staging: ProjectStaging, contracts_enabled: None) -> None:
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]
        with pytest.raises(ValidationRejected, match="No contract files"):
            await deployer.deploy_standalone("app1", {"src/page.tsx": "x"}, LogRing())

    async def test_deploys_from_scratch_directory(
        self, staging: ProjectStaging, contracts_enabled: None
    ) -> None:
        runner = FakeRunner([None, None, None, write_deployment_info])
        deployer = ContractDeployer(runner, staging)  # type: ignore[arg-type]

        info = await deployer.deploy_standalone("app1", CONTRACT_FILES, LogRing())

        assert info == {"Token": "0xabc"}
        scratch = staging.directory_for("app1-contracts-temp")
        assert runner.calls[0]["cwd"] == scratch / "contracts"
        assert not scratch.exists()

    async def test_scratch_removed_on_failure(
        self, staging: ProjectStaging, contracts_enabled: None
    ) -> None:
        runner = FakeRunner([command_failed("npm")])
        deployer = ContractDeployer(runner, staging)  # type: ignore[arg-type]

        with pytest.raises(CommandFailed):
            await deployer.deploy_standalone("app1", CONTRACT_FILES, LogRing())
        assert not staging.directory_for("app1-contracts-temp").exists()

    async def test_no_package_json_is_failure(
        self, staging: ProjectStaging, contracts_enabled: None
    ) -> None:
        deployer = ContractDeployer(FakeRunner(), staging)  # type: ignore[arg-type]
        with pytest.raises(DeploymentFailed, match="no deployment info"):
            await deployer.deploy_standalone(
                "app1", {"contracts/Token.sol": "pragma solidity ^0.8.20;"}, LogRing()
            )
