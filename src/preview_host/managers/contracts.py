"""Smart contract compilation and testnet deployment via hardhat."""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from preview_host.config import settings
from preview_host.exceptions import (
    DeploymentFailed,
    PlatformUnavailable,
    PreviewHostError,
    ValidationRejected,
)

if TYPE_CHECKING:
    from preview_host.managers.commands import CommandRunner
    from preview_host.managers.staging import ProjectStaging
    from preview_host.models.preview import LogRing

logger = structlog.get_logger()

CONTRACTS_DIR = "contracts"
DEPLOYMENT_INFO_FILE = "deployment-info.json"
NETWORK = "baseSepolia"
DEFAULT_DEPLOYMENT_INFO = {"contractAddress": "deployed-successfully"}


def is_contract_file(path: str) -> bool:
    """Files the contract toolchain needs; everything else is app code."""
    return (
        path.startswith("contracts/")
        or path.startswith("scripts/")
        or "hardhat.config" in path
        or path == "package.json"
    )


class ContractDeployer:
    def __init__(self, runner: CommandRunner, staging: ProjectStaging) -> None:
        self._runner = runner
        self._staging = staging

    async def deploy_for_project(
        self,
        directory: Path,
        project_id: str,
        logs: LogRing,
        *,
        skip: bool = False,
    ) -> dict[str, Any] | None:
        """Deploy ``<directory>/contracts`` if the project has any.

        Returns None when skipped, disabled or there is nothing to deploy.
        """
        if skip:
            logger.info("Contract deployment skipped by request", project_id=project_id)
            return None
        if not settings.contracts_enabled:
            logger.debug("Contract deployment disabled", project_id=project_id)
            return None

        contracts_dir = directory / CONTRACTS_DIR
        if not contracts_dir.is_dir():
            logger.debug("No contracts directory", project_id=project_id)
            return None

        return await self.deploy_from_path(contracts_dir, project_id, logs)

    async def deploy_from_path(
        self, contracts_dir: Path, project_id: str, logs: LogRing
    ) -> dict[str, Any] | None:
        if not (contracts_dir / "package.json").exists():
            logger.info("No package.json in contracts directory", project_id=project_id)
            return None

        logger.info("Deploying contracts", project_id=project_id, network=NETWORK)
        run = self._runner.run

        await run("npm", ["install"], cwd=contracts_dir, logs=logs, label=project_id)
        try:
            await run("npx", ["hardhat", "clean"], cwd=contracts_dir, logs=logs, label=project_id)
        except PreviewHostError as e:
            logger.info("hardhat clean failed, continuing", project_id=project_id, error=e.message)
        await run("npx", ["hardhat", "compile"], cwd=contracts_dir, logs=logs, label=project_id)

        env = {
            **os.environ,
            "PRIVATE_KEY": settings.private_key,
            "BASE_SEPOLIA_RPC_URL": settings.base_sepolia_rpc_url,
            "HARDHAT_NETWORK": NETWORK,
        }
        await run(
            "npx",
            ["hardhat", "run", "scripts/deploy.js", "--network", NETWORK],
            cwd=contracts_dir,
            env=env,
            logs=logs,
            label=project_id,
        )

        info_file = contracts_dir / DEPLOYMENT_INFO_FILE
        if info_file.exists():
            raw = await asyncio.to_thread(info_file.read_text, encoding="utf-8")
            info = json.loads(raw)
        else:
            info = dict(DEFAULT_DEPLOYMENT_INFO)
        logger.info("Contracts deployed", project_id=project_id)
        return info

    async def deploy_standalone(
        self, project_id: str, files: dict[str, str], logs: LogRing
    ) -> dict[str, Any]:
        """Deploy only the contract files of a project from a scratch directory.

        The scratch directory is removed whatever the outcome.

        Raises:
            PlatformUnavailable: Contract deployment is off or has no key.
            ValidationRejected: No contract-related files were submitted.
            DeploymentFailed: The toolchain produced no deployment info.
        """
        if not settings.enable_contract_deployment:
            raise PlatformUnavailable(
                "Contract deployment is not enabled. Set ENABLE_CONTRACT_DEPLOYMENT=true"
            )
        if not settings.private_key:
            raise PlatformUnavailable(
                "Contract deployment requires PRIVATE_KEY environment variable"
            )

        contract_files = {path: content for path, content in files.items() if is_contract_file(path)}
        if not contract_files:
            raise ValidationRejected("No contract files found in project")

        scratch = self._staging.directory_for(f"{project_id}-contracts-temp")
        await self._staging.remove_directory(scratch)
        try:
            await self._staging.stage(settings.web3_template_path, scratch, contract_files)
            info = await self.deploy_for_project(scratch, project_id, logs)
        finally:
            await self._staging.remove_directory(scratch)

        if not info:
            raise DeploymentFailed("Contract deployment returned no deployment info")
        return info
