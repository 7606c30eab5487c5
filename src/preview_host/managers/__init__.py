"""Managers for preview processes, deployments and their supporting tasks."""

from preview_host.managers.commands import CommandResult, CommandRunner
from preview_host.managers.contracts import ContractDeployer
from preview_host.managers.deployments import (
    DeploymentJobStore,
    DeploymentOrchestrator,
    DeploymentOutcome,
)
from preview_host.managers.installer import DependencyInstaller
from preview_host.managers.notifier import FailureNotifier, extract_error_from_logs
from preview_host.managers.platforms import (
    NetlifyDeployer,
    PlatformDeployer,
    VercelClient,
    VercelDeployer,
)
from preview_host.managers.ports import PortAllocator
from preview_host.managers.reaper import IdleReaper
from preview_host.managers.registry import CreateOutcome, PreviewRegistry
from preview_host.managers.staging import ProjectStaging
from preview_host.managers.validator import SubprocessValidator

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ContractDeployer",
    "CreateOutcome",
    "DependencyInstaller",
    "DeploymentJobStore",
    "DeploymentOrchestrator",
    "DeploymentOutcome",
    "FailureNotifier",
    "IdleReaper",
    "NetlifyDeployer",
    "PlatformDeployer",
    "PortAllocator",
    "PreviewRegistry",
    "ProjectStaging",
    "SubprocessValidator",
    "VercelClient",
    "VercelDeployer",
    "extract_error_from_logs",
]
