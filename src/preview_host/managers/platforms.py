"""External hosting platforms a project can be promoted to."""

from __future__ import annotations

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from preview_host.config import settings
from preview_host.exceptions import PlatformUnavailable
from preview_host.managers.advisory import AdvisoryStep, run_advisory_steps

if TYPE_CHECKING:
    from preview_host.managers.commands import CommandRunner
    from preview_host.models.preview import LogRing

logger = structlog.get_logger()

VERCEL = "vercel"
NETLIFY = "netlify"

_PRODUCTION_URL = re.compile(r"Production:\s+(https://\S+\.vercel\.app)")


class PlatformDeployer(ABC):
    """Deploys a staged project directory and returns its public URL."""

    name: str

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Feature flag on and credential configured."""

    async def deploy(self, directory: Path, project_id: str, logs: LogRing) -> str:
        """Deploy ``directory``.

        Raises:
            PlatformUnavailable: The platform is not enabled.
            CommandFailed / SpawnError: The platform CLI failed.
        """
        if not self.enabled:
            raise PlatformUnavailable(
                f"{self.name.capitalize()} deployment is disabled or token not provided"
            )
        logger.info("Deploying to platform", project_id=project_id, platform=self.name)
        url = await self._deploy(directory, project_id, logs)
        logger.info("Platform deployment completed", project_id=project_id, platform=self.name, url=url)
        return url

    @abstractmethod
    async def _deploy(self, directory: Path, project_id: str, logs: LogRing) -> str: ...


class VercelClient:
    """The handful of Vercel REST calls made after a CLI deploy."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {settings.deployment_token_secret}"}

    @property
    def _team_params(self) -> dict[str, str] | None:
        return {"teamId": settings.vercel_team_id} if settings.vercel_team_id else None

    def _url(self, path: str) -> str:
        return f"{settings.vercel_api_url.rstrip('/')}{path}"

    async def disable_protection(self, vercel_project_id: str) -> bool:
        """Make deployments publicly reachable (no SSO or password gate)."""
        response = await self._http.patch(
            self._url(f"/v1/projects/{vercel_project_id}"),
            params=self._team_params,
            headers=self._headers,
            json={"ssoProtection": None, "passwordProtection": None},
        )
        if response.is_success:
            logger.info("Deployment protection disabled", vercel_project_id=vercel_project_id)
            return True
        logger.warning(
            "Failed to disable deployment protection",
            vercel_project_id=vercel_project_id,
            status_code=response.status_code,
            body=response.text[:500],
        )
        return False

    async def _add_domain(self, vercel_project_id: str, domain: str) -> httpx.Response:
        return await self._http.post(
            self._url(f"/v10/projects/{vercel_project_id}/domains"),
            params=self._team_params,
            headers=self._headers,
            json={"name": domain},
        )

    async def assign_custom_domain(self, vercel_project_id: str, project_id: str) -> str | None:
        """Attach ``<project_id>.<custom_domain_base>`` to the Vercel project.

        A domain already attached elsewhere is moved over. Returns the
        ``https://`` URL, or None when custom domains are off or the add
        was rejected for another reason.
        """
        if not settings.enable_custom_domains:
            return None

        domain = f"{project_id}.{settings.custom_domain_base}"
        response = await self._add_domain(vercel_project_id, domain)
        if response.is_success:
            logger.info("Custom domain assigned", project_id=project_id, domain=domain)
            return f"https://{domain}"

        try:
            error_data: Any = response.json()
        except ValueError:
            error_data = {"message": response.text}
        error_code = (error_data.get("error") or {}).get("code") if isinstance(error_data, dict) else None

        if response.status_code != 409 and error_code != "domain_already_exists":
            logger.warning(
                "Failed to assign custom domain",
                project_id=project_id,
                domain=domain,
                status_code=response.status_code,
            )
            return None

        await run_advisory_steps(
            [AdvisoryStep("reassign_domain", lambda: self._reassign_domain(vercel_project_id, domain))],
            project_id=project_id,
        )
        return f"https://{domain}"

    async def _reassign_domain(self, vercel_project_id: str, domain: str) -> bool:
        lookup = await self._http.get(self._url(f"/v6/domains/{domain}"), headers=self._headers)
        if not lookup.is_success:
            return False

        owner = lookup.json().get("projectId")
        if not owner or owner == vercel_project_id:
            logger.info("Domain already assigned to this project", domain=domain)
            return True

        logger.info("Moving domain from another project", domain=domain, previous_owner=owner)
        removal = await self._http.delete(
            self._url(f"/v9/projects/{owner}/domains/{domain}"), headers=self._headers
        )
        if not (removal.is_success or removal.status_code == 404):
            return False

        retry = await self._add_domain(vercel_project_id, domain)
        if not retry.is_success:
            logger.warning("Failed to re-assign domain", domain=domain, body=retry.text[:500])
            return False
        return True

    async def production_alias(self, vercel_project_id: str) -> str | None:
        """Stable production hostname Vercel picked for the project."""
        response = await self._http.get(
            self._url(f"/v9/projects/{vercel_project_id}"),
            params=self._team_params,
            headers=self._headers,
        )
        if not response.is_success:
            logger.warning("Vercel project lookup failed", status_code=response.status_code)
            return None

        info = response.json()
        production_aliases = ((info.get("targets") or {}).get("production") or {}).get("alias") or []
        if production_aliases:
            return f"https://{production_aliases[0]}"
        if info.get("alias"):
            return f"https://{info['alias'][0]}"
        return None


class VercelDeployer(PlatformDeployer):
    name = VERCEL

    def __init__(self, runner: CommandRunner, client: VercelClient) -> None:
        super().__init__(runner)
        self.client = client

    @property
    def enabled(self) -> bool:
        return settings.vercel_enabled

    async def _deploy(self, directory: Path, project_id: str, logs: LogRing) -> str:
        args = [
            "vercel",
            "--token",
            settings.deployment_token_secret,
            "--name",
            project_id,
            "--prod",
            "--confirm",
            "--public",
        ]
        if settings.vercel_team_id:
            args += ["--scope", settings.vercel_team_id]

        env = {
            **os.environ,
            "DEPLOYMENT_TOKEN_SECRET": settings.deployment_token_secret,
            "CI": "1",
        }
        result = await self._runner.run(
            "npx", args, cwd=directory, env=env, logs=logs, label=project_id
        )

        match = _PRODUCTION_URL.search(result.output or result.stdout)
        if match:
            logger.debug("Vercel deployment-specific URL", project_id=project_id, url=match.group(1))

        fallback = f"https://{project_id}.vercel.app"
        vercel_project_id = await self._linked_project_id(directory)
        if not vercel_project_id:
            return fallback

        results = await run_advisory_steps(
            [
                AdvisoryStep("disable_protection", lambda: self.client.disable_protection(vercel_project_id)),
                AdvisoryStep(
                    "custom_domain",
                    lambda: self.client.assign_custom_domain(vercel_project_id, project_id),
                ),
            ],
            project_id=project_id,
        )
        if results.get("custom_domain"):
            return results["custom_domain"]

        results = await run_advisory_steps(
            [AdvisoryStep("production_alias", lambda: self.client.production_alias(vercel_project_id))],
            project_id=project_id,
        )
        return results.get("production_alias") or fallback

    @staticmethod
    async def _linked_project_id(directory: Path) -> str | None:
        """Project id the CLI wrote to ``.vercel/project.json``, if readable."""
        project_file = directory / ".vercel" / "project.json"
        try:
            raw = await asyncio.to_thread(project_file.read_text, encoding="utf-8")
            return json.loads(raw).get("projectId")
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Could not read linked Vercel project", path=str(project_file), error=str(e))
            return None


class NetlifyDeployer(PlatformDeployer):
    name = NETLIFY

    @property
    def enabled(self) -> bool:
        return settings.netlify_enabled

    async def _deploy(self, directory: Path, project_id: str, logs: LogRing) -> str:
        await self._runner.run(
            "npm", ["run", "build"], cwd=directory, logs=logs, label=project_id
        )
        await self._runner.run(
            "npx",
            ["netlify", "deploy", "--prod", "--auth", settings.netlify_token, "--dir", ".next"],
            cwd=directory,
            logs=logs,
            label=project_id,
        )
        return f"https://{project_id}.netlify.app"
