"""Failure callbacks to the job tracking service."""

from __future__ import annotations

import re

import httpx
import structlog

from preview_host.config import settings

logger = structlog.get_logger()

DEFAULT_FAILURE_MESSAGE = "Background deployment failed"

# First line of the message plus continuation lines up to a blank line
_TYPE_ERROR = re.compile(r"Type error:([^\n]+(?:\n(?!\s*$)[^\n]+)*)", re.MULTILINE)
_BUILD_ERROR = re.compile(r"Error:([^\n]+(?:\n(?!\s*$)[^\n]+)*)", re.MULTILINE)
_COMPILE_FAILURE = re.compile(r"Failed to compile\.([\s\S]{0,500})")


def extract_error_from_logs(logs: str | None) -> str | None:
    """Pull the most useful failure signature out of build output.

    Checked in priority order: TypeScript errors, generic ``Error:`` lines,
    then the ``Failed to compile.`` block (first 500 characters).
    """
    if not logs:
        return None

    match = _TYPE_ERROR.search(logs)
    if match:
        return f"TypeScript Error: {match.group(1).strip()}"

    match = _BUILD_ERROR.search(logs)
    if match:
        return f"Build Error: {match.group(1).strip()}"

    match = _COMPILE_FAILURE.search(logs)
    if match:
        return f"Compilation Failed: {match.group(1).strip()}"

    return None


class FailureNotifier:
    """Tells the job tracker that a background deployment failed.

    Delivery is best effort: one attempt, errors logged and never raised.
    """

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def notify(
        self,
        callback_id: str | None,
        project_id: str,
        error: str | None,
        logs: str | None,
    ) -> bool:
        """POST the failure to ``/api/jobs/<callback_id>/fail``.

        Returns True when the tracker acknowledged with a 2xx.
        """
        if not callback_id:
            logger.info("No callback id, skipping failure notification", project_id=project_id)
            return False

        deployment_error = extract_error_from_logs(logs) or error or DEFAULT_FAILURE_MESSAGE
        url = f"{settings.miniapp_creator_url.rstrip('/')}/api/jobs/{callback_id}/fail"
        payload = {
            "error": error or DEFAULT_FAILURE_MESSAGE,
            "logs": logs or "",
            "deploymentError": deployment_error,
        }

        logger.info(
            "Notifying job failure",
            project_id=project_id,
            callback_id=callback_id,
            deployment_error=deployment_error[:200],
        )
        try:
            response = await self._http.post(
                url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.preview_auth_token}"},
                timeout=settings.callback_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Failure notification errored", project_id=project_id, error=str(e))
            return False

        if response.is_success:
            logger.info("Job marked as failed", project_id=project_id, callback_id=callback_id)
            return True

        logger.warning(
            "Failure notification rejected",
            project_id=project_id,
            status_code=response.status_code,
            body=response.text[:500],
        )
        return False
