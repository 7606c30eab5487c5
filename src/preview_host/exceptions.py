"""Error taxonomy for the preview host.

Every error carries the HTTP status it maps to and any extra fields the
JSON error body should include, so routes can simply let them propagate.
"""

from __future__ import annotations

from typing import Any


class PreviewHostError(Exception):
    """Base class for all expected preview host failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def extra(self) -> dict[str, Any]:
        """Additional fields for the error response body."""
        return {}


class Unauthorized(PreviewHostError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("unauthorized")


class ValidationRejected(PreviewHostError):
    """User input was rejected; not a system fault."""

    status_code = 400

    def __init__(
        self,
        message: str,
        errors: list[Any] | None = None,
        warnings: list[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.errors = errors
        self.warnings = warnings

    def extra(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.errors is not None:
            body["validationErrors"] = self.errors
        if self.warnings is not None:
            body["validationWarnings"] = self.warnings
        return body


class LocalPreviewsDisabled(PreviewHostError):
    status_code = 400

    def __init__(self) -> None:
        super().__init__("Local previews not supported on Railway. Use external deployment.")


class PlatformUnavailable(PreviewHostError):
    """A requested platform or feature is switched off or unconfigured."""

    status_code = 400

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.suggestion = suggestion

    def extra(self) -> dict[str, Any]:
        return {"suggestion": self.suggestion} if self.suggestion else {}


class PreviewNotFound(PreviewHostError):
    status_code = 404

    def __init__(self, preview_id: str) -> None:
        super().__init__("Preview not found")
        self.preview_id = preview_id


class CorruptedState(PreviewHostError):
    """A staged directory was missing its expected structure and was removed."""

    status_code = 404

    def __init__(self, preview_id: str) -> None:
        super().__init__("Preview not found (corrupted directory was cleaned)")
        self.preview_id = preview_id


class ResourceExhausted(PreviewHostError):
    status_code = 500


class SpawnError(PreviewHostError):
    """The program could not be started at all."""


class CommandFailed(PreviewHostError):
    """A program exited with a nonzero code. Captured output is kept."""

    def __init__(
        self,
        program: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        output: str = "",
    ) -> None:
        super().__init__(f"{program} exited {exit_code}")
        self.program = program
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.output = output

    def extra(self) -> dict[str, Any]:
        return {"exitCode": self.exit_code, "output": self.output}


class InstallTimeout(PreviewHostError):
    pass


class PostconditionFailed(PreviewHostError):
    pass


class ReadinessTimeout(PreviewHostError):
    """The dev server never answered its readiness probe."""

    def __init__(self, logs_tail: str = "") -> None:
        super().__init__("dev did not become ready in time")
        self.logs_tail = logs_tail

    def extra(self) -> dict[str, Any]:
        return {"status": "starting", "logs": self.logs_tail}


class DeploymentFailed(PreviewHostError):
    """An external platform deployment failed."""

    def __init__(self, message: str, logs: str = "", output: str = "") -> None:
        super().__init__(message)
        self.logs = logs
        self.output = output

    def extra(self) -> dict[str, Any]:
        return {"logs": self.logs, "output": self.output}
