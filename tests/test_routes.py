"""Tests for the HTTP API."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from preview_host.config import settings
from preview_host.deps import ServiceContainer
from preview_host.routes.proxy import BACKEND_UNREACHABLE, PREVIEW_STARTING
from preview_host.validation import ALLOWED_COMMANDS


# Stands in for a dev server with an HMR socket: plain HTTP gets 200, upgrades
# get the request path and then an echo of every message.
WS_ECHO_SERVER = """
import sys
from http import HTTPStatus
from websockets.sync.server import serve


def process_request(connection, request):
    if request.headers.get("Upgrade", "").lower() != "websocket":
        return connection.respond(HTTPStatus.OK, "ok\\n")
    return None


def handler(connection):
    connection.send("path:" + connection.request.path)
    for message in connection:
        if isinstance(message, bytes):
            message = str(len(message)) + " bytes"
        connection.send("echo:" + message)


with serve(handler, "127.0.0.1", int(sys.argv[1]), process_request=process_request) as server:
    server.serve_forever()
"""


def register_external(preview_id: str, url: str | None = "https://app1.vercel.app") -> Path:
    """Put an external entry with a real directory into the live registry."""
    directory = settings.previews_path / f"{preview_id}-vercel"
    (directory / "src").mkdir(parents=True, exist_ok=True)
    (directory / "package.json").write_text("{}")
    (directory / "src" / "page.tsx").write_text("export default 1\n")
    ServiceContainer.get().registry.register_external(preview_id, directory, "vercel", url)
    return directory


class TestHealth:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "preview-host"
        assert data["platform"] == "local"
        assert data["environment"] == "test"
        assert data["externalDeployments"] == 0
        assert data["validation"]["runtimeChecks"] is False

    def test_health_counts_external(self, client: TestClient) -> None:
        register_external("app1")
        assert client.get("/health").json()["externalDeployments"] == 1

    def test_health_needs_no_auth(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "preview_auth_token", "secret")
        assert client.get("/health").status_code == status.HTTP_200_OK


class TestAuth:
    def test_open_without_token(self, client: TestClient) -> None:
        response = client.delete("/previews/ghost")
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"ok": True}

    def test_missing_bearer_rejected(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "preview_auth_token", "secret")
        response = client.delete("/previews/ghost")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"error": "unauthorized"}

    def test_wrong_bearer_rejected(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "preview_auth_token", "secret")
        response = client.delete("/previews/ghost", headers={"Authorization": "Bearer nope"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_correct_bearer_accepted(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "preview_auth_token", "secret")
        response = client.delete("/previews/ghost", headers={"Authorization": "Bearer secret"})
        assert response.status_code == status.HTTP_200_OK

    def test_status_and_proxy_are_public(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "preview_auth_token", "secret")
        assert client.get("/previews/ghost/status").status_code == status.HTTP_404_NOT_FOUND
        assert client.get("/p/ghost").status_code == status.HTTP_404_NOT_FOUND


class TestPreviewRoutes:
    def test_status_not_found(self, client: TestClient) -> None:
        response = client.get("/previews/ghost/status")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"status": "not_found"}

    def test_logs_not_found(self, client: TestClient) -> None:
        response = client.get("/previews/ghost/logs")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.text == "not_found"

    def test_status_of_external_entry(self, client: TestClient) -> None:
        directory = register_external("app1")
        data = client.get("/previews/app1/status").json()
        assert data["status"] == "deployed"
        assert data["port"] is None
        assert data["dir"] == str(directory)
        assert data["externalPlatform"] == "vercel"
        assert data["deploymentUrl"] == "https://app1.vercel.app"

    def test_unsafe_id_rejected(self, client: TestClient) -> None:
        response = client.post("/previews", json={"id": "bad id!", "files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["success"] is False

    def test_missing_id(self, client: TestClient) -> None:
        response = client.post("/previews", json={"files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "id required"

    def test_failed_validation_blocks_preview(self, client: TestClient) -> None:
        report = {
            "success": False,
            "errors": [{"file": "src/page.tsx", "line": 3, "message": "Type error"}],
            "warnings": [],
        }
        response = client.post(
            "/previews", json={"id": "app1", "files": {"a.ts": "x"}, "validationResult": report}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error"] == "Validation failed - cannot deploy files with compilation errors"
        assert data["validationErrors"][0]["file"] == "src/page.tsx"
        assert data["validationWarnings"] == []
        assert not (settings.previews_path / "app1").exists()

    def test_local_preview_refused_when_external_only(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "railway_environment", True)
        monkeypatch.setattr(settings, "force_external_deployment", True)
        response = client.post("/previews", json={"id": "app1", "files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Use external deployment" in response.json()["error"]

    def test_delete_external_entry(self, client: TestClient) -> None:
        directory = register_external("app1")
        (settings.previews_path / "app1").mkdir()

        assert client.delete("/previews/app1").json() == {"ok": True}

        assert client.get("/previews/app1/status").status_code == status.HTTP_404_NOT_FOUND
        assert not (settings.previews_path / "app1").exists()
        assert directory.exists()


class TestExecute:
    def test_command_not_allowed(self, client: TestClient) -> None:
        response = client.post("/previews/app1/execute", json={"command": "rm", "args": ["-rf", "x"]})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Command 'rm' is not allowed"
        assert data["allowedCommands"] == list(ALLOWED_COMMANDS)

    def test_dangerous_argument(self, client: TestClient) -> None:
        response = client.post("/previews/app1/execute", json={"command": "cat", "args": ["../../etc/passwd"]})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Dangerous pattern" in response.json()["error"]

    def test_find_cannot_delete(self, client: TestClient) -> None:
        directory = register_external("app1")
        victim = directory / "src" / "victim.txt"
        victim.write_text("keep me")

        response = client.post(
            "/previews/app1/execute",
            json={"command": "find", "args": ["src", "-name", "victim.txt", "-delete"]},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Dangerous pattern detected in argument: -delete"
        assert victim.exists()

    def test_unknown_preview(self, client: TestClient) -> None:
        response = client.post("/previews/ghost/execute", json={"command": "ls"})
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "Preview not found"

    def test_runs_inside_preview(self, client: TestClient) -> None:
        register_external("app1")
        response = client.post(
            "/previews/app1/execute", json={"command": "ls", "args": [], "workingDirectory": "src"}
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["command"] == "ls"
        assert data["workingDirectory"] == "src"
        assert "page.tsx" in data["output"]["stdout"]
        assert data["executionTime"] >= 0

    def test_working_directory_outside_project(self, client: TestClient) -> None:
        register_external("app1")
        response = client.post(
            "/previews/app1/execute", json={"command": "ls", "workingDirectory": "../"}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Working directory outside project bounds"

    def test_working_directory_missing(self, client: TestClient) -> None:
        register_external("app1")
        response = client.post(
            "/previews/app1/execute", json={"command": "ls", "workingDirectory": "nope"}
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Working directory does not exist"

    def test_command_failure_reports_exit_code(self, client: TestClient) -> None:
        register_external("app1")
        response = client.post(
            "/previews/app1/execute", json={"command": "ls", "args": ["missing-file"]}
        )
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        data = response.json()
        assert data["success"] is False
        assert data["exitCode"] != 0
        assert "missing-file" in data["output"]


class TestDeployRoutes:
    def test_status_unknown_job(self, client: TestClient) -> None:
        response = client.get("/deploy/status/ghost")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "Deployment job not found", "projectId": "ghost"}

    def test_status_of_job(self, client: TestClient) -> None:
        job = ServiceContainer.get().jobs.start("app1", "vercel")
        job.complete("https://app1.vercel.app", "")
        data = client.get("/deploy/status/app1").json()
        assert data["status"] == "completed"
        assert data["deploymentUrl"] == "https://app1.vercel.app"
        assert data["platform"] == "vercel"

    def test_external_required_but_unconfigured(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "railway_environment", True)
        monkeypatch.setattr(settings, "force_external_deployment", True)
        response = client.post("/deploy", json={"hash": "app1", "files": {"a.ts": "x"}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert "External deployment required" in data["error"]
        assert "suggestion" in data

    def test_missing_hash(self, client: TestClient) -> None:
        response = client.post("/deploy", json={"files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "hash required"


class TestContractsRoute:
    def test_empty_files(self, client: TestClient) -> None:
        response = client.post("/deploy-contracts", json={"projectId": "app1", "files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "files array required"

    def test_disabled(self, client: TestClient) -> None:
        response = client.post(
            "/deploy-contracts",
            json={"projectId": "app1", "files": [{"path": "contracts/Token.sol", "content": "x"}]},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["success"] is False


class TestValidateRoute:
    def test_requires_project_id(self, client: TestClient) -> None:
        response = client.post("/validate", json={"files": {}})
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_validator_crash_is_reported(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        async def explode(*args: object, **kwargs: object) -> None:
            raise RuntimeError("toolchain missing")

        monkeypatch.setattr(ServiceContainer.get().validator, "validate", explode)
        response = client.post("/validate", json={"projectId": "app1", "files": {"a.ts": "x"}})

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "toolchain missing"
        assert data["warnings"][0]["message"] == "Validation failed: toolchain missing"


class TestProxy:
    def test_unknown_preview(self, client: TestClient) -> None:
        response = client.get("/p/ghost/")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.text == "Preview not found"

    def test_corrupted_directory_cleaned(self, client: TestClient) -> None:
        broken = settings.previews_path / "broken"
        broken.mkdir(parents=True)
        (broken / "notes.txt").write_text("no manifest")

        response = client.get("/p/broken/index.html")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.text == "Preview not found (corrupted directory was cleaned)"
        assert not broken.exists()

    def test_external_entry_redirects(self, client: TestClient) -> None:
        register_external("app1")
        response = client.get("/p/app1/some/page", follow_redirects=False)
        assert response.status_code == status.HTTP_302_FOUND
        assert response.headers["location"] == "https://app1.vercel.app"

    def test_external_only_has_no_local_previews(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "railway_environment", True)
        monkeypatch.setattr(settings, "force_external_deployment", True)
        response = client.get("/p/app1/")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.text == "Preview not found. Use external deployment."

    def test_websocket_unknown_preview_closed(self, client: TestClient) -> None:
        from starlette.websockets import WebSocketDisconnect

        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/p/ghost/_next/webpack-hmr") as ws:
                ws.receive_text()
        assert exc.value.code == status.WS_1008_POLICY_VIOLATION

    def test_forwards_without_prefix_and_touches(self, client: TestClient) -> None:
        created = client.post(
            "/previews", json={"id": "app1", "files": {"src/page.tsx": "hello from app1\n"}}
        )
        assert created.status_code == status.HTTP_200_OK
        assert created.json()["status"] == "running"
        preview = ServiceContainer.get().registry.get("app1")
        assert preview is not None
        preview.last_hit -= 100

        response = client.get("/p/app1/src/page.tsx?v=1")

        assert response.status_code == status.HTTP_200_OK
        assert response.text == "hello from app1\n"
        assert preview.idle_seconds() < 50

    def test_unreachable_backend(self, client: TestClient) -> None:
        assert client.post("/previews", json={"id": "app1", "files": {}}).status_code == 200
        preview = ServiceContainer.get().registry.get("app1")
        assert preview is not None
        # Nothing listens on the last port of the window
        preview.port = settings.base_port + settings.port_window - 1

        response = client.get("/p/app1/")

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == BACKEND_UNREACHABLE

    def test_restart_timeout_reports_starting(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        directory = settings.previews_path / "app1"
        (directory / "src").mkdir(parents=True)
        (directory / "package.json").write_text("{}")
        (directory / "src" / "page.tsx").write_text("export default 1\n")
        monkeypatch.setattr(
            settings, "dev_command", [sys.executable, "-c", "import time; time.sleep(30)"]
        )
        monkeypatch.setattr(settings, "restart_readiness_timeout_seconds", 0.3)

        response = client.get("/p/app1/")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.text == PREVIEW_STARTING
        assert ServiceContainer.get().registry.get("app1") is None
        assert directory.exists()

    def test_websocket_pipes_both_ways(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "dev_command", [sys.executable, "-c", WS_ECHO_SERVER, "{port}"])
        assert client.post("/previews", json={"id": "app1", "files": {}}).status_code == 200

        with client.websocket_connect("/p/app1/_next/webpack-hmr?page=1") as ws:
            assert ws.receive_text() == "path:/p/app1/_next/webpack-hmr?page=1"
            ws.send_text("ping")
            assert ws.receive_text() == "echo:ping"
            ws.send_bytes(b"\x00\x01")
            assert ws.receive_text() == "echo:2 bytes"
