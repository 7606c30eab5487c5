"""Unauthenticated reverse proxy for preview traffic under ``/p/{id}``.

HTTP requests are forwarded to the preview's dev server with the prefix
stripped. A preview whose entry was reaped but whose directory is still on
disk is restarted on first hit. WebSocket upgrades (HMR) are piped
bidirectionally to the same backend with the path left intact.
"""

import asyncio
import contextlib
from typing import Annotated

import structlog
import websockets
from fastapi import APIRouter, Depends, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import PlainTextResponse, RedirectResponse
from websockets.asyncio.client import ClientConnection

from preview_host.config import settings
from preview_host.deps import get_gateway, get_registry
from preview_host.exceptions import CorruptedState, PreviewHostError, ReadinessTimeout
from preview_host.managers.registry import PreviewRegistry
from preview_host.models.preview import Preview
from preview_host.proxy import BackendUnavailable, PreviewGateway, ProxyRequest
from preview_host.validation import SAFE_ID_PATTERN

logger = structlog.get_logger()

router = APIRouter(prefix="/p", tags=["proxy"])

PROXY_METHODS = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]

BACKEND_UNREACHABLE = "Preview backend isn't reachable yet. Try again in a few seconds."
PREVIEW_STARTING = "Preview is starting. Please retry in a few seconds."


async def _resolve_preview(preview_id: str, registry: PreviewRegistry) -> Preview | Response:
    """Find the entry for an id, restarting it from disk if needed."""
    preview = registry.get(preview_id)
    if preview is not None:
        return preview

    if settings.external_only:
        return PlainTextResponse("Preview not found. Use external deployment.", status_code=404)

    try:
        preview = await registry.restart_from_disk(preview_id)
    except CorruptedState as e:
        return PlainTextResponse(e.message, status_code=404)
    except ReadinessTimeout:
        return PlainTextResponse(PREVIEW_STARTING, status_code=503)
    except PreviewHostError as e:
        logger.error("Auto-restart failed", preview_id=preview_id, error=e.message)
        return PlainTextResponse(f"Auto-install failed: {e.message}", status_code=500)

    if preview is None:
        return PlainTextResponse("Preview not found", status_code=404)
    return preview


@router.api_route("/{preview_id}", methods=PROXY_METHODS, include_in_schema=False)
@router.api_route("/{preview_id}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_preview(
    preview_id: str,
    request: Request,
    registry: Annotated[PreviewRegistry, Depends(get_registry)],
    gateway: Annotated[PreviewGateway, Depends(get_gateway)],
) -> Response:
    path = request.path_params.get("path", "")
    if not SAFE_ID_PATTERN.match(preview_id):
        return PlainTextResponse("Preview not found", status_code=404)

    resolved = await _resolve_preview(preview_id, registry)
    if isinstance(resolved, Response):
        return resolved
    preview = resolved

    if preview.is_external and preview.deployment_url:
        return RedirectResponse(preview.deployment_url, status_code=302)

    if preview.port is None:
        return PlainTextResponse("Preview not available", status_code=404)

    preview.touch()
    body = await request.body() if request.method in ("POST", "PUT", "PATCH", "DELETE") else None

    try:
        status_code, headers, content = await gateway.forward(
            ProxyRequest(
                preview_id=preview_id,
                port=preview.port,
                method=request.method,
                path=path,
                headers=list(request.headers.items()),
                body=body,
                query_string=request.url.query or None,
            )
        )
    except BackendUnavailable:
        return PlainTextResponse(BACKEND_UNREACHABLE, status_code=502)

    response = Response(content=content, status_code=status_code)
    for key, value in headers:
        response.headers.append(key, value)
    return response


async def _forward_client_to_upstream(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Forward messages from client to upstream."""
    try:
        while True:
            data = await websocket.receive()
            if data["type"] == "websocket.disconnect":
                break
            if data.get("text") is not None:
                await upstream.send(data["text"])
            elif data.get("bytes") is not None:
                await upstream.send(data["bytes"])
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("Client to upstream error", error=str(e))


async def _forward_upstream_to_client(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Forward messages from upstream to client."""
    try:
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
    except websockets.ConnectionClosed:
        pass
    except Exception as e:
        logger.debug("Upstream to client error", error=str(e))


async def _run_bidirectional_proxy(
    websocket: WebSocket,
    upstream: ClientConnection,
) -> None:
    """Pump both directions until either side closes."""
    client_task = asyncio.create_task(_forward_client_to_upstream(websocket, upstream))
    upstream_task = asyncio.create_task(_forward_upstream_to_client(websocket, upstream))

    _done, pending = await asyncio.wait(
        [client_task, upstream_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def _close_quietly(websocket: WebSocket, code: int, reason: str = "") -> None:
    with contextlib.suppress(RuntimeError, WebSocketDisconnect, OSError):
        await websocket.close(code=code, reason=reason)


@router.websocket("/{preview_id}")
@router.websocket("/{preview_id}/{path:path}")
async def proxy_websocket(
    websocket: WebSocket,
    preview_id: str,
    registry: Annotated[PreviewRegistry, Depends(get_registry)],
) -> None:
    """Pipe a WebSocket (HMR, live reload) to the preview's dev server."""
    preview = registry.get(preview_id) if SAFE_ID_PATTERN.match(preview_id) else None
    if preview is None or preview.port is None:
        await _close_quietly(websocket, status.WS_1008_POLICY_VIOLATION, "Preview not found")
        return

    # Prefix kept: the dev server mounts HMR under ASSET_PREFIX
    ws_url = f"ws://127.0.0.1:{preview.port}{websocket.url.path}"
    if websocket.url.query:
        ws_url = f"{ws_url}?{websocket.url.query}"
    subprotocols = websocket.scope.get("subprotocols") or None

    logger.debug("Establishing WebSocket proxy", preview_id=preview_id, target_url=ws_url)
    accepted = False
    try:
        async with websockets.connect(ws_url, subprotocols=subprotocols) as upstream:
            await websocket.accept(subprotocol=upstream.subprotocol)
            accepted = True
            preview.touch()
            await _run_bidirectional_proxy(websocket, upstream)
    except Exception as e:
        logger.warning(
            "WebSocket proxy error",
            preview_id=preview_id,
            port=preview.port,
            error=str(e) or type(e).__name__,
        )
        code = status.WS_1011_INTERNAL_ERROR if accepted else status.WS_1008_POLICY_VIOLATION
        await _close_quietly(websocket, code, "Upstream unavailable")
        return
    finally:
        logger.debug("WebSocket proxy closed", preview_id=preview_id)

    await _close_quietly(websocket, status.WS_1000_NORMAL_CLOSURE)
