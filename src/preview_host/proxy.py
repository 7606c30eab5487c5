"""HTTP forwarding to preview dev servers."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

logger = structlog.get_logger()

# Connection-scoped headers that must not cross the proxy
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Dropped from requests; httpx sets its own
REQUEST_ONLY_HEADERS = frozenset({"host", "content-length"})

# Dropped from responses; httpx already decoded the body
RESPONSE_ONLY_HEADERS = frozenset({"content-encoding", "content-length"})


class BackendUnavailable(Exception):
    """The dev server could not be reached or did not answer."""


@dataclass
class ProxyRequest:
    """HTTP proxy request parameters."""

    preview_id: str
    port: int
    method: str
    path: str
    headers: list[tuple[str, str]]
    body: bytes | None = None
    query_string: str | None = None


def filter_headers(headers: list[tuple[str, str]], extra: frozenset[str]) -> list[tuple[str, str]]:
    return [
        (k, v)
        for k, v in headers
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in extra
    ]


class PreviewGateway:
    """Forwards requests to ``127.0.0.1:<port>`` and relays the response."""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self._http = http_client

    async def forward(self, request: ProxyRequest) -> tuple[int, list[tuple[str, str]], bytes]:
        target_url = f"http://127.0.0.1:{request.port}/{request.path.lstrip('/')}"
        if request.query_string:
            target_url = f"{target_url}?{request.query_string}"

        logger.debug(
            "Proxying request",
            preview_id=request.preview_id,
            port=request.port,
            method=request.method,
            target_url=target_url,
        )

        try:
            response = await self._http.request(
                method=request.method,
                url=target_url,
                headers=filter_headers(request.headers, REQUEST_ONLY_HEADERS),
                content=request.body,
                follow_redirects=False,
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Preview backend unreachable",
                preview_id=request.preview_id,
                port=request.port,
                error=str(e) or type(e).__name__,
            )
            raise BackendUnavailable(str(e)) from e

        response_headers = filter_headers(list(response.headers.multi_items()), RESPONSE_ONLY_HEADERS)
        return response.status_code, response_headers, response.content
