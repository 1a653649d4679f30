"""mnemos HTTP Server -- the MCP tools over streamable HTTP.

/mcp     MCP requests, gated by the key in $MNEMOS_HOME/api_key
         (``X-API-Key`` header, ``Authorization: Bearer`` or ``?api_key=``)
/health  liveness plus store facts: active memories, chunk counts, reindex flag
"""

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from pathlib import Path

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from mnemos.config import mnemos_home

logger = logging.getLogger("mnemos.http")


def api_key_path() -> Path:
    return mnemos_home() / "api_key"


def get_or_create_api_key() -> str:
    """Key from $MNEMOS_HOME/api_key; a missing or blank file gets a fresh owner-only key."""
    path = api_key_path()
    if path.exists():
        key = path.read_text().strip()
        if key:
            return key
        logger.warning("%s is empty; generating a new key", path)
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key + "\n")
    path.chmod(0o600)
    return key


def _presented_key(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-api-key") or request.query_params.get("api_key")


def create_http_app(server, api_key: str | None = None, engine=None) -> Starlette:
    """Starlette app serving ``server`` (from ``create_server``) on /mcp.

    ``api_key=None`` turns authentication off. With an ``engine`` the health
    payload also reports what the store holds.
    """
    sessions = StreamableHTTPSessionManager(app=server, json_response=True, stateless=True)

    async def mcp_endpoint(scope: Scope, receive: Receive, send: Send) -> None:
        if api_key:
            request = Request(scope, receive)
            presented = _presented_key(request)
            if not presented or not secrets.compare_digest(presented, api_key):
                client = request.client.host if request.client else "?"
                logger.warning("Rejected /mcp request from %s: bad or missing key", client)
                await JSONResponse({"error": "Unauthorized"}, status_code=401)(scope, receive, send)
                return
        await sessions.handle_request(scope, receive, send)

    async def health(request: Request) -> JSONResponse:
        from mnemos import __version__

        payload = {"status": "ok", "server": "mnemos", "version": __version__}
        if engine is not None:
            stats = engine.store.stats()
            payload["store"] = {
                key: stats[key] for key in ("active", "doc_chunks", "code_chunks", "embedding_dim", "needs_reindex")
            }
        return JSONResponse(payload)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with sessions.run():
            yield

    return Starlette(
        routes=[Mount("/mcp", app=mcp_endpoint), Route("/health", endpoint=health)],
        lifespan=lifespan,
    )


async def run_http(host: str, port: int, api_key: str | None) -> None:
    """Serve one engine over HTTP until uvicorn shuts down."""
    import uvicorn

    from mnemos.bridge import open_engine
    from mnemos.server.mcp_server import create_server

    with open_engine() as engine:
        app = create_http_app(create_server(engine), api_key=api_key, engine=engine)
        if api_key is None:
            logger.warning("HTTP transport running without authentication on %s:%d", host, port)
        await uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info")).serve()
