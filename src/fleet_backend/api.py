# src/fleet_backend/api.py
from __future__ import annotations
import asyncio
import hmac
import logging
from datetime import datetime, timezone

from aiohttp import web

from .engine import Engine
from .errors import (
    BackendUnavailable,
    ConfigError,
    DuplicateName,
    FleetError,
    InvalidTransition,
    NotFound,
    PoolExhausted,
    StaleRecord,
    ValidationError,
)

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", Engine)

ERROR_STATUS = {
    ValidationError: 400,
    ConfigError: 400,
    NotFound: 404,
    DuplicateName: 409,
    InvalidTransition: 409,
    StaleRecord: 409,
    PoolExhausted: 507,
    BackendUnavailable: 503,
}


def _error(status: int, name: str, message: str) -> web.Response:
    return web.json_response({"error": name, "message": message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except FleetError as e:
        status = next((s for cls, s in ERROR_STATUS.items() if isinstance(e, cls)), 500)
        return _error(status, type(e).__name__, str(e))


def token_middleware(token: str):
    @web.middleware
    async def check_token(request: web.Request, handler):
        if request.path == "/health":
            return await handler(request)
        header = request.headers.get("Authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.strip(), token):
            return _error(401, "Unauthorized", "Missing or invalid bearer token")
        return await handler(request)
    return check_token


def _peer_id(request: web.Request) -> int:
    raw = request.match_info["id"]
    try:
        return int(raw)
    except ValueError:
        raise web.HTTPNotFound(
            text='{"error": "NotFound", "message": "Invalid peer id"}', content_type="application/json",
        ) from None


# ---------- Routes ----------

routes = web.RouteTableDef()


@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    return web.json_response({
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "backends": sorted(k.value for k in engine.registry.kinds()),
        "loop": engine.loop.running,
    })


@routes.post("/peers")
async def create_peer(request: web.Request) -> web.Response:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    backend = body.get("backendKind", body.get("backend"))
    if backend is None:
        raise ValidationError("'backendKind' is required")
    # écriture du fichier d'état hors de la boucle
    peer_id = await asyncio.to_thread(request.app[ENGINE_KEY].manager.add_peer, body.get("name"), backend)
    return web.json_response({"id": peer_id}, status=201)


@routes.get("/peers")
async def list_peers(request: web.Request) -> web.Response:
    manager = request.app[ENGINE_KEY].manager
    include_revoked = request.query.get("include_revoked", "").lower() in ("1", "true", "yes")
    peers = manager.list_peers(backend=request.query.get("backend"), include_revoked=include_revoked)
    return web.json_response({"peers": [p.to_dict() for p in peers]})


@routes.get("/peers/{id}")
async def get_peer(request: web.Request) -> web.Response:
    status = request.app[ENGINE_KEY].manager.get_peer_status(_peer_id(request))
    return web.json_response(status.to_dict())


@routes.delete("/peers/{id}")
async def revoke_peer(request: web.Request) -> web.Response:
    await asyncio.to_thread(request.app[ENGINE_KEY].manager.revoke_peer, _peer_id(request))
    return web.json_response({"status": "accepted"}, status=202)


@routes.post("/peers/{id}/rotate")
async def rotate_peer(request: web.Request) -> web.Response:
    await asyncio.to_thread(request.app[ENGINE_KEY].manager.rotate_key, _peer_id(request))
    return web.json_response({"status": "accepted"}, status=202)


@routes.post("/peers/{id}/retry")
async def retry_peer(request: web.Request) -> web.Response:
    await asyncio.to_thread(request.app[ENGINE_KEY].manager.retry_peer, _peer_id(request))
    return web.json_response({"status": "accepted"}, status=202)


@routes.get("/peers/{id}/config")
async def peer_config(request: web.Request) -> web.Response:
    conf = await request.app[ENGINE_KEY].manager.client_config(_peer_id(request))
    return web.Response(text=conf, content_type="text/plain")


@routes.get("/peers/{id}/qr")
async def peer_qr(request: web.Request) -> web.Response:
    png = await request.app[ENGINE_KEY].manager.client_qr_png(_peer_id(request))
    return web.Response(body=png, content_type="image/png")


@routes.get("/peers/{id}/stats")
async def peer_stats(request: web.Request) -> web.Response:
    stats = await request.app[ENGINE_KEY].manager.peer_stats(_peer_id(request))
    return web.json_response(stats.to_dict())


@routes.get("/stats")
async def fleet_stats(request: web.Request) -> web.Response:
    rows, unavailable = await request.app[ENGINE_KEY].manager.fleet_stats(request.query.get("backend"))
    return web.json_response({
        "peers": [{**status.to_dict(), "stats": stats.to_dict()} for status, stats in rows],
        "unavailable": unavailable,
    })


@routes.post("/reconcile")
async def reconcile(request: web.Request) -> web.Response:
    report = await request.app[ENGINE_KEY].reconciler.reconcile()
    return web.json_response(report.to_dict())


# ---------- Application ----------

def build_app(engine: Engine, manage_lifecycle: bool = True) -> web.Application:
    middlewares = [error_middleware]
    if engine.cfg.api.token:
        middlewares.insert(0, token_middleware(engine.cfg.api.token))

    app = web.Application(middlewares=middlewares)
    app[ENGINE_KEY] = engine
    app.add_routes(routes)

    if manage_lifecycle:
        async def on_startup(app: web.Application) -> None:
            await app[ENGINE_KEY].start()

        async def on_cleanup(app: web.Application) -> None:
            await app[ENGINE_KEY].close()

        app.on_startup.append(on_startup)
        app.on_cleanup.append(on_cleanup)
    return app


def serve(engine: Engine) -> None:
    api = engine.cfg.api
    logger.info("management API listening on %s:%d", api.host, api.port)
    web.run_app(build_app(engine), host=api.host, port=api.port, print=None)
