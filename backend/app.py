import os
import time
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

# Load environment variables from .env file for local development
from dotenv import load_dotenv
load_dotenv()

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from core.config import settings
from core.middleware import install_middleware
from core.errors import install_handlers
from core.websocket import Broadcaster, create_socket_server, register_handlers

logger = logging.getLogger(__name__)

NULL_SENTINELS = {"null", "none", "undefined", "false", "0"}

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5000",
]


def _normalize_origin(origin: str) -> Optional[str]:
    sanitized = origin.strip().rstrip('/')
    if not sanitized:
        return None
    if sanitized.lower() in NULL_SENTINELS:
        return None
    return sanitized


# --- CORS ---------------------------------------------------------------------
def _parse_origins(raw: str):
    """
    Accepts:
      - JSON array: '["https://a.com","https://b.com"]'
      - Comma-separated string: 'https://a.com,https://b.com'
      - Empty / missing -> []
    Never raises; always returns a list[str].
    """
    raw = (raw or '').strip()
    if not raw:
        return []

    if raw.startswith('['):
        try:
            val = json.loads(raw)
            if isinstance(val, list):
                origins = [_normalize_origin(str(x)) for x in val]
                return [o for o in origins if o]
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️  ALLOW_ORIGINS JSON parse error: {e}, falling back to comma-separated")

    fallback = [_normalize_origin(p) for p in raw.split(',')]
    return [p for p in fallback if p]


def _parse_regex(patt: Optional[str]) -> Optional[str]:
    """
    Returns a string pattern or None. Empty strings are treated as None.
    Anchors and path suffixes are stripped: CORS only matches the origin.
    """
    patt = (patt or '').strip().strip('"').strip("'")
    if not patt or patt.lower() in NULL_SENTINELS:
        return None
    patt = patt.lstrip('^')
    if '(/.*' in patt:
        patt = patt.split('(/.*')[0]
    return patt.rstrip('$') or None


def resolve_cors():
    """(allow_origins, allow_origin_regex), preferring the environment over settings."""
    origins = _parse_origins(os.getenv('ALLOW_ORIGINS', '')) or _parse_origins(settings.ALLOW_ORIGINS or '')
    regex = _parse_regex(os.getenv('ALLOW_ORIGIN_REGEX')) or _parse_regex(settings.ALLOW_ORIGIN_REGEX)
    if not origins and not regex:
        origins = list(DEV_ORIGINS)
        logger.info("🔧 Using default CORS origins for development")
    return origins, regex


# --- App factory -----------------------------------------------------------------
API = '/api/v1'


def create_app(broadcaster: Optional[Broadcaster] = None, *, run_background: bool = True) -> FastAPI:
    """
    Build the HTTP app. The broadcaster is injected into app.state and
    reached by routes through a dependency.
    """
    boot_t0 = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from core.db import initialize_database
        from core.scheduler import shutdown_scheduler, start_scheduler
        from modules.equipment.service import EquipmentService

        if not initialize_database():
            logger.warning("⚠️  Application will continue but may not function properly")
        if run_background and broadcaster is not None:
            start_scheduler(broadcaster, EquipmentService(broadcaster=broadcaster))
        yield
        if run_background:
            shutdown_scheduler()

    app = FastAPI(
        title='Equipment Inventory API',
        version='1.0.0',
        docs_url='/api/docs',
        openapi_url='/api/openapi.json',
        lifespan=lifespan,
    )
    app.state.broadcaster = broadcaster

    allow_origins, allow_origin_regex = resolve_cors()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Compress responses larger than 1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000, compresslevel=6)

    install_middleware(app)   # request logging
    install_handlers(app)     # AppError → JSON

    @app.get('/api/health')
    def health():
        return {'status': 'ok', 'uptime': round(time.time() - boot_t0, 2)}

    from core.auth import router as auth_router
    from modules.equipment.api import router as equipment_router
    app.include_router(auth_router, prefix=f'{API}/auth', tags=['auth'])
    app.include_router(equipment_router, prefix=f'{API}/equipment', tags=['equipment'])

    return app


# --- WebSocket Integration ---------------------------------------------------------
# Socket.IO wraps the FastAPI app so both share one port
sio = create_socket_server()
broadcaster = Broadcaster(sio)
register_handlers(sio, broadcaster)

fastapi_app = create_app(broadcaster)  # Keep reference for wrapping/testing
app = socketio.ASGIApp(
    socketio_server=sio,
    other_asgi_app=fastapi_app,
    socketio_path=settings.SOCKETIO_PATH,  # NOTE: ASGIApp prepends '/', so keep this bare
)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    uvicorn.run("app:app", host=host, port=port, reload=reload)
