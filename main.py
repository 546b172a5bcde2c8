"""ImgRouter: image generation gateway with an OpenAI-compatible surface.

Entry point: initializes the config store, loads the key pool, wires the
dispatcher, and serves the FastAPI application.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load .env first so config.settings sees it
load_dotenv()

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from imgrouter.api.routes import router
from imgrouter.api.schemas import GatewaySettings
from imgrouter.config.router import config_router
from imgrouter.core.adapters import build_adapters
from imgrouter.core.dispatcher import Dispatcher
from imgrouter.core.errors import GatewayError, UpstreamError
from imgrouter.db.database import init_db
from imgrouter.db.models import ConfigStore
from imgrouter.services.key_pool import KeyPoolManager

# ── Logging ────────────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("imgrouter")


def _parse_keys_yaml(path: str) -> list[dict]:
    """Parse the first-run key seed file.

    Accepts either a top-level list or a mapping with a `keys` list; each
    entry needs `value` and may set `name`, `provider`, `rotation_weight`.
    """
    import yaml

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if isinstance(data, list):
        return data
    return (data or {}).get("keys", []) or []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    # ── Startup ────────────────────────────────────────────────────────
    logger.info("Starting ImgRouter...")

    # 1. Initialize database
    await init_db(settings.db_path)
    logger.info("Database initialized: %s", settings.db_path)

    # 2. Load the key pool. The DB is the primary source;
    #    on first run (empty DB), seed it from keys.yaml.
    store = ConfigStore(settings.db_path)
    first_run = await store.load() is None
    pool = await KeyPoolManager.from_store(
        store,
        default_settings=GatewaySettings(
            access_token=settings.access_token,
            api_timeout=settings.request_timeout,
        ),
    )

    if first_run:
        try:
            entries = _parse_keys_yaml(settings.keys_yaml)
            imported, errors = await pool.import_keys(entries)
            for err in errors:
                logger.warning("keys.yaml: %s", err)
            logger.info("Seeded %d keys from %s (first run)", imported, settings.keys_yaml)
        except FileNotFoundError:
            logger.info("No keys.yaml found, add keys via the admin API")
        except Exception:
            logger.exception("Failed to load keys.yaml")

    # 3. Wire adapters + dispatcher
    adapters = build_adapters(
        volcengine_url=settings.volcengine_url,
        gitee_url=settings.gitee_url,
        modelscope_url=settings.modelscope_url,
        timeout=pool.settings.api_timeout,
    )
    app.state.key_pool = pool
    app.state.dispatcher = Dispatcher(adapters, pool)

    logger.info(
        "ImgRouter is ready, listening on %s:%d (providers: %s)",
        settings.host, settings.port, ", ".join(p.value for p in adapters),
    )

    yield

    # ── Shutdown ───────────────────────────────────────────────────────
    logger.info("ImgRouter stopped")


# ── FastAPI app ────────────────────────────────────────────────────────

app = FastAPI(
    title="ImgRouter",
    description="图像生成网关：火山引擎 / Gitee / ModelScope",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: any origin, as browser clients call the API directly
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)

app.include_router(router)
app.include_router(config_router)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if isinstance(exc, UpstreamError):
        logger.error("Proxy error (%s): %s", exc.provider, exc.message[:500])
    else:
        logger.warning("%s: %s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.get("/health")
async def health(request: Request):
    """Health check endpoint (no auth required)."""
    stats = await request.app.state.key_pool.stats()
    return {
        "status": "ok",
        "service": "imgrouter",
        "keys": stats["total_keys"],
        "active_keys": stats["active_keys"],
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
