"""Admin API: key pool management, runtime settings, import/export."""

from __future__ import annotations

import json
import logging

import yaml
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response

from imgrouter.api.auth import get_key_pool, verify_token
from imgrouter.api.schemas import (
    ImportRequest,
    KeyCreateBody,
    KeyInfoResponse,
    KeyWeightBody,
    LoginRequest,
    ModelSizeConfig,
    ProviderInfoResponse,
    SettingsUpdateBody,
    StatsResponse,
)
from imgrouter.services.key_pool import KeyPoolManager

logger = logging.getLogger("imgrouter.config")

config_router = APIRouter(prefix="/api", tags=["admin"])
protected = [Depends(verify_token)]


# ── Auth (public) ──────────────────────────────────────────────────────

@config_router.get("/auth/check")
async def auth_check(pool: KeyPoolManager = Depends(get_key_pool)):
    needs_auth = bool(pool.settings.access_token)
    return {"needsAuth": needs_auth}


@config_router.post("/auth/login")
async def auth_login(req: LoginRequest, pool: KeyPoolManager = Depends(get_key_pool)):
    access_token = pool.settings.access_token
    if not access_token:
        return {"success": True, "message": "No access token configured"}
    if req.token == access_token:
        return {"success": True, "token": access_token}
    raise HTTPException(status_code=401, detail="Invalid access token")


# ── Key CRUD ───────────────────────────────────────────────────────────

@config_router.get("/keys", dependencies=protected, response_model=list[KeyInfoResponse])
async def list_keys(pool: KeyPoolManager = Depends(get_key_pool)):
    """List keys with masked credentials."""
    return [KeyInfoResponse(**r.to_dict()) for r in await pool.list_keys()]


@config_router.post("/keys", dependencies=protected, status_code=201)
async def create_key(req: KeyCreateBody, pool: KeyPoolManager = Depends(get_key_pool)):
    record = await pool.add_key(
        name=req.name,
        credential=req.value.strip(),
        provider=req.provider,
        rotation_weight=req.rotation_weight,
    )
    return {"success": True, "id": record.id, "provider": record.provider.value}


@config_router.delete("/keys/{key_id}", dependencies=protected)
async def delete_key(key_id: str, pool: KeyPoolManager = Depends(get_key_pool)):
    await pool.delete_key(key_id)
    return {"success": True}


@config_router.post("/keys/{key_id}/ban", dependencies=protected)
async def ban_key(key_id: str, pool: KeyPoolManager = Depends(get_key_pool)):
    record = await pool.suspend(key_id)
    return {"success": True, "suspended_until": record.suspended_until}


@config_router.post("/keys/{key_id}/unban", dependencies=protected)
async def unban_key(key_id: str, pool: KeyPoolManager = Depends(get_key_pool)):
    await pool.release(key_id)
    return {"success": True}


@config_router.put("/keys/{key_id}/weight", dependencies=protected)
async def update_key_weight(
    key_id: str,
    req: KeyWeightBody,
    pool: KeyPoolManager = Depends(get_key_pool),
):
    record = await pool.update_weight(key_id, req.rotation_weight)
    return {"success": True, "rotation_weight": record.rotation_weight}


# ── Import / Export ────────────────────────────────────────────────────

@config_router.post("/keys/import", dependencies=protected)
async def import_keys(req: ImportRequest, pool: KeyPoolManager = Depends(get_key_pool)):
    """Import keys from YAML or JSON: a list, or a mapping with a `keys` list."""
    content = req.content.strip()
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise HTTPException(status_code=422, detail=f"Invalid YAML/JSON: {exc}")

    raw_list = parsed if isinstance(parsed, list) else parsed.get("keys", []) if isinstance(parsed, dict) else []
    if not raw_list:
        raise HTTPException(status_code=422, detail="No keys found in content")

    imported, errors = await pool.import_keys(raw_list)
    return {
        "imported_keys": imported,
        "errors": errors,
        "message": f"Imported {imported} keys" + (f" ({len(errors)} errors)" if errors else ""),
    }


@config_router.get("/keys/export", dependencies=protected)
async def export_keys(pool: KeyPoolManager = Depends(get_key_pool)):
    """Export all keys (unmasked) as YAML."""
    export_data = {
        "keys": [
            {
                "name": r.name,
                "value": r.credential,
                "provider": r.provider.value,
                "rotation_weight": r.rotation_weight,
            }
            for r in await pool.list_keys()
        ]
    }
    yaml_content = yaml.dump(
        export_data, allow_unicode=True, default_flow_style=False, sort_keys=False
    )
    return Response(
        content=yaml_content,
        media_type="text/yaml",
        headers={"Content-Disposition": "attachment; filename=keys.yaml"},
    )


# ── Settings ───────────────────────────────────────────────────────────

@config_router.get("/settings", dependencies=protected)
async def get_settings(pool: KeyPoolManager = Depends(get_key_pool)):
    return pool.settings.model_dump(exclude={"model_sizes"})


@config_router.put("/settings", dependencies=protected)
async def update_settings(
    req: SettingsUpdateBody,
    request: Request,
    pool: KeyPoolManager = Depends(get_key_pool),
):
    changes = req.model_dump(exclude_none=True)
    updated = await pool.update_settings(changes)
    if "api_timeout" in changes:
        request.app.state.dispatcher.apply_timeout(updated.api_timeout)
    return {"success": True}


@config_router.get("/model-sizes", dependencies=protected)
async def get_model_sizes(pool: KeyPoolManager = Depends(get_key_pool)):
    return {k: v.model_dump() for k, v in pool.settings.model_sizes.items()}


@config_router.put("/model-sizes", dependencies=protected)
async def update_model_sizes(
    req: dict[str, ModelSizeConfig],
    pool: KeyPoolManager = Depends(get_key_pool),
):
    logger.info("Model size update: %s", {k: v.model_dump() for k, v in req.items()})
    await pool.update_model_sizes(req)
    return {"success": True}


# ── Info ───────────────────────────────────────────────────────────────

@config_router.get(
    "/providers", dependencies=protected, response_model=list[ProviderInfoResponse]
)
async def list_providers(request: Request):
    """Dispatchable providers and their defaults."""
    dispatcher = request.app.state.dispatcher
    return [a.describe() for a in dispatcher.adapters.values()]


@config_router.get("/stats", dependencies=protected, response_model=StatsResponse)
async def get_stats(pool: KeyPoolManager = Depends(get_key_pool)):
    return await pool.stats()
