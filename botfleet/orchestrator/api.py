# FilePath: "/botfleet/orchestrator/api.py"
# Project: BotFleet
# Description: Management API for operators: fleet status and control, bot records and context blobs.
# Author: "Michael Landbo"
# Date created: "19/10/2026"
# Version: "v.1.0.0"

import logging
import re
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import Response

from ..exceptions import ConfigError
from ..models import BotConfig, ContextRecord
from .fleet import FleetManager

logger = logging.getLogger("botfleet.api")

api_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


class BotCreate(BaseModel):
    """Payload for registering a new bot"""
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    platform: str = "telegram"
    token: Optional[str] = None
    enabled: bool = True
    system_policy: str = Field("", alias="systemPolicy")
    authorized_operator_ids: List[str] = Field(default_factory=list, alias="authorizedOperatorIds")


class BotUpdate(BaseModel):
    """Partial update; omitted fields keep their value"""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    token: Optional[str] = None
    enabled: Optional[bool] = None
    system_policy: Optional[str] = Field(None, alias="systemPolicy")
    authorized_operator_ids: Optional[List[str]] = Field(None, alias="authorizedOperatorIds")


class ContextUpdate(BaseModel):
    content: str


def new_bot_id(name: Optional[str] = None) -> str:
    """`<slug>-<epoch ms>` when a name is given, random hex otherwise"""
    if name:
        slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
        if slug:
            return f"{slug}-{int(time.time() * 1000)}"
    return secrets.token_hex(6)


def get_fleet(request: Request) -> FleetManager:
    return request.app.state.fleet


async def verify_admin(request: Request, key: Optional[str] = Security(api_key_header)) -> bool:
    """Check the X-Admin-Key header against ADMIN_API_KEY."""
    expected = request.app.state.admin_api_key
    if not expected or not key or not secrets.compare_digest(key, expected):
        raise HTTPException(status_code=403, detail="Invalid Admin Key")
    return True


# =========================
# Health & Metrics
# =========================
health_router = APIRouter(tags=["Health"])


@health_router.get("/health/live")
async def liveness():
    return {"status": "running"}


@health_router.get("/health/ready")
async def readiness(fleet: FleetManager = Depends(get_fleet)):
    if fleet.started:
        return {"status": "ready", "sessions": len(fleet.status())}
    return Response(status_code=503, content="Starting...")


@health_router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# =========================
# Fleet Control
# =========================
fleet_router = APIRouter(prefix="/fleet", tags=["Fleet"], dependencies=[Security(verify_admin)])


@fleet_router.get("/status")
async def fleet_status(fleet: FleetManager = Depends(get_fleet)):
    return [handle.to_dict() for handle in fleet.status().values()]


@fleet_router.post("/reload")
async def fleet_reload(fleet: FleetManager = Depends(get_fleet)):
    return await fleet.reload()


@fleet_router.post("/bots/{bot_id}/stop")
async def fleet_stop_bot(bot_id: str, fleet: FleetManager = Depends(get_fleet)):
    if not await fleet.stop(bot_id):
        raise HTTPException(status_code=404, detail=f"No running session for {bot_id}")
    return {"bot_id": bot_id, "status": "stopped"}


@fleet_router.post("/bots/{bot_id}/restart")
async def fleet_restart_bot(bot_id: str, fleet: FleetManager = Depends(get_fleet)):
    started = await fleet.restart(bot_id)
    handle = fleet.status().get(bot_id)
    return {"bot_id": bot_id, "started": started, "session": handle.to_dict() if handle else None}


# =========================
# Bot Records
# =========================
bots_router = APIRouter(prefix="/bots", tags=["Bot Management"], dependencies=[Security(verify_admin)])


async def _require_bot(fleet: FleetManager, bot_id: str) -> BotConfig:
    config = await fleet.config_store.get(bot_id)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Bot {bot_id} not found")
    return config


@bots_router.get("")
async def list_bots(fleet: FleetManager = Depends(get_fleet)):
    return [config.masked() for config in await fleet.config_store.list()]


@bots_router.post("", status_code=201)
async def create_bot(payload: BotCreate, fleet: FleetManager = Depends(get_fleet)):
    bot_id = payload.id or new_bot_id(payload.name)
    if await fleet.config_store.get(bot_id):
        raise HTTPException(status_code=409, detail=f"Bot with ID {bot_id} already exists")

    try:
        config = BotConfig(id=bot_id, **payload.model_dump(exclude={"id"}))
        await fleet.context_store.get(bot_id)
        await fleet.config_store.put(bot_id, config)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Bot registered: {bot_id}")
    reload_result = await fleet.reload()
    return {"bot": config.masked(), "fleet": reload_result}


@bots_router.get("/{bot_id}")
async def get_bot(bot_id: str, fleet: FleetManager = Depends(get_fleet)):
    config = await _require_bot(fleet, bot_id)
    handle = fleet.status().get(bot_id)
    return {"bot": config.masked(), "session": handle.to_dict() if handle else None}


@bots_router.patch("/{bot_id}")
async def update_bot(bot_id: str, payload: BotUpdate, fleet: FleetManager = Depends(get_fleet)):
    config = await _require_bot(fleet, bot_id)
    changes: Dict[str, Any] = payload.model_dump(exclude_unset=True)
    updated = BotConfig.model_validate({**config.model_dump(), **changes})
    await fleet.config_store.put(bot_id, updated)

    logger.info(f"Bot updated: {bot_id} ({', '.join(sorted(changes)) or 'no changes'})")
    reload_result = await fleet.reload()
    return {"bot": updated.masked(), "fleet": reload_result}


@bots_router.get("/{bot_id}/context")
async def get_context(bot_id: str, fleet: FleetManager = Depends(get_fleet)):
    await _require_bot(fleet, bot_id)
    record = await fleet.context_store.get(bot_id)
    return {"bot_id": bot_id, "content": record.text}


@bots_router.put("/{bot_id}/context")
async def put_context(bot_id: str, payload: ContextUpdate, fleet: FleetManager = Depends(get_fleet)):
    await _require_bot(fleet, bot_id)
    await fleet.context_store.put(bot_id, ContextRecord(bot_id=bot_id, text=payload.content))
    return {"bot_id": bot_id, "content": payload.content}


def create_app(fleet: FleetManager, admin_api_key: Optional[str]) -> FastAPI:
    """FastAPI app whose lifespan starts the fleet and tears it down on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await fleet.start()
        fleet.start_watching()
        yield
        await fleet.close()

    app = FastAPI(title="BotFleet Management API", lifespan=lifespan)
    app.state.fleet = fleet
    app.state.admin_api_key = admin_api_key
    app.include_router(health_router)
    app.include_router(fleet_router)
    app.include_router(bots_router)
    return app
