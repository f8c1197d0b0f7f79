"""
Setup wizard and /setup/api routes.

Everything except /setup/healthz sits behind the operator password.
"""

import asyncio
import logging
import os
import platform
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from .auth import require_operator
from .commands import CommandResult
from .config import PROVIDER_TO_AUTH_CHOICE, Config
from .onboard import OnboardingInProgressError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/setup")
gated = [Depends(require_operator)]

SENSITIVE_NAMES = {"mcporter.json"}


class OnboardRequest(BaseModel):
    flow: Optional[str] = Field(None, description="Onboarding flow (default quickstart)")
    authChoice: Optional[str] = Field(None, description="Backend --auth-choice value")
    authSecret: Optional[str] = Field(None, description="Provider API key or token")
    telegramToken: Optional[str] = None
    discordToken: Optional[str] = None
    slackBotToken: Optional[str] = None
    slackAppToken: Optional[str] = None


class PairingApproveRequest(BaseModel):
    channel: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1)


async def _cli(request: Request, args: list[str]) -> CommandResult:
    state = request.app.state
    return await state.run(
        state.settings.claw_args(args),
        extra_env=state.settings.child_env(),
        timeout=state.settings.command_timeout,
    )


@router.get("/healthz")
async def healthz():
    return {"ok": True}


@router.get("", response_class=HTMLResponse, dependencies=gated)
@router.get("/", response_class=HTMLResponse, dependencies=gated)
async def setup_page(request: Request):
    state = request.app.state
    return state.templates.TemplateResponse(
        request,
        "setup.html",
        {
            "configured": state.settings.is_configured(),
            "onboarding": state.onboarder.in_progress,
            "providers": sorted(PROVIDER_TO_AUTH_CHOICE),
        },
    )


@router.get("/api/gateway-token", dependencies=gated)
async def gateway_token(request: Request):
    return JSONResponse({"token": request.app.state.token}, headers={"Cache-Control": "no-store"})


@router.get("/api/status", dependencies=gated)
async def status(request: Request):
    state = request.app.state
    version = await _cli(request, ["--version"])
    channels_help = await _cli(request, ["channels", "add", "--help"])
    return {
        "configured": state.settings.is_configured(),
        "gatewayTarget": state.settings.gateway_target,
        "openclawVersion": version.output.strip(),
        "channelsAddHelp": channels_help.output,
        "providers": PROVIDER_TO_AUTH_CHOICE,
        "gateway": state.supervisor.info(),
        "onboarding": {
            "state": state.onboarder.assess().value,
            "last": state.onboarder.last_state.value if state.onboarder.last_state else None,
        },
    }


@router.post("/api/run", dependencies=gated)
async def run_onboarding(request: Request, data: OnboardRequest):
    """Run onboarding with the payload from the setup page."""
    state = request.app.state
    busy = JSONResponse(
        status_code=409,
        content={"ok": False, "output": "Onboarding is already in progress. Please wait."},
    )
    if state.onboarder.in_progress:
        return busy

    if state.settings.is_configured():
        ok, message = await state.supervisor.ensure_running(state.token)
        return {
            "ok": True,
            "output": f"Already configured (gateway: {message}).\nUse Reset setup if you want to rerun onboarding.\n",
        }

    try:
        result = await state.onboarder.run_manual(data.model_dump(exclude_none=True), state.token)
    except OnboardingInProgressError:
        return busy
    return JSONResponse(status_code=200 if result.ok else 500, content={"ok": result.ok, "output": result.output})


@router.post("/api/reset", dependencies=gated)
async def reset(request: Request):
    """Delete the backend config so onboarding can run again."""
    state = request.app.state
    if state.onboarder.in_progress:
        raise HTTPException(status_code=409, detail="Onboarding is in progress")
    try:
        state.onboarder.reset()
    except OSError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {"ok": True, "output": "Deleted config file. You can rerun setup now."}


@router.post("/api/pairing/approve", dependencies=gated)
async def approve_pairing(request: Request, data: PairingApproveRequest):
    result = await _cli(request, ["pairing", "approve", data.channel, data.code])
    return JSONResponse(status_code=200 if result.ok else 500, content={"ok": result.ok, "output": result.output})


@router.get("/api/debug", dependencies=gated)
async def debug(request: Request):
    state = request.app.state
    settings: Config = state.settings
    if not settings.debug:
        raise HTTPException(status_code=404, detail="Not Found")
    version = await _cli(request, ["--version"])
    channels_help = await _cli(request, ["channels", "add", "--help"])
    return {
        "wrapper": {
            "python": platform.python_version(),
            "port": settings.port,
            "stateDir": str(settings.state_dir),
            "workspaceDir": str(settings.workspace_dir),
            "configPath": str(settings.config_path),
            "gatewayTokenFromEnv": bool(settings.gateway_token),
            "gatewayTokenPersisted": settings.token_path.exists(),
        },
        "openclaw": {
            "entry": settings.backend_entry,
            "executable": settings.backend_executable,
            "version": version.output.strip(),
            "channelsAddHelpIncludesTelegram": "telegram" in channels_help.output,
        },
    }


def build_export(settings: Config) -> Path:
    """Write a tar.gz of state and workspace, minus tokens and the backend config."""
    sensitive = SENSITIVE_NAMES | {settings.config_path.name, settings.token_path.name}

    def exclude_sensitive(info: tarfile.TarInfo):
        name = Path(info.name).name
        if name in sensitive or name.endswith(".token"):
            return None
        return info

    fd, tmp = tempfile.mkstemp(suffix=".tar.gz")
    os.close(fd)
    with tarfile.open(tmp, "w:gz") as tar:
        for directory in (settings.state_dir, settings.workspace_dir):
            if directory.exists():
                tar.add(directory, arcname=directory.name, filter=exclude_sensitive)
    return Path(tmp)


@router.get("/export", dependencies=gated)
async def export(request: Request):
    settings: Config = request.app.state.settings
    logger.warning(f"Backup export requested at {datetime.now().isoformat()} (sensitive files excluded)")
    try:
        archive = await asyncio.to_thread(build_export, settings)
    except OSError as e:
        logger.error(f"Export failed: {e}")
        raise HTTPException(status_code=500, detail=f"Export failed: {e}")

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return FileResponse(
        archive,
        media_type="application/gzip",
        filename=f"openclaw-backup-{stamp}.tar.gz",
        background=BackgroundTask(os.unlink, archive),
    )
