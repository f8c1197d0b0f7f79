"""
Gateway wrapper FastAPI application.

Serves the setup wizard under /setup and proxies everything else to the
backend gateway, which is started on demand and supervised in-process.
On boot the backend is auto-onboarded from environment variables when
possible, and an already configured backend is brought up in the background.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

import httpx
from fastapi import FastAPI
from fastapi.templating import Jinja2Templates

from . import __version__
from .auth import TokenStore
from .backend_config import headless_settings
from .commands import CommandRunner, run_cmd
from .config import Config, config
from .devices import DeviceApprover
from .onboard import Onboarder, OnboardingState
from .process import GatewaySupervisor
from .proxy import router as proxy_router
from .setup_routes import router as setup_router

logger = logging.getLogger(__name__)

templates_dir = Path(__file__).parent / "templates"


def configure_logging(settings: Config = config):
    """Console plus rotating file logging. Falls back to console only if the log dir is unwritable."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    handlers = [console_handler]
    file_error = None

    try:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.wrapper_log,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(log_formatter)
        handlers.append(file_handler)
    except OSError as e:
        file_error = e

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level, logging.INFO),
        handlers=handlers,
        force=True,
    )
    # Request lines from the HTTP client are noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    if file_error is not None:
        logger.warning(f"Logging to console only, cannot write {settings.wrapper_log}: {file_error}")


async def _boot_gateway(app: FastAPI):
    """Auto-onboard if needed, otherwise bring an existing install up."""
    state = app.state
    onboarder: Onboarder = state.onboarder

    assessed = onboarder.assess()
    logger.info(f"Onboarding state at boot: {assessed.value}")
    if assessed in (OnboardingState.ELIGIBLE, OnboardingState.CONFIGURED_BUT_DRIFTED):
        result = await onboarder.auto_onboard(state.token)
        logger.info(f"Auto-onboard finished: {result.value}")
        return

    if assessed is OnboardingState.NOT_NEEDED:
        try:
            changed = state.supervisor.backend_config.merge_owned(headless_settings(state.settings.workspace_dir))
            if changed:
                logger.info(f"Repaired gateway config keys: {', '.join(changed)}")
        except (OSError, ValueError) as e:
            logger.error(f"Could not repair gateway config: {e}")
        ok, message = await state.supervisor.restart(state.token)
        if not ok:
            logger.error(f"Gateway failed to start at boot: {message}")
        return

    logger.info("Backend not configured. Visit /setup to finish onboarding.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    state = app.state
    settings: Config = state.settings

    logger.info(f"Starting gateway wrapper on {settings.host}:{settings.port}")
    logger.info(f"Gateway target: {settings.gateway_target}")
    if not settings.setup_password:
        logger.warning("SETUP_PASSWORD is not set; /setup and the proxy will refuse every request")

    settings.ensure_writable_dirs()
    boot_task = asyncio.create_task(_boot_gateway(app))

    yield

    logger.info("Shutting down gateway wrapper...")
    if not boot_task.done():
        boot_task.cancel()
        await asyncio.gather(boot_task, return_exceptions=True)
    await state.approver.stop()
    await state.supervisor.stop()
    await state.http_client.aclose()


def create_app(
    settings: Config = config,
    transport: httpx.AsyncBaseTransport | None = None,
    run: CommandRunner = run_cmd,
) -> FastAPI:
    """Build the application with its components attached to app.state."""
    app = FastAPI(
        title="Openclaw Gateway Wrapper",
        description="Setup wizard and authenticated proxy for the openclaw gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    supervisor = GatewaySupervisor(settings, run=run, transport=transport)
    approver = DeviceApprover(settings, run=run)
    supervisor.set_ready_callback(approver.start)

    app.state.settings = settings
    app.state.run = run
    app.state.token = TokenStore(settings).resolve()
    app.state.supervisor = supervisor
    app.state.approver = approver
    app.state.onboarder = Onboarder(settings, supervisor, run=run)
    app.state.http_client = httpx.AsyncClient(
        base_url=settings.gateway_target,
        transport=transport,
        timeout=httpx.Timeout(30.0, read=None),
    )
    app.state.templates = Jinja2Templates(directory=str(templates_dir))

    # Setup routes first; the proxy router ends in a catch-all
    app.include_router(setup_router)
    app.include_router(proxy_router)
    return app
