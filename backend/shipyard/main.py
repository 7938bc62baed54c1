import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shipyard.config import get_settings
from shipyard.database import init_db
from shipyard.routers import deployments
from shipyard.services.errors import ConflictError, DeploymentError
from shipyard.services.websocket import manager

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from shipyard.database import async_session, engine
    from shipyard.services.execution import get_background_executor, get_recovery_service

    await init_db()

    recovery = get_recovery_service()
    async with async_session() as db:
        await recovery.recover_on_startup(db)
    recovery.start_maintenance_loop()

    yield

    await recovery.stop_maintenance_loop()
    await get_background_executor().shutdown()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Deployment orchestrator for project workspaces",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(deployments.router)


@app.exception_handler(DeploymentError)
async def deployment_error_handler(request: Request, exc: DeploymentError):
    content = {"detail": exc.message}
    if isinstance(exc, ConflictError) and exc.holder_deployment_id:
        content["holder_deployment_id"] = exc.holder_deployment_id
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}


@app.get("/")
async def root():
    return {"message": f"Welcome to {settings.app_name}", "docs": "/docs"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        while True:
            try:
                # Timeout lets shutdown interrupt the receive
                message = await asyncio.wait_for(websocket.receive(), timeout=30.0)
                if message["type"] == "websocket.disconnect":
                    break
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "ping"})
                except Exception:
                    break
            except asyncio.CancelledError:
                break
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
