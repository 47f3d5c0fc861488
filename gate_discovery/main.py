# =======================================================================================
# gate_discovery/main.py - FastAPI Application Entry Point
# =======================================================================================
import logging
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import config
from .api.routes.events import router as events_router
from .api.routes.gates import router as gates_router
from .api.routes.merges import router as merges_router
from .api.routes.decisions import router as decisions_router
from .models.schemas import HealthResponse
from .services.gate_engine import GateEngine
from .workers.scheduler_worker import scheduler_worker, start_scheduler_worker

logger = logging.getLogger(__name__)


def create_app(gate_engine: Optional[GateEngine] = None) -> FastAPI:
    logging.basicConfig(
        level=logging.DEBUG if config.API_DEBUG else config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Gate Discovery API",
        version="1.0.0",
        description="Autonomous gate discovery, category binding and duplicate-gate merging",
        debug=config.API_DEBUG,
    )
    app.state.gate_engine = gate_engine or GateEngine()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(events_router, prefix="/api", tags=["events"])
    app.include_router(gates_router, prefix="/api", tags=["gates"])
    app.include_router(merges_router, prefix="/api", tags=["merges"])
    app.include_router(decisions_router, prefix="/api", tags=["decisions"])

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    def api_health():
        try:
            app.state.gate_engine.db.fetch_one("SELECT 1")
            return HealthResponse(status="ok", dataAvailable=True, message=None)
        except Exception as e:
            return HealthResponse(
                status="error", dataAvailable=False, message=str(e)
            )

    @app.on_event("startup")
    async def startup_event():
        app.state.gate_engine.db.init_schema()
        start_scheduler_worker(app.state.gate_engine)
        logger.info("Gate Discovery API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        scheduler_worker.stop()

    return app


app = create_app()
