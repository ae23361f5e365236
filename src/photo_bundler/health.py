"""Health/status endpoint for operational visibility."""

import logging
import threading
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI

from .supervisor import IdleShutdownSupervisor

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def create_health_app(
    supervisor: IdleShutdownSupervisor, service_name: str, environment: str
) -> FastAPI:
    app = FastAPI(title="Photo Bundle Worker", version=VERSION, docs_url=None, redoc_url=None)

    @app.get("/")
    def root() -> dict:
        return {"status": "healthy", "service": service_name, "version": VERSION}

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "healthy",
            "state": supervisor.state.value,
            "busy": supervisor.is_busy,
            "currentJob": supervisor.current_job,
            "idleSeconds": round(supervisor.idle_seconds(), 1),
            "uptimeSeconds": round(supervisor.uptime_seconds(), 1),
            "service": service_name,
            "environment": environment,
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


class HealthServer:
    """Runs the health app under uvicorn on a daemon thread."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        )
        self._thread: threading.Thread | None = None
        self._port = port

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="health-server", daemon=True)
        self._thread.start()
        logger.info("Health endpoint listening", extra={"port": self._port})

    def stop(self) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)
