"""Main application entry point."""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from .api.gateway import ScriptExecutionGateway
from .api.routes import router
from .core.config import settings
from .core.config_validation import run_config_checks
from .services.execution_service import execution_handler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info("Version: %s", settings.app_version)
    logger.info("Debug mode: %s", settings.debug)
    logger.info("Scripts directory: %s", settings.get_scripts_dir())

    config_result = run_config_checks()

    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            if issue.hint:
                logger.error("Hint: %s", issue.hint)

    if config_result.has_warnings:
        for issue in config_result.warnings:
            logger.warning("Configuration warning: %s", issue.message)
            if issue.hint:
                logger.warning("Hint: %s", issue.hint)

    logger.info("Script execution channel listening on %s", settings.websocket_path)

    try:
        yield
    finally:
        logger.info("Shutting down application")
        remaining = execution_handler.active_sessions
        if remaining:
            logger.warning("Stopping with %d execution session(s) still active", remaining)
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Script execution gateway for Proxmox VE hosts",
    lifespan=lifespan,
)
app.state.execution_handler = execution_handler


@app.middleware("http")
async def security_and_audit_middleware(request: Request, call_next):
    """Add security headers and request audit logging."""
    start_time = time.time()

    client_ip = request.client.host if request.client else "unknown"
    logger.info(
        f"Request started: {request.method} {request.url.path} from {client_ip}"
    )

    try:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        process_time = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"Status: {response.status_code} Time: {process_time:.4f}s"
        )

        return response

    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            f"Request failed: {request.method} {request.url.path} "
            f"Error: {str(e)[:200]} Time: {process_time:.4f}s"
        )
        raise


# The execution channel shares the listening port with the HTTP routes
app.add_middleware(ScriptExecutionGateway, handler=execution_handler)

# Include API routes
app.include_router(router)


def main():
    """Run the application."""
    uvicorn.run(
        "pvescripts.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
