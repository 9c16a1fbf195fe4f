from dotenv import load_dotenv
load_dotenv()

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from viraloop.context import AppContext
from viraloop.utils.config import config
from viraloop.utils.logger import logger, structlog
from viraloop.billing.api import router as billing_router, register_exception_handlers

instance_id = str(uuid.uuid4())[:8]


def create_app(ctx: Optional[AppContext] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        env_mode = config.ENV_MODE.value if config.ENV_MODE else "unknown"
        logger.debug(f"Starting up FastAPI application with instance ID: {instance_id} in {env_mode} mode")

        app_ctx = getattr(app.state, "ctx", None) or AppContext.from_config(config)
        app.state.ctx = app_ctx
        try:
            await app_ctx.initialize()
            if config.ENABLE_CREDIT_SCHEDULER:
                app_ctx.start_scheduler()
        except Exception as e:
            logger.error(f"Error during application startup: {e}")
            raise

        yield

        logger.debug("Shutting down application context")
        await app_ctx.close()

    app = FastAPI(lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
    )

    @app.middleware("http")
    async def log_requests_middleware(request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = str(uuid.uuid4())
        start_time = time.time()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=request.client.host if request.client else "unknown",
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.debug(f"Request completed: {request.method} {request.url.path} | Status: {response.status_code} | Time: {process_time:.2f}s")
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(f"Request failed: {request.method} {request.url.path} | Error: {e} | Time: {process_time:.2f}s")
            raise

    register_exception_handlers(app)
    app.include_router(billing_router, prefix="/api")

    @app.get("/api/health", summary="Health Check", tags=["system"])
    async def health_check():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "instance_id": instance_id,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host="0.0.0.0", port=8000, reload=config.is_local)
