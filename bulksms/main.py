import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bulksms.core.config import get_settings
from bulksms.core.database_init import init_database_schema
from bulksms.core.logging import configure_logging
from bulksms.core.middleware import RequestContextMiddleware
from bulksms.core.store import store_manager
from bulksms.routers import get_api_router


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()

    logger = logging.getLogger("bulksms.validation")

    app = FastAPI(title=settings.PROJECT_NAME)

    allow_origins = [origin.rstrip("/") for origin in settings.CORS_ORIGINS] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(
            "Validation error on %s %s detail=%s",
            request.method,
            request.url.path,
            exc.errors(),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": jsonable_errors(exc)},
        )

    api_router = get_api_router()
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.on_event("startup")
    async def startup_event():
        init_database_schema()
        store_manager.init_backend()
        if settings.RUN_WORKER_IN_PROCESS:
            from bulksms.workers import CampaignWorker

            app.state.worker = CampaignWorker()
            await app.state.worker.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        worker = getattr(app.state, "worker", None)
        if worker is not None:
            await worker.stop()

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("bulksms.main:app", host="0.0.0.0", port=8000)
