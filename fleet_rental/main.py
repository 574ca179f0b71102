from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from fleet_rental.api.v1 import evidence, health, rentals
from fleet_rental.clients.external import ExternalClient
from fleet_rental.config.logging import setup_logging
from fleet_rental.config.settings import Settings
from fleet_rental.db.database import get_sessionmaker
from fleet_rental.db.models import Base
from fleet_rental.monitoring.metrics import init_app_info, setup_instrumentator

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting fleet-rental service")

    settings = Settings()
    app.state.external_client = ExternalClient(settings)

    if settings.create_schema:
        engine = get_sessionmaker(settings).kw["bind"]
        Base.metadata.create_all(engine)
        logger.info("Database schema created")

    yield
    logger.info("Shutting down fleet-rental service")


def _error_body(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        body = _error_body(exc.detail["code"], exc.detail.get("message", ""))
    else:
        body = _error_body("http_error", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    )
    return JSONResponse(status_code=422, content=_error_body("validation_error", errors))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500, content=_error_body("internal_error", "Internal server error")
    )


def create_app() -> FastAPI:
    setup_logging()

    app = FastAPI(
        title="Fleet Rental Service",
        description="Rental lifecycle, vehicle handover and settlement for the EV fleet",
        version=VERSION,
        lifespan=lifespan,
    )

    instrumentator = setup_instrumentator()
    instrumentator.instrument(app).expose(app)

    init_app_info(VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(rentals.router, prefix="/api/v1", tags=["rentals"])
    app.include_router(evidence.router, prefix="/api/v1", tags=["evidence"])

    return app


def main():
    import uvicorn

    uvicorn.run(
        "fleet_rental.main:app",
        host="0.0.0.0",
        port=8000,
        log_config=None,
    )


app = create_app()


if __name__ == "__main__":
    main()
