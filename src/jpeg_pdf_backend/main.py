from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from omegaconf import DictConfig, OmegaConf

from .configuration import configure_logging, get_config
from .converter import ConversionService
from .errors import ConversionError, StreamAbortedError
from .intake import UploadIntake
from .models import ErrorResponse, HealthStatus, ServiceInfo

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
ARCHITECTURE = "2-tier"

_STARTED_AT = time.monotonic()

router = APIRouter()


def get_intake(request: Request) -> UploadIntake:
    return request.app.state.intake


def get_conversion_service(request: Request) -> ConversionService:
    return request.app.state.conversion_service


@router.get("/", response_model=ServiceInfo)
def service_info() -> ServiceInfo:
    return ServiceInfo(
        message="JPEG to PDF Converter API",
        version=VERSION,
        architecture=ARCHITECTURE,
        endpoints={
            "POST /convert": "Convert images to PDF",
            "GET /health": "Health check",
        },
    )


@router.get("/health", response_model=HealthStatus)
def healthcheck() -> HealthStatus:
    return HealthStatus(
        status="ok",
        timestamp=datetime.now(timezone.utc),
        uptime=time.monotonic() - _STARTED_AT,
        architecture=ARCHITECTURE,
    )


@router.post(
    "/convert",
    response_class=StreamingResponse,
    responses={
        200: {"content": {"application/pdf": {}}},
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def convert(
    request: Request,
    intake: UploadIntake = Depends(get_intake),
    service: ConversionService = Depends(get_conversion_service),
) -> StreamingResponse:
    form = await intake.parse(request.headers.get("content-type"), request.stream())
    job = service.open_job(form)

    # Last point at which a failure can still change the status code
    await service.validate(job)

    return StreamingResponse(
        job.stream(request.is_disconnected),
        media_type=job.media_type,
        headers=job.response_headers,
    )


async def handle_conversion_error(request: Request, exc: ConversionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"Conversion error: {exc.message}")
    else:
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    # Aborted streams were logged by the job and have no response to replace
    if not isinstance(exc, StreamAbortedError):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": str(exc)})


def create_app(config: Optional[DictConfig] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Runtime configuration; defaults to the process configuration

    Returns:
        A FastAPI app with its intake and conversion service on ``app.state``
    """
    config = config if config is not None else get_config()
    service = ConversionService(max_workers=config.pipeline.compression_workers)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(f"Backend running on port {config.server.port}")
        logger.info(f"Environment: {config.server.environment}")
        logger.info(f"Architecture: {ARCHITECTURE} (no database)")
        yield
        service.shutdown()

    app = FastAPI(title="JPEG to PDF Converter API", version=VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.intake = UploadIntake.from_config(config.limits)
    app.state.conversion_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=OmegaConf.to_container(config.server.cors_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    app.add_exception_handler(ConversionError, handle_conversion_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    configure_logging(config.server.log_level)
    uvicorn.run(
        "jpeg_pdf_backend.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
    )
