from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from invoice_service.core.config import get_settings
from invoice_service.core.dependencies import close_clients
from invoice_service.core.exceptions import AppException
from invoice_service.core.logging_config import setup_logging
from invoice_service.core.metrics import MetricsMiddleware
from invoice_service.api.v1.router import api_router
from invoice_service.models.error import ErrorResponse
import logging

settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Invoice batch processing API.

    Features:
    * Document text extraction with Azure Document Intelligence
    * Normalization of invoice fields with an LLM
    * Sequential batches with concurrent items and per-item failure isolation
    * Live per-file status over server-sent events and websockets
    """,
    version="1.0.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(MetricsMiddleware)

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=exc.error_code,
            metadata=exc.metadata or None
        ).model_dump(by_alias=True, exclude_none=True)
    )

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

app.include_router(api_router, prefix=settings.API_V1_STR)

app.mount("/metrics", make_asgi_app())

@app.on_event("startup")
async def startup_event():
    setup_logging()
    logger.info(
        f"{settings.APP_NAME} started: batch size {settings.BATCH_SIZE}, "
        f"document model {settings.DOCUMENT_MODEL_ID}, completion model {settings.OPENAI_MODEL}"
    )

@app.on_event("shutdown")
async def shutdown_event():
    await close_clients()
    logger.info("Service clients closed")
