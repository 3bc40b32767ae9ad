import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1 import api_router
from app.api.v1.coupons import status_for
from app.core.config import AuditPolicy, ContactPolicy, CouponPolicy, Settings, settings
from app.core.logging_config import configure_logging
from app.core.sentry import init_sentry
from app.core.startup_checks import validate_production_settings
from app.db.session import init_models
from app.middleware import RequestLoggingMiddleware
from app.schemas.error import ErrorResponse
from app.services.coupons import CouponError

logger = logging.getLogger(__name__)


def _error_response(
    request: Request, status_code: int, detail: Any, code: str | None, headers: dict[str, str] | None = None
) -> JSONResponse:
    payload = ErrorResponse(detail=detail, code=code, request_id=getattr(request.state, "request_id", None))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.model_dump()), headers=headers)


def get_application(source: Settings | None = None) -> FastAPI:
    source = source or settings
    configure_logging(source.log_json)
    validate_production_settings(source)
    init_sentry(source)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if source.database_auto_create:
            await init_models()
            logger.info("Database tables ensured")
        yield

    tags_metadata = [
        {"name": "coupons", "description": "Coupon redemption and administration"},
        {"name": "contact", "description": "Contact messages and support inbox"},
        {"name": "audit", "description": "Admin audit trail"},
    ]
    app = FastAPI(
        title=source.app_name,
        version=source.app_version,
        openapi_tags=tags_metadata,
        swagger_ui_parameters={"displayRequestDuration": True},
        lifespan=lifespan,
    )
    app.state.coupon_policy = CouponPolicy.from_settings(source)
    app.state.audit_policy = AuditPolicy.from_settings(source)
    app.state.contact_policy = ContactPolicy.from_settings(source)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=source.cors_origins,
        allow_credentials=source.cors_allow_credentials,
        allow_methods=source.cors_allow_methods,
        allow_headers=source.cors_allow_headers,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, exc.detail, None, getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(request, 422, jsonable_encoder(exc.errors()), "validation_error")

    @app.exception_handler(CouponError)
    async def coupon_error_handler(request: Request, exc: CouponError):
        return _error_response(request, status_for(exc.kind), exc.detail, exc.kind.value)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error",
            extra={"path": request.url.path, "method": request.method, "request_id": getattr(request.state, "request_id", None)},
        )
        return _error_response(request, 500, "Internal server error", "internal_error")

    return app


app = get_application()
