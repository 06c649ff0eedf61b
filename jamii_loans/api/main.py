"""FastAPI application factory"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from jamii_loans.api.errors import to_http_exception
from jamii_loans.api.middleware import RequestIDMiddleware, MetricsMiddleware
from jamii_loans.api.v1 import admin, loans, mpesa, users
from jamii_loans.infrastructure.observability.logging import setup_logging
from jamii_loans.config import settings
from jamii_loans.domain.exceptions import DomainException

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="JAMII Loans Gateway",
        description="Loan lifecycle and M-PESA payment service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Domain errors that a route did not translate itself
    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException):
        error = to_http_exception(exc)
        return JSONResponse(status_code=error.status_code, content={"detail": error.detail})

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(loans.router, prefix="/v1", tags=["loans"])
    app.include_router(users.router, prefix="/v1", tags=["users"])
    app.include_router(admin.router, prefix="/v1", tags=["admin"])
    app.include_router(mpesa.router, prefix="/v1", tags=["mpesa"])

    return app


app = create_app()
