import asyncio
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from barber_otp import DispatchError, InvalidPhoneFormat, LockTimeout, OTPRateLimitError, OTPService

from . import metrics
from .config import settings
from .errors import (
    AppError,
    app_error_handler,
    dispatch_error_handler,
    http_exception_handler,
    invalid_phone_handler,
    rate_limit_handler,
    store_unavailable_handler,
)
from .middleware_request_id import RequestIDMiddleware
from .otp_utils import build_otp_service, sweep_loop
from .routers import otp as otp_router


def create_app(otp_service: Optional[OTPService] = None) -> FastAPI:
    app = FastAPI(title="Barbershop Booking API", version="0.1.0")
    app.state.otp_service = otp_service or build_otp_service()

    allowed_origins = settings.ALLOWED_ORIGINS or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # Request ID + JSON logs
    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(InvalidPhoneFormat, invalid_phone_handler)
    app.add_exception_handler(OTPRateLimitError, rate_limit_handler)
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(LockTimeout, store_unavailable_handler)
    app.add_exception_handler(RedisError, store_unavailable_handler)

    @app.middleware("http")
    async def _metrics_mw(request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start
        route = getattr(request.scope.get("route"), "path", None) or request.url.path
        metrics.REQ.labels(request.method, route, str(response.status_code)).inc()
        metrics.REQ_DURATION.labels(request.method, route).observe(duration)
        return response

    @app.get("/health")
    def health():
        return {"status": "ok", "env": settings.ENV}

    @app.get("/metrics")
    def metrics_endpoint():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    if settings.OTP_SWEEP_INTERVAL_SECS > 0:
        @app.on_event("startup")
        async def _start_otp_sweeper():
            app.state.otp_sweeper = asyncio.create_task(
                sweep_loop(app.state.otp_service, settings.OTP_SWEEP_INTERVAL_SECS)
            )

        @app.on_event("shutdown")
        async def _stop_otp_sweeper():
            task = getattr(app.state, "otp_sweeper", None)
            if task:
                task.cancel()

    app.include_router(otp_router.router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)
