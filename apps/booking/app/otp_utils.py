from __future__ import annotations

import asyncio
import logging

from fastapi import Request

from barber_otp import OTPService

from . import metrics

logger = logging.getLogger("booking.otp")


def build_otp_service() -> OTPService:
    service = OTPService.from_env()
    logger.info(
        "OTP service ready mode=%s store=%s ttl=%ss",
        service.cfg.dispatch_mode,
        service.cfg.store,
        service.cfg.ttl_secs,
    )
    return service


def get_otp_service(request: Request) -> OTPService:
    return request.app.state.otp_service


async def sweep_loop(service: OTPService, interval_secs: int) -> None:
    """Drop stale challenges every `interval_secs`; expiry itself is checked on verify."""
    while True:
        await asyncio.sleep(interval_secs)
        try:
            removed = service.sweep()
        except Exception:
            logger.exception("OTP sweep failed")
            continue
        if removed:
            metrics.OTP_SWEPT.inc(removed)
