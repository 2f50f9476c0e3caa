from fastapi import APIRouter, Depends

from barber_otp import (
    OP_SEND_CONFIRMATION,
    OP_SEND_OTP,
    DispatchConfigError,
    OTPService,
    StatusLookupError,
    VerificationResult,
)

from .. import metrics
from ..config import settings
from ..errors import AppError
from ..otp_utils import get_otp_service
from ..schemas import (
    SendConfirmationIn,
    SendConfirmationOut,
    SendOtpIn,
    SendOtpOut,
    VerifyOtpIn,
    VerifyOtpOut,
)


router = APIRouter(prefix="/api", tags=["otp"])

_VERIFY_FAILURES = {
    VerificationResult.NO_CHALLENGE: ("no_challenge", "No OTP sent to this phone"),
    VerificationResult.EXPIRED: ("otp_expired", "OTP expired, please request a new one"),
    VerificationResult.MISMATCH: ("otp_invalid", "Invalid OTP code"),
}

CONFIRMATION_TEMPLATE = (
    "Booking confirmed!\n"
    "Name: {customer}\n"
    "Barber: {barber}\n"
    "Service: {services}\n"
    "Date: {date}\n"
    "Time: {time}\n"
    "{brand} - thank you for your booking!"
)


@router.post("/send-otp", response_model=SendOtpOut, response_model_exclude_none=True)
def send_otp(payload: SendOtpIn, service: OTPService = Depends(get_otp_service)):
    if not payload.phone.strip():
        raise AppError(400, "invalid_phone", "Phone is required")
    issued = service.request_challenge(payload.phone)
    sent = service.dispatcher.policy.should_dispatch(OP_SEND_OTP)
    metrics.OTP_EVENTS.labels("/api/send-otp", "sent" if sent else "simulated").inc()
    out = SendOtpOut(
        message="OTP sent via SMS" if sent else "OTP generated (SMS disabled)",
        sid=issued.ack.sid,
        status=issued.ack.status,
    )
    if settings.DEV_MODE and settings.OTP_EXPOSE_DEV_CODE:
        out.dev_code = issued.code
    return out


@router.post("/verify-otp", response_model=VerifyOtpOut)
def verify_otp(payload: VerifyOtpIn, service: OTPService = Depends(get_otp_service)):
    if not payload.phone.strip() or not payload.code.strip():
        raise AppError(400, "missing_fields", "Phone and code are required")
    result = service.submit_challenge(payload.phone, payload.code)
    metrics.OTP_EVENTS.labels("/api/verify-otp", result.value).inc()
    if result is not VerificationResult.VERIFIED:
        code, message = _VERIFY_FAILURES[result]
        raise AppError(400, code, message)
    return VerifyOtpOut(message="OTP verified successfully", status=result.value)


@router.post("/send-confirmation", response_model=SendConfirmationOut)
def send_confirmation(payload: SendConfirmationIn, service: OTPService = Depends(get_otp_service)):
    required = (payload.phone, payload.barber_name, payload.services, payload.date, payload.time)
    if not all(v.strip() for v in required):
        raise AppError(400, "missing_fields", "Missing required fields")
    body = CONFIRMATION_TEMPLATE.format(
        customer=(payload.customer_name or "").strip() or "Not specified",
        barber=payload.barber_name.strip(),
        services=payload.services.strip(),
        date=payload.date.strip(),
        time=payload.time.strip(),
        brand=service.cfg.brand,
    )
    ack = service.send_notice(payload.phone, body, OP_SEND_CONFIRMATION)
    sent = service.dispatcher.policy.should_dispatch(OP_SEND_CONFIRMATION)
    return SendConfirmationOut(
        message="Confirmation sent via SMS" if sent else "Confirmation processed (SMS disabled for this route)",
        sid=ack.sid,
        status=ack.status,
    )


@router.get("/status/{sid}")
def message_status(sid: str, service: OTPService = Depends(get_otp_service)):
    try:
        return service.dispatcher.lookup_status(sid)
    except DispatchConfigError as exc:
        raise AppError(400, "status_unavailable", str(exc))
    except StatusLookupError as exc:
        if exc.status == 404:
            raise AppError(404, "message_not_found", "No message with this sid")
        raise AppError(502, "status_lookup_failed", str(exc), {"provider_status": exc.status, "provider_code": exc.code})
