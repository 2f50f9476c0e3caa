from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from .env_loader import ensure_loaded as _ensure_env_loaded
from .errors import DispatchConfigError, DispatchRejectedError, InvalidDispatchMode, StatusLookupError
from .phone_utils import mask_phone
from .store import Clock, SystemClock

logger = logging.getLogger("barber.sms")

OP_SEND_OTP = "send-otp"
OP_SEND_CONFIRMATION = "send-confirmation"

MODE_ALL = "all"
MODE_OTP_ONLY = "otp-only"
MODE_NONE = "none"
DISPATCH_MODES = (MODE_ALL, MODE_OTP_ONLY, MODE_NONE)

# Twilio error codes that mean our credentials or sender setup are wrong.
_TWILIO_CONFIG_CODES = {20003, 20404, 21212, 21606, 21659, 21703}


@dataclass(frozen=True)
class DispatchRequest:
    to: str
    body: str
    operation: str


@dataclass(frozen=True)
class DispatchAck:
    sid: str
    status: str
    to: str
    mode: str
    simulated: bool = False
    body_preview: Optional[str] = None


class SmsBackend(Protocol):
    def send(self, request: DispatchRequest) -> DispatchAck:  # pragma: no cover - interface
        ...


class DispatchModePolicy:
    """Decides per operation whether a message really leaves the process."""

    def __init__(self, mode: str = MODE_OTP_ONLY):
        mode = (mode or MODE_OTP_ONLY).strip().lower()
        if mode not in DISPATCH_MODES:
            raise InvalidDispatchMode(f"Unsupported dispatch mode '{mode}'")
        self.mode = mode

    @property
    def may_send_any(self) -> bool:
        return self.mode != MODE_NONE

    def should_dispatch(self, operation: str) -> bool:
        if self.mode == MODE_ALL:
            return True
        if self.mode == MODE_NONE:
            return False
        return operation == OP_SEND_OTP


@dataclass
class SimulatedBackend:
    mode: str = MODE_NONE
    clock: Clock = field(default_factory=SystemClock)

    def send(self, request: DispatchRequest) -> DispatchAck:
        sid = f"mock_{request.operation}_{int(self.clock.now() * 1000)}"
        logger.info(
            "SMS simulated op=%s to=%s sid=%s",
            request.operation,
            mask_phone(request.to),
            sid,
        )
        return DispatchAck(
            sid=sid,
            status="mocked",
            to=request.to,
            mode=self.mode,
            simulated=True,
            body_preview=request.body[:30],
        )


@dataclass
class LogBackend:
    mode: str = MODE_ALL

    def send(self, request: DispatchRequest) -> DispatchAck:
        logger.info(
            "SMS log backend op=%s to=%s msg=%s",
            request.operation,
            mask_phone(request.to),
            _mask_code_in_message(request.body),
        )
        return DispatchAck(sid=f"log_{uuid.uuid4().hex}", status="logged", to=request.to, mode=self.mode)


@dataclass
class HttpBackend:
    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    timeout: float = 10.0
    mode: str = MODE_ALL
    transport: Optional[httpx.BaseTransport] = None

    def send(self, request: DispatchRequest) -> DispatchAck:
        if not (self.url or "").strip():
            raise DispatchConfigError("OTP_SMS_HTTP_URL must be configured for http SMS provider")
        payload = {"to": request.to, "message": request.body}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                res = client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DispatchRejectedError(f"SMS HTTP send failed: {exc}") from exc
        if res.status_code in (401, 403):
            raise DispatchConfigError(
                f"SMS HTTP provider refused credentials ({res.status_code})",
                code=res.status_code,
            )
        if res.status_code >= 400:
            raise DispatchRejectedError(
                f"SMS HTTP send failed ({res.status_code}): {res.text}",
                code=res.status_code,
                retryable=res.status_code >= 500 or res.status_code == 429,
            )
        data: dict[str, Any] = {}
        try:
            parsed = res.json()
            if isinstance(parsed, dict):
                data = parsed
        except ValueError:
            pass
        sid = str(data.get("id") or data.get("message_id") or f"http_{uuid.uuid4().hex}")
        return DispatchAck(sid=sid, status=str(data.get("status") or "accepted"), to=request.to, mode=self.mode)


@dataclass
class TwilioBackend:
    account_sid: str
    auth_token: str
    from_number: Optional[str] = None
    messaging_service_sid: Optional[str] = None
    status_callback: Optional[str] = None
    validity_period: Optional[int] = None
    mode: str = MODE_ALL
    client: Any = None

    def __post_init__(self) -> None:
        if not (self.account_sid and self.auth_token):
            raise DispatchConfigError("Twilio credentials are missing (TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN)")
        if not (self.from_number or self.messaging_service_sid):
            logger.warning("Set TWILIO_SMS_FROM or TWILIO_MESSAGING_SERVICE_SID to send SMS")
        if self.client is None:
            self.client = TwilioClient(self.account_sid, self.auth_token)

    def send(self, request: DispatchRequest) -> DispatchAck:
        options: dict[str, Any] = {"to": request.to, "body": request.body}
        if self.messaging_service_sid:
            options["messaging_service_sid"] = self.messaging_service_sid
        elif self.from_number:
            options["from_"] = self.from_number
        else:
            raise DispatchConfigError("Please set TWILIO_SMS_FROM or TWILIO_MESSAGING_SERVICE_SID")
        if self.status_callback:
            options["status_callback"] = self.status_callback
        if self.validity_period:
            options["validity_period"] = self.validity_period
        try:
            msg = self.client.messages.create(**options)
        except TwilioRestException as exc:
            if exc.status in (401, 403) or exc.code in _TWILIO_CONFIG_CODES:
                raise DispatchConfigError(exc.msg, code=exc.code) from exc
            raise DispatchRejectedError(exc.msg, code=exc.code) from exc
        except (TwilioException, OSError) as exc:
            raise DispatchRejectedError(f"Twilio send failed: {exc}") from exc
        return DispatchAck(sid=msg.sid, status=str(msg.status), to=request.to, mode=self.mode)

    def fetch_status(self, sid: str) -> dict[str, Any]:
        try:
            m = self.client.messages(sid).fetch()
        except TwilioRestException as exc:
            raise StatusLookupError(exc.msg, status=exc.status, code=exc.code) from exc
        except (TwilioException, OSError) as exc:
            raise StatusLookupError(f"Twilio status lookup failed: {exc}") from exc
        return {
            "sid": m.sid,
            "to": m.to,
            "from": m.from_,
            "status": m.status,
            "error_code": m.error_code,
            "error_message": m.error_message,
            "date_created": m.date_created,
            "date_sent": m.date_sent,
            "date_updated": m.date_updated,
        }


@dataclass
class SmsConfig:
    provider: str = "twilio"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_from: Optional[str] = None
    twilio_messaging_service_sid: Optional[str] = None
    twilio_status_callback: Optional[str] = None
    http_url: Optional[str] = None
    http_auth_token: Optional[str] = None
    sender_name: Optional[str] = None


def sms_config_from_env(prefix: str = "") -> SmsConfig:
    _ensure_env_loaded()
    p = f"{prefix}_" if prefix else ""

    def _get(name: str) -> Optional[str]:
        return (os.getenv(f"{p}{name}") or os.getenv(name) or "").strip() or None

    return SmsConfig(
        provider=(_get("SMS_PROVIDER") or "twilio").lower(),
        twilio_account_sid=_get("TWILIO_ACCOUNT_SID"),
        twilio_auth_token=_get("TWILIO_AUTH_TOKEN"),
        twilio_from=_get("TWILIO_SMS_FROM"),
        twilio_messaging_service_sid=_get("TWILIO_MESSAGING_SERVICE_SID"),
        twilio_status_callback=_get("TWILIO_STATUS_CALLBACK"),
        http_url=_get("OTP_SMS_HTTP_URL"),
        http_auth_token=_get("OTP_SMS_HTTP_AUTH_TOKEN"),
        sender_name=_get("OTP_SMS_SENDER_NAME"),
    )


def build_backend(cfg: SmsConfig, *, mode: str, validity_secs: Optional[int] = None) -> SmsBackend:
    provider = (cfg.provider or "twilio").lower()
    if provider == "twilio":
        return TwilioBackend(
            account_sid=cfg.twilio_account_sid or "",
            auth_token=cfg.twilio_auth_token or "",
            from_number=cfg.twilio_from,
            messaging_service_sid=cfg.twilio_messaging_service_sid,
            status_callback=cfg.twilio_status_callback,
            validity_period=validity_secs,
            mode=mode,
        )
    if provider == "http":
        return HttpBackend(
            url=cfg.http_url or "",
            auth_token=cfg.http_auth_token,
            sender_name=cfg.sender_name,
            mode=mode,
        )
    if provider == "log":
        return LogBackend(mode=mode)
    raise DispatchConfigError(f"Unsupported SMS_PROVIDER '{provider}'")


class SmsDispatcher:
    """Routes each request to the real backend or the simulated one.

    Both backends are chosen once at construction; callers never branch on
    whether a message was really sent.
    """

    def __init__(
        self,
        policy: DispatchModePolicy,
        backend: Optional[SmsBackend] = None,
        *,
        clock: Optional[Clock] = None,
    ):
        if policy.may_send_any and backend is None:
            raise DispatchConfigError(f"SMS mode '{policy.mode}' needs a real SMS backend")
        self.policy = policy
        self.backend = backend
        self.simulated = SimulatedBackend(mode=policy.mode, clock=clock or SystemClock())

    @classmethod
    def from_config(
        cls,
        mode: str,
        cfg: SmsConfig,
        *,
        validity_secs: Optional[int] = None,
        clock: Optional[Clock] = None,
    ) -> "SmsDispatcher":
        policy = DispatchModePolicy(mode)
        backend = build_backend(cfg, mode=policy.mode, validity_secs=validity_secs) if policy.may_send_any else None
        return cls(policy, backend, clock=clock)

    def send(self, request: DispatchRequest) -> DispatchAck:
        if not self.policy.should_dispatch(request.operation):
            return self.simulated.send(request)
        try:
            ack = self.backend.send(request)
        except Exception:
            logger.exception(
                "SMS backend %s failed op=%s to=%s",
                type(self.backend).__name__,
                request.operation,
                mask_phone(request.to),
            )
            raise
        logger.debug(
            "SMS dispatched via %s op=%s to=%s sid=%s",
            type(self.backend).__name__,
            request.operation,
            mask_phone(request.to),
            ack.sid,
        )
        return ack

    def lookup_status(self, sid: str) -> dict[str, Any]:
        fetch = getattr(self.backend, "fetch_status", None)
        if fetch is None:
            raise DispatchConfigError(f"Status lookup is not available in SMS mode '{self.policy.mode}'")
        return fetch(sid)

    def __repr__(self) -> str:  # pragma: no cover - helper for logging
        return f"SmsDispatcher({self.policy.mode}, {type(self.backend).__name__})"


def _mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def _mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{2,})", lambda m: _mask_code(m.group(0)), message)
