from __future__ import annotations

import enum
import hashlib
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from .env import env_int
from .env_loader import ensure_loaded as _ensure_env_loaded
from .errors import InvalidStoreBackend, OTPRateLimitError
from .phone_utils import mask_phone, normalize_digits, normalize_phone_e164
from .sms_provider import (
    OP_SEND_OTP,
    DispatchAck,
    DispatchRequest,
    SmsConfig,
    SmsDispatcher,
    sms_config_from_env,
)
from .store import ChallengeRecord, ChallengeStore, Clock, InMemoryChallengeStore, RedisChallengeStore, SystemClock
from .throttle import ThrottlePolicy

logger = logging.getLogger("barber.otp")

DEFAULT_SMS_TEMPLATE = "Your {brand} verification code is {code}. Valid for {minutes} minutes. Do not share it."


@dataclass
class OTPConfig:
    ttl_minutes: int = 5
    dispatch_mode: str = "otp-only"
    cooldown_secs: int = 30
    window_secs: int = 3600
    max_attempts: int = 5
    brand: str = "LEADER"
    sms_template: str = DEFAULT_SMS_TEMPLATE
    default_country_code: str = "972"
    store: str = "memory"  # memory|redis
    redis_url: Optional[str] = None

    @property
    def ttl_secs(self) -> int:
        return self.ttl_minutes * 60


def from_env(prefix: str = "") -> OTPConfig:
    _ensure_env_loaded()
    p = f"{prefix}_" if prefix else ""
    mode = os.getenv(f"{p}SMS_MODE") or os.getenv(f"{p}DISPATCH_MODE") or "otp-only"
    return OTPConfig(
        ttl_minutes=env_int(f"{p}OTP_TTL_MINUTES", default=5),
        dispatch_mode=mode.strip().lower(),
        cooldown_secs=env_int(f"{p}OTP_COOLDOWN_SECS", default=30),
        window_secs=env_int(f"{p}OTP_WINDOW_SECS", default=3600),
        max_attempts=env_int(f"{p}OTP_MAX_ATTEMPTS", default=5),
        brand=os.getenv(f"{p}OTP_BRAND", "LEADER"),
        sms_template=os.getenv(f"{p}OTP_SMS_TEMPLATE") or DEFAULT_SMS_TEMPLATE,
        default_country_code=os.getenv(f"{p}PHONE_DEFAULT_COUNTRY_CODE", "972"),
        store=(os.getenv(f"{p}OTP_STORE", "memory") or "memory").lower(),
        redis_url=os.getenv(f"{p}REDIS_URL") or None,
    )


def generate_otp_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class VerificationResult(str, enum.Enum):
    VERIFIED = "verified"
    NO_CHALLENGE = "no_challenge"
    EXPIRED = "expired"
    MISMATCH = "mismatch"


@dataclass
class IssuedChallenge:
    phone: str
    ack: DispatchAck
    expires_at: float
    # Plaintext, for in-process callers only; never put it in a response.
    code: str

    def __repr__(self) -> str:
        return f"IssuedChallenge(phone={mask_phone(self.phone)!r}, sid={self.ack.sid!r})"


class ChallengeIssuer:
    def __init__(
        self,
        store: ChallengeStore,
        throttle: ThrottlePolicy,
        dispatcher: SmsDispatcher,
        *,
        ttl_secs: int = 300,
        message_template: str = DEFAULT_SMS_TEMPLATE,
        brand: str = "LEADER",
    ):
        self.store = store
        self.throttle = throttle
        self.dispatcher = dispatcher
        self.ttl_secs = ttl_secs
        self.message_template = message_template
        self.brand = brand

    def render_message(self, code: str) -> str:
        minutes = max(1, self.ttl_secs // 60)
        try:
            return self.message_template.format(code=code, brand=self.brand, minutes=minutes)
        except (KeyError, IndexError, ValueError):
            logger.warning("OTP_SMS_TEMPLATE is malformed; using the default template")
            return DEFAULT_SMS_TEMPLATE.format(code=code, brand=self.brand, minutes=minutes)

    def issue(self, key: str, now: float) -> IssuedChallenge:
        """Create (or replace) the challenge for `key` and send the code.

        The record is written before the send so a concurrent request sees the
        cooldown, and rolled back if the send fails: only issuances that were
        actually dispatched count towards the rate limit.
        """
        code = generate_otp_code()
        with self.store.lock(key):
            previous = self.store.get(key)
            admission = self.throttle.admit(previous, now)
            if not admission.allowed:
                logger.info("OTP throttled to=%s retry_after=%s", mask_phone(key), admission.retry_after)
                raise OTPRateLimitError(admission.reason or "Too many OTP requests", retry_after=admission.retry_after)
            record = ChallengeRecord(
                secret_hash=hash_code(code),
                expires_at=now + self.ttl_secs,
                attempt_window_start=admission.window_start if admission.window_start is not None else now,
                attempt_count=admission.attempt_count + 1,
                last_issued_at=now,
            )
            self.store.put(key, record)

        request = DispatchRequest(to=key, body=self.render_message(code), operation=OP_SEND_OTP)
        try:
            ack = self.dispatcher.send(request)
        except Exception:
            self._rollback(key, record, previous)
            raise
        logger.info(
            "OTP issued to=%s sid=%s status=%s attempt=%d",
            mask_phone(key),
            ack.sid,
            ack.status,
            record.attempt_count,
        )
        return IssuedChallenge(phone=key, ack=ack, expires_at=record.expires_at, code=code)

    def _rollback(self, key: str, written: ChallengeRecord, previous: Optional[ChallengeRecord]) -> None:
        with self.store.lock(key):
            if self.store.get(key) != written:
                return
            if previous is None:
                self.store.delete(key)
            else:
                self.store.put(key, previous)
        logger.warning("OTP dispatch failed; challenge for %s rolled back", mask_phone(key))


class ChallengeVerifier:
    def __init__(self, store: ChallengeStore):
        self.store = store

    def verify(self, key: str, submitted_code: str, now: float) -> VerificationResult:
        candidate = normalize_digits((submitted_code or "").strip())
        with self.store.lock(key):
            record = self.store.get(key)
            if record is None:
                result = VerificationResult.NO_CHALLENGE
            elif record.is_expired(now):
                self.store.delete(key)
                result = VerificationResult.EXPIRED
            elif not secrets.compare_digest(hash_code(candidate), record.secret_hash):
                result = VerificationResult.MISMATCH
            else:
                self.store.delete(key)
                result = VerificationResult.VERIFIED
        logger.info("OTP verify to=%s result=%s", mask_phone(key), result.value)
        return result


class OTPService:
    """The two entry points the booking flow calls: request and submit."""

    def __init__(
        self,
        cfg: OTPConfig,
        dispatcher: SmsDispatcher,
        *,
        store: Optional[ChallengeStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.cfg = cfg
        self.clock = clock or SystemClock()
        self.store = store if store is not None else InMemoryChallengeStore(window_secs=cfg.window_secs)
        self.dispatcher = dispatcher
        self.throttle = ThrottlePolicy(
            cooldown_secs=cfg.cooldown_secs,
            window_secs=cfg.window_secs,
            max_attempts=cfg.max_attempts,
        )
        self.issuer = ChallengeIssuer(
            self.store,
            self.throttle,
            dispatcher,
            ttl_secs=cfg.ttl_secs,
            message_template=cfg.sms_template,
            brand=cfg.brand,
        )
        self.verifier = ChallengeVerifier(self.store)

    @classmethod
    def from_config(
        cls,
        cfg: OTPConfig,
        sms_cfg: SmsConfig,
        *,
        clock: Optional[Clock] = None,
    ) -> "OTPService":
        clock = clock or SystemClock()
        dispatcher = SmsDispatcher.from_config(cfg.dispatch_mode, sms_cfg, validity_secs=cfg.ttl_secs, clock=clock)
        store: ChallengeStore
        if cfg.store == "redis":
            if not cfg.redis_url:
                raise InvalidStoreBackend("REDIS_URL must be configured when OTP_STORE=redis")
            store = RedisChallengeStore.from_url(cfg.redis_url, window_secs=cfg.window_secs, clock=clock)
        elif cfg.store == "memory":
            store = InMemoryChallengeStore(window_secs=cfg.window_secs)
        else:
            raise InvalidStoreBackend(f"Unknown OTP_STORE {cfg.store!r}; expected memory or redis")
        return cls(cfg, dispatcher, store=store, clock=clock)

    @classmethod
    def from_env(cls, prefix: str = "") -> "OTPService":
        return cls.from_config(from_env(prefix), sms_config_from_env(prefix))

    def normalize(self, raw_phone: str) -> str:
        return normalize_phone_e164(raw_phone, self.cfg.default_country_code)

    def request_challenge(self, raw_phone: str) -> IssuedChallenge:
        return self.issuer.issue(self.normalize(raw_phone), self.clock.now())

    def submit_challenge(self, raw_phone: str, code: str) -> VerificationResult:
        return self.verifier.verify(self.normalize(raw_phone), code, self.clock.now())

    def send_notice(self, raw_phone: str, body: str, operation: str) -> DispatchAck:
        """Send a non-OTP message (e.g. a booking confirmation); not throttled."""
        request = DispatchRequest(to=self.normalize(raw_phone), body=body, operation=operation)
        return self.dispatcher.send(request)

    def sweep(self) -> int:
        return self.store.sweep(self.clock.now())
