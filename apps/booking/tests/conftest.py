import os
import sys
from pathlib import Path

import pytest


_ROOT = Path(__file__).resolve().parents[3]
for _path in (_ROOT / "libs" / "barber_otp", _ROOT / "apps" / "booking"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

# Importing app.main builds a default service from the environment; keep it offline.
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("SMS_MODE", "none")
os.environ.setdefault("OTP_STORE", "memory")

from fastapi.testclient import TestClient  # noqa: E402

from barber_otp import DispatchAck, DispatchModePolicy, OTPConfig, OTPService, SmsDispatcher  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, secs: float) -> None:
        self.t += secs


class RecordingBackend:
    def __init__(self):
        self.requests = []
        self.error = None

    def send(self, request):
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return DispatchAck(sid=f"SM{len(self.requests):04d}", status="queued", to=request.to, mode="all")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sms():
    return RecordingBackend()


@pytest.fixture
def fixed_code(monkeypatch):
    monkeypatch.setattr("barber_otp.otp.generate_otp_code", lambda: "482913")
    return "482913"


@pytest.fixture
def make_client(clock, sms):
    from app.main import create_app

    def _make(mode: str = "none", *, backend=None, store=None):
        cfg = OTPConfig(dispatch_mode=mode)
        if backend is None and mode != "none":
            backend = sms
        dispatcher = SmsDispatcher(DispatchModePolicy(mode), backend, clock=clock)
        service = OTPService(cfg, dispatcher, store=store, clock=clock)
        return TestClient(create_app(otp_service=service))

    return _make
