import sys
import threading
from pathlib import Path

import pytest


_LIB_PATH = Path(__file__).resolve().parents[1]
if str(_LIB_PATH) not in sys.path:
    sys.path.insert(0, str(_LIB_PATH))

from barber_otp import (  # noqa: E402
    DispatchAck,
    DispatchModePolicy,
    DispatchRejectedError,
    OTPConfig,
    OTPService,
    SmsDispatcher,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, secs: float) -> None:
        self.t += secs


class RecordingBackend:
    """Stands in for the SMS provider and keeps every request it was given."""

    def __init__(self):
        self.requests = []
        self._lock = threading.Lock()

    def send(self, request):
        with self._lock:
            self.requests.append(request)
            n = len(self.requests)
        return DispatchAck(sid=f"SM{n:04d}", status="queued", to=request.to, mode="all")


class FailingBackend:
    def __init__(self, exc=None):
        self.exc = exc or DispatchRejectedError("provider unavailable", code=30001)
        self.calls = 0

    def send(self, request):
        self.calls += 1
        raise self.exc


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def make_service(clock):
    def _make(mode="all", backend=None, store=None, **cfg_kwargs):
        cfg = OTPConfig(dispatch_mode=mode, **cfg_kwargs)
        dispatcher = SmsDispatcher(DispatchModePolicy(mode), backend, clock=clock)
        return OTPService(cfg, dispatcher, store=store, clock=clock)

    return _make


@pytest.fixture
def service(make_service, backend):
    return make_service("all", backend)


@pytest.fixture
def failing_backend():
    return FailingBackend
