import threading

import pytest

from barber_otp import (
    DispatchConfigError,
    DispatchRejectedError,
    InvalidPhoneFormat,
    OTPRateLimitError,
    VerificationResult,
    generate_otp_code,
    hash_code,
)
from barber_otp.throttle import WINDOW_EXCEEDED_MESSAGE


PHONE = "+972501234567"


def _wrong(code: str) -> str:
    return f"{(int(code) + 1) % 10**6:06d}"


def test_generated_codes_are_six_digits():
    codes = {generate_otp_code() for _ in range(200)}
    assert all(len(c) == 6 and c.isdigit() for c in codes)
    assert len(codes) > 1


def test_record_keeps_only_the_hash(service, backend):
    issued = service.request_challenge("0501234567")
    record = service.store.get(PHONE)
    assert record.secret_hash == hash_code(issued.code)
    assert issued.code in backend.requests[0].body
    assert backend.requests[0].to == PHONE
    assert backend.requests[0].operation == "send-otp"
    assert issued.code not in repr(issued)


def test_full_scenario(service, clock, monkeypatch):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr("barber_otp.otp.generate_otp_code", lambda: next(codes))

    start = clock.now()
    service.request_challenge(PHONE)
    clock.t = start + 60
    assert service.submit_challenge(PHONE, "999999") is VerificationResult.MISMATCH
    clock.t = start + 240
    assert service.submit_challenge(PHONE, "111111") is VerificationResult.VERIFIED

    clock.t = start + 241
    service.request_challenge(PHONE)
    assert service.submit_challenge(PHONE, "111111") is VerificationResult.MISMATCH
    assert service.submit_challenge(PHONE, "222222") is VerificationResult.VERIFIED


def test_verified_record_is_consumed(service):
    issued = service.request_challenge(PHONE)
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.VERIFIED
    assert service.store.get(PHONE) is None
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.NO_CHALLENGE


def test_expired_code_reports_expired_and_is_removed(service, clock):
    issued = service.request_challenge(PHONE)
    clock.advance(5 * 60 + 1)
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.EXPIRED
    assert service.store.get(PHONE) is None
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.NO_CHALLENGE


def test_code_is_valid_up_to_the_expiry_instant(service, clock):
    issued = service.request_challenge(PHONE)
    clock.advance(5 * 60)
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.VERIFIED


def test_wrong_code_keeps_record_for_retry(service):
    issued = service.request_challenge(PHONE)
    wrong = _wrong(issued.code)
    for _ in range(3):
        assert service.submit_challenge(PHONE, wrong) is VerificationResult.MISMATCH
    assert service.store.get(PHONE) is not None
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.VERIFIED


def test_verify_without_challenge(service):
    assert service.submit_challenge(PHONE, "123456") is VerificationResult.NO_CHALLENGE


def test_verify_accepts_local_spelling_and_native_digits(service, monkeypatch):
    monkeypatch.setattr("barber_otp.otp.generate_otp_code", lambda: "123456")
    service.request_challenge(PHONE)
    assert service.submit_challenge("٠٥٠١٢٣٤٥٦٧", " ١٢٣٤٥٦ ") is VerificationResult.VERIFIED


def test_ttl_is_configurable(make_service, backend, clock):
    svc = make_service("all", backend, ttl_minutes=1)
    issued = svc.request_challenge(PHONE)
    assert issued.expires_at == clock.now() + 60
    clock.advance(61)
    assert svc.submit_challenge(PHONE, issued.code) is VerificationResult.EXPIRED


def test_second_request_inside_cooldown_is_throttled(service, clock, backend):
    service.request_challenge(PHONE)
    clock.advance(12)
    with pytest.raises(OTPRateLimitError) as exc_info:
        service.request_challenge(PHONE)
    assert 0 < exc_info.value.retry_after <= 30
    assert exc_info.value.retry_after == 18
    assert len(backend.requests) == 1


def test_sixth_request_in_the_hour_is_rejected_then_window_resets(service, clock):
    for _ in range(5):
        service.request_challenge(PHONE)
        clock.advance(30)
    with pytest.raises(OTPRateLimitError) as exc_info:
        service.request_challenge(PHONE)
    assert str(exc_info.value) == WINDOW_EXCEEDED_MESSAGE
    assert exc_info.value.retry_after > 0

    clock.advance(3600)
    issued = service.request_challenge(PHONE)
    record = service.store.get(PHONE)
    assert record.attempt_count == 1
    assert record.attempt_window_start == clock.now()
    assert service.submit_challenge(PHONE, issued.code) is VerificationResult.VERIFIED


def test_invalid_phone_never_reaches_store_or_transport(service, backend):
    with pytest.raises(InvalidPhoneFormat):
        service.request_challenge("12-34")
    assert len(service.store) == 0
    assert backend.requests == []


def test_mode_none_simulates_but_keeps_a_live_record(make_service, clock):
    svc = make_service("none", None)
    issued = svc.request_challenge(PHONE)
    assert issued.ack.simulated
    assert issued.ack.status == "mocked"
    assert issued.ack.sid.startswith("mock_send-otp_")
    assert issued.ack.to == PHONE
    assert svc.store.get(PHONE) is not None
    assert svc.submit_challenge(PHONE, issued.code) is VerificationResult.VERIFIED


def test_otp_only_sends_otp_but_simulates_notices(make_service, backend):
    svc = make_service("otp-only", backend)
    issued = svc.request_challenge(PHONE)
    assert not issued.ack.simulated
    ack = svc.send_notice("0501234567", "Booking confirmed", "send-confirmation")
    assert ack.simulated
    assert ack.status == "mocked"
    assert len(backend.requests) == 1


def test_notices_are_not_throttled(service, backend):
    service.request_challenge(PHONE)
    for _ in range(3):
        service.send_notice(PHONE, "hello", "send-confirmation")
    assert len(backend.requests) == 4


def test_failed_first_dispatch_leaves_nothing_behind(make_service, failing_backend):
    failing = failing_backend()
    svc = make_service("all", failing)
    with pytest.raises(DispatchRejectedError) as exc_info:
        svc.request_challenge(PHONE)
    assert exc_info.value.retryable
    assert svc.store.get(PHONE) is None

    # No cooldown was consumed by the failed send.
    svc.dispatcher.backend = failing_backend(DispatchConfigError("bad credentials"))
    with pytest.raises(DispatchConfigError) as exc_info:
        svc.request_challenge(PHONE)
    assert not exc_info.value.retryable


def test_failed_dispatch_restores_previous_challenge(make_service, backend, clock, failing_backend):
    svc = make_service("all", backend)
    first = svc.request_challenge(PHONE)
    before = svc.store.get(PHONE)

    clock.advance(40)
    svc.dispatcher.backend = failing_backend()
    with pytest.raises(DispatchRejectedError):
        svc.request_challenge(PHONE)
    assert svc.store.get(PHONE) == before
    assert svc.store.get(PHONE).attempt_count == 1

    svc.dispatcher.backend = backend
    assert svc.submit_challenge(PHONE, first.code) is VerificationResult.VERIFIED


def test_concurrent_requests_for_one_phone_issue_once(service, backend):
    workers = 16
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def _worker():
        barrier.wait()
        try:
            service.request_challenge(PHONE)
            result = "issued"
        except OTPRateLimitError:
            result = "throttled"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert outcomes.count("issued") == 1
    assert outcomes.count("throttled") == workers - 1
    assert len(backend.requests) == 1


def test_held_key_does_not_block_other_keys(service):
    done = threading.Event()

    def _other_phone():
        service.request_challenge("+972509999999")
        done.set()

    with service.store.lock(PHONE):
        t = threading.Thread(target=_other_phone)
        t.start()
        assert done.wait(timeout=2)
    t.join(timeout=2)


def test_message_template_and_brand(make_service, backend):
    svc = make_service("all", backend, brand="Jihad Salon", sms_template="{brand}: {code} ({minutes}m)")
    issued = svc.request_challenge(PHONE)
    assert backend.requests[0].body == f"Jihad Salon: {issued.code} (5m)"


def test_malformed_template_falls_back_to_default(make_service, backend):
    svc = make_service("all", backend, sms_template="code {otp}")
    issued = svc.request_challenge(PHONE)
    assert issued.code in backend.requests[0].body
    assert "LEADER" in backend.requests[0].body
