from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .store import ChallengeRecord


WINDOW_EXCEEDED_MESSAGE = "Too many OTP requests in the last hour. Please try later."


@dataclass(frozen=True)
class Admission:
    allowed: bool
    retry_after: Optional[int] = None
    reason: Optional[str] = None
    # Window bookkeeping the issuer carries into the next record.
    window_start: Optional[float] = None
    attempt_count: int = 0


class ThrottlePolicy:
    """Per-phone issuance gate: a short cooldown plus N issuances per window.

    `admit` only answers whether an OTP may be issued now; the issuer writes
    the counters once the code has actually been sent.
    """

    def __init__(self, cooldown_secs: int = 30, window_secs: int = 3600, max_attempts: int = 5):
        self.cooldown_secs = cooldown_secs
        self.window_secs = window_secs
        self.max_attempts = max_attempts

    def admit(self, record: Optional[ChallengeRecord], now: float) -> Admission:
        if record is None:
            return Admission(True, window_start=now, attempt_count=0)

        since_last = now - record.last_issued_at
        if since_last < self.cooldown_secs:
            wait = math.ceil(self.cooldown_secs - since_last)
            return Admission(
                False,
                retry_after=wait,
                reason=f"Please wait {wait}s before requesting another OTP.",
            )

        if now - record.attempt_window_start >= self.window_secs:
            return Admission(True, window_start=now, attempt_count=0)

        if record.attempt_count >= self.max_attempts:
            wait = math.ceil(self.window_secs - (now - record.attempt_window_start))
            return Admission(False, retry_after=max(wait, 1), reason=WINDOW_EXCEEDED_MESSAGE)

        return Admission(
            True,
            window_start=record.attempt_window_start,
            attempt_count=record.attempt_count,
        )
