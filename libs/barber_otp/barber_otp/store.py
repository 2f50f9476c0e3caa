from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Dict, Iterator, Optional, Protocol

import redis
from redis.exceptions import LockError, LockNotOwnedError

logger = logging.getLogger("barber.otp.store")


class Clock(Protocol):
    def now(self) -> float:  # pragma: no cover - interface
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


@dataclass
class ChallengeRecord:
    secret_hash: str
    expires_at: float
    attempt_window_start: float
    attempt_count: int
    last_issued_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_stale(self, now: float, window_secs: int) -> bool:
        """Expired and outside its throttle window; safe to forget."""
        return self.is_expired(now) and now - self.attempt_window_start >= window_secs

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ChallengeRecord":
        return cls(
            secret_hash=str(data["secret_hash"]),
            expires_at=float(data["expires_at"]),
            attempt_window_start=float(data["attempt_window_start"]),
            attempt_count=int(data["attempt_count"]),
            last_issued_at=float(data["last_issued_at"]),
        )


class ChallengeStore(Protocol):
    def get(self, key: str) -> Optional[ChallengeRecord]:  # pragma: no cover - interface
        ...

    def put(self, key: str, record: ChallengeRecord) -> None:  # pragma: no cover - interface
        ...

    def delete(self, key: str) -> None:  # pragma: no cover - interface
        ...

    def lock(self, key: str):  # pragma: no cover - interface
        ...

    def sweep(self, now: float) -> int:  # pragma: no cover - interface
        ...


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class InMemoryChallengeStore:
    """Process-local store with one mutex per phone key.

    `_guard` protects the dicts themselves and is never held while a caller
    works inside `lock(key)`, so different keys never wait on each other.
    """

    def __init__(self, window_secs: int = 3600):
        self.window_secs = window_secs
        self._records: Dict[str, ChallengeRecord] = {}
        self._locks: Dict[str, _KeyLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> Optional[ChallengeRecord]:
        with self._guard:
            return self._records.get(key)

    def put(self, key: str, record: ChallengeRecord) -> None:
        with self._guard:
            self._records[key] = record

    def delete(self, key: str) -> None:
        with self._guard:
            self._records.pop(key, None)

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.users += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._locks.pop(key, None)

    def sweep(self, now: float) -> int:
        with self._guard:
            stale = [k for k, rec in self._records.items() if rec.is_stale(now, self.window_secs)]
        removed = 0
        for key in stale:
            with self.lock(key):
                rec = self.get(key)
                if rec is not None and rec.is_stale(now, self.window_secs):
                    self.delete(key)
                    removed += 1
        if removed:
            logger.debug("Swept %d stale OTP challenges", removed)
        return removed

    def __len__(self) -> int:
        with self._guard:
            return len(self._records)


class LockTimeout(RuntimeError):
    pass


class RedisChallengeStore:
    """Challenge store shared through Redis.

    Records live under `otp:challenge:<phone>` with a TTL long enough to keep
    both the code and its throttle window; expiry is still checked against
    `expires_at` on read.
    """

    def __init__(
        self,
        client,
        *,
        window_secs: int = 3600,
        prefix: str = "otp",
        lock_ttl_ms: int = 5000,
        lock_wait_secs: float = 5.0,
        clock: Optional[Clock] = None,
    ):
        self.redis = client
        self.window_secs = window_secs
        self.prefix = prefix
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_wait_secs = lock_wait_secs
        self.clock = clock or SystemClock()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChallengeStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _record_key(self, key: str) -> str:
        return f"{self.prefix}:challenge:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self.prefix}:lock:{key}"

    def get(self, key: str) -> Optional[ChallengeRecord]:
        raw = self.redis.get(self._record_key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return ChallengeRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping unreadable OTP record for %s", key[-2:])
            self.delete(key)
            return None

    def put(self, key: str, record: ChallengeRecord) -> None:
        keep_until = max(record.expires_at, record.attempt_window_start + self.window_secs)
        ttl = max(1, int(keep_until - self.clock.now()) + 1)
        self.redis.set(self._record_key(key), json.dumps(record.to_dict()), ex=ttl)

    def delete(self, key: str) -> None:
        self.redis.delete(self._record_key(key))

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        # redis-py's Lock checks the token and deletes in one script on release.
        lock = self.redis.lock(
            self._lock_key(key),
            timeout=self.lock_ttl_ms / 1000,
            blocking_timeout=self.lock_wait_secs,
            sleep=0.01,
        )
        try:
            acquired = lock.acquire()
        except LockError as exc:
            raise LockTimeout(f"Could not lock OTP challenge for {key[-2:]}") from exc
        if not acquired:
            raise LockTimeout(f"Could not lock OTP challenge for {key[-2:]}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockNotOwnedError:
                logger.warning("OTP lock for %s expired before release", key[-2:])

    def sweep(self, now: float) -> int:
        # Redis expires keys on its own.
        return 0
