from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, replace
from threading import Lock


CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"
DISABLED = "disabled"


def _bounded(value, default, minimum, maximum, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


@dataclass(frozen=True)
class CircuitSettings:
    enabled: bool = True
    error_rate_threshold: float = 0.6
    min_samples: int = 3
    window_seconds: int = 120
    open_seconds: int = 30
    half_open_max_calls: int = 1

    def bounded(self) -> "CircuitSettings":
        return replace(
            self,
            enabled=bool(self.enabled),
            error_rate_threshold=_bounded(self.error_rate_threshold, 0.6, 0.05, 1.0, float),
            min_samples=_bounded(self.min_samples, 3, 1, 1000, int),
            window_seconds=_bounded(self.window_seconds, 120, 1, 3600, int),
            open_seconds=_bounded(self.open_seconds, 30, 0, 3600, int),
            half_open_max_calls=_bounded(self.half_open_max_calls, 1, 1, 100, int),
        )

    @classmethod
    def from_config(cls, config) -> "CircuitSettings":
        return cls(
            enabled=bool(config.get("TENANT_CIRCUIT_ENABLED", True)),
            error_rate_threshold=config.get("TENANT_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6),
            min_samples=config.get("TENANT_CIRCUIT_MIN_SAMPLES", 3),
            window_seconds=config.get("TENANT_CIRCUIT_WINDOW_SECONDS", 120),
            open_seconds=config.get("TENANT_CIRCUIT_OPEN_SECONDS", 30),
            half_open_max_calls=config.get("TENANT_CIRCUIT_HALF_OPEN_MAX_CALLS", 1),
        ).bounded()


class TenantCircuitBreaker:
    """Failure-rate breaker for one tenant database.

    Outcomes inside a sliding window decide when to open. After
    ``open_seconds`` a limited number of trial calls is let through; the
    first trial outcome closes or re-opens the circuit.
    """

    def __init__(self, tenant_code: str, settings: CircuitSettings | None = None) -> None:
        self.tenant_code = tenant_code
        self._settings = (settings or CircuitSettings()).bounded()
        self._lock = Lock()
        self._state = CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._outcomes: deque[tuple[float, bool]] = deque()

    @property
    def settings(self) -> CircuitSettings:
        return self._settings

    def _window(self, now: float) -> tuple[int, int]:
        horizon = now - self._settings.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()
        failures = sum(1 for _at, ok in self._outcomes if not ok)
        return len(self._outcomes), failures

    def _trip(self, now: float) -> None:
        self._state = OPEN
        self._opened_at = now
        self._trial_calls = 0

    def _reset(self) -> None:
        self._state = CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._outcomes.clear()

    def before_call(self) -> tuple[bool, str]:
        """Return ``(allowed, state)`` for the next connection attempt."""
        if not self._settings.enabled:
            return True, DISABLED
        now = time.monotonic()
        with self._lock:
            if self._state == OPEN and now - self._opened_at >= self._settings.open_seconds:
                self._state = HALF_OPEN
                self._trial_calls = 0
            if self._state == OPEN:
                return False, OPEN
            if self._state == HALF_OPEN:
                if self._trial_calls >= self._settings.half_open_max_calls:
                    return False, HALF_OPEN
                self._trial_calls += 1
            return True, self._state

    def record_success(self) -> None:
        if not self._settings.enabled:
            return
        now = time.monotonic()
        with self._lock:
            if self._state == HALF_OPEN:
                self._reset()
            elif self._state == CLOSED:
                self._outcomes.append((now, True))
                self._window(now)

    def record_failure(self) -> None:
        if not self._settings.enabled:
            return
        now = time.monotonic()
        with self._lock:
            if self._state == OPEN:
                return
            self._outcomes.append((now, False))
            if self._state == HALF_OPEN:
                self._trip(now)
                return
            samples, failures = self._window(now)
            if samples >= self._settings.min_samples and failures / samples >= self._settings.error_rate_threshold:
                self._trip(now)

    @property
    def state(self) -> str:
        if not self._settings.enabled:
            return DISABLED
        with self._lock:
            return self._state

    def snapshot(self) -> dict:
        now = time.monotonic()
        with self._lock:
            samples, failures = self._window(now)
            return {
                "state": self._state if self._settings.enabled else DISABLED,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(failures / samples, 4) if samples else 0.0,
                "open_for_seconds": round(max(0.0, now - self._opened_at), 2) if self._state == OPEN else 0.0,
                "trial_calls": self._trial_calls,
            }


class TenantCircuitBreakers:
    """One breaker per tenant code, created on first use with shared settings."""

    def __init__(self, settings: CircuitSettings | None = None, **overrides) -> None:
        base = settings or CircuitSettings()
        self._settings = replace(base, **overrides).bounded() if overrides else base.bounded()
        self._lock = Lock()
        self._breakers: dict[str, TenantCircuitBreaker] = {}

    @classmethod
    def from_config(cls, config) -> "TenantCircuitBreakers":
        return cls(CircuitSettings.from_config(config))

    def for_tenant(self, tenant_code: str) -> TenantCircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(tenant_code)
            if breaker is None:
                breaker = self._breakers[tenant_code] = TenantCircuitBreaker(tenant_code, self._settings)
            return breaker

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            breakers = sorted(self._breakers.items())
        return {code: breaker.snapshot() for code, breaker in breakers}

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()
