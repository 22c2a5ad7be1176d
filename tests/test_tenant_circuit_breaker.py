import unittest
from unittest.mock import patch

from supplier_portal.contexts.tenancy.infrastructure.circuit_breaker import (
    CircuitSettings,
    TenantCircuitBreaker,
    TenantCircuitBreakers,
)


class TenantCircuitBreakerTest(unittest.TestCase):
    def _breaker(self, **overrides) -> TenantCircuitBreaker:
        settings = {
            "enabled": True,
            "error_rate_threshold": 0.5,
            "min_samples": 2,
            "window_seconds": 60,
            "open_seconds": 30,
            "half_open_max_calls": 1,
        }
        settings.update(overrides)
        return TenantCircuitBreaker("01", CircuitSettings(**settings))

    def test_opens_after_min_samples_over_threshold(self) -> None:
        breaker = self._breaker()
        breaker.record_failure()
        self.assertEqual(breaker.before_call(), (True, "closed"))
        breaker.record_failure()
        self.assertEqual(breaker.before_call(), (False, "open"))

    def test_successes_keep_rate_below_threshold(self) -> None:
        breaker = self._breaker(min_samples=3, error_rate_threshold=0.6)
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure()
        self.assertEqual(breaker.snapshot()["state"], "closed")

    def test_half_open_success_closes(self) -> None:
        breaker = self._breaker()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=100.0):
            breaker.record_failure()
            breaker.record_failure()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=131.0):
            self.assertEqual(breaker.before_call(), (True, "half_open"))
            self.assertEqual(breaker.before_call(), (False, "half_open"))
            breaker.record_success()
            self.assertEqual(breaker.before_call(), (True, "closed"))

    def test_half_open_failure_reopens(self) -> None:
        breaker = self._breaker()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=100.0):
            breaker.record_failure()
            breaker.record_failure()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=131.0):
            self.assertEqual(breaker.before_call(), (True, "half_open"))
            breaker.record_failure()
            self.assertEqual(breaker.before_call(), (False, "open"))

    def test_failures_outside_window_are_forgotten(self) -> None:
        breaker = self._breaker()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=100.0):
            breaker.record_failure()
        with patch("supplier_portal.contexts.tenancy.infrastructure.circuit_breaker.time.monotonic", return_value=200.0):
            breaker.record_failure()
            self.assertEqual(breaker.before_call(), (True, "closed"))
            self.assertEqual(breaker.snapshot()["samples"], 1)

    def test_settings_are_bounded(self) -> None:
        settings = CircuitSettings(error_rate_threshold="x", min_samples=0, half_open_max_calls=500).bounded()
        self.assertEqual(settings.error_rate_threshold, 0.6)
        self.assertEqual(settings.min_samples, 1)
        self.assertEqual(settings.half_open_max_calls, 100)

    def test_disabled_breaker_always_allows(self) -> None:
        breaker = self._breaker(enabled=False)
        for _ in range(5):
            breaker.record_failure()
        self.assertEqual(breaker.before_call(), (True, "disabled"))


class TenantCircuitBreakersTest(unittest.TestCase):
    def test_breakers_are_isolated_per_tenant(self) -> None:
        breakers = TenantCircuitBreakers(min_samples=1, error_rate_threshold=0.5)
        breakers.for_tenant("02").record_failure()

        self.assertEqual(breakers.for_tenant("02").state, "open")
        self.assertEqual(breakers.for_tenant("01").state, "closed")
        self.assertIs(breakers.for_tenant("01"), breakers.for_tenant("01"))
        self.assertEqual(sorted(breakers.snapshot()), ["01", "02"])

    def test_from_config_reads_tenant_circuit_settings(self) -> None:
        breakers = TenantCircuitBreakers.from_config(
            {
                "TENANT_CIRCUIT_ENABLED": True,
                "TENANT_CIRCUIT_MIN_SAMPLES": 1,
                "TENANT_CIRCUIT_ERROR_RATE_THRESHOLD": 1.0,
                "TENANT_CIRCUIT_OPEN_SECONDS": 5,
            }
        )
        breaker = breakers.for_tenant("07")
        breaker.record_failure()
        self.assertEqual(breaker.before_call(), (False, "open"))

    def test_reset_forgets_breakers(self) -> None:
        breakers = TenantCircuitBreakers(min_samples=1)
        breakers.for_tenant("01").record_failure()
        breakers.reset()
        self.assertEqual(breakers.snapshot(), {})


if __name__ == "__main__":
    unittest.main()
