from __future__ import annotations

import unittest

from keeper_fakes import ConfigPatchMixin
from utils.http_client import ResilientHttpClient


class ComputeDelayTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(HTTP_BACKOFF_BASE_SECONDS=0.5, HTTP_BACKOFF_MAX_SECONDS=8.0)

    def test_zero_jitter_gives_exact_exponential_delays(self) -> None:
        self.patch_cfg(HTTP_JITTER_SECONDS=0.0)
        delays = [ResilientHttpClient._compute_delay(attempt=n, status=503) for n in (1, 2, 3, 6)]
        self.assertEqual(delays, [0.5, 1.0, 2.0, 8.0])

    def test_rate_limit_waits_the_full_cap(self) -> None:
        self.patch_cfg(HTTP_JITTER_SECONDS=0.0)
        self.assertEqual(ResilientHttpClient._compute_delay(attempt=1, status=429), 8.0)

    def test_jitter_is_added_within_bounds(self) -> None:
        self.patch_cfg(HTTP_JITTER_SECONDS=0.25)
        for _ in range(20):
            delay = ResilientHttpClient._compute_delay(attempt=1, status=500)
            self.assertGreaterEqual(delay, 0.5)
            self.assertLessEqual(delay, 0.75)

    def test_junk_config_values_fall_back_to_defaults(self) -> None:
        self.patch_cfg(HTTP_BACKOFF_BASE_SECONDS="abc", HTTP_JITTER_SECONDS=None)
        delay = ResilientHttpClient._compute_delay(attempt=1, status=500)
        self.assertGreaterEqual(delay, 0.5)
        self.assertLessEqual(delay, 0.75)


if __name__ == "__main__":
    unittest.main()
