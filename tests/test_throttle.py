import unittest

from icsync.models import ThrottleConfig
from icsync.throttle import MutationThrottle


class MutationThrottleTests(unittest.TestCase):
    def test_pause_after_each_mutation_and_burst(self) -> None:
        sleeps: list[float] = []
        throttle = MutationThrottle(ThrottleConfig(burst_every=3), sleep=sleeps.append)
        for _ in range(6):
            throttle.after_mutation()
        self.assertEqual(throttle.mutation_count, 6)
        self.assertEqual(sleeps, [1.0, 1.0, 1.0, 5.0, 1.0, 1.0, 1.0, 5.0])

    def test_error_pause_does_not_count_as_mutation(self) -> None:
        sleeps: list[float] = []
        throttle = MutationThrottle(ThrottleConfig(error_pause_seconds=2.5), sleep=sleeps.append)
        throttle.after_error()
        self.assertEqual(sleeps, [2.5])
        self.assertEqual(throttle.mutation_count, 0)

    def test_zero_pauses_never_sleep(self) -> None:
        sleeps: list[float] = []
        config = ThrottleConfig(pause_seconds=0, burst_every=1, burst_pause_seconds=0, error_pause_seconds=0)
        throttle = MutationThrottle(config, sleep=sleeps.append)
        throttle.after_mutation()
        throttle.after_error()
        self.assertEqual(sleeps, [])


if __name__ == "__main__":
    unittest.main()
