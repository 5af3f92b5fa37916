import dataclasses
import time

from typing import Dict, Tuple


class RateLimiter:
    """Decides how long an item has to wait before it is queued again."""

    def delay(self, item):
        """Seconds the item should wait. Counts as one more requeue."""
        raise NotImplementedError()

    def forget(self, item):
        """Drop the history of the item, e.g. after it was processed."""
        raise NotImplementedError()

    def count(self, item):
        """Requeues of the item since it was last forgotten."""
        raise NotImplementedError()


@dataclasses.dataclass(init=False)
class MaxOfRateLimiter(RateLimiter):
    """The longest delay of all given limiters wins."""
    limiters: Tuple[RateLimiter, ...]

    def __init__(self, *limiters):
        self.limiters = limiters

    def delay(self, item):
        return max(limiter.delay(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)

    def count(self, item):
        return max(limiter.count(item) for limiter in self.limiters)


@dataclasses.dataclass
class BucketRateLimiter(RateLimiter):
    """Token bucket shared by all items: `burst` at once, then `qps` per second.

    Every call reserves a token. Once the bucket is empty the balance goes
    negative and the delay is the time it takes to refill the debt.
    """
    qps: float = 10
    burst: int = 100

    def __post_init__(self):
        self._tokens = float(self.burst)
        self._last = time.monotonic()

    def delay(self, item):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
        self._last = now
        self._tokens -= 1
        if self._tokens >= 0:
            return 0
        return -self._tokens / self.qps

    def forget(self, item):
        pass

    def count(self, item):
        return 0


@dataclasses.dataclass
class ItemExponentialFailureRateLimiter(RateLimiter):
    """`base_delay * 2**requeues` per item, capped at `max_delay`."""
    base_delay: float = 0.005  # 5 Milliseconds
    max_delay: float = 1000  # 1000 Seconds
    failures: Dict[object, int] = dataclasses.field(default_factory=dict, init=False)

    def delay(self, item):
        exponent = self.failures.get(item, 0)
        self.failures[item] = exponent + 1
        # 2**64 times any sane base delay is past every cap.
        if exponent > 64:
            return self.max_delay
        return min(self.base_delay * 2 ** exponent, self.max_delay)

    def forget(self, item):
        self.failures.pop(item, None)

    def count(self, item):
        return self.failures.get(item, 0)


def default_rate_limiter():
    """Per item exponential backoff combined with an overall 10 qps, 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(), BucketRateLimiter(qps=10, burst=100)
    )
