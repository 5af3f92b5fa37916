from .limiters import (
    BucketRateLimiter,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimiter,
    default_rate_limiter,
)
from .queue import Workqueue

__all__ = [
    'BucketRateLimiter',
    'ItemExponentialFailureRateLimiter',
    'MaxOfRateLimiter',
    'RateLimiter',
    'Workqueue',
    'default_rate_limiter',
]
