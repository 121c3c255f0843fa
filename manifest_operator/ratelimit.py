import asyncio
import collections
import time


class ItemExponentialFailureRateLimiter:
    """
    Rate limiter whose delay for an item doubles with each failure, up to a ceiling.
    """
    def __init__(self, base_delay, max_delay):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures = {}

    def when(self, item):
        exponent = self._failures.get(item, 0)
        self._failures[item] = exponent + 1
        # Avoid computing huge powers once the ceiling has been reached
        if exponent > 62:
            return self.max_delay
        return min(self.base_delay * 2 ** exponent, self.max_delay)

    def num_requeues(self, item):
        return self._failures.get(item, 0)

    def forget(self, item):
        self._failures.pop(item, None)


class BucketRateLimiter:
    """
    Token bucket shared by all items.

    Each call takes a token, and the returned delay is the time until that token
    would have been available.
    """
    def __init__(self, rate, burst, clock = time.monotonic):
        self.rate = rate
        self.burst = burst
        self.clock = clock
        self._tokens = float(burst)
        self._last = clock()

    def when(self, item):
        now = self.clock()
        self._tokens = min(self.burst, self._tokens + (now - self._last) * self.rate)
        self._last = now
        self._tokens -= 1
        return 0 if self._tokens >= 0 else -self._tokens / self.rate

    def num_requeues(self, item):
        return 0

    def forget(self, item):
        pass


class MaxOfRateLimiter:
    """
    Rate limiter that returns the longest delay of the given limiters.
    """
    def __init__(self, *limiters):
        self.limiters = limiters

    def when(self, item):
        return max(limiter.when(item) for limiter in self.limiters)

    def num_requeues(self, item):
        return max(limiter.num_requeues(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)


def default_rate_limiter(config):
    """
    Returns the rate limiter for the given requeue configuration.
    """
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(config.base_delay, config.max_delay),
        BucketRateLimiter(config.rate, config.burst)
    )


class ReconcileTracker:
    """
    Serialises reconciliations of each item and turns their results into requeue
    delays using the given rate limiter.
    """
    def __init__(self, rate_limiter):
        self.rate_limiter = rate_limiter
        self._locks = collections.defaultdict(asyncio.Lock)

    def lock(self, item):
        return self._locks[item]

    def forget(self, item):
        """
        Drops all state for an item that will not be reconciled again.
        """
        self._locks.pop(item, None)
        self.rate_limiter.forget(item)

    def requeue_delay(self, item, result, finished = False):
        """
        Returns the delay before the item is reconciled again, or None if the
        result does not need a requeue.

        A result that needs no requeue for a finished item drops the item entirely.
        """
        if result.requeue_after:
            self.rate_limiter.forget(item)
            return result.requeue_after
        elif result.requeue:
            return self.rate_limiter.when(item)
        elif finished:
            self.forget(item)
        else:
            self.rate_limiter.forget(item)
        return None
