import asyncio
import structlog
from functools import wraps
from app.utils.time import utcnow

logger = structlog.get_logger(__name__)

class CircuitBreakerOpenException(Exception):
    pass

class CircuitBreaker:
    def __init__(self, name: str, failure_threshold=5, reset_timeout=60):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self.last_failure_time = None
        self.state = "CLOSED"

    def reset(self):
        self.state = "CLOSED"
        self.failures = 0
        self.last_failure_time = None

    def _open(self):
        self.state = "OPEN"
        self.last_failure_time = utcnow()
        logger.warning("Circuit Breaker OPEN", state=self.state, service=self.name)

    def _half_open(self):
        self.state = "HALF_OPEN"
        logger.info("Circuit Breaker HALF-OPEN", state=self.state, service=self.name)

    def _close(self):
        self.reset()
        logger.info("Circuit Breaker CLOSED", state=self.state, service=self.name)

    def _timeout_elapsed(self) -> bool:
        return (utcnow() - self.last_failure_time).total_seconds() > self.reset_timeout

    def check(self):
        """Raise while open; move to half-open once the reset timeout has elapsed."""
        if self.state == "OPEN":
            if self._timeout_elapsed():
                self._half_open()
            else:
                logger.warning("Circuit Breaker OPEN, blocking call", service=self.name)
                raise CircuitBreakerOpenException(f"Circuit breaker for {self.name} is open")

    def record_success(self):
        if self.state == "HALF_OPEN":
            self._close()

    def record_failure(self):
        self.failures += 1
        self.last_failure_time = utcnow()
        logger.warning("Circuit Breaker failure recorded", failures=self.failures, state=self.state, service=self.name)
        if self.state == "HALF_OPEN" or self.failures >= self.failure_threshold:
            self._open()

    def __call__(self, func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            self.check()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                self.record_failure()
                raise
            self.record_success()
            return result
        return wrapper

def async_retry(tries=3, delay=1, backoff=2, exceptions=(Exception,), circuit_breaker: CircuitBreaker = None):
    """Retry an async call with exponential backoff, going through ``circuit_breaker`` when given."""
    def deco(func):
        guarded = circuit_breaker(func) if circuit_breaker else func

        @wraps(func)
        async def f_retry(*args, **kwargs):
            mtries, mdelay = tries, delay
            while mtries > 1:
                try:
                    return await guarded(*args, **kwargs)
                except CircuitBreakerOpenException:
                    raise
                except exceptions as e:
                    logger.warning("Retrying after exception", error=str(e), error_type=type(e).__name__,
                                   delay=mdelay, function=func.__name__)
                    await asyncio.sleep(mdelay)
                    mtries -= 1
                    mdelay *= backoff
            return await guarded(*args, **kwargs)  # Last attempt
        return f_retry
    return deco
