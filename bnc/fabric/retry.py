import asyncio
import inspect
from typing import Any, Awaitable, Callable, Tuple, Type, Union

from tenacity import (AsyncRetrying, retry_if_exception_type,
                      retry_if_result, stop_after_attempt, wait_exponential)

from bnc.config import DOCKER_CA_DELAY, log


async def _resolve(fn: Callable, *args, **kwargs) -> Any:
    # Lambdas and partials returning a coroutine are not coroutine functions
    result = fn(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class RetryPolicy:
    """Bounded retry with exponential backoff, shared by the container and
    channel coordinators.

    :param attempts: maximum number of attempts, the first one included
    :param delay: seconds waited before the first readiness check; later waits
        grow as delay * backoff ** n
    :param backoff: growth factor between two waits
    :param max_delay: upper bound of a single wait
    """

    def __init__(self, attempts: int = 2, delay: float = DOCKER_CA_DELAY,
                 backoff: float = 2.0, max_delay: float = 60.0):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay

    def _wait(self):
        return wait_exponential(multiplier=self.delay * self.backoff,
                                exp_base=self.backoff, max=self.max_delay)

    @staticmethod
    def _log_retry(name: str):
        def before_sleep(retry_state):
            log.debug("RetryPolicy: attempt %d of %s did not succeed, retrying in %.1fs",
                      retry_state.attempt_number, name,
                      retry_state.next_action.sleep if retry_state.next_action else 0)
        return before_sleep

    async def poll(self, predicate: Callable[[], Union[bool, Awaitable[bool]]]) -> bool:
        """Waits `delay`, then checks `predicate` until it is true.
        Returns False once every attempt is spent."""
        if self.delay:
            await asyncio.sleep(self.delay)

        async def check() -> bool:
            return bool(await _resolve(predicate))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait(),
            retry=retry_if_result(lambda ready: not ready),
            retry_error_callback=lambda retry_state: False,
            before_sleep=self._log_retry(getattr(predicate, "__name__", "readiness check")),
        )
        return await retrying(check)

    async def call(self, fn: Callable[..., Awaitable], *args,
                   retry_on: Tuple[Type[BaseException], ...] = (Exception,), **kwargs):
        """Awaits `fn(*args, **kwargs)`, retrying when it raises one of
        `retry_on`. The last error is re-raised."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=self._wait(),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
            before_sleep=self._log_retry(getattr(fn, "__name__", "call")),
        )
        return await retrying(_resolve, fn, *args, **kwargs)

    def __repr__(self):
        return (f"RetryPolicy(attempts={self.attempts}, delay={self.delay}, "
                f"backoff={self.backoff}, max_delay={self.max_delay})")
