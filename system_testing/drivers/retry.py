import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryExhaustedError(Exception):
	"""Every allowed attempt failed with a retryable error; `last_error` holds the final one."""

	def __init__(self, last_error: BaseException, attempts: int, elapsed: float):
		super().__init__(f'Gave up after {attempts} attempt(s) in {elapsed:.2f}s - {type(last_error).__name__}: {last_error}')
		self.last_error = last_error
		self.attempts = attempts
		self.elapsed = elapsed


async def retry_async(
	operation: Callable[[], Awaitable[T]],
	*,
	retry_on: Callable[[BaseException], bool],
	max_attempts: int | None = None,
	timeout: float | None = None,
	base_delay: float = 0.05,
	max_delay: float = 0.5,
	description: str = 'operation',
) -> T:
	"""Run `operation` until it succeeds, a non-retryable error escapes, or the budget runs out.

	The budget is `max_attempts`, `timeout` seconds, or both (whichever ends first).
	Between attempts we sleep with exponential backoff plus a little jitter, capped at
	`max_delay` and at the time left, so a backend that fails instantly never spins.

	Raises:
		RetryExhaustedError: the budget ran out while failures were still retryable.
	"""
	if max_attempts is None and timeout is None:
		raise ValueError('retry_async needs max_attempts, timeout or both')
	if max_attempts is not None and max_attempts < 1:
		raise ValueError(f'max_attempts must be at least 1, got {max_attempts}')

	loop = asyncio.get_running_loop()
	start_time = loop.time()
	attempt = 0

	while True:
		attempt += 1
		try:
			return await operation()
		except Exception as e:
			if not retry_on(e):
				raise

			elapsed = loop.time() - start_time
			out_of_attempts = max_attempts is not None and attempt >= max_attempts
			out_of_time = timeout is not None and elapsed >= timeout
			if out_of_attempts or out_of_time:
				raise RetryExhaustedError(e, attempt, elapsed) from e

			delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
			delay += random.uniform(0, delay * 0.1)
			if timeout is not None:
				delay = min(delay, max(timeout - elapsed, 0))

			logger.debug(f'{description} attempt {attempt} failed with {type(e).__name__}, retrying in {delay:.3f}s')
			await asyncio.sleep(delay)
