"""Explicit ownership of a shared SystemTest.

Test entry points build one SystemTestContext and hand it (or its `system_test`) to
whatever needs the session. Fixtures that share the session acquire and release it;
the session starts with the first user and stops when the last one leaves.
`activate()` additionally publishes the context for call sites that cannot receive
it directly, read back through `current_system_test()`.
"""

import asyncio
import logging
from typing import Any

from system_testing.exceptions import LifecycleError
from system_testing.session.service import RunCallback, SystemTest
from system_testing.session.views import SystemTestConfig

logger = logging.getLogger(__name__)

_active_context: 'SystemTestContext | None' = None


class SystemTestContext:
	def __init__(self, config: SystemTestConfig | None = None, system_test: SystemTest | None = None, **overrides: Any):
		if system_test is not None and (config is not None or overrides):
			raise ValueError('Pass either system_test or a configuration, not both')
		self.system_test = system_test or SystemTest(config, **overrides)
		self._users = 0
		self._lock = asyncio.Lock()

	def __repr__(self) -> str:
		return f'<SystemTestContext {self.system_test} users={self._users}>'

	@property
	def users(self) -> int:
		return self._users

	async def acquire(self) -> SystemTest:
		"""Register a user, starting the session for the first one."""
		async with self._lock:
			if not self.system_test.is_started():
				await self.system_test.start()
			self._users += 1
			return self.system_test

	async def release(self) -> None:
		"""Unregister a user, stopping the session once nobody holds it."""
		async with self._lock:
			if self._users == 0:
				raise LifecycleError('SystemTestContext released more often than acquired')
			self._users -= 1
			if self._users == 0:
				await self.system_test.stop()

	async def __aenter__(self) -> SystemTest:
		return await self.acquire()

	async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
		await self.release()

	async def run(self, callback: RunCallback) -> Any:
		"""Run one test on the shared session, starting it if nobody has yet."""
		async with self:
			return await self.system_test.run(callback)

	async def reinitialize(self) -> None:
		async with self._lock:
			await self.system_test.reinitialize()

	def activate(self) -> 'SystemTestContext':
		global _active_context
		if _active_context is not None and _active_context is not self:
			logger.warning(f'Replacing active {_active_context} with {self}')
		_active_context = self
		return self

	def deactivate(self) -> None:
		global _active_context
		if _active_context is self:
			_active_context = None


def current_context() -> SystemTestContext:
	if _active_context is None:
		raise LifecycleError('No SystemTestContext is active, call SystemTestContext.activate() first')
	return _active_context


def current_system_test() -> SystemTest:
	return current_context().system_test
