import asyncio
import logging
from typing import Any

from aiohttp import web

from system_testing.channel.server import ChannelServer
from system_testing.channel.service import CommandChannel
from system_testing.exceptions import LifecycleTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_EVAL_PORT = 8090
DEFAULT_CLIENT_TIMEOUT = 10.0


class EvaluationBridge:
	"""Side channel for evaluating expressions inside the page's script context.

	The in-page evaluation client connects to this server and answers
	`{type: 'eval', expression}` commands with the serialized value, over the same
	envelope format as the command channel.
	"""

	def __init__(
		self,
		host: str = '0.0.0.0',
		port: int = DEFAULT_EVAL_PORT,
		command_timeout: float | None = None,
		client_timeout: float = DEFAULT_CLIENT_TIMEOUT,
	):
		self.server = ChannelServer(self._on_connection, host=host, port=port, name='EvaluationBridge')
		self.command_timeout = command_timeout
		self.client_timeout = client_timeout
		self._clients: list[CommandChannel] = []
		self._client_count = 0
		self._clients_changed: asyncio.Condition | None = None

	@property
	def port(self) -> int:
		return self.server.port

	@property
	def clients(self) -> list[CommandChannel]:
		return list(self._clients)

	def _condition(self) -> asyncio.Condition:
		if self._clients_changed is None:
			self._clients_changed = asyncio.Condition()
		return self._clients_changed

	async def start(self) -> None:
		await self.server.start()
		logger.debug(f'Evaluation bridge listening on port {self.port}')

	async def _on_connection(self, ws: web.WebSocketResponse) -> None:
		self._client_count += 1
		channel = CommandChannel(name=f'EvaluationClient#{self._client_count}', on_error=self._on_client_error)

		async with self._condition():
			self._clients.append(channel)
			self._condition().notify_all()

		try:
			await channel.run(ws)
		finally:
			if channel in self._clients:
				self._clients.remove(channel)
			await channel.close('disconnected')

	def _on_client_error(self, error: BaseException) -> None:
		logger.warning(f'Evaluation client error: {type(error).__name__}: {error}')

	async def get_client(self, timeout: float | None = None) -> CommandChannel:
		"""Return a connected evaluation client, waiting up to `timeout` seconds (default `client_timeout`) for one to attach."""
		if self._clients:
			return self._clients[0]

		timeout = self.client_timeout if timeout is None else timeout
		condition = self._condition()
		try:
			async with condition:
				await asyncio.wait_for(condition.wait_for(lambda: bool(self._clients)), timeout)
		except TimeoutError:
			raise LifecycleTimeoutError(
				f'Timed out waiting for evaluation client after {timeout}s', step='evaluation client', timeout=timeout
			) from None
		return self._clients[0]

	async def evaluate(self, expression: str, timeout: float | None = None) -> Any:
		client = await self.get_client(timeout)
		return await client.send_command(
			{'type': 'eval', 'expression': expression},
			timeout=timeout if timeout is not None else self.command_timeout,
		)

	async def stop(self, timeout: float = 5.0) -> None:
		await self.server.stop(timeout)
		for channel in list(self._clients):
			await channel.close('evaluation bridge stopped')
		self._clients.clear()
