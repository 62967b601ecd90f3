import asyncio
import logging
from collections.abc import Awaitable, Callable

from aiohttp import WSCloseCode, web

logger = logging.getLogger(__name__)

ConnectionHandler = Callable[[web.WebSocketResponse], Awaitable[None]]


class ChannelServer:
	"""Listening WebSocket endpoint that hands every accepted connection to a callback.

	The callback owns the connection for as long as it runs; returning from it ends
	the request. `stop()` closes whatever is still connected with GOING_AWAY before
	shutting the listener down, so a silent peer cannot keep the server alive.
	"""

	def __init__(
		self,
		on_connection: ConnectionHandler,
		host: str = '0.0.0.0',
		port: int = 0,
		path: str = '/',
		name: str = 'ChannelServer',
	):
		self.on_connection = on_connection
		self.host = host
		self.port = port
		self.path = path
		self.name = name
		self._runner: web.AppRunner | None = None
		self._connections: set[web.WebSocketResponse] = set()

	@property
	def is_running(self) -> bool:
		return self._runner is not None

	@property
	def connection_count(self) -> int:
		return len(self._connections)

	async def start(self) -> None:
		if self._runner is not None:
			return

		app = web.Application()
		app.router.add_get(self.path, self._handle_websocket)

		runner = web.AppRunner(app, access_log=None, shutdown_timeout=1.0)
		await runner.setup()
		site = web.TCPSite(runner, self.host, self.port, reuse_address=True)
		try:
			await site.start()
		except OSError:
			await runner.cleanup()
			raise

		self._runner = runner
		if self.port == 0 and runner.addresses:
			self.port = runner.addresses[0][1]
		logger.debug(f'{self.name} listening on ws://{self.host}:{self.port}{self.path}')

	async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
		ws = web.WebSocketResponse()
		await ws.prepare(request)

		self._connections.add(ws)
		logger.debug(f'{self.name} accepted connection from {request.remote}')
		try:
			await self.on_connection(ws)
		finally:
			self._connections.discard(ws)
			if not ws.closed:
				await ws.close()
		return ws

	async def close_connections(self, timeout: float = 5.0) -> None:
		for ws in list(self._connections):
			try:
				await asyncio.wait_for(ws.close(code=WSCloseCode.GOING_AWAY, message=b'Server shutting down'), timeout)
			except TimeoutError:
				logger.warning(f'{self.name} connection did not acknowledge close within {timeout}s')
			self._connections.discard(ws)

	async def stop(self, timeout: float = 5.0) -> None:
		if self._runner is None:
			return

		runner, self._runner = self._runner, None
		await self.close_connections(timeout)
		await asyncio.wait_for(runner.cleanup(), timeout)
		logger.debug(f'{self.name} stopped')
