"""Correlated command/response messaging over one WebSocket connection.

Both peers speak the same envelope format. Either side may issue commands and
await the peer's response; outbound envelopes are queued until a transport is
attached and are always flushed in the order they were enqueued.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp

from system_testing.channel.views import CommandEnvelope
from system_testing.exceptions import ChannelClosedError, CommandError, CommandTimeoutError, ProtocolError

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]
ErrorHandler = Callable[[BaseException], Any]


class Transport(Protocol):
	"""The subset of aiohttp's WebSocketResponse / ClientWebSocketResponse the channel relies on."""

	@property
	def closed(self) -> bool: ...

	async def send_str(self, data: str) -> None: ...

	async def close(self, *, code: int = ..., message: bytes = ...) -> Any: ...


class CommandChannel:
	def __init__(
		self,
		on_command: CommandHandler | None = None,
		on_error: ErrorHandler | None = None,
		name: str = 'CommandChannel',
	):
		self.on_command = on_command
		self.on_error = on_error
		self.name = name
		self.transport: Transport | None = None
		self._next_id = 0
		self._pending: dict[int, asyncio.Future] = {}
		self._abandoned_ids: set[int] = set()
		self._send_queue: deque[str] = deque()
		self._flush_lock = asyncio.Lock()
		self._command_tasks: set[asyncio.Task] = set()
		self._opened = asyncio.Event()
		self._closed = False

	def __repr__(self) -> str:
		state = 'closed' if self._closed else 'open' if self.is_open else 'waiting'
		return f'<{self.name} {state} pending={len(self._pending)} queued={len(self._send_queue)}>'

	@property
	def is_open(self) -> bool:
		return not self._closed and self.transport is not None and not self.transport.closed

	@property
	def is_closed(self) -> bool:
		return self._closed

	@property
	def pending_count(self) -> int:
		return len(self._pending)

	@property
	def queued_count(self) -> int:
		return len(self._send_queue)

	# region - ========== Transport lifecycle ==========

	async def attach(self, transport: Transport) -> None:
		"""Mark the connection open and flush everything queued so far."""
		if self._closed:
			raise ChannelClosedError(f'{self.name} is closed')
		self.transport = transport
		self._opened.set()
		logger.debug(f'{self.name} attached, flushing {len(self._send_queue)} queued envelope(s)')
		await self.flush_send_queue()

	def detach(self, reason: str = 'connection lost') -> None:
		"""Forget the current transport. Queued envelopes wait for the next attach, pending commands fail."""
		self.transport = None
		self._opened.clear()
		self._reject_pending(ChannelClosedError(f'{self.name} {reason}'))
		# replies to timed out commands can only arrive on the connection they were sent on
		self._abandoned_ids.clear()

	async def wait_until_open(self) -> None:
		"""Block until a transport is attached. Callers bound this with their own timeout."""
		await self._opened.wait()

	async def run(self, transport: Transport) -> None:
		"""Attach to an open aiohttp WebSocket and pump its messages until it closes."""
		await self.attach(transport)
		try:
			async for message in transport:  # type: ignore[attr-defined]
				if message.type == aiohttp.WSMsgType.TEXT:
					try:
						await self.on_message(message.data)
					except ProtocolError as e:
						self._report_error(e)
				elif message.type == aiohttp.WSMsgType.ERROR:
					self._report_error(transport.exception() or ConnectionError(f'{self.name} transport error'))  # type: ignore[attr-defined]
					break
		finally:
			if self.transport is transport:
				self.detach()

	async def close(self, reason: str = 'closed') -> None:
		if self._closed:
			return
		self._closed = True
		self._reject_pending(ChannelClosedError(f'{self.name} {reason}'))
		self._send_queue.clear()
		self._abandoned_ids.clear()

		current = asyncio.current_task()
		tasks = [task for task in self._command_tasks if task is not current]
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)

		self._opened.clear()
		transport, self.transport = self.transport, None
		if transport is not None and not transport.closed:
			await transport.close()

	def _reject_pending(self, error: ChannelClosedError) -> None:
		pending, self._pending = self._pending, {}
		for future in pending.values():
			if not future.done():
				future.set_exception(error)
		if pending:
			logger.debug(f'{self.name} rejected {len(pending)} pending command(s): {error}')

	# endregion
	# region - ========== Sending ==========

	async def send(self, envelope: CommandEnvelope) -> None:
		if self._closed:
			raise ChannelClosedError(f'{self.name} is closed')
		self._send_queue.append(envelope.to_json())
		if self.is_open:
			await self.flush_send_queue()

	async def flush_send_queue(self) -> None:
		async with self._flush_lock:
			while self._send_queue and self.is_open:
				assert self.transport is not None
				message = self._send_queue.popleft()
				try:
					await self.transport.send_str(message)
				except Exception as e:
					self._send_queue.appendleft(message)
					self._report_error(e)
					raise

	async def send_command(self, data: dict[str, Any], timeout: float | None = None) -> Any:
		"""Send a command to the peer and return its `result`.

		Raises CommandError when the peer answers with `{error}`, CommandTimeoutError
		when `timeout` elapses first and ChannelClosedError when the channel goes away.
		"""
		command_id = self._next_id
		self._next_id += 1

		future = asyncio.get_running_loop().create_future()
		self._pending[command_id] = future

		envelope = CommandEnvelope(type='command', id=command_id, data=data)
		try:
			await self.send(envelope)
		except Exception:
			# the caller sees the failure, so the command must not go out on a later attach
			self._discard_queued(envelope)
			self._pending.pop(command_id, None)
			raise

		try:
			if timeout is None:
				return await future
			return await asyncio.wait_for(future, timeout)
		except TimeoutError:
			if not self._discard_queued(envelope):
				self._abandoned_ids.add(command_id)
			raise CommandTimeoutError(
				f'{self.name} command {data.get("type")!r} (id {command_id}) got no response within {timeout}s',
				command=data,
				timeout=timeout,
			) from None
		finally:
			self._pending.pop(command_id, None)

	def _discard_queued(self, envelope: CommandEnvelope) -> bool:
		"""Drop `envelope` from the outbound queue if it has not been transmitted yet."""
		try:
			self._send_queue.remove(envelope.to_json())
		except ValueError:
			return False
		return True

	async def respond(self, command_id: int, data: dict[str, Any]) -> None:
		try:
			envelope = CommandEnvelope(type='response', id=command_id, data=data)
			envelope.to_json()
		except (TypeError, ValueError) as e:
			envelope = CommandEnvelope(type='response', id=command_id, data={'error': f'Response is not JSON serializable: {e}'})
		await self.send(envelope)

	# endregion
	# region - ========== Receiving ==========

	async def on_message(self, raw: str | bytes) -> None:
		envelope = CommandEnvelope.from_json(raw)
		if envelope is None:
			return

		if envelope.type == 'command':
			task = asyncio.create_task(self._handle_command(envelope), name=f'{self.name}-command-{envelope.id}')
			self._command_tasks.add(task)
			task.add_done_callback(self._command_tasks.discard)
		else:
			self._handle_response(envelope)

	async def wait_for_handlers(self) -> None:
		"""Wait until every command handler started so far has answered."""
		while self._command_tasks:
			await asyncio.gather(*list(self._command_tasks), return_exceptions=True)

	async def _handle_command(self, envelope: CommandEnvelope) -> None:
		try:
			if self.on_command is None:
				raise ProtocolError(f'{self.name} has no command handler for {envelope.command_type!r}')
			result = await self.on_command(envelope.data)
			response: dict[str, Any] = {'result': result}
		except asyncio.CancelledError:
			raise
		except Exception as e:
			logger.debug(f'{self.name} command {envelope.command_type!r} failed: {type(e).__name__}: {e}')
			response = {'error': str(e) or type(e).__name__}

		try:
			await self.respond(envelope.id, response)
		except ChannelClosedError as e:
			logger.debug(f'{self.name} dropped response to command {envelope.id}: {e}')
		except Exception as e:
			# already reported through on_error by flush_send_queue
			logger.debug(f'{self.name} could not send response to command {envelope.id}: {type(e).__name__}: {e}')

	def _handle_response(self, envelope: CommandEnvelope) -> None:
		future = self._pending.pop(envelope.id, None)
		if future is None:
			if envelope.id in self._abandoned_ids:
				self._abandoned_ids.discard(envelope.id)
				logger.debug(f'{self.name} ignoring late response to timed out command {envelope.id}')
				return
			raise ProtocolError(f'No such response: {envelope.id}')

		if future.done():
			return

		error = envelope.data.get('error')
		if error:
			future.set_exception(CommandError(str(error)))
		else:
			future.set_result(envelope.data.get('result'))

	# endregion

	def _report_error(self, error: BaseException) -> None:
		if self.on_error is not None:
			self.on_error(error)
		else:
			logger.error(f'{self.name} error: {type(error).__name__}: {error}')
