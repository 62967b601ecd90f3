"""In-page counterpart of the runner, for hosts that can run Python.

Connects to the runner's command channel, answers lifecycle commands by firing
command events at the host application, and reports console output and errors
back to the runner.
"""

import asyncio
import inspect
import logging
import traceback
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from system_testing.channel.service import CommandChannel
from system_testing.exceptions import LifecycleTimeoutError, NoCommandHandlerError

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_URL = 'ws://localhost:1985'
DEFAULT_EVAL_URL = 'ws://localhost:8090'

CommandEventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
Evaluator = Callable[[str], Any]

_PRIMITIVES = (str, int, float, bool, type(None))


async def _maybe_await(value: Any) -> Any:
	if inspect.isawaitable(value):
		return await value
	return value


def console_log_message(value: Any, scanned: list[int] | None = None) -> Any:
	"""Make console arguments JSON-safe.

	Lists and dicts are copied recursively, a container seen before becomes
	`'[recursive]'` and any other object becomes `'[object ClassName]'`.
	"""
	if scanned is None:
		scanned = []

	if isinstance(value, (list, tuple)):
		if id(value) in scanned:
			return '[recursive]'
		scanned.append(id(value))
		return [console_log_message(item, scanned) for item in value]

	if isinstance(value, dict):
		if id(value) in scanned:
			return '[recursive]'
		scanned.append(id(value))
		return {str(key): console_log_message(item, scanned) for key, item in value.items()}

	if isinstance(value, _PRIMITIVES):
		return value

	return f'[object {type(value).__name__}]'


class CommandSubscriptions:
	"""Exactly one handler per command event.

	Subscribing replaces the previous handler for that event. Firing a required event
	with no handler raises NoCommandHandlerError.
	"""

	EVENTS = ('navigate', 'dismissTo', 'initialize')

	def __init__(self):
		self._handlers: dict[str, CommandEventHandler] = {}

	def subscribe(self, event: str, handler: CommandEventHandler) -> Callable[[], None]:
		if event not in self.EVENTS:
			raise ValueError(f'Unknown command event {event!r}, expected one of {", ".join(self.EVENTS)}')
		self._handlers[event] = handler

		def unsubscribe() -> None:
			if self._handlers.get(event) is handler:
				del self._handlers[event]

		return unsubscribe

	def has_handler(self, event: str) -> bool:
		return event in self._handlers

	async def emit(self, event: str, payload: dict[str, Any], required: bool = True) -> None:
		handler = self._handlers.get(event)
		if handler is None:
			if not required:
				return
			detail = f' ({payload["path"]})' if 'path' in payload else ''
			raise NoCommandHandlerError(f'No listener registered for command event: {event}{detail}')
		await _maybe_await(handler(payload))


class EvaluationClient:
	"""Answers `eval` commands from the runner's evaluation bridge with `evaluator(expression)`."""

	def __init__(self, url: str, evaluator: Evaluator):
		self.url = url
		self.evaluator = evaluator
		self.channel = CommandChannel(on_command=self._on_command, name='EvaluationClient')
		self._connected = asyncio.Event()
		self._session: aiohttp.ClientSession | None = None
		self._reader_task: asyncio.Task | None = None

	@property
	def is_connected(self) -> bool:
		return self._connected.is_set() and self.channel.is_open

	async def connect(self) -> None:
		self._session = aiohttp.ClientSession()
		ws = await self._session.ws_connect(self.url)
		self._reader_task = asyncio.create_task(self.channel.run(ws), name='evaluation-client-reader')
		self._connected.set()
		logger.debug(f'Evaluation client connected to {self.url}')

	async def wait_until_connected(self, timeout: float | None = None) -> None:
		try:
			await asyncio.wait_for(self._connected.wait(), timeout)
		except TimeoutError:
			raise LifecycleTimeoutError(
				f'Evaluation client did not connect within {timeout}s', step='evaluation client', timeout=timeout or 0
			) from None

	async def _on_command(self, data: dict[str, Any]) -> Any:
		if data.get('type') != 'eval':
			raise ValueError(f'Unknown command type for EvaluationClient: {data.get("type")}')
		return await _maybe_await(self.evaluator(data['expression']))

	async def close(self) -> None:
		await self.channel.close()
		if self._reader_task is not None:
			await asyncio.gather(self._reader_task, return_exceptions=True)
			self._reader_task = None
		if self._session is not None:
			await self._session.close()
			self._session = None


class PageHelper:
	"""Page-side peer of the command channel.

	Args:
		channel_url: The runner's command channel endpoint.
		eval_url: The runner's evaluation bridge endpoint; only used with `evaluator`.
		evaluator: Evaluates an expression and returns a JSON-serializable value.
		subscriptions: Command event handlers of the host application.
	"""

	def __init__(
		self,
		channel_url: str = DEFAULT_CHANNEL_URL,
		eval_url: str | None = None,
		evaluator: Evaluator | None = None,
		subscriptions: CommandSubscriptions | None = None,
	):
		self.channel_url = channel_url
		self.subscriptions = subscriptions or CommandSubscriptions()
		self.channel = CommandChannel(on_command=self.on_command, on_error=self._on_channel_error, name='PageHelper')
		self.evaluation_client: EvaluationClient | None = None
		if evaluator is not None:
			self.evaluation_client = EvaluationClient(eval_url or DEFAULT_EVAL_URL, evaluator)
		self._on_initialize: Callable[[], Any] | None = None
		self._session: aiohttp.ClientSession | None = None
		self._reader_task: asyncio.Task | None = None
		self._evaluation_task: asyncio.Task | None = None

	def on_initialize(self, callback: Callable[[], Any] | None) -> None:
		self._on_initialize = callback

	async def connect(self) -> None:
		if self.evaluation_client is not None and self._evaluation_task is None:
			self._evaluation_task = asyncio.create_task(self.evaluation_client.connect(), name='evaluation-client-connect')

		self._session = aiohttp.ClientSession()
		ws = await self._session.ws_connect(self.channel_url)
		self._reader_task = asyncio.create_task(self.channel.run(ws), name='page-helper-reader')
		logger.debug(f'Page helper connected to {self.channel_url}')

	async def on_command(self, data: dict[str, Any]) -> Any:
		command_type = data.get('type')

		if command_type == 'initialize':
			await self.subscriptions.emit('initialize', {}, required=False)
			if self._on_initialize is not None:
				await _maybe_await(self._on_initialize())
			return 'initialized'

		if command_type == 'visit':
			await self.subscriptions.emit('navigate', {'path': data.get('path')})
			return None

		if command_type == 'dismissTo':
			await self.subscriptions.emit('dismissTo', {'path': data.get('path')})
			return None

		if command_type == 'waitForScoundrel':
			await self.wait_for_evaluation_client()
			return None

		raise ValueError(f'Unknown command type for PageHelper: {command_type}')

	async def wait_for_evaluation_client(self, timeout: float | None = None) -> None:
		if self.evaluation_client is None:
			raise RuntimeError('Evaluation client is not configured for this page helper')
		await self.evaluation_client.wait_until_connected(timeout)

	def _on_channel_error(self, error: BaseException) -> None:
		logger.error(f'Page helper channel error: {type(error).__name__}: {error}')

	# region - ========== Reporting ==========

	async def report_console(self, level: str, *values: Any) -> None:
		if level not in ('log', 'error'):
			raise ValueError(f'Unsupported console level {level!r}')
		await self.channel.send_command({'type': f'console.{level}', 'value': console_log_message(list(values))})

	async def report_error(
		self,
		message: str,
		backtrace: str | list[str] | None = None,
		type: str = 'error',
		**details: Any,
	) -> None:
		await self.channel.send_command({'type': type, 'message': message, 'backtrace': backtrace, **details})

	async def report_exception(self, error: BaseException, error_type: str = 'error') -> None:
		error_class = type(error).__name__
		backtrace = ''.join(traceback.format_tb(error.__traceback__)) or None
		await self.report_error(str(error) or error_class, backtrace, type=error_type, errorClass=error_class)

	# endregion

	async def close(self) -> None:
		await self.channel.close()
		for task in (self._reader_task, self._evaluation_task):
			if task is not None:
				await asyncio.gather(task, return_exceptions=True)
		self._reader_task = None
		self._evaluation_task = None

		if self.evaluation_client is not None:
			await self.evaluation_client.close()
		if self._session is not None:
			await self._session.close()
			self._session = None
