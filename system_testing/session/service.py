"""Lifecycle of one system test session.

A SystemTest resolves the target origin, launches the automation backend, listens
for the page helper's command channel and the evaluation bridge, drives the page to
the reset route and marks itself ready once the harness is on screen and the page
helper has connected. `reinitialize()` tears all of that down and builds it again
from the same configuration.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qsl, urlencode

from aiohttp import web
from bubus import BaseEvent, EventBus
from selenium.webdriver.remote.webelement import WebElement
from uuid_extensions import uuid7str

from system_testing.channel.server import ChannelServer
from system_testing.channel.service import CommandChannel
from system_testing.drivers.factory import create_driver
from system_testing.drivers.retry import RetryExhaustedError, retry_async
from system_testing.drivers.views import ReadText
from system_testing.drivers.webdriver import ElementTarget, WebDriverDriver
from system_testing.eval_bridge.service import EvaluationBridge
from system_testing.exceptions import (
	LifecycleError,
	LifecycleTimeoutError,
	SystemTestError,
	TeardownError,
	WaitTimeoutError,
)
from system_testing.http_server.service import StaticContentServer
from system_testing.session.diagnostics import ScreenshotArtifacts, take_screenshot
from system_testing.session.events import (
	BrowserConsoleEvent,
	BrowserErrorEvent,
	SystemTestStartedEvent,
	SystemTestStoppedEvent,
)
from system_testing.session.views import SessionState, SystemTestConfig, TargetMode

browser_logger = logging.getLogger('system_testing.browser')

ROOT_PATH = '/blank?systemTest=true'
ROOT_MARKER_SELECTOR = 'body > #root'
HARNESS_TEST_ID = 'systemTestingComponent'
FOCUSED_SCOPE_SELECTOR = "[data-testid='systemTestingComponent'][data-focussed='true']"
BLANK_TEST_ID = 'blankText'
NOTIFICATION_SELECTOR = "[data-class='notification-message']"
NOTIFICATION_TEST_ID_SELECTOR = "[data-testid='notification-message']"

# Hydration mismatch warnings from production React builds
IGNORED_ERROR_PATTERNS = ('Minified React error #418', 'Minified React error #419')

CommandCallback = Callable[[dict[str, Any]], Any]
RunCallback = Callable[['SystemTest'], Awaitable[Any] | Any]


class _NotificationMissing(Exception):
	pass


async def _maybe_await(value: Any) -> Any:
	if inspect.isawaitable(value):
		return await value
	return value


class SystemTest:
	"""One end-to-end test session.

	Args:
		config: Full configuration. Built from the SYSTEM_TEST_* environment when omitted.
		**overrides: Field overrides applied on top of `config`.
	"""

	def __init__(self, config: SystemTestConfig | None = None, **overrides: Any):
		if config is None:
			config = SystemTestConfig.from_env(**overrides)
		elif overrides:
			config = SystemTestConfig.model_validate({**config.model_dump(), **overrides})

		self.config = config
		self.id = uuid7str()
		self.event_bus = EventBus()
		self._subscriptions: list[tuple[type[BaseEvent], Callable[..., Any]]] = []
		self._on_command_callback: CommandCallback | None = None
		self._root_path = self._build_root_path()
		self._reset_state()

	def _reset_state(self) -> None:
		self.state = SessionState.UNINITIALIZED
		self.driver: WebDriverDriver | None = None
		self.channel = CommandChannel(on_command=self.on_command_received, on_error=self._on_channel_error, name='CommandChannel')
		self.channel_server: ChannelServer | None = None
		self.eval_bridge: EvaluationBridge | None = None
		self.http_server: StaticContentServer | None = None
		self.base_url: str | None = None
		self._base_selector: str | None = None

	def __str__(self) -> str:
		return f'SystemTest🅢 {self.id[-4:]}'

	def __repr__(self) -> str:
		return f'<{self} {self.state.value} target={self.config.target.value}>'

	@property
	def logger(self) -> logging.Logger:
		return logging.getLogger(f'system_testing.{self}')

	def debug_log(self, message: str) -> None:
		level = logging.INFO if self.config.debug else logging.DEBUG
		self.logger.log(level, f'[SystemTest debug] {message}')

	def is_started(self) -> bool:
		return self.state is SessionState.READY

	# region - ========== Events ==========

	def on(self, event_type: type[BaseEvent], handler: Callable[..., Any]) -> None:
		"""Subscribe to a session event. Subscriptions survive stop() and reinitialize()."""
		self._subscriptions.append((event_type, handler))
		self.event_bus.on(event_type, handler)

	async def _reset_event_bus(self) -> None:
		await self.event_bus.stop(clear=True, timeout=5)
		self.event_bus = EventBus()
		for event_type, handler in self._subscriptions:
			self.event_bus.on(event_type, handler)

	# endregion
	# region - ========== Driver ==========

	def get_driver(self) -> WebDriverDriver:
		if self.driver is None:
			raise LifecycleError("Driver hasn't been initialized yet")
		return self.driver

	def _create_driver(self) -> WebDriverDriver:
		return create_driver(
			self.config.driver.kind,
			self.config.driver.options,
			scope=self.get_base_selector,
			health_check=self.throw_if_http_server_error,
			timeout=self.config.default_timeout,
		)

	def throw_if_http_server_error(self) -> None:
		if self.http_server is not None:
			self.http_server.raise_if_error()

	# endregion
	# region - ========== Lifecycle ==========

	async def start(self) -> None:
		if self.state is SessionState.READY:
			return
		if self.state in (SessionState.STARTING, SessionState.STOPPING):
			raise LifecycleError(f'Cannot start while {self.state.value}')
		if self.state is SessionState.STOPPED:
			self._reset_state()

		self.state = SessionState.STARTING
		self.debug_log('Start called')
		try:
			await self._start()
		except BaseException as e:
			self.debug_log(f'Start failed with {type(e).__name__}, cleaning up')
			for step, error in await self._teardown():
				self.logger.warning(f'Cleanup after failed start: {step} failed with {type(error).__name__}: {error}')
			self.state = SessionState.STOPPED
			raise

		self.state = SessionState.READY
		self.set_base_selector(FOCUSED_SCOPE_SELECTOR)
		self.debug_log('Start completed')
		await self.event_bus.dispatch(
			SystemTestStartedEvent(session_id=self.id, base_url=self.base_url, target=self.config.target.value)
		)

	async def _start(self) -> None:
		config = self.config
		self.base_url = config.base_url

		if config.target is TargetMode.DIST and config.serve_static:
			self.http_server = StaticContentServer(config.static_root, host=config.http_host, port=config.http_port)
			self.debug_log(f'Starting static content server on {self.http_server.url}')
			await self.http_server.start()
			attempts = await self.http_server.wait_until_reachable(
				attempts=config.health_check_attempts, delay=config.health_check_delay
			)
			self.base_url = self.http_server.url
			self.debug_log(f'Static content server reachable after {attempts} attempt(s)')

		self.eval_bridge = EvaluationBridge(
			config.eval_host,
			config.eval_port,
			command_timeout=config.command_timeout,
			client_timeout=config.evaluation_client_timeout,
		)
		await self.eval_bridge.start()

		self.channel_server = ChannelServer(
			self._on_channel_connection, host=config.channel_host, port=config.channel_port, name='CommandChannelServer'
		)
		await self.channel_server.start()
		self.debug_log(f'Command channel listening on port {self.channel_server.port}')

		self.driver = self._create_driver()
		try:
			await asyncio.wait_for(self.driver.start(), config.startup_timeout)
		except TimeoutError:
			raise LifecycleTimeoutError(
				f'Automation session did not start within {config.startup_timeout}s',
				step='start driver',
				timeout=config.startup_timeout,
			) from None
		self.driver.set_timeout(config.startup_timeout)
		self.debug_log('Automation session started')

		if self.base_url is not None:
			self.driver.set_base_url(self.base_url)
			root_path = self.get_root_path()
			await self.driver.visit(root_path)
			self.debug_log(f'Visited root path {root_path}')

		try:
			if config.target is not TargetMode.NATIVE:
				await self.driver.find(ROOT_MARKER_SELECTOR, use_scope=False)
			await self.driver.find_by_test_id(
				HARNESS_TEST_ID, visible=None, use_scope=False, timeout=config.root_marker_timeout
			)
			self.debug_log(f'Found root and {HARNESS_TEST_ID}')
		except SystemTestError:
			await self.capture_failure_diagnostics()
			raise

		self.debug_log('Waiting for the page helper to connect')
		await self.wait_for_client_web_socket()
		self.debug_log('Page helper connected')

		self.driver.set_timeout(config.default_timeout)

	async def _on_channel_connection(self, ws: web.WebSocketResponse) -> None:
		await self.channel.run(ws)

	def _on_channel_error(self, error: BaseException) -> None:
		self.logger.warning(f'Command channel error: {type(error).__name__}: {error}')

	async def wait_for_client_web_socket(self, timeout: float | None = None) -> None:
		connect_timeout = self.config.client_connect_timeout if timeout is None else timeout
		try:
			await asyncio.wait_for(self.channel.wait_until_open(), connect_timeout)
		except TimeoutError:
			raise LifecycleTimeoutError(
				f'Page helper did not connect to the command channel within {connect_timeout}s',
				step='client web socket',
				timeout=connect_timeout,
			) from None

	async def run(self, callback: RunCallback) -> Any:
		"""Run one test against the reset route.

		Sends `initialize`, dismisses the page back to the root path and waits for the
		blank screen before calling `callback(self)`. Any failure captures a screenshot,
		the page HTML and the browser log before it propagates unchanged.
		"""
		if not self.is_started():
			await self.start()

		self.debug_log('Run started')
		await self.send_command({'type': 'initialize'})
		self.debug_log('Sent initialize command')

		try:
			root_path = self.get_root_path()
			await self.dismiss_to(root_path)
			self.debug_log(f'Dismissed to root path {root_path}')
			await self.get_driver().find_by_test_id(BLANK_TEST_ID, use_scope=False)
			self.debug_log(f'Found {BLANK_TEST_ID}')
			result = await _maybe_await(callback(self))
			self.debug_log('Run callback completed')
			return result
		except Exception:
			self.debug_log('Run error caught, taking screenshot')
			await self.capture_failure_diagnostics()
			raise

	async def stop(self) -> None:
		"""Tear everything down, one bounded step at a time.

		Every step is attempted even when an earlier one fails.

		Raises:
			TeardownError: one or more steps failed or timed out.
		"""
		if self.state is SessionState.STOPPING:
			raise LifecycleError('stop() is already in progress')

		self.state = SessionState.STOPPING
		self.debug_log('Stop called')
		errors = await self._teardown()
		self.state = SessionState.STOPPED

		await self.event_bus.dispatch(SystemTestStoppedEvent(session_id=self.id, failed_steps=[step for step, _ in errors]))
		await self._reset_event_bus()

		if errors:
			raise TeardownError(errors)
		self.debug_log('Stop completed')

	async def _teardown(self) -> list[tuple[str, BaseException]]:
		timeout = self.config.teardown_timeout
		eval_bridge, channel, channel_server = self.eval_bridge, self.channel, self.channel_server
		driver, http_server = self.driver, self.http_server

		steps: list[tuple[str, Callable[[], Awaitable[None]]]] = []
		if eval_bridge is not None:
			steps.append(('evaluation bridge', lambda: eval_bridge.stop(timeout)))
		steps.append(('command channel', lambda: channel.close('session stopped')))
		if channel_server is not None:
			steps.append(('channel server', lambda: channel_server.stop(timeout)))
		if driver is not None:
			steps.append(('driver', lambda: driver.stop(timeout)))
		if http_server is not None:
			steps.append(('static content server', lambda: http_server.stop(timeout)))

		errors: list[tuple[str, BaseException]] = []
		for step, action in steps:
			try:
				await asyncio.wait_for(action(), timeout)
			except TimeoutError:
				errors.append((step, LifecycleTimeoutError(f'{step} did not stop within {timeout}s', step=step, timeout=timeout)))
			except Exception as e:
				errors.append((step, e))
			else:
				self.debug_log(f'Stopped {step}')

		self.eval_bridge = None
		self.channel_server = None
		self.driver = None
		self.http_server = None
		return errors

	async def reinitialize(self) -> None:
		"""Stop, discard every per-session resource and start again from the same configuration."""
		self.debug_log('Reinitialize called')
		try:
			await self.stop()
		except TeardownError as e:
			self.logger.warning(f'Continuing reinitialize after incomplete teardown: {e}')
		self._reset_state()
		await self.start()

	# endregion
	# region - ========== Commands ==========

	def on_command(self, callback: CommandCallback | None) -> None:
		"""Register the handler for custom command types sent by the page helper."""
		self._on_command_callback = callback

	async def on_command_received(self, data: dict[str, Any]) -> Any:
		command_type = data.get('type')

		if command_type == 'console.error':
			ignored = self.should_ignore_error(data)
			if not ignored:
				browser_logger.error(f'Browser error {self._format_console_values(data.get("value"))}')
			await self.event_bus.dispatch(
				BrowserConsoleEvent(session_id=self.id, level='error', values=self._console_values(data), ignored=ignored)
			)
			return None

		if command_type == 'console.log':
			browser_logger.info(f'Browser log {self._format_console_values(data.get("value"))}')
			await self.event_bus.dispatch(BrowserConsoleEvent(session_id=self.id, level='log', values=self._console_values(data)))
			return None

		if command_type in ('error', 'unhandledrejection'):
			await self.handle_error(data)
			return None

		if self._on_command_callback is not None:
			return await _maybe_await(self._on_command_callback(data))

		self.logger.error(f'Received unknown command type {command_type!r} with no command handler registered: {data}')
		return None

	@staticmethod
	def _console_values(data: dict[str, Any]) -> list[Any]:
		value = data.get('value')
		if value is None:
			return []
		return list(value) if isinstance(value, (list, tuple)) else [value]

	@staticmethod
	def _format_console_values(value: Any) -> str:
		if isinstance(value, (list, tuple)):
			return ' '.join(str(item) for item in value)
		return '' if value is None else str(value)

	async def handle_error(self, data: dict[str, Any]) -> None:
		if self.should_ignore_error(data):
			return

		message = data.get('message')
		backtrace = data.get('backtrace')
		if isinstance(backtrace, (list, tuple)):
			backtrace = '\n'.join(str(line) for line in backtrace)

		text = f'Browser error: {message}'
		if backtrace:
			text = f'{text}\n{backtrace}'
		browser_logger.error(text)

		await self.event_bus.dispatch(
			BrowserErrorEvent(
				session_id=self.id,
				error_type=str(data.get('type', 'error')),
				message=str(message),
				backtrace=backtrace or None,
			)
		)

	@staticmethod
	def extract_error_message(data: Any) -> str | None:
		"""Best-effort message of a browser error report, console.error payload or exception."""
		if isinstance(data, BaseException):
			return str(data)
		if isinstance(data, str):
			return data
		if isinstance(data, dict):
			if isinstance(data.get('message'), str):
				return data['message']
			value = data.get('value')
			first_value = value[0] if isinstance(value, (list, tuple)) and value else None
			if isinstance(first_value, dict) and isinstance(first_value.get('message'), str):
				return first_value['message']
			if isinstance(first_value, str):
				return first_value
		return None

	def should_ignore_error(self, data: Any) -> bool:
		message = self.extract_error_message(data)
		if message is not None and any(pattern in message for pattern in IGNORED_ERROR_PATTERNS):
			return True
		error_filter = self.config.error_filter
		return error_filter is not None and error_filter(data) is False

	async def send_command(self, data: dict[str, Any], timeout: float | None = None) -> Any:
		return await self.channel.send_command(data, timeout=self.config.command_timeout if timeout is None else timeout)

	async def visit(self, path: str) -> None:
		await self.send_command({'type': 'visit', 'path': path})

	async def dismiss_to(self, path: str) -> None:
		await self.send_command({'type': 'dismissTo', 'path': path})

	def get_root_path(self) -> str:
		return self._root_path

	def _build_root_path(self) -> str:
		url_args = self.config.url_args
		if not url_args:
			return ROOT_PATH

		path, _, query = ROOT_PATH.partition('?')
		params = parse_qsl(query)
		for key, value in url_args.items():
			if value is None:
				continue
			if isinstance(value, bool):
				value = 'true' if value else 'false'
			params.append((key, str(value)))

		root_path = f'{path}?{urlencode(params)}'
		self.debug_log(f'Built root path {root_path}')
		return root_path

	# endregion
	# region - ========== Selector scope ==========

	def get_base_selector(self) -> str | None:
		return self._base_selector

	def set_base_selector(self, base_selector: str | None) -> None:
		self._base_selector = base_selector

	def get_selector(self, selector: str) -> str:
		return f'{self._base_selector} {selector}' if self._base_selector else selector

	# endregion
	# region - ========== Elements ==========

	async def all(self, selector: str, **find_options: Any) -> list[WebElement]:
		return await self.get_driver().all(selector, **find_options)

	async def find(self, selector: str, **find_options: Any) -> WebElement:
		return await self.get_driver().find(selector, **find_options)

	async def find_by_test_id(self, test_id: str, **find_options: Any) -> WebElement:
		return await self.get_driver().find_by_test_id(test_id, **find_options)

	async def find_no_wait(self, selector: str, **find_options: Any) -> WebElement:
		return await self.get_driver().find_no_wait(selector, **find_options)

	async def expect_no_element(self, selector: str, **find_options: Any) -> None:
		await self.get_driver().expect_no_element(selector, **find_options)

	async def wait_for_no_selector(self, selector: str, **options: Any) -> None:
		await self.get_driver().wait_for_no_selector(selector, **options)

	async def click(self, target: ElementTarget, **find_options: Any) -> None:
		await self.get_driver().click(target, **find_options)

	async def interact(self, target: ElementTarget, interaction: Any, *args: Any, **find_options: Any) -> Any:
		return await self.get_driver().interact(target, interaction, *args, **find_options)

	async def get_html(self) -> str:
		return await self.get_driver().get_html()

	async def get_current_url(self) -> str:
		return await self.get_driver().get_current_url()

	async def get_browser_logs(self) -> list[str]:
		return await self.get_driver().get_browser_logs()

	# endregion
	# region - ========== Notifications ==========

	async def notification_messages(self) -> list[str]:
		driver = self.get_driver()
		elements = await driver.all(NOTIFICATION_SELECTOR, use_scope=False)
		return [await driver.interact(element, ReadText()) for element in elements]

	async def expect_notification_message(self, expected_message: str, timeout: float | None = None) -> None:
		"""Wait for a notification with exactly `expected_message`, then click it away."""
		driver = self.get_driver()
		wait_timeout = driver.current_timeout if timeout is None else timeout
		detected: list[str] = []

		async def check() -> WebElement:
			elements = await driver.all(NOTIFICATION_TEST_ID_SELECTOR, use_scope=False, timeout=0)
			for element in elements:
				text = await driver.interact(element, ReadText())
				if text not in detected:
					detected.append(text)
				if text == expected_message:
					return element
			raise _NotificationMissing(f"Notification message {expected_message} wasn't included in: {', '.join(detected)}")

		try:
			element = await retry_async(
				check,
				retry_on=lambda error: isinstance(error, _NotificationMissing),
				timeout=wait_timeout,
				base_delay=driver.poll_interval,
				max_delay=driver.poll_interval * 4,
				description=f'notification message {expected_message!r}',
			)
		except RetryExhaustedError as e:
			raise WaitTimeoutError(str(e.last_error), NOTIFICATION_TEST_ID_SELECTOR, wait_timeout) from None

		await driver.click(element)

	async def dismiss_notification_messages(self) -> None:
		driver = self.get_driver()
		for element in await driver.all(NOTIFICATION_SELECTOR, use_scope=False):
			await driver.click(element)
		await driver.wait_for_no_selector(NOTIFICATION_SELECTOR, use_scope=False)

	# endregion
	# region - ========== Evaluation ==========

	def _require_eval_bridge(self) -> EvaluationBridge:
		if self.eval_bridge is None:
			raise LifecycleError('Evaluation bridge is not started')
		return self.eval_bridge

	async def get_evaluation_client(self, timeout: float | None = None) -> CommandChannel:
		bridge = self._require_eval_bridge()
		return await bridge.get_client(self.config.evaluation_client_timeout if timeout is None else timeout)

	async def evaluate(self, expression: str, timeout: float | None = None) -> Any:
		client = await self.get_evaluation_client(timeout)
		return await client.send_command({'type': 'eval', 'expression': expression}, timeout=self.config.command_timeout)

	async def wait_for_page_evaluation_client(self) -> None:
		"""Ask the page helper to block until its evaluation client has attached."""
		await self.send_command({'type': 'waitForScoundrel'})

	# endregion
	# region - ========== Diagnostics ==========

	async def take_screenshot(self) -> ScreenshotArtifacts:
		return await take_screenshot(
			self.get_driver(), self.config.screenshots_dir, self.logger, self.config.browser_log_lines
		)

	async def capture_failure_diagnostics(self) -> ScreenshotArtifacts | None:
		"""Take a screenshot for a failure that is already propagating; never raises."""
		if self.driver is None or not self.driver.is_started:
			self.logger.warning('No automation session, skipping failure screenshot')
			return None
		try:
			return await self.take_screenshot()
		except Exception as e:
			self.logger.warning(f'Could not capture failure diagnostics: {type(e).__name__}: {e}')
			return None

	# endregion
