"""
Tests for the SystemTest orchestrator.

The end-to-end cases run the real command channel, evaluation bridge and static
content server. Only the browser is faked: loading a page connects a PageHelper
back to the session, exactly like the in-page helper of a real app would.
"""

import asyncio
import logging
from typing import Any
from unittest.mock import patch

import httpx
import pytest
from pydantic import ValidationError

from system_testing.exceptions import (
	ElementNotFoundError,
	HostUnreachableError,
	LifecycleError,
	LifecycleTimeoutError,
	WaitTimeoutError,
)
from system_testing.page_helper import PageHelper
from system_testing.session import (
	ROOT_PATH,
	BrowserConsoleEvent,
	BrowserErrorEvent,
	SessionState,
	SystemTest,
	SystemTestConfig,
	SystemTestStartedEvent,
	SystemTestStoppedEvent,
)
from system_testing.session.service import (
	FOCUSED_SCOPE_SELECTOR,
	NOTIFICATION_SELECTOR,
	NOTIFICATION_TEST_ID_SELECTOR,
)
from tests.ci.conftest import FakeDriver, FakeElement, FakeWebDriver, mock_transport_client

ROOT_MARKER = 'body > #root'
HARNESS = "[data-testid='systemTestingComponent']"
BLANK = "[data-testid='blankText']"
ROUTES = {'/users': 'usersTitle', '/settings': 'settingsTitle'}


def route_selector(path: str) -> str:
	return f"{FOCUSED_SCOPE_SELECTOR} [data-testid='{ROUTES[path]}']"


class FakeBrowser(FakeWebDriver):
	"""A browser whose page runs a PageHelper connected back to the session."""

	def __init__(
		self,
		system_test: 'HarnessSystemTest',
		loop: asyncio.AbstractEventLoop,
		connect_page_helper: bool = True,
		render_harness: bool = True,
	):
		super().__init__()
		self.system_test = system_test
		self.loop = loop
		self.connect_page_helper = connect_page_helper
		self.render_harness = render_harness
		self.page_helper: PageHelper | None = None
		self.path: str | None = None
		self.initialize_count = 0

	def get(self, url: str) -> None:
		super().get(url)
		self.elements[ROOT_MARKER] = [FakeElement('root')]
		if self.render_harness:
			self.elements[HARNESS] = [FakeElement('harness')]
		if self.connect_page_helper:
			asyncio.run_coroutine_threadsafe(self.load_page(), self.loop)

	async def load_page(self) -> None:
		system_test = self.system_test
		assert system_test.channel_server is not None and system_test.eval_bridge is not None
		helper = PageHelper(
			channel_url=f'ws://127.0.0.1:{system_test.channel_server.port}/',
			eval_url=f'ws://127.0.0.1:{system_test.eval_bridge.port}/',
			evaluator=self.evaluate,
		)
		helper.subscriptions.subscribe('navigate', self.on_navigate)
		helper.subscriptions.subscribe('dismissTo', self.on_dismiss_to)
		helper.subscriptions.subscribe('initialize', self.on_initialize)
		self.page_helper = helper
		system_test.page_helpers.append(helper)
		await helper.connect()

	def on_navigate(self, payload: dict[str, Any]) -> None:
		self.path = payload['path']
		self.elements.pop(BLANK, None)
		self.elements[route_selector(self.path)] = [FakeElement(ROUTES[self.path])]

	def on_dismiss_to(self, payload: dict[str, Any]) -> None:
		self.path = payload['path']
		for path in ROUTES:
			self.elements.pop(route_selector(path), None)
		if self.path.startswith('/blank'):
			self.elements[BLANK] = [FakeElement('blank')]

	def on_initialize(self, payload: dict[str, Any]) -> None:
		self.initialize_count += 1

	def evaluate(self, expression: str) -> Any:
		return {'document.title': 'Fake app', 'location.pathname': self.path}[expression]


class HarnessSystemTest(SystemTest):
	"""SystemTest driving FakeBrowser sessions instead of launching Chrome."""

	def __init__(
		self,
		config: SystemTestConfig | None = None,
		browser_options: dict[str, Any] | None = None,
		**overrides: Any,
	):
		self.browser_options = browser_options or {}
		self.browsers: list[FakeBrowser] = []
		self.page_helpers: list[PageHelper] = []
		super().__init__(config, **overrides)

	@property
	def browser(self) -> FakeBrowser:
		return self.browsers[-1]

	def _create_driver(self) -> FakeDriver:
		browser = FakeBrowser(self, asyncio.get_running_loop(), **self.browser_options)
		self.browsers.append(browser)
		return FakeDriver(
			browser,
			scope=self.get_base_selector,
			health_check=self.throw_if_http_server_error,
			timeout=self.config.default_timeout,
		)


@pytest.fixture
def config(tmp_path) -> SystemTestConfig:
	return SystemTestConfig(
		host='127.0.0.1',
		channel_host='127.0.0.1',
		channel_port=0,
		eval_host='127.0.0.1',
		eval_port=0,
		default_timeout=1.0,
		startup_timeout=2.0,
		root_marker_timeout=1.0,
		client_connect_timeout=2.0,
		command_timeout=2.0,
		evaluation_client_timeout=2.0,
		teardown_timeout=2.0,
		screenshots_dir=tmp_path / 'screenshots',
	)


def collect(system_test: SystemTest, event_type: type) -> list[Any]:
	events: list[Any] = []

	async def on_event(event: Any) -> None:
		events.append(event)

	system_test.on(event_type, on_event)
	return events


def browser_messages(caplog: pytest.LogCaptureFixture) -> list[tuple[int, str]]:
	return [(record.levelno, record.getMessage()) for record in caplog.records if record.name == 'system_testing.browser']


async def shutdown(system_test: HarnessSystemTest) -> None:
	if system_test.state in (SessionState.STARTING, SessionState.READY):
		await system_test.stop()
	for helper in system_test.page_helpers:
		await helper.close()
	await system_test.event_bus.stop(clear=True, timeout=5)


@pytest.fixture
async def system_test(config):
	system_test = HarnessSystemTest(config)
	yield system_test
	await shutdown(system_test)


@pytest.fixture
async def plain_system_test(config):
	"""A session that is never started."""
	system_test = SystemTest(config)
	yield system_test
	await system_test.event_bus.stop(clear=True, timeout=5)


# region - ========== Unit ==========


class TestConstruction:
	"""Configuration handling and identity."""

	@pytest.mark.asyncio
	async def test_overrides_are_validated(self, config):
		with pytest.raises(ValidationError):
			SystemTest(config, hots='localhost')

	@pytest.mark.asyncio
	async def test_overrides_apply_on_top_of_config(self, config):
		system_test = SystemTest(config, port=19006)

		assert system_test.config.port == 19006
		assert system_test.config.channel_port == 0
		assert str(system_test) == f'SystemTest🅢 {system_test.id[-4:]}'
		assert system_test.state is SessionState.UNINITIALIZED

		await system_test.event_bus.stop(clear=True, timeout=5)

	@pytest.mark.asyncio
	async def test_nothing_is_available_before_start(self, plain_system_test):
		with pytest.raises(LifecycleError, match="Driver hasn't been initialized yet"):
			plain_system_test.get_driver()
		with pytest.raises(LifecycleError, match='Evaluation bridge is not started'):
			await plain_system_test.evaluate('1 + 1')
		assert await plain_system_test.capture_failure_diagnostics() is None


class TestRootPath:
	"""The reset route every test starts from."""

	@pytest.mark.asyncio
	async def test_default_root_path(self, plain_system_test):
		assert plain_system_test.get_root_path() == ROOT_PATH == '/blank?systemTest=true'

	@pytest.mark.asyncio
	async def test_url_args_are_appended(self, config):
		"""None values are skipped and booleans are lowercased."""
		system_test = SystemTest(config, url_args={'a': 1, 'flag': True, 'off': False, 'skip': None})

		assert system_test.get_root_path() == '/blank?systemTest=true&a=1&flag=true&off=false'

		await system_test.event_bus.stop(clear=True, timeout=5)


class TestErrorFiltering:
	"""Which browser errors are reported."""

	def test_extract_error_message(self):
		assert SystemTest.extract_error_message(ValueError('bad value')) == 'bad value'
		assert SystemTest.extract_error_message('plain text') == 'plain text'
		assert SystemTest.extract_error_message({'message': 'from report'}) == 'from report'
		assert SystemTest.extract_error_message({'value': [{'message': 'from console object'}]}) == 'from console object'
		assert SystemTest.extract_error_message({'value': ['from console string', 2]}) == 'from console string'
		assert SystemTest.extract_error_message({'value': []}) is None
		assert SystemTest.extract_error_message(42) is None

	@pytest.mark.asyncio
	async def test_hydration_warnings_are_ignored(self, plain_system_test):
		assert plain_system_test.should_ignore_error({'message': 'Minified React error #418; visit https://react.dev'})
		assert plain_system_test.should_ignore_error({'value': ['Minified React error #419']})
		assert not plain_system_test.should_ignore_error({'message': 'TypeError: x is undefined'})

	@pytest.mark.asyncio
	async def test_error_filter_can_silence_errors(self, config):
		"""Only an explicit False from the filter ignores an error."""
		system_test = SystemTest(config, error_filter=lambda data: False if 'flaky' in str(data.get('message')) else None)

		assert system_test.should_ignore_error({'message': 'flaky network'})
		assert not system_test.should_ignore_error({'message': 'real failure'})

		await system_test.event_bus.stop(clear=True, timeout=5)


class TestCommandRouting:
	"""Commands sent by the page helper."""

	@pytest.mark.asyncio
	async def test_console_error_is_logged_and_published(self, plain_system_test, caplog):
		events = collect(plain_system_test, BrowserConsoleEvent)

		with caplog.at_level(logging.INFO, logger='system_testing.browser'):
			await plain_system_test.on_command_received({'type': 'console.error', 'value': ['Request failed', 500]})
			await plain_system_test.on_command_received({'type': 'console.error', 'value': ['Minified React error #418']})
			await plain_system_test.on_command_received({'type': 'console.log', 'value': ['rendered', 3]})

		assert browser_messages(caplog) == [
			(logging.ERROR, 'Browser error Request failed 500'),
			(logging.INFO, 'Browser log rendered 3'),
		]
		assert [(event.level, event.values, event.ignored) for event in events] == [
			('error', ['Request failed', 500], False),
			('error', ['Minified React error #418'], True),
			('log', ['rendered', 3], False),
		]

	@pytest.mark.asyncio
	async def test_errors_join_backtraces(self, plain_system_test, caplog):
		events = collect(plain_system_test, BrowserErrorEvent)

		with caplog.at_level(logging.ERROR, logger='system_testing.browser'):
			await plain_system_test.on_command_received(
				{'type': 'unhandledrejection', 'message': 'boom', 'backtrace': ['at a (app.js:1)', 'at b (app.js:2)']}
			)
			await plain_system_test.on_command_received({'type': 'error', 'message': 'Minified React error #419'})

		assert browser_messages(caplog) == [(logging.ERROR, 'Browser error: boom\nat a (app.js:1)\nat b (app.js:2)')]
		assert len(events) == 1
		assert events[0].error_type == 'unhandledrejection'
		assert events[0].backtrace == 'at a (app.js:1)\nat b (app.js:2)'

	@pytest.mark.asyncio
	async def test_custom_commands_go_to_the_callback(self, plain_system_test):
		async def on_command(data: dict[str, Any]) -> str:
			return f'handled {data["type"]}'

		plain_system_test.on_command(on_command)

		assert await plain_system_test.on_command_received({'type': 'saveFixture'}) == 'handled saveFixture'

	@pytest.mark.asyncio
	async def test_unknown_command_without_callback_is_logged(self, plain_system_test, caplog):
		with caplog.at_level(logging.ERROR, logger='system_testing'):
			assert await plain_system_test.on_command_received({'type': 'saveFixture'}) is None

		assert "Received unknown command type 'saveFixture'" in caplog.text


class TestNotifications:
	"""Notification helpers on top of the driver."""

	@pytest.fixture
	def session(self, plain_system_test, driver):
		plain_system_test.driver = driver
		return plain_system_test

	@pytest.mark.asyncio
	async def test_notification_messages(self, session, web_driver):
		web_driver.elements[NOTIFICATION_SELECTOR] = [FakeElement(text='Saved'), FakeElement(text='Sent')]

		assert await session.notification_messages() == ['Saved', 'Sent']

	@pytest.mark.asyncio
	async def test_expected_notification_is_clicked_away(self, session, web_driver):
		saved = FakeElement(text='Saved')
		web_driver.elements[NOTIFICATION_TEST_ID_SELECTOR] = [FakeElement(text='Deleted'), saved]

		with patch('system_testing.drivers.webdriver.ActionChains') as action_chains:
			await session.expect_notification_message('Saved')

		action_chains.return_value.move_to_element.assert_called_once_with(saved)

	@pytest.mark.asyncio
	async def test_missing_notification_lists_what_was_seen(self, session, web_driver):
		web_driver.elements[NOTIFICATION_TEST_ID_SELECTOR] = [FakeElement(text='Deleted')]

		with pytest.raises(WaitTimeoutError, match="Notification message Saved wasn't included in: Deleted"):
			await session.expect_notification_message('Saved', timeout=0.2)

	@pytest.mark.asyncio
	async def test_notification_wait_follows_temporary_timeout(self, session, driver, web_driver):
		"""Without an explicit timeout the wait uses the driver's current override."""
		web_driver.elements[NOTIFICATION_TEST_ID_SELECTOR] = [FakeElement(text='Deleted')]
		driver.set_timeout(5.0)

		loop = asyncio.get_running_loop()
		start = loop.time()
		with driver.temporary_timeout(0.1):
			with pytest.raises(WaitTimeoutError, match="wasn't included in: Deleted"):
				await session.expect_notification_message('Saved')
		assert loop.time() - start < 2.0

	@pytest.mark.asyncio
	async def test_dismiss_notification_messages(self, session, web_driver):
		web_driver.elements[NOTIFICATION_SELECTOR] = [FakeElement(text='Saved'), FakeElement(text='Sent')]

		with patch('system_testing.drivers.webdriver.ActionChains') as action_chains:
			perform = action_chains.return_value.move_to_element.return_value.click.return_value.perform
			perform.side_effect = lambda: web_driver.elements.pop(NOTIFICATION_SELECTOR, None)
			await session.dismiss_notification_messages()

		assert perform.call_count == 2
		assert NOTIFICATION_SELECTOR not in web_driver.elements


# endregion
# region - ========== End to end ==========


class TestSessionLifecycle:
	"""Starting, running and stopping a session against FakeBrowser."""

	@pytest.mark.asyncio
	async def test_start_and_run(self, system_test):
		"""run() resets the page and hands the ready session to the callback."""
		started = collect(system_test, SystemTestStartedEvent)

		async def callback(session: SystemTest) -> str:
			await session.visit('/users')
			element = await session.find_by_test_id('usersTitle')
			return element.name

		assert await system_test.run(callback) == 'usersTitle'

		browser = system_test.browser
		assert system_test.is_started()
		assert browser.visited == ['http://127.0.0.1:8081/blank?systemTest=true']
		assert browser.implicit_wait == 0
		assert browser.initialize_count == 1
		assert browser.path == '/users'
		assert system_test.get_base_selector() == FOCUSED_SCOPE_SELECTOR
		assert system_test.get_driver().timeout == 1.0
		assert [(event.base_url, event.target) for event in started] == [('http://127.0.0.1:8081', 'dev-server')]

	@pytest.mark.asyncio
	async def test_each_run_starts_from_the_blank_screen(self, system_test):
		await system_test.run(lambda session: session.visit('/settings'))

		async def callback(session: SystemTest) -> None:
			await session.expect_no_element("[data-testid='settingsTitle']")

		await system_test.run(callback)

		assert system_test.browser.initialize_count == 2
		assert system_test.browser.path == ROOT_PATH

	@pytest.mark.asyncio
	async def test_failing_callback_captures_diagnostics(self, system_test, config):
		"""The original error propagates after the screenshot is taken."""

		async def callback(session: SystemTest) -> None:
			await session.find('.missing', timeout=0.05)

		with pytest.raises(ElementNotFoundError, match=r'\.missing'):
			await system_test.run(callback)

		assert len(list(config.screenshots_dir.glob('*.png'))) == 1
		assert len(list(config.screenshots_dir.glob('*.html'))) == 1
		assert len(list(config.screenshots_dir.glob('*.logs.txt'))) == 1

	@pytest.mark.asyncio
	async def test_page_errors_reach_event_handlers(self, system_test):
		errors = collect(system_test, BrowserErrorEvent)
		await system_test.start()

		await system_test.browser.page_helper.report_error('TypeError: x is undefined', ['at render (app.js:10)'])

		assert [(error.message, error.backtrace) for error in errors] == [('TypeError: x is undefined', 'at render (app.js:10)')]

	@pytest.mark.asyncio
	async def test_evaluate(self, system_test):
		await system_test.start()
		await system_test.wait_for_page_evaluation_client()

		assert await system_test.evaluate('document.title') == 'Fake app'

	@pytest.mark.asyncio
	async def test_stop(self, system_test):
		stopped = collect(system_test, SystemTestStoppedEvent)
		await system_test.start()
		browser, channel = system_test.browser, system_test.channel

		await system_test.stop()

		assert system_test.state is SessionState.STOPPED
		assert not system_test.is_started()
		assert browser.quit_called
		assert channel.is_closed
		assert system_test.driver is None
		assert system_test.channel_server is None
		assert system_test.eval_bridge is None
		assert [event.failed_steps for event in stopped] == [[]]

	@pytest.mark.asyncio
	async def test_start_after_stop_builds_a_new_session(self, system_test):
		await system_test.start()
		await system_test.stop()

		await system_test.start()

		assert system_test.is_started()
		assert len(system_test.browsers) == 2
		assert not system_test.channel.is_closed

	@pytest.mark.asyncio
	async def test_reinitialize(self, system_test):
		"""A fresh session from the same configuration, with subscriptions kept."""
		started = collect(system_test, SystemTestStartedEvent)
		await system_test.run(lambda session: session.visit('/users'))
		first_browser = system_test.browser

		await system_test.reinitialize()

		assert system_test.is_started()
		assert first_browser.quit_called
		assert system_test.browser is not first_browser
		assert system_test.browser.initialize_count == 0
		assert BLANK not in system_test.browser.elements
		assert len(started) == 2

		await system_test.run(lambda session: session.visit('/settings'))
		assert system_test.browser.path == '/settings'

	@pytest.mark.asyncio
	async def test_start_is_idempotent(self, system_test):
		await system_test.start()
		await system_test.start()

		assert len(system_test.browsers) == 1


class TestStartFailures:
	"""A failed start leaves nothing running."""

	@pytest.mark.asyncio
	async def test_page_helper_never_connects(self, config):
		system_test = HarnessSystemTest(config, browser_options={'connect_page_helper': False}, client_connect_timeout=0.3)
		try:
			with pytest.raises(LifecycleTimeoutError) as exc_info:
				await system_test.start()

			assert exc_info.value.step == 'client web socket'
			assert system_test.state is SessionState.STOPPED
			assert system_test.browser.quit_called
			assert system_test.driver is None
			assert system_test.channel_server is None
		finally:
			await shutdown(system_test)

	@pytest.mark.asyncio
	async def test_missing_harness_takes_a_screenshot(self, config):
		system_test = HarnessSystemTest(config, browser_options={'render_harness': False}, root_marker_timeout=0.2)
		try:
			with pytest.raises(ElementNotFoundError, match='systemTestingComponent'):
				await system_test.start()

			assert system_test.state is SessionState.STOPPED
			assert len(list(config.screenshots_dir.glob('*.png'))) == 1
		finally:
			await shutdown(system_test)


class TestStaticTarget:
	"""The dist target serves the build before the browser loads it."""

	@pytest.fixture
	def dist_config(self, config, tmp_path) -> SystemTestConfig:
		root = tmp_path / 'dist'
		root.mkdir()
		(root / 'index.html').write_text('<div id="root"></div>')
		return SystemTestConfig.model_validate(
			{
				**config.model_dump(),
				'target': 'dist',
				'static_root': root,
				'http_host': '127.0.0.1',
				'http_port': 0,
				'health_check_attempts': 5,
				'health_check_delay': 0.01,
			}
		)

	@pytest.mark.asyncio
	async def test_start_waits_for_the_static_server(self, dist_config, monkeypatch):
		"""Connection resets during the health check are retried."""
		calls = 0

		def handler(request: httpx.Request) -> httpx.Response:
			nonlocal calls
			calls += 1
			if calls <= 3:
				raise httpx.ReadError('Connection reset by peer', request=request)
			return httpx.Response(200, text='ok')

		mock_transport_client(monkeypatch, handler)
		system_test = HarnessSystemTest(dist_config)
		try:
			await system_test.start()

			assert calls == 4
			assert system_test.http_server is not None
			assert system_test.http_server.port != 0
			assert system_test.base_url == system_test.http_server.url
			assert system_test.browser.visited == [f'{system_test.http_server.url}/blank?systemTest=true']
		finally:
			await shutdown(system_test)

		assert system_test.http_server is None

	@pytest.mark.asyncio
	async def test_unreachable_static_server_fails_start(self, dist_config, monkeypatch):
		def handler(request: httpx.Request) -> httpx.Response:
			raise httpx.ReadError('Connection reset by peer', request=request)

		mock_transport_client(monkeypatch, handler)
		system_test = HarnessSystemTest(dist_config)
		try:
			with pytest.raises(HostUnreachableError, match='was not reachable after 5 attempts'):
				await system_test.start()

			assert system_test.state is SessionState.STOPPED
			assert system_test.http_server is None
			assert system_test.browsers == []
		finally:
			await shutdown(system_test)


# endregion
