"""Backend-agnostic element lookup and interaction on top of a Selenium-protocol session.

Every blocking WebDriver call runs in a worker thread via `asyncio.to_thread`. The
session's implicit wait is pinned to zero: waiting is done here, by polling, so the
one mutable "current timeout" below is the only timeout that governs a lookup.
"""

import asyncio
import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from selenium.common.exceptions import (
	ElementClickInterceptedException,
	ElementNotInteractableException,
	StaleElementReferenceException,
	TimeoutException,
	WebDriverException,
)
from selenium.webdriver.common.action_chains import ActionChains
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webdriver import WebDriver
from selenium.webdriver.remote.webelement import WebElement

from system_testing.drivers.retry import RetryExhaustedError, retry_async
from system_testing.drivers.views import DriverOptions, ElementQuery, FindOptions, Visibility, to_interaction
from system_testing.exceptions import (
	AmbiguousMatchError,
	ElementLookupError,
	ElementNotFoundError,
	InteractionError,
	LifecycleError,
	LifecycleTimeoutError,
	SystemTestError,
	TransientInteractionError,
	UnexpectedElementError,
	WaitTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
MAX_INTERACTION_ATTEMPTS = 3
INTERACTION_RETRY_DELAY = 0.05

# "<source> <line>:<column> <message>" as reported by Chrome's browser log
BROWSER_LOG_PATTERN = re.compile(r'^(.+) (\d+):(\d+) (.+)$')

TRANSIENT_INTERACTION_ERRORS = (
	ElementNotInteractableException,
	ElementClickInterceptedException,
	StaleElementReferenceException,
)

ElementTarget = str | ElementQuery | WebElement


class _NoMatchYet(Exception):
	pass


class _StillDisplayed(Exception):
	pass


def _message(error: BaseException) -> str:
	return getattr(error, 'msg', None) or str(error)


def _is_stale(error: BaseException) -> bool:
	if isinstance(error, StaleElementReferenceException):
		return True
	return isinstance(error, WebDriverException) and 'stale element reference' in _message(error).lower()


def _is_retryable_lookup_error(error: BaseException) -> bool:
	return isinstance(error, (_NoMatchYet, TimeoutException)) or _is_stale(error)


def _is_transient_interaction_error(error: BaseException) -> bool:
	return isinstance(error, TRANSIENT_INTERACTION_ERRORS) or _is_stale(error)


def format_browser_log_entry(entry: dict[str, Any]) -> str:
	"""Render one WebDriver log entry as `LEVEL: message`, without the source location prefix."""
	message = str(entry.get('message', ''))
	match = BROWSER_LOG_PATTERN.match(message)
	if match:
		message = match.group(4)
	return f'{entry.get("level", "INFO")}: {message}'


class WebDriverDriver:
	"""Shared retry, timeout and scoping logic for Selenium-protocol backends.

	Subclasses build the session in `_create_web_driver()` and may change how test ids
	resolve in `test_id_locator()`. Everything else lives here.

	Args:
		options: Backend options, validated against `options_model`.
		scope: Returns the current selector scope prefix (or None) on every lookup.
		health_check: Called before every backend access; raise to abort the access.
		timeout: Configured lookup timeout in seconds.
		poll_interval: Base delay between lookup attempts.
	"""

	options_model: type[DriverOptions] = DriverOptions

	def __init__(
		self,
		options: dict[str, Any] | None = None,
		*,
		scope: Callable[[], str | None] | None = None,
		health_check: Callable[[], None] | None = None,
		timeout: float = DEFAULT_TIMEOUT,
		poll_interval: float = 0.05,
	):
		self.settings = self.options_model.model_validate(options or {})
		self.scope = scope
		self.health_check = health_check
		self.poll_interval = poll_interval
		self.base_url: str | None = None
		self._web_driver: WebDriver | None = None
		self._timeout = timeout
		self._current_timeout = timeout

	def __repr__(self) -> str:
		state = 'started' if self.is_started else 'stopped'
		return f'<{type(self).__name__} {state} timeout={self._current_timeout}s>'

	# region - ========== Session ==========

	@property
	def is_started(self) -> bool:
		return self._web_driver is not None

	@property
	def web_driver(self) -> WebDriver:
		if self._web_driver is None:
			raise LifecycleError("Driver hasn't been started yet")
		if self.health_check is not None:
			self.health_check()
		return self._web_driver

	def _create_web_driver(self) -> WebDriver:
		raise NotImplementedError(f'{type(self).__name__} must implement _create_web_driver()')

	async def start(self) -> None:
		if self._web_driver is not None:
			return
		web_driver = await asyncio.to_thread(self._create_web_driver)
		await asyncio.to_thread(web_driver.implicitly_wait, 0)
		self._web_driver = web_driver
		logger.debug(f'{type(self).__name__} session started')

	async def stop(self, timeout: float | None = None) -> None:
		web_driver, self._web_driver = self._web_driver, None
		if web_driver is None:
			return

		quit_timeout = self._timeout if timeout is None else timeout
		try:
			await asyncio.wait_for(asyncio.to_thread(web_driver.quit), quit_timeout)
		except TimeoutError:
			raise LifecycleTimeoutError('timeout while quitting WebDriver', step='quit web driver', timeout=quit_timeout) from None
		logger.debug(f'{type(self).__name__} session stopped')

	def set_base_url(self, base_url: str) -> None:
		self.base_url = base_url

	def get_base_url(self) -> str:
		if not self.base_url:
			raise LifecycleError('Driver base URL has not been set')
		return self.base_url

	# endregion
	# region - ========== Timeouts ==========

	@property
	def timeout(self) -> float:
		"""The configured timeout, restored after every temporary override."""
		return self._timeout

	@property
	def current_timeout(self) -> float:
		return self._current_timeout

	def set_timeout(self, timeout: float) -> None:
		self._timeout = timeout
		self._current_timeout = timeout

	@contextmanager
	def temporary_timeout(self, timeout: float) -> Iterator[None]:
		previous = self._current_timeout
		self._current_timeout = timeout
		try:
			yield
		finally:
			self._current_timeout = previous

	# endregion
	# region - ========== Lookup ==========

	def get_selector(self, selector: str) -> str:
		scope = self.scope() if self.scope is not None else None
		return f'{scope} {selector}' if scope else selector

	def _actual_selector(self, selector: str, by: str, use_scope: bool) -> str:
		if use_scope and by == By.CSS_SELECTOR:
			return self.get_selector(selector)
		return selector

	@staticmethod
	def _describe_by(by: str) -> str:
		return 'CSS' if by == By.CSS_SELECTOR else by

	def test_id_locator(self, test_id: str) -> tuple[str, str]:
		return By.CSS_SELECTOR, f"[data-testid='{test_id}']"

	@staticmethod
	def _query_elements(web_driver: WebDriver, by: str, selector: str, visibility: Visibility) -> list[WebElement]:
		elements = web_driver.find_elements(by, selector)
		if visibility is Visibility.UNFILTERED:
			return elements
		want_displayed = visibility is Visibility.REQUIRE_VISIBLE
		return [element for element in elements if element.is_displayed() == want_displayed]

	async def all(
		self,
		selector: str,
		*,
		timeout: float | None = None,
		visible: bool | None = True,
		use_scope: bool = True,
		by: str = By.CSS_SELECTOR,
	) -> list[WebElement]:
		"""Poll until at least one element matches or the timeout elapses.

		Lookup timeouts and stale references are retried while time remains, with a
		poll delay between attempts. An empty list means nothing matched in time.

		Raises:
			ElementLookupError: any other backend failure, with the effective selector.
		"""
		options = FindOptions(timeout=timeout, visible=visible, use_scope=use_scope)
		actual_selector = self._actual_selector(selector, by, options.use_scope)
		actual_timeout = self._current_timeout if options.timeout is None else options.timeout

		loop = asyncio.get_running_loop()
		deadline = loop.time() + actual_timeout

		async def query() -> list[WebElement]:
			elements = await asyncio.to_thread(self._query_elements, self.web_driver, by, actual_selector, options.visibility)
			if not elements and loop.time() < deadline:
				raise _NoMatchYet()
			return elements

		try:
			return await retry_async(
				query,
				retry_on=_is_retryable_lookup_error,
				timeout=actual_timeout,
				base_delay=self.poll_interval,
				max_delay=self.poll_interval * 4,
				description=f'lookup of {actual_selector}',
			)
		except RetryExhaustedError as e:
			if isinstance(e.last_error, _NoMatchYet):
				return []
			error: BaseException = e.last_error
		except WebDriverException as e:
			error = e

		raise ElementLookupError(
			f"Couldn't get elements with selector: {actual_selector}: {type(error).__name__}: {_message(error)}",
			actual_selector,
		) from error

	async def find(
		self,
		selector: str,
		*,
		timeout: float | None = None,
		visible: bool | None = True,
		use_scope: bool = True,
		by: str = By.CSS_SELECTOR,
	) -> WebElement:
		loop = asyncio.get_running_loop()
		start_time = loop.time()
		elements = await self.all(selector, timeout=timeout, visible=visible, use_scope=use_scope, by=by)
		actual_selector = self._actual_selector(selector, by, use_scope)

		if len(elements) > 1:
			raise AmbiguousMatchError(
				f'More than 1 elements ({len(elements)}) was found by {self._describe_by(by)}: {actual_selector}',
				actual_selector,
				len(elements),
			)

		if not elements:
			elapsed = loop.time() - start_time
			raise ElementNotFoundError(
				f"Element couldn't be found after {elapsed:.2f}s by {self._describe_by(by)}: {actual_selector}",
				actual_selector,
				elapsed,
			)

		return elements[0]

	async def find_by_test_id(self, test_id: str, **find_options: Any) -> WebElement:
		by, value = self.test_id_locator(test_id)
		return await self.find(value, by=by, **find_options)

	async def find_no_wait(self, selector: str, **find_options: Any) -> WebElement:
		with self.temporary_timeout(0):
			return await self.find(selector, **find_options)

	async def expect_no_element(self, selector: str, **find_options: Any) -> None:
		try:
			await self.find_no_wait(selector, **find_options)
		except ElementNotFoundError:
			return
		raise UnexpectedElementError(f'Expected not to find: {selector}', selector)

	async def wait_for_no_selector(self, selector: str, *, use_scope: bool = True, timeout: float | None = None) -> None:
		"""Wait until nothing matching `selector` is displayed.

		A reference that goes stale while its displayed state is read counts as not displayed.
		"""
		actual_selector = self._actual_selector(selector, By.CSS_SELECTOR, use_scope)
		actual_timeout = self._current_timeout if timeout is None else timeout

		def anything_displayed(web_driver: WebDriver) -> bool:
			for element in web_driver.find_elements(By.CSS_SELECTOR, actual_selector):
				try:
					if element.is_displayed():
						return True
				except StaleElementReferenceException:
					continue
			return False

		async def check() -> None:
			if await asyncio.to_thread(anything_displayed, self.web_driver):
				raise _StillDisplayed()

		try:
			await retry_async(
				check,
				retry_on=lambda error: isinstance(error, _StillDisplayed),
				timeout=actual_timeout,
				base_delay=self.poll_interval,
				max_delay=self.poll_interval * 4,
				description=f'wait for no {actual_selector}',
			)
		except RetryExhaustedError:
			raise WaitTimeoutError(
				f'Selector was still displayed after {actual_timeout:.2f}s: {actual_selector}', actual_selector, actual_timeout
			) from None
		except WebDriverException as e:
			raise ElementLookupError(f'Selenium {type(e).__name__}: {_message(e)}', actual_selector) from e

	# endregion
	# region - ========== Interaction ==========

	async def _resolve(self, target: ElementTarget, find_options: dict[str, Any]) -> WebElement:
		if isinstance(target, str):
			return await self.find(target, **find_options)
		if isinstance(target, ElementQuery):
			options = target.options.model_dump()
			options.update(find_options)
			return await self.find(target.selector, by=target.by, **options)
		return target

	@staticmethod
	def _describe_target(target: ElementTarget) -> str:
		if isinstance(target, str):
			return f'CSS selector {target}'
		if isinstance(target, ElementQuery):
			return target.describe()
		return type(target).__name__

	async def _interact(
		self,
		target: ElementTarget,
		method: str,
		apply: Callable[[WebElement], Any],
		find_options: dict[str, Any],
	) -> Any:
		description = self._describe_target(target)

		async def attempt() -> Any:
			element = await self._resolve(target, find_options)
			return await asyncio.to_thread(apply, element)

		try:
			return await retry_async(
				attempt,
				retry_on=_is_transient_interaction_error,
				max_attempts=MAX_INTERACTION_ATTEMPTS,
				base_delay=INTERACTION_RETRY_DELAY,
				max_delay=INTERACTION_RETRY_DELAY,
				description=f'{method} on {description}',
			)
		except RetryExhaustedError as e:
			failure_kind = type(e.last_error).__name__
			raise TransientInteractionError(
				f'{description} {method} failed after {e.attempts} tries - {failure_kind}: {_message(e.last_error)}',
				target_description=description,
				method=method,
				failure_kind=failure_kind,
				attempts=e.attempts,
			) from e.last_error
		except SystemTestError:
			raise
		except Exception as e:
			raise InteractionError(f'{description} {method} failed - {type(e).__name__}: {_message(e)}') from e

	async def click(self, target: ElementTarget, **find_options: Any) -> None:
		"""Move the pointer to the element and click it, re-resolving on transient failures."""

		def perform_click(element: WebElement) -> None:
			ActionChains(self.web_driver).move_to_element(element).click().perform()

		await self._interact(target, 'click', perform_click, find_options)

	async def interact(self, target: ElementTarget, interaction: Any, *args: Any, **find_options: Any) -> Any:
		"""Run one interaction against the element and return its result.

		`interaction` is an interaction variant, a tagged dict or a method name such as
		`'send_keys'` (with its arguments in `args`).
		"""
		resolved = to_interaction(interaction, *args)
		return await self._interact(target, resolved.describe(), resolved.apply, find_options)

	# endregion
	# region - ========== Page ==========

	async def visit(self, path: str) -> None:
		url = f'{self.get_base_url()}{path}'
		logger.debug(f'Visiting {url}')
		await asyncio.to_thread(self.web_driver.get, url)

	async def get_current_url(self) -> str:
		try:
			web_driver = self.web_driver
			return await asyncio.to_thread(lambda: web_driver.current_url)
		except (WebDriverException, SystemTestError):
			return ''

	async def get_html(self) -> str:
		web_driver = self.web_driver
		return await asyncio.to_thread(lambda: web_driver.page_source)

	async def take_screenshot(self) -> str:
		"""Base64-encoded PNG of the current viewport."""
		return await asyncio.to_thread(self.web_driver.get_screenshot_as_base64)

	async def get_browser_logs(self) -> list[str]:
		try:
			entries = await asyncio.to_thread(self.web_driver.get_log, 'browser')  # type: ignore[attr-defined]
		except (WebDriverException, AttributeError, SystemTestError) as e:
			logger.debug(f'Browser logs unavailable: {type(e).__name__}: {e}')
			return []
		return [format_browser_log_entry(entry) for entry in entries]

	# endregion
