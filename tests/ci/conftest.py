"""
Shared doubles for the CI suite: an in-memory WebDriver, its elements and a WebSocket transport.
"""

import base64
import json
import logging
from typing import Any

import httpx
import pytest

from system_testing.drivers.webdriver import WebDriverDriver

logging.getLogger('system_testing').setLevel(logging.DEBUG)


class FakeElement:
	"""Stands in for a WebElement; `click_errors` are raised by the next click() calls in order."""

	def __init__(
		self,
		name: str = 'element',
		displayed: bool | BaseException = True,
		text: str = '',
		click_errors: list[BaseException] | None = None,
		attributes: dict[str, str] | None = None,
		on_click: Any = None,
	):
		self.name = name
		self.displayed = displayed
		self.text = text
		self.click_errors = list(click_errors or [])
		self.attributes = attributes or {}
		self.on_click = on_click
		self.click_count = 0
		self.keys: list[str] = []

	def __repr__(self) -> str:
		return f'<FakeElement {self.name}>'

	def is_displayed(self) -> bool:
		if isinstance(self.displayed, BaseException):
			raise self.displayed
		return self.displayed

	def click(self) -> str:
		self.click_count += 1
		if self.click_errors:
			raise self.click_errors.pop(0)
		if self.on_click is not None:
			self.on_click()
		return 'clicked'

	def send_keys(self, text: str) -> None:
		self.keys.append(text)

	def get_attribute(self, name: str) -> str | None:
		return self.attributes.get(name)


class FakeWebDriver:
	"""In-memory WebDriver answering find_elements from a selector -> elements map."""

	def __init__(self, elements: dict[str, list[FakeElement]] | None = None):
		self.elements = elements if elements is not None else {}
		self.find_errors: list[BaseException] = []
		self.queries: list[tuple[str, str]] = []
		self.visited: list[str] = []
		self.logs: list[dict[str, Any]] = []
		self.implicit_wait: float | None = None
		self.quit_called = False
		self.current_url = 'about:blank'
		self.page_source = '<html><body><div id="root"></div></body></html>'

	def find_elements(self, by: str, value: str) -> list[Any]:
		self.queries.append((by, value))
		if self.find_errors:
			raise self.find_errors.pop(0)
		return list(self.elements.get(value, []))

	def query_count(self, value: str) -> int:
		return sum(1 for _, queried in self.queries if queried == value)

	def implicitly_wait(self, seconds: float) -> None:
		self.implicit_wait = seconds

	def get(self, url: str) -> None:
		self.visited.append(url)
		self.current_url = url

	def quit(self) -> None:
		self.quit_called = True

	def get_screenshot_as_base64(self) -> str:
		return base64.b64encode(b'fake-png').decode()

	def get_log(self, log_type: str) -> list[dict[str, Any]]:
		assert log_type == 'browser'
		return list(self.logs)


class FakeDriver(WebDriverDriver):
	"""WebDriverDriver whose session is a FakeWebDriver."""

	def __init__(self, web_driver: FakeWebDriver, options: dict[str, Any] | None = None, **kwargs: Any):
		kwargs.setdefault('poll_interval', 0.01)
		super().__init__(options, **kwargs)
		self.fake_web_driver = web_driver

	def _create_web_driver(self) -> Any:
		return self.fake_web_driver


class FakeTransport:
	"""Records what a CommandChannel sends instead of writing to a socket."""

	def __init__(self, fail_sends: int = 0):
		self.sent: list[str] = []
		self.closed = False
		self.fail_sends = fail_sends

	async def send_str(self, data: str) -> None:
		if self.fail_sends:
			self.fail_sends -= 1
			raise ConnectionResetError('connection reset by peer')
		self.sent.append(data)

	async def close(self, *, code: int = 1000, message: bytes = b'') -> bool:
		self.closed = True
		return True

	@property
	def envelopes(self) -> list[dict[str, Any]]:
		return [json.loads(raw) for raw in self.sent]


@pytest.fixture
def web_driver() -> FakeWebDriver:
	return FakeWebDriver()


@pytest.fixture
async def driver(web_driver: FakeWebDriver):
	fake_driver = FakeDriver(web_driver, timeout=0.5)
	await fake_driver.start()
	yield fake_driver
	await fake_driver.stop()


def mock_transport_client(monkeypatch: pytest.MonkeyPatch, handler: Any) -> None:
	"""Route every httpx.AsyncClient through a MockTransport calling `handler`."""
	real_client = httpx.AsyncClient

	def client_factory(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
		kwargs['transport'] = httpx.MockTransport(handler)
		return real_client(*args, **kwargs)

	monkeypatch.setattr(httpx, 'AsyncClient', client_factory)
