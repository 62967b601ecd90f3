import asyncio
import logging

import httpx
from appium import webdriver as appium_webdriver
from appium.options.common import AppiumOptions
from appium.webdriver.common.appiumby import AppiumBy
from selenium.webdriver.common.by import By
from selenium.webdriver.remote.webdriver import WebDriver

from system_testing.drivers.retry import RetryExhaustedError, retry_async
from system_testing.drivers.views import AppiumDriverOptions
from system_testing.drivers.webdriver import WebDriverDriver
from system_testing.exceptions import HostUnreachableError, LifecycleError

logger = logging.getLogger(__name__)


class AppiumDriver(WebDriverDriver):
	"""Remote device or Appium server session.

	Connects to `server_url` when given, otherwise launches the `appium` executable and
	waits for its `/status` endpoint before creating the session.
	"""

	options_model = AppiumDriverOptions
	settings: AppiumDriverOptions

	def __init__(self, *args, **kwargs):
		super().__init__(*args, **kwargs)
		self.server_url: str | None = self.settings.server_url
		self._server_process: asyncio.subprocess.Process | None = None

	def test_id_locator(self, test_id: str) -> tuple[str, str]:
		if self.settings.test_id_strategy == 'css':
			return By.CSS_SELECTOR, f"[{self.settings.test_id_attribute}='{test_id}']"
		return AppiumBy.ACCESSIBILITY_ID, test_id

	def build_appium_options(self) -> AppiumOptions:
		capabilities = dict(self.settings.capabilities)
		if self.settings.browser_name and 'browserName' not in capabilities:
			capabilities['browserName'] = self.settings.browser_name

		appium_options = AppiumOptions()
		appium_options.load_capabilities(capabilities)
		return appium_options

	def _create_web_driver(self) -> WebDriver:
		assert self.server_url is not None, 'Appium server URL must be resolved before creating the session'
		logger.debug(f'Creating Appium session at {self.server_url}')
		return appium_webdriver.Remote(self.server_url, options=self.build_appium_options())

	async def start(self) -> None:
		if self.is_started:
			return
		if self.server_url is None:
			await self.launch_server()
		await super().start()

	async def stop(self, timeout: float | None = None) -> None:
		try:
			await super().stop(timeout)
		finally:
			await self.stop_server(self._timeout if timeout is None else timeout)

	# region - ========== Appium server ==========

	def server_command(self) -> list[str]:
		server_args = self.settings.server_args
		command = [self.settings.appium_executable, '--address', server_args.address, '--port', str(server_args.port)]
		if server_args.base_path:
			command += ['--base-path', server_args.base_path]
		if self.settings.use_drivers:
			command += ['--use-drivers', ','.join(self.settings.use_drivers)]
		return command + server_args.extra_args

	async def launch_server(self) -> None:
		command = self.server_command()
		logger.info(f'Launching Appium server: {" ".join(command)}')
		try:
			self._server_process = await asyncio.create_subprocess_exec(
				*command, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL
			)
		except FileNotFoundError as e:
			raise LifecycleError(f'Appium executable not found: {self.settings.appium_executable}') from e

		self.server_url = self.settings.server_args.server_url()
		await self.wait_for_server()

	async def wait_for_server(self) -> None:
		assert self.server_url is not None
		status_url = f'{self.server_url}/status'

		async with httpx.AsyncClient(timeout=2.0) as client:

			async def probe() -> None:
				if self._server_process is not None and self._server_process.returncode is not None:
					raise LifecycleError(f'Appium server exited with code {self._server_process.returncode}')
				response = await client.get(status_url)
				response.raise_for_status()

			try:
				await retry_async(
					probe,
					retry_on=lambda error: isinstance(error, httpx.HTTPError),
					timeout=self.settings.launch_timeout,
					base_delay=0.25,
					max_delay=1.0,
					description='Appium status probe',
				)
			except RetryExhaustedError as e:
				raise HostUnreachableError(
					f'Appium server at {self.server_url} did not become ready within {self.settings.launch_timeout}s: {e.last_error}',
					url=status_url,
					attempts=e.attempts,
				) from e.last_error

		logger.debug(f'Appium server ready at {self.server_url}')

	async def stop_server(self, timeout: float) -> None:
		process, self._server_process = self._server_process, None
		if process is None or process.returncode is not None:
			return

		process.terminate()
		try:
			await asyncio.wait_for(process.wait(), timeout)
		except TimeoutError:
			logger.warning(f'Appium server did not exit within {timeout}s, killing it')
			process.kill()
			await process.wait()

	# endregion
