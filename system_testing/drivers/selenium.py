import logging

from selenium import webdriver
from selenium.webdriver.chrome.options import Options as ChromeOptions
from selenium.webdriver.remote.webdriver import WebDriver

from system_testing.drivers.views import SeleniumDriverOptions
from system_testing.drivers.webdriver import WebDriverDriver

logger = logging.getLogger(__name__)

DEFAULT_CHROME_ARGUMENTS = (
	'--disable-dev-shm-usage',
	'--disable-gpu',
	'--headless=new',
	'--no-sandbox',
	'--window-size=1920,1080',
)


class SeleniumDriver(WebDriverDriver):
	"""Local Chrome through Selenium, or a remote grid when `command_executor` is set."""

	options_model = SeleniumDriverOptions
	settings: SeleniumDriverOptions

	def build_chrome_options(self) -> ChromeOptions:
		chrome_options = ChromeOptions()
		chrome_arguments = self.settings.chrome_arguments
		if chrome_arguments is None:
			chrome_arguments = list(DEFAULT_CHROME_ARGUMENTS)
		for argument in chrome_arguments:
			chrome_options.add_argument(argument)

		chrome_options.set_capability('goog:loggingPrefs', self.settings.logging_prefs)
		for key, value in self.settings.capabilities.items():
			chrome_options.set_capability(key, value)
		return chrome_options

	def _create_web_driver(self) -> WebDriver:
		if self.settings.browser_name not in (None, 'chrome'):
			raise ValueError(f'SeleniumDriver only supports chrome, got browser_name={self.settings.browser_name!r}')

		chrome_options = self.build_chrome_options()
		if self.settings.command_executor:
			logger.debug(f'Connecting to remote Selenium at {self.settings.command_executor}')
			return webdriver.Remote(command_executor=self.settings.command_executor, options=chrome_options)

		logger.debug('Launching local Chrome')
		return webdriver.Chrome(options=chrome_options)
