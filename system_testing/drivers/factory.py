from typing import Any

from system_testing.drivers.webdriver import WebDriverDriver

DRIVER_KINDS = ('selenium', 'appium')


def create_driver(kind: str, options: dict[str, Any] | None = None, **kwargs: Any) -> WebDriverDriver:
	"""Build the driver for a backend kind. Extra keyword arguments go to the driver constructor."""
	if kind == 'selenium':
		from system_testing.drivers.selenium import SeleniumDriver

		return SeleniumDriver(options, **kwargs)

	if kind == 'appium':
		from system_testing.drivers.appium import AppiumDriver

		return AppiumDriver(options, **kwargs)

	raise ValueError(f'Unknown driver kind {kind!r}, expected one of {", ".join(DRIVER_KINDS)}')
