from system_testing.drivers.factory import DRIVER_KINDS, create_driver
from system_testing.drivers.retry import RetryExhaustedError, retry_async
from system_testing.drivers.views import (
	CallMethod,
	Clear,
	Click,
	ElementQuery,
	FindOptions,
	IsDisplayed,
	ReadAttribute,
	ReadProperty,
	ReadText,
	SendKeys,
	Submit,
	Visibility,
	to_interaction,
)
from system_testing.drivers.webdriver import WebDriverDriver

__all__ = [
	'DRIVER_KINDS',
	'create_driver',
	'WebDriverDriver',
	# Lookup
	'ElementQuery',
	'FindOptions',
	'Visibility',
	# Interactions
	'CallMethod',
	'Clear',
	'Click',
	'IsDisplayed',
	'ReadAttribute',
	'ReadProperty',
	'ReadText',
	'SendKeys',
	'Submit',
	'to_interaction',
	# Retry
	'RetryExhaustedError',
	'retry_async',
]
