"""Environment-backed configuration for system_testing.

Values are read lazily on every access so tests can monkeypatch the environment
after import. `.env` files are loaded once at import time.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

TARGET_ALIASES = {
	'expo-dev-server': 'dev-server',
	'dev-server': 'dev-server',
	'dist': 'dist',
	'native': 'native',
}


def _is_truthy(value: str | None) -> bool:
	return (value or '').strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
	"""Lazy view over the SYSTEM_TEST_* environment variables."""

	@property
	def SYSTEM_TEST_HOST(self) -> str | None:
		value = os.getenv('SYSTEM_TEST_HOST')
		if not value:
			return None
		if value not in TARGET_ALIASES:
			raise ValueError(f"Please set SYSTEM_TEST_HOST to one of {', '.join(TARGET_ALIASES)} (got {value!r})")
		return TARGET_ALIASES[value]

	@property
	def SYSTEM_TEST_DEBUG(self) -> bool:
		return _is_truthy(os.getenv('SYSTEM_TEST_DEBUG'))

	@property
	def SYSTEM_TEST_LOGGING_LEVEL(self) -> str:
		return os.getenv('SYSTEM_TEST_LOGGING_LEVEL', 'info').lower()

	@property
	def SYSTEM_TEST_SCREENSHOTS_DIR(self) -> Path:
		return Path(os.getenv('SYSTEM_TEST_SCREENSHOTS_DIR', str(Path.cwd() / 'tmp' / 'screenshots')))

	@property
	def SYSTEM_TEST_DRIVER(self) -> str:
		return os.getenv('SYSTEM_TEST_DRIVER', 'selenium').lower()

	@property
	def SYSTEM_TEST_BROWSER_LOG_LINES(self) -> int:
		return int(os.getenv('SYSTEM_TEST_BROWSER_LOG_LINES', '50'))


CONFIG = Config()
