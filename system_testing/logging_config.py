import logging
import sys

from system_testing.config import CONFIG

THIRD_PARTY_LOGGERS = ('selenium', 'urllib3', 'aiohttp.access', 'aiohttp.server', 'httpx', 'httpcore', 'bubus')


class SystemTestFormatter(logging.Formatter):
	"""Shortens `system_testing.*` logger names so lines stay readable in test output."""

	def format(self, record: logging.LogRecord) -> str:
		if isinstance(record.name, str) and record.name.startswith('system_testing.'):
			parts = record.name.split('.')
			if len(parts) >= 2:
				record.name = parts[-1]
		return super().format(record)


def setup_logging(level: str | None = None, force_setup: bool = False) -> logging.Logger:
	"""Install a stream handler on the `system_testing` logger.

	Args:
		level: Log level name, defaults to SYSTEM_TEST_LOGGING_LEVEL (info).
		force_setup: Replace an existing handler instead of returning early.

	Returns:
		The configured `system_testing` logger.
	"""
	logger = logging.getLogger('system_testing')

	if logger.handlers and not force_setup:
		return logger

	for handler in list(logger.handlers):
		logger.removeHandler(handler)

	log_level_name = (level or CONFIG.SYSTEM_TEST_LOGGING_LEVEL).upper()
	log_level = getattr(logging, log_level_name, logging.INFO)

	handler = logging.StreamHandler(sys.stdout)
	handler.setFormatter(SystemTestFormatter('%(levelname)-8s [%(name)s] %(message)s'))
	logger.addHandler(handler)
	logger.setLevel(log_level)
	logger.propagate = False

	third_party_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
	for name in THIRD_PARTY_LOGGERS:
		third_party = logging.getLogger(name)
		third_party.setLevel(third_party_level)
		third_party.propagate = False

	return logger
