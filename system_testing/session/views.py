from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from system_testing.config import CONFIG


class TargetMode(str, Enum):
	DEV_SERVER = 'dev-server'
	DIST = 'dist'
	NATIVE = 'native'


class SessionState(str, Enum):
	UNINITIALIZED = 'uninitialized'
	STARTING = 'starting'
	READY = 'ready'
	STOPPING = 'stopping'
	STOPPED = 'stopped'


class DriverConfig(BaseModel):
	"""Which automation backend to launch and the options handed to it."""

	model_config = ConfigDict(extra='forbid', frozen=True)

	kind: Literal['selenium', 'appium'] = 'selenium'
	options: dict[str, Any] = Field(default_factory=dict)


ErrorFilter = Callable[[Any], bool]


class SystemTestConfig(BaseModel):
	"""Immutable configuration of one SystemTest, reused unchanged by reinitialize()."""

	model_config = ConfigDict(extra='forbid', frozen=True)

	target: TargetMode = TargetMode.DEV_SERVER

	# Dev server origin
	host: str = 'localhost'
	port: int = 8081

	# Static build origin
	http_host: str = 'localhost'
	http_port: int = 1984
	serve_static: bool = True
	static_root: Path | None = None

	# Listening sockets the page connects to
	channel_host: str = '0.0.0.0'
	channel_port: int = 1985
	eval_host: str = '0.0.0.0'
	eval_port: int = 8090

	driver: DriverConfig = Field(default_factory=DriverConfig)
	debug: bool = False
	error_filter: ErrorFilter | None = None
	url_args: dict[str, Any] | None = None
	screenshots_dir: Path = Field(default_factory=lambda: Path.cwd() / 'tmp' / 'screenshots')
	browser_log_lines: int = Field(default=50, ge=1)

	# Timeouts in seconds
	default_timeout: float = Field(default=5.0, ge=0)
	startup_timeout: float = Field(default=10.0, ge=0)
	root_marker_timeout: float = Field(default=30.0, ge=0)
	client_connect_timeout: float = Field(default=30.0, gt=0)
	command_timeout: float | None = Field(default=30.0, gt=0)
	evaluation_client_timeout: float = Field(default=10.0, gt=0)
	teardown_timeout: float = Field(default=5.0, gt=0)
	health_check_attempts: int = Field(default=10, ge=1)
	health_check_delay: float = Field(default=0.25, ge=0)

	@classmethod
	def from_env(cls, **overrides: Any) -> 'SystemTestConfig':
		"""Seed fields from the SYSTEM_TEST_* environment, then apply `overrides`."""
		values: dict[str, Any] = {
			'debug': CONFIG.SYSTEM_TEST_DEBUG,
			'screenshots_dir': CONFIG.SYSTEM_TEST_SCREENSHOTS_DIR,
			'browser_log_lines': CONFIG.SYSTEM_TEST_BROWSER_LOG_LINES,
			'driver': DriverConfig(kind=CONFIG.SYSTEM_TEST_DRIVER),  # type: ignore[arg-type]
		}
		target = CONFIG.SYSTEM_TEST_HOST
		if target:
			values['target'] = target
		values.update(overrides)
		return cls(**values)

	@property
	def base_url(self) -> str | None:
		if self.target is TargetMode.DEV_SERVER:
			return f'http://{self.host}:{self.port}'
		if self.target is TargetMode.DIST:
			return f'http://{self.http_host}:{self.http_port}'
		return None
