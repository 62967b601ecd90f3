from typing import Any

from bubus import BaseEvent
from pydantic import Field


class SystemTestStartedEvent(BaseEvent[None]):
	"""The session reached the ready state."""

	session_id: str
	base_url: str | None = None
	target: str


class SystemTestStoppedEvent(BaseEvent[None]):
	session_id: str
	failed_steps: list[str] = Field(default_factory=list)


class BrowserConsoleEvent(BaseEvent[None]):
	"""console.log / console.error output relayed by the page helper."""

	session_id: str
	level: str
	values: list[Any] = Field(default_factory=list)
	ignored: bool = False


class BrowserErrorEvent(BaseEvent[None]):
	"""An uncaught error or unhandled rejection reported by the page helper."""

	session_id: str
	error_type: str
	message: str
	backtrace: str | None = None
