class SystemTestError(Exception):
	"""Base class for every error raised by system_testing."""

	pass


# region - ========== Command channel ==========


class ChannelError(SystemTestError):
	pass


class ProtocolError(ChannelError):
	"""Malformed envelope, unknown response id or unknown envelope type. Never retried."""

	pass


class ChannelClosedError(ChannelError):
	"""Raised into every pending command when the channel is torn down or its connection drops."""

	pass


class CommandError(ChannelError):
	"""The peer answered a command with an error payload."""

	def __init__(self, message: str, command: dict | None = None):
		super().__init__(message)
		self.remote_message = message
		self.command = command


class CommandTimeoutError(ChannelError):
	def __init__(self, message: str, command: dict | None = None, timeout: float | None = None):
		super().__init__(message)
		self.command = command
		self.timeout = timeout


# endregion
# region - ========== Element lookup and interaction ==========


class ElementLookupError(SystemTestError):
	"""Backend failure while looking up elements, wrapped with the selector."""

	def __init__(self, message: str, selector: str):
		super().__init__(message)
		self.selector = selector


class ElementNotFoundError(ElementLookupError):
	def __init__(self, message: str, selector: str, elapsed: float):
		super().__init__(message, selector)
		self.elapsed = elapsed


class AmbiguousMatchError(ElementLookupError):
	def __init__(self, message: str, selector: str, count: int):
		super().__init__(message, selector)
		self.count = count


class UnexpectedElementError(ElementLookupError):
	pass


class WaitTimeoutError(ElementLookupError):
	def __init__(self, message: str, selector: str, timeout: float):
		super().__init__(message, selector)
		self.timeout = timeout


class InteractionError(SystemTestError):
	"""Non-transient failure while interacting with an element. Not retried."""

	pass


class UnsupportedInteractionError(InteractionError):
	pass


class TransientInteractionError(InteractionError):
	"""An interaction kept failing with a known transient error until the attempt ceiling."""

	def __init__(self, message: str, *, target_description: str, method: str, failure_kind: str, attempts: int):
		super().__init__(message)
		self.target_description = target_description
		self.method = method
		self.failure_kind = failure_kind
		self.attempts = attempts


# endregion
# region - ========== Lifecycle ==========


class LifecycleError(SystemTestError):
	pass


class LifecycleTimeoutError(LifecycleError):
	def __init__(self, message: str, step: str, timeout: float):
		super().__init__(message)
		self.step = step
		self.timeout = timeout


class HostUnreachableError(LifecycleError):
	def __init__(self, message: str, url: str, attempts: int):
		super().__init__(message)
		self.url = url
		self.attempts = attempts


class TeardownError(LifecycleError):
	"""Raised by stop() once every teardown step has been attempted and at least one failed."""

	def __init__(self, errors: list[tuple[str, BaseException]]):
		details = ', '.join(f'{step}: {type(error).__name__}: {error}' for step, error in errors)
		super().__init__(f'{len(errors)} teardown step(s) failed - {details}')
		self.errors = errors


class StaticServerError(LifecycleError):
	pass


class NoCommandHandlerError(SystemTestError):
	pass


# endregion
