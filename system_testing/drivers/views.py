from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from system_testing.exceptions import UnsupportedInteractionError


class Visibility(str, Enum):
	REQUIRE_VISIBLE = 'require_visible'
	REQUIRE_HIDDEN = 'require_hidden'
	UNFILTERED = 'unfiltered'


class FindOptions(BaseModel):
	"""Options governing one element lookup.

	`visible=True` keeps displayed elements only, `False` keeps hidden ones and
	`None` disables the filter. A `timeout` of None means the driver's current timeout.
	"""

	model_config = ConfigDict(extra='forbid', frozen=True)

	timeout: float | None = Field(default=None, ge=0)
	visible: bool | None = True
	use_scope: bool = True

	@property
	def visibility(self) -> Visibility:
		if self.visible is None:
			return Visibility.UNFILTERED
		return Visibility.REQUIRE_VISIBLE if self.visible else Visibility.REQUIRE_HIDDEN


class ElementQuery(BaseModel):
	"""A selector plus the options to resolve it with, re-resolvable on every retry."""

	model_config = ConfigDict(extra='forbid', frozen=True)

	selector: str
	by: str = 'css selector'
	options: FindOptions = Field(default_factory=FindOptions)

	def describe(self) -> str:
		if self.by == 'css selector':
			return f'CSS selector {self.selector}'
		return f'{self.by} {self.selector}'


# region - ========== Interactions ==========


class _BaseInteraction(BaseModel):
	model_config = ConfigDict(extra='forbid', frozen=True)

	method_name: ClassVar[str] = ''

	def describe(self) -> str:
		return self.method_name

	def apply(self, element: Any) -> Any:
		raise NotImplementedError


class Click(_BaseInteraction):
	kind: Literal['click'] = 'click'
	method_name: ClassVar[str] = 'click'

	def apply(self, element: Any) -> Any:
		return element.click()


class SendKeys(_BaseInteraction):
	kind: Literal['send_keys'] = 'send_keys'
	method_name: ClassVar[str] = 'send_keys'
	text: str

	def apply(self, element: Any) -> Any:
		return element.send_keys(self.text)


class Clear(_BaseInteraction):
	kind: Literal['clear'] = 'clear'
	method_name: ClassVar[str] = 'clear'

	def apply(self, element: Any) -> Any:
		return element.clear()


class ReadText(_BaseInteraction):
	kind: Literal['read_text'] = 'read_text'
	method_name: ClassVar[str] = 'text'

	def apply(self, element: Any) -> Any:
		return element.text


class ReadAttribute(_BaseInteraction):
	kind: Literal['read_attribute'] = 'read_attribute'
	method_name: ClassVar[str] = 'get_attribute'
	name: str

	def apply(self, element: Any) -> Any:
		return element.get_attribute(self.name)


class ReadProperty(_BaseInteraction):
	kind: Literal['read_property'] = 'read_property'
	method_name: ClassVar[str] = 'get_property'
	name: str

	def apply(self, element: Any) -> Any:
		return element.get_property(self.name)


class IsDisplayed(_BaseInteraction):
	kind: Literal['is_displayed'] = 'is_displayed'
	method_name: ClassVar[str] = 'is_displayed'

	def apply(self, element: Any) -> Any:
		return element.is_displayed()


class Submit(_BaseInteraction):
	kind: Literal['submit'] = 'submit'
	method_name: ClassVar[str] = 'submit'

	def apply(self, element: Any) -> Any:
		return element.submit()


class CallMethod(_BaseInteraction):
	"""Escape hatch for element methods without a dedicated variant.

	The method is looked up on the resolved handle and must exist and be callable.
	"""

	kind: Literal['call_method'] = 'call_method'
	method: str
	args: tuple[Any, ...] = ()

	def describe(self) -> str:
		return self.method

	def apply(self, element: Any) -> Any:
		method = getattr(element, self.method, None)
		if method is None:
			raise UnsupportedInteractionError(f"{type(element).__name__} hasn't an attribute named: {self.method}")
		if not callable(method):
			raise UnsupportedInteractionError(f'{type(element).__name__}#{self.method} is not a function')
		return method(*self.args)


Interaction = Annotated[
	Click | SendKeys | Clear | ReadText | ReadAttribute | ReadProperty | IsDisplayed | Submit | CallMethod,
	Field(discriminator='kind'),
]

_interaction_adapter: TypeAdapter[Interaction] = TypeAdapter(Interaction)

# Method names used by callers (both the selenium and the camelCase spelling) mapped to variants
_NAMED_INTERACTIONS: dict[str, tuple[type[_BaseInteraction], str | None]] = {
	'click': (Click, None),
	'send_keys': (SendKeys, 'text'),
	'sendKeys': (SendKeys, 'text'),
	'clear': (Clear, None),
	'text': (ReadText, None),
	'get_text': (ReadText, None),
	'getText': (ReadText, None),
	'get_attribute': (ReadAttribute, 'name'),
	'getAttribute': (ReadAttribute, 'name'),
	'get_property': (ReadProperty, 'name'),
	'getProperty': (ReadProperty, 'name'),
	'is_displayed': (IsDisplayed, None),
	'isDisplayed': (IsDisplayed, None),
	'submit': (Submit, None),
}


def to_interaction(value: '_BaseInteraction | dict[str, Any] | str', *args: Any) -> _BaseInteraction:
	"""Normalise an interaction given as a variant, a tagged dict or a method name.

	Unknown names become a CallMethod, validated against the element when applied.
	"""
	if isinstance(value, _BaseInteraction):
		if args:
			raise TypeError(f'Unexpected arguments for {value.kind} interaction: {args!r}')  # type: ignore[attr-defined]
		return value

	if isinstance(value, dict):
		return _interaction_adapter.validate_python(value)

	named = _NAMED_INTERACTIONS.get(value)
	if named is None:
		return CallMethod(method=value, args=tuple(args))

	interaction_class, argument_field = named
	if argument_field is None:
		if args:
			raise TypeError(f'{value} takes no arguments, got {args!r}')
		return interaction_class()
	if len(args) != 1:
		raise TypeError(f'{value} takes exactly one argument, got {args!r}')
	return interaction_class(**{argument_field: args[0]})


# endregion


# region - ========== Backend options ==========


class DriverOptions(BaseModel):
	"""Backend options shared by every driver. Unknown keys are rejected."""

	model_config = ConfigDict(extra='forbid')

	capabilities: dict[str, Any] = Field(default_factory=dict)
	browser_name: str | None = None


class SeleniumDriverOptions(DriverOptions):
	browser_name: str | None = 'chrome'
	chrome_arguments: list[str] | None = None
	logging_prefs: dict[str, str] = Field(default_factory=lambda: {'browser': 'ALL'})
	command_executor: str | None = None


class AppiumServerArgs(BaseModel):
	model_config = ConfigDict(extra='forbid')

	address: str = '127.0.0.1'
	port: int = 4723
	base_path: str = ''
	extra_args: list[str] = Field(default_factory=list)

	def server_url(self) -> str:
		base_path = self.base_path
		if base_path and not base_path.startswith('/'):
			base_path = f'/{base_path}'
		return f'http://{self.address}:{self.port}{base_path}'


class AppiumDriverOptions(DriverOptions):
	server_url: str | None = None
	server_args: AppiumServerArgs = Field(default_factory=AppiumServerArgs)
	use_drivers: list[str] = Field(default_factory=list)
	appium_executable: str = 'appium'
	launch_timeout: float = 30.0
	test_id_strategy: Literal['accessibility_id', 'css'] = 'accessibility_id'
	test_id_attribute: str = 'data-testid'


# endregion
