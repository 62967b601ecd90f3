"""End-to-end system tests for web and native apps.

Example:
    from system_testing import SystemTest

    system_test = SystemTest(target='dev-server')

    async def test_sign_in(system_test):
        await system_test.run(sign_in)
"""

from typing import TYPE_CHECKING

from system_testing.exceptions import SystemTestError
from system_testing.logging_config import setup_logging

if TYPE_CHECKING:
	from system_testing.page_helper.service import PageHelper
	from system_testing.session.context import SystemTestContext, current_system_test
	from system_testing.session.service import SystemTest
	from system_testing.session.views import SystemTestConfig

_LAZY_IMPORTS = {
	'SystemTest': ('system_testing.session.service', 'SystemTest'),
	'SystemTestConfig': ('system_testing.session.views', 'SystemTestConfig'),
	'SystemTestContext': ('system_testing.session.context', 'SystemTestContext'),
	'current_system_test': ('system_testing.session.context', 'current_system_test'),
	'PageHelper': ('system_testing.page_helper.service', 'PageHelper'),
}

__all__ = [
	'SystemTest',
	'SystemTestConfig',
	'SystemTestContext',
	'current_system_test',
	'PageHelper',
	'SystemTestError',
	'setup_logging',
]


def __getattr__(name: str):
	"""Import the selenium-backed parts only when they are first used."""
	if name in _LAZY_IMPORTS:
		from importlib import import_module

		module_name, attr_name = _LAZY_IMPORTS[name]
		value = getattr(import_module(module_name), attr_name)
		globals()[name] = value
		return value
	raise AttributeError(f'module {__name__!r} has no attribute {name!r}')
