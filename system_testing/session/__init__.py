from system_testing.session.context import SystemTestContext, current_context, current_system_test
from system_testing.session.diagnostics import (
	ScreenshotArtifacts,
	format_browser_logs_for_console,
	print_browser_logs_for_failure,
	take_screenshot,
)
from system_testing.session.events import (
	BrowserConsoleEvent,
	BrowserErrorEvent,
	SystemTestStartedEvent,
	SystemTestStoppedEvent,
)
from system_testing.session.service import ROOT_PATH, SystemTest
from system_testing.session.views import DriverConfig, SessionState, SystemTestConfig, TargetMode

__all__ = [
	# Orchestrator
	'SystemTest',
	'ROOT_PATH',
	'SystemTestContext',
	'current_context',
	'current_system_test',
	# Configuration
	'SystemTestConfig',
	'DriverConfig',
	'TargetMode',
	'SessionState',
	# Events
	'SystemTestStartedEvent',
	'SystemTestStoppedEvent',
	'BrowserConsoleEvent',
	'BrowserErrorEvent',
	# Diagnostics
	'ScreenshotArtifacts',
	'format_browser_logs_for_console',
	'print_browser_logs_for_failure',
	'take_screenshot',
]
