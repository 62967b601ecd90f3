"""Failure artifacts: screenshot, page HTML and the browser console."""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from system_testing.drivers.webdriver import WebDriverDriver

logger = logging.getLogger(__name__)

SCREENSHOT_TIMESTAMP_FORMAT = '%Y-%m-%d-%H-%M-%S'
DEFAULT_BROWSER_LOG_LINES = 50


@dataclass
class ScreenshotArtifacts:
	screenshot_path: Path
	html_path: Path
	logs_path: Path
	current_url: str
	browser_logs: list[str]


def format_browser_logs_for_console(logs: list[str], max_lines: int = DEFAULT_BROWSER_LOG_LINES) -> list[str]:
	if not logs:
		return ['(no browser logs)']
	if len(logs) <= max_lines:
		return list(logs)

	omitted = len(logs) - max_lines
	return [f'(showing last {max_lines} of {len(logs)} browser logs, {omitted} omitted)', *logs[-max_lines:]]


def print_browser_logs_for_failure(
	logs: list[str], max_lines: int = DEFAULT_BROWSER_LOG_LINES, log: logging.Logger | None = None
) -> None:
	log = log or logger
	log.info('Browser logs:')
	for line in format_browser_logs_for_console(logs, max_lines):
		log.info(line)


def _write_artifacts(
	screenshot_path: Path, screenshot: str, html_path: Path, html: str, logs_path: Path, logs: list[str]
) -> None:
	screenshot_path.parent.mkdir(parents=True, exist_ok=True)
	html_path.write_text(html, encoding='utf-8')
	logs_path.write_text('\n'.join(logs), encoding='utf-8')
	screenshot_path.write_bytes(base64.b64decode(screenshot))


async def take_screenshot(
	driver: WebDriverDriver,
	directory: Path,
	log: logging.Logger | None = None,
	browser_log_lines: int = DEFAULT_BROWSER_LOG_LINES,
	now: datetime | None = None,
) -> ScreenshotArtifacts:
	"""Save `<timestamp>.png`, `.html` and `.logs.txt` under `directory` and log where they went."""
	log = log or logger
	stamp = (now or datetime.now()).strftime(SCREENSHOT_TIMESTAMP_FORMAT)
	screenshot_path = directory / f'{stamp}.png'
	html_path = directory / f'{stamp}.html'
	logs_path = directory / f'{stamp}.logs.txt'

	screenshot = await driver.take_screenshot()
	browser_logs = await driver.get_browser_logs()
	html = await driver.get_html()
	current_url = await driver.get_current_url()

	await asyncio.to_thread(_write_artifacts, screenshot_path, screenshot, html_path, html, logs_path, browser_logs)

	log.info(f'Current URL: {current_url}')
	log.info(f'Logs: {logs_path}')
	log.info(f'Screenshot: {screenshot_path}')
	log.info(f'HTML: {html_path}')
	print_browser_logs_for_failure(browser_logs, browser_log_lines, log)

	return ScreenshotArtifacts(
		screenshot_path=screenshot_path,
		html_path=html_path,
		logs_path=logs_path,
		current_url=current_url,
		browser_logs=browser_logs,
	)
