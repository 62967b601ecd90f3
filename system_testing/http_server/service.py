import asyncio
import logging
from pathlib import Path

import httpx
from aiohttp import web

from system_testing.drivers.retry import RetryExhaustedError, retry_async
from system_testing.exceptions import HostUnreachableError, StaticServerError

logger = logging.getLogger(__name__)

DEFAULT_HOST = 'localhost'
DEFAULT_PORT = 1984
INDEX_DOCUMENT = 'index.html'


async def wait_until_reachable(url: str, *, attempts: int = 10, delay: float = 0.25, request_timeout: float = 2.0) -> int:
	"""GET `url` until it answers with a non-error status.

	Connection failures and error statuses are retried up to `attempts` times.

	Returns:
		The number of attempts it took.

	Raises:
		HostUnreachableError: every attempt failed.
	"""
	attempt_count = 0

	async with httpx.AsyncClient(timeout=request_timeout) as client:

		async def probe() -> int:
			nonlocal attempt_count
			attempt_count += 1
			response = await client.get(url)
			response.raise_for_status()
			return attempt_count

		try:
			return await retry_async(
				probe,
				retry_on=lambda error: isinstance(error, httpx.HTTPError),
				max_attempts=attempts,
				base_delay=delay,
				max_delay=delay * 4,
				description=f'health check of {url}',
			)
		except RetryExhaustedError as e:
			raise HostUnreachableError(
				f'{url} was not reachable after {e.attempts} attempts - {type(e.last_error).__name__}: {e.last_error}',
				url=url,
				attempts=e.attempts,
			) from e.last_error


class StaticContentServer:
	"""Serves a built single-page app from `root`.

	Paths ending in `/` map to their index document and anything that does not resolve
	to a file under `root` falls back to `root/index.html`. Failures while serving a
	request are recorded and re-raised from `raise_if_error()`, which the driver's
	health check calls before every backend access.
	"""

	def __init__(self, root: Path | str | None = None, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
		self.root = Path(root) if root is not None else Path.cwd() / 'dist'
		self.host = host
		self.port = port
		self._runner: web.AppRunner | None = None
		self._errors: list[BaseException] = []

	@property
	def url(self) -> str:
		return f'http://{self.host}:{self.port}'

	@property
	def is_running(self) -> bool:
		return self._runner is not None

	def resolve_path(self, request_path: str) -> Path:
		root = self.root.resolve()
		relative = request_path.lstrip('/')
		if request_path.endswith('/'):
			relative += INDEX_DOCUMENT

		candidate = (root / relative).resolve()
		if candidate.is_relative_to(root) and candidate.is_file():
			return candidate

		index = root / INDEX_DOCUMENT
		if not index.is_file():
			raise StaticServerError(f'{INDEX_DOCUMENT} not found in {root}')
		return index

	async def _handle_request(self, request: web.Request) -> web.StreamResponse:
		try:
			file_path = self.resolve_path(request.path)
		except StaticServerError as e:
			self._errors.append(e)
			logger.error(f'Static content server could not serve {request.path}: {e}')
			raise web.HTTPInternalServerError(text=str(e)) from e
		return web.FileResponse(file_path)

	async def start(self) -> None:
		if self._runner is not None:
			return

		app = web.Application()
		app.router.add_get('/{path:.*}', self._handle_request)

		runner = web.AppRunner(app, access_log=None, shutdown_timeout=1.0)
		await runner.setup()
		site = web.TCPSite(runner, self.host, self.port, reuse_address=True)
		try:
			await site.start()
		except OSError as e:
			await runner.cleanup()
			raise StaticServerError(f'Could not listen on {self.url}: {e}') from e

		self._runner = runner
		if self.port == 0 and runner.addresses:
			self.port = runner.addresses[0][1]
		logger.debug(f'Serving {self.root} on {self.url}')

	async def wait_until_reachable(self, attempts: int = 10, delay: float = 0.25) -> int:
		return await wait_until_reachable(f'{self.url}/', attempts=attempts, delay=delay)

	def raise_if_error(self) -> None:
		if self._errors:
			error = self._errors.pop(0)
			raise StaticServerError(f'Static content server failed: {error}') from error

	async def stop(self, timeout: float = 5.0) -> None:
		runner, self._runner = self._runner, None
		if runner is None:
			return
		await asyncio.wait_for(runner.cleanup(), timeout)
		logger.debug(f'Stopped serving {self.root}')
