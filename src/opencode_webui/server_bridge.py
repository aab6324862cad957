"""Companion ``opencode serve`` process and the provider endpoints behind it.

Provider listing and OAuth live in opencode's HTTP server rather than its CLI.
``OpencodeServer`` makes sure one is reachable: it either talks to an
externally configured URL (never spawned or restarted by us) or starts and
owns a background ``opencode serve``.
"""

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
START_TIMEOUT = 30.0
START_POLL_INTERVAL = 0.25
REQUEST_TIMEOUT = 10.0


class ServerUnavailableError(RuntimeError):
    """The opencode server is not reachable and cannot be started."""


class ProviderRequestError(RuntimeError):
    """The opencode server answered a proxied call with an error status."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Request failed ({status_code}): {body}")
        self.status_code = status_code
        self.body = body


class OpencodeServer:
    """Lazily started, health-checked opencode server.

    At most one start runs at a time: concurrent ``ensure_running`` callers
    await the same task, which is cleared once it settles.
    """

    def __init__(
        self,
        runtime,
        opencode_path: str,
        host: str = "127.0.0.1",
        port: str = "4096",
        url: str | None = None,
        start_timeout: float = START_TIMEOUT,
        poll_interval: float = START_POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.runtime = runtime
        self.opencode_path = opencode_path
        self.host = host
        self.port = str(port)
        self.url = (url or f"http://{host}:{port}").rstrip("/")
        self.external = url is not None
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self._transport = transport
        self._process = None
        self._drain_task: asyncio.Task | None = None
        self._starting: asyncio.Task | None = None

    @property
    def process(self):
        return self._process

    def _client(self, timeout: float = REQUEST_TIMEOUT) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.url, timeout=timeout, transport=self._transport)

    async def is_healthy(self) -> bool:
        try:
            async with self._client(timeout=2.0) as client:
                response = await client.get(HEALTH_PATH)
            return response.is_success
        except httpx.HTTPError:
            return False

    async def ensure_running(self) -> str:
        """Return the server URL, starting an owned server when needed."""
        if await self.is_healthy():
            return self.url

        if self.external:
            raise ServerUnavailableError("opencode server is not reachable")

        if self._starting is None:
            self._starting = asyncio.create_task(self._start())
            self._starting.add_done_callback(self._clear_starting)
        return await asyncio.shield(self._starting)

    def _clear_starting(self, task: asyncio.Task) -> None:
        if self._starting is task:
            self._starting = None

    async def _start(self) -> str:
        args = ["serve", "--hostname", self.host, "--port", self.port]
        logger.info("Starting opencode server on %s", self.url)
        stream = await self.runtime.run_command_stream(self.opencode_path, args)
        self._process = stream
        self._drain_task = asyncio.create_task(self._drain(stream))

        if await self._wait_for_health():
            logger.info("opencode server ready at %s", self.url)
            return self.url

        logger.error("opencode server did not become healthy within %.0fs", self.start_timeout)
        stream.kill()
        if self._process is stream:
            self._process = None
        raise ServerUnavailableError("opencode server failed to start")

    async def _wait_for_health(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout
        while loop.time() < deadline:
            if await self.is_healthy():
                return True
            await asyncio.sleep(self.poll_interval)
        return False

    async def _drain(self, stream) -> None:
        async for chunk in stream:
            logger.debug("opencode serve %s: %s", chunk.source, chunk.text.rstrip())

    async def restart(self) -> str | None:
        """Restart an owned server so it re-reads credentials."""
        if self.external:
            return None
        self._kill_owned()
        self._starting = None
        return await self.ensure_running()

    async def close(self) -> None:
        self._kill_owned()
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None

    def _kill_owned(self) -> None:
        if self._process is not None:
            logger.info("Stopping opencode server (pid %s)", getattr(self._process, "pid", None))
            self._process.kill()
            self._process = None

    # ── Proxied provider calls ───────────────────────────────────

    async def _request(self, method: str, path: str, json_body: dict | None = None):
        base = await self.ensure_running()
        async with httpx.AsyncClient(base_url=base, timeout=REQUEST_TIMEOUT, transport=self._transport) as client:
            response = await client.request(method, path, json=json_body)
        if not response.is_success:
            raise ProviderRequestError(response.status_code, response.text)
        return response.json()

    async def list_providers(self) -> dict:
        providers, auth_methods = await asyncio.gather(
            self._request("GET", "/provider"),
            self._request("GET", "/provider/auth"),
        )
        return {
            "providers": providers.get("all", []),
            "defaults": providers.get("default", {}),
            "connected": providers.get("connected", []),
            "authMethods": auth_methods,
        }

    async def authorize_oauth(self, provider_id: str, method: int) -> dict:
        return await self._request("POST", f"/provider/{provider_id}/oauth/authorize", {"method": method})

    async def complete_oauth(self, provider_id: str, method: int, code: str | None = None) -> None:
        await self._request("POST", f"/provider/{provider_id}/oauth/callback", {"method": method, "code": code})
