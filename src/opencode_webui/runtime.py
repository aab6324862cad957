"""Spawning the opencode CLI and reading its output.

Two entry points:
- ``run_command``: buffered, for short bounded calls (version check,
  session list, export, model list).
- ``run_command_stream``: incremental, for ``opencode run`` and
  ``opencode serve``. stdout and stderr are read concurrently and handed to
  the consumer through a single queue in arrival order.

On Windows every command goes through ``cmd.exe /c`` so ``.cmd``/``.bat``
shims resolve; elsewhere the executable is started directly.
"""

import asyncio
import codecs
import logging
import os
from typing import AsyncIterator

from .config import is_windows
from .core import CommandResult, StreamChunk

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
QUEUE_SIZE = 256

_EOF = object()


def _build_argv(command: str, args: list[str]) -> list[str]:
    if is_windows():
        return ["cmd.exe", "/c", command, *args]
    return [command, *args]


def _build_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    return {**os.environ, **env}


async def find_executable(name: str) -> list[str]:
    """Return candidate paths for ``name``; an empty list means not found."""
    candidates: list[str] = []

    if is_windows():
        for exec_name in (name, f"{name}.exe", f"{name}.cmd", f"{name}.bat"):
            result = await run_command("where", [exec_name])
            if result.success and result.stdout.strip():
                # where prints one match per line
                candidates.extend(
                    line.strip() for line in result.stdout.strip().splitlines() if line.strip()
                )
    else:
        result = await run_command("which", [name])
        if result.success and result.stdout.strip():
            candidates.append(result.stdout.strip())

    return candidates


async def run_command(
    command: str,
    args: list[str],
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """Run a command to completion and return its buffered output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *_build_argv(command, args),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env),
            cwd=cwd,
        )
    except OSError as e:
        logger.debug("Failed to launch %s: %s", command, e)
        return CommandResult(success=False, code=1, stdout="", stderr=str(e))

    stdout, stderr = await process.communicate()
    code = process.returncode if process.returncode is not None else 1
    return CommandResult(
        success=code == 0,
        code=code,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class CommandStream:
    """Incremental output of a running process.

    Iterate it with ``async for`` to receive ``StreamChunk`` objects until both
    pipes close. ``wait()`` returns the exit code; it resolves exactly once,
    with 1 when the process could not be started.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process | None,
        cancel_event: asyncio.Event | None = None,
        queue_size: int = QUEUE_SIZE,
    ):
        self._process = process
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._exit: asyncio.Future = asyncio.get_running_loop().create_future()
        self._killed = False
        self._tasks: list[asyncio.Task] = []

        if process is None:
            return

        self._tasks.append(asyncio.create_task(self._supervise()))
        if cancel_event is not None:
            if cancel_event.is_set():
                self.kill()
            else:
                self._tasks.append(asyncio.create_task(self._watch_cancel(cancel_event)))

    @classmethod
    def failed(cls, message: str) -> "CommandStream":
        """A stream for a process that never started."""
        stream = cls(None)
        if message:
            stream._queue.put_nowait(StreamChunk(source="stderr", text=message))
        stream._queue.put_nowait(_EOF)
        stream._resolve(1)
        return stream

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def exit(self) -> asyncio.Future:
        return self._exit

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def kill(self) -> None:
        """Kill the process. Safe to call repeatedly and after it exited."""
        if self._killed or not self.running:
            return
        self._killed = True
        # Unblock pumps waiting on a full queue; later output is dropped.
        self._discard_pending()
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    def _discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        while True:
            item = await self._queue.get()
            if item is _EOF:
                # Let later iterators see the end as well.
                self._queue.put_nowait(_EOF)
                return
            yield item

    async def _pump(self, reader: asyncio.StreamReader | None, source: str) -> None:
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._put(StreamChunk(source=source, text=tail))
                return
            text = decoder.decode(data)
            if text:
                await self._put(StreamChunk(source=source, text=text))

    async def _put(self, chunk: StreamChunk) -> None:
        if self._killed:
            return
        await self._queue.put(chunk)

    async def _supervise(self) -> None:
        code = 1
        try:
            await asyncio.gather(
                self._pump(self._process.stdout, "stdout"),
                self._pump(self._process.stderr, "stderr"),
            )
            returncode = await self._process.wait()
            code = returncode if returncode is not None else 1
        finally:
            self._resolve(code)
            for task in self._tasks:
                if task is not asyncio.current_task():
                    task.cancel()
            if self._killed:
                self._discard_pending()
            await self._queue.put(_EOF)

    async def _watch_cancel(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        logger.debug("Cancelling process %s", self.pid)
        self.kill()

    def _resolve(self, code: int) -> None:
        if not self._exit.done():
            self._exit.set_result(code)


async def run_command_stream(
    command: str,
    args: list[str],
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> CommandStream:
    """Start a command and return a stream of its output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *_build_argv(command, args),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env),
            cwd=cwd,
        )
    except OSError as e:
        logger.error("Failed to launch %s: %s", command, e)
        return CommandStream.failed(str(e))

    return CommandStream(process, cancel_event=cancel_event)


class Runtime:
    """Process operations bundled for injection into the app.

    Tests swap in a fake with the same three coroutine methods.
    """

    async def find_executable(self, name: str) -> list[str]:
        return await find_executable(name)

    async def run_command(self, command, args, env=None, cwd=None) -> CommandResult:
        return await run_command(command, args, env=env, cwd=cwd)

    async def run_command_stream(self, command, args, env=None, cwd=None, cancel_event=None) -> CommandStream:
        return await run_command_stream(command, args, env=env, cwd=cwd, cancel_event=cancel_event)
