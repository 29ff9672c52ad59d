import asyncio
import json
import logging
import os
import signal
from typing import List, Optional, Union

from pydantic import ValidationError

from config.settings import VMADM_PATH
from core.errors import VmBackendError, VmEventStreamError, VmNotSupportedError
from core.logger import log_event
from schemas.vm_schema import VmEvent

# what an old vmadm without the events subcommand prints
INVALID_COMMAND_LINE = 'Invalid command: "events".'

# a single event may carry a whole VM object
LINE_LIMIT = 16 * 1024 * 1024

_EOF = object()


class VmadmEventStream:
    """
    Long running `vmadm events -rj [uuid]`.

    Each stdout line is one JSON event. The first "ready" event resolves
    `ready()`; every other event is handed out, in order, by `async for`.

    Anything unexpected from the child (an unparsable line, any stderr
    output) is fatal: the child gets SIGABRT so it leaves a core behind, and
    the subscriber gets a VmEventStreamError. The one exception is a vmadm
    that does not know the events subcommand, which makes `ready()` raise
    VmNotSupportedError and stops the stream quietly.
    """

    def __init__(
        self,
        vm_uuid: Optional[str] = None,
        name: Optional[str] = None,
        req_id: Optional[str] = None,
        vmadm_path: str = VMADM_PATH,
    ) -> None:
        self.args: List[str] = ["events", "-rj"]
        if vm_uuid:
            self.args.append(vm_uuid)
        self.name = name
        self.req_id = req_id
        self.vmadm_path = vmadm_path

        self.stopped = False
        self.proc: Optional[asyncio.subprocess.Process] = None
        self._events: Optional[asyncio.Queue] = None
        self._ready: Optional[asyncio.Future] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._ready = loop.create_future()

        env = os.environ.copy()
        if self.req_id:
            log_event(f'[events] setting req_id to "{self.req_id}"')
            env["REQ_ID"] = self.req_id
        if self.name:
            log_event(f'[events] setting name to "{self.name}"')
            env["VMADM_IDENT"] = self.name
        env["VMADM_DEBUG_LEVEL"] = "fatal"

        log_event(f"[events] calling {self.vmadm_path} {' '.join(self.args)}")

        try:
            self.proc = await asyncio.create_subprocess_exec(
                self.vmadm_path,
                *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=LINE_LIMIT,
            )
        except OSError as e:
            log_event(f"[events] child process error: {e}", logging.ERROR)
            raise VmBackendError(f"Failed to spawn {self.vmadm_path}: {e}") from e

        readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        self._tasks = readers + [asyncio.create_task(self._watch_exit(readers))]

    async def ready(self) -> VmEvent:
        """
        Wait for the child's "ready" event.
        """
        return await asyncio.shield(self._ready)

    def stop(self) -> None:
        """
        Stop the stream with SIGTERM. Safe to call more than once.
        """
        if self.stopped:
            return
        self.stopped = True
        log_event("[events] vmadm events stop called", logging.DEBUG)
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(VmEventStreamError("vmadm events stopped before ready"))
        self._signal(signal.SIGTERM)

    async def wait_closed(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------
    def __aiter__(self) -> "VmadmEventStream":
        return self

    async def __anext__(self) -> VmEvent:
        item = await self._events.get()
        if item is _EOF:
            # keep later readers from blocking too
            self._events.put_nowait(_EOF)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _signal(self, signum: int) -> None:
        if self.proc is None or self.proc.returncode is not None:
            return
        try:
            self.proc.send_signal(signum)
        except ProcessLookupError:
            pass

    def _emit_error(self, error: Exception) -> None:
        if not self._ready.done():
            self._ready.set_exception(error)
        self._events.put_nowait(error)

    def _abort(self) -> None:
        """
        Stop the stream and have the child dump core.
        """
        self.stopped = True
        pid = self.proc.pid if self.proc else None
        log_event(f"[events] abort called, sending SIGABRT to pid={pid}", logging.ERROR)
        self._signal(signal.SIGABRT)
        self._emit_error(VmEventStreamError("vmadm aborted"))

    def _parse(self, line: str) -> Union[VmEvent, None]:
        try:
            return VmEvent.model_validate(json.loads(line))
        except (ValueError, ValidationError) as e:
            log_event(f"[events] failed to parse output line {line!r}: {e}", logging.ERROR)
            return None

    def _handle_line(self, line: str) -> None:
        event = self._parse(line)
        if event is None:
            self._abort()
            return

        if event.type == "ready":
            if not self._ready.done():
                self._ready.set_result(event)
            return
        log_event(f"[events] vmadm event type={event.type}", logging.DEBUG)
        self._events.put_nowait(event)

    async def _read_stdout(self) -> None:
        while not self.stopped:
            try:
                raw = await self.proc.stdout.readline()
            except ValueError as e:
                # line longer than LINE_LIMIT
                log_event(f"[events] unreadable output line: {e}", logging.ERROR)
                self._abort()
                return
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            self._handle_line(line)

    async def _read_stderr(self) -> None:
        while True:
            raw = await self.proc.stderr.readline()
            if not raw:
                return
            # already stopped: the child is on its way out, don't abort it
            if self.stopped:
                continue

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            log_event(f"[events] stderr produced: {line}", logging.ERROR)

            if line == INVALID_COMMAND_LINE:
                if not self._ready.done():
                    self._ready.set_exception(VmNotSupportedError("`vmadm events` not implemented"))
                self.stop()
                continue

            self._abort()

    async def _watch_exit(self, readers: List[asyncio.Task]) -> None:
        returncode = await self.proc.wait()
        # both pipes drained: every line has been classified by now
        await asyncio.gather(*readers)
        if self.stopped:
            log_event(f"[events] vmadm events stopped (returncode={returncode})")
        else:
            log_event(f"[events] vmadm events child process closed (returncode={returncode})", logging.ERROR)
            self._emit_error(VmEventStreamError("child exited"))
        self._events.put_nowait(_EOF)
