import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from config.settings import LXD_SOCKET, OPERATION_TIMEOUT
from core.errors import (
    VmBackendError,
    VmNotFoundError,
    VmOperationError,
    VmOperationTimeoutError,
    VmProtocolError,
)
from core.logger import TRACE, log_event

# host part is ignored when talking over the unix socket
BASE_URL = "http://lxd"
EVENTS_PATH = "/1.0/events?type=operation,lifecycle"


def _operation_failure(metadata: Dict[str, Any]) -> VmOperationError:
    status_code = metadata.get("status_code")
    message = metadata.get("err") or f"operation {metadata.get('id')} failed with status {status_code}"
    return VmOperationError(message, status_code=status_code)


class LxdClient:
    """
    LXD REST client over the local unix socket.

    Reads are one request, one answer. Mutations are two-phase: LXD
    answers with an operation envelope right away, and the outcome of the
    operation arrives later on the shared /1.0/events websocket. Every
    message on that feed is matched by operation id against the waiters in
    `self.operations`; the first terminal status (>= 200) for an id settles
    its waiter and removes it from the table.

    `operation_timeout` bounds how long a mutation waits for its outcome.
    With None (the default) a mutation waits until LXD reports one.
    """

    def __init__(
        self,
        socket_path: str = LXD_SOCKET,
        operation_timeout: Optional[float] = OPERATION_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.socket_path = socket_path
        self.operation_timeout = operation_timeout
        self.session = session
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self.operations: Dict[str, asyncio.Future] = {}
        self._listener: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def open(self) -> None:
        """
        Create the HTTP session and subscribe to the event feed.
        """
        if self.session is None:
            connector = aiohttp.UnixConnector(path=self.socket_path)
            self.session = aiohttp.ClientSession(connector=connector)
        await self.subscribe()

    async def subscribe(self) -> None:
        try:
            self.ws = await self.session.ws_connect(BASE_URL + EVENTS_PATH)
        except aiohttp.ClientError as e:
            log_event(f"[lxd] websocket error: {e}", logging.ERROR)
            raise VmBackendError(f"Unable to subscribe to LXD events on {self.socket_path}: {e}") from e
        log_event("[lxd] websocket open", TRACE)
        self._listener = asyncio.create_task(self._listen())

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self.ws is not None and not self.ws.closed:
            await self.ws.close()
        self.ws = None
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    async def _listen(self) -> None:
        async for msg in self.ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                log_event(f"[lxd] websocket message: {msg.data}", TRACE)
                try:
                    message = json.loads(msg.data)
                except ValueError as e:
                    log_event(f"[lxd] unreadable websocket message {msg.data!r}: {e}", logging.ERROR)
                    continue
                self.handle_message(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log_event(f"[lxd] websocket error: {self.ws.exception()}", logging.ERROR)
        log_event(f"[lxd] websocket closed with code {self.ws.close_code}", TRACE)

    # ------------------------------------------------------------------
    # Operation correlation
    # ------------------------------------------------------------------
    def handle_message(self, message: Dict[str, Any]) -> None:
        """
        Match one event-feed message against the pending operations.
        """
        metadata = message.get("metadata") if isinstance(message, dict) else None
        if not isinstance(metadata, dict):
            return
        op_id = metadata.get("id")
        if not op_id or op_id not in self.operations:
            return

        status_code = metadata.get("status_code")
        if not isinstance(status_code, int) or status_code < 200:
            log_event(f"[lxd] operation {op_id} in progress (status={status_code})", TRACE)
            return

        # drop the waiter before settling it so it can only settle once
        waiter = self.operations.pop(op_id)
        if waiter.done():
            return
        if status_code == 200:
            log_event(f"[lxd] operation {op_id} succeeded", TRACE)
            waiter.set_result(metadata)
        else:
            log_event(f"[lxd] operation {op_id} failed: {metadata.get('err')}", logging.ERROR)
            waiter.set_exception(_operation_failure(metadata))

    async def wait_operation(self, op_id: str) -> Dict[str, Any]:
        waiter = self.operations.get(op_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self.operations[op_id] = waiter
        try:
            return await asyncio.wait_for(waiter, self.operation_timeout)
        except asyncio.TimeoutError:
            self.operations.pop(op_id, None)
            raise VmOperationTimeoutError(
                f"LXD operation {op_id} did not finish within {self.operation_timeout}s"
            ) from None

    # ------------------------------------------------------------------
    # HTTP calls
    # ------------------------------------------------------------------
    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Tuple[int, Dict[str, Any]]:
        if self.session is None:
            raise VmBackendError("LXD client is not open")
        try:
            async with self.session.request(method, BASE_URL + path, json=body) as resp:
                status = resp.status
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise VmProtocolError(f"LXD {method} {path} returned invalid JSON: {e}") from e
        except aiohttp.ClientError as e:
            log_event(f"[lxd] request error: {method} {path}: {e}", logging.ERROR)
            raise VmBackendError(f"LXD {method} {path} failed: {e}") from e

        log_event(f"[lxd] {method} {path}: {status}", TRACE)
        if not isinstance(payload, dict):
            raise VmProtocolError(f"LXD {method} {path} returned a non-object payload")

        if status == 404:
            raise VmNotFoundError(f"LXD {method} {path}: not found")
        if status >= 300:
            message = f"LXD {method} {path} failed with status {status}"
            if payload.get("error"):
                message += f" ({payload['error']})"
            log_event(f"[lxd] request error: {message}", logging.ERROR)
            raise VmBackendError(message, code=status)
        return status, payload

    async def get(self, path: str) -> Any:
        """
        Single-phase read; returns the response metadata.
        """
        _, payload = await self._request("GET", path)
        return payload.get("metadata")

    async def submit(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Issue a mutating call and wait for its operation to settle.
        """
        _, payload = await self._request(method, path, body)
        metadata = payload.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("id"):
            raise VmProtocolError(f"LXD {method} {path} did not return an operation")

        op_id = metadata["id"]
        status_code = metadata.get("status_code")
        log_event(
            f"[lxd] handle response: id={op_id} operation_status={status_code} "
            f"resources={metadata.get('resources')}",
            TRACE,
        )

        if isinstance(status_code, int) and status_code > 200:
            raise _operation_failure(metadata)
        if status_code == 200:
            return metadata

        # registered before the next suspension point, so no feed message
        # for this id can slip past unobserved from here on
        self.operations[op_id] = asyncio.get_running_loop().create_future()
        return await self.wait_operation(op_id)
