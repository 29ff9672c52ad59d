import asyncio
import os
from typing import Any, Dict, List, Optional

import pytest

from core.backend import VMBackend
from core.errors import VmNotFoundError
from core.lxd_client import BASE_URL
from core.translator import LxdTranslator, VmadmTranslator
from schemas.vm_schema import VMDescriptor

VM_A = "11111111-1111-4111-8111-111111111111"
VM_B = "22222222-2222-4222-8222-222222222222"
VM_C = "33333333-3333-4333-8333-333333333333"


def descriptor(vm_uuid: str, **fields: Any) -> VMDescriptor:
    base = {"uuid": vm_uuid, "cpu_cap": 100, "cpu_shares": 100, "max_lwps": 2000}
    base.update(fields)
    return VMDescriptor(**base)


# ----------------------------------------------------------------------
# vmadm stand-ins
# ----------------------------------------------------------------------
@pytest.fixture
def vmadm_script(tmp_path):
    """
    Write a throw-away /bin/sh script to use as the vmadm binary.
    """
    counter = iter(range(1000))

    def make(body: str) -> str:
        path = tmp_path / f"vmadm-{next(counter)}"
        path.write_text("#!/bin/sh\n" + body + "\n")
        os.chmod(path, 0o755)
        return str(path)

    return make


# ----------------------------------------------------------------------
# In-memory backend
# ----------------------------------------------------------------------
class FakeBackend(VMBackend):
    name = "fake"

    def __init__(self, boots_on_create: bool = True, stops_before_delete: bool = False) -> None:
        self.boots_on_create = boots_on_create
        self.stops_before_delete = stops_before_delete
        self.translator = VmadmTranslator()
        self.vms: Dict[str, VMDescriptor] = {}
        self.calls: List[tuple] = []
        self.errors: Dict[str, Exception] = {}
        self.stream = None

    def add(self, vm_uuid: str, **fields: Any) -> VMDescriptor:
        vm = descriptor(vm_uuid, **fields)
        self.vms[vm.uuid] = vm
        return vm

    def _record(self, op: str, *args: Any) -> None:
        self.calls.append((op,) + args)
        if op in self.errors:
            raise self.errors[op]

    def ops(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def probe(self, vm_uuid: str) -> Optional[bool]:
        self._record("probe", vm_uuid)
        vm = self.vms.get(vm_uuid)
        return None if vm is None else vm.do_not_inventory

    async def fetch(self, vm_uuid: str) -> VMDescriptor:
        self._record("fetch", vm_uuid)
        if vm_uuid not in self.vms:
            raise VmNotFoundError(f"vmadm load {vm_uuid} failed: No such zone")
        return self.vms[vm_uuid].model_copy()

    async def fetch_all(self) -> List[VMDescriptor]:
        self._record("fetch_all")
        return [vm.model_copy() for vm in self.vms.values()]

    async def create(self, vm: VMDescriptor, req_id: Optional[str] = None) -> str:
        self._record("create", vm.uuid)
        state = "running" if self.boots_on_create and vm.autoboot else "stopped"
        self.vms[vm.uuid] = vm.model_copy(update={"state": state})
        return vm.uuid

    async def delete(self, vm_uuid: str, req_id: Optional[str] = None) -> None:
        self._record("delete", vm_uuid)
        self.vms.pop(vm_uuid)

    async def start(self, vm_uuid: str, req_id: Optional[str] = None, **options: Any) -> None:
        self._record("start", vm_uuid, options)
        self.vms[vm_uuid] = self.vms[vm_uuid].model_copy(update={"state": "running"})

    async def stop(self, vm_uuid: str, force: bool = False, timeout: Optional[int] = None, req_id: Optional[str] = None) -> None:
        self._record("stop", vm_uuid, force, timeout)
        self.vms[vm_uuid] = self.vms[vm_uuid].model_copy(update={"state": "stopped"})

    async def reboot(self, vm_uuid: str, force: bool = False, req_id: Optional[str] = None) -> None:
        self._record("reboot", vm_uuid, force)

    async def events(self, vm_uuid: Optional[str] = None, name: Optional[str] = None, req_id: Optional[str] = None):
        self._record("events", vm_uuid)
        if self.stream is None:
            raise self._unsupported("events")
        return self.stream


class FakeEventStream:
    def __init__(self, events: List[Any]) -> None:
        self._events = list(events)
        self.stopped = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        return self._events.pop(0)

    def stop(self) -> None:
        self.stopped = True

    async def wait_closed(self) -> None:
        return None


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


# ----------------------------------------------------------------------
# LXD stand-ins
# ----------------------------------------------------------------------
def lxd_operation(op_id: str, status_code: int = 103) -> Dict[str, Any]:
    """Envelope LXD answers a mutating call with."""
    return {
        "type": "async",
        "status": "Operation created",
        "status_code": 100,
        "metadata": {"id": op_id, "class": "task", "status_code": status_code},
    }


def lxd_event(op_id: str, status_code: int, err: str = "") -> Dict[str, Any]:
    """Operation update as it arrives on /1.0/events."""
    return {
        "type": "operation",
        "metadata": {"id": op_id, "status_code": status_code, "err": err},
    }


def lxd_sync(metadata: Any) -> Dict[str, Any]:
    return {"type": "sync", "status": "Success", "status_code": 200, "metadata": metadata}


def lxd_instance(vm: VMDescriptor, status: str = "Running") -> Dict[str, Any]:
    native = LxdTranslator(nic_parents={"admin": "eth0"}).to_native(vm)
    native["status"] = status
    return native


class FakeResponse:
    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self._payload = payload

    async def json(self, content_type: Optional[str] = None) -> Any:
        return self._payload

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None


class FakeLxdSession:
    """
    Routes (method, path) to a canned answer and replays the operation
    events that answer implies onto the client's event handler shortly
    after the request.
    """

    def __init__(self) -> None:
        self.client = None
        self.closed = False
        self.routes: Dict[tuple, tuple] = {}
        self.requests: List[tuple] = []
        self.ws = None
        self.ws_urls: List[str] = []

    async def ws_connect(self, url: str) -> "FakeWebSocket":
        self.ws_urls.append(url)
        return self.ws

    def route(self, method: str, path: str, status: int, payload: Any, events: tuple = ()) -> None:
        self.routes[(method, path)] = (status, payload, events)

    def paths(self) -> List[tuple]:
        return [(method, path) for method, path, _ in self.requests]

    def request(self, method: str, url: str, json: Any = None) -> FakeResponse:
        path = url[len(BASE_URL):]
        self.requests.append((method, path, json))
        if (method, path) not in self.routes:
            return FakeResponse(404, {"type": "error", "error": "not found", "error_code": 404})
        status, payload, events = self.routes[(method, path)]
        loop = asyncio.get_running_loop()
        for i, message in enumerate(events, 1):
            loop.call_later(0.01 * i, self.client.handle_message, message)
        return FakeResponse(status, payload)

    async def close(self) -> None:
        self.closed = True


class FakeWebSocket:
    """Replays canned frames, then ends like a socket closed by LXD."""

    def __init__(self, frames: List[Any]) -> None:
        self._frames = list(frames)
        self.closed = False
        self.close_code = None

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        await asyncio.sleep(0)
        if not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)

    def exception(self) -> Optional[BaseException]:
        return None

    async def close(self) -> None:
        self.closed = True
