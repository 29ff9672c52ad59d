import asyncio
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from config.settings import DUMMY_POLL_INTERVAL, DUMMY_VM_DIR
from core.backend import VMBackend
from core.errors import VmBackendError, VmEventStreamError, VmNotFoundError, VmValidationError
from core.logger import TRACE, log_event
from core.translator import VmadmTranslator, is_uuid
from schemas.vm_schema import VMDescriptor, VMState, VmEvent

_VM_FILE_RE = re.compile(r"^([a-f0-9\-]*)\.json$")

_EOF = object()


def _iso(timestamp: Optional[float] = None) -> str:
    moment = datetime.fromtimestamp(timestamp, timezone.utc) if timestamp is not None else datetime.now(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _zone_from_filename(filename: str) -> Optional[str]:
    match = _VM_FILE_RE.match(filename)
    if match and is_uuid(match.group(1)):
        return match.group(1)
    return None


class DummyBackend(VMBackend):
    """
    VMs kept as JSON files, one `<uuid>.json` per VM, in a local directory.

    Nothing is ever booted: start/stop/reboot only rewrite the state stored
    in the file. Runtime fields (pid, last_modified, zone_state, ...) are
    derived from the file on every load, the way vmadm reports them.
    """

    name = "dummy"
    boots_on_create = True
    stops_before_delete = False
    native_lookup = False

    def __init__(self, vm_dir: Path = DUMMY_VM_DIR, poll_interval: float = DUMMY_POLL_INTERVAL) -> None:
        self.vm_dir = Path(vm_dir)
        self.poll_interval = poll_interval
        self.translator = VmadmTranslator()

    async def open(self) -> None:
        await aiofiles.os.makedirs(self.vm_dir, exist_ok=True)
        log_event(f"[dummy] keeping VMs in {self.vm_dir}")

    def _path(self, vm_uuid: str) -> Path:
        return self.vm_dir / f"{vm_uuid}.json"

    @staticmethod
    def _not_found(vm_uuid: str) -> VmNotFoundError:
        return VmNotFoundError(f"vmadm load {vm_uuid} failed: No such zone")

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    async def _read_raw(self, vm_uuid: str) -> Dict[str, Any]:
        if not is_uuid(vm_uuid):
            raise self._not_found(vm_uuid)
        try:
            async with aiofiles.open(self._path(vm_uuid), "r", encoding="utf-8") as vm_file:
                data = await vm_file.read()
        except FileNotFoundError:
            log_event(f"[dummy] {self._path(vm_uuid)} does not exist", TRACE)
            raise self._not_found(vm_uuid) from None

        try:
            vmobj = json.loads(data)
        except ValueError as e:
            raise VmValidationError(f"{self._path(vm_uuid)} is not valid JSON: {e}") from e
        if not isinstance(vmobj, dict):
            raise VmValidationError(f"{self._path(vm_uuid)} does not hold an object")
        return vmobj

    async def load_native(self, vm_uuid: str) -> Dict[str, Any]:
        """
        Stored object plus the fields a running vmadm would report.
        """
        vmobj = await self._read_raw(vm_uuid)
        try:
            stat = await aiofiles.os.stat(self._path(vm_uuid))
        except FileNotFoundError:
            raise self._not_found(vm_uuid) from None

        vmobj["last_modified"] = _iso(stat.st_mtime)
        vmobj.setdefault("state", VMState.RUNNING.value)

        if vmobj["state"] == VMState.RUNNING.value:
            vmobj["pid"] = int(stat.st_mtime) % 100000
            vmobj.setdefault("boot_timestamp", vmobj["last_modified"])
        elif vmobj["state"] == VMState.STOPPED.value:
            vmobj["exit_status"] = 0
            vmobj.setdefault("exit_timestamp", vmobj["last_modified"])

        vmobj["zonename"] = vm_uuid
        vmobj["zone_state"] = vmobj["state"]
        if vmobj.get("pid") is not None:
            vmobj["zoneid"] = vmobj["pid"]
        return vmobj

    async def _write(self, vmobj: Dict[str, Any], replace: bool = False) -> None:
        filename = self._path(vmobj["uuid"])
        target = filename
        if replace:
            filename = filename.with_name(f"{filename.name}.{os.getpid()}")

        try:
            async with aiofiles.open(filename, "w" if replace else "x", encoding="utf-8") as vm_file:
                await vm_file.write(json.dumps(vmobj, indent=2))
        except FileExistsError:
            raise VmBackendError(f"VM {vmobj['uuid']} already exists") from None

        if replace:
            await aiofiles.os.replace(filename, target)
        log_event(f"[dummy] wrote VM {vmobj['uuid']}")

    async def _update_state(self, vm_uuid: str, state: str, autoboot: Optional[bool] = None) -> None:
        vmobj = await self._read_raw(vm_uuid)
        if autoboot is not None:
            vmobj["autoboot"] = autoboot
        vmobj["state"] = state
        await self._write(vmobj, replace=True)

    async def scan(self) -> Dict[str, int]:
        """
        zonename -> mtime (ns) of every VM file in the directory.
        """
        seen: Dict[str, int] = {}
        for filename in await aiofiles.os.listdir(self.vm_dir):
            zonename = _zone_from_filename(filename)
            if zonename is None:
                log_event(f"[dummy] ignoring non-vm file {filename}", TRACE)
                continue
            try:
                stat = await aiofiles.os.stat(self.vm_dir / filename)
            except FileNotFoundError:
                # deleted between listdir and stat
                continue
            seen[zonename] = stat.st_mtime_ns
        return seen

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def fetch(self, vm_uuid: str) -> VMDescriptor:
        return self.translator.from_native(await self.load_native(vm_uuid))

    async def probe(self, vm_uuid: str) -> Optional[bool]:
        try:
            vmobj = await self._read_raw(vm_uuid)
        except VmNotFoundError:
            return None
        return bool(vmobj.get("do_not_inventory", False))

    async def fetch_all(self) -> List[VMDescriptor]:
        vms: List[VMDescriptor] = []
        for zonename in sorted(await self.scan()):
            try:
                vms.append(await self.fetch(zonename))
            except VmNotFoundError:
                continue
        log_event(f"[dummy] loaded {len(vms)} VMs", TRACE)
        return vms

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def create(self, descriptor: VMDescriptor, req_id: Optional[str] = None) -> str:
        if not is_uuid(descriptor.uuid):
            raise VmValidationError(f"Invalid VM uuid {descriptor.uuid!r}")
        payload = self.translator.to_native(descriptor)
        payload["state"] = VMState.RUNNING.value if descriptor.autoboot else VMState.STOPPED.value
        payload["create_timestamp"] = _iso()
        log_event(f"[dummy] creating VM {descriptor.uuid} (req_id={req_id})", TRACE)
        await self._write(payload)
        return descriptor.uuid

    async def delete(self, vm_uuid: str, req_id: Optional[str] = None) -> None:
        if not is_uuid(vm_uuid):
            raise self._not_found(vm_uuid)
        try:
            await aiofiles.os.remove(self._path(vm_uuid))
        except FileNotFoundError:
            raise self._not_found(vm_uuid) from None
        log_event(f"[dummy] deleted VM {vm_uuid}")

    async def update(self, vm_uuid: str, payload: Dict[str, Any], req_id: Optional[str] = None) -> None:
        vmobj = await self._read_raw(vm_uuid)
        vmobj.update({key: value for key, value in payload.items() if key != "uuid"})
        await self._write(vmobj, replace=True)

    async def start(self, vm_uuid: str, req_id: Optional[str] = None, **options: Any) -> None:
        await self._update_state(vm_uuid, VMState.RUNNING.value, autoboot=True)

    async def stop(
        self,
        vm_uuid: str,
        force: bool = False,
        timeout: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        await self._update_state(vm_uuid, VMState.STOPPED.value, autoboot=False)

    async def reboot(self, vm_uuid: str, force: bool = False, req_id: Optional[str] = None) -> None:
        await self._update_state(vm_uuid, "shutting_down")
        await self._update_state(vm_uuid, VMState.STOPPED.value)
        await self._update_state(vm_uuid, VMState.RUNNING.value, autoboot=True)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def events(self, vm_uuid: Optional[str] = None, name: Optional[str] = None, req_id: Optional[str] = None) -> "DummyEventStream":
        stream = DummyEventStream(self, vm_uuid=vm_uuid, name=name)
        stream.start()
        try:
            await stream.ready()
        except BaseException:
            stream.stop()
            raise
        return stream


class DummyEventStream:
    """
    Same interface as VmadmEventStream, fed by scanning the VM directory.

    A new file is a "create", a changed mtime a "modify", a file that went
    away a "delete". The ready event carries every VM in a `vms` mapping.
    """

    def __init__(self, backend: DummyBackend, vm_uuid: Optional[str] = None, name: Optional[str] = None) -> None:
        self.backend = backend
        self.vm_uuid = vm_uuid
        self.name = name
        self.stopped = False
        self._events: Optional[asyncio.Queue] = None
        self._ready: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._events = asyncio.Queue()
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._watch())
        log_event(f"[dummy] watching {self.backend.vm_dir} (name={self.name})", TRACE)

    async def ready(self) -> VmEvent:
        return await asyncio.shield(self._ready)

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(VmEventStreamError("dummy events stopped before ready"))
        if self._task is not None:
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def __aiter__(self) -> "DummyEventStream":
        return self

    async def __anext__(self) -> VmEvent:
        item = await self._events.get()
        if item is _EOF:
            self._events.put_nowait(_EOF)
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def _scan(self) -> Dict[str, int]:
        seen = await self.backend.scan()
        if self.vm_uuid:
            return {zonename: mtime for zonename, mtime in seen.items() if zonename == self.vm_uuid}
        return seen

    async def _dispatch(self, event_type: str, zonename: str) -> None:
        try:
            vmobj = await self.backend.load_native(zonename)
        except VmNotFoundError:
            if event_type == "delete":
                self._events.put_nowait(VmEvent(type="delete", date=_iso(), zonename=zonename, vm={}))
            else:
                log_event(f"[dummy] VM {zonename} disappeared while loading after {event_type}", logging.ERROR)
            return
        self._events.put_nowait(VmEvent(type=event_type, date=_iso(), zonename=zonename, vm=vmobj))

    async def _watch(self) -> None:
        try:
            seen = await self._scan()
            vms = {}
            for zonename in seen:
                try:
                    vms[zonename] = await self.backend.load_native(zonename)
                except VmNotFoundError:
                    continue
            if not self._ready.done():
                self._ready.set_result(VmEvent(type="ready", date=_iso(), vms=vms))

            while True:
                await asyncio.sleep(self.backend.poll_interval)
                current = await self._scan()
                for zonename, mtime in current.items():
                    if zonename not in seen:
                        await self._dispatch("create", zonename)
                    elif mtime != seen[zonename]:
                        await self._dispatch("modify", zonename)
                for zonename in seen.keys() - current.keys():
                    await self._dispatch("delete", zonename)
                seen = current
        except (OSError, VmValidationError) as e:
            log_event(f"[dummy] event stream failed: {e}", logging.ERROR)
            error = VmEventStreamError(f"dummy event stream failed: {e}")
            if not self._ready.done():
                self._ready.set_exception(error)
            self._events.put_nowait(error)
        finally:
            self._events.put_nowait(_EOF)
