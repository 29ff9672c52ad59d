from typing import Any, Dict, List, Optional, Union

from config.settings import CACHING_ENABLED, VM_BACKEND
from core.backend import VMBackend
from core.errors import VmNotFoundError
from core.logger import TRACE, log_event
from core.translator import validate_descriptor
from schemas.vm_schema import VMDescriptor, VMState


def _project(payload: Dict[str, Any], fields: Optional[List[str]]) -> Dict[str, Any]:
    if not fields:
        return payload
    return {key: payload[key] for key in fields if key in payload}


def _matches(payload: Dict[str, Any], search: Dict[str, Any]) -> bool:
    return all(key in payload and payload[key] == value for key, value in search.items())


class DescriptorCache:
    """
    uuid -> VMDescriptor. Never authoritative: a miss means asking the
    backend again, and every mutation drops the entry it touches.
    """

    def __init__(self, enabled: bool = False) -> None:
        self.enabled = enabled
        self._entries: Dict[str, VMDescriptor] = {}

    def get(self, vm_uuid: str) -> Optional[VMDescriptor]:
        if not self.enabled:
            return None
        return self._entries.get(vm_uuid)

    def put(self, descriptor: VMDescriptor) -> None:
        if self.enabled:
            self._entries[descriptor.uuid] = descriptor

    def invalidate(self, vm_uuid: str) -> None:
        self._entries.pop(vm_uuid, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class VMController:
    """
    Core VM lifecycle operations, independent of the backend.

    The controller decides *whether* and *in which order* backend calls
    happen; the backend decides *how*:

        * VMs with do_not_inventory=true are treated as missing by every
          call unless the caller passes include_dni=True.
        * On backends that do not boot on create, an autoboot VM is started
          once its creation has succeeded.
        * On backends that cannot delete a running VM, it is stopped first.

    Every public method returns once, with a value or a single VmError.
    Nothing is retried.
    """

    def __init__(self, backend: VMBackend, caching_enabled: bool = CACHING_ENABLED) -> None:
        self.backend = backend
        self.cache = DescriptorCache(enabled=caching_enabled)
        log_event(f"[vm] Using backend={backend.name}, caching={caching_enabled}")

    async def open(self) -> None:
        await self.backend.open()

    async def close(self) -> None:
        await self.backend.close()

    def clear_cache(self) -> None:
        self.cache.clear()

    def _canonical(self, vm_uuid: str) -> str:
        return self.backend.translator.canonical_uuid(vm_uuid)

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------
    async def exists(self, vm_uuid: str, include_dni: bool = False) -> bool:
        vm_uuid = self._canonical(vm_uuid)
        cached = self.cache.get(vm_uuid)
        hidden = cached.do_not_inventory if cached is not None else await self.backend.probe(vm_uuid)

        if hidden is None:
            log_event(f"[vm] VM {vm_uuid} does not exist", TRACE)
            return False
        if hidden and not include_dni:
            log_event(f"[vm] VM {vm_uuid} exists but has do_not_inventory=true", TRACE)
            return False
        log_event(f"[vm] VM {vm_uuid} exists", TRACE)
        return True

    async def _require(self, vm_uuid: str, include_dni: bool) -> None:
        if not await self.exists(vm_uuid, include_dni=include_dni):
            raise VmNotFoundError(f"VM {vm_uuid} does not exist")

    async def _load_descriptor(self, vm_uuid: str, include_dni: bool, refresh: bool = False) -> VMDescriptor:
        vm = None if refresh else self.cache.get(vm_uuid)
        if vm is None:
            try:
                vm = await self.backend.fetch(vm_uuid)
            except VmNotFoundError:
                self.cache.invalidate(vm_uuid)
                raise
            self.cache.put(vm)

        if vm.do_not_inventory and not include_dni:
            # unless asked for, hidden VMs look exactly like missing ones
            raise VmNotFoundError(f"vmadm load {vm_uuid} failed: No such zone")
        return vm

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def load(self, vm_uuid: str, include_dni: bool = False, fields: Optional[List[str]] = None) -> Dict[str, Any]:
        vm_uuid = self._canonical(vm_uuid)
        vm = await self._load_descriptor(vm_uuid, include_dni)
        return _project(vm.to_payload(), fields)

    async def lookup(
        self,
        search: Optional[Dict[str, Any]] = None,
        fields: Optional[List[str]] = None,
        include_dni: bool = False,
        uuid: Optional[str] = None,
        req_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        List VMs matching every `search` predicate exactly, optionally
        reduced to `fields`. With `uuid`, behaves like load() of that VM.
        """
        if uuid:
            return [await self.load(uuid, include_dni=include_dni, fields=fields)]

        search = dict(search or {})

        if self.backend.native_lookup:
            rows = await self.backend.lookup(search, fields, req_id=req_id)
            return [
                _project(row, fields)
                for row in rows
                if include_dni or not row.get("do_not_inventory")
            ]

        vms = await self.backend.fetch_all()
        results: List[Dict[str, Any]] = []
        for vm in vms:
            self.cache.put(vm)
            if vm.do_not_inventory and not include_dni:
                continue
            payload = vm.to_payload()
            if not _matches(payload, search):
                continue
            results.append(_project(payload, fields))
        log_event(f"[vm] lookup {search} matched {len(results)} of {len(vms)} VMs", TRACE)
        return results

    async def info(self, vm_uuid: str, types: Optional[List[str]] = None, include_dni: bool = False, req_id: Optional[str] = None) -> Any:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        return await self.backend.info(vm_uuid, types=types, req_id=req_id)

    # ------------------------------------------------------------------
    # Create / delete
    # ------------------------------------------------------------------
    async def create(self, payload: Union[VMDescriptor, Dict[str, Any]], req_id: Optional[str] = None) -> Dict[str, str]:
        descriptor = payload if isinstance(payload, VMDescriptor) else validate_descriptor(payload)
        self.cache.invalidate(descriptor.uuid)

        log_event(
            f"[vm] Creating VM {descriptor.uuid} (alias={descriptor.alias}, brand={descriptor.brand}, "
            f"owner={descriptor.owner_uuid}, autoboot={descriptor.autoboot})"
        )
        vm_uuid = await self.backend.create(descriptor, req_id=req_id)

        if descriptor.autoboot and not self.backend.boots_on_create:
            log_event(f"[vm] Booting VM {vm_uuid} after create")
            await self.backend.start(vm_uuid, req_id=req_id)

        log_event(f"[vm] Created VM {vm_uuid}")
        return {"uuid": vm_uuid}

    async def delete(self, vm_uuid: str, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        try:
            if self.backend.stops_before_delete:
                vm = await self._load_descriptor(vm_uuid, include_dni, refresh=True)
                if vm.state == VMState.RUNNING.value:
                    log_event(f"[vm] Stopping running VM {vm_uuid} before delete")
                    await self.backend.stop(vm_uuid, req_id=req_id)
            else:
                await self._require(vm_uuid, include_dni)

            await self.backend.delete(vm_uuid, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)
        log_event(f"[vm] Deleted VM {vm_uuid}")

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------
    async def start(self, vm_uuid: str, include_dni: bool = False, req_id: Optional[str] = None, **options: Any) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            log_event(f"[vm] Starting VM {vm_uuid}")
            await self.backend.start(vm_uuid, req_id=req_id, **options)
        finally:
            self.cache.invalidate(vm_uuid)

    async def stop(
        self,
        vm_uuid: str,
        include_dni: bool = False,
        force: bool = False,
        timeout: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            log_event(f"[vm] Stopping VM {vm_uuid} (force={force}, timeout={timeout})")
            await self.backend.stop(vm_uuid, force=force, timeout=timeout, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def reboot(self, vm_uuid: str, include_dni: bool = False, force: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            log_event(f"[vm] Rebooting VM {vm_uuid} (force={force})")
            await self.backend.reboot(vm_uuid, force=force, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def update(self, vm_uuid: str, payload: Dict[str, Any], include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            await self.backend.update(vm_uuid, payload, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def reprovision(self, vm_uuid: str, payload: Dict[str, Any], include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            await self.backend.reprovision(vm_uuid, payload, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def kill(self, vm_uuid: str, signal: Optional[str] = None, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            await self.backend.kill(vm_uuid, signal=signal, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def sysrq(self, vm_uuid: str, req: str, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        await self.backend.sysrq(vm_uuid, req, req_id=req_id)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    async def create_snapshot(self, vm_uuid: str, snapshot_name: str, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        await self.backend.create_snapshot(vm_uuid, snapshot_name, req_id=req_id)

    async def rollback_snapshot(self, vm_uuid: str, snapshot_name: str, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        try:
            await self.backend.rollback_snapshot(vm_uuid, snapshot_name, req_id=req_id)
        finally:
            self.cache.invalidate(vm_uuid)

    async def delete_snapshot(self, vm_uuid: str, snapshot_name: str, include_dni: bool = False, req_id: Optional[str] = None) -> None:
        vm_uuid = self._canonical(vm_uuid)
        await self._require(vm_uuid, include_dni)
        await self.backend.delete_snapshot(vm_uuid, snapshot_name, req_id=req_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def events(self, vm_uuid: Optional[str] = None, name: Optional[str] = None, req_id: Optional[str] = None):
        """
        Subscribe to lifecycle events. Returns once the stream is ready;
        iterate the result with `async for` and call `stop()` when done.
        """
        if vm_uuid:
            vm_uuid = self._canonical(vm_uuid)
        return await self.backend.events(vm_uuid=vm_uuid, name=name, req_id=req_id)


def build_controller(backend_type: Optional[str] = None) -> VMController:
    """
    Controller for the backend configured in config/settings.py.
    """
    backend_type = (backend_type or VM_BACKEND).lower()
    if backend_type == "lxd":
        from core.lxd_backend import LxdBackend

        return VMController(LxdBackend())
    if backend_type == "vmadm":
        from core.vmadm_backend import VmadmBackend

        return VMController(VmadmBackend())
    if backend_type == "dummy":
        from core.dummy_backend import DummyBackend

        return VMController(DummyBackend())
    raise ValueError(f"Unknown VM_BACKEND {backend_type!r} (expected 'vmadm', 'lxd' or 'dummy')")
