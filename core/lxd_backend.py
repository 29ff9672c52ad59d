from typing import Any, List, Mapping, Optional

from config.settings import LXD_NAME_PREFIX, NIC_TAG_PARENTS
from core.backend import VMBackend
from core.errors import VmNotFoundError, VmProtocolError
from core.logger import TRACE, log_event
from core.lxd_client import LxdClient
from core.translator import LxdTranslator
from schemas.vm_schema import VMDescriptor

STATE_CHANGE_TIMEOUT = 30


class LxdBackend(VMBackend):
    """
    Containers managed through the LXD REST API.

    LXD neither boots a new instance by itself nor deletes a running one,
    so create and delete need the controller to sequence a start/stop.
    """

    name = "lxd"
    boots_on_create = False
    stops_before_delete = True
    native_lookup = False

    def __init__(
        self,
        client: Optional[LxdClient] = None,
        nic_parents: Optional[Mapping[str, str]] = None,
        name_prefix: str = LXD_NAME_PREFIX,
    ) -> None:
        self.client = client or LxdClient()
        self.translator = LxdTranslator(
            nic_parents=NIC_TAG_PARENTS if nic_parents is None else nic_parents,
            name_prefix=name_prefix,
        )

    async def open(self) -> None:
        await self.client.open()

    async def close(self) -> None:
        await self.client.close()

    def _path(self, vm_uuid: str, suffix: str = "") -> str:
        return f"/1.0/instances/{self.translator.native_name(vm_uuid)}{suffix}"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def fetch(self, vm_uuid: str) -> VMDescriptor:
        try:
            metadata = await self.client.get(self._path(vm_uuid))
        except VmNotFoundError:
            raise VmNotFoundError(f"vmadm load {vm_uuid} failed: No such zone") from None
        return self.translator.from_native(metadata)

    async def probe(self, vm_uuid: str) -> Optional[bool]:
        try:
            vm = await self.fetch(vm_uuid)
        except VmNotFoundError:
            return None
        return vm.do_not_inventory

    async def fetch_all(self) -> List[VMDescriptor]:
        metadata = await self.client.get("/1.0/instances?recursion=1")
        if metadata is None:
            return []
        if not isinstance(metadata, list):
            raise VmProtocolError("LXD instance listing is not a list")
        log_event(f"[lxd] listed {len(metadata)} instances", TRACE)
        return [self.translator.from_native(inst) for inst in metadata]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def create(self, descriptor: VMDescriptor, req_id: Optional[str] = None) -> str:
        native = self.translator.to_native(descriptor)
        log_event(f"[lxd] creating machine {native['name']}", TRACE)
        await self.client.submit("POST", "/1.0/instances", native)
        return descriptor.uuid

    async def delete(self, vm_uuid: str, req_id: Optional[str] = None) -> None:
        await self.client.submit("DELETE", self._path(vm_uuid))

    async def _change_state(self, vm_uuid: str, action: str) -> None:
        await self.client.submit(
            "PUT",
            self._path(vm_uuid, "/state"),
            {
                "action": action,
                "timeout": STATE_CHANGE_TIMEOUT,
                "force": True,
                # CRIU is not available everywhere
                "stateful": False,
            },
        )

    async def start(self, vm_uuid: str, req_id: Optional[str] = None, **options: Any) -> None:
        await self._change_state(vm_uuid, "start")

    async def stop(
        self,
        vm_uuid: str,
        force: bool = False,
        timeout: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        """
        LXD stops are always forced with a STATE_CHANGE_TIMEOUT second grace
        period; the caller's `force` and `timeout` are not used.
        """
        if timeout is not None or force:
            log_event(
                f"[lxd] stop {vm_uuid}: ignoring force={force}, timeout={timeout} "
                f"(using timeout={STATE_CHANGE_TIMEOUT})",
                TRACE,
            )
        await self._change_state(vm_uuid, "stop")

    async def reboot(self, vm_uuid: str, force: bool = False, req_id: Optional[str] = None) -> None:
        await self._change_state(vm_uuid, "restart")
