from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from core.errors import VmNotSupportedError
from core.translator import DescriptorTranslator
from schemas.vm_schema import VMDescriptor


class VMBackend(ABC):
    """
    What VMController needs from a backend.

    Backends only move data: visibility rules, caching and the sequencing of
    dependent calls live in VMController. The class attributes tell the
    controller which of those sequencing steps this backend needs.
    """

    name = "backend"

    # create() leaves the VM stopped; the controller boots it when autoboot
    boots_on_create = True
    # delete() of a running VM must be preceded by a stop
    stops_before_delete = False
    # lookup() filters and selects fields itself
    native_lookup = False

    translator: DescriptorTranslator

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def probe(self, vm_uuid: str) -> Optional[bool]:
        """
        None if the VM does not exist, else whether it is do_not_inventory.
        """

    @abstractmethod
    async def fetch(self, vm_uuid: str) -> VMDescriptor:
        """
        Load one VM from the backend; raises VmNotFoundError.
        """

    @abstractmethod
    async def create(self, descriptor: VMDescriptor, req_id: Optional[str] = None) -> str:
        """
        Create the VM and return its canonical uuid.
        """

    @abstractmethod
    async def delete(self, vm_uuid: str, req_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def start(self, vm_uuid: str, req_id: Optional[str] = None, **options: Any) -> None:
        ...

    @abstractmethod
    async def stop(
        self,
        vm_uuid: str,
        force: bool = False,
        timeout: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def reboot(self, vm_uuid: str, force: bool = False, req_id: Optional[str] = None) -> None:
        ...

    # ------------------------------------------------------------------
    # Optional operations
    # ------------------------------------------------------------------
    def _unsupported(self, operation: str) -> VmNotSupportedError:
        return VmNotSupportedError(f"{operation} not supported by the {self.name} backend")

    async def fetch_all(self) -> List[VMDescriptor]:
        """
        Every VM on the host, used when native_lookup is False.
        """
        raise self._unsupported("fetch_all")

    async def lookup(self, search: Dict[str, Any], fields: Optional[List[str]] = None, req_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Filtered, projected listing, used when native_lookup is True.
        """
        raise self._unsupported("lookup")

    async def update(self, vm_uuid: str, payload: Dict[str, Any], req_id: Optional[str] = None) -> None:
        raise self._unsupported("update")

    async def reprovision(self, vm_uuid: str, payload: Dict[str, Any], req_id: Optional[str] = None) -> None:
        raise self._unsupported("reprovision")

    async def kill(self, vm_uuid: str, signal: Optional[str] = None, req_id: Optional[str] = None) -> None:
        raise self._unsupported("kill")

    async def info(self, vm_uuid: str, types: Optional[List[str]] = None, req_id: Optional[str] = None) -> Any:
        raise self._unsupported("info")

    async def sysrq(self, vm_uuid: str, req: str, req_id: Optional[str] = None) -> None:
        raise self._unsupported("sysrq")

    async def create_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        raise self._unsupported("create_snapshot")

    async def rollback_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        raise self._unsupported("rollback_snapshot")

    async def delete_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        raise self._unsupported("delete_snapshot")

    async def events(self, vm_uuid: Optional[str] = None, name: Optional[str] = None, req_id: Optional[str] = None):
        raise self._unsupported("events")
