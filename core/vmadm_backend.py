import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from config.settings import STDERR_TRUNCATE_LENGTH, VMADM_PATH, ZONES_CONFIG_DIR
from core.backend import VMBackend
from core.errors import VmBackendError, VmProtocolError
from core.event_stream import VmadmEventStream
from core.logger import TRACE, log_event
from core.translator import VmadmTranslator
from core.vmadm_exec import execute, probe_zone, raise_for_result
from schemas.vm_schema import VMDescriptor

_CREATED_RE = re.compile(r"^Successfully created VM (.*)$")

START_OPTIONS = ("cdrom", "disk", "order", "once")


def _format_search_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class VmadmBackend(VMBackend):
    """
    SmartOS `vmadm` driven as a subprocess, one invocation per call.

    vmadm boots on create when autoboot is set and destroys running VMs
    itself, so the controller does not need to sequence anything here.
    """

    name = "vmadm"
    boots_on_create = True
    stops_before_delete = False
    native_lookup = True

    def __init__(self, vmadm_path: str = VMADM_PATH, zones_config_dir: Path = ZONES_CONFIG_DIR) -> None:
        self.vmadm_path = vmadm_path
        self.zones_config_dir = Path(zones_config_dir)
        self.translator = VmadmTranslator()

    async def _run(self, args: List[str], vm_uuid: Optional[str] = None, stdin_data: Optional[str] = None, req_id: Optional[str] = None) -> str:
        result, stdout, stderr_lines = await execute(
            args,
            stdin_data=stdin_data,
            req_id=req_id,
            vmadm_path=self.vmadm_path,
        )
        raise_for_result(result, stderr_lines, vm_uuid, command=f"vmadm {args[0]}")
        return stdout

    @staticmethod
    def _parse_json(stdout: str, what: str) -> Any:
        try:
            return json.loads(stdout)
        except ValueError as e:
            raise VmProtocolError(f"vmadm {what} returned invalid JSON: {e}", raw=stdout) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def probe(self, vm_uuid: str) -> Optional[bool]:
        return await probe_zone(vm_uuid, self.zones_config_dir)

    async def fetch(self, vm_uuid: str) -> VMDescriptor:
        log_event("[vmadm] spawning vmadm for load", TRACE)
        result, stdout, stderr_lines = await execute(["get", vm_uuid], vmadm_path=self.vmadm_path)
        raise_for_result(result, stderr_lines, vm_uuid, command="vmadm load")
        return self.translator.from_native(self._parse_json(stdout, "get"))

    async def lookup(self, search: Dict[str, Any], fields: Optional[List[str]] = None, req_id: Optional[str] = None) -> List[Dict[str, Any]]:
        args = ["lookup", "-j"]
        if fields:
            wanted = list(fields)
            # hidden VMs are filtered by the caller, so the flag must come back
            if "do_not_inventory" not in wanted:
                wanted.append("do_not_inventory")
            args += ["-o", ",".join(wanted)]
        for key, value in search.items():
            args.append(f"{key}={_format_search_value(value)}")

        stdout = await self._run(args, req_id=req_id)
        vms = self._parse_json(stdout, "lookup")
        if not isinstance(vms, list):
            raise VmProtocolError("vmadm lookup did not return a list", raw=stdout)
        return vms

    async def info(self, vm_uuid: str, types: Optional[List[str]] = None, req_id: Optional[str] = None) -> Any:
        args = ["info", vm_uuid]
        if types:
            args.append(",".join(types))
        stdout = await self._run(args, vm_uuid, req_id=req_id)
        return self._parse_json(stdout, "info")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def create(self, descriptor: VMDescriptor, req_id: Optional[str] = None) -> str:
        log_event("[vmadm] spawning vmadm for create", TRACE)
        payload = self.translator.to_native(descriptor)
        result, _, stderr_lines = await execute(
            ["create"],
            stdin_data=json.dumps(payload),
            req_id=req_id,
            vmadm_path=self.vmadm_path,
        )

        if result.failed:
            last_line = stderr_lines[-1] if stderr_lines else ""
            tail = "\n".join(stderr_lines).strip()[-STDERR_TRUNCATE_LENGTH:]
            raise VmBackendError(
                f"vmadm exited with code: {result.code}: {last_line}\n...{tail}",
                code=result.code,
                signal=result.signal,
                stderr=tail,
            )

        created = descriptor.uuid
        for line in stderr_lines:
            match = _CREATED_RE.match(line)
            if match:
                created = match.group(1)
        return created

    async def delete(self, vm_uuid: str, req_id: Optional[str] = None) -> None:
        log_event("[vmadm] spawning vmadm for delete", TRACE)
        await self._run(["delete", vm_uuid], vm_uuid, req_id=req_id)

    async def update(self, vm_uuid: str, payload: Dict[str, Any], req_id: Optional[str] = None) -> None:
        log_event("[vmadm] spawning vmadm for machine update", TRACE)
        await self._run(["update", vm_uuid], vm_uuid, stdin_data=json.dumps(payload), req_id=req_id)

    async def reprovision(self, vm_uuid: str, payload: Dict[str, Any], req_id: Optional[str] = None) -> None:
        await self._run(["reprovision", vm_uuid], vm_uuid, stdin_data=json.dumps(payload), req_id=req_id)

    async def start(self, vm_uuid: str, req_id: Optional[str] = None, **options: Any) -> None:
        args = ["start", vm_uuid]
        for name in START_OPTIONS:
            value = options.get(name)
            if not value:
                continue
            if isinstance(value, (list, tuple)):
                args += [f"{name}={item}" for item in value]
            else:
                args.append(f"{name}={value}")

        log_event("[vmadm] spawning vmadm for start", TRACE)
        await self._run(args, vm_uuid, req_id=req_id)

    async def stop(
        self,
        vm_uuid: str,
        force: bool = False,
        timeout: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        args = ["stop", vm_uuid]
        if force:
            args.append("-F")
        if timeout:
            args += ["-t", str(timeout)]

        log_event("[vmadm] spawning vmadm for stop", TRACE)
        await self._run(args, vm_uuid, req_id=req_id)

    async def reboot(self, vm_uuid: str, force: bool = False, req_id: Optional[str] = None) -> None:
        args = ["reboot", vm_uuid]
        if force:
            args.append("-F")
        await self._run(args, vm_uuid, req_id=req_id)

    async def kill(self, vm_uuid: str, signal: Optional[str] = None, req_id: Optional[str] = None) -> None:
        args = ["kill"]
        if signal:
            args += ["-s", signal]
        args.append(vm_uuid)
        await self._run(args, vm_uuid, req_id=req_id)

    async def sysrq(self, vm_uuid: str, req: str, req_id: Optional[str] = None) -> None:
        await self._run(["sysrq", vm_uuid, req], vm_uuid, req_id=req_id)

    async def create_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        await self._run(["create-snapshot", vm_uuid, snapshot_name], vm_uuid, req_id=req_id)

    async def rollback_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        await self._run(["rollback-snapshot", vm_uuid, snapshot_name], vm_uuid, req_id=req_id)

    async def delete_snapshot(self, vm_uuid: str, snapshot_name: str, req_id: Optional[str] = None) -> None:
        await self._run(["delete-snapshot", vm_uuid, snapshot_name], vm_uuid, req_id=req_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    async def events(self, vm_uuid: Optional[str] = None, name: Optional[str] = None, req_id: Optional[str] = None) -> VmadmEventStream:
        stream = VmadmEventStream(vm_uuid=vm_uuid, name=name, req_id=req_id, vmadm_path=self.vmadm_path)
        await stream.start()
        try:
            ready = await stream.ready()
        except BaseException:
            stream.stop()
            raise
        log_event(f"[events] vmadm event stream ready (date={ready.date.isoformat()})", TRACE)
        return stream
