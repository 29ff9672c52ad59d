"""
Mapping between the canonical VMDescriptor and each backend's own
descriptor format. Nothing in here does I/O.
"""
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.errors import VmValidationError
from schemas.vm_schema import VMDescriptor, VMState

UUID_RE = re.compile(
    r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}$"
)

MIB = 1024 * 1024

# LXD config namespace holding everything LXD has no native key for
META_PREFIX = "user.triton."
ORIGINAL_PAYLOAD_KEY = META_PREFIX + "__original_payload"

LXD_STATUS_MAP = {
    "Running": VMState.RUNNING.value,
    "Starting": VMState.PROVISIONING.value,
    "Stopped": VMState.STOPPED.value,
}

_LEADING_INT_RE = re.compile(r"^\s*(-?\d+)")


def is_uuid(value: str) -> bool:
    return bool(UUID_RE.match(value))


def _leading_int(value: str, default: Optional[int] = None) -> Optional[int]:
    """
    Parse the leading integer of strings like "75%", "10GiB" or "2000".
    """
    match = _LEADING_INT_RE.match(str(value))
    if not match:
        return default
    return int(match.group(1))


def dash_fingerprint(fingerprint: str) -> str:
    """
    Rebuild a UUID from the first 32 hex chars of an image hash.
    """
    fp = fingerprint
    return f"{fp[0:8]}-{fp[8:12]}-{fp[12:16]}-{fp[16:20]}-{fp[20:32]}"


def validate_descriptor(data: Mapping) -> VMDescriptor:
    try:
        return VMDescriptor.model_validate(dict(data))
    except ValidationError as e:
        raise VmValidationError(f"Invalid VM descriptor: {e}") from e


class DescriptorTranslator(ABC):
    """
    Owns the naming convention and the descriptor schema of one backend.
    """

    @abstractmethod
    def to_native(self, descriptor: VMDescriptor) -> Dict[str, Any]:
        ...

    @abstractmethod
    def from_native(self, native: Mapping) -> VMDescriptor:
        ...

    def native_name(self, vm_uuid: str) -> str:
        return vm_uuid

    def canonical_uuid(self, name: str) -> str:
        return name


class VmadmTranslator(DescriptorTranslator):
    """
    vmadm already speaks the canonical schema: zones are named by their
    bare uuid and payloads are the descriptor itself.
    """

    def to_native(self, descriptor: VMDescriptor) -> Dict[str, Any]:
        return descriptor.to_payload()

    def from_native(self, native: Mapping) -> VMDescriptor:
        if not isinstance(native, Mapping):
            raise VmValidationError("vmadm descriptor must be an object")
        return validate_descriptor(native)


class LxdTranslator(DescriptorTranslator):
    """
    Canonical descriptor <-> LXD instance object.

    LXD has native keys for limits and autostart only. The full creation
    request is stored as JSON under `user.triton.__original_payload`; when
    an instance is loaded back that snapshot is the starting point and the
    live values reported by LXD are laid over it.

    `nic_parents` maps a logical nic tag to the host device the macvlan
    interface hangs off.
    """

    def __init__(self, nic_parents: Optional[Mapping[str, str]] = None, name_prefix: str = "triton-") -> None:
        self.nic_parents = dict(nic_parents or {})
        self.name_prefix = name_prefix

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def native_name(self, vm_uuid: str) -> str:
        return self.name_prefix + vm_uuid if is_uuid(vm_uuid) else vm_uuid

    def canonical_uuid(self, name: str) -> str:
        if name.startswith(self.name_prefix):
            bare = name[len(self.name_prefix):]
            if is_uuid(bare):
                return bare
        return name

    # ------------------------------------------------------------------
    # Networking
    # ------------------------------------------------------------------
    def _parent_for(self, nic_tag: str) -> str:
        try:
            return self.nic_parents[nic_tag]
        except KeyError:
            raise VmValidationError(f"No host interface carries nic_tag '{nic_tag}'") from None

    def nics_to_devices(self, descriptor: VMDescriptor) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Build the LXD nic devices and the matching cloud-init network config.

        Version 1 of the cloud-init network format is used since it is
        understood by every cloud-init release.
        """
        devices: Dict[str, Any] = {}
        config: List[Dict[str, Any]] = []

        for i, nic in enumerate(descriptor.nics or []):
            dev_name = f"net{i}"
            devices[dev_name] = {
                "hwaddr": nic.mac,
                "name": dev_name,
                "nictype": "macvlan",
                "parent": self._parent_for(nic.nic_tag),
                "type": "nic",
                # LXD wants a string here
                "vlan": str(nic.vlan_id),
            }

            subnet: Dict[str, Any] = {
                "type": "static",
                "ipv4": True,
                "control": "auto",
                "address": nic.ip,
                "netmask": nic.netmask,
            }
            if nic.primary and nic.gateway:
                subnet["gateway"] = nic.gateway

            config.append(
                {
                    "type": "physical",
                    "name": dev_name,
                    "dhcp4": False,
                    "mac_address": nic.mac,
                    "subnets": [subnet],
                }
            )

        for resolver in descriptor.resolvers or []:
            config.append({"type": "nameserver", "address": resolver})

        return devices, {"network": {"version": 1, "config": config}}

    # ------------------------------------------------------------------
    # Canonical -> LXD
    # ------------------------------------------------------------------
    @staticmethod
    def _image_source(descriptor: VMDescriptor) -> Dict[str, Any]:
        # first match wins
        source: Dict[str, Any] = {"type": "image"}
        image = descriptor.image
        if image is not None and image.fingerprint:
            source["fingerprint"] = image.fingerprint
        elif image is not None and image.uuid:
            source["fingerprint"] = image.uuid[:8]
        elif descriptor.image_uuid:
            source["fingerprint"] = descriptor.image_uuid[:8]
        elif image is not None and image.alias:
            source["alias"] = image.alias
        else:
            source["properties"] = image.model_dump(exclude_none=True) if image is not None else {}
        return source

    def to_native(self, descriptor: VMDescriptor) -> Dict[str, Any]:
        snapshot = descriptor.to_payload()
        config: Dict[str, str] = {
            "boot.autostart": "true" if descriptor.autoboot else "false",
            "limits.cpu.allowance": f"{descriptor.cpu_cap}%",
            "limits.cpu": str(descriptor.cpu_shares),
            "limits.processes": str(descriptor.max_lwps),
            ORIGINAL_PAYLOAD_KEY: json.dumps(snapshot),
            META_PREFIX + "do_not_inventory": "true" if descriptor.do_not_inventory else "false",
            META_PREFIX + "tags": json.dumps(descriptor.tags),
            META_PREFIX + "owner_uuid": descriptor.owner_uuid,
        }

        native: Dict[str, Any] = {
            "name": self.native_name(descriptor.uuid),
            "architecture": "x86_64",
            "profiles": ["default"],
            "ephemeral": False,
            "config": config,
            "type": "container",
            "source": self._image_source(descriptor),
        }

        if descriptor.nics:
            devices, network_config = self.nics_to_devices(descriptor)
            native["devices"] = devices
            # YAML is a superset of JSON, cloud-init only needs the header
            config["user.network-config"] = (
                "#cloud-config\n# generated by vmbridge\n" + json.dumps(network_config)
            )

        if descriptor.alias:
            config[META_PREFIX + "alias"] = descriptor.alias

        if descriptor.max_physical_memory:
            config["limits.memory"] = str(descriptor.max_physical_memory * MIB)

        if descriptor.quota:
            config["volatile.root.apply_quota"] = f"{descriptor.quota}GiB"

        if descriptor.create_timestamp:
            native["created_at"] = descriptor.create_timestamp

        user_data: Dict[str, Any] = {}
        keys = descriptor.customer_metadata.get("root_authorized_keys")
        if keys:
            user_data["ssh_authorized_keys"] = keys.rstrip("\n").split("\n")
        config["user.user-data"] = "#cloud-config\n" + json.dumps(user_data)

        return native

    # ------------------------------------------------------------------
    # LXD -> canonical
    # ------------------------------------------------------------------
    @staticmethod
    def _state_from_status(status: str) -> str:
        return LXD_STATUS_MAP.get(status, status.lower())

    def from_native(self, native: Mapping) -> VMDescriptor:
        if not isinstance(native, Mapping):
            raise VmValidationError("LXD instance must be an object")
        config = native.get("config")
        if not isinstance(config, Mapping):
            raise VmValidationError("LXD instance has no config")
        status = native.get("status")
        if not isinstance(status, str):
            raise VmValidationError("LXD instance has no status")

        # instances launched directly with lxc have no snapshot
        if ORIGINAL_PAYLOAD_KEY in config:
            try:
                vm: Dict[str, Any] = dict(json.loads(config[ORIGINAL_PAYLOAD_KEY]))
            except (TypeError, ValueError) as e:
                raise VmValidationError(f"Unreadable {ORIGINAL_PAYLOAD_KEY}: {e}") from e
        else:
            vm = {}

        if native.get("created_at"):
            vm["create_timestamp"] = native["created_at"]

        vm["cpu_cap"] = _leading_int(config.get("limits.cpu.allowance", ""), 100)
        vm["cpu_shares"] = _leading_int(config.get("limits.cpu", ""), 100)
        vm["max_lwps"] = _leading_int(config.get("limits.processes", ""), 2000)
        if config.get("limits.memory"):
            memory = _leading_int(config["limits.memory"])
            if memory is not None:
                vm["max_physical_memory"] = memory // MIB

        vm["state"] = self._state_from_status(status)

        image: Dict[str, Any] = dict(vm.get("image") or {})
        for key, value in config.items():
            if key.startswith("image."):
                image[key[len("image."):]] = value
            elif key == "boot.autostart":
                vm["autoboot"] = value == "true"
            elif key == "volatile.base_image":
                image["fingerprint"] = value
                vm["image_uuid"] = dash_fingerprint(value)
            elif key.startswith(META_PREFIX):
                name = key[len(META_PREFIX):]
                if name == "__original_payload":
                    continue
                if name == "do_not_inventory":
                    vm[name] = value == "true"
                elif name == "tags":
                    try:
                        vm[name] = json.loads(value)
                    except (TypeError, ValueError) as e:
                        raise VmValidationError(f"Unreadable {key}: {e}") from e
                else:
                    vm[name] = value
        if image:
            vm["image"] = image

        if config.get("volatile.root.apply_quota"):
            quota = _leading_int(config["volatile.root.apply_quota"])
            if quota is not None:
                vm["quota"] = quota

        if native.get("name"):
            vm["uuid"] = self.canonical_uuid(native["name"])

        return validate_descriptor(vm)
