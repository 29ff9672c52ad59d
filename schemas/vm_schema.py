import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO_UUID = "00000000-0000-0000-0000-000000000000"


class VMState(str, Enum):
    """
    Canonical VM states. Backends may report others; those are carried as
    the lowercased backend string.
    """

    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Nic(BaseModel):
    model_config = ConfigDict(extra="allow")

    nic_tag: str
    mac: str
    ip: str
    netmask: str
    vlan_id: int = 0
    primary: bool = False
    gateway: Optional[str] = None


class ImageRef(BaseModel):
    """
    Image identity. Any extra properties (os, release, ...) are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    uuid: Optional[str] = None
    fingerprint: Optional[str] = None
    alias: Optional[str] = None


class VMDescriptor(BaseModel):
    """
    Backend-neutral VM descriptor.

    Fields that no backend knows about are accepted and preserved, so a
    payload can go through any backend and come back intact.
    """

    model_config = ConfigDict(extra="allow")

    uuid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    brand: str = "lx"
    cpu_cap: int
    cpu_shares: int
    max_lwps: int

    alias: Optional[str] = None
    autoboot: bool = True
    create_timestamp: Optional[str] = None
    customer_metadata: Dict[str, Any] = Field(default_factory=dict)
    dns_domain: Optional[str] = None
    do_not_inventory: bool = False
    firewall_enabled: bool = False
    hostname: Optional[str] = None
    image: Optional[ImageRef] = None
    image_uuid: Optional[str] = None
    indestructible_zoneroot: bool = False
    init_name: Optional[str] = None
    internal_metadata: Dict[str, Any] = Field(default_factory=dict)
    internal_metadata_namespaces: Optional[List[str]] = None
    last_modified: Optional[str] = None
    max_physical_memory: Optional[int] = Field(default=None, description="RAM in MiB")
    nics: Optional[List[Nic]] = None
    owner_uuid: str = ZERO_UUID
    pid: Optional[int] = None
    quota: Optional[int] = Field(default=None, description="Disk quota in GiB")
    resolvers: Optional[List[str]] = Field(default=None, max_length=6)
    state: Optional[str] = None
    tags: Dict[str, Any] = Field(default_factory=dict)
    zfs_data_compression: Optional[bool] = None
    zfs_filesystem: Optional[str] = None
    zonepath: Optional[str] = None
    zpool: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class VmEvent(BaseModel):
    """
    One line of `vmadm events -rj` output. Only `type` and `date` are
    guaranteed, everything else depends on the event.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    date: datetime

    @field_validator("date", mode="before")
    @classmethod
    def date_is_a_string(cls, value: Any) -> Any:
        # pydantic would read a number as a unix timestamp
        if not isinstance(value, str):
            raise ValueError("date must be an ISO 8601 string")
        return value


# ----------------------------------------------------------------------
# HTTP API request bodies
# ----------------------------------------------------------------------
class VMLookupSchema(BaseModel):
    search: Dict[str, Any] = Field(default_factory=dict, description="field=value predicates")
    fields: Optional[List[str]] = Field(default=None, description="Only return these keys")
    include_dni: bool = False


class VMStopSchema(BaseModel):
    force: bool = False
    timeout: Optional[int] = Field(default=None, ge=1, description="Seconds before SIGKILL")
    include_dni: bool = False


class VMStartSchema(BaseModel):
    cdrom: Optional[List[str]] = None
    disk: Optional[List[str]] = None
    order: Optional[str] = None
    once: Optional[str] = None
    include_dni: bool = False


class VMKillSchema(BaseModel):
    signal: Optional[str] = Field(default=None, description="e.g. SIGTERM")
    include_dni: bool = False


class VMSysrqSchema(BaseModel):
    req: str = Field(..., description="'screenshot' or 'nmi'")
    include_dni: bool = False


class SnapshotSchema(BaseModel):
    snapshot_name: str
