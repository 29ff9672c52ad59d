import os
from pathlib import Path
from typing import Dict

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root: vmbridge/

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vmbridge.log"

# TRACE, DEBUG, INFO, WARNING, ERROR
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def _parse_nic_tags(raw: str) -> Dict[str, str]:
    """
    Parse "admin:eth0,external:eth1" into {"admin": "eth0", "external": "eth1"}.
    """
    table: Dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        tag, _, parent = entry.partition(":")
        if not parent:
            raise ValueError(f"Invalid NIC_TAG_PARENTS entry: {entry!r}")
        table[tag.strip()] = parent.strip()
    return table


# -----------------------------
# Backend selection
# -----------------------------
#   vmadm  -> /usr/sbin/vmadm subprocess (SmartOS style zones)
#   lxd    -> LXD REST API over its local unix socket
#   dummy  -> JSON files in DUMMY_VM_DIR, for running without a hypervisor
VM_BACKEND = os.getenv("VM_BACKEND", "vmadm").lower()

# Keep loaded descriptors around between calls
CACHING_ENABLED = os.getenv("CACHING_ENABLED", "false").lower() == "true"

# -----------------------------
# vmadm (subprocess backend)
# -----------------------------
VMADM_PATH = os.getenv("VMADM_PATH", "/usr/sbin/vmadm")

# zone configuration files, one <uuid>.xml per VM
ZONES_CONFIG_DIR = Path(os.getenv("ZONES_CONFIG_DIR", "/etc/zones"))

# how much of the stderr output of a failed create is kept in the error
STDERR_TRUNCATE_LENGTH = int(os.getenv("STDERR_TRUNCATE_LENGTH", "10000"))

# -----------------------------
# LXD (HTTP/event backend)
# -----------------------------
LXD_SOCKET = os.getenv("LXD_SOCKET", "/var/lib/lxd/unix.socket")

# instance names are "<prefix><uuid>"
LXD_NAME_PREFIX = os.getenv("LXD_NAME_PREFIX", "triton-")

# seconds to wait for an LXD operation to settle; unset waits forever
_operation_timeout = os.getenv("OPERATION_TIMEOUT")
OPERATION_TIMEOUT = float(_operation_timeout) if _operation_timeout else None

# logical nic tag -> physical parent device on this host
NIC_TAG_PARENTS = _parse_nic_tags(os.getenv("NIC_TAG_PARENTS", "admin:eth0"))

# -----------------------------
# dummy (JSON file backend)
# -----------------------------
# one <uuid>.json per VM
DUMMY_VM_DIR = Path(os.getenv("DUMMY_VM_DIR", str(BASE_DIR / "dummy" / "vms")))

# seconds between directory scans of the event stream
DUMMY_POLL_INTERVAL = float(os.getenv("DUMMY_POLL_INTERVAL", "1.0"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
METRICS_REFRESH_INTERVAL = int(os.getenv("METRICS_REFRESH_INTERVAL", "5"))

# -----------------------------
# Misc
# -----------------------------
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
