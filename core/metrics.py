import threading
import time
from typing import Optional

import psutil
from prometheus_client import Counter, Gauge, Histogram

from config.settings import (
    METRICS_REFRESH_INTERVAL,
    VM_BACKEND,
)
from core.logger import log_event

BACKEND_TYPES = ("vmadm", "lxd", "dummy")

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vmbridge_requests_total",
    "Total HTTP requests to vmbridge",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vmbridge_request_latency_seconds",
    "Latency of HTTP requests to vmbridge",
    ["endpoint"],
)


# -----------------------------
# VM / owner metrics
# -----------------------------
VM_CREATED_TOTAL = Counter(
    "vmbridge_vm_created_total",
    "Total number of VMs created",
    ["owner"],
)

VM_DELETED_TOTAL = Counter(
    "vmbridge_vm_deleted_total",
    "Total number of VMs deleted",
    ["owner"],
)

VM_LAST_ACTIVITY = Gauge(
    "vmbridge_vm_last_activity_timestamp",
    "UNIX timestamp of the last VM operation for a given owner",
    ["owner"],
)

VM_OPERATIONS_TOTAL = Counter(
    "vmbridge_vm_operations_total",
    "Lifecycle operations by backend and outcome",
    ["backend", "action", "outcome"],
)

EVENT_STREAMS_ACTIVE = Gauge(
    "vmbridge_event_streams_active",
    "Number of event streams currently relayed over WebSocket",
)

# -----------------------------
# Host / capacity metrics
# -----------------------------
HOST_CPU_USAGE = Gauge(
    "vmbridge_host_cpu_usage_percent",
    "Host CPU usage in percent",
)

HOST_MEMORY_USAGE = Gauge(
    "vmbridge_host_memory_usage_percent",
    "Host memory usage in percent",
)

HOST_DISK_USAGE = Gauge(
    "vmbridge_host_disk_usage_percent",
    "Host disk usage (root filesystem) in percent",
)

BACKEND_INFO = Gauge(
    "vmbridge_backend_type",
    "Label gauge exposing the configured VM backend (for Grafana filters)",
    ["type"],
)


def init_static_metrics() -> None:
    # 1.0 for the configured backend, 0.0 for the others
    for backend in BACKEND_TYPES:
        value = 1.0 if backend == VM_BACKEND else 0.0
        BACKEND_INFO.labels(type=backend).set(value)


def record_vm_created(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_CREATED_TOTAL.labels(owner=owner_label).inc()
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_vm_deleted(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_DELETED_TOTAL.labels(owner=owner_label).inc()
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_vm_activity(owner: Optional[str]) -> None:
    owner_label = owner or "anonymous"
    VM_LAST_ACTIVITY.labels(owner=owner_label).set(time.time())


def record_operation(backend: str, action: str, outcome: str) -> None:
    VM_OPERATIONS_TOTAL.labels(backend=backend, action=action, outcome=outcome).inc()


def record_event_stream_change(delta: int) -> None:
    EVENT_STREAMS_ACTIVE.inc(delta)


def start_background_collectors() -> None:
    """
    Collect host-level capacity metrics periodically using psutil.
    """

    def loop() -> None:
        log_event("[metrics] Starting background host metrics collector")
        while True:
            try:
                HOST_CPU_USAGE.set(psutil.cpu_percent(interval=1))
                HOST_MEMORY_USAGE.set(psutil.virtual_memory().percent)
                HOST_DISK_USAGE.set(psutil.disk_usage("/").percent)
            except Exception as e:  # noqa: BLE001
                log_event(f"[metrics] Collector error: {e}")
            time.sleep(METRICS_REFRESH_INTERVAL)

    t = threading.Thread(target=loop, daemon=True)
    t.start()
