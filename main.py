import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import (
    Body,
    FastAPI,
    HTTPException,
    WebSocket,
    WebSocketDisconnect,
    Request,
)
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.settings import DEBUG, METRICS_ENABLED
from core.errors import (
    VmError,
    VmNotFoundError,
    VmNotRunningError,
    VmNotSupportedError,
    VmOperationTimeoutError,
    VmValidationError,
)
from core.vm_controller import build_controller
from core.metrics import (
    REQUEST_COUNT,
    REQUEST_LATENCY,
    record_vm_created,
    record_vm_deleted,
    record_vm_activity,
    record_operation,
    record_event_stream_change,
    init_static_metrics,
    start_background_collectors,
)
from core.logger import log_event
from schemas.vm_schema import (
    ZERO_UUID,
    SnapshotSchema,
    VMKillSchema,
    VMLookupSchema,
    VMStartSchema,
    VMStopSchema,
    VMSysrqSchema,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if METRICS_ENABLED:
        init_static_metrics()
        start_background_collectors()
        log_event("[app] Metrics enabled and collectors started")
    await vm_controller.open()
    log_event(f"[app] {vm_controller.backend.name} backend ready")
    try:
        yield
    finally:
        await vm_controller.close()


app = FastAPI(
    title="vmbridge",
    description=(
        "Control plane for machines on a single compute node.\n\n"
        "Features:\n"
        "- vmadm (SmartOS zones) or LXD backend behind one API\n"
        "- Hidden (do_not_inventory) machines excluded unless asked for\n"
        "- Lifecycle event stream over WebSocket\n"
        "- Prometheus/Grafana metrics"
    ),
    version="1.0.0",
    debug=DEBUG,
    lifespan=lifespan,
)

vm_controller = build_controller()

_STATUS_BY_ERROR = (
    (VmNotFoundError, 404),
    (VmNotRunningError, 409),
    (VmValidationError, 422),
    (VmNotSupportedError, 501),
    (VmOperationTimeoutError, 504),
)


def _http_error(exc: VmError) -> HTTPException:
    status_code = 502
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.rest_code, "message": str(exc)},
    )


async def _call(action: str, operation):
    """
    Await a controller call, count its outcome and turn VmError into the
    matching HTTP error.
    """
    backend = vm_controller.backend.name
    try:
        result = await operation
    except VmError as e:
        record_operation(backend, action, "failure")
        level = logging.INFO if isinstance(e, VmNotFoundError) else logging.ERROR
        log_event(f"[api] {action} failed: {e}", level)
        raise _http_error(e) from e
    record_operation(backend, action, "success")
    return result


async def _delete_and_get_owner(vm_uuid: str, include_dni: bool) -> str:
    vm = await vm_controller.load(vm_uuid, include_dni=include_dni, fields=["owner_uuid"])
    await vm_controller.delete(vm_uuid, include_dni=include_dni)
    return vm.get("owner_uuid", ZERO_UUID)


def _split(value: Optional[str]) -> Optional[list]:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    endpoint = request.url.path
    method = request.method

    if not METRICS_ENABLED or endpoint == "/metrics":
        return await call_next(request)

    start_time = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.time() - start_time
        REQUEST_COUNT.labels(method=method, endpoint=endpoint).inc()
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)


@app.get("/", tags=["System"])
def root():
    return {
        "message": "vmbridge is running",
        "backend": vm_controller.backend.name,
        "version": app.version,
    }


# -----------------------------
# Inventory
# -----------------------------
@app.post("/vms", tags=["VM Management"])
async def create_vm(payload: Dict[str, Any] = Body(...)):
    result = await _call("create", vm_controller.create(payload))
    record_vm_created(payload.get("owner_uuid") or ZERO_UUID)
    return JSONResponse(status_code=201, content=result)


@app.post("/vms/lookup", tags=["VM Management"])
async def lookup_vms(payload: VMLookupSchema):
    search = dict(payload.search)
    vm_uuid = search.pop("uuid", None)
    vms = await _call(
        "lookup",
        vm_controller.lookup(
            search=search,
            fields=payload.fields,
            include_dni=payload.include_dni,
            uuid=vm_uuid,
        ),
    )
    return {"vms": vms}


@app.get("/vms/{uuid}", tags=["VM Management"])
async def load_vm(uuid: str, include_dni: bool = False, fields: Optional[str] = None):
    return await _call("load", vm_controller.load(uuid, include_dni=include_dni, fields=_split(fields)))


@app.get("/vms/{uuid}/exists", tags=["VM Management"])
async def vm_exists(uuid: str, include_dni: bool = False):
    exists = await _call("exists", vm_controller.exists(uuid, include_dni=include_dni))
    return {"uuid": uuid, "exists": exists}


@app.patch("/vms/{uuid}", tags=["VM Management"])
async def update_vm(uuid: str, payload: Dict[str, Any] = Body(...), include_dni: bool = False):
    await _call("update", vm_controller.update(uuid, payload, include_dni=include_dni))
    return {"status": "updated", "uuid": uuid}


@app.delete("/vms/{uuid}", tags=["VM Management"])
async def delete_vm(uuid: str, include_dni: bool = False):
    owner = await _call("delete", _delete_and_get_owner(uuid, include_dni))
    record_vm_deleted(owner)
    return {"status": "deleted", "uuid": uuid}


@app.get("/vms/{uuid}/info", tags=["VM Management"])
async def vm_info(uuid: str, types: Optional[str] = None, include_dni: bool = False):
    return await _call("info", vm_controller.info(uuid, types=_split(types), include_dni=include_dni))


# -----------------------------
# Lifecycle
# -----------------------------
@app.post("/vms/{uuid}/start", tags=["Lifecycle"])
async def start_vm(uuid: str, payload: Optional[VMStartSchema] = None, owner: Optional[str] = None):
    payload = payload or VMStartSchema()
    options = payload.model_dump(exclude={"include_dni"}, exclude_none=True)
    await _call("start", vm_controller.start(uuid, include_dni=payload.include_dni, **options))
    record_vm_activity(owner)
    return {"status": "started", "uuid": uuid}


@app.post("/vms/{uuid}/stop", tags=["Lifecycle"])
async def stop_vm(uuid: str, payload: Optional[VMStopSchema] = None, owner: Optional[str] = None):
    payload = payload or VMStopSchema()
    await _call(
        "stop",
        vm_controller.stop(
            uuid,
            include_dni=payload.include_dni,
            force=payload.force,
            timeout=payload.timeout,
        ),
    )
    record_vm_activity(owner)
    return {"status": "stopped", "uuid": uuid}


@app.post("/vms/{uuid}/reboot", tags=["Lifecycle"])
async def reboot_vm(uuid: str, force: bool = False, include_dni: bool = False, owner: Optional[str] = None):
    await _call("reboot", vm_controller.reboot(uuid, include_dni=include_dni, force=force))
    record_vm_activity(owner)
    return {"status": "rebooted", "uuid": uuid}


@app.post("/vms/{uuid}/reprovision", tags=["Lifecycle"])
async def reprovision_vm(uuid: str, payload: Dict[str, Any] = Body(...), include_dni: bool = False):
    await _call("reprovision", vm_controller.reprovision(uuid, payload, include_dni=include_dni))
    return {"status": "reprovisioned", "uuid": uuid}


@app.post("/vms/{uuid}/kill", tags=["Lifecycle"])
async def kill_vm(uuid: str, payload: Optional[VMKillSchema] = None):
    payload = payload or VMKillSchema()
    await _call("kill", vm_controller.kill(uuid, signal=payload.signal, include_dni=payload.include_dni))
    return {"status": "killed", "uuid": uuid}


@app.post("/vms/{uuid}/sysrq", tags=["Lifecycle"])
async def sysrq_vm(uuid: str, payload: VMSysrqSchema):
    await _call("sysrq", vm_controller.sysrq(uuid, payload.req, include_dni=payload.include_dni))
    return {"status": "sent", "uuid": uuid, "req": payload.req}


# -----------------------------
# Snapshots
# -----------------------------
@app.post("/vms/{uuid}/snapshots", tags=["Snapshots"])
async def create_snapshot(uuid: str, payload: SnapshotSchema, include_dni: bool = False):
    await _call(
        "create_snapshot",
        vm_controller.create_snapshot(uuid, payload.snapshot_name, include_dni=include_dni),
    )
    return JSONResponse(
        status_code=201,
        content={"status": "created", "uuid": uuid, "snapshot_name": payload.snapshot_name},
    )


@app.post("/vms/{uuid}/snapshots/{name}/rollback", tags=["Snapshots"])
async def rollback_snapshot(uuid: str, name: str, include_dni: bool = False):
    await _call("rollback_snapshot", vm_controller.rollback_snapshot(uuid, name, include_dni=include_dni))
    return {"status": "rolled_back", "uuid": uuid, "snapshot_name": name}


@app.delete("/vms/{uuid}/snapshots/{name}", tags=["Snapshots"])
async def delete_snapshot(uuid: str, name: str, include_dni: bool = False):
    await _call("delete_snapshot", vm_controller.delete_snapshot(uuid, name, include_dni=include_dni))
    return {"status": "deleted", "uuid": uuid, "snapshot_name": name}


@app.get("/metrics", tags=["Monitoring"])
def metrics():
    if not METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# -----------------------------
# Event stream
# -----------------------------
async def _relay_events(websocket: WebSocket, stream):
    async for event in stream:
        await websocket.send_text(event.model_dump_json())


async def _drain_client(websocket: WebSocket):
    # returns once the client goes away
    async for _ in websocket.iter_text():
        pass


@app.websocket("/ws/vms/events")
async def vm_event_stream(websocket: WebSocket):
    vm_uuid = websocket.query_params.get("uuid")
    name = websocket.query_params.get("name", "vmbridge-ws")

    await websocket.accept()
    log_event(f"[ws-events] Client connected (uuid={vm_uuid})")

    try:
        stream = await vm_controller.events(vm_uuid=vm_uuid, name=name)
    except VmError as e:
        log_event(f"[ws-events] Unable to start event stream: {e}", logging.ERROR)
        await websocket.send_json({"code": e.rest_code, "message": str(e)})
        await websocket.close(code=1011)
        return

    record_event_stream_change(+1)
    relay = asyncio.create_task(_relay_events(websocket, stream))
    drain = asyncio.create_task(_drain_client(websocket))
    try:
        done, pending = await asyncio.wait(
            [relay, drain],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if relay in done and relay.exception() is not None:
            error = relay.exception()
            log_event(f"[ws-events] Event stream failed: {error}", logging.ERROR)
            if isinstance(error, VmError):
                await websocket.send_json({"code": error.rest_code, "message": str(error)})
    except WebSocketDisconnect:
        log_event("[ws-events] Client disconnected")
    finally:
        stream.stop()
        await stream.wait_closed()
        record_event_stream_change(-1)
        try:
            await websocket.close()
        except RuntimeError:
            # already closed by the client
            pass
        log_event(f"[ws-events] Event stream closed (uuid={vm_uuid})")
