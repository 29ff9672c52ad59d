import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

import main
from conftest import VM_A, VM_B, FakeBackend, FakeEventStream
from core.errors import (
    VmBackendError,
    VmNotRunningError,
    VmOperationTimeoutError,
)
from core.vm_controller import VMController
from schemas.vm_schema import VmEvent

CREATE_BODY = {"cpu_cap": 100, "cpu_shares": 100, "max_lwps": 2000}


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.add(VM_A, alias="web", state="running")
    backend.add(VM_B, alias="hidden", state="running", do_not_inventory=True)
    return backend


@pytest.fixture
def client(backend, monkeypatch):
    monkeypatch.setattr(main, "vm_controller", VMController(backend))
    monkeypatch.setattr(main, "start_background_collectors", lambda: None)
    with TestClient(main.app) as client:
        yield client


def error_code(response):
    return response.json()["detail"]["code"]


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["backend"] == "fake"


class TestInventory:
    def test_create(self, client, backend):
        response = client.post("/vms", json=dict(CREATE_BODY, alias="new", owner_uuid=VM_A))
        assert response.status_code == 201
        created = response.json()["uuid"]
        assert backend.vms[created].alias == "new"

    def test_create_invalid(self, client, backend):
        response = client.post("/vms", json={"alias": "no limits"})
        assert response.status_code == 422
        assert error_code(response) == "ValidationFailed"
        assert "create" not in backend.ops()

    def test_load(self, client):
        response = client.get(f"/vms/{VM_A}", params={"fields": "uuid,alias"})
        assert response.status_code == 200
        assert response.json() == {"uuid": VM_A, "alias": "web"}

    def test_load_hidden(self, client):
        response = client.get(f"/vms/{VM_B}")
        assert response.status_code == 404
        assert error_code(response) == "VmNotFound"
        assert response.json()["detail"]["message"] == f"vmadm load {VM_B} failed: No such zone"

        assert client.get(f"/vms/{VM_B}", params={"include_dni": "true"}).status_code == 200

    def test_exists(self, client):
        assert client.get(f"/vms/{VM_A}/exists").json() == {"uuid": VM_A, "exists": True}
        assert client.get(f"/vms/{VM_B}/exists").json()["exists"] is False

    def test_lookup(self, client):
        response = client.post("/vms/lookup", json={"search": {"state": "running"}, "fields": ["alias"]})
        assert response.status_code == 200
        assert response.json() == {"vms": [{"alias": "web"}]}

    def test_lookup_include_dni(self, client):
        response = client.post("/vms/lookup", json={"search": {"state": "running"}, "include_dni": True})
        assert len(response.json()["vms"]) == 2

    def test_lookup_by_uuid(self, client):
        response = client.post("/vms/lookup", json={"search": {"uuid": VM_A}, "fields": ["alias"]})
        assert response.json() == {"vms": [{"alias": "web"}]}

    def test_delete(self, client, backend):
        response = client.delete(f"/vms/{VM_A}")
        assert response.status_code == 200
        assert VM_A not in backend.vms

    def test_created_and_deleted_share_owner_label(self, client, backend):
        owner = "6f4c5b1e-2b5a-4c1e-9a43-1f8f3a9e7d10"
        labels = {"owner": owner}
        created_before = REGISTRY.get_sample_value("vmbridge_vm_created_total", labels) or 0
        deleted_before = REGISTRY.get_sample_value("vmbridge_vm_deleted_total", labels) or 0

        created = client.post("/vms", json=dict(CREATE_BODY, owner_uuid=owner)).json()["uuid"]
        assert client.delete(f"/vms/{created}").status_code == 200

        assert REGISTRY.get_sample_value("vmbridge_vm_created_total", labels) == created_before + 1
        assert REGISTRY.get_sample_value("vmbridge_vm_deleted_total", labels) == deleted_before + 1

    def test_delete_missing(self, client, backend):
        response = client.delete("/vms/44444444-4444-4444-8444-444444444444")
        assert response.status_code == 404
        assert "delete" not in backend.ops()

    def test_update_unsupported(self, client):
        response = client.patch(f"/vms/{VM_A}", json={"alias": "renamed"})
        assert response.status_code == 501
        assert error_code(response) == "NotImplemented"


class TestLifecycle:
    def test_stop(self, client, backend):
        response = client.post(f"/vms/{VM_A}/stop", json={"force": True, "timeout": 30})
        assert response.status_code == 200
        assert backend.calls[-1] == ("stop", VM_A, True, 30)

    def test_stop_without_body(self, client, backend):
        assert client.post(f"/vms/{VM_A}/stop").status_code == 200
        assert backend.calls[-1] == ("stop", VM_A, False, None)

    def test_start_options(self, client, backend):
        response = client.post(f"/vms/{VM_A}/start", json={"order": "cd"})
        assert response.status_code == 200
        assert backend.calls[-1] == ("start", VM_A, {"order": "cd"})

    def test_reboot(self, client, backend):
        assert client.post(f"/vms/{VM_A}/reboot", params={"force": "true"}).status_code == 200
        assert backend.calls[-1] == ("reboot", VM_A, True)

    def test_missing_vm(self, client):
        response = client.post("/vms/44444444-4444-4444-8444-444444444444/start")
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "error, status",
        [
            (VmNotRunningError("not running"), 409),
            (VmOperationTimeoutError("too slow"), 504),
            (VmBackendError("exit 1"), 502),
        ],
    )
    def test_error_mapping(self, client, backend, error, status):
        backend.errors["stop"] = error
        response = client.post(f"/vms/{VM_A}/stop")
        assert response.status_code == status
        assert error_code(response) == error.rest_code

    def test_kill_unsupported(self, client):
        assert client.post(f"/vms/{VM_A}/kill", json={"signal": "SIGKILL"}).status_code == 501

    def test_snapshot_unsupported(self, client):
        response = client.post(f"/vms/{VM_A}/snapshots", json={"snapshot_name": "before"})
        assert response.status_code == 501


def test_metrics(client):
    client.post(f"/vms/{VM_A}/stop")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "vmbridge_vm_operations_total" in response.text
    assert "vmbridge_backend_type" in response.text


class TestEventRelay:
    def test_relays_events(self, client, backend):
        backend.stream = FakeEventStream(
            [VmEvent(type="state", date="2026-05-01T12:00:01Z", zonename=VM_A, state="running")]
        )

        with client.websocket_connect(f"/ws/vms/events?uuid={VM_A}") as ws:
            event = ws.receive_json()

        assert event["type"] == "state"
        assert event["zonename"] == VM_A
        assert backend.stream.stopped
        assert backend.calls[-1] == ("events", VM_A)

    def test_unsupported_backend(self, client):
        with client.websocket_connect("/ws/vms/events") as ws:
            message = ws.receive_json()
        assert message["code"] == "NotImplemented"
