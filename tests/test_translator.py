import json

import pytest

from conftest import VM_A, descriptor
from core.errors import VmValidationError
from core.translator import (
    MIB,
    ORIGINAL_PAYLOAD_KEY,
    LxdTranslator,
    VmadmTranslator,
    dash_fingerprint,
    validate_descriptor,
)
from schemas.vm_schema import ImageRef, Nic

FINGERPRINT = "8a0bd0ab7a7e5f6a2f3b2c6b8d3f1e0a9c7b6a5f4e3d2c1b0a99887766554433"


@pytest.fixture
def lxd():
    return LxdTranslator(nic_parents={"admin": "eth0", "external": "eth1"})


def full_descriptor(**overrides):
    fields = dict(
        alias="web01",
        autoboot=True,
        create_timestamp="2026-03-01T10:00:00.000Z",
        customer_metadata={"root_authorized_keys": "ssh-ed25519 AAAA one\nssh-ed25519 BBBB two\n"},
        do_not_inventory=False,
        max_physical_memory=2048,
        quota=25,
        owner_uuid="930896af-bf8c-48d4-885c-6573a94b1853",
        resolvers=["8.8.8.8", "8.8.4.4"],
        state="running",
        tags={"role": "web", "tier": 1},
        nics=[
            {
                "nic_tag": "external",
                "mac": "90:b8:d0:0c:1f:01",
                "ip": "10.88.88.50",
                "netmask": "255.255.255.0",
                "gateway": "10.88.88.1",
                "primary": True,
                "vlan_id": 12,
            },
            {
                "nic_tag": "admin",
                "mac": "90:b8:d0:0c:1f:02",
                "ip": "10.99.99.50",
                "netmask": "255.255.255.0",
                "gateway": "10.99.99.1",
            },
        ],
    )
    fields.update(overrides)
    return descriptor(VM_A, **fields)


class TestLxdRoundTrip:
    def test_descriptor_survives_round_trip(self, lxd):
        vm = full_descriptor()
        native = lxd.to_native(vm)
        native["status"] = "Running"

        assert lxd.from_native(native).to_payload() == vm.to_payload()

    def test_unknown_fields_are_preserved(self, lxd):
        vm = full_descriptor(billing_id="b-123", package_name="sample-1G")
        native = lxd.to_native(vm)
        native["status"] = "Running"

        back = lxd.from_native(native).to_payload()
        assert back["billing_id"] == "b-123"
        assert back["package_name"] == "sample-1G"

    @pytest.mark.parametrize("mib", [1, 256, 3000, 65536])
    def test_memory_is_lossless(self, lxd, mib):
        native = lxd.to_native(full_descriptor(max_physical_memory=mib))
        assert native["config"]["limits.memory"] == str(mib * MIB)

        native["status"] = "Stopped"
        assert lxd.from_native(native).max_physical_memory == mib


class TestLxdToNative:
    def test_config_keys(self, lxd):
        native = lxd.to_native(full_descriptor(cpu_cap=350, cpu_shares=4, max_lwps=4000))
        config = native["config"]

        assert native["name"] == f"triton-{VM_A}"
        assert native["type"] == "container"
        assert config["boot.autostart"] == "true"
        assert config["limits.cpu.allowance"] == "350%"
        assert config["limits.cpu"] == "4"
        assert config["limits.processes"] == "4000"
        assert config["volatile.root.apply_quota"] == "25GiB"
        assert config["user.triton.alias"] == "web01"
        assert config["user.triton.do_not_inventory"] == "false"
        assert json.loads(config["user.triton.tags"]) == {"role": "web", "tier": 1}
        assert json.loads(config[ORIGINAL_PAYLOAD_KEY])["alias"] == "web01"
        assert native["created_at"] == "2026-03-01T10:00:00.000Z"

    def test_user_data_carries_ssh_keys(self, lxd):
        user_data = lxd.to_native(full_descriptor())["config"]["user.user-data"]

        assert user_data.startswith("#cloud-config\n")
        body = json.loads(user_data[len("#cloud-config\n"):])
        assert body == {"ssh_authorized_keys": ["ssh-ed25519 AAAA one", "ssh-ed25519 BBBB two"]}

    def test_nic_devices(self, lxd):
        devices = lxd.to_native(full_descriptor())["devices"]

        assert devices["net0"] == {
            "hwaddr": "90:b8:d0:0c:1f:01",
            "name": "net0",
            "nictype": "macvlan",
            "parent": "eth1",
            "type": "nic",
            "vlan": "12",
        }
        assert devices["net1"]["parent"] == "eth0"
        assert devices["net1"]["vlan"] == "0"

    def test_network_config(self, lxd):
        raw = lxd.to_native(full_descriptor())["config"]["user.network-config"]
        header = "#cloud-config\n# generated by vmbridge\n"
        assert raw.startswith(header)

        config = json.loads(raw[len(header):])["network"]["config"]
        primary, secondary, ns1, ns2 = config

        assert primary["subnets"][0]["gateway"] == "10.88.88.1"
        assert "gateway" not in secondary["subnets"][0]
        assert secondary["subnets"][0]["address"] == "10.99.99.50"
        assert ns1 == {"type": "nameserver", "address": "8.8.8.8"}
        assert ns2 == {"type": "nameserver", "address": "8.8.4.4"}

    def test_unknown_nic_tag_is_rejected(self, lxd):
        nic = Nic(nic_tag="storage", mac="90:b8:d0:0c:1f:03", ip="10.1.1.1", netmask="255.0.0.0")
        with pytest.raises(VmValidationError, match="storage"):
            lxd.to_native(full_descriptor(nics=[nic]))

    def test_no_nics_no_network_config(self, lxd):
        native = lxd.to_native(full_descriptor(nics=None, resolvers=None))
        assert "devices" not in native
        assert "user.network-config" not in native["config"]


class TestImageSource:
    def source(self, lxd, **fields):
        return lxd.to_native(descriptor(VM_A, **fields))["source"]

    def test_fingerprint_wins(self, lxd):
        image = ImageRef(fingerprint="abcdef12", uuid="99999999-0000-0000-0000-000000000000")
        assert self.source(lxd, image=image, image_uuid="77777777-0000-0000-0000-000000000000") == {
            "type": "image",
            "fingerprint": "abcdef12",
        }

    def test_image_uuid_prefix(self, lxd):
        image = ImageRef(uuid="99999999-0000-0000-0000-000000000000", alias="ubuntu")
        assert self.source(lxd, image=image)["fingerprint"] == "99999999"

    def test_top_level_image_uuid(self, lxd):
        assert self.source(lxd, image_uuid="77777777-0000-0000-0000-000000000000")["fingerprint"] == "77777777"

    def test_alias(self, lxd):
        assert self.source(lxd, image=ImageRef(alias="ubuntu/24.04")) == {"type": "image", "alias": "ubuntu/24.04"}

    def test_properties_fallback(self, lxd):
        image = ImageRef(os="ubuntu", release="noble")
        assert self.source(lxd, image=image) == {
            "type": "image",
            "properties": {"os": "ubuntu", "release": "noble"},
        }


class TestLxdFromNative:
    def test_instance_without_snapshot(self, lxd):
        vm = lxd.from_native(
            {
                "name": f"triton-{VM_A}",
                "status": "Frozen",
                "created_at": "2026-01-02T03:04:05Z",
                "config": {
                    "limits.memory": str(512 * MIB),
                    "volatile.base_image": FINGERPRINT,
                    "image.os": "ubuntu",
                    "boot.autostart": "false",
                    "user.triton.do_not_inventory": "true",
                },
            }
        )

        assert vm.uuid == VM_A
        assert vm.state == "frozen"
        assert vm.cpu_cap == 100
        assert vm.cpu_shares == 100
        assert vm.max_lwps == 2000
        assert vm.max_physical_memory == 512
        assert vm.autoboot is False
        assert vm.do_not_inventory is True
        assert vm.image_uuid == "8a0bd0ab-7a7e-5f6a-2f3b-2c6b8d3f1e0a"
        assert vm.image.fingerprint == FINGERPRINT
        assert vm.image.model_dump()["os"] == "ubuntu"
        assert vm.create_timestamp == "2026-01-02T03:04:05Z"

    @pytest.mark.parametrize(
        "status, state",
        [("Running", "running"), ("Starting", "provisioning"), ("Stopped", "stopped"), ("Frozen", "frozen")],
    )
    def test_status_map(self, lxd, status, state):
        native = lxd.to_native(full_descriptor())
        native["status"] = status
        assert lxd.from_native(native).state == state

    def test_missing_config_is_rejected(self, lxd):
        with pytest.raises(VmValidationError):
            lxd.from_native({"name": f"triton-{VM_A}", "status": "Running"})

    def test_missing_status_is_rejected(self, lxd):
        with pytest.raises(VmValidationError):
            lxd.from_native({"name": f"triton-{VM_A}", "config": {}})


class TestNaming:
    def test_uuid_gets_prefix(self, lxd):
        assert lxd.native_name(VM_A) == f"triton-{VM_A}"
        assert lxd.canonical_uuid(f"triton-{VM_A}") == VM_A

    def test_other_names_pass_through(self, lxd):
        assert lxd.native_name("web01") == "web01"
        assert lxd.canonical_uuid("triton-web01") == "triton-web01"
        assert lxd.canonical_uuid("web01") == "web01"

    def test_vmadm_names_are_bare(self):
        vmadm = VmadmTranslator()
        assert vmadm.native_name(VM_A) == VM_A
        assert vmadm.canonical_uuid(VM_A) == VM_A


def test_dash_fingerprint():
    assert dash_fingerprint(FINGERPRINT) == "8a0bd0ab-7a7e-5f6a-2f3b-2c6b8d3f1e0a"


def test_validate_descriptor_requires_limits():
    with pytest.raises(VmValidationError):
        validate_descriptor({"alias": "no-limits"})


def test_too_many_resolvers_rejected():
    with pytest.raises(VmValidationError):
        validate_descriptor(
            {"cpu_cap": 100, "cpu_shares": 100, "max_lwps": 2000, "resolvers": ["1.1.1.1"] * 7}
        )
