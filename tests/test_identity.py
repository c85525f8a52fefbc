import pytest

from conftest import make_nic, rename_nic
from vmhost_installer.config_store import ConfigRecord, load_config
from vmhost_installer.errors import DeviceNotFound, ValidationError
from vmhost_installer.identity import DeviceIdentity, DeviceRole, IdentityResolver, parse_slot
from vmhost_installer.lib.sysnet import SysNet


def test_live_name_is_the_fast_path(host_root):
    cfg = ConfigRecord({"nic_uplink_name": "eth0", "nic_uplink_pci": "0000:99:00.0"})
    resolver = IdentityResolver(cfg, SysNet(str(host_root)))
    assert resolver.resolve_slot("uplink") == "eth0"


def test_stale_name_resolves_by_bus_address_and_is_updated(host_root, tmp_path):
    path = str(tmp_path / "config.yaml")
    cfg = load_config(path)
    resolver = IdentityResolver(cfg, SysNet(str(host_root)))
    resolver.record("management", "eth1")

    rename_nic(host_root, "eth1", "mgmt")

    assert resolver.resolve_slot("management") == "mgmt"
    assert cfg.get_str("nic_management_name") == "mgmt"
    assert load_config(path).get_str("nic_management_name") == "mgmt"


def test_bus_address_wins_over_hardware_address(host_root):
    # The MAC points at eth3 but the PCI slot is eth2's; the slot is authoritative.
    ident = DeviceIdentity(
        role=DeviceRole.capture,
        index=1,
        bus_address="0000:03:00.0",
        hardware_address="aa:bb:cc:00:00:04",
        last_known_name="gone0",
    )
    resolver = IdentityResolver(ConfigRecord(), SysNet(str(host_root)))
    assert resolver.resolve(ident) == "eth2"


def test_hardware_address_fallback_backfills_bus_address(host_root):
    cfg = ConfigRecord({"nic_capture1_name": "old0", "nic_capture1_mac": "AA-BB-CC-00-00-03"})
    resolver = IdentityResolver(cfg, SysNet(str(host_root)))

    assert resolver.resolve_slot("capture1") == "eth2"
    assert cfg.get_str("nic_capture1_name") == "eth2"
    assert cfg.get_str("nic_capture1_pci") == "0000:03:00.0"


def test_unresolvable_identity_raises_with_role_and_identity(host_root):
    cfg = ConfigRecord({"nic_uplink_name": "nope0", "nic_uplink_pci": "0000:77:00.0"})
    resolver = IdentityResolver(cfg, SysNet(str(host_root)))

    with pytest.raises(DeviceNotFound) as exc:
        resolver.resolve_slot("uplink", step_id="09_passthrough")
    assert exc.value.role == "uplink"
    assert exc.value.step_id == "09_passthrough"
    assert "0000:77:00.0" in str(exc.value)


def test_find_slot_follows_a_rename_without_writing_config(host_root, tmp_path):
    path = tmp_path / "config.yaml"
    resolver = IdentityResolver(load_config(str(path)), SysNet(str(host_root)))
    resolver.record("uplink", "eth0")
    before = path.read_bytes()

    rename_nic(host_root, "eth0", "uplink0")

    assert resolver.find_slot("uplink") == "uplink0"
    assert resolver.find_slot("capture1") is None
    assert path.read_bytes() == before


def test_empty_identity_is_not_found(host_root):
    resolver = IdentityResolver(ConfigRecord(), SysNet(str(host_root)))
    with pytest.raises(DeviceNotFound):
        resolver.resolve_slot("management")


def test_record_captures_hardware_identity(host_root):
    cfg = ConfigRecord()
    ident = IdentityResolver(cfg, SysNet(str(host_root))).record("uplink", "eth0")

    assert ident.bus_address == "0000:01:00.0"
    assert ident.hardware_address == "aa:bb:cc:00:00:01"
    assert cfg.get_str("nic_uplink_pci") == "0000:01:00.0"
    assert cfg.get_str("nic_uplink_mac") == "aa:bb:cc:00:00:01"


def test_virtual_nic_has_no_bus_address(host_root):
    make_nic(host_root, "veth9", mac="02:00:00:00:00:09")
    net = SysNet(str(host_root))
    assert net.bus_address("veth9") is None
    assert "veth9" not in net.nic_candidates()
    assert "lo" not in net.nic_candidates()


def test_parse_slot():
    assert parse_slot("capture2") == (DeviceRole.capture, 2)
    assert parse_slot("uplink") == (DeviceRole.uplink, None)
    with pytest.raises(ValidationError):
        parse_slot("capture")
    with pytest.raises(ValidationError):
        parse_slot("wan")
