from pathlib import Path

import pytest

from conftest import FakeRunner, rename_nic
from vmhost_installer.errors import ValidationError
from vmhost_installer.lib.virsh import Hypervisor, hostdev_xml, parse_hostdev_addresses, parse_vcpupin
from vmhost_installer.verify import full_validation_report, poll, render_report


class StubbornRunner(FakeRunner):
    """Guests ignore ACPI shutdown requests."""

    def _apply(self, argv):
        if argv[:2] == ["virsh", "shutdown"]:
            return
        super()._apply(argv)


def test_hostdev_xml_round_trips_through_the_parser():
    xml = f"<domain><devices>{hostdev_xml('0000:3b:00.1')}</devices></domain>"
    assert parse_hostdev_addresses(xml) == ["0000:3b:00.1"]


def test_malformed_pci_address_is_rejected():
    with pytest.raises(ValidationError):
        hostdev_xml("3b:00.1")


def test_usb_hostdevs_are_ignored():
    xml = "<domain><devices><hostdev mode='subsystem' type='usb'><source/></hostdev></devices></domain>"
    assert parse_hostdev_addresses(xml) == []


def test_parse_vcpupin_output():
    out = "VCPU   CPU Affinity\n----------------------\n 0      0,2\n 1      0,2\n"
    assert parse_vcpupin(out) == {0: "0,2", 1: "0,2"}


def test_safe_restart_forces_stop_after_timeout(tmp_path):
    runner = StubbornRunner()
    runner.define_domain("appliance1", running=True)
    sleeps = []
    hv = Hypervisor(runner, work_dir=str(tmp_path), sleep=sleeps.append)

    hv.safe_restart("appliance1", timeout_s=6, interval_s=2)

    assert runner.count("virsh", "destroy", "appliance1") == 1
    assert runner.calls[-1] == ["virsh", "start", "appliance1"]
    assert sleeps == [2, 2]


def test_safe_restart_is_skipped_in_simulation(tmp_path):
    runner = FakeRunner(dry_run=True)
    Hypervisor(runner, work_dir=str(tmp_path)).safe_restart("appliance1")
    assert runner.calls == []


def test_pin_cpus_never_exceeds_the_domain_maximum(tmp_path):
    runner = FakeRunner()
    runner.define_domain("appliance1", max_vcpus=2)
    pinned = Hypervisor(runner, work_dir=str(tmp_path)).pin_cpus("appliance1", "0-3", 8)

    assert pinned == 2
    assert runner.pins["appliance1"] == {0: "0-3", 1: "0-3"}
    assert runner.count("virsh", "emulatorpin", "appliance1", "0-3") == 1


def test_poll_stops_at_first_success():
    answers = iter([False, True, True])
    sleeps = []
    assert poll(lambda: next(answers), attempts=5, interval_s=1, sleep=sleeps.append)
    assert sleeps == [1]


def test_validation_report_covers_every_section(ctx):
    report = full_validation_report(ctx)
    titles = [title for title, _ in report]
    assert len(titles) >= 5
    text = render_report(report)
    for title in titles:
        assert title in text


def test_validation_report_leaves_config_untouched_after_rename(ctx, host_root):
    ctx.resolver.record("uplink", "eth0")
    config_file = Path(ctx.paths.config_file)
    before = config_file.read_bytes()

    rename_nic(host_root, "eth0", "uplink0")
    report = full_validation_report(ctx)

    assert config_file.read_bytes() == before
    assert ctx.config.get_str("nic_uplink_name") == "eth0"
    assert "uplink0" in render_report(report)
