import pytest

from conftest import FakeRunner, ScriptedPrompter
from vmhost_installer.config_store import load_config
from vmhost_installer.errors import UserCancelled
from vmhost_installer.main import Session, build_orchestrator, build_parser, build_registry, main, parse_value
from vmhost_installer.menu import EXIT, STATUS, run_menu
from vmhost_installer.state_store import StepStateStore


@pytest.fixture
def cli_args(tmp_path):
    return [
        "--config",
        str(tmp_path / "config.yaml"),
        "--state",
        str(tmp_path / "state.yaml"),
        "--log",
        str(tmp_path / "install.log"),
    ]


def test_registry_has_the_ten_steps_in_order():
    ids = [s.step_id for s in build_registry().steps]
    assert ids == [
        "01_hw_detect",
        "02_hwe_kernel",
        "03_nic_naming",
        "04_kvm_libvirt",
        "05_kernel_tuning",
        "06_libvirt_hooks",
        "07_volumes",
        "08_deploy",
        "09_passthrough",
        "10_install_cli",
    ]
    assert [s.step_id for s in build_registry().steps if s.reboot_hint] == ["03_nic_naming", "05_kernel_tuning"]


def test_parse_value():
    assert parse_value("true") is True
    assert parse_value("4") == 4
    assert parse_value("6.2.0") == "6.2.0"
    assert parse_value("a b") == "a b"
    assert parse_value("[1, 2]") == "[1, 2]"


def test_set_persists_a_known_key(cli_args, tmp_path):
    assert main(cli_args + ["set", "vm_count", "3"]) == 0
    assert load_config(str(tmp_path / "config.yaml")).get_int("vm_count") == 3


def test_set_accepts_per_vm_keys(cli_args, tmp_path):
    assert main(cli_args + ["set", "cpuset_appliance1", "0-3"]) == 0
    assert load_config(str(tmp_path / "config.yaml")).get_str("cpuset_appliance1") == "0-3"


def test_set_rejects_unknown_keys(cli_args, capsys):
    assert main(cli_args + ["set", "colour", "blue"]) == 2
    assert "Unknown configuration key" in capsys.readouterr().out


def test_status_shows_next_step(cli_args, tmp_path, capsys):
    StepStateStore(str(tmp_path / "state.yaml")).mark_completed("02_hwe_kernel")

    assert main(cli_args + ["status"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[1].split()[:2] == ["02_hwe_kernel", "done"]
    assert lines[2].split()[:2] == ["03_nic_naming", "next"]


def test_show_config_hides_passwords(cli_args, capsys):
    main(cli_args + ["set", "image_repo_password", "hunter2"])
    capsys.readouterr()

    assert main(cli_args + ["show-config"]) == 0
    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert "image_repo_password: (configured)" in out


def test_reset_with_yes_removes_state(cli_args, tmp_path):
    store = StepStateStore(str(tmp_path / "state.yaml"))
    store.mark_completed("01_hw_detect")

    assert main(cli_args + ["--yes", "reset"]) == 0
    assert store.load().last_completed_step_id is None


def test_parser_requires_a_step_id_for_run_step():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run-step"])


def test_menu_shows_status_then_exits(paths, config):
    prompter = ScriptedPrompter(choices=[STATUS, EXIT])

    def open_session():
        return Session(config, paths, build_orchestrator(config, paths, prompter, runner=FakeRunner()))

    assert run_menu(open_session, prompter) == 0
    assert prompter.notices[0].splitlines()[0] == "[>] 01_hw_detect  Hardware detection, NIC and resource selection"


def test_menu_cancel_asks_before_exiting(paths, config):
    prompter = ScriptedPrompter(choices=[UserCancelled("ctrl-c")], confirms=[True])

    def open_session():
        return Session(config, paths, build_orchestrator(config, paths, prompter, runner=FakeRunner()))

    assert run_menu(open_session, prompter) == 0
    assert prompter.questions[-1] == "Exit the installer?"
