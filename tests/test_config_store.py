from vmhost_installer.config_store import DEFAULTS, ConfigRecord, load_config


def test_partial_file_gets_every_default(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("dry_run: false\nvm_count: 3\n", encoding="utf-8")

    cfg = load_config(str(path))
    assert cfg.dry_run is False
    assert cfg.get_int("vm_count") == 3
    for key in DEFAULTS:
        assert key in cfg
    assert cfg.get_str("auto_reboot_after_steps") == "03_nic_naming 05_kernel_tuning"


def test_set_persists_immediately(tmp_path):
    path = str(tmp_path / "config.yaml")
    cfg = load_config(path)
    cfg.set("appliance_version", "7.0.1")

    assert load_config(path).get_str("appliance_version") == "7.0.1"


def test_legacy_conf_file_values_are_typed_on_read(tmp_path):
    path = tmp_path / "installer.conf"
    path.write_text('DRY_RUN="0"\nVM_COUNT="1"\nVM_NAMES="alpha beta"\n', encoding="utf-8")

    cfg = load_config(str(path))
    assert cfg.dry_run is False
    assert cfg.get_int("vm_count") == 1
    assert cfg.vm_ids() == ["alpha"]


def test_vm_ids_are_padded_to_vm_count():
    cfg = ConfigRecord({"vm_count": 3, "vm_names": "a"})
    assert cfg.vm_ids() == ["a", "appliance2", "appliance3"]


def test_masked_hides_passwords():
    cfg = ConfigRecord({"image_repo_password": "s3cret"})
    assert cfg.masked()["image_repo_password"] == "(configured)"
    assert cfg.get_str("image_repo_password") == "s3cret"


def test_bad_integer_falls_back_to_default():
    cfg = ConfigRecord({"total_vcpus": "many"})
    assert cfg.get_int("total_vcpus", 8) == 8
