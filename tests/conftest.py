from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from vmhost_installer.config_store import ConfigRecord, load_config
from vmhost_installer.context import StepContext, build_context
from vmhost_installer.errors import ActionFailure
from vmhost_installer.lib.command import CmdResult, CommandRunner
from vmhost_installer.lib.env import Paths
from vmhost_installer.topology import TopologyReader


class ScriptedPrompter:
    """Answers prompts from queues; falls back to defaults when a queue runs dry."""

    def __init__(self, confirms=(), answers=(), choices=(), multi=()):
        self.confirms = list(confirms)
        self.answers = list(answers)
        self.choices = list(choices)
        self.multi = list(multi)
        self.questions: List[str] = []
        self.notices: List[str] = []

    @staticmethod
    def _next(queue, fallback):
        if not queue:
            return fallback
        value = queue.pop(0)
        if isinstance(value, BaseException):
            raise value
        return value

    def confirm(self, question, *, default=True):
        self.questions.append(question)
        return self._next(self.confirms, True)

    def ask(self, question, *, default=None, secret=False):
        self.questions.append(question)
        return self._next(self.answers, default or "")

    def choose(self, question, options, *, default=None):
        self.questions.append(question)
        return self._next(self.choices, default if default in options else options[0])

    def choose_many(self, question, options, *, default=()):
        self.questions.append(question)
        return self._next(self.multi, list(default))

    def notify(self, message):
        self.notices.append(message)


_ADDR_RE = re.compile(r"domain='0x(\w+)' bus='0x(\w+)' slot='0x(\w+)' function='0x(\w+)'")


class FakeRunner(CommandRunner):
    """Command runner backed by an in-memory model of LVM, mounts, libvirt, dpkg and cron."""

    def __init__(self, *, dry_run: bool = False, vg: str = "ubuntu-vg", vg_free_gb: int = 500) -> None:
        super().__init__(dry_run=dry_run)
        self.vg = vg
        self.vg_free_gb = vg_free_gb
        self.calls: List[List[str]] = []
        self.lvs: set = set()
        self.mounts: Dict[str, str] = {}
        # name -> {"max_vcpus": int, "running": bool}
        self.domains: Dict[str, Dict] = {}
        self.hostdevs: Dict[str, List[str]] = {}
        self.pins: Dict[str, Dict[int, str]] = {}
        self.packages: set = set()
        self.crontab: Optional[str] = None
        self.rules: set = set()
        self.fail_on: set = set()

    def define_domain(self, name: str, *, max_vcpus: int = 4, running: bool = False) -> None:
        self.domains[name] = {"max_vcpus": max_vcpus, "running": running}
        self.hostdevs.setdefault(name, [])
        self.pins.setdefault(name, {})

    def count(self, *prefix: str) -> int:
        return sum(1 for c in self.calls if tuple(c[: len(prefix)]) == prefix)

    def run(self, argv, *, check=True, env=None, cwd=None, input_text=None) -> CmdResult:
        argv = list(argv)
        self.calls.append(argv)
        if self.dry_run:
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")
        if argv[0] in self.fail_on:
            if check:
                raise ActionFailure(f"Command failed (1): {argv[0]}", argv=argv, returncode=1)
            return CmdResult(argv=argv, returncode=1, stdout="", stderr="")
        self._apply(argv)
        return CmdResult(argv=argv, returncode=0, stdout="", stderr="")

    def _apply(self, argv: List[str]) -> None:
        if argv[0] == "iptables" and "-A" in argv:
            self.rules.add(tuple("-C" if a == "-A" else a for a in argv))
        elif argv[:2] == ["apt-get", "install"]:
            self.packages.update(a for a in argv[2:] if not a.startswith("-"))
        elif argv[0] == "lvcreate":
            self.lvs.add(f"{argv[-1]}/{argv[argv.index('-n') + 1]}")
        elif argv[0] == "mount":
            self.mounts[argv[2]] = argv[1]
        elif argv[0] == "crontab":
            self.crontab = Path(argv[1]).read_text(encoding="utf-8")
        elif argv[:2] == ["virsh", "attach-device"]:
            text = Path(argv[3]).read_text(encoding="utf-8")
            d, b, s, f = _ADDR_RE.search(text).groups()
            self.hostdevs[argv[2]].append(f"{d}:{b}:{s}.{f}")
        elif argv[:2] == ["virsh", "vcpupin"]:
            self.pins[argv[2]][int(argv[3])] = argv[4]
        elif argv[:2] == ["virsh", "shutdown"] or argv[:2] == ["virsh", "destroy"]:
            self.domains[argv[2]]["running"] = False
        elif argv[:2] == ["virsh", "start"]:
            self.domains[argv[2]]["running"] = True
        elif argv[:2] == ["virsh", "undefine"]:
            self.domains.pop(argv[2], None)

    def _ok(self, argv, stdout: str = "", ok: bool = True) -> CmdResult:
        return CmdResult(argv=list(argv), returncode=0 if ok else 1, stdout=stdout, stderr="")

    def probe(self, argv) -> CmdResult:
        a = list(argv)
        if a[0] == "lvs":
            return self._ok(a, ok=a[1] in self.lvs)
        if a[0] == "vgs":
            return self._ok(a, f"  {self.vg_free_gb}.00\n")
        if a[0] == "mountpoint":
            return self._ok(a, ok=a[-1] in self.mounts)
        if a[0] == "findmnt":
            return self._ok(a, self.mounts.get(a[-1], ""), ok=a[-1] in self.mounts)
        if a[0] == "dpkg-query":
            return self._ok(a, "install ok installed" if a[-1] in self.packages else "", ok=a[-1] in self.packages)
        if a[0] == "crontab":
            return self._ok(a, self.crontab or "", ok=self.crontab is not None)
        if a[0] == "iptables":
            return self._ok(a, ok=tuple(a) in self.rules)
        if a[0] == "systemctl":
            return self._ok(a, "active\n")
        if a[0] == "virsh":
            return self._virsh(a)
        return self._ok(a, ok=False)

    def _virsh(self, a: List[str]) -> CmdResult:
        sub = a[1]
        if sub == "list":
            names = [n for n, d in self.domains.items() if "--all" in a or d["running"]]
            return self._ok(a, "\n".join(names) + "\n")
        name = a[2] if len(a) > 2 else ""
        if name not in self.domains:
            return self._ok(a, ok=False)
        if sub == "dominfo":
            return self._ok(a)
        if sub == "domstate":
            return self._ok(a, "running\n" if self.domains[name]["running"] else "shut off\n")
        if sub == "vcpucount":
            return self._ok(a, f"{self.domains[name]['max_vcpus']}\n")
        if sub == "dumpxml":
            devs = ""
            for pci in self.hostdevs[name]:
                d, rest = pci.split(":", 1)
                b, rest = rest.split(":", 1)
                s, f = rest.split(".")
                devs += (
                    "<hostdev mode='subsystem' type='pci' managed='yes'><source>"
                    f"<address domain='0x{d}' bus='0x{b}' slot='0x{s}' function='0x{f}'/>"
                    "</source></hostdev>"
                )
            return self._ok(a, f"<domain><name>{name}</name><devices>{devs}</devices></domain>")
        if sub == "vcpupin":
            lines = ["VCPU   CPU Affinity", "----------------------"]
            # unpinned vCPUs report host-wide affinity, as virsh does
            pins = self.pins[name]
            count = max([self.domains[name]["max_vcpus"], *(i + 1 for i in pins)])
            lines += [f" {i}      {pins.get(i, '0-7')}" for i in range(count)]
            return self._ok(a, "\n".join(lines) + "\n")
        return self._ok(a, ok=False)


def make_nic(root: Path, name: str, *, pci: Optional[str] = None, mac: Optional[str] = None) -> None:
    nic = root / "sys/class/net" / name
    nic.mkdir(parents=True, exist_ok=True)
    (nic / "address").write_text((mac or "") + "\n", encoding="utf-8")
    if pci:
        dev = root / "sys/devices/pci0000:00" / pci
        dev.mkdir(parents=True, exist_ok=True)
        os.symlink(dev, nic / "device")


def rename_nic(root: Path, old: str, new: str) -> None:
    net = root / "sys/class/net"
    os.rename(net / old, net / new)


def make_numa(root: Path, nodes: Dict[int, str]) -> None:
    for idx, cpulist in nodes.items():
        node = root / "sys/devices/system/node" / f"node{idx}"
        node.mkdir(parents=True, exist_ok=True)
        (node / "cpulist").write_text(cpulist + "\n", encoding="utf-8")


NICS: Sequence[Tuple[str, str, str]] = (
    ("eth0", "0000:01:00.0", "aa:bb:cc:00:00:01"),
    ("eth1", "0000:01:00.1", "aa:bb:cc:00:00:02"),
    ("eth2", "0000:03:00.0", "aa:bb:cc:00:00:03"),
    ("eth3", "0000:03:00.1", "aa:bb:cc:00:00:04"),
)


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    root = tmp_path / "host"
    for name, pci, mac in NICS:
        make_nic(root, name, pci=pci, mac=mac)
    make_nic(root, "lo", mac="00:00:00:00:00:00")
    make_numa(root, {0: "0,2,4,6", 1: "1,3,5,7"})
    (root / "etc").mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def paths(tmp_path: Path) -> Paths:
    state = tmp_path / "state"
    return Paths(
        base_dir=str(tmp_path),
        state_dir=str(state),
        config_file=str(state / "config.yaml"),
        state_file=str(state / "state.yaml"),
        log_file=str(state / "install.log"),
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def config(paths: Paths) -> ConfigRecord:
    cfg = load_config(paths.config_file)
    cfg.set("dry_run", False)
    return cfg


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def prompter() -> ScriptedPrompter:
    return ScriptedPrompter()


@pytest.fixture
def ctx(config: ConfigRecord, paths: Paths, prompter: ScriptedPrompter, runner: FakeRunner, host_root: Path) -> StepContext:
    context = build_context(
        config,
        paths,
        prompter,
        runner=runner,
        host_root=str(host_root),
        topology_reader=TopologyReader(str(host_root)),
    )
    context.hypervisor.sleep = lambda _s: None
    return context
