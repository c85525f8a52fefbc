"""
Resource partitioning.

One operator budget (vCPUs, memory, disk) is split evenly across the appliance
VMs. Integer division is used everywhere; the remainder is reported and left
unallocated.

CPU pinning
- When the host has at least as many CPU-bearing NUMA nodes as VMs, VM i is
  pinned to the first vCPU-count CPUs of node i. A short node is clamped with
  a warning.
- Otherwise the flat range 0..total-1 is cut into contiguous, non-overlapping
  slices in VM declaration order.

Memory is not bound to a node; the whole VM (emulator threads included) is
pinned to its CPU set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .topology import NumaTopology, parse_cpu_list

logger = logging.getLogger(__name__)

__all__ = [
    "PartitionPlan",
    "ResourceAllocation",
    "format_cpu_set",
    "parse_cpu_list",
    "partition",
    "validate_budget",
]


def format_cpu_set(cpus: Iterable[int]) -> str:
    """Render CPU ids in cpuset syntax, compressing runs: [0,1,2,3,8] -> "0-3,8"."""

    ordered = list(cpus)
    parts: list[str] = []
    i = 0
    while i < len(ordered):
        j = i
        while j + 1 < len(ordered) and ordered[j + 1] == ordered[j] + 1:
            j += 1
        if j - i >= 2:
            parts.append(f"{ordered[i]}-{ordered[j]}")
        else:
            parts.extend(str(c) for c in ordered[i : j + 1])
        i = j + 1
    return ",".join(parts)


@dataclass(frozen=True)
class ResourceAllocation:
    vm_id: str
    vcpu_count: int
    cpu_pin_set: Tuple[int, ...]
    memory_mb: int
    disk_gb: int

    @property
    def cpuset(self) -> str:
        return format_cpu_set(self.cpu_pin_set)


@dataclass(frozen=True)
class PartitionPlan:
    allocations: List[ResourceAllocation]
    remainder_vcpu: int
    remainder_memory_mb: int
    remainder_disk_gb: int
    numa_aligned: bool
    warnings: List[str] = field(default_factory=list)

    def for_vm(self, vm_id: str) -> ResourceAllocation:
        for a in self.allocations:
            if a.vm_id == vm_id:
                return a
        raise KeyError(vm_id)


def validate_budget(total_vcpu: int, total_memory_mb: int, total_disk_gb: int, vm_count: int) -> None:
    if vm_count < 1:
        raise ValidationError(f"VM count must be at least 1 (got {vm_count})")
    for label, value in (
        ("vCPU total", total_vcpu),
        ("memory total (MB)", total_memory_mb),
        ("disk total (GB)", total_disk_gb),
    ):
        if value <= 0:
            raise ValidationError(f"{label} must be positive (got {value})")
    if total_vcpu < vm_count:
        raise ValidationError(
            f"vCPU total {total_vcpu} is less than the VM count {vm_count}; every VM needs at least one vCPU"
        )


def _numa_pin_sets(topology: NumaTopology, per_vm: int, vm_count: int, warnings: List[str]) -> List[Tuple[int, ...]]:
    nodes = topology.usable_nodes()
    sets: List[Tuple[int, ...]] = []
    for i in range(vm_count):
        node = nodes[i]
        cpus = topology.cpu_list_by_node[node]
        if len(cpus) < per_vm:
            msg = f"NUMA node {node} has {len(cpus)} CPUs, fewer than {per_vm} requested; clamping"
            logger.warning(msg)
            warnings.append(msg)
        sets.append(tuple(cpus[:per_vm]))
    return sets


def _flat_pin_sets(total_logical: int, per_vm: int, vm_count: int, warnings: List[str]) -> List[Tuple[int, ...]]:
    slice_len = per_vm
    if per_vm * vm_count > total_logical:
        slice_len = max(1, total_logical // vm_count)
        msg = (
            f"{per_vm * vm_count} vCPUs requested but only {total_logical} logical CPUs present; "
            f"pinning {slice_len} CPU(s) per VM"
        )
        logger.warning(msg)
        warnings.append(msg)

    sets: List[Tuple[int, ...]] = []
    for i in range(vm_count):
        cpus = tuple(range(i * slice_len, min((i + 1) * slice_len, total_logical)))
        if not cpus:
            # Fewer logical CPUs than VMs: share round-robin rather than leave a VM unpinned.
            cpus = (i % total_logical,)
            msg = f"VM {i + 1} shares CPU {cpus[0]} (only {total_logical} logical CPUs)"
            logger.warning(msg)
            warnings.append(msg)
        sets.append(cpus)
    return sets


def partition(
    total_vcpu: int,
    total_memory_mb: int,
    total_disk_gb: int,
    vm_count: int,
    topology: NumaTopology,
    vm_ids: Optional[Sequence[str]] = None,
) -> PartitionPlan:
    validate_budget(total_vcpu, total_memory_mb, total_disk_gb, vm_count)

    ids = list(vm_ids or [])
    while len(ids) < vm_count:
        ids.append(f"vm{len(ids) + 1}")
    ids = ids[:vm_count]

    per_vcpu = total_vcpu // vm_count
    per_mem = total_memory_mb // vm_count
    per_disk = total_disk_gb // vm_count
    rem_vcpu = total_vcpu - per_vcpu * vm_count
    rem_mem = total_memory_mb - per_mem * vm_count
    rem_disk = total_disk_gb - per_disk * vm_count
    if rem_vcpu or rem_mem or rem_disk:
        logger.info(
            "Unallocated remainder: %d vCPU, %d MB memory, %d GB disk",
            rem_vcpu,
            rem_mem,
            rem_disk,
        )

    warnings: List[str] = []
    numa_aligned = len(topology.usable_nodes()) >= vm_count
    if numa_aligned:
        pin_sets = _numa_pin_sets(topology, per_vcpu, vm_count, warnings)
    else:
        pin_sets = _flat_pin_sets(topology.total_logical_cpus, per_vcpu, vm_count, warnings)

    allocations = [
        ResourceAllocation(
            vm_id=vm_id,
            vcpu_count=per_vcpu,
            cpu_pin_set=pins,
            memory_mb=per_mem,
            disk_gb=per_disk,
        )
        for vm_id, pins in zip(ids, pin_sets)
    ]
    for a in allocations:
        logger.info(
            "%s: %d vCPU (cpuset %s), %d MB, %d GB",
            a.vm_id,
            a.vcpu_count,
            a.cpuset,
            a.memory_mb,
            a.disk_gb,
        )

    return PartitionPlan(
        allocations=allocations,
        remainder_vcpu=rem_vcpu,
        remainder_memory_mb=rem_mem,
        remainder_disk_gb=rem_disk,
        numa_aligned=numa_aligned,
        warnings=warnings,
    )
