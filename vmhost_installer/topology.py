from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

_NODE_RE = re.compile(r"^node(\d+)$")


def parse_cpu_list(text: str) -> Tuple[int, ...]:
    """Parse a kernel cpulist ("0-3,8,10-11") into an ordered tuple of CPU ids."""

    cpus: list[int] = []
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            cpus.extend(range(int(lo), int(hi) + 1))
        else:
            cpus.append(int(part))
    return tuple(cpus)


@dataclass(frozen=True)
class NumaTopology:
    node_count: int
    cpu_list_by_node: Dict[int, Tuple[int, ...]]
    total_logical_cpus: int

    def usable_nodes(self) -> list[int]:
        """Node indexes that actually have CPUs (memory-only nodes are skipped)."""

        return [n for n in sorted(self.cpu_list_by_node) if self.cpu_list_by_node[n]]

    @classmethod
    def flat(cls, total_logical_cpus: int) -> "NumaTopology":
        return cls(
            node_count=1,
            cpu_list_by_node={0: tuple(range(total_logical_cpus))},
            total_logical_cpus=total_logical_cpus,
        )


def read_topology(root: str = "/") -> NumaTopology:
    node_dir = Path(root) / "sys/devices/system/node"
    nodes: Dict[int, Tuple[int, ...]] = {}
    if node_dir.is_dir():
        for entry in node_dir.iterdir():
            m = _NODE_RE.match(entry.name)
            if not m:
                continue
            try:
                text = (entry / "cpulist").read_text(encoding="utf-8")
            except OSError:
                continue
            nodes[int(m.group(1))] = parse_cpu_list(text)

    if not nodes:
        total = os.cpu_count() or 1
        logger.info("No NUMA information found; assuming one node with %d CPUs", total)
        return NumaTopology.flat(total)

    total = sum(len(cpus) for cpus in nodes.values())
    topo = NumaTopology(node_count=len(nodes), cpu_list_by_node=nodes, total_logical_cpus=total)
    logger.info("NUMA topology: %d node(s), %d logical CPUs", topo.node_count, topo.total_logical_cpus)
    return topo


class TopologyReader:
    """Reads the host layout once; later calls return the same snapshot."""

    def __init__(self, root: str = "/") -> None:
        self.root = root
        self._snapshot: Optional[NumaTopology] = None

    def read(self) -> NumaTopology:
        if self._snapshot is None:
            self._snapshot = read_topology(self.root)
        return self._snapshot
