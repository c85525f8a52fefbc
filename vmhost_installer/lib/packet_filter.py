from __future__ import annotations

import logging
import shlex
from typing import Iterable, List, Sequence, Union

from .command import CommandRunner

logger = logging.getLogger(__name__)

Rule = Union[str, Sequence[str]]


def _rule_argv(rule: Rule) -> List[str]:
    return shlex.split(rule) if isinstance(rule, str) else list(rule)


class PacketFilter:
    """Idempotent iptables rule sets.

    A rule is everything after the chain operation, e.g.
    "-t nat PREROUTING -p tcp --dport 2222 -j DNAT --to 192.168.122.10:22".
    The first token that is not an option is the chain.
    """

    def __init__(self, runner: CommandRunner, *, binary: str = "iptables") -> None:
        self.runner = runner
        self.binary = binary

    def _split(self, rule: Rule) -> tuple[List[str], str, List[str]]:
        argv = _rule_argv(rule)
        table: List[str] = []
        if len(argv) >= 2 and argv[0] == "-t":
            table, argv = argv[:2], argv[2:]
        if not argv:
            raise ValueError(f"Empty packet filter rule: {rule!r}")
        return table, argv[0], argv[1:]

    def has_rule(self, rule: Rule) -> bool:
        table, chain, spec = self._split(rule)
        return self.runner.probe([self.binary, *table, "-C", chain, *spec]).ok

    def ensure_rule_set(self, name: str, rules: Iterable[Rule]) -> int:
        """Add each rule that is not yet present. Returns how many were added."""

        added = 0
        for rule in rules:
            if self.has_rule(rule):
                continue
            table, chain, spec = self._split(rule)
            self.runner.run([self.binary, *table, "-A", chain, *spec])
            added += 1
        logger.info("Packet filter rule set %s: %d rule(s) added", name, added)
        return added
