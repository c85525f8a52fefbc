from __future__ import annotations

import logging
from typing import List, Sequence

from .command import CommandRunner

logger = logging.getLogger(__name__)


def package_installed(runner: CommandRunner, package: str) -> bool:
    r = runner.probe(["dpkg-query", "-W", "-f=${Status}", package])
    return r.ok and "install ok installed" in r.stdout


def missing_packages(runner: CommandRunner, packages: Sequence[str]) -> List[str]:
    return [p for p in packages if not package_installed(runner, p)]


def apt_update(runner: CommandRunner) -> None:
    runner.run(["apt-get", "update"], env={"DEBIAN_FRONTEND": "noninteractive"})


def apt_install(
    runner: CommandRunner,
    packages: Sequence[str],
    *,
    with_recommends: bool = True,
) -> None:
    if not packages:
        return
    argv = ["apt-get", "install", "-y"]
    if not with_recommends:
        argv.append("--no-install-recommends")
    runner.run([*argv, *packages], env={"DEBIAN_FRONTEND": "noninteractive"})
    logger.info("Installed packages: %s", " ".join(packages))


def ensure_packages(runner: CommandRunner, packages: Sequence[str]) -> List[str]:
    """Install whatever is missing from `packages`. Returns the packages installed."""

    missing = missing_packages(runner, packages)
    if not missing:
        logger.info("Packages already installed: %s", " ".join(packages))
        return []
    apt_update(runner)
    apt_install(runner, missing)
    return missing
