"""Host facts gathered once per Run and exposed to templates as `facts`."""

from typing import Dict
import logging

from directives.errors import CommitFailed

logger = logging.getLogger(__name__)

# uname -m → Debian architecture names used in apt sources
DEB_ARCHITECTURES = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "armv7l": "armhf",
    "ppc64le": "ppc64el",
    "s390x": "s390x",
}

FACT_COMMANDS = {
    "hostname": "hostname",
    "machine": "uname -m",
    "kernel": "uname -r",
}


def parse_os_release(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


def gather_facts(connection, timeout: float = 30.0) -> Dict[str, str]:
    """
    Read a small, fixed set of host facts.

    Returns:
        hostname, machine, kernel, architecture, distribution,
        distribution_release, distribution_version

    Raises:
        CommitFailed: If a required fact cannot be read
    """
    facts: Dict[str, str] = {}

    for name, cmd in FACT_COMMANDS.items():
        result = connection.run_command(cmd, timeout=timeout)
        if not result.ok:
            raise CommitFailed(f"Cannot gather fact '{name}': {result.stderr.strip()}")
        facts[name] = result.stdout.strip()

    facts["architecture"] = DEB_ARCHITECTURES.get(facts["machine"], facts["machine"])

    release = connection.run_command("cat /etc/os-release", timeout=timeout)
    os_release = parse_os_release(release.stdout) if release.ok else {}
    facts["distribution"] = os_release.get("ID", "unknown")
    facts["distribution_version"] = os_release.get("VERSION_ID", "")
    facts["distribution_release"] = (
        os_release.get("VERSION_CODENAME") or os_release.get("UBUNTU_CODENAME", "")
    )

    logger.info(
        f"Gathered facts for {facts['hostname']}: {facts['distribution']} "
        f"{facts['distribution_version']} ({facts['architecture']})"
    )
    return facts
