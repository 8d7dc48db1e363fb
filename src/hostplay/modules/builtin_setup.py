"""
Hostplay setup module (gather_facts)

Collect a minimal set of facts from target hosts.
"""

import fnmatch
from typing import Dict

from hostplay.modules.base import Module, ModuleOutcome, register_module

# Fact name -> shell command whose stripped stdout is the value
_COMMAND_FACTS = {
    "ansible_system": "uname -s",
    "ansible_kernel": "uname -r",
    "ansible_hostname": "hostname -s 2>/dev/null || hostname",
    "ansible_fqdn": "hostname -f 2>/dev/null || hostname",
    "ansible_architecture": "uname -m",
}

_OS_FAMILIES = {
    "Debian": ("ubuntu", "debian", "linuxmint", "pop", "raspbian"),
    "RedHat": ("redhat", "rhel", "centos", "fedora", "rocky", "almalinux", "alma", "ol"),
    "Suse": ("suse", "opensuse", "opensuse-leap", "sles"),
    "Archlinux": ("arch", "manjaro", "endeavouros"),
    "Alpine": ("alpine",),
}


@register_module
class SetupModule(Module):
    """
    Gather minimal facts about target hosts.

    Collects:
    - ansible_system, ansible_kernel, ansible_architecture
    - ansible_hostname, ansible_fqdn
    - ansible_distribution, ansible_distribution_version, ansible_os_family
    """

    name = "setup"
    required_args = []
    optional_args = {
        "filter": None,  # fnmatch pattern on fact names
    }

    async def run(self) -> ModuleOutcome:
        """Gather facts about the target system."""
        facts: Dict[str, str] = {}
        for fact, command in _COMMAND_FACTS.items():
            result = await self.connection.run(command, shell=True)
            if result.success:
                facts[fact] = result.stdout.strip()

        result = await self.connection.run("cat /etc/os-release 2>/dev/null", shell=True)
        if result.success:
            facts.update(parse_os_release(result.stdout))
        facts["ansible_os_family"] = os_family(facts.get("ansible_distribution", ""))

        pattern = self.get_arg("filter")
        if pattern:
            facts = {k: v for k, v in facts.items() if fnmatch.fnmatch(k, str(pattern))}

        return ModuleOutcome(
            changed=False,  # Facts gathering never changes anything
            data={"ansible_facts": facts},
        )


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release content."""
    facts = {}
    for line in content.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep:
            continue
        value = value.strip('"\'')
        if key == "ID":
            facts["ansible_distribution"] = value.capitalize()
        elif key == "VERSION_ID":
            facts["ansible_distribution_version"] = value
        elif key == "PRETTY_NAME":
            facts["ansible_distribution_pretty"] = value
    return facts


def os_family(distribution: str) -> str:
    """Map distribution to OS family."""
    dist_lower = distribution.lower()
    for family, members in _OS_FAMILIES.items():
        if dist_lower in members:
            return family
    return "Linux"
