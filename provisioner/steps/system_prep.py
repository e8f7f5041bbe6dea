"""
System Preparation - packages, web server service and firewall.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from ..core.system_state import Firewall, PackageManager, ServiceManager
from .base_step import BaseStep

VERSION_TOOLS = ("node", "npm", "git")


@dataclass
class SystemPrepResult:
    """What the step changed."""
    installed: List[str] = field(default_factory=list)
    service_changes: Dict[str, bool] = field(default_factory=dict)
    firewall_added: List[str] = field(default_factory=list)
    versions: Dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(
            self.installed
            or any(self.service_changes.values())
            or self.firewall_added
        )


class SystemPrepStep(BaseStep):
    """
    Brings the host to the package/service baseline:
    - Optional full system update
    - Runtime, version control and web server packages
    - Web server running and enabled
    - firewalld allowing http/https when firewalld is in use
    """

    def __init__(self, settings=None, executor=None, file_manager=None):
        super().__init__("SystemPrep", settings, executor, file_manager)
        timeouts = self.settings.timeouts
        self.packages = PackageManager(self.executor, self.logger, timeouts.package)
        self.services = ServiceManager(self.executor, self.logger, timeouts.service)
        self.firewall = Firewall(self.executor, self.logger, timeouts.service)

    async def run(self) -> SystemPrepResult:
        result = SystemPrepResult()

        if self.settings.upgrade_system:
            self.log_step("Updating system packages", 1)
            await self.packages.upgrade()

        self.log_step("Ensuring required packages", 2)
        result.installed = await self.packages.ensure_installed(self.settings.packages)

        result.versions = await self.collect_versions()
        for tool, version in result.versions.items():
            self.logger.info(f"{tool} version: {version}")

        self.log_step(f"Ensuring {self.settings.service_name} is running", 3)
        result.service_changes = await self.services.ensure_running(self.settings.service_name)

        if self.settings.configure_firewall and await self.firewall.is_active():
            self.log_step("Configuring firewall", 4)
            result.firewall_added = await self.firewall.ensure_services(["http", "https"])

        if result.changed:
            self.log_success("System prepared")
        else:
            self.log_success("System already up to date, nothing changed")
        return result

    async def collect_versions(self) -> Dict[str, str]:
        versions = {}
        for tool in VERSION_TOOLS:
            version = await self.executor.get_tool_version(tool)
            if version:
                versions[tool] = version
        return versions
