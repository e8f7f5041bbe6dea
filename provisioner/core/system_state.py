"""
Idempotent reconciliation of process-wide OS state.

Each helper queries the current state first and applies only the delta, so
re-running the sequence is a no-op for resources that already match.
All commands go through a CommandExecutor, which tests replace with a fake.
"""

from typing import Dict, List

from .executor import CommandExecutor
from .logger import StepLogger


class PackageManager:
    """Packages via rpm/dnf."""

    def __init__(self, executor: CommandExecutor, logger: StepLogger, timeout: int = 1800):
        self.executor = executor
        self.logger = logger
        self.timeout = timeout

    async def is_installed(self, package: str) -> bool:
        result = await self.executor.run(["rpm", "-q", package], timeout=30)
        return result.success

    async def missing(self, packages: List[str]) -> List[str]:
        return [p for p in packages if not await self.is_installed(p)]

    async def upgrade(self) -> None:
        """Apply pending system updates."""
        self.logger.info("Updating system packages...")
        await self.executor.check(
            ["dnf", "update", "-y"],
            timeout=self.timeout,
            stream_output=True,
            hint="The package manager could not update the system; check network access to the repositories",
        )

    async def ensure_installed(self, packages: List[str]) -> List[str]:
        """
        Install whatever is missing from ``packages``.

        Returns:
            The packages that were installed (empty when nothing changed)
        """
        to_install = await self.missing(packages)
        if not to_install:
            self.logger.info(f"Packages already installed: {', '.join(packages)}")
            return []

        self.logger.info(f"Installing: {', '.join(to_install)}")
        await self.executor.check(
            ["dnf", "install", "-y", *to_install],
            timeout=self.timeout,
            stream_output=True,
            hint=f"Could not install {', '.join(to_install)}",
        )
        return to_install


class ServiceManager:
    """systemd units."""

    def __init__(self, executor: CommandExecutor, logger: StepLogger, timeout: int = 60):
        self.executor = executor
        self.logger = logger
        self.timeout = timeout

    async def is_active(self, service: str) -> bool:
        result = await self.executor.run(["systemctl", "is-active", "--quiet", service], timeout=self.timeout)
        return result.success

    async def is_enabled(self, service: str) -> bool:
        result = await self.executor.run(["systemctl", "is-enabled", "--quiet", service], timeout=self.timeout)
        return result.success

    async def ensure_running(self, service: str) -> Dict[str, bool]:
        """Start and enable a unit unless it already is. Returns what changed."""
        changes = {"started": False, "enabled": False}

        if not await self.is_active(service):
            self.logger.info(f"Starting {service}...")
            await self.executor.check(["systemctl", "start", service], timeout=self.timeout)
            changes["started"] = True

        if not await self.is_enabled(service):
            self.logger.info(f"Enabling {service}...")
            await self.executor.check(["systemctl", "enable", service], timeout=self.timeout)
            changes["enabled"] = True

        return changes

    async def restart(self, service: str) -> None:
        await self.executor.check(
            ["systemctl", "restart", service],
            timeout=self.timeout,
            stream_output=True,
        )

    async def status(self, service: str) -> str:
        """Human-readable unit status, for diagnostics."""
        result = await self.executor.run(
            ["systemctl", "status", service, "--no-pager", "--full"],
            timeout=self.timeout,
        )
        return result.output


class SELinux:
    """Mandatory access control labelling."""

    def __init__(self, executor: CommandExecutor, logger: StepLogger, timeout: int = 120):
        self.executor = executor
        self.logger = logger
        self.timeout = timeout

    async def mode(self) -> str:
        """Enforcing, Permissive or Disabled (Disabled when the tooling is absent)."""
        if not await self.executor.check_tool_exists("getenforce"):
            return "Disabled"
        result = await self.executor.run(["getenforce"], timeout=10)
        if not result.success:
            return "Disabled"
        return result.stdout.strip() or "Disabled"

    async def is_enabled(self) -> bool:
        return await self.mode() != "Disabled"

    async def relabel(self, path, context_type: str = "httpd_sys_content_t") -> None:
        await self.executor.check(
            ["chcon", "-R", "-t", context_type, str(path)],
            timeout=self.timeout,
        )

    async def get_boolean(self, name: str) -> bool:
        result = await self.executor.run(["getsebool", name], timeout=10)
        # "httpd_read_user_content --> off"
        return result.success and result.stdout.strip().endswith("on")

    async def ensure_boolean(self, name: str) -> bool:
        """Persistently switch a boolean on. Returns True if it changed."""
        if await self.get_boolean(name):
            return False
        self.logger.info(f"Enabling SELinux boolean {name}")
        await self.executor.check(["setsebool", "-P", name, "1"], timeout=self.timeout)
        return True


class Firewall:
    """firewalld services, only managed when firewalld is running."""

    def __init__(self, executor: CommandExecutor, logger: StepLogger, timeout: int = 60):
        self.executor = executor
        self.logger = logger
        self.timeout = timeout

    async def is_active(self) -> bool:
        result = await self.executor.run(["systemctl", "is-active", "--quiet", "firewalld"], timeout=self.timeout)
        return result.success

    async def ensure_services(self, services: List[str]) -> List[str]:
        """Permanently allow services. Returns the ones that were added."""
        added = []
        for service in services:
            query = await self.executor.run(
                ["firewall-cmd", "--permanent", f"--query-service={service}"],
                timeout=self.timeout,
            )
            if query.success:
                continue
            await self.executor.check(
                ["firewall-cmd", "--permanent", f"--add-service={service}"],
                timeout=self.timeout,
            )
            added.append(service)

        if added:
            self.logger.info(f"Firewall: allowed {', '.join(added)}")
            await self.executor.check(["firewall-cmd", "--reload"], timeout=self.timeout)

        return added
