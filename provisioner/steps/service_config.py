"""
Service Configuration - nginx site for the build artifact.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import ConfigValidationError, ProvisioningError, ServiceStartError
from ..core.file_manager import FileManager
from ..core.health_checker import HealthChecker
from ..core.security import InputValidator
from ..core.system_state import SELinux, ServiceManager
from ..models.deployment import BuildArtifact, DeploymentConfig, ServiceConfigFile
from .base_step import BaseStep

SITE_TEMPLATE = "nginx_site.conf.j2"

CACHE_EXTENSIONS = [
    "js", "css", "png", "jpg", "jpeg", "gif", "ico", "svg",
    "woff", "woff2", "ttf", "eot",
]

GZIP_TYPES = [
    "text/plain",
    "text/css",
    "application/json",
    "application/javascript",
    "text/xml",
    "application/xml",
    "application/xml+rss",
    "text/javascript",
    "image/svg+xml",
]

SECURITY_HEADERS = [
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-Content-Type-Options", "nosniff"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "no-referrer-when-downgrade"),
]

SERVE_MODE = 0o755
SELINUX_CONTENT_TYPE = "httpd_sys_content_t"
SELINUX_USER_CONTENT_BOOLEAN = "httpd_read_user_content"


@dataclass(frozen=True)
class NginxSiteContext:
    """Typed values substituted into the site template."""
    app_name: str
    root: Path

    def __post_init__(self):
        InputValidator.validate_app_name(self.app_name)
        if not self.root.is_absolute():
            raise ValueError(f"Document root must be absolute: {self.root}")
        unsafe = set(';{}"\'\\$#') | {" ", "\n", "\t"}
        if any(c in unsafe for c in str(self.root)):
            raise ValueError(f"Unsafe character in document root: {self.root}")

    def to_template(self) -> Dict[str, Any]:
        return {
            "app_name": self.app_name,
            "root": str(self.root),
            "cache_extensions": CACHE_EXTENSIONS,
            "gzip_types": GZIP_TYPES,
            "security_headers": SECURITY_HEADERS,
        }


def render_site_config(file_manager: FileManager, context: NginxSiteContext) -> str:
    """Render the nginx server block."""
    return file_manager.render(SITE_TEMPLATE, context.to_template())


class ServiceConfigStep(BaseStep):
    """
    Installs the nginx site and brings the service up on it:
    - Render and install <conf.d>/<app>.conf, dropping the stock default site
    - Open directory permissions from home down to the artifact
    - SELinux labelling when SELinux is on
    - Validate, restart, verify
    A failed validation restores the previous files and leaves the running
    server untouched.
    """

    def __init__(self, settings=None, executor=None, file_manager=None, health_checker: HealthChecker = None):
        super().__init__("ServiceConfig", settings, executor, file_manager)
        timeouts = self.settings.timeouts
        self.services = ServiceManager(self.executor, self.logger, timeouts.service)
        self.selinux = SELinux(self.executor, self.logger, timeouts.service)
        self.health_checker = health_checker or HealthChecker(timeout=timeouts.probe)
        self.warnings: List[str] = []

    async def run(self, config: DeploymentConfig, artifact: BuildArtifact) -> ServiceConfigFile:
        self.warnings = []
        conf_path = self.settings.nginx_conf_path(config.app_name)
        context = NginxSiteContext(app_name=config.app_name, root=artifact.path)

        self.log_step("Rendering nginx configuration", 1)
        content = render_site_config(self.file_manager, context)

        # Snapshot everything we are about to touch
        defaults = [self.settings.nginx_conf_dir / name for name in self.settings.default_conf_names]
        previous: Dict[Path, Optional[str]] = {}
        for path in [conf_path, *defaults]:
            previous[path] = await self.file_manager.read_optional(path)

        # Until nginx -t passes, any failure puts the snapshots back
        try:
            await self.file_manager.write_file(conf_path, content, mode=0o644)
            for path in defaults:
                if await self.file_manager.delete_file(path):
                    self.logger.info(f"Removed default nginx config {path.name}")

            self.log_step("Setting permissions", 2)
            self.apply_permissions(config.app_name, artifact)

            if await self.selinux.is_enabled():
                self.log_step("Configuring SELinux", 3)
                await self.selinux.relabel(artifact.path, SELINUX_CONTENT_TYPE)
                await self.selinux.ensure_boolean(SELINUX_USER_CONTENT_BOOLEAN)

            self.log_step("Testing nginx configuration", 4)
            test = await self.executor.run(
                ["nginx", "-t"],
                timeout=self.settings.timeouts.service,
                stream_output=True,
            )
            if not test.success:
                raise ConfigValidationError(
                    "Nginx configuration test failed",
                    hint=f"Previous configuration restored; {self.settings.service_name} was not restarted",
                    diagnostics=f"{test.tail()}\n--- {conf_path} ---\n{content}",
                )
        except (ProvisioningError, OSError):
            for path, old in previous.items():
                await self.file_manager.restore_file(path, old)
            self.logger.warning("Restored the previous nginx configuration")
            raise

        self.log_step(f"Restarting {self.settings.service_name}", 5)
        await self.services.restart(self.settings.service_name)
        if not await self.services.is_active(self.settings.service_name):
            raise ServiceStartError(
                f"{self.settings.service_name} failed to start",
                diagnostics=await self.services.status(self.settings.service_name),
            )

        self.log_success(f"{self.settings.service_name} is running")
        await self._probe()

        return ServiceConfigFile(
            path=conf_path,
            content=content,
            changed=previous[conf_path] != content,
        )

    def apply_permissions(self, app_name: str, artifact: BuildArtifact) -> None:
        """
        Every directory from home down to the app needs traversal rights for
        the server user, and the artifact tree must be readable.
        """
        home = self.settings.home_dir
        app_dir = self.settings.app_dir(app_name)

        chain = [home]
        for part in app_dir.relative_to(home).parts:
            chain.append(chain[-1] / part)

        for directory in chain:
            self.file_manager.ensure_mode(directory, SERVE_MODE)

        changed = self.file_manager.ensure_mode_recursive(artifact.path, SERVE_MODE)
        self.logger.debug(f"Permissions updated on {changed} artifact entries")

    async def _probe(self) -> None:
        url = self.settings.probe_url
        if not url:
            return
        retry = self.settings.retry
        result = await self.health_checker.check(
            url,
            max_retries=retry.probe_attempts,
            retry_delay=retry.probe_delay,
        )
        if result.healthy:
            self.logger.info(f"Site answered {result.status_code} in {result.response_time_ms:.0f}ms")
        else:
            message = f"Site probe {url} failed: {result.message or result.last_error}"
            self.logger.warning(message)
            self.warnings.append(message)
