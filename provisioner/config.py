"""
Configuration management for the provisioner.
Handles environment variables, the optional env file and host settings.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .core.errors import ConfigurationError
from .core.security import InputValidator, SecretsMasker, SecurityError
from .models.deployment import DeploymentConfig

DEFAULT_ENV_FILE = Path("/etc/provisioner/provisioner.env")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    try:
        return int(value) if value else default
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class TimeoutConfig:
    """Per-call timeouts for external commands, in seconds."""
    package: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_PACKAGE", 1800))
    clone: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_CLONE", 300))
    install: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_INSTALL", 1200))
    build: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_BUILD", 1200))
    service: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_SERVICE", 60))
    probe: int = field(default_factory=lambda: _env_int("PROVISION_TIMEOUT_PROBE", 10))


@dataclass
class RetryConfig:
    """Bounded backoff for transient clone failures and the post-restart probe."""
    clone_attempts: int = field(default_factory=lambda: _env_int("PROVISION_CLONE_ATTEMPTS", 3))
    base_delay: float = 2.0
    max_delay: float = 30.0
    probe_attempts: int = 3
    probe_delay: float = 1.0


@dataclass
class ProvisionSettings:
    """Host layout and behaviour of the provisioning sequence."""
    # Identity that owns the checkout and runs the build
    run_user: str = field(default_factory=lambda: os.getenv("PROVISION_RUN_USER", "ec2-user"))
    home_dir: Path = field(default_factory=lambda: Path(os.getenv("PROVISION_HOME_DIR", "/home/ec2-user")))
    projects_subdir: str = "projects"

    # Web server
    service_name: str = field(default_factory=lambda: os.getenv("PROVISION_SERVICE_NAME", "nginx"))
    nginx_conf_dir: Path = field(default_factory=lambda: Path(os.getenv("PROVISION_NGINX_CONF_DIR", "/etc/nginx/conf.d")))
    default_conf_names: List[str] = field(default_factory=lambda: ["default.conf"])

    # System preparation
    packages: List[str] = field(default_factory=lambda: _env_list("PROVISION_PACKAGES", "git,nodejs,npm,nginx"))
    upgrade_system: bool = field(default_factory=lambda: os.getenv("PROVISION_UPGRADE_SYSTEM", "true").lower() == "true")
    configure_firewall: bool = True

    # Build
    install_command: List[str] = field(default_factory=lambda: ["npm", "install"])
    build_command: List[str] = field(default_factory=lambda: ["npm", "run", "build"])
    build_dir_candidates: List[str] = field(default_factory=lambda: ["dist", "build"])

    # Source acquisition
    token_host: str = "github.com"

    # Outputs
    log_file: Path = field(default_factory=lambda: Path(os.getenv("PROVISION_LOG_FILE", "/var/log/user-data.log")))
    redeploy_script: Optional[Path] = None
    env_file: Path = field(default_factory=lambda: Path(os.getenv("PROVISION_ENV_FILE", str(DEFAULT_ENV_FILE))))

    # Post-restart probe and instance metadata
    probe_url: str = field(default_factory=lambda: os.getenv("PROVISION_PROBE_URL", "http://127.0.0.1/"))
    metadata_url: str = "http://169.254.169.254/latest"

    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    verbose: bool = field(default_factory=lambda: os.getenv("VERBOSE", "false").lower() == "true")

    def __post_init__(self):
        if self.redeploy_script is None:
            self.redeploy_script = self.home_dir / "deploy.sh"

    @property
    def projects_dir(self) -> Path:
        return self.home_dir / self.projects_subdir

    def app_dir(self, app_name: str) -> Path:
        return self.projects_dir / app_name

    def nginx_conf_path(self, app_name: str) -> Path:
        return self.nginx_conf_dir / f"{app_name}.conf"

    def validate(self) -> List[str]:
        """Validate settings and return list of issues."""
        issues = []

        if not self.packages:
            issues.append("PROVISION_PACKAGES is empty")

        if not self.build_dir_candidates:
            issues.append("No build output directory candidates configured")

        if self.retry.clone_attempts < 1:
            issues.append("PROVISION_CLONE_ATTEMPTS must be at least 1")

        try:
            InputValidator.validate_app_name(self.run_user)
        except SecurityError as e:
            issues.append(f"PROVISION_RUN_USER is invalid: {e}")

        return issues

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "ProvisionSettings":
        """Create settings from the environment, after loading the env file."""
        load_env_file(env_file)
        settings = cls()
        if env_file is not None:
            settings.env_file = env_file
        return settings


def load_env_file(env_file: Optional[Path] = None) -> bool:
    """Load an env file without overriding variables already set."""
    path = env_file or Path(os.getenv("PROVISION_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if path.is_file():
        return load_dotenv(path, override=False)
    return False


def load_deployment_config(
    repo_url: Optional[str] = None,
    branch: Optional[str] = None,
    app_name: Optional[str] = None,
    token: Optional[str] = None,
) -> DeploymentConfig:
    """
    Build and validate the deployment configuration.

    Explicit arguments win over PROVISION_* environment variables. Invalid
    values raise ConfigurationError before anything touches the system.
    """
    repo_url = (repo_url if repo_url is not None else os.getenv("PROVISION_REPO_URL", "")).strip()
    branch = (branch if branch is not None else os.getenv("PROVISION_BRANCH", "main")).strip()
    app_name = (app_name if app_name is not None else os.getenv("PROVISION_APP_NAME", "")).strip()
    token = (token if token is not None else os.getenv("GITHUB_TOKEN", "")).strip() or None

    try:
        InputValidator.validate_repo_url(repo_url)
        InputValidator.validate_branch(branch)
        InputValidator.validate_app_name(app_name)
    except SecurityError as e:
        raise ConfigurationError(
            f"Invalid deployment configuration: {e}",
            hint="Set PROVISION_REPO_URL, PROVISION_BRANCH and PROVISION_APP_NAME "
                 "or pass --repo-url/--branch/--app-name",
        ) from e

    if token:
        try:
            InputValidator.validate_token(token)
        except SecurityError as e:
            raise ConfigurationError(
                f"Invalid deployment configuration: {e}",
                hint="Check GITHUB_TOKEN; leave it empty for public repositories",
            ) from e

    SecretsMasker.register(token)

    return DeploymentConfig(
        repo_url=repo_url,
        branch=branch,
        app_name=app_name,
        token=token,
    )


_settings: Optional[ProvisionSettings] = None


def get_settings() -> ProvisionSettings:
    """Get the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = ProvisionSettings.from_env()
    return _settings


def set_settings(settings: ProvisionSettings) -> None:
    """Replace the process-wide settings instance."""
    global _settings
    _settings = settings
