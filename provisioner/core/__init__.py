"""Core module initialization."""

from .errors import (
    BuildOutputMissingError,
    CloneError,
    CommandFailedError,
    ConfigValidationError,
    ConfigurationError,
    InfrastructureError,
    PrivateRepositoryError,
    ProvisioningError,
    ServiceStartError,
)
from .executor import CommandExecutor, CommandResult
from .file_manager import FileManager
from .logger import StepLogger, get_logger, setup_logging
from .security import (
    InputValidator,
    SecretsMasker,
    SecurityError,
    embed_token,
    mask_secrets,
    strip_credentials,
)
from .system_state import Firewall, PackageManager, SELinux, ServiceManager
from .health_checker import HealthChecker, HealthCheckResult, InstanceMetadata
from .terraform_client import TerraformApplyResult, TerraformClient, TerraformPlan


__all__ = [
    # Errors
    "ProvisioningError",
    "ConfigurationError",
    "CommandFailedError",
    "CloneError",
    "PrivateRepositoryError",
    "BuildOutputMissingError",
    "ConfigValidationError",
    "ServiceStartError",
    "InfrastructureError",
    # Execution
    "CommandExecutor",
    "CommandResult",
    "FileManager",
    "StepLogger",
    "get_logger",
    "setup_logging",
    # Security
    "InputValidator",
    "SecretsMasker",
    "SecurityError",
    "embed_token",
    "strip_credentials",
    "mask_secrets",
    # OS state
    "PackageManager",
    "ServiceManager",
    "SELinux",
    "Firewall",
    # HTTP
    "HealthChecker",
    "HealthCheckResult",
    "InstanceMetadata",
    # Terraform
    "TerraformClient",
    "TerraformPlan",
    "TerraformApplyResult",
]
