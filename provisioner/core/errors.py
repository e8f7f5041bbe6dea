"""
Error taxonomy for the provisioning sequence.

Every failure is fatal: steps raise one of these, the orchestrator records it
against the step, prints the hint and diagnostics, and stops the run.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all fatal provisioning failures."""

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        diagnostics: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.diagnostics = diagnostics

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "hint": self.hint,
            "diagnostics": self.diagnostics,
        }


class ConfigurationError(ProvisioningError):
    """Invalid deployment configuration, raised before any system mutation."""


class CommandFailedError(ProvisioningError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        command: str,
        return_code: int,
        output: str = "",
        hint: Optional[str] = None,
    ):
        super().__init__(
            f"Command failed with code {return_code}: {command}",
            hint=hint,
            diagnostics=output or None,
        )
        self.command = command
        self.return_code = return_code


class CloneError(ProvisioningError):
    """Source acquisition failed."""


class PrivateRepositoryError(CloneError):
    """Clone was refused and no access token was supplied."""


class BuildOutputMissingError(ProvisioningError):
    """The build finished but produced none of the known output directories."""


class ConfigValidationError(ProvisioningError):
    """The rendered web server configuration failed syntax validation."""


class ServiceStartError(ProvisioningError):
    """The web server is not active after a restart."""


class InfrastructureError(ProvisioningError):
    """Terraform could not render, plan, apply or destroy the declaration."""
