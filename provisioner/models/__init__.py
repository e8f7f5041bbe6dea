"""Data models for the provisioner."""

from .deployment import (
    ApplyMode,
    BuildArtifact,
    BuildKind,
    DeploymentConfig,
    RedeployScript,
    ServiceConfigFile,
)
from .report import PipelineStatus, ProvisionReport, StepName, StepResult
from .infrastructure import InfraSpec, IngressRule

__all__ = [
    "ApplyMode",
    "BuildArtifact",
    "BuildKind",
    "DeploymentConfig",
    "RedeployScript",
    "ServiceConfigFile",
    "PipelineStatus",
    "ProvisionReport",
    "StepName",
    "StepResult",
    "InfraSpec",
    "IngressRule",
]
