"""
Provisioning report models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .deployment import ApplyMode, BuildArtifact


class StepName(Enum):
    """Steps of the provisioning sequence, in execution order."""
    SYSTEM_PREPARATION = "system_preparation"
    SOURCE_ACQUISITION = "source_acquisition"
    BUILD = "build"
    SERVICE_CONFIGURATION = "service_configuration"
    REDEPLOY_SCRIPT = "redeploy_script"


class PipelineStatus(Enum):
    """Overall run status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class StepResult:
    """Result of a single step."""
    step: StepName
    success: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0
    message: str = ""
    error: Optional[str] = None
    hint: Optional[str] = None
    diagnostics: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "step": self.step.value,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "message": self.message,
            "error": self.error,
            "hint": self.hint,
        }


@dataclass
class ProvisionReport:
    """Complete record of one provisioning or redeploy run."""
    run_id: str
    mode: ApplyMode
    status: PipelineStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    total_duration_seconds: float = 0

    app_name: Optional[str] = None
    branch: Optional[str] = None
    commit_hash: Optional[str] = None

    artifact: Optional[BuildArtifact] = None
    nginx_config_path: Optional[str] = None
    redeploy_script_path: Optional[str] = None
    public_address: Optional[str] = None
    versions: Dict[str, str] = field(default_factory=dict)

    steps: List[StepResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineStatus.SUCCESS

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def step(self, name: StepName) -> Optional[StepResult]:
        for result in self.steps:
            if result.step == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_duration_seconds": self.total_duration_seconds,
            "app_name": self.app_name,
            "branch": self.branch,
            "commit_hash": self.commit_hash,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "nginx_config_path": self.nginx_config_path,
            "redeploy_script_path": self.redeploy_script_path,
            "public_address": self.public_address,
            "versions": self.versions,
            "steps": [s.to_dict() for s in self.steps],
            "errors": self.errors,
            "warnings": self.warnings,
        }
