"""
Deployment models for the provisioner.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class ApplyMode(Enum):
    """Which part of the sequence a run applies."""
    PROVISION = "provision"
    REDEPLOY = "redeploy"


class BuildKind(Enum):
    """Known build output directories, in detection order."""
    VITE = "dist"
    CREATE_REACT_APP = "build"

    @property
    def label(self) -> str:
        return {
            BuildKind.VITE: "Vite",
            BuildKind.CREATE_REACT_APP: "Create React App",
        }[self]

    @classmethod
    def from_dirname(cls, name: str) -> Optional["BuildKind"]:
        for kind in cls:
            if kind.value == name:
                return kind
        return None


@dataclass(frozen=True)
class DeploymentConfig:
    """Validated deployment inputs, read-only after loading."""
    repo_url: str
    branch: str
    app_name: str
    token: Optional[str] = field(default=None, repr=False)

    @property
    def has_token(self) -> bool:
        return bool(self.token)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (token never included)."""
        return {
            "repo_url": self.repo_url,
            "branch": self.branch,
            "app_name": self.app_name,
            "token": "***REDACTED***" if self.token else None,
        }


@dataclass
class BuildArtifact:
    """Directory produced by the build step."""
    path: Path
    kind: Optional[BuildKind] = None

    @property
    def dirname(self) -> str:
        return self.path.name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "dirname": self.dirname,
            "kind": self.kind.label if self.kind else None,
        }


@dataclass
class ServiceConfigFile:
    """Rendered web server configuration."""
    path: Path
    content: str
    changed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "changed": self.changed,
        }


@dataclass
class RedeployScript:
    """Generated launcher for future redeploys."""
    path: Path
    app_name: str
    branch: str
    repo_url: str
    generated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "app_name": self.app_name,
            "branch": self.branch,
            "generated_at": self.generated_at.isoformat(),
        }
