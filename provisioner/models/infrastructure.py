"""
Infrastructure declaration models: one key pair, one security group, one instance.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class IngressRule:
    """Inbound TCP rule."""
    port: int
    description: str = ""
    cidr_blocks: List[str] = field(default_factory=lambda: ["0.0.0.0/0"])

    def __post_init__(self):
        if not 1 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "port": self.port,
            "description": self.description,
            "cidr_blocks": list(self.cidr_blocks),
        }


def default_ingress() -> List[IngressRule]:
    return [
        IngressRule(22, "SSH"),
        IngressRule(80, "HTTP"),
    ]


@dataclass
class InfraSpec:
    """Desired end-state handed to Terraform."""
    name: str
    public_key_path: Path
    vpc_id: str
    ami_id: str
    instance_type: str = "t3.micro"
    region: str = "us-east-1"
    user_data: str = ""
    ingress: List[IngressRule] = field(default_factory=default_ingress)
    subnet_id: Optional[str] = None

    def validate(self) -> List[str]:
        """Return a list of problems that would make the apply fail."""
        issues = []

        if not self.name:
            issues.append("Instance name is required")
        if not self.vpc_id:
            issues.append("Network (VPC) id is required")
        if not self.ami_id:
            issues.append("Image (AMI) id is required")
        if not self.public_key_path.is_file():
            issues.append(f"Public key not found: {self.public_key_path}")
        if not self.user_data:
            issues.append("User-data payload is empty")

        return issues

    def to_tfvars(self) -> Dict[str, Any]:
        """Variables file content for terraform.tfvars.json."""
        tfvars = {
            "name": self.name,
            "region": self.region,
            "public_key_path": str(self.public_key_path),
            "vpc_id": self.vpc_id,
            "ami_id": self.ami_id,
            "instance_type": self.instance_type,
            "ingress_rules": [rule.to_dict() for rule in self.ingress],
        }
        if self.subnet_id:
            tfvars["subnet_id"] = self.subnet_id
        return tfvars
