"""
Infrastructure Declaration - Terraform files for the host and their lifecycle.

Renders:
- main.tf (key pair, security group, instance)
- terraform.tfvars.json
- user_data.sh (first-boot payload that runs `provisioner provision`)
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import InfrastructureError
from ..core.terraform_client import TerraformApplyResult, TerraformClient, TerraformPlan
from ..models.deployment import DeploymentConfig
from ..models.infrastructure import InfraSpec
from .base_step import BaseStep

MAIN_TEMPLATE = "main.tf.j2"
USER_DATA_TEMPLATE = "user_data.sh.j2"
USER_DATA_FILE = "user_data.sh"
TFVARS_FILE = "terraform.tfvars.json"

DEFAULT_PACKAGE_SPEC = "static-site-provisioner"


def render_user_data(
    file_manager,
    config: DeploymentConfig,
    env_file: Path,
    package_spec: str = DEFAULT_PACKAGE_SPEC,
) -> str:
    """First-boot script: write the env file, install the provisioner, run it."""
    return file_manager.render(USER_DATA_TEMPLATE, {
        "app_name": config.app_name,
        "branch": config.branch,
        "repo_url": config.repo_url,
        "token": config.token or "",
        "env_file": str(env_file),
        "env_file_dir": str(env_file.parent),
        "package_spec": package_spec,
    })


@dataclass
class RenderedInfra:
    """Files written for one declaration."""
    directory: Path
    files: List[Path] = field(default_factory=list)


class InfrastructureStep(BaseStep):
    """
    Writes the declaration into a working directory and drives Terraform
    over it.
    """

    def __init__(self, settings=None, executor=None, file_manager=None, terraform: TerraformClient = None):
        super().__init__("Infrastructure", settings, executor, file_manager)
        self.terraform = terraform

    def _client(self, directory: Path) -> TerraformClient:
        if self.terraform is None:
            self.terraform = TerraformClient(
                working_dir=directory,
                var_file=TFVARS_FILE,
                executor=self.executor,
                logger=self.logger,
            )
        return self.terraform

    async def run(self, spec: InfraSpec, directory: Path) -> RenderedInfra:
        return await self.render(spec, directory)

    async def render(self, spec: InfraSpec, directory: Path) -> RenderedInfra:
        """Render the declaration; validation problems are raised before anything is written."""
        issues = spec.validate()
        if issues:
            raise InfrastructureError(
                "Infrastructure declaration is incomplete",
                hint="; ".join(issues),
            )

        self.log_step(f"Rendering Terraform files into {directory}", 1)
        rendered = RenderedInfra(directory=directory)

        main_tf = self.file_manager.render(MAIN_TEMPLATE, {
            "name": spec.name,
            "user_data_file": USER_DATA_FILE,
        })
        outputs = {
            directory / "main.tf": (main_tf, 0o644),
            directory / TFVARS_FILE: (json.dumps(spec.to_tfvars(), indent=2) + "\n", 0o644),
            # Carries the access token when one was given
            directory / USER_DATA_FILE: (spec.user_data, 0o600),
        }
        for path, (content, mode) in outputs.items():
            await self.file_manager.write_file(path, content, mode=mode)
            rendered.files.append(path)

        self.log_success(f"Wrote {len(rendered.files)} files")
        return rendered

    async def plan(self, directory: Path) -> TerraformPlan:
        tf = self._client(directory)
        await self._prepare(tf)

        plan = await tf.plan(on_output=self.logger.output)
        if not plan.success:
            raise InfrastructureError(
                "Terraform plan failed",
                diagnostics="\n".join(plan.errors) or plan.output,
            )
        return plan

    async def apply(self, directory: Path) -> TerraformApplyResult:
        tf = self._client(directory)
        plan = await self.plan(directory)

        result = await tf.apply(plan_file=plan.plan_file, on_output=self.logger.output)
        if not result.success:
            raise InfrastructureError(
                "Terraform apply failed",
                hint="Resources may be partially created; run `provisioner infra plan` to inspect",
                diagnostics="\n".join(result.errors),
            )

        address = result.outputs.get("instance_public_ip")
        if address:
            self.log_success(f"Instance reachable at http://{address}/ once first boot finishes")
        return result

    async def destroy(self, directory: Path) -> None:
        tf = self._client(directory)
        await self._prepare(tf)
        if not await tf.destroy(on_output=self.logger.output):
            raise InfrastructureError("Terraform destroy failed")

    async def outputs(self, directory: Path) -> Dict[str, Any]:
        return await self._client(directory).get_outputs()

    async def _prepare(self, tf: TerraformClient) -> None:
        installed, version = await tf.check_installed()
        if not installed:
            raise InfrastructureError(
                "Terraform is not installed",
                hint="Install the terraform CLI and make sure it is on PATH",
            )
        self.logger.debug(f"Terraform {version}")

        if not await tf.init():
            raise InfrastructureError("Terraform init failed")

        valid, errors = await tf.validate()
        if not valid:
            raise InfrastructureError(
                "Terraform configuration is invalid",
                diagnostics="\n".join(errors),
            )


def build_infra_spec(
    name: str,
    public_key_path: Path,
    vpc_id: str,
    ami_id: str,
    user_data: str,
    instance_type: Optional[str] = None,
    region: Optional[str] = None,
    subnet_id: Optional[str] = None,
) -> InfraSpec:
    """InfraSpec with defaults for anything left unset."""
    kwargs: Dict[str, Any] = {}
    if instance_type:
        kwargs["instance_type"] = instance_type
    if region:
        kwargs["region"] = region
    return InfraSpec(
        name=name,
        public_key_path=public_key_path,
        vpc_id=vpc_id,
        ami_id=ami_id,
        user_data=user_data,
        subnet_id=subnet_id,
        **kwargs,
    )
