"""
Terraform Client - CLI wrapper for the infrastructure declaration.

Provides:
- init/validate/plan/apply/destroy operations
- Output parsing
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.executor import CommandExecutor
from ..core.logger import StepLogger

PLAN_SUMMARY = re.compile(r"(\d+) to add, (\d+) to change, (\d+) to destroy")
APPLY_SUMMARY = re.compile(r"(\d+) added, (\d+) changed, (\d+) destroyed")


@dataclass
class TerraformPlan:
    """Result of terraform plan."""
    success: bool
    has_changes: bool = False
    add: int = 0
    change: int = 0
    destroy: int = 0
    plan_file: Optional[str] = None
    output: str = ""
    errors: List[str] = field(default_factory=list)


@dataclass
class TerraformApplyResult:
    """Result of terraform apply."""
    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    resources_created: int = 0
    resources_updated: int = 0
    resources_destroyed: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0


class TerraformClient:
    """
    Terraform CLI wrapper.

    Usage:
        tf = TerraformClient(working_dir=Path("./infra"))
        await tf.init()
        plan = await tf.plan()
        if plan.has_changes:
            result = await tf.apply(plan_file=plan.plan_file)
            print(result.outputs.get("instance_public_ip"))
    """

    def __init__(
        self,
        working_dir: Path = None,
        var_file: str = None,
        executor: CommandExecutor = None,
        logger: StepLogger = None,
    ):
        self.working_dir = working_dir or Path.cwd()
        self.var_file = var_file
        self.logger = logger or StepLogger("Terraform")
        self.executor = executor or CommandExecutor(working_dir=self.working_dir, logger=self.logger)

    async def _tf(self, args: List[str], timeout: int, on_output: Callable[[str], None] = None):
        return await self.executor.run(
            ["terraform", *args],
            timeout=timeout,
            cwd=self.working_dir,
            stream_output=on_output is not None,
            on_output=on_output,
        )

    async def check_installed(self) -> tuple[bool, Optional[str]]:
        """Check if Terraform is installed and return version."""
        result = await self._tf(["version", "-json"], timeout=10)

        if result.success:
            try:
                data = json.loads(result.stdout)
                return True, data.get("terraform_version", "unknown")
            except json.JSONDecodeError:
                return True, result.stdout.split("\n")[0]

        return False, None

    async def init(self, upgrade: bool = False, on_output: Callable[[str], None] = None) -> bool:
        """Initialize the working directory."""
        self.logger.info("Initializing Terraform...")

        args = ["init", "-input=false"]
        if upgrade:
            args.append("-upgrade")

        result = await self._tf(args, timeout=300, on_output=on_output)

        if result.success:
            self.logger.success("Terraform initialized")
        else:
            self.logger.error(f"Terraform init failed: {result.stderr}")

        return result.success

    async def validate(self) -> tuple[bool, List[str]]:
        """
        Validate the configuration.

        Returns:
            Tuple of (is_valid, error_messages)
        """
        result = await self._tf(["validate", "-json"], timeout=60)

        try:
            data = json.loads(result.stdout)
            is_valid = data.get("valid", False)
            errors = [
                diag.get("summary", "")
                for diag in data.get("diagnostics", [])
                if diag.get("severity") == "error"
            ]
            return is_valid, errors
        except json.JSONDecodeError:
            return result.success, [result.stderr] if not result.success else []

    async def plan(
        self,
        out_file: str = "tfplan",
        on_output: Callable[[str], None] = None,
    ) -> TerraformPlan:
        """Create a plan and summarise the changes."""
        self.logger.info("Creating Terraform plan...")

        plan = TerraformPlan(success=False, plan_file=out_file)

        args = ["plan", "-input=false"]
        if out_file:
            args.append(f"-out={out_file}")
        if self.var_file:
            args.append(f"-var-file={self.var_file}")

        result = await self._tf(args, timeout=600, on_output=on_output)

        plan.success = result.success
        plan.output = result.output

        if result.success:
            plan.has_changes = "No changes" not in result.stdout

            match = PLAN_SUMMARY.search(result.output)
            if match:
                plan.add = int(match.group(1))
                plan.change = int(match.group(2))
                plan.destroy = int(match.group(3))
                plan.has_changes = (plan.add + plan.change + plan.destroy) > 0

            self.logger.info(f"Plan complete: +{plan.add} ~{plan.change} -{plan.destroy}")
        else:
            plan.errors.append(result.stderr)
            self.logger.error(f"Plan failed: {result.stderr}")

        return plan

    async def apply(
        self,
        plan_file: str = None,
        on_output: Callable[[str], None] = None,
    ) -> TerraformApplyResult:
        """Apply a saved plan, or apply directly with auto-approval."""
        self.logger.info("Applying Terraform changes...")

        result = TerraformApplyResult(success=False)
        start_time = datetime.now()

        args = ["apply", "-input=false", "-auto-approve"]
        if plan_file:
            args.append(plan_file)
        elif self.var_file:
            args.append(f"-var-file={self.var_file}")

        exec_result = await self._tf(args, timeout=1200, on_output=on_output)

        result.success = exec_result.success
        result.duration_seconds = (datetime.now() - start_time).total_seconds()

        if exec_result.success:
            result.outputs = await self.get_outputs()

            match = APPLY_SUMMARY.search(exec_result.output)
            if match:
                result.resources_created = int(match.group(1))
                result.resources_updated = int(match.group(2))
                result.resources_destroyed = int(match.group(3))

            self.logger.success(
                f"Apply complete: +{result.resources_created} "
                f"~{result.resources_updated} -{result.resources_destroyed}"
            )
        else:
            result.errors.append(exec_result.stderr)
            self.logger.error(f"Apply failed: {exec_result.stderr}")

        return result

    async def destroy(self, on_output: Callable[[str], None] = None) -> bool:
        """Destroy the managed resources."""
        self.logger.warning("Destroying Terraform infrastructure...")

        args = ["destroy", "-input=false", "-auto-approve"]
        if self.var_file:
            args.append(f"-var-file={self.var_file}")

        result = await self._tf(args, timeout=1200, on_output=on_output)

        if result.success:
            self.logger.success("Destroy complete")
        else:
            self.logger.error(f"Destroy failed: {result.stderr}")

        return result.success

    async def get_outputs(self) -> Dict[str, Any]:
        """Get output values."""
        result = await self._tf(["output", "-json"], timeout=30)

        if result.success:
            try:
                data = json.loads(result.stdout)
                return {key: info.get("value") for key, info in data.items()}
            except json.JSONDecodeError:
                pass

        return {}
