"""
Provisioning Orchestrator - runs the boot-time sequence.

Provision mode:
1. System preparation
2. Source acquisition
3. Build
4. Service configuration
5. Redeploy script
6. Summary

Redeploy mode runs steps 2-4 against the existing host.

Steps run strictly in order; the first failure stops the run. Every step is
idempotent, so re-running is the recovery path.
"""

import uuid
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from ..config import ProvisionSettings, get_settings
from ..core.errors import ProvisioningError
from ..core.executor import CommandExecutor
from ..core.file_manager import FileManager
from ..core.health_checker import HealthChecker, InstanceMetadata
from ..core.logger import StepLogger
from ..models.deployment import ApplyMode, DeploymentConfig
from ..models.report import PipelineStatus, ProvisionReport, StepName, StepResult
from .build import BuildStep
from .redeploy_script import RedeployScriptStep
from .service_config import ServiceConfigStep
from .source import SourceStep
from .system_prep import SystemPrepStep

StepAction = Callable[[], Awaitable[str]]


class ProvisionOrchestrator:
    """
    Coordinates the provisioning steps and produces a ProvisionReport.

    Usage:
        orchestrator = ProvisionOrchestrator()
        report = await orchestrator.run(config, mode=ApplyMode.PROVISION)
        raise SystemExit(report.exit_code)
    """

    def __init__(
        self,
        settings: ProvisionSettings = None,
        executor: CommandExecutor = None,
        file_manager: FileManager = None,
        health_checker: HealthChecker = None,
        metadata: InstanceMetadata = None,
    ):
        self.settings = settings or get_settings()
        self.logger = StepLogger("Orchestrator")
        self.metadata = metadata or InstanceMetadata(self.settings.metadata_url)

        shared = dict(settings=self.settings, executor=executor, file_manager=file_manager)
        self.system_prep = SystemPrepStep(**shared)
        self.source = SourceStep(**shared)
        self.build = BuildStep(**shared)
        self.service_config = ServiceConfigStep(health_checker=health_checker, **shared)
        self.redeploy_script = RedeployScriptStep(**shared)

    async def run(
        self,
        config: DeploymentConfig,
        mode: ApplyMode = ApplyMode.PROVISION,
        on_step: Callable[[StepResult], None] = None,
    ) -> ProvisionReport:
        """
        Execute the sequence for the given mode.

        Args:
            config: Validated deployment configuration
            mode: Full provisioning or redeploy
            on_step: Callback for step completion

        Returns:
            ProvisionReport; status is SUCCESS only if every step succeeded
        """
        run_id = f"pv-{datetime.now().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"

        report = ProvisionReport(
            run_id=run_id,
            mode=mode,
            status=PipelineStatus.RUNNING,
            started_at=datetime.now(),
            app_name=config.app_name,
            branch=config.branch,
        )

        title = "Deployment" if mode == ApplyMode.PROVISION else "Redeploy"
        self.logger.info("=" * 60)
        self.logger.info(f"{title} started at {report.started_at:%Y-%m-%d %H:%M:%S}")
        self.logger.info(f"Run ID: {run_id}")
        self.logger.info(f"Repository: {config.repo_url}")
        self.logger.info(f"Branch: {config.branch}")
        self.logger.info(f"App Name: {config.app_name}")
        self.logger.info("=" * 60)

        for name, action in self._sequence(config, mode, report):
            step_result = await self._run_step(name, action)
            report.steps.append(step_result)

            if on_step:
                on_step(step_result)

            if not step_result.success:
                report.status = PipelineStatus.FAILED
                report.errors.append(f"{name.value} failed: {step_result.error}")
                return await self._finalize_report(report)

        report.status = PipelineStatus.SUCCESS
        return await self._finalize_report(report)

    def _sequence(
        self,
        config: DeploymentConfig,
        mode: ApplyMode,
        report: ProvisionReport,
    ) -> List[Tuple[StepName, StepAction]]:
        async def prepare_system() -> str:
            result = await self.system_prep.run()
            report.versions = result.versions
            if result.installed:
                return f"Installed {', '.join(result.installed)}"
            return "Packages already present"

        async def acquire_source() -> str:
            result = await self.source.run(config, mode)
            report.commit_hash = result.commit_hash
            verb = "Cloned" if result.fresh_clone else "Updated"
            return f"{verb} {config.branch} at {(result.commit_hash or 'unknown')[:12]}"

        async def build() -> str:
            report.artifact = await self.build.run(config)
            return f"Output in {report.artifact.dirname}/"

        async def configure_service() -> str:
            conf = await self.service_config.run(config, report.artifact)
            report.nginx_config_path = str(conf.path)
            report.warnings.extend(self.service_config.warnings)
            return f"{'Updated' if conf.changed else 'Unchanged'} {conf.path.name}"

        async def write_redeploy_script() -> str:
            script = await self.redeploy_script.run(config)
            report.redeploy_script_path = str(script.path)
            return f"Wrote {script.path}"

        steps = [
            (StepName.SOURCE_ACQUISITION, acquire_source),
            (StepName.BUILD, build),
            (StepName.SERVICE_CONFIGURATION, configure_service),
        ]
        if mode == ApplyMode.PROVISION:
            steps.insert(0, (StepName.SYSTEM_PREPARATION, prepare_system))
            steps.append((StepName.REDEPLOY_SCRIPT, write_redeploy_script))
        return steps

    async def _run_step(self, step: StepName, action: StepAction) -> StepResult:
        """Run a step with timing and logging."""
        result = StepResult(
            step=step,
            success=False,
            started_at=datetime.now(),
        )

        self.logger.info("")
        self.logger.info(f"▶ STEP: {step.value.upper()}")
        self.logger.info("-" * 50)

        try:
            result.message = await action()
            result.success = True

        except ProvisioningError as e:
            result.error = e.message
            result.hint = e.hint
            result.diagnostics = e.diagnostics
            result.message = f"Step failed: {e.message}"
            self.logger.error(e.message)
            if e.hint:
                self.logger.warning(e.hint)
            if e.diagnostics:
                self.logger.block("Diagnostics", e.diagnostics)

        except Exception as e:
            result.error = str(e)
            result.message = f"Step failed: {e}"
            self.logger.error(f"Unexpected error in {step.value}: {e}", exc=e)

        result.finished_at = datetime.now()
        result.duration_seconds = (result.finished_at - result.started_at).total_seconds()

        if result.success:
            self.logger.success(f"{step.value} completed in {result.duration_seconds:.1f}s")
        else:
            self.logger.error(f"{step.value} failed after {result.duration_seconds:.1f}s")

        return result

    async def _finalize_report(self, report: ProvisionReport) -> ProvisionReport:
        """Finalize the report and print the summary."""
        report.finished_at = datetime.now()
        report.total_duration_seconds = (report.finished_at - report.started_at).total_seconds()

        if report.succeeded and report.mode == ApplyMode.PROVISION:
            report.public_address = await self.metadata.public_ipv4() or "unknown"

        self.logger.info("")
        self.logger.info("=" * 60)
        if not report.succeeded:
            self.logger.error(f"Run {report.run_id} failed")
            for error in report.errors:
                self.logger.error(error)
            self.logger.info("=" * 60)
            return report

        if report.mode == ApplyMode.REDEPLOY:
            self.logger.success("Redeploy completed successfully")
        else:
            self.logger.success("Deployment completed successfully")
            for tool, version in report.versions.items():
                self.logger.info(f"{tool} version: {version}")
        self.logger.info(f"App Name: {report.app_name}")
        if report.artifact:
            self.logger.info(f"Build Path: {report.artifact.path}")
        self.logger.info(f"Nginx Config: {report.nginx_config_path}")
        if report.redeploy_script_path:
            self.logger.info(f"Deploy Script: {report.redeploy_script_path}")
        if report.public_address:
            self.logger.info(f"Your app should be accessible at: http://{report.public_address}")
        for warning in report.warnings:
            self.logger.warning(warning)
        self.logger.info(f"Total time: {report.total_duration_seconds:.1f}s")
        self.logger.info("=" * 60)

        return report


async def provision(
    config: DeploymentConfig,
    mode: ApplyMode = ApplyMode.PROVISION,
    settings: Optional[ProvisionSettings] = None,
) -> ProvisionReport:
    """Convenience wrapper around ProvisionOrchestrator.run()."""
    return await ProvisionOrchestrator(settings=settings).run(config, mode=mode)
