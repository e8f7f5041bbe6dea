"""
Build Step - dependency installation, build, and output detection.
"""

from pathlib import Path
from typing import List, Optional

from ..core.errors import BuildOutputMissingError
from ..models.deployment import BuildArtifact, BuildKind, DeploymentConfig
from .base_step import BaseStep


def detect_build_output(app_dir: Path, candidates: List[str]) -> Optional[BuildArtifact]:
    """
    First candidate directory that exists wins; order is the tie-break.
    """
    for name in candidates:
        path = app_dir / name
        if path.is_dir():
            return BuildArtifact(path=path, kind=BuildKind.from_dirname(name))
    return None


class BuildStep(BaseStep):
    """
    Handles the build phase as the unprivileged run user:
    - Install dependencies
    - Execute the build command
    - Locate the output directory
    """

    def __init__(self, settings=None, executor=None, file_manager=None):
        super().__init__("Build", settings, executor, file_manager)

    async def run(self, config: DeploymentConfig) -> BuildArtifact:
        app_dir = self.settings.app_dir(config.app_name)
        user = self.settings.run_user
        timeouts = self.settings.timeouts

        # Earlier outputs are untracked, so a redeploy checkout leaves them behind
        for name in self.settings.build_dir_candidates:
            if await self.file_manager.remove_tree(app_dir / name):
                self.logger.info(f"Removed previous build output {name}/")

        self.log_step("Installing dependencies", 1)
        await self.executor.check(
            self.settings.install_command,
            cwd=app_dir,
            run_as=user,
            timeout=timeouts.install,
            stream_output=True,
            hint="Dependency installation failed; see the npm output above",
        )

        self.log_step("Building application", 2)
        await self.executor.check(
            self.settings.build_command,
            cwd=app_dir,
            run_as=user,
            timeout=timeouts.build,
            stream_output=True,
            hint="The build command failed; see the build output above",
        )

        artifact = detect_build_output(app_dir, self.settings.build_dir_candidates)
        if artifact is None:
            checked = ", ".join(f"{name}/" for name in self.settings.build_dir_candidates)
            raise BuildOutputMissingError(
                "Build directory not found",
                hint=f"Checked for: {checked}",
                diagnostics=self.file_manager.list_dir(app_dir),
            )

        detected = f" ({artifact.kind.label} detected)" if artifact.kind else ""
        self.log_success(f"Found build directory: {artifact.dirname}/{detected}")
        return artifact
