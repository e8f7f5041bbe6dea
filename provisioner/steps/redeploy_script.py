"""
Redeploy Script Generator - launcher for later redeploys.
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from ..models.deployment import DeploymentConfig, RedeployScript
from .base_step import BaseStep

SCRIPT_TEMPLATE = "redeploy.sh.j2"
SCRIPT_MODE = 0o755


def render_redeploy_script(file_manager, config: DeploymentConfig, env_file: Path,
                           generated_at: datetime, python: str = None) -> str:
    """Render the launcher; the access token is deliberately not part of the context."""
    context: Dict[str, Any] = {
        "app_name": config.app_name,
        "branch": config.branch,
        "repo_url": config.repo_url,
        "env_file": str(env_file),
        "python": python or sys.executable,
        "generated_at": generated_at.strftime("%Y-%m-%d %H:%M:%S"),
    }
    return file_manager.render(SCRIPT_TEMPLATE, context)


class RedeployScriptStep(BaseStep):
    """
    Writes a standalone script that re-runs source, build and service
    configuration in redeploy mode with the values captured now.
    """

    def __init__(self, settings=None, executor=None, file_manager=None):
        super().__init__("RedeployScript", settings, executor, file_manager)

    async def run(self, config: DeploymentConfig) -> RedeployScript:
        path = self.settings.redeploy_script
        generated_at = datetime.now()

        self.log_step(f"Writing redeploy script to {path}", 1)
        content = render_redeploy_script(
            self.file_manager,
            config,
            env_file=self.settings.env_file,
            generated_at=generated_at,
        )
        await self.file_manager.write_file(path, content, mode=SCRIPT_MODE)

        user = self.settings.run_user
        await self.executor.check(
            ["chown", f"{user}:{user}", str(path)],
            timeout=self.settings.timeouts.service,
        )

        self.log_success(f"Redeploy script ready: {path}")
        return RedeployScript(
            path=path,
            app_name=config.app_name,
            branch=config.branch,
            repo_url=config.repo_url,
            generated_at=generated_at,
        )
