"""
Source Acquisition - fresh checkout of the application branch.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..core.errors import CloneError, PrivateRepositoryError
from ..core.executor import CommandResult
from ..core.security import embed_token, strip_credentials, token_applies
from ..models.deployment import ApplyMode, DeploymentConfig
from .base_step import BaseStep

# Fail immediately without prompting for credentials
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_ASKPASS": "/bin/true"}

AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "terminal prompts disabled",
    "repository not found",
    "invalid username or password",
    "permission denied (publickey)",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)

BRANCH_MISSING_MARKERS = (
    "remote branch",
    "couldn't find remote ref",
)


def classify_git_failure(output: str) -> str:
    """Return "auth", "branch" or "transient" for a failed clone/fetch."""
    text = output.lower()
    if any(marker in text for marker in AUTH_FAILURE_MARKERS):
        return "auth"
    if any(marker in text for marker in BRANCH_MISSING_MARKERS):
        return "branch"
    return "transient"


@dataclass
class SourceResult:
    """Checkout produced by the step."""
    path: Path
    commit_hash: Optional[str] = None
    fresh_clone: bool = True


class SourceStep(BaseStep):
    """
    Produces the checkout at <projects>/<app_name>:
    - Provision: remove any stale copy, clone the branch
    - Redeploy: fetch the branch and hard-reset an existing checkout
    The checkout is handed to the unprivileged run user afterwards.
    """

    def __init__(self, settings=None, executor=None, file_manager=None):
        super().__init__("Source", settings, executor, file_manager)

    async def run(self, config: DeploymentConfig, mode: ApplyMode = ApplyMode.PROVISION) -> SourceResult:
        app_dir = self.settings.app_dir(config.app_name)
        await self.file_manager.create_directory(self.settings.projects_dir)

        if config.token and not token_applies(config.repo_url, config.token, self.settings.token_host):
            self.logger.warning(
                f"Access token ignored: only https://{self.settings.token_host}/ URLs use it"
            )

        if mode == ApplyMode.REDEPLOY and (app_dir / ".git").is_dir():
            result = await self._update(config, app_dir)
        else:
            result = await self._clone(config, app_dir)

        user = self.settings.run_user
        await self.executor.check(
            ["chown", "-R", f"{user}:{user}", str(self.settings.projects_dir)],
            timeout=self.settings.timeouts.service,
        )

        short = (result.commit_hash or "unknown")[:12]
        self.log_success(f"Checked out {config.branch} at {short}")
        return result

    async def _clone(self, config: DeploymentConfig, app_dir: Path) -> SourceResult:
        if await self.file_manager.remove_tree(app_dir):
            self.logger.info(f"Directory {app_dir.name} already exists, removed it")

        clone_url = embed_token(config.repo_url, config.token, self.settings.token_host)
        if clone_url != config.repo_url:
            self.logger.info("Using access token for authentication")
        else:
            self.logger.info("Cloning without credentials")

        async def attempt() -> CommandResult:
            await self.file_manager.remove_tree(app_dir)
            return await self.executor.run(
                ["git", "clone", "--branch", config.branch, "--", clone_url, str(app_dir)],
                timeout=self.settings.timeouts.clone,
                env=GIT_ENV,
                cwd=self.settings.projects_dir,
                stream_output=True,
            )

        self.log_step(f"Cloning {config.repo_url} ({config.branch})", 1)
        await self._with_retries("clone", attempt, config)

        # Keep the token out of .git/config
        if clone_url != config.repo_url:
            await self.executor.check(
                ["git", "-C", str(app_dir), "remote", "set-url", "origin", strip_credentials(config.repo_url)],
                timeout=30,
            )

        commit = await self._head(app_dir)
        return SourceResult(path=app_dir, commit_hash=commit, fresh_clone=True)

    async def _update(self, config: DeploymentConfig, app_dir: Path) -> SourceResult:
        fetch_url = embed_token(config.repo_url, config.token, self.settings.token_host)
        user = self.settings.run_user

        async def attempt() -> CommandResult:
            return await self.executor.run(
                ["git", "-C", str(app_dir), "fetch", "--", fetch_url, config.branch],
                timeout=self.settings.timeouts.clone,
                env=GIT_ENV,
                run_as=user,
                stream_output=True,
            )

        self.log_step(f"Pulling latest {config.branch}", 1)
        await self._with_retries("fetch", attempt, config)

        # Local changes are discarded, like a fresh clone
        await self.executor.check(
            ["git", "-C", str(app_dir), "checkout", "--force", "-B", config.branch, "FETCH_HEAD"],
            timeout=60,
            run_as=user,
        )

        commit = await self._head(app_dir, run_as=user)
        return SourceResult(path=app_dir, commit_hash=commit, fresh_clone=False)

    async def _with_retries(
        self,
        action: str,
        attempt_fn: Callable[[], Awaitable[CommandResult]],
        config: DeploymentConfig,
    ) -> CommandResult:
        retry = self.settings.retry
        result = None

        for attempt in range(1, retry.clone_attempts + 1):
            result = await attempt_fn()
            if result.success:
                return result

            kind = classify_git_failure(result.output)
            if kind != "transient":
                break

            if attempt < retry.clone_attempts:
                delay = min(retry.base_delay * (2 ** (attempt - 1)), retry.max_delay)
                self.logger.warning(
                    f"git {action} failed (attempt {attempt}/{retry.clone_attempts}), retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise self._failure(action, result, config)

    def _failure(self, action: str, result: CommandResult, config: DeploymentConfig) -> CloneError:
        kind = classify_git_failure(result.output)
        diagnostics = result.tail()

        if kind == "auth" and not token_applies(config.repo_url, config.token, self.settings.token_host):
            return PrivateRepositoryError(
                f"Failed to {action} {config.repo_url}: access denied",
                hint="This is likely a private repository; provide an access token via GITHUB_TOKEN",
                diagnostics=diagnostics,
            )

        if kind == "auth":
            return CloneError(
                f"Failed to {action} {config.repo_url}: the access token was rejected",
                hint="Check that GITHUB_TOKEN is valid and can read the repository",
                diagnostics=diagnostics,
            )

        if kind == "branch":
            return CloneError(
                f"Failed to {action} {config.repo_url}: branch {config.branch!r} does not exist",
                hint="Check PROVISION_BRANCH",
                diagnostics=diagnostics,
            )

        return CloneError(
            f"Failed to {action} {config.repo_url}",
            hint="Check network access to the repository host",
            diagnostics=diagnostics,
        )

    async def _head(self, app_dir: Path, run_as: str = None) -> Optional[str]:
        result = await self.executor.run(
            ["git", "-C", str(app_dir), "rev-parse", "HEAD"],
            timeout=30,
            run_as=run_as,
        )
        return result.stdout.strip() if result.success else None
