"""Shared fixtures: a scripted executor and a sandboxed host layout."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import structlog

from provisioner.config import ProvisionSettings, RetryConfig
from provisioner.core.executor import CommandExecutor, CommandResult, display, to_argv
from provisioner.core.file_manager import FileManager
from provisioner.core.logger import setup_logging
from provisioner.core.security import SecretsMasker
from provisioner.models.deployment import DeploymentConfig

COMMIT = "0123456789abcdef0123456789abcdef01234567"
TOKEN = "tok_0123456789abcdefSECRET"


def result(returncode: int = 0, stdout: str = "", stderr: str = "", command: str = "") -> CommandResult:
    return CommandResult(
        command=command,
        return_code=returncode,
        stdout=stdout,
        stderr=stderr,
        success=returncode == 0,
        duration_seconds=0.0,
    )


@dataclass
class Call:
    """One recorded command."""
    argv: List[str]
    run_as: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[Path] = None
    display: str = ""


class FakeExecutor(CommandExecutor):
    """
    CommandExecutor that never spawns processes.

    Responses are matched by argv prefix; the most recently registered rule
    wins. Unmatched commands succeed with no output. A callable response can
    touch the filesystem and return None to mean success.
    """

    def __init__(self):
        super().__init__(working_dir=Path("/"))
        self.calls: List[Call] = []
        self.rules: List[tuple] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "",
           side_effect: Callable[[Call], Optional[CommandResult]] = None) -> "FakeExecutor":
        response = side_effect or result(returncode, stdout, stderr)
        self.rules.append((list(prefix), response))
        return self

    def on_sequence(self, *prefix: str, responses: List[CommandResult]) -> "FakeExecutor":
        """Return the responses in order; the last one repeats."""
        remaining = list(responses)

        def next_response(_call: Call) -> CommandResult:
            return remaining.pop(0) if len(remaining) > 1 else remaining[0]

        self.rules.append((list(prefix), next_response))
        return self

    async def run(self, command, timeout=None, env=None, cwd=None, run_as=None,
                  stream_output=False, on_output=None) -> CommandResult:
        argv = to_argv(command)
        call = Call(argv=argv, run_as=run_as, env=dict(env or {}), cwd=cwd, display=display(argv))
        self.calls.append(call)

        for prefix, response in reversed(self.rules):
            if argv[:len(prefix)] == prefix:
                if callable(response):
                    response = response(call) or result()
                break
        else:
            response = result()

        response.command = call.display
        if stream_output and on_output is None:
            on_output = self.logger.output
        if on_output:
            for line in (response.stdout + response.stderr).splitlines():
                on_output(line)
        return response

    def commands(self) -> List[List[str]]:
        return [c.argv for c in self.calls]

    def called(self, *prefix: str) -> List[Call]:
        return [c for c in self.calls if c.argv[:len(prefix)] == list(prefix)]


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration bound to a stream that may be closed later (e.g. CliRunner's)."""
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def reset_secrets():
    SecretsMasker.clear()
    yield
    SecretsMasker.clear()


@pytest.fixture
def settings(tmp_path):
    """Settings with every host path redirected under tmp_path."""
    home = tmp_path / "home" / "ec2-user"
    home.mkdir(parents=True)
    conf_dir = tmp_path / "etc" / "nginx" / "conf.d"
    conf_dir.mkdir(parents=True)
    (conf_dir / "default.conf").write_text("server { listen 80 default_server; }\n")

    return ProvisionSettings(
        run_user="ec2-user",
        home_dir=home,
        nginx_conf_dir=conf_dir,
        packages=["git", "nodejs", "npm", "nginx"],
        upgrade_system=True,
        log_file=tmp_path / "user-data.log",
        env_file=tmp_path / "provisioner.env",
        probe_url="",
        retry=RetryConfig(clone_attempts=3, base_delay=0, max_delay=0, probe_attempts=2, probe_delay=0),
    )


@pytest.fixture
def file_manager(settings):
    return FileManager(base_dir=settings.home_dir)


@pytest.fixture
def config():
    return DeploymentConfig(
        repo_url="https://github.com/example/demo.git",
        branch="main",
        app_name="demo",
    )


@pytest.fixture
def token_config():
    SecretsMasker.register(TOKEN)
    return DeploymentConfig(
        repo_url="https://github.com/example/private-demo.git",
        branch="main",
        app_name="demo",
        token=TOKEN,
    )


def clone_creates_checkout(call: Call) -> None:
    """git clone side effect: materialise the target directory with a .git."""
    target = Path(call.argv[-1])
    (target / ".git").mkdir(parents=True, exist_ok=True)
    (target / "package.json").write_text('{"name": "demo"}\n')


def build_creates(dirname: str) -> Callable[[Call], None]:
    """npm run build side effect: produce <dirname>/index.html."""
    def effect(call: Call) -> None:
        out = Path(call.cwd) / dirname
        out.mkdir(parents=True, exist_ok=True)
        (out / "index.html").write_text("<!doctype html><title>demo</title>\n")
        (out / "assets").mkdir(exist_ok=True)
        (out / "assets" / "app.js").write_text("console.log('demo')\n")
    return effect


@pytest.fixture
def fake():
    """Executor scripted for a healthy host with a Vite project."""
    executor = FakeExecutor()
    executor.on("git", "clone", side_effect=clone_creates_checkout)
    executor.on("npm", "run", "build", side_effect=build_creates("dist"))
    executor.on("node", "--version", stdout="v18.19.0\n")
    executor.on("npm", "--version", stdout="10.2.3\n")
    executor.on("git", "--version", stdout="git version 2.40.1\n")
    executor.on("getenforce", stdout="Disabled\n")
    executor.on("systemctl", "is-active", "--quiet", "firewalld", returncode=3)

    def rev_parse(call: Call) -> Optional[CommandResult]:
        if call.argv[-2:] == ["rev-parse", "HEAD"]:
            return result(stdout=COMMIT + "\n")
        return None

    executor.rules.append((["git", "-C"], rev_parse))
    return executor


@pytest.fixture
def bare_executor():
    """FakeExecutor with no scripted responses."""
    return FakeExecutor()


@pytest.fixture
def make_result():
    return result


@pytest.fixture
def log_file(settings):
    """Route structlog events and the console mirror into settings.log_file."""
    setup_logging(False, settings.log_file)
    yield settings.log_file
    setup_logging(False, None)
