"""Integration tests for the full provisioning sequence."""

import httpx
import pytest
from typer.testing import CliRunner

from provisioner.core.health_checker import InstanceMetadata
from provisioner.core.logger import setup_logging
from provisioner.models.deployment import ApplyMode, BuildKind
from provisioner.models.report import PipelineStatus, StepName
from provisioner.steps.orchestrator import ProvisionOrchestrator

from conftest import TOKEN, build_creates, clone_creates_checkout, result

PUBLIC_IP = "203.0.113.10"


def metadata_service(request: httpx.Request) -> httpx.Response:
    if request.method == "PUT" and request.url.path == "/latest/api/token":
        return httpx.Response(200, text="imds-session-token")
    if request.url.path == "/latest/meta-data/public-ipv4":
        assert request.headers.get("X-aws-ec2-metadata-token") == "imds-session-token"
        return httpx.Response(200, text=PUBLIC_IP)
    return httpx.Response(404)


@pytest.fixture
def metadata():
    return InstanceMetadata(transport=httpx.MockTransport(metadata_service))


@pytest.fixture
def orchestrator(settings, fake, file_manager, metadata):
    return ProvisionOrchestrator(
        settings=settings,
        executor=fake,
        file_manager=file_manager,
        metadata=metadata,
    )


class TestProvisionPipelineIntegration:
    """End-to-end runs against a scripted host."""

    @pytest.mark.asyncio
    async def test_demo_scenario(self, orchestrator, settings, config):
        report = await orchestrator.run(config, mode=ApplyMode.PROVISION)

        assert report.status == PipelineStatus.SUCCESS
        assert report.exit_code == 0
        assert [s.step for s in report.steps] == [
            StepName.SYSTEM_PREPARATION,
            StepName.SOURCE_ACQUISITION,
            StepName.BUILD,
            StepName.SERVICE_CONFIGURATION,
            StepName.REDEPLOY_SCRIPT,
        ]

        conf = (settings.nginx_conf_dir / "demo.conf").read_text()
        assert "demo" in conf
        assert str(settings.app_dir("demo") / "dist") in conf

        assert report.artifact.dirname == "dist"
        assert report.redeploy_script_path == str(settings.home_dir / "deploy.sh")
        assert report.public_address == PUBLIC_IP
        assert report.versions["node"] == "v18.19.0"

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, orchestrator, fake, config):
        await orchestrator.run(config)

        commands = fake.commands()

        def first(*prefix):
            return next(i for i, argv in enumerate(commands) if argv[:len(prefix)] == list(prefix))

        assert first("dnf", "update") < first("rpm", "-q") < first("git", "clone")
        assert first("git", "clone") < first("npm", "install") < first("npm", "run", "build")
        assert first("npm", "run", "build") < first("nginx", "-t") < first("systemctl", "restart")

    @pytest.mark.asyncio
    async def test_missing_build_output_stops_before_service(self, orchestrator, fake, settings, config):
        fake.on("npm", "run", "build")

        report = await orchestrator.run(config)

        assert report.status == PipelineStatus.FAILED
        assert report.exit_code == 1
        assert report.steps[-1].step == StepName.BUILD
        assert report.steps[-1].hint == "Checked for: dist/, build/"
        assert "package.json" in report.steps[-1].diagnostics
        assert report.step(StepName.SERVICE_CONFIGURATION) is None
        assert not fake.called("nginx")
        assert not (settings.nginx_conf_dir / "demo.conf").exists()
        assert report.public_address is None

    @pytest.mark.asyncio
    async def test_private_repository_reported(self, orchestrator, fake, config):
        fake.on("git", "clone", returncode=128, stderr="remote: Repository not found.")

        report = await orchestrator.run(config)

        assert report.status == PipelineStatus.FAILED
        failed = report.step(StepName.SOURCE_ACQUISITION)
        assert not failed.success
        assert "private repository" in failed.hint
        assert not fake.called("npm")

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, orchestrator, fake, settings, config):
        first = await orchestrator.run(config)
        fake.calls.clear()
        second = await orchestrator.run(config)

        assert first.succeeded and second.succeeded
        assert second.step(StepName.SERVICE_CONFIGURATION).message == "Unchanged demo.conf"
        assert second.step(StepName.SYSTEM_PREPARATION).message == "Packages already present"
        assert not fake.called("dnf", "install")
        assert not fake.called("systemctl", "start")
        assert not fake.called("firewall-cmd")
        assert sorted(p.name for p in settings.nginx_conf_dir.iterdir()) == ["demo.conf"]

    @pytest.mark.asyncio
    async def test_redeploy_picks_up_new_output_directory(self, orchestrator, fake, settings, config):
        assert (await orchestrator.run(config)).succeeded
        fake.on("npm", "run", "build", side_effect=build_creates("build"))
        fake.calls.clear()

        report = await orchestrator.run(config, mode=ApplyMode.REDEPLOY)

        assert report.succeeded
        assert [s.step for s in report.steps] == [
            StepName.SOURCE_ACQUISITION,
            StepName.BUILD,
            StepName.SERVICE_CONFIGURATION,
        ]
        assert fake.called("git", "-C", str(settings.app_dir("demo")), "fetch")
        assert not fake.called("git", "clone")
        assert not fake.called("dnf")

        conf = (settings.nginx_conf_dir / "demo.conf").read_text()
        assert str(settings.app_dir("demo") / "build") in conf
        assert not (settings.app_dir("demo") / "dist").exists()
        assert report.artifact.kind == BuildKind.CREATE_REACT_APP
        assert report.public_address is None

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, settings, fake, file_manager, config):
        def unreachable(request):
            raise httpx.ConnectError("no route to host", request=request)

        orchestrator = ProvisionOrchestrator(
            settings=settings,
            executor=fake,
            file_manager=file_manager,
            metadata=InstanceMetadata(transport=httpx.MockTransport(unreachable)),
        )

        report = await orchestrator.run(config)

        assert report.succeeded
        assert report.public_address == "unknown"

    @pytest.mark.asyncio
    async def test_token_never_reaches_output(self, orchestrator, fake, settings, token_config, capsys):
        report = await orchestrator.run(token_config)

        assert report.succeeded
        assert TOKEN not in capsys.readouterr().out
        assert TOKEN not in (settings.home_dir / "deploy.sh").read_text()
        assert TOKEN not in str(report.to_dict())

    @pytest.mark.asyncio
    async def test_command_output_reaches_log_file(self, orchestrator, fake, config, log_file):
        def noisy_clone(call):
            clone_creates_checkout(call)
            return result(stderr=f"Cloning into '{call.argv[-1]}'...\n")

        fake.on("git", "clone", side_effect=noisy_clone)
        fake.on("nginx", "-t", stderr="nginx: configuration file /etc/nginx/nginx.conf test is successful\n")

        report = await orchestrator.run(config)

        text = log_file.read_text()
        assert report.succeeded
        assert "Cloning into" in text
        assert "test is successful" in text
        assert "STEP: SERVICE_CONFIGURATION" in text

    @pytest.mark.asyncio
    @pytest.mark.parametrize("verbose", [False, True])
    async def test_token_never_written_to_log_file(self, verbose, orchestrator, fake, settings, token_config):
        def noisy_clone(call):
            clone_creates_checkout(call)
            return result(stderr=f"Cloning from {call.argv[-2]}\n")

        fake.on("git", "clone", side_effect=noisy_clone)
        fake.on("npm", "install", stdout=f"npm notice using {TOKEN}\n")

        setup_logging(verbose, settings.log_file)
        try:
            report = await orchestrator.run(token_config)
        finally:
            setup_logging(False, None)

        text = settings.log_file.read_text()
        assert report.succeeded
        assert TOKEN not in text
        assert "***" in text
        assert "Cloning from https://***@github.com/example/private-demo.git" in text
        if not verbose:
            # structlog JSON events share the file with the console mirror
            assert '"event"' in text


class TestCli:
    """Tests for the typer CLI."""

    @pytest.fixture
    def runner(self):
        return CliRunner()

    @pytest.fixture
    def cli_env(self, settings, tmp_path):
        return {
            "PROVISION_HOME_DIR": str(settings.home_dir),
            "PROVISION_NGINX_CONF_DIR": str(settings.nginx_conf_dir),
            "PROVISION_LOG_FILE": str(settings.log_file),
            "PROVISION_ENV_FILE": str(tmp_path / "absent.env"),
            "PROVISION_PROBE_URL": "",
            "PROVISION_REPO_URL": "",
            "PROVISION_APP_NAME": "",
            "GITHUB_TOKEN": "",
        }

    def test_render_config(self, runner, cli_env):
        from provisioner.main import app

        result = runner.invoke(
            app,
            ["render-config", "--app-name", "demo", "--root", "/srv/demo/dist"],
            env=cli_env,
        )

        assert result.exit_code == 0
        assert "root /srv/demo/dist;" in result.output

    def test_render_config_rejects_bad_name(self, runner, cli_env):
        from provisioner.main import app

        result = runner.invoke(app, ["render-config", "--app-name", "../etc"], env=cli_env)

        assert result.exit_code == 1

    def test_provision_requires_configuration(self, runner, cli_env):
        from provisioner.main import app

        result = runner.invoke(app, ["provision"], env=cli_env)

        assert result.exit_code == 1
        assert "PROVISION_REPO_URL" in result.output

    def test_provision_end_to_end(self, runner, cli_env, monkeypatch, fake, metadata):
        from provisioner.main import app
        import provisioner.steps.orchestrator as orchestrator_module

        real = orchestrator_module.ProvisionOrchestrator
        monkeypatch.setattr(
            orchestrator_module,
            "ProvisionOrchestrator",
            lambda settings: real(settings=settings, executor=fake, metadata=metadata),
        )

        result = runner.invoke(
            app,
            ["provision", "--repo-url", "https://github.com/example/demo.git", "--app-name", "demo", "--no-upgrade"],
            env={**cli_env, "GITHUB_TOKEN": TOKEN},
        )

        assert result.exit_code == 0, result.output
        assert "SUCCESS" in result.output
        assert TOKEN not in result.output
        assert not fake.called("dnf", "update")
        assert fake.called("git", "clone")[0].argv[-2].count(TOKEN) == 1

    def test_configuration_error_reaches_log_file(self, runner, cli_env, log_file):
        from provisioner.main import app

        outcome = runner.invoke(app, ["provision"], env=cli_env)

        text = log_file.read_text()
        assert outcome.exit_code == 1
        assert "Repository URL must not be empty" in text
        assert "PROVISION_REPO_URL" in text

    def test_report_reaches_log_file(self, runner, cli_env, monkeypatch, fake, metadata, log_file):
        from provisioner.main import app
        import provisioner.steps.orchestrator as orchestrator_module

        real = orchestrator_module.ProvisionOrchestrator
        monkeypatch.setattr(
            orchestrator_module,
            "ProvisionOrchestrator",
            lambda settings: real(settings=settings, executor=fake, metadata=metadata),
        )
        fake.on("npm", "run", "build")

        outcome = runner.invoke(
            app,
            ["provision", "--repo-url", "https://github.com/example/demo.git", "--app-name", "demo"],
            env=cli_env,
        )

        text = log_file.read_text()
        assert outcome.exit_code == 1
        assert "FAILED" in text
        assert "Checked for: dist/, build/" in text

    def test_infra_render_uses_loaded_settings(self, runner, cli_env, tmp_path):
        from provisioner.main import app

        key = tmp_path / "id_ed25519.pub"
        key.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITEST demo@example\n")
        env_file = tmp_path / "custom" / "site.env"
        out = tmp_path / "infra"

        outcome = runner.invoke(
            app,
            [
                "infra", "render",
                "--public-key", str(key),
                "--vpc-id", "vpc-0123",
                "--ami-id", "ami-0456",
                "--repo-url", "https://github.com/example/demo.git",
                "--app-name", "demo",
                "--env-file", str(env_file),
                "--dir", str(out),
            ],
            env=cli_env,
        )

        assert outcome.exit_code == 0, outcome.output
        assert sorted(p.name for p in out.iterdir()) == ["main.tf", "terraform.tfvars.json", "user_data.sh"]
        assert f"--env-file {env_file}" in (out / "user_data.sh").read_text()

    def test_infra_step_receives_settings(self, settings):
        from provisioner.main import _infra_step

        assert _infra_step(settings).settings is settings
