"""Unit tests for the build, service configuration and redeploy script steps."""

import stat
from pathlib import Path

import httpx
import pytest

from provisioner.core.errors import (
    BuildOutputMissingError,
    CommandFailedError,
    ConfigValidationError,
    ServiceStartError,
)
from provisioner.core.health_checker import HealthChecker
from provisioner.models.deployment import BuildArtifact, BuildKind
from provisioner.steps.build import BuildStep, detect_build_output
from provisioner.steps.redeploy_script import RedeployScriptStep
from provisioner.steps.service_config import NginxSiteContext, ServiceConfigStep, render_site_config

from conftest import TOKEN, build_creates


def make_artifact(settings, dirname="dist"):
    path = settings.app_dir("demo") / dirname
    path.mkdir(parents=True, exist_ok=True)
    (path / "index.html").write_text("<html></html>\n")
    return BuildArtifact(path=path, kind=BuildKind.from_dirname(dirname))


class TestDetectBuildOutput:
    """Tests for build output detection."""

    def test_prefers_dist(self, tmp_path):
        (tmp_path / "dist").mkdir()
        (tmp_path / "build").mkdir()

        artifact = detect_build_output(tmp_path, ["dist", "build"])

        assert artifact.path == tmp_path / "dist"
        assert artifact.kind == BuildKind.VITE

    def test_falls_back_to_build(self, tmp_path):
        (tmp_path / "build").mkdir()

        artifact = detect_build_output(tmp_path, ["dist", "build"])

        assert artifact.kind == BuildKind.CREATE_REACT_APP
        assert artifact.kind.label == "Create React App"

    def test_ignores_plain_files(self, tmp_path):
        (tmp_path / "dist").write_text("not a directory")
        assert detect_build_output(tmp_path, ["dist", "build"]) is None


class TestBuildStep:
    """Tests for BuildStep."""

    @pytest.mark.asyncio
    async def test_runs_install_and_build_as_run_user(self, settings, fake, file_manager, config):
        settings.app_dir("demo").mkdir(parents=True)

        artifact = await BuildStep(settings, fake, file_manager).run(config)

        install = fake.called("npm", "install")[0]
        build = fake.called("npm", "run", "build")[0]
        assert install.run_as == "ec2-user" and build.run_as == "ec2-user"
        assert install.cwd == settings.app_dir("demo")
        assert fake.calls.index(install) < fake.calls.index(build)
        assert artifact.path == settings.app_dir("demo") / "dist"

    @pytest.mark.asyncio
    async def test_create_react_app_output(self, settings, fake, file_manager, config):
        settings.app_dir("demo").mkdir(parents=True)
        fake.on("npm", "run", "build", side_effect=build_creates("build"))

        artifact = await BuildStep(settings, fake, file_manager).run(config)

        assert artifact.dirname == "build"
        assert artifact.kind == BuildKind.CREATE_REACT_APP

    @pytest.mark.asyncio
    async def test_stale_output_removed_before_build(self, settings, fake, file_manager, config):
        app_dir = settings.app_dir("demo")
        (app_dir / "dist").mkdir(parents=True)
        (app_dir / "dist" / "index.html").write_text("<html>old</html>\n")
        fake.on("npm", "run", "build", side_effect=build_creates("build"))

        artifact = await BuildStep(settings, fake, file_manager).run(config)

        assert not (app_dir / "dist").exists()
        assert artifact.path == app_dir / "build"
        assert artifact.kind == BuildKind.CREATE_REACT_APP

    @pytest.mark.asyncio
    async def test_missing_output_lists_directory(self, settings, fake, file_manager, config):
        app_dir = settings.app_dir("demo")
        app_dir.mkdir(parents=True)
        (app_dir / "package.json").write_text("{}")
        fake.on("npm", "run", "build")

        with pytest.raises(BuildOutputMissingError) as exc_info:
            await BuildStep(settings, fake, file_manager).run(config)

        assert exc_info.value.hint == "Checked for: dist/, build/"
        assert "package.json" in exc_info.value.diagnostics

    @pytest.mark.asyncio
    async def test_build_failure_stops(self, settings, fake, file_manager, config):
        settings.app_dir("demo").mkdir(parents=True)
        fake.on("npm", "install", returncode=1, stderr="npm ERR! code ERESOLVE")

        with pytest.raises(CommandFailedError) as exc_info:
            await BuildStep(settings, fake, file_manager).run(config)

        assert "ERESOLVE" in exc_info.value.diagnostics
        assert not fake.called("npm", "run", "build")


class TestNginxSiteRendering:
    """Tests for the nginx site template."""

    def test_render_contains_app_and_root(self, file_manager, tmp_path):
        content = render_site_config(
            file_manager,
            NginxSiteContext(app_name="demo", root=tmp_path / "projects" / "demo" / "dist"),
        )

        assert "demo" in content
        assert f"root {tmp_path / 'projects' / 'demo' / 'dist'};" in content
        assert "listen 80 default_server;" in content
        assert "listen [::]:80 default_server;" in content
        assert "try_files $uri $uri/ /index.html;" in content
        assert "js|css|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot" in content
        assert 'add_header Cache-Control "public, immutable";' in content
        assert "gzip_min_length 1024;" in content
        assert 'add_header X-XSS-Protection "1; mode=block" always;' in content
        assert 'add_header Referrer-Policy "no-referrer-when-downgrade" always;' in content

    def test_rejects_unsafe_root(self, tmp_path):
        with pytest.raises(ValueError):
            NginxSiteContext(app_name="demo", root=tmp_path / "dist; include /etc/passwd")

        with pytest.raises(ValueError):
            NginxSiteContext(app_name="demo", root=Path("relative/dist"))


class TestServiceConfigStep:
    """Tests for ServiceConfigStep."""

    @pytest.mark.asyncio
    async def test_installs_config_and_restarts(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)

        conf = await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert conf.path == settings.nginx_conf_dir / "demo.conf"
        written = conf.path.read_text()
        assert "demo" in written
        assert str(artifact.path) in written
        assert not (settings.nginx_conf_dir / "default.conf").exists()

        commands = fake.commands()
        assert commands.index(["nginx", "-t"]) < commands.index(["systemctl", "restart", "nginx"])

    @pytest.mark.asyncio
    async def test_permissions_opened_along_the_path(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        settings.home_dir.chmod(0o700)
        (artifact.path / "index.html").chmod(0o600)

        await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        for path in (settings.home_dir, settings.projects_dir, settings.app_dir("demo")):
            assert stat.S_IMODE(path.stat().st_mode) == 0o755
        assert stat.S_IMODE((artifact.path / "index.html").stat().st_mode) == 0o755

    @pytest.mark.asyncio
    async def test_selinux_labelling_when_enforcing(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        fake.on("getenforce", stdout="Enforcing\n")
        fake.on("getsebool", stdout="httpd_read_user_content --> off\n")

        await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert fake.called("chcon", "-R", "-t", "httpd_sys_content_t", str(artifact.path))
        assert fake.called("setsebool", "-P", "httpd_read_user_content", "1")

    @pytest.mark.asyncio
    async def test_no_selinux_commands_when_disabled(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)

        await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert not fake.called("chcon")
        assert not fake.called("setsebool")

    @pytest.mark.asyncio
    async def test_validation_failure_restores_and_skips_restart(
        self, settings, fake, file_manager, config
    ):
        artifact = make_artifact(settings)
        default_conf = settings.nginx_conf_dir / "default.conf"
        original_default = default_conf.read_text()
        fake.on("nginx", "-t", returncode=1, stderr="nginx: [emerg] unexpected \"}\" in demo.conf:12")

        with pytest.raises(ConfigValidationError) as exc_info:
            await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert not fake.called("systemctl", "restart")
        assert not (settings.nginx_conf_dir / "demo.conf").exists()
        assert default_conf.read_text() == original_default
        assert "[emerg]" in exc_info.value.diagnostics
        assert "server_name _;" in exc_info.value.diagnostics

    @pytest.mark.asyncio
    async def test_validation_failure_keeps_previous_site(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        previous = "# previous working site\n"
        (settings.nginx_conf_dir / "demo.conf").write_text(previous)
        fake.on("nginx", "-t", returncode=1, stderr="nginx: configuration file test failed")

        with pytest.raises(ConfigValidationError):
            await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert (settings.nginx_conf_dir / "demo.conf").read_text() == previous

    @pytest.mark.asyncio
    async def test_selinux_failure_restores_previous_files(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        default_conf = settings.nginx_conf_dir / "default.conf"
        original_default = default_conf.read_text()
        fake.on("getenforce", stdout="Enforcing\n")
        fake.on("chcon", returncode=1, stderr="chcon: failed to change context: Operation not permitted")

        with pytest.raises(CommandFailedError):
            await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert not (settings.nginx_conf_dir / "demo.conf").exists()
        assert default_conf.read_text() == original_default
        assert not fake.called("nginx", "-t")
        assert not fake.called("systemctl", "restart")

    @pytest.mark.asyncio
    async def test_inactive_after_restart(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        fake.on("systemctl", "is-active", "--quiet", "nginx", returncode=3)
        fake.on("systemctl", "status", stdout="nginx.service - failed (Result: exit-code)")

        with pytest.raises(ServiceStartError) as exc_info:
            await ServiceConfigStep(settings, fake, file_manager).run(config, artifact)

        assert "Result: exit-code" in exc_info.value.diagnostics

    @pytest.mark.asyncio
    async def test_rerun_reports_unchanged(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        step = ServiceConfigStep(settings, fake, file_manager)

        first = await step.run(config, artifact)
        second = await step.run(config, artifact)

        assert first.changed is True
        assert second.changed is False
        assert second.content == first.content

    @pytest.mark.asyncio
    async def test_failed_probe_is_only_a_warning(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        settings.probe_url = "http://127.0.0.1/"

        transport = httpx.MockTransport(lambda request: httpx.Response(502))
        checker = HealthChecker(timeout=1, transport=transport)
        step = ServiceConfigStep(settings, fake, file_manager, health_checker=checker)

        conf = await step.run(config, artifact)

        assert conf.path.exists()
        assert len(step.warnings) == 1
        assert "http://127.0.0.1/" in step.warnings[0]

    @pytest.mark.asyncio
    async def test_successful_probe(self, settings, fake, file_manager, config):
        artifact = make_artifact(settings)
        settings.probe_url = "http://127.0.0.1/"

        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html></html>"))
        step = ServiceConfigStep(
            settings, fake, file_manager,
            health_checker=HealthChecker(timeout=1, transport=transport),
        )

        await step.run(config, artifact)

        assert step.warnings == []


class TestRedeployScriptStep:
    """Tests for the redeploy launcher."""

    @pytest.mark.asyncio
    async def test_writes_executable_launcher(self, settings, fake, file_manager, config):
        script = await RedeployScriptStep(settings, fake, file_manager).run(config)

        assert script.path == settings.home_dir / "deploy.sh"
        content = script.path.read_text()
        assert content.startswith("#!/bin/bash")
        assert "-m provisioner redeploy" in content
        assert "--app-name demo" in content
        assert "--branch main" in content
        assert "--repo-url https://github.com/example/demo.git" in content
        assert f"--env-file {settings.env_file}" in content
        assert stat.S_IMODE(script.path.stat().st_mode) == 0o755

        assert fake.called("chown")[0].argv == ["chown", "ec2-user:ec2-user", str(script.path)]

    @pytest.mark.asyncio
    async def test_token_never_written(self, settings, fake, file_manager, token_config):
        script = await RedeployScriptStep(settings, fake, file_manager).run(token_config)

        assert TOKEN not in script.path.read_text()

    @pytest.mark.asyncio
    async def test_values_are_shell_quoted(self, settings, fake, file_manager):
        from provisioner.models.deployment import DeploymentConfig

        config = DeploymentConfig(
            repo_url="https://github.com/example/demo.git",
            branch="feature/$(reboot)",
            app_name="demo",
        )
        script = await RedeployScriptStep(settings, fake, file_manager).run(config)

        assert "--branch 'feature/$(reboot)'" in script.path.read_text()
