"""Tests for image build / push.

The docker CLI is mocked at the runtime boundary; what matters is how
failures surface (one ERROR with the stderr tail, no retry) and that
push without a registry is a skip, not a failure.
"""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock

import pytest
from conftest import completed, make_settings, records

from horizon.builder import ImageBuilder
from horizon.errors import BuildError, RuntimeUnavailableError


@pytest.fixture
def docker():
    rt = MagicMock()
    rt.build_image.return_value = completed(0)
    rt.tag_image.return_value = completed(0)
    rt.push_image.return_value = completed(0)
    return rt


@pytest.fixture
def builder(docker, logger, tmp_path):
    return ImageBuilder(docker, logger, make_settings(project_root=tmp_path))


class TestCheckPrerequisites:
    def test_missing_dockerfile(self, builder, tmp_path):
        with pytest.raises(BuildError, match="Dockerfile not found"):
            builder.check_prerequisites(tmp_path)

    def test_daemon_down_propagates(self, builder, docker, tmp_path):
        (tmp_path / "Dockerfile").write_text("FROM scratch\n")
        docker.ensure_running.side_effect = RuntimeUnavailableError("down")
        with pytest.raises(RuntimeUnavailableError):
            builder.check_prerequisites(tmp_path)

    def test_ok(self, builder, docker, tmp_path):
        (tmp_path / "Dockerfile").write_text("FROM scratch\n")
        builder.check_prerequisites(tmp_path)
        docker.ensure_running.assert_called_once()


class TestPrepareDirectories:
    def test_creates_layout_and_gitignore(self, builder, tmp_path):
        created = builder.prepare_directories(tmp_path)

        for sub in ("config", "templates", "prompts", "standards"):
            assert (tmp_path / ".ai" / sub).is_dir()
        assert (tmp_path / ".opencode").is_dir()
        gitignore = tmp_path / ".ai" / "config" / ".gitignore"
        assert "auth.json" in gitignore.read_text()
        assert gitignore in created

    def test_existing_gitignore_untouched(self, builder, tmp_path):
        gitignore = tmp_path / ".ai" / "config" / ".gitignore"
        gitignore.parent.mkdir(parents=True)
        gitignore.write_text("custom\n")

        builder.prepare_directories(tmp_path)
        assert gitignore.read_text() == "custom\n"

    def test_idempotent(self, builder, tmp_path):
        builder.prepare_directories(tmp_path)
        assert builder.prepare_directories(tmp_path) == []


class TestBuild:
    def test_success(self, builder, docker, tmp_path):
        result = builder.build(tmp_path, "dev", no_cache=True)

        assert result.success
        assert result.image == "horizon-sdlc/opencode:dev"
        docker.build_image.assert_called_once_with(
            tmp_path, "horizon-sdlc/opencode:dev", no_cache=True, timeout=1800
        )

    def test_default_tag(self, builder, tmp_path):
        assert builder.build(tmp_path).image == "horizon-sdlc/opencode:latest"

    def test_failure_logs_one_error_with_stderr(self, builder, docker, logger, tmp_path):
        docker.build_image.return_value = completed(1, "", "step 3/9: npm ERR! network timeout")

        result = builder.build(tmp_path)

        assert not result.success
        assert "npm ERR!" in result.stderr
        errors = records(logger, operation="image_build", level="ERROR")
        assert len(errors) == 1
        assert "npm ERR!" in errors[0]["stderr"]
        docker.build_image.assert_called_once()

    def test_stderr_tail_is_bounded(self, builder, docker, tmp_path):
        docker.build_image.return_value = completed(1, "", "x" * 10_000 + "LAST")
        result = builder.build(tmp_path)
        assert len(result.stderr) <= 2000
        assert result.stderr.endswith("LAST")

    def test_timeout_is_a_failure(self, builder, docker, tmp_path):
        docker.build_image.side_effect = subprocess.TimeoutExpired(["docker", "build"], 1800)
        result = builder.build(tmp_path)
        assert not result.success
        assert "1800" in result.stderr


class TestPush:
    @pytest.mark.parametrize("registry", [None, "", "   "])
    def test_no_registry_skips(self, builder, docker, logger, registry):
        result = builder.push("dev", registry)

        assert result.success
        assert result.skipped
        docker.tag_image.assert_not_called()
        assert records(logger, operation="image_push", level="INFO")
        assert not records(logger, operation="image_push", level="ERROR")

    def test_tags_and_pushes(self, builder, docker):
        result = builder.push("dev", "registry.example.com/")

        assert result.success
        assert result.image == "registry.example.com/horizon-sdlc/opencode:dev"
        docker.tag_image.assert_called_once_with(
            "horizon-sdlc/opencode:dev", "registry.example.com/horizon-sdlc/opencode:dev"
        )
        docker.push_image.assert_called_once()

    def test_push_failure(self, builder, docker, logger):
        docker.push_image.return_value = completed(1, "", "denied: requested access")

        result = builder.push("dev", "registry.example.com")

        assert not result.success
        assert len(records(logger, operation="image_push", level="ERROR")) == 1

    def test_tag_failure_skips_push(self, builder, docker):
        docker.tag_image.return_value = completed(1, "", "No such image")
        assert not builder.push("dev", "registry.example.com").success
        docker.push_image.assert_not_called()
