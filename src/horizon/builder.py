"""Image build and publish.

This is the single code path for building the workload image. Failures are
reported as a :class:`BuildResult` (with the tool's stderr tail) rather than
raised, so the CLI decides the exit status. There is no retry.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from horizon.config import Settings
from horizon.errors import BuildError
from horizon.logger import Logger
from horizon.runtime import DockerRuntime

_STDERR_TAIL = 2000

_AI_SUBDIRS = ("config", "templates", "prompts", "standards")
_SECRETS_GITIGNORE = """\
# Ignore sensitive authentication files
auth.json
*.secret
*.key
*.env
"""


@dataclass
class BuildResult:
    """Result of an image build or push attempt."""

    success: bool
    skipped: bool = False  # True when there was nothing to do (no registry)
    image: str = ""
    stderr: str = ""


def _tail(text: str) -> str:
    return text.strip()[-_STDERR_TAIL:]


class ImageBuilder:
    def __init__(self, runtime: DockerRuntime, logger: Logger, config: Settings) -> None:
        self.runtime = runtime
        self.logger = logger
        self.config = config

    def check_prerequisites(self, context: Path) -> None:
        """Raise :class:`BuildError` unless the daemon is up and *context* has a Dockerfile."""
        self.logger.info("prerequisites", "Validating prerequisites")
        self.runtime.ensure_running()
        if not (context / "Dockerfile").is_file():
            raise BuildError(f"Dockerfile not found in build context {context}")
        self.logger.info("prerequisites", "Prerequisites validated", context=str(context))

    def prepare_directories(self, project_root: Path) -> list[Path]:
        """Create the host directories the workload mounts. Returns the ones created."""
        wanted = [project_root / ".opencode"]
        wanted += [project_root / ".ai" / sub for sub in _AI_SUBDIRS]
        created = [d for d in wanted if not d.is_dir()]
        for d in wanted:
            d.mkdir(parents=True, exist_ok=True)

        gitignore = project_root / ".ai" / "config" / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_SECRETS_GITIGNORE, encoding="utf-8")
            created.append(gitignore)

        self.logger.info(
            "prepare_directories",
            "Host directories ready",
            created=[str(p.relative_to(project_root)) for p in created],
        )
        return created

    def build(self, context: Path, tag: str | None = None, *, no_cache: bool = False) -> BuildResult:
        image = self.config.container.image_ref(tag)
        self.logger.info("image_build", f"Building image {image}", context=str(context), no_cache=no_cache)
        try:
            result = self.runtime.build_image(
                context, image, no_cache=no_cache, timeout=self.config.build.timeout
            )
        except subprocess.TimeoutExpired:
            msg = f"build did not finish within {self.config.build.timeout}s"
            self.logger.error("image_build", f"Image build failed: {msg}", image=image)
            return BuildResult(success=False, image=image, stderr=msg)
        except OSError as exc:
            self.logger.error("image_build", f"Image build failed: {exc}", image=image)
            return BuildResult(success=False, image=image, stderr=str(exc))

        if result.returncode != 0:
            stderr = _tail(result.stderr)
            self.logger.error(
                "image_build",
                f"Image build failed (exit {result.returncode})",
                image=image,
                stderr=stderr,
            )
            return BuildResult(success=False, image=image, stderr=stderr)

        self.logger.info("image_build", f"Image built: {image}")
        return BuildResult(success=True, image=image)

    def push(self, tag: str | None = None, registry: str | None = None) -> BuildResult:
        registry = (registry or "").strip().rstrip("/")
        if not registry:
            self.logger.info("image_push", "No registry specified, skipping push")
            return BuildResult(success=True, skipped=True)

        local = self.config.container.image_ref(tag)
        remote = f"{registry}/{local}"
        self.logger.info("image_push", f"Pushing {remote}")
        try:
            result = self.runtime.tag_image(local, remote)
            if result.returncode == 0:
                result = self.runtime.push_image(remote, timeout=self.config.build.timeout)
        except (subprocess.TimeoutExpired, OSError) as exc:
            self.logger.error("image_push", f"Image push failed: {exc}", image=remote)
            return BuildResult(success=False, image=remote, stderr=str(exc))

        if result.returncode != 0:
            stderr = _tail(result.stderr)
            self.logger.error(
                "image_push",
                f"Image push failed (exit {result.returncode})",
                image=remote,
                stderr=stderr,
            )
            return BuildResult(success=False, image=remote, stderr=stderr)

        self.logger.info("image_push", f"Image pushed: {remote}")
        return BuildResult(success=True, image=remote)
