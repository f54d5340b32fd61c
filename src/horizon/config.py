"""Centralized configuration — Pydantic BaseSettings with TOML + env sources.

Non-secret settings live in ``horizon.toml`` in the working directory.
Environment variables prefixed with ``HORIZON_`` override it, using ``__``
as the nested delimiter (e.g. ``HORIZON_READINESS__MAX_ATTEMPTS=15``).
Credentials are *not* settings: they are resolved per invocation by
:mod:`horizon.environment` and only ever land in the env descriptor file.

Priority (highest wins): init args > env vars > horizon.toml

Usage::

    from horizon.config import load_settings

    s = load_settings()
    print(s.container.name)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from horizon.logger import Level, LogConfig

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in horizon.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    dir: str = "logs"
    file: str = "horizon.log"
    file_enabled: bool = True
    console_enabled: bool = True

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return Level.parse(v).name


class MountConfig(_StrictModel):
    source: str  # relative to project root or absolute
    target: str
    readonly: bool = False


class ContainerConfig(_StrictModel):
    cli: str = "docker"  # any docker-compatible CLI (e.g. "podman")
    name: str = "horizon-opencode"
    image: str = "horizon-sdlc/opencode"
    tag: str = "latest"
    workdir: str = "/workspace"
    mounts: list[MountConfig] = [MountConfig(source=".", target="/workspace")]
    ports: list[str] = ["3000:3000"]
    command: list[str] = []  # empty → image default
    keep_alive_tty: bool = True  # run with -it so an interactive entrypoint stays up
    stop_timeout: int = 10
    interactive_command: list[str] = ["opencode"]
    diagnostic_command: list[str] = ["bash"]
    environment: dict[str, str] = {
        "NODE_ENV": "production",
        "WORKSPACE_DIR": "/workspace",
        "LOG_LEVEL": "info",
        "SECURE_MODE": "true",
        "MCP_SERVER_TIMEOUT": "30000",
        "MCP_SERVER_RETRIES": "3",
    }

    @field_validator("name", "image")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("interactive_command", "diagnostic_command")
    @classmethod
    def _command_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("command must have at least one element")
        return v

    @field_validator("stop_timeout")
    @classmethod
    def _clamp_stop_timeout(cls, v: int) -> int:
        return max(0, v)

    def image_ref(self, tag: str | None = None) -> str:
        return f"{self.image}:{tag or self.tag}"


class ReadinessConfig(_StrictModel):
    """Fixed-interval, bounded-attempt readiness polling."""

    interval: float = 2.0  # seconds between probes
    max_attempts: int = 30
    health_url: str | None = None  # optional HTTP probe, e.g. http://localhost:3000/
    probe_timeout: float = 5.0

    @field_validator("interval", "probe_timeout")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be a positive integer")
        return v


class BuildConfig(_StrictModel):
    context: str = "docker/opencode"  # relative to project root or absolute
    registry: str | None = None  # DOCKER_REGISTRY env var is the CLI fallback
    timeout: int = 1800


class CapabilityConfig(_StrictModel):
    """An optional integration probed by the verifier (an MCP server binary)."""

    name: str
    command: str
    package: str | None = None  # global npm package that also counts as installed


class VerifyConfig(_StrictModel):
    config_paths: list[str] = [
        "$HOME/.config/opencode/opencode.json",
        "/.opencode/opencode.json",
        "/root/.config/opencode/opencode.json",
        "/workspace/.opencode/opencode.json",
    ]
    capabilities: list[CapabilityConfig] = [
        CapabilityConfig(name="Context7", command="context7-mcp-server", package="context7-mcp-server"),
        CapabilityConfig(
            name="GitHub MCP",
            command="github-mcp-server",
            package="@modelcontextprotocol/server-github",
        ),
        CapabilityConfig(name="Playwright", command="playwright-mcp-server", package="@playwright/mcp"),
        CapabilityConfig(
            name="ShadCN UI",
            command="shadcn-ui-mcp-server",
            package="@jpisnice/shadcn-ui-mcp-server",
        ),
        CapabilityConfig(
            name="Sequential Thinking",
            command="sequential-thinking-mcp-server",
            package="@modelcontextprotocol/server-sequential-thinking",
        ),
        CapabilityConfig(name="Magic (21st.dev)", command="magic-mcp-server"),
    ]
    ai_assets_dir: str = "/.ai"
    ai_assets_marker: str = "AGENTS.md"
    health_script: str = "/usr/local/bin/healthcheck.sh"
    health_retries: int = 3  # re-inspections while Docker reports "starting"
    health_retry_interval: float = 10.0
    command_timeout: int = 30
    log_tail: int = 10


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="horizon.toml",
        env_prefix="HORIZON_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    logging: LoggingConfig = LoggingConfig()
    container: ContainerConfig = ContainerConfig()
    readiness: ReadinessConfig = ReadinessConfig()
    build: BuildConfig = BuildConfig()
    verify: VerifyConfig = VerifyConfig()
    env_file: str = ".env"  # environment descriptor, relative to project root

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > horizon.toml.

        The ``.env`` dotenv source is left out on purpose: that file is the
        credential descriptor written by the resolver, not configuration.
        """
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    def resolve_path(self, value: str | Path) -> Path:
        p = Path(value).expanduser()
        if not p.is_absolute():
            p = self.project_root / p
        return p

    @cached_property
    def descriptor_path(self) -> Path:
        return self.resolve_path(self.env_file)

    @cached_property
    def build_context(self) -> Path:
        return self.resolve_path(self.build.context)

    def log_config(self) -> LogConfig:
        return LogConfig(
            min_level=Level.parse(self.logging.level),
            log_dir=self.resolve_path(self.logging.dir),
            log_file=self.logging.file,
            enable_file=self.logging.file_enabled,
            enable_console=self.logging.console_enabled,
        )


def load_settings(**overrides: object) -> Settings:
    """Read settings once at process entry; callers pass the result down."""
    return Settings(**overrides)  # type: ignore[arg-type]
