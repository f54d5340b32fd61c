"""Credential resolution and the environment descriptor file.

The workload gets its credentials through a ``KEY=value`` descriptor that
``docker run --env-file`` consumes. The descriptor is the only place
credential values are persisted; it is written with owner-only permissions
and nothing in this module ever logs a value, only names.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType

from horizon.errors import EnvironmentFileError, MissingRequiredSecret
from horizon.logger import Logger

_OP = "env_resolve"
_MIN_PLAUSIBLE_LENGTH = 20
_DESCRIPTOR_MODE = 0o600


@dataclass(frozen=True)
class CredentialSpec:
    name: str  # env var name inside the workload
    flag: str  # CLI flag that can supply it
    required: bool = False
    capability: str = ""  # what an absent optional credential disables
    hint: str = ""


CREDENTIALS: tuple[CredentialSpec, ...] = (
    CredentialSpec(
        name="OPENROUTER_API_KEY",
        flag="--credential",
        required=True,
        capability="ai_provider",
        hint="Use --credential or set OPENROUTER_API_KEY (get a key at https://openrouter.ai/keys)",
    ),
    CredentialSpec(
        name="GITHUB_TOKEN",
        flag="--github-token",
        capability="github_mcp",
        hint="GitHub MCP server and gh CLI will be limited",
    ),
    CredentialSpec(
        name="TWENTY_FIRST_API_KEY",
        flag="--magic-key",
        capability="magic_mcp",
        hint="21st.dev Magic MCP server will be disabled",
    ),
)

REQUIRED_NAMES = frozenset(c.name for c in CREDENTIALS if c.required)
OPTIONAL_NAMES = frozenset(c.name for c in CREDENTIALS if not c.required)


@dataclass(frozen=True, repr=False)
class RuntimeEnvironment:
    """Validated, read-only set of variables handed to the workload."""

    values: Mapping[str, str]
    disabled: frozenset[str] = field(default_factory=frozenset)
    required: frozenset[str] = REQUIRED_NAMES
    optional: frozenset[str] = OPTIONAL_NAMES

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __repr__(self) -> str:
        # names only; values are secrets
        return f"RuntimeEnvironment(names={sorted(self.values)}, disabled={sorted(self.disabled)})"

    def __contains__(self, name: object) -> bool:
        return name in self.values

    @property
    def names(self) -> list[str]:
        return list(self.values)

    def capability_enabled(self, capability: str) -> bool:
        return capability not in self.disabled

    def capabilities(self) -> dict[str, bool]:
        return {c.capability: self.capability_enabled(c.capability) for c in CREDENTIALS}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _check_value(name: str, value: str) -> None:
    if "\n" in value or "\r" in value or "\x00" in value:
        raise EnvironmentFileError(
            f"{name} contains a line break or NUL byte and cannot be written to an env file"
        )


def resolve_environment(
    cli_args: Mapping[str, str | None],
    process_env: Mapping[str, str],
    *,
    logger: Logger,
    descriptor_path: Path | None = None,
    static: Mapping[str, str] | None = None,
) -> RuntimeEnvironment:
    """Merge CLI values over the process environment and validate the result.

    *cli_args* is keyed by variable name (``OPENROUTER_API_KEY`` …); a CLI
    value wins over the process environment and blank strings count as
    absent. *static* holds non-secret container settings appended after the
    credentials. When *descriptor_path* is given the descriptor is written.

    Raises :class:`MissingRequiredSecret` when a required credential is
    absent. Nothing is written in that case.
    """
    values: dict[str, str] = {}
    disabled: set[str] = set()

    for spec in CREDENTIALS:
        value = _clean(cli_args.get(spec.name)) or _clean(process_env.get(spec.name))
        if value is None:
            if spec.required:
                logger.error(_OP, f"Required credential {spec.name} is missing", hint=spec.hint)
                raise MissingRequiredSecret(spec.name, spec.hint)
            disabled.add(spec.capability)
            logger.info(_OP, f"{spec.name} not configured ({spec.hint})", capability=spec.capability)
            continue

        _check_value(spec.name, value)
        if len(value) < _MIN_PLAUSIBLE_LENGTH:
            logger.warning(
                _OP,
                f"{spec.name} seems too short; the remote service may reject it",
                length=len(value),
            )
        values[spec.name] = value

    for name, value in (static or {}).items():
        if name in values:
            continue
        _check_value(name, value)
        values[name] = value

    env = RuntimeEnvironment(values=values, disabled=frozenset(disabled))
    logger.info(
        _OP,
        "Environment resolved",
        variables=env.names,
        disabled=sorted(env.disabled),
    )
    if descriptor_path is not None:
        write_descriptor(env, descriptor_path, logger=logger)
    return env


def write_descriptor(env: RuntimeEnvironment, path: Path, *, logger: Logger) -> Path:
    """Atomically write *env* as an owner-only ``KEY=value`` file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(UTC).isoformat(timespec="seconds")
    lines = [f"# Workload environment generated by horizon on {stamp}", "# Do not commit this file."]
    lines += [f"{k}={v}" for k, v in env.values.items()]

    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _DESCRIPTOR_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")
    os.chmod(tmp, _DESCRIPTOR_MODE)
    tmp.replace(path)

    logger.info(_OP, f"Environment file written: {path}", variables=env.names)
    return path


def load_environment(path: Path, *, logger: Logger) -> RuntimeEnvironment:
    """Parse a descriptor written by :func:`write_descriptor`.

    Raises :class:`EnvironmentFileError` for unreadable or malformed files
    and :class:`MissingRequiredSecret` if a required key is absent or blank.
    """
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EnvironmentFileError(f"Cannot read environment file {path}: {exc}") from exc

    if mode & 0o077:
        logger.warning(
            _OP,
            f"Environment file {path} is readable by group/others; restricting to owner",
            mode=oct(mode),
        )
        try:
            os.chmod(path, _DESCRIPTOR_MODE)
        except OSError as exc:
            logger.warning(_OP, f"Could not restrict permissions on {path}: {exc}")

    values: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        name, sep, value = line.partition("=")
        name = name.strip()
        if not sep or not name or any(ch.isspace() for ch in name):
            raise EnvironmentFileError(f"{path}:{lineno}: expected KEY=value")
        values[name] = value

    for name in sorted(REQUIRED_NAMES):
        if not _clean(values.get(name)):
            raise MissingRequiredSecret(name, f"{path} does not define it; re-run `horizon build`")

    disabled = frozenset(
        c.capability for c in CREDENTIALS if not c.required and not _clean(values.get(c.name))
    )
    env = RuntimeEnvironment(values=values, disabled=disabled)
    logger.debug(_OP, f"Environment file loaded: {path}", variables=env.names)
    return env
