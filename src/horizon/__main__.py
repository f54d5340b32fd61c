"""Entry point for `python -m horizon` / `horizon`.

Subcommands:
    horizon build     Resolve credentials, build (and optionally push) the image
    horizon start     Start the workload, wait until ready, attach a session
    horizon verify    Run the verification suite against the running workload
    horizon stop      Stop and remove every instance of the workload
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import tomllib

from pydantic import ValidationError

from horizon._lifecycle import CancelToken, install_signal_handlers
from horizon.builder import ImageBuilder
from horizon.config import Settings, load_settings
from horizon.environment import load_environment, resolve_environment
from horizon.errors import EXIT_CONFIG, EXIT_FAILURE, EXIT_OK, ConfigurationError, HorizonError
from horizon.logger import LogConfig, Logger, configure_logging, install_excepthook
from horizon.runtime import DockerRuntime
from horizon.sequencer import Sequencer, SessionMode, stop_workload
from horizon.verifier import run_suite


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="horizon",
        description="Build, run, and verify the containerized coding workload",
    )
    parser.add_argument("--log-level", help="Minimum level: DEBUG, INFO, WARN, ERROR, FATAL")
    parser.add_argument("--log-dir", help="Directory for the JSON-lines log file")
    parser.add_argument("--log-file", help="Log file name inside --log-dir")
    parser.add_argument("--no-log-file", action="store_true", help="Disable the file sink")
    parser.add_argument("--no-console", action="store_true", help="Disable console output")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Build the workload image")
    build.add_argument("-k", "--credential", help="AI provider API key (OPENROUTER_API_KEY)")
    build.add_argument("-g", "--github-token", help="GitHub token for the GitHub MCP server")
    build.add_argument("-m", "--magic-key", help="21st.dev Magic API key (TWENTY_FIRST_API_KEY)")
    build.add_argument("-t", "--tag", help="Image tag (default: container.tag)")
    build.add_argument("-n", "--no-cache", action="store_true", help="Build without cache")
    build.add_argument("-p", "--push", action="store_true", help="Push the image after building")
    build.add_argument("-r", "--registry", help="Registry for --push (default: $DOCKER_REGISTRY)")
    build.add_argument("--context", help="Build context directory")

    start = sub.add_parser("start", help="Start the workload and attach a session")
    start.add_argument(
        "--mode",
        choices=[m.value for m in SessionMode],
        default=SessionMode.INTERACTIVE.value,
        help="Session to attach once ready",
    )
    start.add_argument("--attempts", type=int, help="Readiness probe attempts")
    start.add_argument("--interval", type=float, help="Seconds between readiness probes")

    sub.add_parser("verify", help="Verify the running workload")
    sub.add_parser("stop", help="Stop and remove the workload")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, dict[str, object]]:
    """CLI flags as settings overrides (merged over horizon.toml and env vars)."""
    overrides: dict[str, dict[str, object]] = {}

    def put(section: str, key: str, value: object) -> None:
        if value is not None:
            overrides.setdefault(section, {})[key] = value

    put("logging", "level", args.log_level)
    put("logging", "dir", args.log_dir)
    put("logging", "file", args.log_file)
    if args.no_log_file:
        put("logging", "file_enabled", False)
    if args.no_console:
        put("logging", "console_enabled", False)

    match args.command:
        case "build":
            put("build", "context", args.context)
            put("build", "registry", args.registry)
        case "start":
            put("readiness", "max_attempts", args.attempts)
            put("readiness", "interval", args.interval)
    return overrides


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _build(args: argparse.Namespace, settings: Settings, logger: Logger) -> int:
    runtime = DockerRuntime(settings.container.cli)
    builder = ImageBuilder(runtime, logger, settings)

    # credentials first: a configuration error must not touch docker
    resolve_environment(
        {
            "OPENROUTER_API_KEY": args.credential,
            "GITHUB_TOKEN": args.github_token,
            "TWENTY_FIRST_API_KEY": args.magic_key,
        },
        os.environ,
        logger=logger,
        descriptor_path=settings.descriptor_path,
        static=settings.container.environment,
    )
    builder.check_prerequisites(settings.build_context)
    builder.prepare_directories(settings.project_root)

    result = builder.build(settings.build_context, args.tag, no_cache=args.no_cache)
    if not result.success:
        return EXIT_FAILURE

    if args.push:
        registry = settings.build.registry or os.environ.get("DOCKER_REGISTRY")
        if not builder.push(args.tag, registry).success:
            return EXIT_FAILURE

    logger.info("build", f"Build completed: {result.image}")
    logger.info("build", "Next: run `horizon start` to launch the workload")
    return EXIT_OK


async def _start(args: argparse.Namespace, settings: Settings, logger: Logger) -> int:
    token = CancelToken()
    remove_handlers = install_signal_handlers(token, logger)
    try:
        descriptor = settings.descriptor_path
        if descriptor.exists():
            load_environment(descriptor, logger=logger)
        else:
            resolve_environment(
                {},
                os.environ,
                logger=logger,
                descriptor_path=descriptor,
                static=settings.container.environment,
            )

        runtime = DockerRuntime(settings.container.cli)
        await asyncio.to_thread(runtime.ensure_running)

        sequencer = Sequencer(runtime, settings, logger, env_file=descriptor, cancel=token)
        result = await sequencer.run(SessionMode(args.mode))
        return result.exit_code
    finally:
        remove_handlers()


async def _verify(settings: Settings, logger: Logger) -> int:
    runtime = DockerRuntime(settings.container.cli)
    await asyncio.to_thread(runtime.ensure_running)
    report = await run_suite(runtime, settings.container.name, settings=settings, logger=logger)
    return report.exit_code


async def _stop(settings: Settings, logger: Logger) -> int:
    runtime = DockerRuntime(settings.container.cli)
    await asyncio.to_thread(runtime.ensure_running)
    if await stop_workload(runtime, settings, logger):
        logger.info("container_cleanup", "Workload stopped")
        return EXIT_OK
    return EXIT_FAILURE


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


def run(argv: list[str] | None = None) -> int:
    """Parse *argv*, run one command, and return the process exit code."""
    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings(**_overrides(args))
    except (ValidationError, tomllib.TOMLDecodeError, OSError) as exc:
        logger = configure_logging(LogConfig(enable_file=False))
        logger.fatal("config", f"Invalid configuration: {exc}")
        logger.close()
        return EXIT_CONFIG

    logger = configure_logging(settings.log_config())
    install_excepthook(logger)
    logger.debug("config", "Settings loaded", root=str(settings.project_root), command=args.command)
    try:
        match args.command:
            case "build":
                return _build(args, settings, logger)
            case "start":
                return asyncio.run(_start(args, settings, logger))
            case "verify":
                return asyncio.run(_verify(settings, logger))
            case "stop":
                return asyncio.run(_stop(settings, logger))
            case _:
                logger.error("cli", f"Unknown command: {args.command}")
                return EXIT_CONFIG
    except ConfigurationError as exc:
        logger.fatal("config", str(exc))
        return exc.exit_code
    except HorizonError as exc:
        logger.error(args.command, str(exc))
        return exc.exit_code
    finally:
        logger.close()


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
