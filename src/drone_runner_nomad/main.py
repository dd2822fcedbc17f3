"""CLI entrypoint for drone-runner-nomad."""

import json
from pathlib import Path

import rich_click as click
from dotenv import load_dotenv

from drone_runner_nomad import __version__
from drone_runner_nomad.client import DroneClientError, NomadClientError
from drone_runner_nomad.config import ConfigurationError
from drone_runner_nomad.controllers import CompileCommand, DaemonCommand, RunnerCliController

click.rich_click.USE_MARKDOWN = True
RUNNER_CONTROLLER = RunnerCliController()


@click.group()
@click.version_option(version=__version__, prog_name="drone-runner-nomad")
def drone_runner_nomad() -> None:
    """Schedule Drone pipeline stages as Nomad batch jobs."""

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)


@drone_runner_nomad.command("daemon")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single poll cycle or poll until terminated.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll cycles in loop mode.",
)
@click.option(
    "--json-logs/--text-logs",
    default=True,
    show_default=True,
    help="Emit structured JSON log lines or human-readable text.",
)
def daemon(once: bool, max_cycles: int | None, json_logs: bool) -> None:
    """Poll the Drone server and schedule accepted stages on Nomad."""

    try:
        lines = RUNNER_CONTROLLER.run_daemon(
            DaemonCommand(once=once, max_cycles=max_cycles, json_logs=json_logs),
        )
    except ConfigurationError as error:
        raise click.ClickException(f"failed to load configuration: {error}") from error
    except (DroneClientError, NomadClientError) as error:
        raise click.ClickException(f"failed to create the client: {error}") from error
    _emit_lines(lines)


@drone_runner_nomad.command("compile")
@click.argument("stage_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--host-os",
    default=None,
    help="Pretend the runner host reports this OS (for example darwin).",
)
def compile_stage(stage_path: Path, host_os: str | None) -> None:
    """Print the Nomad job a stage JSON file would compile to."""

    try:
        lines = RUNNER_CONTROLLER.compile_stage(
            CompileCommand(stage_path=stage_path, host_os=host_os),
        )
    except ConfigurationError as error:
        raise click.ClickException(f"failed to load configuration: {error}") from error
    except (TypeError, ValueError) as error:
        if isinstance(error, json.JSONDecodeError):
            raise click.ClickException(f"invalid stage JSON: {error}") from error
        raise click.ClickException(f"invalid stage: {error}") from error
    _emit_lines(lines)


@drone_runner_nomad.command("config")
def show_config() -> None:
    """Print the resolved configuration with secrets redacted."""

    try:
        lines = RUNNER_CONTROLLER.show_config()
    except ConfigurationError as error:
        raise click.ClickException(f"failed to load configuration: {error}") from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    drone_runner_nomad()
