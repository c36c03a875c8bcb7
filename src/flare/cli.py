# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from flare.defaults import DefaultsConfig
from flare.errors import FlareError
from flare.logging_config import setup_logging
from flare.model import CMD_FROM, script_to_dict
from flare.parser import parse_file
from flare.runner import execute
from flare.ui.console import Console, set_console, get_console


def _load(script_path: str, workdir: str | None = None, output: str | None = None):
    """Parse a script file, letting CLI flags replace the built-in defaults."""
    console = get_console()
    config = DefaultsConfig.from_env()
    updates = {}
    if workdir:
        updates["workdir"] = workdir
    if output:
        updates["output"] = output
    if updates:
        config = config.model_copy(update=updates)

    try:
        return parse_file(script_path, defaults=config)
    except FlareError as e:
        console.print_script_error(e)
        sys.exit(1)
    except OSError as e:
        console.print_error(
            "Cannot read script",
            f"Could not read script file: {script_path}",
            details=[str(e)],
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """flare: collect diagnostics described by a script."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("script", type=click.Path(dir_okay=False))
@click.option("--workdir", default=None, help="Working directory used when the script has no WORKDIR")
@click.option("--output", default=None, help="Bundle path used when the script has no OUTPUT")
@click.option("--archive/--no-archive", default=True, show_default=True, help="Bundle the working directory")
@click.pass_context
def run(ctx, script, workdir, output, archive):
    """Run a flare script."""
    console = get_console()
    scr = _load(script, workdir, output)

    console.print_run_started(
        script=Path(script).name,
        nodes=[str(n) for n in scr.preamble(CMD_FROM).nodes],
        action_count=len(scr.actions),
    )

    try:
        result = execute(scr, archive=archive)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except FlareError as e:
        console.print_script_error(e)
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(result)


@cli.command(name="parse")
@click.argument("script", type=click.Path(dir_okay=False))
@click.pass_context
def parse_cmd(ctx, script):
    """Parse a script and print the resolved job as JSON."""
    scr = _load(script)
    click.echo(json.dumps(script_to_dict(scr), indent=2))


if __name__ == "__main__":
    cli()
