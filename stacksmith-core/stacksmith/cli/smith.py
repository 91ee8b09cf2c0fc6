import json
import logging
import os
import traceback
from typing import Any, Optional

import click
from rich.markup import escape

from stacksmith import config
from stacksmith.cli.exceptions import CLIError
from stacksmith.constants import VERSION
from stacksmith.engine.exceptions import EngineError
from stacksmith.utils.json import CustomEncoder

from .console import console

ACTION_STYLES = {
    "Create": "green",
    "Update": "yellow",
    "Replace": "magenta",
    "Delete": "red",
    "NoOp": "dim",
}

STATUS_STYLES = {
    "Success": "green",
    "Failed": "red",
    "Skipped": "yellow",
}


class SmithCliGroup(click.Group):
    """
    A Click group used for the top-level ``smith`` command group. It implements global exception handling by:

    - Ignoring click exceptions (already handled)
    - Mapping engine errors to a ClickException carrying the exit code of the error
    - Wrapping all unexpected exceptions in a ClickException (for a unified error message)
    """

    def invoke(self, ctx: click.Context):
        try:
            return super(SmithCliGroup, self).invoke(ctx)
        except (click.exceptions.Exit, click.exceptions.Abort):
            # raise Exit and Abort exceptions unmodified (e.g., raised on --help or a declined confirmation)
            raise
        except click.ClickException:
            # don't handle ClickExceptions, just reraise
            if ctx and ctx.params.get("debug"):
                click.echo(traceback.format_exc())
            raise
        except Exception as e:
            if ctx and ctx.params.get("debug"):
                click.echo(traceback.format_exc())
            if isinstance(e, EngineError):
                raise CLIError(str(e), exit_code=e.exit_code) from e
            # If we have a generic exception, we wrap it in a ClickException
            raise CLIError(str(e)) from e


def _setup_cli_debug() -> None:
    from stacksmith.logging.setup import setup_logging_for_cli

    config.DEBUG = True
    os.environ["DEBUG"] = "1"

    setup_logging_for_cli(logging.DEBUG if config.DEBUG else logging.INFO)


def _parse_tags(ctx: click.Context, param: click.Parameter, values) -> dict[str, str]:
    tags = {}
    for value in values or ():
        key, separator, tag_value = value.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"{value!r} is not of the form KEY=VALUE")
        tags[key.strip()] = tag_value.strip()
    return tags


# Re-usable format option decorator which can be used across multiple commands
_click_format_option = click.option(
    "-f",
    "--format",
    "format_",
    type=click.Choice(["table", "json"]),
    default="table",
    help="The formatting style for the command output.",
)

_click_out_option = click.option(
    "-o",
    "--out",
    type=click.Path(dir_okay=False, writable=True),
    help="Additionally write the JSON document to this file.",
)


def _stack_options(f):
    """Options selecting and configuring the stack of a command taking a SOURCE."""
    options = [
        click.argument("source"),
        click.option(
            "--stack-name",
            help="Name of the stack. Defaults to the topology name or the template file name.",
        ),
        click.option("--stage", help="Deployment stage (defaults to SMITH_STAGE or dev)."),
        click.option("--region", help="Target region (defaults to SMITH_REGION or us-east-1)."),
        click.option("--account", help="Target account (defaults to SMITH_ACCOUNT)."),
        click.option(
            "--tag",
            "tags",
            multiple=True,
            metavar="KEY=VALUE",
            callback=_parse_tags,
            help="Tag added to every resource of the stack. Can be repeated.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group(
    name="smith",
    help="The stacksmith Command Line Interface (CLI)",
    cls=SmithCliGroup,
    context_settings={
        # add "-h" as a synonym for "--help"
        "help_option_names": ["-h", "--help"],
        # show default values for options by default
        "show_default": True,
    },
)
@click.version_option(
    VERSION,
    "--version",
    "-v",
    message="stacksmith CLI %(version)s",
    help="Show the version of the stacksmith CLI and exit",
)
@click.option("-d", "--debug", is_flag=True, help="Enable CLI debugging mode")
@click.option("-p", "--profile", type=str, help="Set the configuration profile")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    help="Directory holding the stack state files (defaults to SMITH_STATE_DIR or .stacksmith)",
)
def smith(debug, profile, state_dir) -> None:
    # --profile is read manually in stacksmith.cli.main because it needs to be read before stacksmith.config is read

    if debug:
        _setup_cli_debug()
    elif config.SMITH_LOG:
        from stacksmith.logging.setup import setup_logging_from_config

        setup_logging_from_config()

    if state_dir:
        config.STATE_DIR = state_dir


@smith.command(name="synth", short_help="Print the plan document of a stack")
@_stack_options
@_click_format_option
@_click_out_option
def cmd_synth(
    source: str,
    stack_name: Optional[str],
    stage: Optional[str],
    region: Optional[str],
    account: Optional[str],
    tags: dict[str, str],
    format_: str,
    out: Optional[str],
) -> None:
    """
    Synthesize the plan document of a stack.

    SOURCE is the path of a template file (JSON or YAML) or the name of a bundled topology. The document lists
    the resources in dependency order, with every reference resolved to a literal or to a token that is filled
    in at apply time.
    """
    from stacksmith.engine.synthesizer import find_unrestricted_rules

    stack = _load_stack(source, stack_name, stage, region, account, tags)
    document = stack.synthesize()
    _write_out(out, document.to_json())

    if format_ == "json":
        click.echo(document.to_json())
        return

    from rich.table import Table

    grid = Table(show_header=True, title=f"Stack {document.stack_name} ({document.stage})")
    grid.add_column("Logical ID")
    grid.add_column("Type")
    grid.add_column("Depends on")
    for resource in document.resources:
        grid.add_row(resource.logical_id, resource.kind.value, ", ".join(resource.dependencies))
    console.print(grid)

    if document.outputs:
        outputs = Table(show_header=True, title="Outputs")
        outputs.add_column("Key")
        outputs.add_column("Value")
        for key, output in document.outputs.items():
            outputs.add_row(key, _format_value(output.serialize()["Value"]))
        console.print(outputs)

    for finding in find_unrestricted_rules(document):
        console.print(f"[yellow]:warning: review required:[/yellow] {escape(finding)}")


@smith.command(name="plan", short_help="Show the change set of a stack")
@_stack_options
@_click_format_option
@_click_out_option
def cmd_plan(
    source: str,
    stack_name: Optional[str],
    stage: Optional[str],
    region: Optional[str],
    account: Optional[str],
    tags: dict[str, str],
    format_: str,
    out: Optional[str],
) -> None:
    """
    Show the changes needed to move the recorded state of a stack to its declaration.

    SOURCE is the path of a template file (JSON or YAML) or the name of a bundled topology.
    """
    stack = _load_stack(source, stack_name, stage, region, account, tags)
    plan = _plan(stack)
    _write_out(out, plan.to_json())

    if format_ == "json":
        click.echo(plan.to_json())
        return

    from rich.table import Table

    grid = Table(show_header=True, title=f"Plan for stack {plan.stack_name}")
    grid.add_column("Logical ID")
    grid.add_column("Type")
    grid.add_column("Action")
    grid.add_column("Reason")
    for change in plan:
        grid.add_row(
            change.logical_id,
            change.kind,
            _styled(change.action.value, ACTION_STYLES),
            escape(change.reason),
        )
    console.print(grid)
    _print_summary(plan.summary())


@smith.command(name="diff", short_help="Show per-attribute changes of a stack")
@_stack_options
@_click_format_option
def cmd_diff(
    source: str,
    stack_name: Optional[str],
    stage: Optional[str],
    region: Optional[str],
    account: Optional[str],
    tags: dict[str, str],
    format_: str,
) -> None:
    """
    Show the before and after value of every attribute the next apply changes.

    SOURCE is the path of a template file (JSON or YAML) or the name of a bundled topology. Values that are only
    known after their producer has been applied are shown as tokens.
    """
    stack = _load_stack(source, stack_name, stage, region, account, tags)
    rows = _diff_rows(_plan(stack))

    if format_ == "json":
        click.echo(json.dumps(rows, indent=2, cls=CustomEncoder))
        return

    if not rows:
        console.print(f"Stack {stack.stack_name} is up to date")
        return

    from rich.table import Table

    grid = Table(show_header=True, title=f"Diff of stack {stack.stack_name}")
    grid.add_column("Logical ID")
    grid.add_column("Action")
    grid.add_column("Attribute")
    grid.add_column("Before")
    grid.add_column("After")
    for row in rows:
        grid.add_row(
            row["LogicalResourceId"],
            _styled(row["Action"], ACTION_STYLES),
            row["Attribute"],
            _format_value(row["Before"]),
            _format_value(row["After"]),
        )
    console.print(grid)


@smith.command(name="apply", short_help="Apply the change set of a stack")
@_stack_options
@_click_format_option
@_click_out_option
def cmd_apply(
    source: str,
    stack_name: Optional[str],
    stage: Optional[str],
    region: Optional[str],
    account: Optional[str],
    tags: dict[str, str],
    format_: str,
    out: Optional[str],
) -> None:
    """
    Plan and apply the changes of a stack with the local resource providers.

    SOURCE is the path of a template file (JSON or YAML) or the name of a bundled topology. Independent resources
    are applied in parallel. If any resource fails, its dependents are skipped, every other resource is still
    applied, and the command exits with code 6.
    """
    from stacksmith.engine.executor import DeploymentExecutor
    from stacksmith.engine.state import FileStateStore
    from stacksmith.services.local.provider import create_local_providers

    stack = _load_stack(source, stack_name, stage, region, account, tags)
    store = FileStateStore()
    executor = DeploymentExecutor(store, providers=create_local_providers())
    # planning and applying happen under the same hold of the stack lock
    with store.lock(stack.stack_name):
        plan = stack.plan(store.load(stack.stack_name))
        result = executor.apply(plan)

    _print_result(result, format_, out)
    result.raise_for_failures()


@smith.command(name="destroy", short_help="Delete all resources of a stack")
@click.argument("stack_name")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
@_click_format_option
@_click_out_option
def cmd_destroy(stack_name: str, yes: bool, format_: str, out: Optional[str]) -> None:
    """
    Delete every resource recorded for STACK_NAME, dependents before the resources they depend on.
    """
    from stacksmith.engine.executor import DeploymentExecutor
    from stacksmith.engine.state import FileStateStore
    from stacksmith.services.local.provider import create_local_providers

    store = FileStateStore()
    if stack_name not in store.list_stacks():
        console.print(f"Stack {stack_name} has no recorded resources")
        return
    if not yes:
        click.confirm(f"Delete all resources of stack {stack_name}?", abort=True)

    result = DeploymentExecutor(store, providers=create_local_providers()).destroy(stack_name)
    _print_result(result, format_, out)
    result.raise_for_failures()


@smith.group(name="config", short_help="Inspect your stacksmith config")
def smith_config() -> None:
    """
    Inspect the stacksmith configuration.
    """
    pass


@smith_config.command(name="show", short_help="Show your config")
@_click_format_option
def cmd_config_show(format_: str) -> None:
    """
    Print the current stacksmith config values.

    The values are read from your environment and the loaded configuration profiles.
    """
    if format_ == "json":
        click.echo(json.dumps(dict(config.collect_config_items()), cls=CustomEncoder))
        return

    from rich.table import Table

    grid = Table(show_header=True)
    grid.add_column("Key")
    grid.add_column("Value")

    for key, value in config.collect_config_items():
        grid.add_row(key, str(value))

    console.print(grid)


def _load_stack(
    source: str,
    stack_name: Optional[str],
    stage: Optional[str],
    region: Optional[str],
    account: Optional[str],
    tags: dict[str, str],
):
    from stacksmith.engine.entities import StackConfig
    from stacksmith.engine.template import load_stack
    from stacksmith.topologies.erp import TOPOLOGIES

    if source in TOPOLOGIES:
        factory = TOPOLOGIES[source]
        default_name = source
    elif os.path.isfile(source):

        def factory(stack_config):
            return load_stack(source, stack_config)

        default_name = os.path.basename(source).split(".")[0]
    else:
        raise click.BadParameter(
            f"{source!r} is neither a template file nor a bundled topology "
            f"({', '.join(sorted(TOPOLOGIES))})",
            param_hint="'SOURCE'",
        )

    try:
        stack_config = StackConfig.from_config(
            stack_name or default_name, stage=stage, region=region, account=account, tags=tags
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="'--stack-name'")
    return factory(stack_config)


def _plan(stack):
    from stacksmith.engine.state import FileStateStore

    store = FileStateStore()
    with store.lock(stack.stack_name):
        previous = store.load(stack.stack_name)
    return stack.plan(previous)


def _diff_rows(plan) -> list[dict[str, Any]]:
    from stacksmith.engine.intrinsics import serialize_value
    from stacksmith.engine.planner import ChangeAction

    rows = []

    def add(change, attribute, before, after):
        rows.append(
            {
                "LogicalResourceId": change.logical_id,
                "Action": change.action.value,
                "Attribute": attribute,
                "Before": before,
                "After": after,
            }
        )

    for change in plan:
        if change.action == ChangeAction.NOOP:
            continue
        if change.action == ChangeAction.CREATE:
            for name in sorted(change.properties):
                add(change, name, None, serialize_value(change.properties[name]))
        elif change.action == ChangeAction.DELETE:
            for name in sorted(change.previous.properties if change.previous else {}):
                add(change, name, change.previous.properties[name], None)
        else:
            for name, before, after in change.attribute_changes():
                add(change, name, before, after)
    return rows


def _print_result(result, format_: str, out: Optional[str]) -> None:
    document = json.dumps(result.serialize(), indent=2, cls=CustomEncoder)
    _write_out(out, document)

    if format_ == "json":
        click.echo(document)
        return

    from rich.table import Table

    grid = Table(show_header=True, title=f"Stack {result.stack_name}")
    grid.add_column("Logical ID")
    grid.add_column("Action")
    grid.add_column("Status")
    grid.add_column("Physical ID")
    grid.add_column("Reason")
    for outcome in result.outcomes.values():
        grid.add_row(
            outcome.logical_id,
            _styled(outcome.action.value, ACTION_STYLES),
            _styled(outcome.status.value, STATUS_STYLES),
            outcome.physical_resource_id or "",
            escape(outcome.reason or ""),
        )
    console.print(grid)

    if result.outputs:
        outputs = Table(show_header=True, title="Outputs")
        outputs.add_column("Key")
        outputs.add_column("Value")
        for key, value in result.outputs.items():
            outputs.add_row(key, _format_value(value))
        console.print(outputs)

    if result.cancelled:
        console.print("[yellow]apply was cancelled[/yellow]")
    console.print(
        f"{len(result.succeeded)} succeeded, {len(result.failed)} failed, {len(result.skipped)} skipped"
    )


def _print_summary(summary: dict[str, int]) -> None:
    parts = [
        f"{count} to {action.lower()}"
        for action, count in summary.items()
        if count and action != "NoOp"
    ]
    if not parts:
        console.print("No changes")
        return
    console.print(", ".join(parts))


def _styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return escape(value)
    return escape(json.dumps(value, sort_keys=True, cls=CustomEncoder))


def _write_out(path: Optional[str], document: str) -> None:
    if not path:
        return
    with open(path, "w") as fd:
        fd.write(document)
        fd.write("\n")
