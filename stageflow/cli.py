"""
CLI interface for stageflow.

Provides commands to inspect, validate and run orchestration specifications.

A SPEC argument is a path to a YAML/JSON specification file, the id of a
specification under the configured definitions directory, or the content
hash printed by `stageflow specs show`.
"""

import json
from pathlib import Path
from typing import Optional

import click
import yaml

from stageflow import __version__
from stageflow.config import (
    ConfigError,
    StageflowConfig,
    default_config_dict,
    get_stageflow_home,
    load_config,
)
from stageflow.errors import StageflowError
from stageflow.executor import execute_specification
from stageflow.registry import (
    SpecificationNotFoundError,
    SpecificationRegistry,
    load_specification_file,
)
from stageflow.run_store import FileRunStore
from stageflow.schemas import EventResponse, OrchestrationSpecification, RunStatus
from stageflow.utils import format_duration, print_error, print_success, print_warning, setup_logging


def _config(ctx) -> StageflowConfig:
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Fix the configuration or run 'stageflow init --force'.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _is_content_hash(value: str) -> bool:
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value)


def _resolve_spec(config: StageflowConfig, spec: str) -> OrchestrationSpecification:
    """Load SPEC as a file path, a registry id, or a content hash (see `specs show`)."""
    try:
        if Path(spec).is_file():
            return load_specification_file(spec)
        registry = SpecificationRegistry(config.definitions_path)
        try:
            return registry.load(spec)
        except SpecificationNotFoundError:
            if not _is_content_hash(spec):
                raise
            registry.preload_all()
            specification = registry.load_by_hash(spec)
            if specification is None:
                raise SpecificationNotFoundError(f"No specification with hash: {spec}")
            return specification
    except StageflowError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _parse_event(value: str) -> tuple[str, str]:
    name, sep, payload = value.partition("=")
    if not sep or not name:
        raise click.BadParameter(f"Expected NAME=Continue|Cancel, got {value!r}")
    try:
        return name, EventResponse.from_string(payload).value
    except StageflowError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.version_option(version=__version__, prog_name="stageflow")
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level")
@click.pass_context
def main(ctx, verbose: bool):
    """
    stageflow - Staged workflow orchestrator.

    Run specifications made of ordered stages of concurrent, retried jobs.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config()
    except ConfigError as e:
        # init can still run; every other command checks ctx.obj["config"]
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level="DEBUG" if verbose else config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
        console_output=config.console,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize stageflow configuration."""
    home = get_stageflow_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(home), sort_keys=False))
    (home / "definitions").mkdir(exist_ok=True)
    (home / "store").mkdir(exist_ok=True)

    click.echo(f"Initialized stageflow config at {cfg_path}")


@main.command("run")
@click.argument("spec")
@click.option(
    "--event", "events", multiple=True, metavar="NAME=PAYLOAD",
    help="Deliver an external event (payload Continue or Cancel). Repeatable.",
)
@click.option("--time-scale", type=float, default=None, help="Real seconds per logical second")
@click.option("--run-id", default=None, help="Explicit run id")
@click.pass_context
def run(ctx, spec: str, events: tuple[str, ...], time_scale: float, run_id: str):
    """
    Run a specification to completion.

    Examples:

        stageflow run nightly

        stageflow run ./release.yaml --event Approve=Continue

        stageflow run release --event Approve=Cancel --time-scale 0.001
    """
    config = _config(ctx)
    specification = _resolve_spec(config, spec)
    parsed_events = [_parse_event(e) for e in events]

    try:
        result = execute_specification(
            specification,
            activities=config.build_activity_registry(),
            events=parsed_events,
            store=FileRunStore(config.store_dir),
            time_scale=time_scale if time_scale is not None else config.time_scale,
            run_id=run_id,
        )
    except StageflowError as e:
        print_error(f"{specification.name} could not start: {e}")
        raise SystemExit(1)

    click.echo(f"Run: {result.run_id}")
    click.echo(f"Status: {result.run_record.status.value} ({result.custom_status})")

    if result.cancelled:
        print_warning(result.custom_status)
    elif result.success:
        print_success(result.output)
    else:
        print_error(f"{specification.name} failed: {result.error}")
        raise SystemExit(1)


@main.command("validate")
@click.argument("spec", required=False)
@click.pass_context
def validate(ctx, spec: Optional[str]):
    """
    Validate specifications and check their job functions are registered.

    Without SPEC, every specification in the definitions directory is
    validated.
    """
    config = _config(ctx)
    try:
        activities = config.build_activity_registry()
        if spec is not None:
            specifications = [_resolve_spec(config, spec)]
        else:
            registry = SpecificationRegistry(config.definitions_path)
            count = registry.preload_all()
            click.echo(f"Loaded {count} specification(s) from {registry.definitions_dir}")
            specifications = [registry.load(spec_id) for spec_id in registry.list_specs()]
    except StageflowError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    failed = False
    for specification in specifications:
        missing = sorted({job.function for job in specification.iter_jobs()
                          if not activities.has(job.function)})
        if missing:
            click.echo(f"✗ {specification.name}: Unknown job functions: {', '.join(missing)}", err=True)
            failed = True
            continue

        job_count = sum(1 for _ in specification.iter_jobs())
        click.echo(f"✓ {specification.name}: {len(specification.stages)} stage(s), {job_count} job(s)")

    if failed:
        raise SystemExit(1)


@main.command("status")
@click.argument("run_id")
@click.option("--children", is_flag=True, help="Also list nested sub-workflow instances")
@click.pass_context
def status(ctx, run_id: str, children: bool):
    """Show the status record of a run."""
    config = _config(ctx)
    store = FileRunStore(config.store_dir)

    record = store.get_run(run_id)
    if record is None:
        click.echo(f"✗ Unknown run: {run_id}", err=True)
        raise SystemExit(1)

    click.echo(f"Run: {record.run_id}")
    click.echo(f"Workflow: {record.workflow} ({record.name})")
    click.echo(f"Status: {record.status.value}")
    click.echo(f"Custom status: {record.custom_status}")
    click.echo(f"Duration: {format_duration(record.duration_ms)}")
    if record.output:
        click.echo(f"Output: {record.output}")
    if record.error:
        click.echo(f"Error: {record.error}")

    if children:
        for child_id in store.list_runs(parent_id=run_id):
            child = store.get_run(child_id)
            click.echo(f"  {child_id}: {child.name} [{child.status.value}]")

    if record.status == RunStatus.FAILED:
        raise SystemExit(1)


@main.group("specs")
def specs_group():
    """Inspect specifications in the definitions directory."""
    pass


@specs_group.command("list")
@click.pass_context
def list_specs(ctx):
    """List available specifications."""
    config = _config(ctx)
    registry = SpecificationRegistry(config.definitions_path)

    spec_ids = registry.list_specs()
    if not spec_ids:
        click.echo(f"No specifications found in {registry.definitions_dir}.")
        return

    for spec_id in spec_ids:
        click.echo(spec_id)


@specs_group.command("show")
@click.argument("spec")
@click.option("--json", "as_json", is_flag=True, help="Print the normalized specification as JSON")
@click.pass_context
def show_spec(ctx, spec: str, as_json: bool):
    """Show specification details."""
    config = _config(ctx)
    specification = _resolve_spec(config, spec)

    if as_json:
        click.echo(json.dumps(specification.to_dict(), indent=2))
        return

    click.echo(f"Specification: {specification.name}")
    if specification.description:
        click.echo(f"Description: {specification.description}")
    click.echo(f"Hash: {SpecificationRegistry.compute_hash(specification)}")
    for index, stage in enumerate(specification.stages, start=1):
        flags = []
        if stage.continue_on_error:
            flags.append("continue-on-error")
        if stage.wait_for_event is not None:
            flags.append(f"waits for {stage.wait_for_event.event_name}")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"{index}. {stage.name} (timeout {stage.timeout_minutes} min){suffix}")
        for job in stage.jobs:
            _echo_job(job, depth=1)


def _echo_job(job, depth: int) -> None:
    click.echo(f"{'  ' * depth}- {job.name} -> {job.function}")
    for child in job.jobs:
        _echo_job(child, depth + 1)


if __name__ == "__main__":
    main()
