"""
Command Line Interface for slimpipe.
"""
import os
import sys

import click
import yaml

from ..CONVERTERS.to_dockerfile import DockerfileConverter
from ..CONVERTERS.to_workflow import WorkflowConverter
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.pipeline_orchestrator import PipelineOrchestrator
from ..MODELS.pipeline_config import TriggerEvent, TriggerKind
from ..PARSERS.config_parser import ConfigParser
from ..PARSERS.recipe_parser import RecipeParser
from ..RUNNERS.container_engine import ContainerEngine
from ..UTILS.log_config import configure_logging
from ..errors import PipelineError, ConfigError


def load_config(ctx, overrides=None):
    """
    Builds the PipelineConfig from the pipeline file and/or a Dockerfile.
    """
    obj = ctx.obj
    env_manager = EnvironmentManager(base_dir=".")
    context = env_manager.get_merged_environment(list(obj['env_files']))
    parser = ConfigParser(context=context)

    data = {}
    base_dir = os.path.abspath(".")
    if obj['dockerfile']:
        if not os.path.exists(obj['dockerfile']):
            raise ConfigError(f"{obj['dockerfile']} not found.")
        source_dir = os.path.dirname(os.path.abspath(obj['dockerfile']))
        data.update(RecipeParser().parse(obj['dockerfile'], source_dir=source_dir))
    if os.path.exists(obj['file']):
        base_dir = os.path.dirname(os.path.abspath(obj['file']))
        with open(obj['file'], 'r') as f:
            for section, values in parser.load_data(f.read()).items():
                if isinstance(values, dict) and isinstance(data.get(section), dict):
                    data[section] = {**data[section], **values}
                else:
                    data[section] = values
    elif not obj['dockerfile']:
        raise ConfigError(f"{obj['file']} not found.")

    data = parser.normalize(data)
    for section, values in (overrides or {}).items():
        values = {k: v for k, v in values.items() if v is not None}
        if values:
            existing = data.get(section)
            if isinstance(existing, bool):
                existing = {'enabled': existing}
            data[section] = {**(existing or {}), **values}
    return parser.from_dict(data, base_dir=base_dir), context


@click.group()
@click.option('--file', '-f', default='pipeline.yml', help='Pipeline file path')
@click.option('--dockerfile', '-d', default=None, help='Derive build and runtime from a multi-stage Dockerfile')
@click.option('--env-file', 'env_files', multiple=True, default=['.env'], help='.env files to read')
@click.option('--log-level', default='INFO', help='Log level')
@click.option('--json-logs', is_flag=True, help='Emit JSON log lines')
@click.pass_context
def cli(ctx, file, dockerfile, env_files, log_level, json_logs):
    """
    slimpipe - build, assemble, slim and publish minimal runtime images.

    Compiles a project in a throwaway builder, copies only the artifact and
    the libraries it needs into a minimal base under a non-root user,
    optionally slims the result, and pushes it to a registry.
    """
    ctx.ensure_object(dict)
    ctx.obj.update(file=file, dockerfile=dockerfile, env_files=env_files)
    configure_logging(log_level, json_output=json_logs)


@cli.command()
@click.option('--event', type=click.Choice(['push', 'manual']), default='manual', help='What triggered the run')
@click.option('--ref', default=None, help='Git ref of a push, e.g. refs/heads/main')
@click.option('--no-slim', is_flag=True, help='Skip the slimming stage')
@click.option('--allow-unslimmed', is_flag=True, help='Publish the unslimmed image if slimming fails')
@click.option('--registry', default=None, help='Override the publish registry')
@click.option('--repository', default=None, help='Override the publish repository')
@click.option('--tag', default=None, help='Override the publish tag')
@click.option('--engine', default='docker', help='Container engine executable')
@click.option('--keep-images', is_flag=True, help='Keep intermediate local images')
@click.pass_context
def run(ctx, event, ref, no_slim, allow_unslimmed, registry, repository, tag, engine, keep_images):
    """Run the pipeline once."""
    overrides = {
        'publish': {'registry': registry, 'repository': repository, 'tag': tag},
        'slimming': {
            'enabled': False if no_slim else None,
            'fallback_to_unslimmed': True if allow_unslimmed else None,
        },
    }
    try:
        config, context = load_config(ctx, overrides)
        credential = EnvironmentManager(environ=context).load_credential(config.publish)
    except PipelineError as e:
        click.echo(f"Error: {e}")
        sys.exit(2)

    orchestrator = PipelineOrchestrator(config, engine=ContainerEngine(engine), keep_images=keep_images)
    result = orchestrator.run(credential, TriggerEvent(kind=TriggerKind(event), ref=ref))

    if result.image:
        click.echo(f"Published {result.image}" + (f" ({result.digest})" if result.digest else ""))
    if result.error_message:
        click.echo(f"Error: {result.error_message}")
    click.echo(result.summary)
    sys.exit(1 if result.error_kind else 0)


@cli.command()
@click.pass_context
def plan(ctx):
    """Show the resolved pipeline configuration."""
    try:
        config, _ = load_config(ctx)
    except PipelineError as e:
        click.echo(f"Error: {e}")
        sys.exit(2)
    click.echo(yaml.safe_dump(config.model_dump(mode='json'), sort_keys=False))


@cli.command()
@click.option('--stage', '-s', type=click.Choice(['builder', 'runtime']), default='builder')
@click.pass_context
def render(ctx, stage):
    """Print the generated builder or runtime recipe."""
    try:
        config, _ = load_config(ctx)
    except PipelineError as e:
        click.echo(f"Error: {e}")
        sys.exit(2)

    converter = DockerfileConverter()
    if stage == 'builder':
        click.echo(converter.render_builder(config.build))
        return
    identity = config.runtime.identity
    click.echo(converter.render_runtime(
        config.runtime,
        artifact_source=config.build.name,
        libraries=[],
        create_user=f"useradd -m -d {identity.home} {identity.user} && chmod 0700 {identity.home}",
        labels=config.runtime.labels,
    ))


@cli.command()
@click.option('--out', '-o', default='.github/workflows/publish.yml', help='Output path')
@click.option('--secret', default='GHCR_TOKEN', help='CI secret holding the registry token')
@click.pass_context
def workflow(ctx, out, secret):
    """Generate a CI workflow that runs the pipeline on push and on demand."""
    try:
        config, _ = load_config(ctx)
    except PipelineError as e:
        click.echo(f"Error: {e}")
        sys.exit(2)
    path = WorkflowConverter(config, config_path=ctx.obj['file'], secret_name=secret).convert(out)
    click.echo(f"Workflow written to {path}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
