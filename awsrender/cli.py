"""Command line for awsrender.

    awsrender [OPTIONS] SOURCE.scad

Renders SOURCE on the configured EC2 instance. Results are stored in S3; the
instance can stop itself and mail a notification on completion. The instance
needs OpenSCAD, the AWS CLI, SSH access and S3 permissions.

Use of awsrender may incur fees from Amazon Web Services Inc. All fees
incurred are the responsibility of the user.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click
from botocore.exceptions import BotoCoreError, ClientError
from click.core import ParameterSource
from injector import Injector
from rich.console import Console
from rich.markup import escape

from awsrender import __version__
from awsrender.config import Settings, read_defaults, resolve_settings
from awsrender.constants import DEFAULT_REGION
from awsrender.exceptions import AwsRenderError, ConfigurationError
from awsrender.logging import LogConfig, setup_logging, teardown_logging
from awsrender.providers.aws import AWS, AWSConfigModule, AWSModule, EC2Controller, InstanceHandle
from awsrender.render import RenderJob, render

console = Console(stderr=True, soft_wrap=True)

# Command-line parameter -> Settings field
SETTING_PARAMS = {
    "instance_id": "instance_id",
    "key_file": "key_file",
    "username": "username",
    "host_key": "host_key",
    "output": "bucket",
    "email": "email",
    "shutdown": "shutdown",
}


def _explicit_fields(ctx: click.Context) -> set[str]:
    return {
        field
        for param, field in SETTING_PARAMS.items()
        if ctx.get_parameter_source(param) is ParameterSource.COMMANDLINE
    }


def _report(job: RenderJob, settings: Settings, source: Path) -> None:
    if not job.started:
        console.print(
            f"[yellow]DEBUG MODE[/yellow] - render script not started. Files in working "
            f"directory [bold]{job.work_dir}[/bold] on instance {job.instance_id}."
        )
        return

    extras = []
    if settings.email:
        extras.append(f"Notification will be sent to {settings.email}.")
    if settings.shutdown:
        extras.append("Instance will be stopped on completion.")
    console.print(
        f"[green]Render of {source.name} started on {job.instance_id}.[/green] "
        f"Output to {settings.bucket}. {' '.join(extras)}".rstrip()
    )
    console.print(f"Exit status will be written to {job.status_path}", style="dim")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("source", type=click.Path(path_type=Path), required=False)
@click.option("-i", "--instance-id", default="", help="AWS instance ID")
@click.option("-k", "--key-file", default="", help="SSH private key PEM file to access instance")
@click.option("-u", "--username", default="", help="AWS instance username")
@click.option("-H", "--host-key", default="", help="SSH host key (ssh-keyscan to generate)")
@click.option("-o", "--output", default="", help="S3 bucket to store output files")
@click.option("-e", "--email", default="", help="(optional) email address for notifications - must be SES verified")
@click.option("-s", "--shutdown", is_flag=True, help="(optional) stop instance on completion")
@click.option("-d", "--save-defaults", is_flag=True, help="Save settings as future defaults for this instance ID")
@click.option("-p", "--set-primary", is_flag=True,
              help="Mark this instance as primary (the one used if none specified) - implies -d")
@click.option("--debug-run", is_flag=True, help="Terminate without executing run script, allowing manual debug")
@click.option("--stop-now", is_flag=True, help="Stop the instance now instead of rendering (no SOURCE needed)")
@click.option("--region", default=DEFAULT_REGION, show_default=True, help="AWS region of the instance")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              default="WARNING", show_default=True, help="Console log level")
@click.option("--log-file", default=None, help="Also write a full debug log to this file")
@click.option("-V", "--version", is_flag=True, help="Print version & licence information")
@click.pass_context
def main(
    ctx: click.Context,
    source: Path | None,
    instance_id: str,
    key_file: str,
    username: str,
    host_key: str,
    output: str,
    email: str,
    shutdown: bool,
    save_defaults: bool,
    set_primary: bool,
    debug_run: bool,
    stop_now: bool,
    region: str,
    log_level: str,
    log_file: str | None,
    version: bool,
) -> None:
    """Render an OpenSCAD file to STL on an Amazon EC2 instance."""
    if version:
        click.echo(f"awsrender {__version__}")
        click.echo("AWS is a trademark of Amazon Web Services, Inc.")
        return
    if source is None and not stop_now:
        raise click.UsageError("No input file.")

    handler_ids = setup_logging(LogConfig(level=log_level, file=log_file))  # type: ignore[arg-type]
    injector = Injector([AWSConfigModule(AWS(region=region)), AWSModule()])
    try:
        if stop_now:
            target = instance_id or read_defaults().default_instance
            if not target:
                raise ConfigurationError(
                    "Require either an instance ID on command line or a default primary instance"
                )
            asyncio.run(injector.get(EC2Controller).stop(InstanceHandle(target)))
            console.print(f"Stop requested for instance {target}.")
            return

        settings = resolve_settings(
            Settings(
                instance_id=instance_id,
                key_file=key_file,
                username=username,
                host_key=host_key,
                bucket=output,
                email=email,
                shutdown=shutdown,
            ),
            _explicit_fields(ctx),
            save=save_defaults,
            primary=set_primary,
        )
        job = asyncio.run(render(injector.get(EC2Controller), settings, source, start=not debug_run))
    except AwsRenderError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)
    except (ClientError, BotoCoreError) as e:
        console.print(f"[red]AWS error:[/red] {escape(str(e))}")
        ctx.exit(1)
    finally:
        teardown_logging(handler_ids)

    _report(job, settings, source)


if __name__ == "__main__":
    main()
