"""Prepare and launch a render job on a ready instance.

The sequence is fixed: pre-flight checks, working directory, source upload,
job script upload, ``chmod``, detached launch. Each step runs to completion on
the instance's single channel before the next one starts, so the script is
always on disk before it is executed.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import NamedTuple

from loguru import logger

from awsrender.config import Settings
from awsrender.constants import RUN_SCRIPT_NAME, SOURCE_SUFFIX, STATUS_SUFFIX
from awsrender.exceptions import (
    CommandTransportError,
    InstanceCheckError,
    JobSetupError,
    SourceInvalidError,
)
from awsrender.infra.ssh import shell_quote
from awsrender.providers.aws import EC2Controller, InstanceHandle, ReadyInstance
from awsrender.script import build_run_script


class InstanceCheck(NamedTuple):
    """A command that must exit with ``required_status`` before a job runs."""

    description: str
    command: str
    required_status: int = 0


@dataclass(frozen=True, slots=True)
class RenderJob:
    """Where a submitted job lives on the instance."""

    instance_id: str
    work_dir: str
    source_path: str
    script_path: str
    status_path: str
    started: bool


def instance_checks(settings: Settings) -> list[InstanceCheck]:
    """Checks that the instance can render, talk to EC2 and reach the bucket."""
    return [
        InstanceCheck(
            "OpenSCAD is not runnable on the instance. Check OpenSCAD installed",
            "openscad --version >/dev/null 2>&1",
        ),
        InstanceCheck(
            "AWS EC2 CLI test failed on the instance. Check AWS CLI installed and configured",
            f"aws ec2 describe-instances --instance-ids {shell_quote(settings.instance_id)} >/dev/null",
        ),
        InstanceCheck(
            "S3 bucket not visible from the instance. Check instance has permission on the bucket",
            f"aws s3 ls {shell_quote(settings.bucket)} >/dev/null",
        ),
    ]


def check_source_file(source: Path) -> None:
    """Raise SourceInvalidError unless ``source`` is a regular ``.scad`` file."""
    if not source.exists():
        raise SourceInvalidError(source, "does not exist")
    if not source.is_file():
        raise SourceInvalidError(source, "must be a regular file")
    if source.suffix != SOURCE_SUFFIX:
        raise SourceInvalidError(source, f"must be a {SOURCE_SUFFIX} file")


async def check_instance(instance: ReadyInstance, checks: Iterable[InstanceCheck]) -> None:
    """Run checks in order; the first one that fails raises InstanceCheckError."""
    for check in checks:
        try:
            status = await instance.run_command(check.command)
        except CommandTransportError as e:
            raise InstanceCheckError(f"{check.description}: {e}", e.exit_status) from e
        if status != check.required_status:
            raise InstanceCheckError(check.description, status)
        logger.debug("Check passed: {cmd}", cmd=check.command)


async def make_working_dir(instance: ReadyInstance) -> str:
    """Create a fresh directory under the remote home and return its absolute path."""
    result = await instance.run_command_captured('mktemp -d -p "$HOME"')
    if not result.ok:
        raise JobSetupError(
            f"Non-zero exit status {result.exit_status} creating working directory"
        )
    lines = [line.strip() for line in result.stdout.decode("utf-8", errors="replace").splitlines()]
    lines = [line for line in lines if line]
    if not lines or not lines[-1].startswith("/"):
        raise JobSetupError(f"Unexpected output creating working directory: {result.stdout!r}")
    return lines[-1]


async def submit_job(
    instance: ReadyInstance,
    settings: Settings,
    source: Path,
    *,
    start: bool = True,
) -> RenderJob:
    """Upload ``source`` and its job script, then launch the script detached.

    With ``start`` false everything is prepared but the script is not run,
    leaving the working directory for manual debugging.
    """
    work_dir = await make_working_dir(instance)
    remote = PurePosixPath(work_dir)
    source_path = str(remote / source.name)
    script_path = str(remote / RUN_SCRIPT_NAME)
    status_path = work_dir + STATUS_SUFFIX

    logger.info("Setting up rendering on {id} in {dir}", id=instance.instance_id, dir=work_dir)
    await instance.upload_file(source, source_path)

    script = build_run_script(settings, source.name, work_dir)
    await instance.upload_bytes(script.encode("utf-8"), script_path)

    status = await instance.run_command(f"chmod a+x {shell_quote(script_path)}")
    if status != 0:
        raise JobSetupError(f"Error making run script executable (exit status {status})")

    if start:
        status = await instance.run_detached(
            shell_quote(script_path), discard_output=True, status_path=status_path,
        )
        if status != 0:
            raise JobSetupError(f"Error running script (exit status {status})")

    return RenderJob(
        instance_id=instance.instance_id,
        work_dir=work_dir,
        source_path=source_path,
        script_path=script_path,
        status_path=status_path,
        started=start,
    )


async def render(
    controller: EC2Controller,
    settings: Settings,
    source: Path,
    *,
    start: bool = True,
) -> RenderJob:
    """Prepare the instance, check it, and submit one render job.

    The SSH channel is released before returning, whatever the outcome; a
    started job keeps running on the instance.
    """
    check_source_file(source)

    logger.info("Initializing instance {id}", id=settings.instance_id)
    handle = InstanceHandle(settings.instance_id)
    async with await controller.ensure_ready(handle, settings.credentials()) as instance:
        await check_instance(instance, instance_checks(settings))
        return await submit_job(instance, settings, source, start=start)
