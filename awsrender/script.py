"""Job script run on the instance.

The script renders the model, copies whatever it produced to S3, optionally
mails a notification through SES, removes its working directory and
optionally stops the instance. Its exit status is 0 only when the STL file
was produced.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from string import Template

from awsrender.config import Settings
from awsrender.constants import OUTPUT_SUFFIX, SOURCE_SUFFIX
from awsrender.infra.ssh import shell_quote

RUN_SCRIPT = Template("""\
#!/bin/bash -x

cd $work_dir || exit 1
openscad -o $out_file $source_file 2>openscad.err >openscad.out
if [[ $$? -ne 0 || ! -f $out_file ]] # Non-zero exit, or .stl file doesn't exist
then
    # render failed - dump dmesg to help debug memory problems
    dmesg > dmesg.out
    renderResult=FAILED
else
    renderResult=SUCCESS
fi
for f in $source_file $out_file openscad.err openscad.out dmesg.out
do
    if [[ -s "$${f}" ]]
    then
        aws s3 cp "$${f}" $bucket
    fi
done
$notify
# Tidy up, and if necessary stop instance
cd ~
rm -rf $work_dir
$shutdown
[[ "$${renderResult}" == SUCCESS ]]
""")


def output_name(source_name: str) -> str:
    """Name of the STL file rendered from ``source_name``."""
    stem = source_name.removesuffix(SOURCE_SUFFIX)
    return stem + OUTPUT_SUFFIX


def _notification(settings: Settings, source_name: str) -> str:
    if not settings.email:
        return "# No notification requested"
    address = shell_quote(settings.email)
    text = (
        shell_quote(f"Render of file {source_name} complete. Result was ")
        + '"${renderResult}"'
        + shell_quote(f". Output put in S3 bucket {settings.bucket} .")
    )
    return (
        f"aws ses send-email --from {address} --to {address} "
        f'--subject "OpenSCAD render - ${{renderResult}}" --text {text}'
    )


def build_run_script(settings: Settings, source_name: str, work_dir: str) -> str:
    """Render the job script for one source file.

    Args:
        settings: Bucket, notification address and shutdown flag.
        source_name: Base name of the uploaded ``.scad`` file.
        work_dir: Absolute remote working directory holding the source.
    """
    source_name = PurePosixPath(source_name).name
    shutdown = (
        f"aws ec2 stop-instances --instance-ids {shell_quote(settings.instance_id)}"
        if settings.shutdown
        else "# Instance left running"
    )
    return RUN_SCRIPT.substitute(
        work_dir=shell_quote(work_dir),
        source_file=shell_quote(source_name),
        out_file=shell_quote(output_name(source_name)),
        bucket=shell_quote(settings.bucket),
        notify=_notification(settings, source_name),
        shutdown=shutdown,
    )
