"""Centralized constants for awsrender.

All magic strings, ports, and timing constants are defined here
to ensure consistency across the remote layer and the CLI.
"""

from __future__ import annotations

from typing import Final

# =============================================================================
# Control Plane
# =============================================================================

DEFAULT_REGION: Final = "us-east-1"
RUNNING_STATE: Final = "running"
INSTANCE_WAIT_DELAY: Final = 15
INSTANCE_WAIT_MAX_ATTEMPTS: Final = 40

# Error codes returned by EC2 for an instance id that does not resolve
INSTANCE_NOT_FOUND_CODES: Final = frozenset({
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
})


# =============================================================================
# SSH
# =============================================================================

SSH_PORT: Final = 22
SSH_CONNECT_TIMEOUT: Final = 30.0

# Reported when a command ran but no exit code came back, and when it
# could not be run at all (the latter also raises).
SENTINEL_EXIT_STATUS: Final = 1

PROBE_COMMAND: Final = "true"
UPLOAD_CHUNK_SIZE: Final = 64 * 1024

PTY_TERM_TYPE: Final = "xterm"
PTY_COLUMNS: Final = 80
PTY_ROWS: Final = 40
PTY_BAUD: Final = 14400

NOHUP_LOG: Final = "nohup.out"


# =============================================================================
# Job Layout
# =============================================================================

RUN_SCRIPT_NAME: Final = "run.sh"
STATUS_SUFFIX: Final = ".status"
SOURCE_SUFFIX: Final = ".scad"
OUTPUT_SUFFIX: Final = ".stl"
