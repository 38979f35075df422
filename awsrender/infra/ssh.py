"""AsyncSSH-based secure command channel.

Service class pattern - the address and credentials are bound at
construction, not passed on every call. One channel owns exactly one
authenticated connection; every command or transfer runs in its own
short-lived sub-session (an SSH session channel) that is closed before the
call returns.

Host identity is pinned: the server must present exactly the key given in
the credentials, and only that key's algorithm is offered during negotiation.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

import asyncssh
from asyncssh.constants import PTY_ECHO, PTY_OP_ISPEED, PTY_OP_OSPEED
from loguru import logger

from awsrender.constants import (
    NOHUP_LOG,
    PTY_BAUD,
    PTY_COLUMNS,
    PTY_ROWS,
    PTY_TERM_TYPE,
    SENTINEL_EXIT_STATUS,
    SSH_CONNECT_TIMEOUT,
    SSH_PORT,
    UPLOAD_CHUNK_SIZE,
)
from awsrender.exceptions import (
    CommandTransportError,
    ConfigurationError,
    ConnectFailedError,
    InvalidHostKeyError,
    SourceInvalidError,
)

# =============================================================================
# Values
# =============================================================================


@dataclass(frozen=True, slots=True)
class Credentials:
    """Everything needed to authenticate against one host.

    Attributes:
        host_key: Expected server key, in authorized-key text form
            (``"ssh-ed25519 AAAA... [comment]"``).
        username: Login user on the remote host.
        key_path: Path to the client private key.
    """

    host_key: str
    username: str
    key_path: str

    def validate(self) -> None:
        """Raise ConfigurationError unless every field is usable."""
        if not self.host_key.strip():
            raise ConfigurationError("SSH host key must be specified (ssh-keyscan to generate)")
        if not self.username.strip():
            raise ConfigurationError("SSH username must be specified")
        if not self.key_path.strip():
            raise ConfigurationError("SSH private key file must be specified")
        if not Path(self.key_path).expanduser().is_file():
            raise ConfigurationError(f"Cannot locate SSH private key file {self.key_path}")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a foreground command with captured output."""

    exit_status: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True, slots=True)
class HostKeyPin:
    """A parsed host key and the negotiation algorithms it allows."""

    key: asyncssh.SSHKey
    algorithm: str
    host_key_algs: tuple[str, ...]


def parse_host_key(text: str) -> HostKeyPin:
    """Parse authorized-key text into a pin.

    Raises:
        InvalidHostKeyError: If the text is empty or not a public key.
    """
    text = text.strip()
    if not text:
        raise InvalidHostKeyError("Host key is empty")
    try:
        key = asyncssh.import_public_key(text)
    except (asyncssh.KeyImportError, ValueError) as e:
        raise InvalidHostKeyError(f"Error parsing host key: {e}") from e

    # Only signature algorithms of the pinned key type are offered, so a stale
    # key of another type fails the handshake instead of negotiating around it.
    algs = tuple(alg.decode("ascii") for alg in key.sig_algorithms)
    return HostKeyPin(key=key, algorithm=key.get_algorithm(), host_key_algs=algs)


def shell_quote(value: str) -> str:
    """Single-quote a value for the remote shell (``'`` becomes ``'\\''``)."""
    return "'" + value.replace("'", "'\\''") + "'"


def detached_command(
    cmdline: str,
    *,
    discard_output: bool = True,
    status_path: str | None = None,
) -> str:
    """Wrap a command so it outlives the session that launches it.

    The command runs as a backgrounded child of a subshell under ``nohup``;
    the subshell exits immediately, leaving the child disowned. With
    ``status_path`` the child's eventual exit status is written to that file.
    """
    body = f"({cmdline})"
    if status_path is not None:
        quoted = shell_quote(status_path)
        body = f"rm -f {quoted}; ( {{ {body}; echo $? > {quoted}; }} & )"
    else:
        body = f"( {{ {body}; }} & )"

    wrapped = f"nohup bash -c {shell_quote(body)} </dev/null"
    if discard_output:
        return f"{wrapped} >/dev/null 2>&1"
    return f"{wrapped} >>{NOHUP_LOG} 2>&1"


def _classify_connect_error(exc: BaseException) -> str:
    match exc:
        case asyncssh.HostKeyNotVerifiable() | asyncssh.KeyExchangeFailed():
            return "host-key-mismatch"
        case asyncssh.PermissionDenied():
            return "auth-rejected"
        case OSError():
            return "unreachable"
        case _:
            return "protocol"


class _ConnectionWatch(asyncssh.SSHClient):
    """Client callbacks recording whether the transport has gone away."""

    def __init__(self) -> None:
        self.lost = False
        self.reason = ""

    def connection_lost(self, exc: Exception | None) -> None:
        self.lost = True
        self.reason = str(exc) if exc else "connection closed"


def _exit_status(completed: asyncssh.SSHCompletedProcess) -> int:
    """Map a finished sub-session to a POSIX-style status.

    A command that exited reports its code; one that was killed or never
    reported a code gets the sentinel status.
    """
    status = completed.exit_status
    if completed.exit_signal is not None or status is None or status < 0:
        return SENTINEL_EXIT_STATUS
    return status


# =============================================================================
# SSH Channel
# =============================================================================


@dataclass
class SSHChannel:
    """One authenticated SSH connection to a single host.

    Use :meth:`open` to build a connected channel. Commands are issued one at
    a time; each call opens, drains and closes its own sub-session before
    returning, so sequential calls complete in issue order.

    Example:
        >>> creds = Credentials(host_key="ssh-ed25519 AAAA...", username="ec2-user",
        ...                     key_path="~/.ssh/render.pem")
        >>> async with await SSHChannel.open("203.0.113.7", creds) as channel:
        ...     status = await channel.run_command("openscad --version")
    """

    address: str
    credentials: Credentials
    port: int = SSH_PORT

    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)
    _watch: _ConnectionWatch = field(default_factory=_ConnectionWatch, repr=False)

    @classmethod
    async def open(
        cls,
        address: str,
        credentials: Credentials,
        *,
        port: int = SSH_PORT,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
    ) -> SSHChannel:
        """Connect to ``address`` verifying the pinned host key.

        Raises:
            ConfigurationError: If the credentials are incomplete or the
                private key cannot be loaded.
            InvalidHostKeyError: If the host key text is malformed.
            ConnectFailedError: If the host is unreachable, rejects the
                client key, or presents a different host key.
        """
        credentials.validate()
        pin = parse_host_key(credentials.host_key)

        key_path = str(Path(credentials.key_path).expanduser())
        try:
            client_key = asyncssh.read_private_key(key_path)
        except (asyncssh.KeyImportError, asyncssh.KeyEncryptionError, OSError) as e:
            raise ConfigurationError(f"Cannot load SSH private key {key_path}: {e}") from e

        logger.debug(
            "Connecting to {user}@{address}:{port} (host key {alg})",
            user=credentials.username, address=address, port=port, alg=pin.algorithm,
        )
        try:
            conn, watch = await asyncssh.create_connection(
                _ConnectionWatch,
                address,
                port=port,
                username=credentials.username,
                client_keys=[client_key],
                known_hosts=([pin.key], [], []),
                server_host_key_algs=list(pin.host_key_algs),
                agent_path=None,
                connect_timeout=connect_timeout,
            )
        except (asyncssh.Error, OSError) as e:
            reason = _classify_connect_error(e)
            logger.debug("Connection to {address} failed: {reason}", address=address, reason=reason)
            raise ConnectFailedError(address, reason, str(e) or type(e).__name__) from e

        logger.info("Connected to {address} as {user}", address=address, user=credentials.username)
        return cls(address=address, credentials=credentials, port=port, _conn=conn, _watch=watch)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is not None:
            conn, self._conn = self._conn, None
            conn.close()
            await conn.wait_closed()
            logger.debug("Closed connection to {address}", address=self.address)

    async def __aenter__(self) -> SSHChannel:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        """Whether the connection is still held."""
        return self._conn is not None and not self._watch.lost

    def _require_connection(self, command: str) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise CommandTransportError(command, SENTINEL_EXIT_STATUS, "channel is closed")
        if self._watch.lost:
            raise CommandTransportError(command, SENTINEL_EXIT_STATUS, self._watch.reason)
        return self._conn

    async def _status_of(self, command: str, completed: asyncssh.SSHCompletedProcess) -> int:
        """Exit status of a finished sub-session, raising if the transport dropped.

        A sub-session that ends with neither a status nor a signal is a
        transport failure when the connection is gone; on a live connection it
        is a command that reported nothing.
        """
        if completed.exit_status is None and completed.exit_signal is None:
            # Connection teardown callbacks can land one loop turn after the channel closes
            await asyncio.sleep(0)
            if self._watch.lost:
                raise CommandTransportError(
                    command, SENTINEL_EXIT_STATUS, f"connection lost: {self._watch.reason}",
                )
        return _exit_status(completed)

    # -------------------------------------------------------------------------
    # Command Execution
    # -------------------------------------------------------------------------

    async def _run(self, command: str, *, capture: bool, pty: bool) -> CommandResult:
        conn = self._require_connection(command)
        output = asyncssh.PIPE if capture else asyncssh.DEVNULL
        options: dict[str, object] = {}
        if pty:
            options = {
                "term_type": PTY_TERM_TYPE,
                "term_size": (PTY_COLUMNS, PTY_ROWS),
                "term_modes": {PTY_ECHO: 0, PTY_OP_ISPEED: PTY_BAUD, PTY_OP_OSPEED: PTY_BAUD},
            }

        logger.debug("Running on {address}: {cmd}", address=self.address, cmd=command)
        try:
            async with conn.create_process(
                command,
                encoding=None,
                stdin=asyncssh.DEVNULL,
                stdout=output,
                stderr=output,
                **options,
            ) as process:
                completed = await process.wait(check=False)
        except (asyncssh.Error, OSError) as e:
            raise CommandTransportError(
                command, SENTINEL_EXIT_STATUS, str(e) or type(e).__name__,
            ) from e

        status = await self._status_of(command, completed)
        logger.debug("Command on {address} exited {status}", address=self.address, status=status)
        return CommandResult(
            exit_status=status,
            stdout=bytes(completed.stdout or b""),
            stderr=bytes(completed.stderr or b""),
        )

    async def run_command(self, command: str) -> int:
        """Run a shell command line, discarding its output.

        Returns:
            The command's exit status, or the sentinel status if it was
            killed or no status was reported.

        Raises:
            CommandTransportError: If the sub-session could not be opened or
                broke down; its ``exit_status`` is the sentinel status.
        """
        result = await self._run(command, capture=False, pty=False)
        return result.exit_status

    async def run_command_captured(self, command: str) -> CommandResult:
        """Run a shell command line on a pseudo-terminal and keep its output.

        Output is buffered in full. With a pseudo-terminal the remote side
        usually merges stderr into stdout and ends lines with ``\\r\\n``.
        """
        return await self._run(command, capture=True, pty=True)

    async def run_detached(
        self,
        command: str,
        *,
        discard_output: bool = True,
        status_path: str | None = None,
    ) -> int:
        """Launch a command that keeps running after this channel closes.

        The returned status only says whether the launch itself worked. Pass
        ``status_path`` to have the command record its own exit status in a
        remote file, then poll it with :meth:`read_detached_status`.
        """
        wrapped = detached_command(command, discard_output=discard_output, status_path=status_path)
        status = await self.run_command(wrapped)
        logger.info("Launched detached command on {address} (status {status})",
                    address=self.address, status=status)
        return status

    async def read_detached_status(self, status_path: str) -> int | None:
        """Exit status recorded by a detached command, or None if not finished."""
        result = await self._run(f"cat {shell_quote(status_path)}", capture=True, pty=False)
        if not result.ok:
            return None
        text = result.stdout.decode("utf-8", errors="replace").strip()
        return int(text) if text.isdigit() else None

    # -------------------------------------------------------------------------
    # File Transfer
    # -------------------------------------------------------------------------

    async def upload_stream(self, source: BinaryIO, remote_path: str) -> None:
        """Stream a binary reader into ``remote_path``, overwriting it.

        Raises:
            CommandTransportError: If the transfer sub-session fails or the
                remote write exits non-zero.
        """
        command = f"cat >{shell_quote(remote_path)}"
        conn = self._require_connection(command)

        sent = 0
        try:
            async with conn.create_process(
                command, encoding=None, stdout=asyncssh.DEVNULL,
            ) as process:
                while chunk := source.read(UPLOAD_CHUNK_SIZE):
                    process.stdin.write(chunk)
                    await process.stdin.drain()
                    sent += len(chunk)
                process.stdin.write_eof()
                completed = await process.wait(check=False)
        except (asyncssh.Error, OSError) as e:
            raise CommandTransportError(
                command, SENTINEL_EXIT_STATUS, str(e) or type(e).__name__,
            ) from e

        status = await self._status_of(command, completed)
        if status != 0:
            stderr = bytes(completed.stderr or b"").decode("utf-8", errors="replace").strip()
            raise CommandTransportError(command, status, f"remote write exited {status}: {stderr}")

        logger.debug("Wrote {n} bytes to {address}:{path}", n=sent, address=self.address, path=remote_path)

    async def upload_bytes(self, payload: bytes, remote_path: str) -> None:
        """Write ``payload`` to ``remote_path``, overwriting it."""
        await self.upload_stream(io.BytesIO(payload), remote_path)

    async def upload_file(self, local_path: str | Path, remote_path: str) -> None:
        """Copy a local regular file to ``remote_path``.

        Raises:
            SourceInvalidError: If the source is missing or not a regular file
                (checked before any network I/O).
        """
        path = Path(local_path)
        if not path.exists():
            raise SourceInvalidError(path, "does not exist")
        if not path.is_file():
            raise SourceInvalidError(path, "must be a regular file")

        try:
            source = path.open("rb")
        except OSError as e:
            raise SourceInvalidError(path, f"cannot be opened: {e}") from e
        with source:
            await self.upload_stream(source, remote_path)

