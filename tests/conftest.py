from __future__ import annotations

import socket
from collections.abc import AsyncIterator
from pathlib import Path

import asyncssh
import pytest

from awsrender.infra.ssh import SSHChannel

from .sshserver import ServerStarter, SSHServerInfo, shell_process_factory


@pytest.fixture
def client_key_path(tmp_path: Path) -> Path:
    key = asyncssh.generate_private_key("ssh-ed25519")
    path = tmp_path / "client.pem"
    path.write_bytes(key.export_private_key())
    (tmp_path / "authorized_keys").write_bytes(key.export_public_key())
    return path


@pytest.fixture
async def start_ssh_server(tmp_path: Path, client_key_path: Path) -> AsyncIterator[ServerStarter]:
    """Factory starting SSH servers on 127.0.0.1; all are closed on teardown."""
    servers: list[asyncssh.SSHAcceptor] = []
    home = tmp_path / "home"
    home.mkdir()

    async def start(
        host_key_algs: tuple[str, ...] = ("ssh-ed25519",),
        *,
        server_factory: type[asyncssh.SSHServer] | None = None,
        shell: bool = True,
    ) -> SSHServerInfo:
        host_keys = [asyncssh.generate_private_key(alg) for alg in host_key_algs]
        server = await asyncssh.create_server(
            server_factory or asyncssh.SSHServer,
            "127.0.0.1",
            0,
            server_host_keys=host_keys,
            authorized_client_keys=str(tmp_path / "authorized_keys"),
            process_factory=shell_process_factory(home) if shell else None,
            encoding=None,
            line_editor=False,
        )
        servers.append(server)
        port = server.sockets[0].getsockname()[1]
        return SSHServerInfo(
            port=port,
            host_keys=host_keys,
            client_key_path=client_key_path,
            home=home,
        )

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.fixture
async def ssh_server(start_ssh_server: ServerStarter) -> SSHServerInfo:
    return await start_ssh_server()


@pytest.fixture
async def channel(ssh_server: SSHServerInfo) -> AsyncIterator[SSHChannel]:
    ch = await SSHChannel.open("127.0.0.1", ssh_server.credentials(), port=ssh_server.port)
    yield ch
    await ch.close()


@pytest.fixture
def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
