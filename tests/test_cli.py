"""Tests for the command line entry point."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from awsrender import __version__
from awsrender.cli import main
from awsrender.config import read_defaults
from awsrender.exceptions import ConnectFailedError
from awsrender.render import RenderJob

INSTANCE_ID = "i-0123456789abcdef0"
HOST_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGaP7xXhPKe9m0FvTzH6LnQu6fC2Z2mWcQ1C4k6+8xYz"


@pytest.fixture(autouse=True)
def config_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "xdg"
    monkeypatch.setattr("awsrender.config.sys.platform", "linux")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    return home


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "part.scad"
    path.write_text("cube(1);\n")
    return path


@pytest.fixture
def key_file(tmp_path: Path) -> Path:
    path = tmp_path / "render.pem"
    path.write_text("key")
    return path


@pytest.fixture
def submitted(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    async def fake_render(controller: Any, settings: Any, source: Path, *, start: bool = True) -> RenderJob:
        calls.append({"controller": controller, "settings": settings, "source": source, "start": start})
        return RenderJob(
            instance_id=settings.instance_id,
            work_dir="/home/ec2-user/tmp.abc",
            source_path=f"/home/ec2-user/tmp.abc/{source.name}",
            script_path="/home/ec2-user/tmp.abc/run.sh",
            status_path="/home/ec2-user/tmp.abc.status",
            started=start,
        )

    monkeypatch.setattr("awsrender.cli.render", fake_render)
    return calls


def _args(key_file: Path, *extra: str) -> list[str]:
    return [
        "-i", INSTANCE_ID,
        "-k", str(key_file),
        "-u", "ec2-user",
        "-H", HOST_KEY,
        "-o", "s3://renders",
        *extra,
    ]


def test_version() -> None:
    result = CliRunner().invoke(main, ["-V"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_no_source() -> None:
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 2
    assert "No input file" in result.output


def test_configuration_error_exits_nonzero(source: Path) -> None:
    result = CliRunner().invoke(main, ["-i", INSTANCE_ID, str(source)])
    assert result.exit_code == 1
    assert "private key" in result.output


def test_submits_render(source: Path, key_file: Path, submitted: list[dict[str, Any]]) -> None:
    result = CliRunner().invoke(main, [*_args(key_file, "-e", "me@example.com", "-s"), str(source)])

    assert result.exit_code == 0, result.output
    call = submitted[0]
    assert call["start"] is True
    assert call["settings"].bucket == "s3://renders"
    assert call["settings"].shutdown
    assert "me@example.com" in result.output
    assert "stopped on completion" in result.output


def test_debug_run(source: Path, key_file: Path, submitted: list[dict[str, Any]]) -> None:
    result = CliRunner().invoke(main, [*_args(key_file, "--debug-run"), str(source)])
    assert result.exit_code == 0, result.output
    assert submitted[0]["start"] is False
    assert "DEBUG MODE" in result.output
    assert "/home/ec2-user/tmp.abc" in result.output


def test_set_primary_saves_defaults(source: Path, key_file: Path, submitted: list[dict[str, Any]]) -> None:
    runner = CliRunner()
    assert runner.invoke(main, [*_args(key_file, "-p"), str(source)]).exit_code == 0

    defaults = read_defaults()
    assert defaults.default_instance == INSTANCE_ID
    assert defaults.instances[INSTANCE_ID].bucket == "s3://renders"

    result = runner.invoke(main, [str(source)])
    assert result.exit_code == 0, result.output
    assert submitted[1]["settings"] == submitted[0]["settings"]


def test_explicit_flag_overrides_saved(source: Path, key_file: Path, submitted: list[dict[str, Any]]) -> None:
    runner = CliRunner()
    assert runner.invoke(main, [*_args(key_file, "-d"), str(source)]).exit_code == 0

    result = runner.invoke(main, ["-i", INSTANCE_ID, "-o", "s3://elsewhere", str(source)])
    assert result.exit_code == 0, result.output
    assert submitted[1]["settings"].bucket == "s3://elsewhere"
    assert submitted[1]["settings"].username == "ec2-user"


def test_remote_error_exits_nonzero(source: Path, key_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_render(*_: Any, **__: Any) -> RenderJob:
        raise ConnectFailedError("203.0.113.7", "host-key-mismatch", "host key is not trusted")

    monkeypatch.setattr("awsrender.cli.render", failing_render)
    result = CliRunner().invoke(main, [*_args(key_file), str(source)])
    assert result.exit_code == 1
    assert "host-key-mismatch" in result.output


def test_stop_now(monkeypatch: pytest.MonkeyPatch) -> None:
    stopped: list[str] = []

    async def fake_stop(self: Any, handle: Any) -> None:
        stopped.append(handle.instance_id)

    monkeypatch.setattr("awsrender.providers.aws.controller.EC2Controller.stop", fake_stop)
    result = CliRunner().invoke(main, ["--stop-now", "-i", INSTANCE_ID])
    assert result.exit_code == 0, result.output
    assert stopped == [INSTANCE_ID]


def test_stop_now_without_instance() -> None:
    result = CliRunner().invoke(main, ["--stop-now"])
    assert result.exit_code == 1
    assert "instance ID" in result.output
