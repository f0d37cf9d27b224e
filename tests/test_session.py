"""Tests for the OpenSSH control master session."""
from __future__ import annotations

import asyncio
import shlex
from pathlib import Path

import pytest

from deploy_flake.config import SshConfig
from deploy_flake.destination import Destination, Flavor
from deploy_flake.errors import CommandError, SessionError
from deploy_flake.session import SshSession
from tests.fakes import FakeRunner


def _session(
    tmp_path: Path,
    *,
    port: int | None = None,
    options: tuple[str, ...] = (),
) -> tuple[SshSession, FakeRunner]:
    runner = FakeRunner()
    session = SshSession(
        destination=Destination(Flavor.NIXOS, "root@alpha", port=port),
        config=SshConfig(connect_timeout=5, options=options),
        runner=runner,  # type: ignore[arg-type]
        control_dir=tmp_path,
    )
    return session, runner


def test_ssh_args_include_control_socket_and_port(tmp_path: Path) -> None:
    """Every invocation shares the control socket, port and extra options."""
    session, _ = _session(tmp_path, port=2222, options=("StrictHostKeyChecking=no",))

    assert session.ssh_args() == [
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        "ConnectTimeout=5",
        "-S",
        str(tmp_path / "master.sock"),
        "-p",
        "2222",
        "-o",
        "StrictHostKeyChecking=no",
    ]


def test_command_quotes_remote_argv(tmp_path: Path) -> None:
    """Remote arguments are shell-quoted into a single command string."""
    session, _ = _session(tmp_path)

    argv = session.command("nix", "build", "/nix/store/x#nixosConfigurations.\"a b\"")

    assert argv[-4:-1] == ["-T", "root@alpha", "--"]
    assert "ControlMaster=no" in argv
    assert shlex.split(argv[-1]) == ["nix", "build", "/nix/store/x#nixosConfigurations.\"a b\""]


def test_connect_starts_master(tmp_path: Path) -> None:
    """Connecting launches a persistent, backgrounded master connection."""
    session, runner = _session(tmp_path)

    asyncio.run(session.connect())

    assert session.connected is True
    argv, _ = runner.runs[0]
    assert argv[-1] == "root@alpha"
    for flag in ("-M", "-f", "-N", "ControlPersist=yes"):
        assert flag in argv
    assert argv[argv.index("-E") + 1] == str(tmp_path / "master.log")


def test_connect_failure_includes_master_diagnostics(tmp_path: Path) -> None:
    """A failed connection reports the master's own log output."""
    session, runner = _session(tmp_path)
    runner.run_error = CommandError(["ssh"], 255)
    (tmp_path / "master.log").write_text("Permission denied (publickey).\n")

    with pytest.raises(SessionError) as excinfo:
        asyncio.run(session.connect())

    message = str(excinfo.value)
    assert message.startswith("Could not connect to root@alpha")
    assert "Permission denied (publickey)." in message
    assert session.connected is False


def test_commands_require_connection(tmp_path: Path) -> None:
    """Remote commands cannot run before the master is up."""
    session, runner = _session(tmp_path)

    with pytest.raises(SessionError, match="not connected"):
        asyncio.run(session.run("hostname"))
    with pytest.raises(SessionError, match="not connected"):
        asyncio.run(session.capture("hostname"))
    assert runner.runs == []


def test_run_and_capture_go_through_master(tmp_path: Path) -> None:
    """Connected sessions wrap commands in the multiplexed ssh invocation."""
    session, runner = _session(tmp_path)
    session.connected = True
    runner.capture_result = (0, b"alpha\n")

    asyncio.run(session.run("sudo", "systemctl", "list-units", "--failed"))
    result = asyncio.run(session.capture("hostname"))

    assert result == (0, b"alpha\n")
    run_argv, _ = runner.runs[0]
    assert run_argv[-1] == "sudo systemctl list-units --failed"
    assert runner.captures[0][-1] == "hostname"


def test_close_exits_master_once(tmp_path: Path) -> None:
    """Closing asks the master to exit and is idempotent."""
    session, runner = _session(tmp_path)
    session.connected = True

    asyncio.run(session.close())
    asyncio.run(session.close())

    assert len(runner.captures) == 1
    assert runner.captures[0][-3:] == ["-O", "exit", "root@alpha"]
    assert session.connected is False
