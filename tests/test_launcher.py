import pytest

from ssh_tunnel import launcher
from ssh_tunnel.errors import LaunchFailed


def test_run_execs_ssh(monkeypatch, config):
    calls = []
    monkeypatch.setattr("os.execvp", lambda file, args: calls.append((file, args)))
    launcher.run(config)
    assert calls == [(
        "ssh",
        [
            "ssh", "-N", "-R", "3333:localhost:22",
            "-o", "ServerAliveInterval=60",
            "-o", "ServerAliveCountMax=3",
            "-o", "ExitOnForwardFailure=yes",
            "-p", "22", "alice@example.com",
        ],
    )]


def test_run_exec_failure(monkeypatch, config):
    def fail(file, args):
        raise FileNotFoundError(2, "No such file or directory", file)

    monkeypatch.setattr("os.execvp", fail)
    with pytest.raises(LaunchFailed):
        launcher.run(config)
