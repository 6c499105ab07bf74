import subprocess

import pytest

from ssh_tunnel.config import TunnelConfig


class FakeSystem:
    """Stands in for PATH lookups, the effective uid and external commands."""

    def __init__(self):
        self.binaries = {"autossh": "/usr/local/bin/autossh"}
        self.euid = 0
        self.calls = []
        self.results = {}
        self.on_run = None

    def which(self, name, *args, **kwargs):
        return self.binaries.get(name)

    def geteuid(self):
        return self.euid

    def run(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        if self.on_run is not None:
            self.on_run(cmd)
        returncode, stdout = self.results.get(tuple(cmd), (0, ""))
        if kwargs.get("check") and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd)
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    @property
    def commands(self):
        return [c for c, _ in self.calls]


@pytest.fixture
def system(monkeypatch):
    fake = FakeSystem()
    monkeypatch.setattr("shutil.which", fake.which)
    monkeypatch.setattr("os.geteuid", fake.geteuid, raising=False)
    monkeypatch.setattr("subprocess.run", fake.run)
    return fake


@pytest.fixture
def config():
    return TunnelConfig(
        server_user="alice",
        server_host="example.com",
        remote_port=3333,
        local_user="tunnel",
    )


@pytest.fixture
def no_config_files(tmp_path, monkeypatch):
    """Run with an empty working directory and home so no config file is discovered."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    monkeypatch.setattr("ssh_tunnel.config.SYSTEM_CONFIG", tmp_path / "etc" / "ssh-tunnel.conf")
    return work
