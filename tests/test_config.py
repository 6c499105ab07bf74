import datetime
import os
import stat

import pytest

from ssh_tunnel.config import (
    TunnelConfig,
    find_config_file,
    parse_config_file,
    render_config,
    resolve,
    save_config,
)
from ssh_tunnel.errors import ConfigFileNotFound, InvalidConfigValue, MissingRequiredField


def write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


# -------------------------
# Model
# -------------------------
def test_defaults():
    c = TunnelConfig(server_user="u", server_host="h", local_user="me")
    assert c.server_port == 22
    assert c.local_port == 22
    assert c.remote_port == 2222
    assert c.monitor_port == 20000
    assert c.server_alive_interval == 60
    assert c.server_alive_count_max == 3
    assert c.exit_on_forward_failure is True
    assert c.install_service is False


def test_local_user_defaults_to_invoking_user(monkeypatch):
    monkeypatch.setattr("getpass.getuser", lambda: "bob")
    assert TunnelConfig().local_user == "bob"


def test_config_is_immutable(config):
    with pytest.raises(Exception):
        config.server_host = "other.net"


@pytest.mark.parametrize("port", [0, 65536, -1])
def test_port_out_of_range_rejected(port):
    with pytest.raises(ValueError):
        TunnelConfig(server_user="u", server_host="h", remote_port=port)


def test_host_with_shell_characters_rejected():
    with pytest.raises(ValueError):
        TunnelConfig(server_user="u", server_host="h; rm -rf /")


# -------------------------
# Config file parsing
# -------------------------
def test_parse_config_file(tmp_path):
    path = write(tmp_path / "t.conf", """
# comment line
SERVER_SSH_USER="admin"
SERVER_SSH_HOST='foo.net'   # trailing comment
export SERVER_SSH_PORT=2200
MONITOR_PORT=21000
EXIT_ON_FORWARD_FAILURE="no"
SOMETHING_ELSE="ignored"
""")
    assert parse_config_file(path) == {
        "server_user": "admin",
        "server_host": "foo.net",
        "server_port": "2200",
        "monitor_port": "21000",
        "exit_on_forward_failure": "no",
    }


def test_parse_skips_non_assignments(tmp_path, caplog):
    path = write(tmp_path / "t.conf", 'echo hello\nSERVER_SSH_HOST="a.net"\n')
    assert parse_config_file(path) == {"server_host": "a.net"}
    assert "not a KEY=value" in caplog.text


def test_parse_unbalanced_quote(tmp_path):
    path = write(tmp_path / "t.conf", 'SERVER_SSH_HOST="a.net\n')
    with pytest.raises(InvalidConfigValue):
        parse_config_file(path)


def test_find_config_file_first_existing_wins(tmp_path):
    first = tmp_path / "a.conf"
    second = write(tmp_path / "b.conf", "")
    third = write(tmp_path / "c.conf", "")
    assert find_config_file([first, second, third]) == second
    assert find_config_file([first]) is None


def test_discovery_order_prefers_current_directory(no_config_files, tmp_path):
    home_conf = write(tmp_path / "home" / ".config" / "ssh-tunnel" / "ssh-tunnel.conf", "")
    assert find_config_file() == home_conf
    write(no_config_files / "ssh-tunnel.conf", "")
    assert find_config_file().resolve() == (no_config_files / "ssh-tunnel.conf").resolve()


# -------------------------
# Resolution
# -------------------------
def test_cli_only_scenario(no_config_files):
    c = resolve({"server_user": "alice", "server_host": "example.com", "remote_port": 3333})
    assert c.server_user == "alice"
    assert c.server_host == "example.com"
    assert c.remote_port == 3333
    assert c.server_port == 22
    assert c.local_port == 22
    assert c.monitor_port == 20000
    assert c.server_alive_interval == 60
    assert c.server_alive_count_max == 3
    assert c.exit_on_forward_failure is True


def test_cli_overrides_file(tmp_path):
    path = write(tmp_path / "t.conf", 'SERVER_SSH_USER="u"\nSERVER_SSH_HOST="foo.net"\n')
    c = resolve({"server_host": "bar.net"}, search_paths=[path])
    assert c.server_host == "bar.net"
    assert c.server_user == "u"


def test_file_overrides_defaults_field_by_field(tmp_path):
    path = write(tmp_path / "t.conf", """
SERVER_SSH_USER="u"
SERVER_SSH_HOST="h"
SERVER_SSH_FORWARD_PORT="4444"
LOCAL_SSH_PORT=""
INSTALL_LOCAL_SERVICE="true"
""")
    c = resolve({}, search_paths=[path])
    assert c.remote_port == 4444
    assert c.local_port == 22
    assert c.monitor_port == 20000
    assert c.install_service is True


def test_explicit_file_applies_over_discovered(tmp_path):
    discovered = write(tmp_path / "found.conf", 'SERVER_SSH_USER="u"\nSERVER_SSH_HOST="one.net"\nMONITOR_PORT=21000\n')
    explicit = write(tmp_path / "given.conf", 'SERVER_SSH_HOST="two.net"\n')
    c = resolve({}, config_file=explicit, search_paths=[discovered])
    assert c.server_host == "two.net"
    assert c.server_user == "u"
    assert c.monitor_port == 21000


def test_defaults_layer_is_lowest(tmp_path):
    base = TunnelConfig(server_user="base", server_host="base.net", local_user="me", monitor_port=30000)
    path = write(tmp_path / "t.conf", 'SERVER_SSH_HOST="file.net"\n')
    c = resolve({"server_user": "cli"}, defaults=base, search_paths=[path])
    assert (c.server_user, c.server_host, c.monitor_port) == ("cli", "file.net", 30000)


def test_missing_user_or_host_fails(no_config_files):
    with pytest.raises(MissingRequiredField):
        resolve({"server_user": "alice"})
    with pytest.raises(MissingRequiredField):
        resolve({"server_host": "example.com"})


def test_explicit_empty_cli_value_clears_file_value(tmp_path):
    path = write(tmp_path / "t.conf", 'SERVER_SSH_USER="u"\nSERVER_SSH_HOST="h"\n')
    with pytest.raises(MissingRequiredField):
        resolve({"server_user": ""}, search_paths=[path])


def test_explicit_config_not_found(no_config_files, tmp_path):
    with pytest.raises(ConfigFileNotFound):
        resolve({"server_user": "u", "server_host": "h"}, config_file=tmp_path / "nope.conf")


def test_invalid_value_in_file(tmp_path):
    path = write(tmp_path / "t.conf", 'SERVER_SSH_USER=u\nSERVER_SSH_HOST=h\nSERVER_SSH_PORT=ssh\n')
    with pytest.raises(InvalidConfigValue, match="server_port"):
        resolve({}, search_paths=[path])


# -------------------------
# Persistence
# -------------------------
def test_render_config_round_trips(tmp_path, config):
    text = render_config(config, now=datetime.datetime(2025, 1, 2, 3, 4, 5))
    assert "Created by ssh-tunnel service installation on Thu Jan 02 03:04:05 2025" in text
    assert 'INSTALL_LOCAL_SERVICE="true"' in text
    assert 'EXIT_ON_FORWARD_FAILURE="yes"' in text

    path = write(tmp_path / "saved.conf", text)
    c = resolve({}, search_paths=[path])
    assert c.model_dump() == config.model_copy(update={"install_service": True}).model_dump()


def test_save_config_permissions(tmp_path, config):
    path = save_config(config, tmp_path / "etc" / "ssh-tunnel.conf")
    assert path.read_text().startswith("# SSH Tunnel Configuration File")
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644
    assert not (tmp_path / "etc" / "ssh-tunnel.conf.tmp").exists()


def test_save_config_overwrites(tmp_path, config):
    path = write(tmp_path / "ssh-tunnel.conf", "old content\n")
    save_config(config, path)
    assert "old content" not in path.read_text()


def test_parse_tolerates_non_utf8_comment(tmp_path):
    path = tmp_path / "t.conf"
    path.write_bytes(b'# Serveur de sauvegarde \xe9t\xe9\nSERVER_SSH_USER="u"\nSERVER_SSH_HOST="h"\n')
    assert parse_config_file(path) == {"server_user": "u", "server_host": "h"}


def test_parse_non_utf8_value_is_invalid(tmp_path):
    path = tmp_path / "t.conf"
    path.write_bytes(b'SERVER_SSH_USER="u"\nSERVER_SSH_HOST="h\xe9te"\n')
    with pytest.raises(InvalidConfigValue, match="server_host"):
        resolve({}, search_paths=[path])


def test_parse_unreadable_file(tmp_path):
    # A directory cannot be read as a file, even by root
    with pytest.raises(InvalidConfigValue, match="Could not read configuration file"):
        parse_config_file(tmp_path)
