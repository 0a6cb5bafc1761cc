import json
import re

import pytest
import yaml

from toolbridge.test.fakes import server
from toolbridge.tool.config_loader import (
    ServerConfigStore,
    build_stdio_params,
    interpolate_env,
    parse_server_data,
)
from toolbridge.tool.errors import ConfigError
from toolbridge.tool.types import ServerData


class TestParse:
    def test_defaults(self):
        data = parse_server_data({"servers": [{"id": "fs", "command": "npx"}]})

        [fs] = data.servers
        assert fs.name == "fs"
        assert fs.args == []
        assert fs.env == {}
        assert fs.enabled is True
        assert data.version == "1.0.0"

    def test_empty_document(self):
        assert parse_server_data(None).servers == []

    @pytest.mark.parametrize(
        "entry",
        [
            {"command": "npx"},
            {"id": "fs"},
            {"id": "fs", "command": "npx", "args": "-y"},
            {"id": "fs", "command": "npx", "env": ["A=1"]},
        ],
    )
    def test_rejects_malformed_entries(self, entry):
        with pytest.raises(ConfigError):
            parse_server_data({"servers": [entry]})

    def test_rejects_duplicate_ids(self):
        with pytest.raises(ConfigError, match="Duplicate server id 'fs'"):
            parse_server_data(
                {"servers": [{"id": "fs", "command": "npx"}, {"id": "fs", "command": "uvx"}]}
            )


class TestStore:
    def test_missing_file_is_empty(self, tmp_path):
        assert ServerConfigStore(tmp_path / "absent.yaml").load().servers == []

    def test_save_then_load_yaml(self, store, config_path):
        original = ServerData(servers=[server("fs", args=["-y", "pkg"], env={"TOKEN": "${env:TOKEN}"})])
        assert store.save(original)

        on_disk = yaml.safe_load(config_path.read_text())
        assert on_disk["servers"][0]["env"] == {"TOKEN": "${env:TOKEN}"}
        assert store.load().servers == original.servers

    def test_json_path_writes_json(self, tmp_path):
        store = ServerConfigStore(tmp_path / "servers.json")
        store.save(ServerData(servers=[server("fs")]))

        assert json.loads((tmp_path / "servers.json").read_text())["servers"][0]["id"] == "fs"
        assert store.get_server("fs").command == "npx"

    def test_unreadable_yaml_raises_config_error(self, config_path):
        config_path.write_text("servers: [unclosed")
        with pytest.raises(ConfigError):
            ServerConfigStore(config_path).load()

    def test_env_var_selects_default_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TOOLBRIDGE_CONFIG_PATH", str(tmp_path / "elsewhere.yaml"))
        assert ServerConfigStore().config_path == tmp_path / "elsewhere.yaml"

    def test_add_server_generates_id(self, store):
        added = store.add_server({"name": "Files", "command": "npx", "args": ["-y", "fs"]})

        assert re.fullmatch(r"mcp-\d+-[a-z0-9]{9}", added.id)
        assert store.get_server(added.id) == added

    def test_update_ignores_unknown_fields(self, write_servers):
        store = write_servers([server("fs")])

        assert store.update_server("fs", {"id": "other", "enabled": False, "bogus": 1})

        updated = store.get_server("fs")
        assert updated.enabled is False
        assert store.get_server("other") is None

    def test_update_and_remove_unknown(self, store):
        assert store.update_server("ghost", {"enabled": False}) is False
        assert store.remove_server("ghost") is False

    def test_remove(self, write_servers):
        store = write_servers([server("a"), server("b")])

        assert store.remove_server("a")
        assert [s.id for s in store.load().servers] == ["b"]


def test_interpolate_env(monkeypatch):
    monkeypatch.setenv("TB_SECRET", "s3cret")
    monkeypatch.delenv("TB_MISSING", raising=False)

    assert interpolate_env(
        {"A": "${env:TB_SECRET}", "B": "${env:TB_MISSING}", "C": "plain"}
    ) == {"A": "s3cret", "B": "${env:TB_MISSING}", "C": "plain"}


def test_build_stdio_params():
    params = build_stdio_params(server("fs", args=["-y", "pkg"]), "/usr/bin/npx", {"PATH": "/usr/bin"})

    assert params.command == "/usr/bin/npx"
    assert params.args == ["-y", "pkg"]
    assert params.env == {"PATH": "/usr/bin"}
