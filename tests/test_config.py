"""Tests for launcher config, settings and the directory layout."""
import json

import pytest

from mclauncher.config import Paths, Settings, load_launcher_config, load_settings, replace_text, save_settings
from mclauncher.errors import SchemaError


class TestLauncherConfig:
    def test_thisdir_is_replaced(self, tmp_path):
        config_file = tmp_path / "launcher_config.json"
        config_file.write_text(json.dumps({"basepath": ":thisdir:/data", "path": ".minecraft", "asset_retries": 5}))

        config = load_launcher_config(config_file)

        assert config.basepath == f"{tmp_path.resolve()}/data"
        assert config.asset_retries == 5
        assert config.game_root(tmp_path) == tmp_path.resolve() / "data" / ".minecraft"

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_launcher_config(tmp_path / "nope.json")

        assert config.asset_concurrency == 4
        assert config.game_root(tmp_path) == tmp_path / ".mc_launcher_data" / ".minecraft"

    def test_broken_file(self, tmp_path):
        config_file = tmp_path / "launcher_config.json"
        config_file.write_text("{")

        with pytest.raises(SchemaError):
            load_launcher_config(config_file)

    def test_replace_text_leaves_other_types(self):
        assert replace_text(3, {":thisdir:": "/x"}) == 3
        assert replace_text(":thisdir:/a/:thisdir:", {":thisdir:": "/x"}) == "/x/a//x"


class TestSettings:
    def test_defaults_without_file(self, paths):
        settings = load_settings(paths)
        assert settings.max_memory == 2048
        assert settings.min_memory == 512
        assert settings.global_java_path is None
        assert settings.skip_java_check is False

    def test_round_trip(self, paths):
        save_settings(paths, Settings(max_memory=4096, global_java_path="/opt/java"))
        assert load_settings(paths).max_memory == 4096
        assert load_settings(paths).global_java_path == "/opt/java"

    def test_unparsable_file_gives_defaults(self, paths):
        paths.settings_file.parent.mkdir(parents=True)
        paths.settings_file.write_text('{"max_memory": "lots"}')
        assert load_settings(paths) == Settings()


class TestPaths:
    def test_layout(self, tmp_path):
        paths = Paths(tmp_path)
        assert paths.version_json("1.20.1") == tmp_path / "versions" / "1.20.1" / "1.20.1.json"
        assert paths.client_jar("1.20.1") == tmp_path / "versions" / "1.20.1" / "1.20.1.jar"
        assert paths.library("a/b.jar") == tmp_path / "libraries" / "a" / "b.jar"
        assert paths.asset_index("5") == tmp_path / "assets" / "indexes" / "5.json"
        assert paths.asset_object("abcdef") == tmp_path / "assets" / "objects" / "ab" / "abcdef"
        assert paths.game_dir("i1") == tmp_path / "instances" / "i1" / ".minecraft"
