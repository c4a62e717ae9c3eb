"""Tests for the command line front end."""
import asyncio
import json
from types import SimpleNamespace
from unittest import mock

import pytest

from mclauncher import runtime
from mclauncher.__main__ import _launch_and_wait, build_parser, main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "launcher_config.json"
    path.write_text(json.dumps({"basepath": ":thisdir:/data"}))
    return path


class TestParser:
    def test_loader_versions_flags(self):
        args = build_parser().parse_args(["loader-versions", "quilt", "1.20.1", "--beta"])
        assert args.loader_type == "quilt"
        assert args.beta is True

    def test_unknown_loader_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["loader", "forge", "1.20.1", "47.0"])


class TestMain:
    def test_create_then_list(self, config_file, tmp_path, capsys):
        assert main(["--config", str(config_file), "create", "Survival", "1.20.1"]) == 0
        instance_id = capsys.readouterr().out.strip()

        assert main(["--config", str(config_file), "list"]) == 0
        listing = capsys.readouterr().out
        assert instance_id in listing
        assert "Survival (1.20.1)" in listing
        assert (tmp_path / "data" / ".minecraft" / "instances" / instance_id / "instance.json").exists()

    def test_launcher_error_exit_code(self, config_file):
        assert main(["--config", str(config_file), "setup", "missing"]) == 1

    def test_broken_config(self, tmp_path):
        broken = tmp_path / "launcher_config.json"
        broken.write_text("{")
        assert main(["--config", str(broken), "list"]) == 1

    def _create(self, config_file, capsys, *extra):
        assert main(["--config", str(config_file), "create", "Survival", "1.20.1", *extra]) == 0
        return capsys.readouterr().out.strip()

    def test_delete_with_version(self, config_file, tmp_path, capsys):
        instance_id = self._create(config_file, capsys)
        version_dir = tmp_path / "data" / ".minecraft" / "versions" / "1.20.1"
        version_dir.mkdir(parents=True)
        (version_dir / "1.20.1.json").write_text("{}")

        assert main(["--config", str(config_file), "delete", instance_id, "--delete-version"]) == 0

        assert not version_dir.exists()
        assert not (tmp_path / "data" / ".minecraft" / "instances" / instance_id).exists()
        assert main(["--config", str(config_file), "delete", instance_id]) == 1

    def test_check_java_exit_code(self, config_file, capsys):
        instance_id = self._create(config_file, capsys)

        with mock.patch.object(runtime, "runtime_major_version", return_value=8):
            assert main(["--config", str(config_file), "check-java", instance_id]) == 1
        assert "Java 8, needs 17" in capsys.readouterr().out

        with mock.patch.object(runtime, "runtime_major_version", return_value=17):
            assert main(["--config", str(config_file), "check-java", instance_id]) == 0


class _ExitingSupervisor:
    def __init__(self, code):
        self.code = code

    async def launch(self, instance_id):
        return SimpleNamespace(pid=4242)

    def wait(self, instance_id, timeout=None):
        return self.code

    def kill(self, instance_id):
        return False


class TestLaunchAndWait:
    def test_returns_game_exit_code(self):
        assert asyncio.run(_launch_and_wait(_ExitingSupervisor(3), "i")) == 3

    def test_clean_exit(self):
        assert asyncio.run(_launch_and_wait(_ExitingSupervisor(None), "i")) == 0
