"""Tests for library rule evaluation."""
from unittest import mock

import pytest

from mclauncher import rules
from mclauncher.models import Rule


def _rules(*entries):
    return [Rule.model_validate(entry) for entry in entries]


class TestEvaluate:
    def test_empty_rules_allow(self):
        assert rules.evaluate([], "linux") is True

    def test_allow_then_disallow_osx(self):
        """The last applying rule decides."""
        guarded = _rules({"action": "allow"}, {"action": "disallow", "os": {"name": "osx"}})
        assert rules.evaluate(guarded, "osx") is False
        assert rules.evaluate(guarded, "linux") is True
        assert rules.evaluate(guarded, "windows") is True

    def test_no_applying_rule_denies(self):
        guarded = _rules({"action": "allow", "os": {"name": "windows"}})
        assert rules.evaluate(guarded, "linux") is False
        assert rules.evaluate(guarded, "windows") is True

    def test_disallow_then_allow_reverses(self):
        guarded = _rules({"action": "disallow"}, {"action": "allow", "os": {"name": "linux"}})
        assert rules.evaluate(guarded, "linux") is True
        assert rules.evaluate(guarded, "osx") is False

    def test_os_without_name_applies_everywhere(self):
        guarded = _rules({"action": "allow", "os": {"arch": "x86"}})
        assert rules.evaluate(guarded, "osx") is True

    def test_defaults_to_current_platform(self):
        guarded = _rules({"action": "allow", "os": {"name": "osx"}})
        with mock.patch.object(rules, "current_platform", return_value="osx"):
            assert rules.evaluate(guarded) is True
        with mock.patch.object(rules, "current_platform", return_value="linux"):
            assert rules.evaluate(guarded) is False


class TestPlatform:
    @pytest.mark.parametrize("system,expected", [("Windows", "windows"), ("Darwin", "osx"), ("Linux", "linux")])
    def test_current_platform(self, system, expected):
        with mock.patch("platform.system", return_value=system):
            assert rules.current_platform() == expected

    def test_unsupported_platform_raises(self):
        with mock.patch("platform.system", return_value="Haiku"):
            with pytest.raises(OSError):
                rules.current_platform()

    @pytest.mark.parametrize("machine,expected", [
        ("AMD64", "x64"), ("x86_64", "x64"), ("i686", "x86"), ("aarch64", "arm64"), ("armv7l", "arm32"),
    ])
    def test_current_arch(self, machine, expected):
        with mock.patch("platform.machine", return_value=machine):
            assert rules.current_arch() == expected
