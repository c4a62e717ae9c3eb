"""Platform detection and evaluation of library rules."""
import logging
import platform
from functools import reduce
from typing import Optional, Sequence

from .models import Rule, RuleAction

log = logging.getLogger(__name__)


def current_platform() -> str:
    """Gets the current OS name ('windows', 'osx', 'linux')."""
    system = platform.system()
    if system == 'Windows': return 'windows'
    elif system == 'Darwin': return 'osx'
    elif system == 'Linux': return 'linux'
    else: raise OSError(f"Unsupported platform: {system}")


def current_arch() -> str:
    """Gets the current architecture name ('x64', 'x86', 'arm64', 'arm32')."""
    machine = platform.machine().lower()
    if machine in ['amd64', 'x86_64']: return 'x64'
    elif machine in ['i386', 'i686']: return 'x86'
    elif machine in ['arm64', 'aarch64']: return 'arm64'
    elif machine.startswith('arm') and '64' not in machine: return 'arm32'
    else:
        log.warning(f"Unsupported architecture: {platform.machine()}. Falling back to 'x64'.")
        return 'x64'


def rule_applies(rule: Rule, os_name: str) -> bool:
    """A rule applies when it has no OS condition or names this OS."""
    return rule.os is None or rule.os.name is None or rule.os.name == os_name


def evaluate(rules: Sequence[Rule], os_name: Optional[str] = None) -> bool:
    """
    Decides whether an item guarded by ``rules`` is included on ``os_name``.

    The last applying rule wins. A non-empty list where no rule applies
    denies the item, an empty list always allows it.
    """
    if not rules:
        return True
    if os_name is None:
        os_name = current_platform()

    def step(allowed: bool, rule: Rule) -> bool:
        if rule_applies(rule, os_name):
            return rule.action == RuleAction.ALLOW
        return allowed

    return reduce(step, rules, False)
