"""Launcher configuration, persisted settings and the on-disk layout."""
import json
import logging
import pathlib
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import SchemaError

log = logging.getLogger(__name__)

CONFIG_FILENAME = 'launcher_config.json'
SETTINGS_FILENAME = 'settings.json'
DEFAULT_BASE_DIRNAME = '.mc_launcher_data'
DEFAULT_GAME_DIRNAME = '.minecraft'
THISDIR_PLACEHOLDER = ':thisdir:'


def replace_text(value: Any, replacements: Dict[str, str]) -> Any:
    """
    Replaces every occurrence of each key of ``replacements`` in ``value``.

    Non-string values are returned untouched so whole config dicts can be
    passed through this value by value.
    """
    if not isinstance(value, str):
        return value
    for search_string, replace_string in replacements.items():
        value = value.replace(search_string, replace_string)
    return value


class LauncherConfig(BaseModel):
    """Contents of ``launcher_config.json``, every key optional."""
    model_config = ConfigDict(extra="ignore")

    basepath: Optional[str] = None
    path: str = DEFAULT_GAME_DIRNAME
    asset_concurrency: int = 4
    asset_retries: int = 3
    log_level: str = 'INFO'

    def game_root(self, default_base: pathlib.Path) -> pathlib.Path:
        base = pathlib.Path(self.basepath) if self.basepath else default_base / DEFAULT_BASE_DIRNAME
        return base / self.path


def load_launcher_config(config_path: Optional[pathlib.Path] = None) -> LauncherConfig:
    """Loads a launcher config file, falling back to defaults when there is none."""
    if config_path is None or not config_path.exists():
        log.debug(f"No launcher config at {config_path}, using defaults.")
        return LauncherConfig()
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise SchemaError(f"Error parsing {config_path}: {e}") from e

    this_dir = str(config_path.parent.resolve())
    patched = {key: replace_text(value, {THISDIR_PLACEHOLDER: this_dir}) for key, value in raw.items()}
    try:
        return LauncherConfig.model_validate(patched)
    except ValidationError as e:
        raise SchemaError(f"Invalid launcher config {config_path}: {e}") from e


class Settings(BaseModel):
    """Global user settings, stored as ``settings.json`` in the game root."""
    model_config = ConfigDict(extra="ignore")

    max_memory: int = 2048
    min_memory: int = 512
    global_java_args: str = "-XX:+UseG1GC -Dsun.stdout.encoding=UTF-8"
    global_java_path: Optional[str] = None
    skip_java_check: bool = False


class Paths:
    """Where everything lives below one game root directory."""

    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)
        self.versions = self.root / 'versions'
        self.libraries = self.root / 'libraries'
        self.assets = self.root / 'assets'
        self.asset_indexes = self.assets / 'indexes'
        self.asset_objects = self.assets / 'objects'
        self.instances = self.root / 'instances'
        self.runtimes = self.root / 'runtimes'
        self.settings_file = self.root / SETTINGS_FILENAME

    def version_dir(self, version_id: str) -> pathlib.Path:
        return self.versions / version_id

    def version_json(self, version_id: str) -> pathlib.Path:
        return self.version_dir(version_id) / f"{version_id}.json"

    def client_jar(self, version_id: str) -> pathlib.Path:
        return self.version_dir(version_id) / f"{version_id}.jar"

    def library(self, relative_path: str) -> pathlib.Path:
        return self.libraries / relative_path

    def asset_index(self, index_id: str) -> pathlib.Path:
        return self.asset_indexes / f"{index_id}.json"

    def asset_object(self, object_hash: str) -> pathlib.Path:
        return self.asset_objects / object_hash[:2] / object_hash

    def instance_dir(self, instance_id: str) -> pathlib.Path:
        return self.instances / instance_id

    def instance_json(self, instance_id: str) -> pathlib.Path:
        return self.instance_dir(instance_id) / 'instance.json'

    def game_dir(self, instance_id: str) -> pathlib.Path:
        return self.instance_dir(instance_id) / DEFAULT_GAME_DIRNAME

    def runtime_dir(self, major: int) -> pathlib.Path:
        return self.runtimes / f"java-{major}"


def load_settings(paths: Paths) -> Settings:
    """Reads the settings file; a missing or broken one yields the defaults."""
    if not paths.settings_file.exists():
        return Settings()
    try:
        with open(paths.settings_file, 'r', encoding='utf-8') as f:
            return Settings.model_validate(json.load(f))
    except (json.JSONDecodeError, ValidationError) as e:
        log.warning(f"Could not parse {paths.settings_file}: {e}. Using defaults.")
        return Settings()


def save_settings(paths: Paths, settings: Settings) -> None:
    paths.settings_file.parent.mkdir(parents=True, exist_ok=True)
    with open(paths.settings_file, 'w', encoding='utf-8') as f:
        f.write(settings.model_dump_json(indent=2))
