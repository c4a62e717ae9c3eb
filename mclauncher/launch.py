"""Turning a resolved descriptor into the classpath and argv of the game."""
import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .config import Paths
from .errors import SchemaError
from .models import VersionDescriptor
from .versions import library_downloads

log = logging.getLogger(__name__)

# --- Offline identity ---
OFFLINE_USERNAME = 'Player'
OFFLINE_UUID = '00000000-0000-0000-0000-000000000000'
OFFLINE_ACCESS_TOKEN = '0'
OFFLINE_USER_TYPE = 'offline'


def build_classpath(descriptor: VersionDescriptor, paths: Paths, version_id: str,
                    os_name: Optional[str] = None, arch: Optional[str] = None) -> List[pathlib.Path]:
    """
    Classpath entries for ``descriptor``: allowed libraries in declaration
    order (artifact, then this platform's native), duplicates removed, and
    the client jar of ``version_id`` last.
    """
    client_jar = paths.client_jar(version_id)
    entries: List[pathlib.Path] = []
    seen = {client_jar}
    for _, artifact in library_downloads(descriptor, os_name, arch):
        path = paths.library(artifact.path)
        if path not in seen:
            seen.add(path)
            entries.append(path)
    entries.append(client_jar)
    return entries


def join_classpath(entries: Iterable[os.PathLike]) -> str:
    return os.pathsep.join(str(entry) for entry in entries)


def split_args(value: Optional[str]) -> List[str]:
    return value.split() if value else []


@dataclass
class RuntimeConfig:
    """Everything besides the descriptor that goes into the command line."""
    java_path: str
    version_id: str
    classpath: List[pathlib.Path]
    game_dir: pathlib.Path
    assets_dir: pathlib.Path
    min_memory: int = 512
    max_memory: int = 2048
    global_args: str = ''
    instance_args: str = ''
    username: str = OFFLINE_USERNAME
    uuid: str = OFFLINE_UUID
    access_token: str = OFFLINE_ACCESS_TOKEN
    user_type: str = OFFLINE_USER_TYPE


def build_launch_args(descriptor: VersionDescriptor, config: RuntimeConfig) -> List[str]:
    if not descriptor.entry_point:
        raise SchemaError(f"Version {config.version_id} has no main class")
    if descriptor.asset_index_ref is None:
        raise SchemaError(f"Version {config.version_id} has no asset index")

    args = [config.java_path, f"-Xms{config.min_memory}M", f"-Xmx{config.max_memory}M"]
    args.extend(split_args(config.global_args))
    args.extend(split_args(config.instance_args))
    args.extend(['-cp', join_classpath(config.classpath), descriptor.entry_point])
    args.extend([
        '--username', config.username,
        '--uuid', config.uuid,
        '--accessToken', config.access_token,
        '--userType', config.user_type,
        '--version', config.version_id,
        '--gameDir', str(config.game_dir),
        '--assetsDir', str(config.assets_dir),
        '--assetIndex', descriptor.asset_index_ref.id,
    ])
    log.debug(f"Launch command: {' '.join(args)}")
    return args
