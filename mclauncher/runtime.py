"""
Locating (and if need be downloading) a Java runtime for a game version.

Downloaded runtimes are Temurin builds from the Adoptium API, extracted
below ``runtimes/java-<major>`` in the game root.
"""
import asyncio
import logging
import os
import pathlib
import platform
import re
import shutil
import subprocess
import tarfile
import zipfile
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union

import aiofiles.os

from .config import Paths
from .download import ContentFetcher, remove_file
from .errors import InstallError
from .models import VersionDescriptor

log = logging.getLogger(__name__)

# --- Configuration ---
ADOPTIUM_API_BASE = 'https://api.adoptium.net/v3'
DEFAULT_IMAGE_TYPE = 'jre'
VERSION_CHECK_TIMEOUT = 10


# --- Helper Functions ---

def get_api_os_arch() -> Optional[Dict[str, str]]:
    """Maps Python platform/machine to Adoptium API values."""
    system = platform.system()
    machine = platform.machine().lower()

    if system == 'Windows':
        api_os = 'windows'
    elif system == 'Darwin':
        api_os = 'mac'
    elif system == 'Linux':
        api_os = 'linux'
    else:
        log.error(f"Unsupported operating system: {system}")
        return None

    if machine in ['amd64', 'x86_64']:
        api_arch = 'x64'
    elif machine in ['arm64', 'aarch64']:
        api_arch = 'aarch64'
    elif machine in ['i386', 'i686', 'x86']:
        api_arch = 'x86'
    else:
        log.error(f"Unsupported architecture: {machine}")
        return None

    return {"os": api_os, "arch": api_arch}


def parse_game_version(version: str) -> Optional[Tuple[int, int, int]]:
    parts = version.split('.')
    if len(parts) < 2:
        return None
    try:
        major, minor = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    patch = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
    return major, minor, patch


def required_java_version(version: Union[VersionDescriptor, str]) -> int:
    """
    Java major version a game version needs.

    A descriptor declaring ``javaVersion`` is taken at its word, otherwise
    1.18 and later need 17, 1.17 needs 16 and everything older runs on 8.
    """
    if isinstance(version, VersionDescriptor):
        if version.java_version is not None:
            return version.java_version.major_version
        version = version.inherits_from or version.id or ''
    parsed = parse_game_version(version)
    if parsed is not None:
        if parsed >= (1, 18, 0):
            return 17
        if parsed >= (1, 17, 0):
            return 16
    return 8


_VERSION_RE = re.compile(r'"([^"]+)"')


def parse_java_version_output(text: str) -> Optional[int]:
    """
    Major version from the first line of ``java -version`` output.

    Handles both ``openjdk version "17.0.1" 2021-10-19`` and the old
    ``java version "1.8.0_311"`` scheme.
    """
    first_line = text.strip().splitlines()[0] if text.strip() else ''
    match = _VERSION_RE.search(first_line)
    if not match:
        return None
    parts = re.split(r'[._+-]', match.group(1))
    try:
        if parts[0] == '1' and len(parts) > 1:
            return int(parts[1])
        return int(parts[0])
    except ValueError:
        return None


def runtime_major_version(java_path: Union[str, os.PathLike]) -> Optional[int]:
    """Runs ``java -version``, None when the executable can't be run."""
    try:
        result = subprocess.run([str(java_path), '-version'], capture_output=True, text=True,
                                timeout=VERSION_CHECK_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug(f"Could not run {java_path} -version: {e}")
        return None
    # java -version prints to stderr
    return parse_java_version_output(result.stderr or result.stdout)


@dataclass
class JavaCompatibility:
    compatible: bool
    actual_version: Optional[int]
    required_version: int
    path: str


def check_compatibility(required: int, java_path: Union[str, os.PathLike],
                        skip: bool = False) -> JavaCompatibility:
    """
    Compares the major version of ``java_path`` with ``required``.

    With ``skip`` set the runtime counts as compatible whatever it reports,
    the actual version is still filled in for display.
    """
    found = runtime_major_version(java_path)
    return JavaCompatibility(skip or found == required, found, required, str(java_path))


def _executable_in(base_dir: pathlib.Path, system: str) -> pathlib.Path:
    if system == 'Windows':
        return base_dir / 'bin' / 'java.exe'
    elif system == 'Darwin':
        return base_dir / 'Contents' / 'Home' / 'bin' / 'java'
    return base_dir / 'bin' / 'java'


async def find_java_executable(extract_dir: pathlib.Path, system: Optional[str] = None) -> Optional[pathlib.Path]:
    """
    Finds the Java executable of an extracted runtime.

    Archives usually hold a single top-level directory (``jdk-17.0.9+9-jre``),
    so the first subdirectory is searched before ``extract_dir`` itself.
    """
    system = system or platform.system()
    if not await aiofiles.os.path.isdir(extract_dir):
        return None

    candidates = [entry for entry in sorted(extract_dir.iterdir()) if entry.is_dir()][:1]
    candidates.append(extract_dir)
    for base_dir in candidates:
        java_path = _executable_in(base_dir, system)
        if await aiofiles.os.path.isfile(java_path) and os.access(java_path, os.X_OK):
            log.debug(f"Found Java executable: {java_path}")
            return java_path.resolve()
    return None


def find_system_java(required: int) -> Optional[str]:
    """A ``java`` from JAVA_HOME or PATH whose major version is ``required``."""
    search_paths = []
    java_home = os.environ.get('JAVA_HOME')
    if java_home:
        search_paths.append(str(pathlib.Path(java_home) / 'bin' / ('java.exe' if os.name == 'nt' else 'java')))
    on_path = shutil.which('java')
    if on_path:
        search_paths.append(on_path)

    for path in search_paths:
        if pathlib.Path(path).exists() and runtime_major_version(path) == required:
            return path
    return None


# Synchronous extraction, run in an executor
def _extract_zip(archive_path: pathlib.Path, dest_path: pathlib.Path) -> None:
    with zipfile.ZipFile(archive_path, 'r') as zip_ref:
        zip_ref.extractall(dest_path)


def _extract_tar(archive_path: pathlib.Path, dest_path: pathlib.Path) -> None:
    with tarfile.open(archive_path, 'r:gz') as tar_ref:
        tar_ref.extractall(path=dest_path, filter='data')


class RuntimeResolver:
    """Picks the Java executable for a game version, downloading one if needed."""

    def __init__(self, paths: Paths, fetcher: ContentFetcher, image_type: str = DEFAULT_IMAGE_TYPE):
        self.paths = paths
        self.fetcher = fetcher
        self.image_type = image_type

    def download_url(self, major: int, api_os: str, api_arch: str) -> str:
        return (f"{ADOPTIUM_API_BASE}/binary/latest/{major}/ga/{api_os}/{api_arch}/"
                f"{self.image_type}/hotspot/normal/eclipse")

    async def download_runtime(self, major: int) -> pathlib.Path:
        platform_info = get_api_os_arch()
        if not platform_info:
            raise InstallError(f"No Java {major} download available for this platform")
        api_os = platform_info["os"]
        dest = self.paths.runtime_dir(major)
        archive = dest.parent / f"java-{major}.{'zip' if api_os == 'windows' else 'tar.gz'}"

        url = self.download_url(major, api_os, platform_info["arch"])
        log.info(f"Downloading Java {major} ({self.image_type}) for {api_os}-{platform_info['arch']} from Adoptium.")
        await self.fetcher.fetch_to(url, archive)
        try:
            await aiofiles.os.makedirs(dest, exist_ok=True)
            log.info(f"Extracting {archive.name} to {dest}...")
            extract = _extract_zip if api_os == 'windows' else _extract_tar
            await asyncio.get_running_loop().run_in_executor(None, extract, archive, dest)
        finally:
            await remove_file(archive)

        java_path = await find_java_executable(dest)
        if java_path is None:
            raise InstallError(f"Extracted Java {major} to {dest} but found no java executable in it")
        return java_path

    async def resolve_runtime(self, required: int, override: Optional[str] = None) -> str:
        """
        Path of a Java executable for ``required``, in order of preference:
        an explicit override, a runtime downloaded earlier, a matching system
        Java, and finally a freshly downloaded one.
        """
        if override:
            if pathlib.Path(override).exists():
                log.info(f"Using configured Java: {override}")
                return override
            log.warning(f"Configured Java {override} does not exist, falling back to detection.")

        downloaded = await find_java_executable(self.paths.runtime_dir(required))
        if downloaded is not None:
            log.info(f"Using downloaded Java {required}: {downloaded}")
            return str(downloaded)

        system_java = await asyncio.get_running_loop().run_in_executor(None, find_system_java, required)
        if system_java:
            log.info(f"Found system Java {required} at: {system_java}")
            return system_java

        log.warning(f"Java {required} not found on system, downloading...")
        return str(await self.download_runtime(required))
