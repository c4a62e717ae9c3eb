"""
Resolving version ids into descriptors and materializing them on disk.

A version is installed when its descriptor sits in ``versions/<id>/`` and
the client jar, every library allowed on this platform and every asset
object of its index exist below the game root, each with its expected
size where the descriptor states one. Each step checks what is
already there first, so re-installing a complete version costs no
network traffic.
"""
import asyncio
import hashlib
import logging
import shutil
from typing import Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from . import events, rules
from .config import Paths
from .download import ContentFetcher, FetchStats, is_present
from .errors import IntegrityError, SchemaError
from .events import EventSink, NullSink
from .models import AssetIndex, LibraryArtifact, LibraryRef, VersionCatalog, VersionDescriptor

log = logging.getLogger(__name__)

CATALOG_URL = 'https://piston-meta.mojang.com/mc/game/version_manifest_v2.json'


# --- Descriptor handling ---

def parse_descriptor(text: str, source: object) -> VersionDescriptor:
    try:
        return VersionDescriptor.model_validate_json(text)
    except ValidationError as e:
        raise SchemaError(f"Invalid version descriptor {source}: {e}") from e


def merge(derived: VersionDescriptor, base: VersionDescriptor) -> VersionDescriptor:
    """Merges a derived descriptor onto its base, the derived layer wins."""
    log.info(f"Merging descriptors: {derived.id} inheriting from {base.id}")

    # Keyed by name so the derived layer can replace a base library in place.
    combined: Dict[str, LibraryRef] = {lib.name: lib for lib in base.libraries}
    for lib in derived.libraries:
        combined[lib.name] = lib

    return VersionDescriptor(
        id=derived.id,
        inherits_from=derived.inherits_from,
        type=derived.type or base.type,
        release_time=derived.release_time or base.release_time,
        entry_point=derived.entry_point or base.entry_point,
        libraries=list(combined.values()),
        downloads=derived.downloads if derived.client_download else base.downloads,
        asset_index_ref=derived.asset_index_ref or base.asset_index_ref,
        java_version=derived.java_version or base.java_version,
    )


def library_downloads(descriptor: VersionDescriptor, os_name: Optional[str] = None,
                      arch: Optional[str] = None) -> List[Tuple[str, LibraryArtifact]]:
    """
    Lists ``(label, artifact)`` for every file this platform needs.

    Libraries whose rules deny the platform are left out. For an allowed
    library the main artifact comes first, then its native classifier
    for this platform, if it has one.
    """
    os_name = os_name or rules.current_platform()
    arch = arch or rules.current_arch()
    result = []
    for lib in descriptor.libraries:
        if not rules.evaluate(lib.rules, os_name):
            log.debug(f"Skipping library due to rules: {lib.name}")
            continue
        if lib.artifact is not None and lib.artifact.url:
            result.append((lib.name, lib.artifact))
        native = lib.native_for(os_name, arch)
        if native is not None and native[1].url:
            classifier, artifact = native
            result.append((f"{lib.name}:{classifier}", artifact))
    return result


class VersionResolver:
    """Installs versions below one game root, fetching through ``fetcher``."""

    def __init__(self, paths: Paths, fetcher: ContentFetcher, sink: Optional[EventSink] = None,
                 catalog_url: str = CATALOG_URL):
        self.paths = paths
        self.fetcher = fetcher
        self.sink = sink or NullSink()
        self.catalog_url = catalog_url
        self._catalog: Optional[VersionCatalog] = None
        self._locks: Dict[str, asyncio.Lock] = {}

    def _log(self, message: str) -> None:
        log.info(message)
        events.emit(self.sink, events.INSTALL_LOG, message)

    def _lock_for(self, version_id: str) -> asyncio.Lock:
        return self._locks.setdefault(version_id, asyncio.Lock())

    def is_installed(self, version_id: str) -> bool:
        return self.paths.version_json(version_id).exists()

    # --- Descriptors ---

    async def fetch_catalog(self) -> VersionCatalog:
        if self._catalog is None:
            data = await self.fetcher.fetch_json(self.catalog_url)
            try:
                self._catalog = VersionCatalog.model_validate(data)
            except ValidationError as e:
                raise SchemaError(f"Invalid version catalog from {self.catalog_url}: {e}") from e
        return self._catalog

    async def load_descriptor(self, version_id: str) -> Optional[VersionDescriptor]:
        """The descriptor stored on disk for ``version_id``, None when there is none."""
        path = self.paths.version_json(version_id)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            text = await f.read()
        return parse_descriptor(text, path)

    async def download_descriptor(self, version_id: str) -> VersionDescriptor:
        catalog = await self.fetch_catalog()
        entry = catalog.find(version_id)
        if entry is None:
            raise SchemaError(f"Version {version_id} not found in catalog")

        self._log(f"Downloading descriptor of {version_id}")
        body = await self.fetcher.fetch_bytes(entry.url)
        if entry.sha1:
            digest = hashlib.sha1(body).hexdigest()
            if digest != entry.sha1.lower():
                raise IntegrityError(f"SHA1 mismatch for {version_id}.json. Expected {entry.sha1}, got {digest}")
        descriptor = parse_descriptor(body.decode('utf-8'), entry.url)

        path = self.paths.version_json(version_id)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, 'wb') as f:
            await f.write(body)
        return descriptor

    async def resolve(self, version_id: str) -> VersionDescriptor:
        """
        Returns the descriptor of ``version_id`` merged with its base.

        Descriptors are read from disk when present and downloaded from the
        catalog otherwise. A derived version whose base isn't installed gets
        the base installed first.
        """
        descriptor = await self.load_descriptor(version_id)
        if descriptor is None:
            descriptor = await self.download_descriptor(version_id)
        if not descriptor.is_derived:
            return descriptor

        base_id = descriptor.inherits_from
        base = await self.load_descriptor(base_id)
        if base is None:
            self._log(f"Base version {base_id} of {version_id} is missing, installing it first")
            base = await self.ensure_installed(base_id)
        if base.is_derived:
            raise SchemaError(f"Version {version_id} inherits from {base_id}, which is itself derived")
        return merge(descriptor, base)

    # --- Materialization ---

    async def _shares_base_client(self, descriptor: VersionDescriptor) -> bool:
        """True unless the derived layer ships a client jar of its own."""
        client = descriptor.client_download
        if client is None:
            return True
        base = await self.load_descriptor(descriptor.inherits_from)
        return base is not None and base.client_download is not None and base.client_download.url == client.url

    async def install_client_jar(self, version_id: str, descriptor: VersionDescriptor) -> None:
        target = self.paths.client_jar(version_id)
        client = descriptor.client_download
        if await is_present(target, client.size if client else None):
            log.debug(f"Client jar {target} already present.")
            return
        await aiofiles.os.makedirs(target.parent, exist_ok=True)

        if descriptor.is_derived and await self._shares_base_client(descriptor):
            base_jar = self.paths.client_jar(descriptor.inherits_from)
            if await is_present(base_jar, client.size if client else None):
                log.info(f"Copying {base_jar.name} to {target}")
                await asyncio.get_running_loop().run_in_executor(None, shutil.copyfile, base_jar, target)
                return

        if client is None:
            raise SchemaError(f"Version {version_id} has no client download")
        self._log(f"Downloading client jar of {version_id}")
        await self.fetcher.fetch_to(client.url, target, client.sha1 or None, client.size or None)

    async def install_libraries(self, descriptor: VersionDescriptor, os_name: Optional[str] = None,
                                arch: Optional[str] = None) -> int:
        """Downloads the missing library files, returns how many were fetched."""
        pending = []
        for label, artifact in library_downloads(descriptor, os_name, arch):
            dest = self.paths.library(artifact.path)
            if not await is_present(dest, artifact.size):
                pending.append((label, artifact, dest))
        if not pending:
            log.debug(f"All libraries of {descriptor.id} present.")
            return 0

        self._log(f"Downloading {len(pending)} library files of {descriptor.id}")
        limit = asyncio.Semaphore(self.fetcher.concurrency)

        async def fetch_one(label: str, artifact: LibraryArtifact, dest) -> None:
            async with limit:
                log.debug(f"Library {label}")
                await self.fetcher.fetch_to(artifact.url, dest, artifact.sha1 or None, artifact.size or None)

        await asyncio.gather(*(fetch_one(*item) for item in pending))
        return len(pending)

    async def install_assets(self, descriptor: VersionDescriptor) -> FetchStats:
        ref = descriptor.asset_index_ref
        if ref is None:
            raise SchemaError(f"Version {descriptor.id} has no asset index")

        index_path = self.paths.asset_index(ref.id)
        if not await is_present(index_path, ref.size):
            self._log(f"Downloading asset index {ref.id}")
            await self.fetcher.fetch_to(ref.url, index_path, ref.sha1 or None, ref.size or None)

        async with aiofiles.open(index_path, 'r', encoding='utf-8') as f:
            text = await f.read()
        try:
            index = AssetIndex.model_validate_json(text)
        except ValidationError as e:
            raise SchemaError(f"Invalid asset index {index_path}: {e}") from e

        objects = index.unique_objects()
        log.info(f"Checking {len(objects)} asset objects listed in index {ref.id}...")
        return await self.fetcher.fetch_asset_set(objects, self.paths.asset_objects, self.sink)

    async def materialize(self, version_id: str, descriptor: VersionDescriptor) -> None:
        # Order matters: the classpath assumes all three exist.
        await self.install_client_jar(version_id, descriptor)
        await self.install_libraries(descriptor)
        await self.install_assets(descriptor)

    async def ensure_installed(self, version_id: str) -> VersionDescriptor:
        """Installs ``version_id`` if needed and returns its resolved descriptor."""
        async with self._lock_for(version_id):
            descriptor = await self.resolve(version_id)
            await self.materialize(version_id, descriptor)
            self._log(f"Version {version_id} installed")
            return descriptor
