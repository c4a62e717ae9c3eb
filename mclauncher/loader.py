"""
Installing component loaders (Fabric, Quilt) on top of a base version.

A loader is published as a *profile*, a partial version descriptor that
inherits from the base game version. Installing one means fetching the
profile (falling back to the loader's version catalog when the requested
loader version doesn't exist), mapping it to a descriptor stored under the
derived id ``<type>-loader-<loader version>-<base version>`` and installing
that like any other version.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from . import events
from .errors import BaseMismatchError, InstallError, LoaderError, LoaderNetworkError, NetworkError, SchemaError
from .events import EventSink
from .models import (DownloadSpec, LibraryArtifact, LibraryDownloads, LibraryRef, LoaderType,
                     StrictVersionDescriptor, VersionDescriptor, VersionDownloads, derived_version_id,
                     iter_library_names)
from .versions import VersionResolver

log = logging.getLogger(__name__)

PROFILE_URLS = {
    LoaderType.FABRIC: 'https://meta.fabricmc.net/v2/versions/loader/{base}/{version}/profile/json',
    LoaderType.QUILT: 'https://meta.quiltmc.org/v3/versions/loader/{base}/{version}/profile/json',
}
CATALOG_URLS = {
    LoaderType.FABRIC: 'https://meta.fabricmc.net/v2/versions/loader/{base}',
    LoaderType.QUILT: 'https://meta.quiltmc.org/v3/versions/loader/{base}',
}
PRERELEASE_MARKERS = ('beta', 'alpha', 'rc', 'pre', 'preview')
MISSING_VERSION_MARKER = 'no loader'


# --- Helper Functions ---

def parse_loader_type(value: Any) -> LoaderType:
    if isinstance(value, LoaderType):
        return value
    try:
        return LoaderType(str(value).lower())
    except ValueError:
        raise LoaderError(f"Unsupported loader type: {value}") from None


def profile_url(loader_type: LoaderType, base_version_id: str, loader_version: str) -> str:
    return PROFILE_URLS[loader_type].format(base=base_version_id, version=quote(loader_version, safe=''))


def catalog_url(loader_type: LoaderType, base_version_id: str) -> str:
    return CATALOG_URLS[loader_type].format(base=base_version_id)


def looks_prerelease(version: str) -> bool:
    lowered = version.lower()
    return '-' in version or any(marker in lowered for marker in PRERELEASE_MARKERS)


def is_missing_version(error: NetworkError) -> bool:
    """True for the 4xx the meta servers answer when a loader version doesn't exist."""
    if error.status is None or not 400 <= error.status < 500:
        return False
    return MISSING_VERSION_MARKER in (error.body or str(error)).lower()


def maven_coords_to_path(coords: str) -> Optional[str]:
    """
    Converts maven coordinates to a repository path.

    ``net.fabricmc:fabric-loader:0.16.9`` becomes
    ``net/fabricmc/fabric-loader/0.16.9/fabric-loader-0.16.9.jar``. A fourth
    component is a classifier, an ``@ext`` suffix replaces the extension.
    """
    coords, _, extension = coords.partition('@')
    parts = coords.split(':')
    if len(parts) not in (3, 4) or not all(parts):
        return None
    group, artifact, version = parts[:3]
    classifier = f"-{parts[3]}" if len(parts) == 4 else ''
    return f"{group.replace('.', '/')}/{artifact}/{version}/{artifact}-{version}{classifier}.{extension or 'jar'}"


@dataclass
class LoaderCandidate:
    version: str
    stable: bool


def parse_loader_catalog(data: Any) -> List[LoaderCandidate]:
    """Reads a loader catalog listing, in the order the server returned it."""
    if not isinstance(data, list):
        raise SchemaError(f"unexpected loader list response: {str(data)[:200]}")
    candidates = []
    for item in data:
        if not isinstance(item, dict):
            continue
        loader_obj = item.get('loader') if isinstance(item.get('loader'), dict) else {}
        version = item.get('version') or item.get('id') or loader_obj.get('version')
        if not isinstance(version, str):
            continue
        # Fabric flags stability on the nested loader object.
        stable = loader_obj.get('stable')
        if not isinstance(stable, bool):
            stable = item.get('stable')
        if not isinstance(stable, bool):
            stable = not looks_prerelease(version)
        candidates.append(LoaderCandidate(version, stable))
    return candidates


def select_candidate(requested: str, candidates: List[LoaderCandidate]) -> Optional[str]:
    """
    Picks the loader version to use instead of a missing ``requested`` one.

    An exact match wins, then a version starting with the requested one
    (build metadata after ``+`` ignored), then the first stable version,
    then whatever comes first.
    """
    if not candidates:
        return None
    for candidate in candidates:
        if candidate.version == requested:
            return candidate.version
    prefix = requested.split('+', 1)[0]
    if prefix:
        for candidate in candidates:
            if candidate.version.startswith(prefix):
                return candidate.version
    stable = [candidate for candidate in candidates if candidate.stable]
    return (stable or candidates)[0].version


# --- Profile mapping ---

def map_profile_strict(profile: Dict[str, Any], derived_id: str, base_version_id: str) -> VersionDescriptor:
    """Direct mapping of a profile that already is a complete descriptor.

    Raises ``ValidationError`` when it isn't.
    """
    descriptor = StrictVersionDescriptor.model_validate(profile)
    return descriptor.model_copy(update={'id': derived_id, 'inherits_from': base_version_id})


def library_from_profile(entry: Dict[str, Any]) -> Optional[LibraryRef]:
    name = entry.get('name')
    if not isinstance(name, str):
        return None

    artifact = None
    downloads = entry.get('downloads')
    if isinstance(downloads, dict) and isinstance(downloads.get('artifact'), dict):
        try:
            artifact = LibraryArtifact.model_validate(downloads['artifact'])
        except ValidationError as e:
            log.debug(f"Ignoring malformed artifact of {name}: {e}")
    elif isinstance(entry.get('url'), str):
        path = maven_coords_to_path(name)
        if path is not None:
            repository = entry['url'].rstrip('/')
            # Repository entries may come without sha1 or size.
            artifact = LibraryArtifact(path=path, url=f"{repository}/{path}",
                                       sha1=entry.get('sha1') or '', size=entry.get('size') or 0)
    return LibraryRef(name=name, downloads=LibraryDownloads(artifact=artifact))


def _client_from_profile(profile: Dict[str, Any]) -> Optional[DownloadSpec]:
    downloads = profile.get('downloads')
    client = downloads.get('client') if isinstance(downloads, dict) else None
    if not isinstance(client, dict) or not all(key in client for key in ('url', 'sha1', 'size')):
        return None
    try:
        return DownloadSpec.model_validate(client)
    except ValidationError:
        return None


def map_profile_fallback(profile: Dict[str, Any], base: VersionDescriptor,
                         derived_id: str, base_version_id: str) -> VersionDescriptor:
    """
    Builds a descriptor from the base version plus what the profile adds.

    Used when the profile isn't a complete descriptor on its own, which is
    the usual case for Fabric and Quilt: their libraries are bare maven
    coordinates and they carry no client download or asset index.
    """
    libraries = list(base.libraries)
    for entry in profile.get('libraries') or []:
        if isinstance(entry, dict):
            lib = library_from_profile(entry)
            if lib is not None:
                libraries.append(lib)

    main_class = profile.get('mainClass')
    return VersionDescriptor(
        id=derived_id,
        inherits_from=base_version_id,
        type=profile.get('type') or 'release',
        release_time=profile.get('releaseTime'),
        entry_point=main_class if isinstance(main_class, str) else base.entry_point,
        libraries=libraries,
        downloads=VersionDownloads(client=_client_from_profile(profile) or base.client_download),
        asset_index_ref=base.asset_index_ref,
        java_version=base.java_version,
    )


class LoaderResolver:
    """Installs loader profiles, delegating the actual installation to ``versions``."""

    def __init__(self, versions: VersionResolver, sink: Optional[EventSink] = None):
        self.versions = versions
        self.fetcher = versions.fetcher
        self.paths = versions.paths
        self.sink = sink or versions.sink

    def _log(self, message: str) -> None:
        log.info(message)
        events.emit(self.sink, events.LOADER_INSTALL_LOG, message)

    def _progress(self, loader_type: LoaderType, base_version_id: str, stage: str, **extra: Any) -> None:
        payload = {"loaderType": loader_type.value, "baseVersion": base_version_id, "stage": stage}
        payload.update(extra)
        events.emit(self.sink, events.LOADER_INSTALL_PROGRESS, payload)

    def is_loader_installed(self, loader_type: Any, base_version_id: str, loader_version: str) -> bool:
        derived_id = derived_version_id(parse_loader_type(loader_type), loader_version, base_version_id)
        return self.versions.is_installed(derived_id)

    async def fetch_loader_catalog(self, loader_type: LoaderType, base_version_id: str) -> List[LoaderCandidate]:
        return parse_loader_catalog(await self.fetcher.fetch_json(catalog_url(loader_type, base_version_id)))

    async def list_loader_versions(self, loader_type: Any, base_version_id: str,
                                   include_beta: bool = False) -> List[str]:
        """Loader versions for a base version, stable ones first.

        Pre-releases are only listed when asked for, or when there is no
        stable version at all.
        """
        loader_type = parse_loader_type(loader_type)
        try:
            candidates = await self.fetch_loader_catalog(loader_type, base_version_id)
        except InstallError as e:
            raise LoaderNetworkError(f"Could not list {loader_type.value} versions for {base_version_id}: {e}") from e
        stable = [candidate.version for candidate in candidates if candidate.stable]
        beta = [candidate.version for candidate in candidates if not candidate.stable]
        if include_beta or not stable:
            return stable + beta
        return stable

    async def _fetch_profile(self, loader_type: LoaderType, base_version_id: str,
                             requested: str) -> Tuple[Any, str]:
        """Returns the profile body and the loader version it belongs to."""
        try:
            return await self.fetcher.fetch_json(profile_url(loader_type, base_version_id, requested)), requested
        except NetworkError as e:
            if not is_missing_version(e):
                raise LoaderNetworkError(str(e)) from e
            original = e
        except InstallError as e:
            raise LoaderNetworkError(str(e)) from e

        self._log(f"Loader version {requested} not found for {base_version_id}, trying to resolve from list")
        try:
            candidates = await self.fetch_loader_catalog(loader_type, base_version_id)
        except InstallError as e:
            raise LoaderNetworkError(str(original)) from e
        effective = select_candidate(requested, candidates)
        if effective is None:
            raise LoaderNetworkError(str(original)) from original

        self._log(f"Using {loader_type.value} loader {effective} instead of {requested}")
        try:
            return await self.fetcher.fetch_json(profile_url(loader_type, base_version_id, effective)), effective
        except InstallError as e:
            raise LoaderNetworkError(str(original)) from e

    def _check_fabric_loader(self, descriptor: VersionDescriptor) -> None:
        if not any(name.startswith('net.fabricmc:fabric-loader:') for name in iter_library_names(descriptor.libraries)):
            log.warning(f"Profile {descriptor.id} carries no net.fabricmc:fabric-loader library, "
                        f"the game will most likely start without Fabric.")

    async def _write_descriptor(self, descriptor: VersionDescriptor) -> None:
        path = self.paths.version_json(descriptor.id)
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(path, 'w', encoding='utf-8') as f:
            await f.write(descriptor.to_json())
        log.info(f"Wrote {path}")

    async def install_loader(self, loader_type: Any, base_version_id: str,
                             requested_version: str) -> Tuple[str, str]:
        """
        Installs a loader on top of ``base_version_id``.

        Returns ``(derived_id, effective_version)``; the effective version
        differs from the requested one when the requested version didn't
        exist and another was picked from the loader's catalog.
        """
        loader_type = parse_loader_type(loader_type)
        requested_id = derived_version_id(loader_type, requested_version, base_version_id)
        if self.versions.is_installed(requested_id):
            log.info(f"{requested_id} is already installed.")
            await self.versions.ensure_installed(requested_id)
            return requested_id, requested_version

        self._log(f"Installing {loader_type.value} loader {requested_version} for {base_version_id}")
        self._progress(loader_type, base_version_id, "profile", version=requested_version)
        profile, effective = await self._fetch_profile(loader_type, base_version_id, requested_version)
        if not isinstance(profile, dict):
            raise SchemaError(f"Loader profile for {base_version_id} is not a JSON object")

        found = profile.get('inheritsFrom') or profile.get('baseVersion')
        if found != base_version_id:
            raise BaseMismatchError(base_version_id, found)

        derived_id = derived_version_id(loader_type, effective, base_version_id)
        if self.versions.is_installed(derived_id):
            log.info(f"{derived_id} is already installed.")
            return derived_id, effective

        try:
            descriptor = map_profile_strict(profile, derived_id, base_version_id)
        except ValidationError:
            log.info(f"Profile {derived_id} is not a complete descriptor, merging it onto {base_version_id}.")
            base = await self.versions.ensure_installed(base_version_id)
            descriptor = map_profile_fallback(profile, base, derived_id, base_version_id)
        if loader_type == LoaderType.FABRIC:
            self._check_fabric_loader(descriptor)

        await self._write_descriptor(descriptor)
        self._progress(loader_type, base_version_id, "install", version=effective)
        await self.versions.ensure_installed(derived_id)
        self._progress(loader_type, base_version_id, "done", version=effective)
        self._log(f"Installed {derived_id}")
        return derived_id, effective
