"""
Typed views over the JSON documents the launcher reads and writes.

Version descriptors keep the upstream JSON key names as aliases so a
descriptor can be validated straight from a version JSON body and dumped
back with ``by_alias=True``. Unknown keys are ignored on the descriptor
side; instance records keep them so a save never drops fields owned by
someone else.
"""
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


# --- Rules ---

class RuleAction(str, Enum):
    ALLOW = "allow"
    DISALLOW = "disallow"


class OsRule(BaseModel):
    name: Optional[str] = None
    arch: Optional[str] = None
    version: Optional[str] = None


class Rule(BaseModel):
    action: RuleAction
    os: Optional[OsRule] = None


# --- Downloads ---

class DownloadSpec(BaseModel):
    """A single remote file. Empty sha1 / zero size mean "unknown"."""
    url: str
    sha1: str = ""
    size: int = 0


class LibraryArtifact(DownloadSpec):
    path: str


class LibraryDownloads(BaseModel):
    artifact: Optional[LibraryArtifact] = None
    classifiers: Dict[str, LibraryArtifact] = Field(default_factory=dict)


class LibraryRef(BaseModel):
    """One dependency of a version, optionally platform-conditional."""
    model_config = ConfigDict(extra="ignore")

    name: str
    downloads: LibraryDownloads = Field(default_factory=LibraryDownloads)
    natives: Dict[str, str] = Field(default_factory=dict)
    rules: List[Rule] = Field(default_factory=list)

    @property
    def artifact(self) -> Optional[LibraryArtifact]:
        return self.downloads.artifact

    def native_for(self, os_name: str, arch: str) -> Optional[Tuple[str, LibraryArtifact]]:
        """Returns ``(classifier, artifact)`` of the native jar for this platform, if any."""
        classifiers = self.downloads.classifiers
        if not classifiers:
            return None
        if os_name in self.natives:
            arch_bits = '64' if arch == 'x64' else ('32' if arch == 'x86' else arch)
            key = self.natives[os_name].replace('${arch}', arch_bits)
            if key in classifiers:
                return key, classifiers[key]
        for key in (f"natives-{os_name}-{arch}", f"natives-{os_name}"):
            if key in classifiers:
                return key, classifiers[key]
        return None


class StrictLibraryRef(LibraryRef):
    downloads: LibraryDownloads


class AssetIndexRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    url: str
    sha1: str = ""
    size: int = 0


class VersionDownloads(BaseModel):
    model_config = ConfigDict(extra="ignore")

    client: Optional[DownloadSpec] = None


class StrictVersionDownloads(VersionDownloads):
    client: DownloadSpec


class JavaVersion(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    component: Optional[str] = None
    major_version: int = Field(alias="majorVersion")


# --- Version descriptors ---

class VersionDescriptor(BaseModel):
    """
    One installable version, as found in ``versions/<id>/<id>.json``.

    A descriptor with ``inherits_from`` set is a derived layer; the fields
    it leaves out are taken from its base when the two are merged.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    inherits_from: Optional[str] = Field(default=None, alias="inheritsFrom")
    type: Optional[str] = None
    release_time: Optional[str] = Field(default=None, alias="releaseTime")
    entry_point: Optional[str] = Field(default=None, alias="mainClass")
    libraries: List[LibraryRef] = Field(default_factory=list)
    downloads: VersionDownloads = Field(default_factory=VersionDownloads)
    asset_index_ref: Optional[AssetIndexRef] = Field(default=None, alias="assetIndex")
    java_version: Optional[JavaVersion] = Field(default=None, alias="javaVersion")

    @property
    def is_derived(self) -> bool:
        return self.inherits_from is not None

    @property
    def client_download(self) -> Optional[DownloadSpec]:
        return self.downloads.client

    def to_json(self) -> str:
        """Pretty-printed JSON, upstream key names, ``None`` fields left out."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


class StrictVersionDescriptor(VersionDescriptor):
    """A descriptor complete enough to be installed on its own."""
    entry_point: str = Field(alias="mainClass")
    libraries: List[StrictLibraryRef] = Field(default_factory=list)
    downloads: StrictVersionDownloads
    asset_index_ref: AssetIndexRef = Field(alias="assetIndex")


# --- Catalog and assets ---

class CatalogEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    url: str
    type: Optional[str] = None
    release_time: Optional[str] = Field(default=None, alias="releaseTime")
    sha1: Optional[str] = None


class VersionCatalog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    latest: Dict[str, str] = Field(default_factory=dict)
    versions: List[CatalogEntry] = Field(default_factory=list)

    def find(self, version_id: str) -> Optional[CatalogEntry]:
        return next((entry for entry in self.versions if entry.id == version_id), None)


class AssetObject(BaseModel):
    hash: str
    size: int

    @property
    def shard(self) -> str:
        return self.hash[:2]


class AssetIndex(BaseModel):
    model_config = ConfigDict(extra="ignore")

    objects: Dict[str, AssetObject] = Field(default_factory=dict)

    def unique_objects(self) -> List[AssetObject]:
        """Objects deduplicated by hash, several names may share one file."""
        seen: Dict[str, AssetObject] = {}
        for obj in self.objects.values():
            seen.setdefault(obj.hash, obj)
        return list(seen.values())


# --- Loaders ---

class LoaderType(str, Enum):
    FABRIC = "fabric"
    QUILT = "quilt"


def derived_version_id(loader_type: str, loader_version: str, base_version_id: str) -> str:
    """Id of the version produced by installing a loader on top of a base version."""
    loader_name = loader_type.value if isinstance(loader_type, LoaderType) else loader_type
    return f"{loader_name}-loader-{loader_version}-{base_version_id}"


# --- Instances ---

class InstanceState(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


class InstanceRecord(BaseModel):
    """The persisted ``instances/<id>/instance.json`` record."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    version: str
    mc_version: Optional[str] = None
    state: InstanceState = InstanceState.NOT_INSTALLED
    created_at: int = 0
    last_played: Optional[int] = None
    java_path: Optional[str] = None
    java_path_override: Optional[str] = None
    min_memory: Optional[int] = None
    max_memory: Optional[int] = None
    java_args: Optional[str] = None
    java_warning_ignored: bool = False
    loader: Optional[str] = None
    loader_version: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def base_version(self) -> str:
        return self.mc_version or self.version

    def version_id(self) -> str:
        """The version to launch: the derived loader version when a loader is set."""
        if self.loader and self.loader_version:
            return derived_version_id(self.loader, self.loader_version, self.base_version)
        return self.version


def iter_library_names(libraries: List[LibraryRef]) -> Iterator[str]:
    return (lib.name for lib in libraries)
