"""
Typed, immutable representation of version manifests and asset indexes.

Raw JSON documents are validated with pydantic models mirroring the manifest
format, then converted into frozen dataclasses the rest of the engine works on.
"""
import enum
import hashlib
import json
import logging
import pathlib
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple, Union

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, ValidationError

from errors import ManifestError, VersionNotFoundError

log = logging.getLogger(__name__)

VERSION_MANIFEST_URL = 'https://piston-meta.mojang.com/mc/game/version_manifest_v2.json'
RESOURCES_URL = 'https://resources.download.minecraft.net'
MAX_PARENT_DEPTH = 16


# --- Raw document schema ---

class _Document(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)


class RawOs(_Document):
    name: Optional[str] = None
    version: Optional[str] = None
    arch: Optional[str] = None


class RawRule(_Document):
    action: Literal['allow', 'disallow', 'deny']
    os: Optional[RawOs] = None
    features: Dict[str, bool] = {}


class RawArgument(_Document):
    value: Union[str, List[str]]
    rules: List[RawRule] = []


class RawArguments(_Document):
    game: List[Union[str, RawArgument]] = []
    jvm: List[Union[str, RawArgument]] = []


class RawResource(_Document):
    url: str
    sha1: str
    size: Optional[int] = None
    path: Optional[str] = None


class RawLibraryDownloads(_Document):
    artifact: Optional[RawResource] = None
    classifiers: Dict[str, RawResource] = {}


class RawExtract(_Document):
    exclude: List[str] = []


class RawLibrary(_Document):
    name: str
    downloads: Optional[RawLibraryDownloads] = None
    url: Optional[str] = None
    sha1: Optional[str] = None
    size: Optional[int] = None
    natives: Dict[str, str] = {}
    extract: Optional[RawExtract] = None
    rules: List[RawRule] = []


class RawAssetIndex(_Document):
    id: str
    url: str
    sha1: str
    size: Optional[int] = None
    totalSize: Optional[int] = None


class RawDownloads(_Document):
    client: Optional[RawResource] = None
    server: Optional[RawResource] = None


class RawJavaVersion(_Document):
    component: Optional[str] = None
    majorVersion: int


class RawLoggingFile(_Document):
    id: str
    url: str
    sha1: str
    size: Optional[int] = None


class RawLoggerDescription(_Document):
    argument: str
    type: Optional[str] = None
    file: RawLoggingFile


class RawLogging(_Document):
    client: Optional[RawLoggerDescription] = None


class RawVersion(_Document):
    id: str
    inheritsFrom: Optional[str] = None
    type: Optional[str] = None
    mainClass: Optional[str] = None
    libraries: List[RawLibrary] = []
    arguments: Optional[RawArguments] = None
    minecraftArguments: Optional[str] = None
    assetIndex: Optional[RawAssetIndex] = None
    assets: Optional[str] = None
    downloads: Optional[RawDownloads] = None
    javaVersion: Optional[RawJavaVersion] = None
    logging: Optional[RawLogging] = None


class RawAssetObject(_Document):
    hash: str
    size: int


class RawAssetIndexDocument(_Document):
    objects: Dict[str, RawAssetObject]
    virtual: bool = False
    map_to_resources: bool = False


# --- Model ---

class RuleAction(enum.Enum):
    ALLOW = 'allow'
    DENY = 'deny'


@dataclass(frozen=True)
class Rule:
    action: RuleAction
    os_name: Optional[str] = None
    os_version: Optional[str] = None
    arch: Optional[str] = None
    features: Tuple[Tuple[str, bool], ...] = ()


@dataclass(frozen=True)
class Download:
    url: str
    digest: str
    algorithm: str = 'sha1'
    size: Optional[int] = None
    path: Optional[str] = None


@dataclass(frozen=True)
class Coordinate:
    """Maven coordinate `group:name:version[:classifier][@extension]`."""
    group: str
    name: str
    version: str
    classifier: Optional[str] = None
    extension: str = 'jar'

    @classmethod
    def parse(cls, value: str) -> 'Coordinate':
        extension = 'jar'
        if '@' in value:
            value, extension = value.split('@', 1)
        parts = value.split(':')
        if len(parts) not in (3, 4) or not all(parts):
            raise ManifestError(f"Invalid library coordinate: {value!r}")
        classifier = parts[3] if len(parts) == 4 else None
        return cls(parts[0], parts[1], parts[2], classifier, extension)

    @property
    def key(self) -> Tuple[str, str, Optional[str]]:
        """Identity used for duplicate resolution, version excluded."""
        return (self.group, self.name, self.classifier)

    def with_classifier(self, classifier: Optional[str]) -> 'Coordinate':
        return replace(self, classifier=classifier)

    def maven_path(self) -> str:
        filename = f"{self.name}-{self.version}"
        if self.classifier:
            filename += f"-{self.classifier}"
        return f"{self.group.replace('.', '/')}/{self.name}/{self.version}/{filename}.{self.extension}"

    def __str__(self) -> str:
        text = f"{self.group}:{self.name}:{self.version}"
        if self.classifier:
            text += f":{self.classifier}"
        if self.extension != 'jar':
            text += f"@{self.extension}"
        return text


@dataclass(frozen=True)
class LibraryRef:
    coordinate: Coordinate
    artifact: Optional[Download] = None
    classifiers: Tuple[Tuple[str, Download], ...] = ()
    natives: Tuple[Tuple[str, str], ...] = ()
    extract_exclude: Tuple[str, ...] = ()
    rules: Tuple[Rule, ...] = ()

    @property
    def name(self) -> str:
        return str(self.coordinate)

    def classifier(self, name: str) -> Optional[Download]:
        return dict(self.classifiers).get(name)

    def native_classifier(self, os_name: str) -> Optional[str]:
        return dict(self.natives).get(os_name)


@dataclass(frozen=True)
class Argument:
    """One argument template entry: a value (or several) gated by rules."""
    values: Tuple[str, ...]
    rules: Tuple[Rule, ...] = ()


@dataclass(frozen=True)
class AssetIndexRef:
    id: str
    download: Download
    total_size: Optional[int] = None


@dataclass(frozen=True)
class LoggingConfig:
    argument: str
    id: str
    download: Download


@dataclass(frozen=True)
class VersionDescriptor:
    id: str
    parent_id: Optional[str] = None
    main_class: Optional[str] = None
    libraries: Tuple[LibraryRef, ...] = ()
    asset_index: Optional[AssetIndexRef] = None
    jvm_arguments: Tuple[Argument, ...] = ()
    game_arguments: Tuple[Argument, ...] = ()
    legacy_arguments: Optional[Tuple[str, ...]] = None
    version_type: Optional[str] = None
    assets: Optional[str] = None
    client: Optional[Download] = None
    java_major: Optional[int] = None
    logging: Optional[LoggingConfig] = None
    lineage: Tuple[str, ...] = field(default=())

    @property
    def assets_id(self) -> Optional[str]:
        if self.asset_index is not None:
            return self.asset_index.id
        return self.assets


@dataclass(frozen=True)
class AssetEntry:
    path: str
    digest: str
    size: int
    url: str
    algorithm: str = 'sha1'


@dataclass(frozen=True)
class AssetIndex:
    id: str
    entries: Tuple[AssetEntry, ...]
    virtual: bool = False
    map_to_resources: bool = False


# --- Parsing ---

def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = '/'.join(str(part) for part in first['loc'])
    return f"{location}: {first['msg']}"


def _rule(raw: RawRule) -> Rule:
    action = RuleAction.ALLOW if raw.action == 'allow' else RuleAction.DENY
    os_desc = raw.os or RawOs()
    return Rule(
        action=action,
        os_name=os_desc.name,
        os_version=os_desc.version,
        arch=os_desc.arch,
        features=tuple(sorted(raw.features.items())),
    )


def _download(raw: RawResource) -> Optional[Download]:
    if not raw.url:
        # Installer-generated entries carry an empty URL; nothing to fetch.
        return None
    return Download(url=raw.url, digest=raw.sha1.lower(), size=raw.size, path=raw.path)


def _library(raw: RawLibrary) -> LibraryRef:
    coordinate = Coordinate.parse(raw.name)
    artifact = None
    classifiers: List[Tuple[str, Download]] = []
    if raw.downloads is not None:
        if raw.downloads.artifact is not None:
            artifact = _download(raw.downloads.artifact)
        for name, resource in sorted(raw.downloads.classifiers.items()):
            download = _download(resource)
            if download is not None:
                classifiers.append((name, download))
    elif raw.url and raw.sha1:
        # Maven repository style entry: base url + coordinate path.
        path = coordinate.maven_path()
        artifact = Download(url=raw.url.rstrip('/') + '/' + path, digest=raw.sha1.lower(), size=raw.size, path=path)
    return LibraryRef(
        coordinate=coordinate,
        artifact=artifact,
        classifiers=tuple(classifiers),
        natives=tuple(sorted(raw.natives.items())),
        extract_exclude=tuple(raw.extract.exclude) if raw.extract else (),
        rules=tuple(_rule(rule) for rule in raw.rules),
    )


def _arguments(entries: Iterable[Union[str, RawArgument]]) -> Tuple[Argument, ...]:
    parsed = []
    for entry in entries:
        if isinstance(entry, str):
            parsed.append(Argument(values=(entry,)))
        else:
            values = (entry.value,) if isinstance(entry.value, str) else tuple(entry.value)
            parsed.append(Argument(values=values, rules=tuple(_rule(rule) for rule in entry.rules)))
    return tuple(parsed)


def parse_version(document: Mapping[str, Any]) -> VersionDescriptor:
    """Parses a single version document, without resolving its parent."""
    if not isinstance(document, Mapping):
        raise ManifestError(f"Version manifest must be a JSON object, got {type(document).__name__}")
    try:
        raw = RawVersion.model_validate(dict(document))
    except ValidationError as e:
        version_id = document.get('id', '<unknown>')
        raise ManifestError(f"Malformed manifest for version {version_id}: {_describe(e)}") from e

    asset_index = None
    if raw.assetIndex is not None:
        asset_index = AssetIndexRef(
            id=raw.assetIndex.id,
            download=Download(url=raw.assetIndex.url, digest=raw.assetIndex.sha1.lower(), size=raw.assetIndex.size),
            total_size=raw.assetIndex.totalSize,
        )

    logging_config = None
    if raw.logging is not None and raw.logging.client is not None:
        client_log = raw.logging.client
        logging_config = LoggingConfig(
            argument=client_log.argument,
            id=client_log.file.id,
            download=Download(url=client_log.file.url, digest=client_log.file.sha1.lower(), size=client_log.file.size),
        )

    client = None
    if raw.downloads is not None and raw.downloads.client is not None:
        client = _download(raw.downloads.client)

    arguments = raw.arguments or RawArguments()
    return VersionDescriptor(
        id=raw.id,
        parent_id=raw.inheritsFrom,
        main_class=raw.mainClass,
        libraries=tuple(_library(lib) for lib in raw.libraries),
        asset_index=asset_index,
        jvm_arguments=_arguments(arguments.jvm),
        game_arguments=_arguments(arguments.game),
        legacy_arguments=tuple(raw.minecraftArguments.split()) if raw.minecraftArguments is not None else None,
        version_type=raw.type,
        assets=raw.assets,
        client=client,
        java_major=raw.javaVersion.majorVersion if raw.javaVersion else None,
        logging=logging_config,
        lineage=(raw.id,),
    )


def parse_asset_index(index_id: str, document: Mapping[str, Any], origin: str = RESOURCES_URL) -> AssetIndex:
    """Parses an asset index document; entries are ordered by logical path."""
    try:
        raw = RawAssetIndexDocument.model_validate(dict(document))
    except (ValidationError, TypeError, ValueError) as e:
        detail = _describe(e) if isinstance(e, ValidationError) else str(e)
        raise ManifestError(f"Malformed asset index {index_id}: {detail}") from e
    origin = origin.rstrip('/')
    entries = tuple(
        AssetEntry(path=path, digest=obj.hash.lower(), size=obj.size,
                   url=f"{origin}/{obj.hash.lower()[:2]}/{obj.hash.lower()}")
        for path, obj in sorted(raw.objects.items())
    )
    return AssetIndex(id=index_id, entries=entries, virtual=raw.virtual, map_to_resources=raw.map_to_resources)


# --- Inheritance ---

def _merge_pair(parent: VersionDescriptor, child: VersionDescriptor) -> VersionDescriptor:
    """Merges two version descriptors (child inheriting from parent)."""
    log.debug(f"Merging manifests: {child.id} inheriting from {parent.id}")

    # Keyed by full coordinate so a child entry replaces the parent's in place.
    libraries: Dict[str, LibraryRef] = {}
    for lib in parent.libraries:
        libraries[lib.name] = lib
    for lib in child.libraries:
        libraries[lib.name] = lib

    legacy = child.legacy_arguments if child.legacy_arguments is not None else parent.legacy_arguments
    return VersionDescriptor(
        id=child.id,
        parent_id=child.parent_id,
        main_class=child.main_class or parent.main_class,
        libraries=tuple(libraries.values()),
        asset_index=child.asset_index or parent.asset_index,
        jvm_arguments=parent.jvm_arguments + child.jvm_arguments,
        game_arguments=parent.game_arguments + child.game_arguments,
        legacy_arguments=legacy,
        version_type=child.version_type or parent.version_type,
        assets=child.assets or parent.assets,
        client=child.client or parent.client,
        java_major=child.java_major or parent.java_major,
        logging=child.logging or parent.logging,
        lineage=parent.lineage + child.lineage,
    )


def merge_versions(chain: Sequence[VersionDescriptor]) -> VersionDescriptor:
    """Flattens a child-first inheritance chain into a single descriptor."""
    if not chain:
        raise ManifestError("Cannot merge an empty version chain")
    merged = chain[-1]
    for child in reversed(chain[:-1]):
        merged = _merge_pair(merged, child)
    if not merged.main_class:
        raise ManifestError(f"Version {merged.id} has no mainClass in its inheritance chain")
    return merged


def _next_in_chain(descriptor: VersionDescriptor, visited: List[str], max_depth: int) -> Optional[str]:
    parent_id = descriptor.parent_id
    if parent_id is None:
        return None
    if parent_id in visited:
        cycle = ' -> '.join(visited + [parent_id])
        raise ManifestError(f"Cyclic version inheritance: {cycle}")
    if len(visited) >= max_depth:
        raise ManifestError(f"Version {visited[0]} has more than {max_depth} parents")
    return parent_id


def load_version_from(documents: Mapping[str, Mapping[str, Any]], version_id: str,
                      max_depth: int = MAX_PARENT_DEPTH) -> VersionDescriptor:
    """Resolves a version and its parents from already loaded documents."""
    chain: List[VersionDescriptor] = []
    visited: List[str] = []
    current: Optional[str] = version_id
    while current is not None:
        if current not in documents:
            raise VersionNotFoundError(current)
        descriptor = parse_version(documents[current])
        visited.append(current)
        chain.append(descriptor)
        current = _next_in_chain(descriptor, visited, max_depth)
    return merge_versions(chain)


async def load_version(source: 'ManifestSource', version_id: str,
                       max_depth: int = MAX_PARENT_DEPTH) -> VersionDescriptor:
    """Loads a version and walks its parent chain through a manifest source."""
    chain: List[VersionDescriptor] = []
    visited: List[str] = []
    current: Optional[str] = version_id
    while current is not None:
        document = await source.load(current)
        descriptor = parse_version(document)
        visited.append(current)
        chain.append(descriptor)
        current = _next_in_chain(descriptor, visited, max_depth)
    if len(chain) > 1:
        log.info(f"Version {version_id} inherits from {' -> '.join(visited[1:])}")
    return merge_versions(chain)


# --- Sources ---

class ManifestSource:
    """Something that can hand out raw version documents by id."""

    async def load(self, version_id: str) -> Dict[str, Any]:
        raise NotImplementedError


class DirectoryManifestSource(ManifestSource):
    """Reads `<dir>/<id>/<id>.json`, falling back to `<dir>/<id>.json`."""

    def __init__(self, versions_dir):
        self.versions_dir = pathlib.Path(versions_dir)

    async def load(self, version_id: str) -> Dict[str, Any]:
        candidates = [
            self.versions_dir / version_id / f"{version_id}.json",
            self.versions_dir / f"{version_id}.json",
        ]
        for file_path in candidates:
            if not await aiofiles.os.path.isfile(file_path):
                continue
            log.info(f"Loading manifest: {file_path}")
            async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
                content = await f.read()
            try:
                return json.loads(content)
            except json.JSONDecodeError as e:
                raise ManifestError(f"Invalid JSON in manifest {file_path}: {e}") from e
        raise VersionNotFoundError(version_id)


class RemoteManifestSource(ManifestSource):
    """
    Resolves ids through the remote version list, then downloads the version document.

    Args:
        fetcher: Object with an async `read(url) -> bytes` (see fetcher.Fetcher).
        url: Version list location.
        save_dir: If given, fetched documents are also written to
                  `<save_dir>/<id>/<id>.json` so a DirectoryManifestSource finds them later.
    """

    def __init__(self, fetcher, url: str = VERSION_MANIFEST_URL, save_dir=None):
        self.fetcher = fetcher
        self.url = url
        self.save_dir = pathlib.Path(save_dir) if save_dir is not None else None
        self._versions: Optional[Dict[str, Dict[str, Any]]] = None

    async def _version_list(self) -> Dict[str, Dict[str, Any]]:
        if self._versions is None:
            document = _decode(await self.fetcher.read(self.url), self.url)
            versions = document.get('versions') if isinstance(document, dict) else None
            if not isinstance(versions, list):
                raise ManifestError(f"Version list at {self.url} has no 'versions' array")
            self._versions = {entry['id']: entry for entry in versions if isinstance(entry, dict) and 'id' in entry}
            log.info(f"Version list contains {len(self._versions)} versions")
        return self._versions

    async def load(self, version_id: str) -> Dict[str, Any]:
        versions = await self._version_list()
        entry = versions.get(version_id)
        if entry is None or 'url' not in entry:
            raise VersionNotFoundError(version_id)
        data = await self.fetcher.read(entry['url'])
        expected_sha1 = entry.get('sha1')
        if expected_sha1:
            actual = hashlib.sha1(data).hexdigest()
            if actual != expected_sha1.lower():
                raise ManifestError(f"SHA1 mismatch for version document {version_id}. Expected {expected_sha1}, got {actual}")
        document = _decode(data, entry['url'])
        if self.save_dir is not None:
            version_dir = self.save_dir / version_id
            await aiofiles.os.makedirs(version_dir, exist_ok=True)
            async with aiofiles.open(version_dir / f"{version_id}.json", 'wb') as f:
                await f.write(data)
        return document


class ChainedManifestSource(ManifestSource):
    """Tries each source in order; the first one knowing the version wins."""

    def __init__(self, *sources: ManifestSource):
        self.sources = sources

    async def load(self, version_id: str) -> Dict[str, Any]:
        for source in self.sources:
            try:
                return await source.load(version_id)
            except VersionNotFoundError:
                continue
        raise VersionNotFoundError(version_id)


def _decode(data: bytes, origin: str) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(f"Invalid JSON from {origin}: {e}") from e
