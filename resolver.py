import enum
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from errors import ResolutionError
from manifest import AssetIndexRef, Download, LibraryRef, VersionDescriptor
from rules import OS_ALIASES, evaluate
from runtime import RuntimeContext

log = logging.getLogger(__name__)


class DuplicatePolicy(enum.Enum):
    """How two included libraries sharing group, name and classifier are settled."""
    HIGHEST_VERSION = 'highest-version'
    LAST_DECLARED = 'last-declared'


class ArtifactKind(enum.Enum):
    LIBRARY = 'library'
    NATIVE = 'native'
    CLIENT = 'client'
    ASSET_INDEX = 'asset-index'
    ASSET = 'asset'
    LOGGING = 'logging'


@dataclass(frozen=True)
class ResolvedArtifact:
    id: str
    kind: ArtifactKind
    download: Download
    extract_exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedSet:
    version_id: str
    libraries: Tuple[ResolvedArtifact, ...]
    natives: Tuple[ResolvedArtifact, ...]
    client: ResolvedArtifact
    asset_index: Optional[AssetIndexRef] = None
    logging: Optional[ResolvedArtifact] = None

    @property
    def asset_index_artifact(self) -> Optional[ResolvedArtifact]:
        if self.asset_index is None:
            return None
        return ResolvedArtifact(f"asset-index:{self.asset_index.id}", ArtifactKind.ASSET_INDEX, self.asset_index.download)

    def artifacts(self) -> Tuple[ResolvedArtifact, ...]:
        """Every artifact the version needs before assets, in a stable order."""
        extra = [a for a in (self.asset_index_artifact, self.logging) if a is not None]
        return self.libraries + self.natives + (self.client,) + tuple(extra)


# --- Version ordering ---

_QUALIFIERS = {
    'alpha': 0, 'a': 0,
    'beta': 1, 'b': 1,
    'milestone': 2, 'm': 2,
    'rc': 3, 'cr': 3, 'pre': 3,
    'snapshot': 4,
    '': 5, 'ga': 5, 'final': 5, 'release': 5,
    'sp': 6,
}
_RELEASE = 5

Token = Union[int, str]


def _tokens(version: str) -> List[Token]:
    return [int(t) if t.isdigit() else t.lower() for t in re.findall(r'\d+|[A-Za-z]+', version)]


def _compare_tokens(x: Optional[Token], y: Optional[Token]) -> int:
    if x is None:
        x = 0 if isinstance(y, int) else ''
    if y is None:
        y = 0 if isinstance(x, int) else ''
    if isinstance(x, int) and isinstance(y, int):
        return (x > y) - (x < y)
    if isinstance(x, int):
        return 1
    if isinstance(y, int):
        return -1
    qx, qy = _QUALIFIERS.get(x), _QUALIFIERS.get(y)
    if qx is not None and qy is not None:
        return (qx > qy) - (qx < qy)
    # Unknown qualifiers sort after known ones, among themselves alphabetically.
    if qx is not None:
        return -1
    if qy is not None:
        return 1
    return (x > y) - (x < y)


def compare_versions(a: str, b: str) -> int:
    """Maven-like comparison: -1 if a < b, 0 if equal, 1 if a > b."""
    left, right = _tokens(a), _tokens(b)
    for i in range(max(len(left), len(right))):
        x = left[i] if i < len(left) else None
        y = right[i] if i < len(right) else None
        result = _compare_tokens(x, y)
        if result:
            return result
    return 0


# --- Resolution steps ---

def deduplicate(libraries: Sequence[LibraryRef], policy: DuplicatePolicy = DuplicatePolicy.HIGHEST_VERSION) -> List[LibraryRef]:
    """
    Keeps one library per (group, name, classifier).

    The survivor takes the slot of the first occurrence so the classpath order
    stays parent-first whatever version wins.
    """
    positions: Dict[Tuple[str, str, Optional[str]], int] = {}
    chosen: List[LibraryRef] = []
    for lib in libraries:
        key = lib.coordinate.key
        if key not in positions:
            positions[key] = len(chosen)
            chosen.append(lib)
            continue
        index = positions[key]
        current = chosen[index]
        if policy is DuplicatePolicy.LAST_DECLARED:
            replace_current = True
        else:
            replace_current = compare_versions(lib.coordinate.version, current.coordinate.version) > 0
        if replace_current:
            log.debug(f"Library {lib.name} supersedes {current.name}")
            chosen[index] = lib
        else:
            log.debug(f"Library {lib.name} dropped in favour of {current.name}")
    return chosen


def select_native(lib: LibraryRef, ctx: RuntimeContext) -> Tuple[Optional[str], Optional[Download]]:
    """Picks the native classifier of a library matching the context's OS and arch."""
    os_names = OS_ALIASES.get(ctx.os_name, (ctx.os_name,))
    if lib.natives:
        raw_classifier = next((lib.native_classifier(name) for name in os_names if lib.native_classifier(name)), None)
        if raw_classifier is None:
            return None, None
        classifier = raw_classifier.replace('${arch}', ctx.pointer_width)
        download = lib.classifier(classifier)
        if download is None:
            raise ResolutionError(f"Library {lib.name} declares native classifier {classifier} "
                                  f"for {ctx.os_name} but provides no download for it")
        return classifier, download

    if lib.classifiers:
        candidates = []
        for name in os_names:
            candidates += [f"natives-{name}-{ctx.arch}", f"natives-{name}"]
        for key in candidates:
            download = lib.classifier(key)
            if download is not None:
                return key, download
    return None, None


def resolve(descriptor: VersionDescriptor, ctx: RuntimeContext,
            policy: DuplicatePolicy = DuplicatePolicy.HIGHEST_VERSION) -> ResolvedSet:
    """
    Turns a flattened version descriptor into the ordered set of artifacts it needs.

    Args:
        descriptor: Version with its inheritance chain already merged.
        ctx: Platform and features to evaluate rules against.
        policy: Duplicate coordinate policy.

    Returns:
        ResolvedSet with main jars, native archives, client jar, asset index and
        logging configuration. Same inputs always give the same ordering.
    """
    included = [lib for lib in descriptor.libraries if evaluate(lib.rules, ctx)]
    log.info(f"Resolving {descriptor.id}: {len(included)} of {len(descriptor.libraries)} libraries apply "
             f"to {ctx.os_name}/{ctx.arch}")

    libraries: List[ResolvedArtifact] = []
    natives: List[ResolvedArtifact] = []
    for lib in deduplicate(included, policy):
        classifier, native = select_native(lib, ctx)
        if lib.artifact is None and native is None:
            raise ResolutionError(f"No usable download for library {lib.name} on {ctx.os_name}/{ctx.arch}")
        if lib.artifact is not None:
            libraries.append(ResolvedArtifact(lib.name, ArtifactKind.LIBRARY, lib.artifact))
        if native is not None:
            natives.append(ResolvedArtifact(str(lib.coordinate.with_classifier(classifier)), ArtifactKind.NATIVE,
                                            native, lib.extract_exclude))

    if descriptor.client is None:
        raise ResolutionError(f"Version {descriptor.id} has no client jar download")
    client = ResolvedArtifact(f"client:{descriptor.id}", ArtifactKind.CLIENT, descriptor.client)

    logging_artifact = None
    if descriptor.logging is not None:
        logging_artifact = ResolvedArtifact(f"logging:{descriptor.logging.id}", ArtifactKind.LOGGING,
                                            descriptor.logging.download)

    return ResolvedSet(
        version_id=descriptor.id,
        libraries=tuple(libraries),
        natives=tuple(natives),
        client=client,
        asset_index=descriptor.asset_index,
        logging=logging_artifact,
    )
