"""
Drives one preparation run: resolve a version, fetch what it needs, compose the command.

States go IDLE -> RESOLVING -> FETCHING -> COMPOSING -> READY, and any failure
lands in FAILED with the error kept on the result. A run that fetched with
failures still composes, so the caller gets a partial LaunchSpec plus the list
of what is missing, and `retry_failed()` fetches only that list again.
"""
import asyncio
import enum
import json
import logging
import pathlib
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import aiofiles

from cache import ArtifactCache
from composer import LaunchSpec, compose, prepare_assets_root
from errors import FetchCancelled, LauncherError, ManifestError
from fetcher import (Artifact, DEFAULT_WORKERS, FetchEngine, Fetcher, FetchFailure, LocalArtifactSet, RetryPolicy,
                     describe_artifact)
from java import DEFAULT_JAVA_VERSION, install_java
from manifest import RESOURCES_URL, AssetIndex, ManifestSource, VersionDescriptor, load_version, parse_asset_index
from progress import Cancellation, Observer, StateEvent, notify
from resolver import DuplicatePolicy, ResolvedSet, resolve
from runtime import RuntimeContext

log = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = 'idle'
    RESOLVING = 'resolving'
    FETCHING = 'fetching'
    COMPOSING = 'composing'
    READY = 'ready'
    FAILED = 'failed'


@dataclass(frozen=True)
class PrepareResult:
    version_id: str
    state: State
    launch_spec: Optional[LaunchSpec]
    artifacts: LocalArtifactSet
    failures: Tuple[FetchFailure, ...] = ()
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        """Ready with every artifact present."""
        return self.state is State.READY and not self.failures

    @property
    def missing(self) -> List[str]:
        return [failure.artifact_id for failure in self.failures]


class Orchestrator:
    """
    Sequences manifest loading, resolution, fetching and composition.

    Args:
        source: Where version documents come from.
        fetcher: Remote GET capability shared by every download of the run.
        ctx: Runtime context; a Java path found or installed here replaces its `java_path`.
        cache_root: Content-addressed cache location. Defaults to `<install_root>/cache`.
        workers: Fetch worker pool size.
        retry: Backoff policy for transient network failures.
        policy: Duplicate library policy.
        observer: Receives state and progress events.
        abort_in_flight: Cancellation also aborts running transfers.
        java_dir: If set and `ctx.java_path` is not, a Java runtime matching the
                  version's major is installed under this directory.
        asset_origin: Base URL asset objects are downloaded from.
    """

    def __init__(self, source: ManifestSource, fetcher: Fetcher, ctx: RuntimeContext, cache_root=None,
                 workers: int = DEFAULT_WORKERS, retry: RetryPolicy = RetryPolicy(),
                 policy: DuplicatePolicy = DuplicatePolicy.HIGHEST_VERSION, observer: Optional[Observer] = None,
                 abort_in_flight: bool = False, java_dir=None, asset_origin: str = RESOURCES_URL):
        self.source = source
        self.fetcher = fetcher
        self.ctx = ctx
        self.cache = ArtifactCache(cache_root if cache_root is not None else ctx.install_root / 'cache')
        self.engine = FetchEngine(fetcher, self.cache, workers=workers, retry=retry, observer=observer,
                                  abort_in_flight=abort_in_flight)
        self.policy = policy
        self.observer = observer
        self.java_dir = pathlib.Path(java_dir) if java_dir is not None else None
        self.asset_origin = asset_origin

        self.state = State.IDLE
        self.error: Optional[Exception] = None
        self._busy = False
        self._reset(None)

    def _reset(self, version_id: Optional[str]) -> None:
        self.version_id = version_id
        self.error = None
        self.descriptor: Optional[VersionDescriptor] = None
        self.resolved: Optional[ResolvedSet] = None
        self.asset_index: Optional[AssetIndex] = None
        self._requested: Dict[str, Artifact] = {}
        self._artifacts = LocalArtifactSet()
        self._failures: Tuple[FetchFailure, ...] = ()

    def _set_state(self, state: State) -> None:
        self.state = state
        log.debug(f"{self.version_id}: {state.value}")
        notify(self.observer, StateEvent(self.version_id, state.value))

    def _result(self, launch_spec: Optional[LaunchSpec] = None) -> PrepareResult:
        return PrepareResult(self.version_id, self.state, launch_spec, self._artifacts, self._failures, self.error)

    def _fail(self, error: Exception) -> PrepareResult:
        self.error = error
        if isinstance(error, FetchCancelled):
            log.warning(f"Preparation of {self.version_id} cancelled: {error}")
        else:
            log.error(f"Preparation of {self.version_id} failed: {error}")
        self._set_state(State.FAILED)
        return self._result()

    @property
    def pending(self) -> List[Artifact]:
        """Requested artifacts that are not in the cache yet (failed or skipped)."""
        return [artifact for artifact_id, artifact in self._requested.items() if artifact_id not in self._artifacts]

    # --- Public API ---

    async def prepare(self, version_id: str, cancellation: Optional[Cancellation] = None) -> PrepareResult:
        """Runs a full preparation of `version_id`, starting over from IDLE."""
        if self._busy:
            raise RuntimeError("A preparation is already running on this orchestrator")
        self._busy = True
        try:
            self._reset(version_id)
            self._set_state(State.RESOLVING)
            try:
                self.descriptor = await load_version(self.source, version_id)
                self.resolved = resolve(self.descriptor, self.ctx, self.policy)
            except LauncherError as e:
                return self._fail(e)
            await self._ensure_java()
            return await self._synchronize(list(self.resolved.artifacts()), cancellation)
        finally:
            self._busy = False

    async def retry_failed(self, cancellation: Optional[Cancellation] = None) -> PrepareResult:
        """
        Fetches again only what the last run is missing, then composes again.

        Only a run that finished fetching can be retried. FAILED is terminal.
        """
        if self._busy:
            raise RuntimeError("A preparation is already running on this orchestrator")
        if self.resolved is None:
            raise RuntimeError("Nothing to retry: no version has been resolved yet")
        if self.state is State.FAILED:
            raise RuntimeError(f"Preparation of {self.version_id} failed; call prepare() to start over")
        self._busy = True
        try:
            pending = self.pending
            log.info(f"Retrying {len(pending)} artifacts for {self.version_id}")
            self.error = None
            return await self._synchronize(pending, cancellation)
        finally:
            self._busy = False

    # --- Stages ---

    async def _ensure_java(self) -> None:
        if self.ctx.java_path is not None or self.java_dir is None:
            return
        major = self.descriptor.java_major or DEFAULT_JAVA_VERSION
        try:
            java_path = await install_java(self.fetcher, major, self.java_dir / f"java-{major}", self.ctx)
        except LauncherError as e:
            log.error(f"Could not install Java {major}, falling back to 'java' on PATH: {e}")
            return
        self.ctx = replace(self.ctx, java_path=java_path)

    async def _synchronize(self, artifacts: Sequence[Artifact], cancellation: Optional[Cancellation]) -> PrepareResult:
        self._set_state(State.FETCHING)
        try:
            cancelled = await self._fetch_pass(artifacts, cancellation)
            if cancelled is None and self.asset_index is None:
                index_path = self._asset_index_path()
                if index_path is not None:
                    self.asset_index = await self._load_asset_index(index_path)
                    log.info(f"Asset index {self.asset_index.id} lists {len(self.asset_index.entries)} objects")
                    cancelled = await self._fetch_pass(self.asset_index.entries, cancellation)
        except LauncherError as e:
            return self._fail(e)
        if cancelled is not None:
            return self._fail(cancelled)
        if self._failures:
            log.warning(f"{len(self._failures)} artifacts of {self.version_id} are missing: "
                        f"{', '.join(f.artifact_id for f in self._failures[:5])}{'...' if len(self._failures) > 5 else ''}")

        self._set_state(State.COMPOSING)
        loop = asyncio.get_running_loop()
        try:
            launch_spec = await loop.run_in_executor(None, self._compose)
        except (LauncherError, OSError) as e:
            return self._fail(e)
        self._set_state(State.READY)
        return self._result(launch_spec)

    async def _fetch_pass(self, artifacts: Sequence[Artifact], cancellation: Optional[Cancellation]) -> Optional[FetchCancelled]:
        artifact_ids = set()
        for artifact in artifacts:
            artifact_id = describe_artifact(artifact)[0]
            artifact_ids.add(artifact_id)
            self._requested[artifact_id] = artifact
        result = await self.engine.materialize(artifacts, cancellation)
        self._artifacts = self._artifacts.merged(result.artifacts)
        kept = tuple(failure for failure in self._failures if failure.artifact_id not in artifact_ids)
        self._failures = kept + result.failures
        return result.cancelled

    def _asset_index_path(self) -> Optional[pathlib.Path]:
        index_artifact = self.resolved.asset_index_artifact
        if index_artifact is None:
            return None
        return self._artifacts.get(index_artifact.id)

    async def _load_asset_index(self, index_path: pathlib.Path) -> AssetIndex:
        index_id = self.resolved.asset_index.id
        async with aiofiles.open(index_path, 'r', encoding='utf-8') as f:
            content = await f.read()
        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Invalid JSON in asset index {index_id}: {e}") from e
        return parse_asset_index(index_id, document, self.asset_origin)

    def _compose(self) -> LaunchSpec:
        assets_root = self.ctx.install_root / 'assets'
        game_assets = None
        index_path = self._asset_index_path()
        if self.asset_index is not None and index_path is not None:
            available = [entry for entry in self.asset_index.entries if describe_artifact(entry)[0] in self._artifacts]
            game_assets = prepare_assets_root(assets_root, self.asset_index, index_path, self.cache, available)
        return compose(self.resolved, self._artifacts, self.descriptor, self.ctx, self.cache,
                       assets_root=assets_root, game_assets=game_assets)
