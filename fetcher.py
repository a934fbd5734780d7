"""
Fetch & verify engine.

Artifacts are planned into one DownloadTask per cache path, then a fixed pool of
worker tasks drains the task queue and reports outcomes on a result queue. Each
task either hits the cache, or streams its bytes into a temporary file that is
hashed on the fly and only renamed to the final path once verified.
"""
import asyncio
import contextlib
import logging
import pathlib
from collections.abc import Mapping
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import aiofiles
import aiofiles.os
import aiohttp

from cache import ArtifactCache, new_hasher
from errors import FetchCancelled, IntegrityError, LauncherError, NetworkError
from manifest import AssetEntry
from progress import (ArtifactDoneEvent, ArtifactFailedEvent, Cancellation, FetchStartEvent, Observer,
                      ProgressEvent, notify)
from resolver import ResolvedArtifact

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 8
DEFAULT_TIMEOUT = 60
CHUNK_SIZE = 8192


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient network failures."""
    attempts: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class DownloadTask:
    artifact_id: str
    url: str
    path: pathlib.Path
    digest: str
    algorithm: str = 'sha1'
    size: Optional[int] = None
    attempts: int = 3


@dataclass(frozen=True)
class FetchFailure:
    artifact_id: str
    url: str
    error: Exception


class LocalArtifactSet(Mapping):
    """Artifact id -> verified local path, in the order artifacts were requested."""

    def __init__(self, paths: Optional[Dict[str, pathlib.Path]] = None):
        self._paths: Dict[str, pathlib.Path] = dict(paths or {})

    def __getitem__(self, artifact_id: str) -> pathlib.Path:
        return self._paths[artifact_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    def __repr__(self) -> str:
        return f"LocalArtifactSet({len(self)} artifacts)"

    def merged(self, other: 'LocalArtifactSet') -> 'LocalArtifactSet':
        paths = dict(self._paths)
        paths.update(other._paths)
        return LocalArtifactSet(paths)


@dataclass(frozen=True)
class FetchResult:
    artifacts: LocalArtifactSet
    failures: Tuple[FetchFailure, ...] = ()
    cancelled: Optional[FetchCancelled] = None
    downloaded: int = 0
    cached: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures and self.cancelled is None


# --- Fetchers ---

class Fetcher:
    """
    Remote GET capability injected into the engine.

    Implementations yield the body in chunks and raise NetworkError on failure,
    with `transient=True` for anything worth retrying. `read` retries those per
    `retry`; `stream` never retries, the engine does that per artifact.
    """
    retry = RetryPolicy()

    def stream(self, url: str) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def _read_once(self, url: str) -> bytes:
        chunks = []
        async with contextlib.aclosing(self.stream(url)) as stream:
            async for chunk in stream:
                chunks.append(chunk)
        return b''.join(chunks)

    async def read(self, url: str) -> bytes:
        for attempt in range(1, self.retry.attempts + 1):
            try:
                return await self._read_once(url)
            except NetworkError as e:
                if not e.transient or attempt >= self.retry.attempts:
                    raise
                delay = self.retry.delay(attempt)
                log.warning(f"Attempt {attempt}/{self.retry.attempts} for {url} failed: {e}. Retrying in {delay:.1f}s.")
                await asyncio.sleep(delay)
        raise NetworkError(f"No attempts made for {url}", url=url, transient=False)

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class AiohttpFetcher(Fetcher):

    def __init__(self, session: Optional[aiohttp.ClientSession] = None, timeout: float = DEFAULT_TIMEOUT,
                 chunk_size: int = CHUNK_SIZE, retry: Optional[RetryPolicy] = None):
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout
        self.chunk_size = chunk_size
        if retry is not None:
            self.retry = retry

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, sock_read=self.timeout,
                                                                                 sock_connect=self.timeout))
            self._owns_session = True
        return self._session

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        session = await self.get_session()
        try:
            async with session.get(url) as response:
                if not response.ok:
                    transient = response.status >= 500 or response.status == 429
                    raise NetworkError(f"Failed to download {url}: {response.status} {response.reason}",
                                       url=url, status=response.status, transient=transient)
                async for chunk in response.content.iter_chunked(self.chunk_size):
                    yield chunk
        except aiohttp.InvalidURL as e:
            raise NetworkError(f"Invalid URL {url}: {e}", url=url, transient=False) from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Error downloading {url}: {e!r}", url=url) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


# --- Engine ---

@dataclass
class _Outcome:
    task: DownloadTask
    cached: bool = False
    error: Optional[Exception] = None
    skipped: bool = False


class _Aborted(Exception):
    pass


Artifact = Union[ResolvedArtifact, AssetEntry]


def describe_artifact(artifact: Artifact) -> Tuple[str, str, str, str, Optional[int]]:
    """(artifact id, url, digest, algorithm, size) of a resolved artifact or asset."""
    if isinstance(artifact, ResolvedArtifact):
        download = artifact.download
        return artifact.id, download.url, download.digest, download.algorithm, download.size
    if isinstance(artifact, AssetEntry):
        return f"asset:{artifact.path}", artifact.url, artifact.digest, artifact.algorithm, artifact.size
    raise TypeError(f"Cannot fetch {artifact!r}")


class FetchEngine:
    """
    Downloads and verifies artifacts into an ArtifactCache.

    Args:
        fetcher: Injected remote GET capability.
        cache: Content-addressed cache to populate.
        workers: Size of the worker pool.
        retry: Backoff policy for transient network errors.
        observer: Receives progress events; never awaited.
        abort_in_flight: On cancellation, also abort transfers already running
                         instead of letting them finish.
    """

    def __init__(self, fetcher: Fetcher, cache: ArtifactCache, workers: int = DEFAULT_WORKERS,
                 retry: RetryPolicy = RetryPolicy(), observer: Optional[Observer] = None,
                 abort_in_flight: bool = False):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.fetcher = fetcher
        self.cache = cache
        self.workers = workers
        self.retry = retry
        self.observer = observer
        self.abort_in_flight = abort_in_flight

    def plan(self, artifacts: Sequence[Artifact]) -> Tuple[List[DownloadTask], List[Tuple[str, pathlib.Path]], List[FetchFailure]]:
        """One task per distinct cache path, plus the artifact id -> path aliases in request order."""
        tasks: Dict[pathlib.Path, DownloadTask] = {}
        aliases: List[Tuple[str, pathlib.Path]] = []
        rejected: List[FetchFailure] = []
        for artifact in artifacts:
            artifact_id, url, digest, algorithm, size = describe_artifact(artifact)
            try:
                path = self.cache.path_for(digest, algorithm)
            except IntegrityError as e:
                rejected.append(FetchFailure(artifact_id, url, e))
                continue
            aliases.append((artifact_id, path))
            if path not in tasks:
                tasks[path] = DownloadTask(artifact_id, url, path, digest.lower(), algorithm, size, self.retry.attempts)
        return list(tasks.values()), aliases, rejected

    async def materialize(self, artifacts: Sequence[Artifact], cancellation: Optional[Cancellation] = None) -> FetchResult:
        cancellation = cancellation or Cancellation()
        tasks, aliases, rejected = self.plan(artifacts)
        notify(self.observer, FetchStartEvent(len(tasks), sum(task.size or 0 for task in tasks)))
        log.info(f"Checking {len(tasks)} artifacts with {min(self.workers, len(tasks))} workers...")

        outcomes: Dict[pathlib.Path, _Outcome] = {}
        if tasks:
            queue: asyncio.Queue = asyncio.Queue()
            results: asyncio.Queue = asyncio.Queue()
            for task in tasks:
                queue.put_nowait(task)
            worker_count = min(self.workers, len(tasks))
            for _ in range(worker_count):
                queue.put_nowait(None)
            workers = [asyncio.create_task(self._worker(queue, results, cancellation)) for _ in range(worker_count)]
            try:
                for _ in range(len(tasks)):
                    outcome = await results.get()
                    outcomes[outcome.task.path] = outcome
            finally:
                for worker in workers:
                    if not worker.done():
                        worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        paths: Dict[str, pathlib.Path] = {}
        failures: List[FetchFailure] = list(rejected)
        skipped = 0
        for artifact_id, path in aliases:
            outcome = outcomes.get(path)
            if outcome is None or outcome.skipped:
                skipped += 1
            elif outcome.error is not None:
                failures.append(FetchFailure(artifact_id, outcome.task.url, outcome.error))
            else:
                paths[artifact_id] = path

        cancelled = None
        if cancellation.cancelled and skipped:
            cancelled = FetchCancelled(f"Fetching cancelled with {skipped} artifacts not transferred")
            log.warning(str(cancelled))
        downloaded = sum(1 for o in outcomes.values() if not o.skipped and o.error is None and not o.cached)
        cached = sum(1 for o in outcomes.values() if not o.skipped and o.error is None and o.cached)
        if failures:
            log.error(f"{len(failures)} artifacts could not be fetched.")
        log.info(f"Artifact check complete: {downloaded} downloaded, {cached} already cached.")
        return FetchResult(LocalArtifactSet(paths), tuple(failures), cancelled, downloaded, cached)

    async def _worker(self, queue: asyncio.Queue, results: asyncio.Queue, cancellation: Cancellation) -> None:
        while True:
            task = await queue.get()
            if task is None:
                return
            if cancellation.cancelled:
                await results.put(_Outcome(task, skipped=True))
                continue
            await results.put(await self._run(task, cancellation))

    async def _run(self, task: DownloadTask, cancellation: Cancellation) -> _Outcome:
        try:
            if self.abort_in_flight:
                cached = await self._abortable(self._fetch(task), cancellation)
            else:
                cached = await self._fetch(task)
        except _Aborted:
            log.info(f"Transfer of {task.artifact_id} aborted.")
            return _Outcome(task, skipped=True)
        except (LauncherError, OSError) as error:
            log.error(f"Error fetching {task.artifact_id} from {task.url}: {error}")
            notify(self.observer, ArtifactFailedEvent(task.artifact_id, error))
            return _Outcome(task, error=error)
        except Exception as error:
            log.exception(f"Unexpected error fetching {task.artifact_id}")
            notify(self.observer, ArtifactFailedEvent(task.artifact_id, error))
            return _Outcome(task, error=error)
        notify(self.observer, ArtifactDoneEvent(task.artifact_id, task.path, cached, task.size or 0))
        return _Outcome(task, cached=cached)

    async def _abortable(self, coro, cancellation: Cancellation) -> bool:
        transfer = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancellation.wait())
        try:
            done, _ = await asyncio.wait({transfer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if transfer in done:
            return transfer.result()
        transfer.cancel()
        await asyncio.gather(transfer, return_exceptions=True)
        raise _Aborted()

    async def _fetch(self, task: DownloadTask) -> bool:
        """Makes `task.path` hold verified bytes. Returns True on a cache hit."""
        async with self.cache.claim(task.path):
            if await self.cache.is_valid(task.path, task.digest, task.algorithm, task.size):
                log.debug(f"Cache hit for {task.artifact_id}")
                return True
            await self.cache.evict(task.path)
            await aiofiles.os.makedirs(task.path.parent, exist_ok=True)
            for attempt in range(1, task.attempts + 1):
                try:
                    await self._transfer(task)
                    return False
                except NetworkError as e:
                    if not e.transient or attempt >= task.attempts:
                        raise
                    delay = self.retry.delay(attempt)
                    log.warning(f"Attempt {attempt}/{task.attempts} for {task.artifact_id} failed: {e}. "
                                f"Retrying in {delay:.1f}s.")
                    await asyncio.sleep(delay)
        return False

    async def _transfer(self, task: DownloadTask) -> None:
        temp = self.cache.temp_path(task.path)
        hasher = new_hasher(task.algorithm)
        transferred = 0
        try:
            async with aiofiles.open(temp, 'wb') as f:
                async with contextlib.aclosing(self.fetcher.stream(task.url)) as chunks:
                    async for chunk in chunks:
                        transferred += len(chunk)
                        if task.size is not None and transferred > task.size:
                            raise IntegrityError(f"{task.artifact_id} is larger than the declared {task.size} bytes",
                                                 expected=str(task.size), actual=str(transferred), algorithm='size')
                        hasher.update(chunk)
                        await f.write(chunk)
                        notify(self.observer, ProgressEvent(task.artifact_id, transferred, task.size))
            if task.size is not None and transferred != task.size:
                raise IntegrityError(f"Size mismatch for {task.artifact_id}. Expected {task.size}, got {transferred}",
                                     expected=str(task.size), actual=str(transferred), algorithm='size')
            actual = hasher.hexdigest()
            if actual != task.digest:
                raise IntegrityError(f"{task.algorithm} mismatch for {task.artifact_id}. Expected {task.digest}, got {actual}",
                                     expected=task.digest, actual=actual, algorithm=task.algorithm)
            await self.cache.promote(temp, task.path)
        finally:
            await self.cache.discard(temp)


async def materialize(artifacts: Sequence[Artifact], cache_root, fetcher: Fetcher,
                      cancellation: Optional[Cancellation] = None, **options) -> FetchResult:
    """Fetches and verifies `artifacts` into the cache at `cache_root`."""
    engine = FetchEngine(fetcher, ArtifactCache(cache_root), **options)
    return await engine.materialize(artifacts, cancellation)
