"""Progress events, observers and the cancellation trigger."""
import asyncio
import logging
import pathlib
from dataclasses import dataclass
from typing import List, Optional

from tqdm.asyncio import tqdm

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateEvent:
    version_id: str
    state: str


@dataclass(frozen=True)
class FetchStartEvent:
    artifacts: int
    total_bytes: int


@dataclass(frozen=True)
class ProgressEvent:
    artifact_id: str
    transferred: int
    total: Optional[int]


@dataclass(frozen=True)
class ArtifactDoneEvent:
    artifact_id: str
    path: pathlib.Path
    cached: bool
    size: int


@dataclass(frozen=True)
class ArtifactFailedEvent:
    artifact_id: str
    error: Exception


class Observer:
    """Base class for whoever watches a preparation. Must not block."""

    def handle(self, event) -> None:
        pass


class ObserverGroup(Observer):

    def __init__(self, *observers: Observer):
        self.observers: List[Observer] = list(observers)

    def add(self, observer: Observer) -> None:
        self.observers.append(observer)

    def handle(self, event) -> None:
        for observer in self.observers:
            observer.handle(event)


def notify(observer: Optional[Observer], event) -> None:
    """Delivers an event; a failing observer is logged and never breaks the engine."""
    if observer is None:
        return
    try:
        observer.handle(event)
    except Exception:
        log.exception(f"Observer {observer!r} failed handling {type(event).__name__}")


class TqdmObserver(Observer):
    """Shows fetching progress as a tqdm byte counter."""

    def __init__(self, desc: str = 'Artifacts', leave: bool = False, **tqdm_kwargs):
        self.desc = desc
        self.leave = leave
        self.tqdm_kwargs = tqdm_kwargs
        self.pbar: Optional[tqdm] = None
        self._seen = {}

    def handle(self, event) -> None:
        if isinstance(event, FetchStartEvent):
            self.close()
            self._seen = {}
            self.pbar = tqdm(total=event.total_bytes, desc=self.desc, unit='B', unit_scale=True,
                             leave=self.leave, **self.tqdm_kwargs)
        elif self.pbar is None:
            return
        elif isinstance(event, ProgressEvent):
            previous = self._seen.get(event.artifact_id, 0)
            self._seen[event.artifact_id] = event.transferred
            self.pbar.update(max(event.transferred - previous, 0))
        elif isinstance(event, ArtifactDoneEvent) and event.cached:
            self.pbar.update(event.size)
        elif isinstance(event, ArtifactFailedEvent):
            self.pbar.write(f"Failed: {event.artifact_id}: {event.error}")

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None


class Cancellation:
    """
    Cooperative cancellation trigger.

    Workers look at it between two artifacts; `wait()` lets in-flight transfers
    be aborted when the caller asks for it.
    """

    def __init__(self):
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()
