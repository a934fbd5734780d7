"""
Content-addressed artifact cache.

Layout is `<root>/<algorithm>/<hash[:2]>/<hash>`: the location of an artifact
depends only on its content hash, never on where it was downloaded from, so
identical bytes referenced by several versions are stored once. Writers always
go through a temporary sibling file that is renamed into place after
verification, which keeps concurrent (even cross-process) readers from ever
seeing a half-written artifact.
"""
import asyncio
import contextlib
import hashlib
import logging
import pathlib
import secrets
from typing import Dict, List, Optional

import aiofiles
import aiofiles.os

from errors import IntegrityError

log = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
TEMP_SUFFIX = '.part'


def new_hasher(algorithm: str):
    try:
        return hashlib.new(algorithm)
    except ValueError as e:
        raise IntegrityError(f"Unsupported hash algorithm: {algorithm}", algorithm=algorithm) from e


async def hash_file(file_path: pathlib.Path, algorithm: str = 'sha1') -> str:
    """Calculates the hash of a file asynchronously."""
    hasher = new_hasher(algorithm)
    async with aiofiles.open(file_path, 'rb') as f:
        while True:
            chunk = await f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


class PathClaims:
    """
    One lock per cache path, shared by every fetch running in this process.

    Entries only live while someone holds or waits for them, so the table does
    not grow with the cache and no lock outlives the event loop that used it.
    """

    def __init__(self):
        self._entries: Dict[str, List] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @contextlib.asynccontextmanager
    async def claim(self, path: pathlib.Path):
        key = str(path)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]


CLAIMS = PathClaims()


class ArtifactCache:
    def __init__(self, root, claims: Optional[PathClaims] = None):
        self.root = pathlib.Path(root)
        self.claims = claims if claims is not None else CLAIMS

    def path_for(self, digest: str, algorithm: str = 'sha1') -> pathlib.Path:
        digest = digest.lower()
        if len(digest) < 3 or not all(c in '0123456789abcdef' for c in digest):
            raise IntegrityError(f"Invalid {algorithm} digest: {digest!r}", expected=digest, algorithm=algorithm)
        return self.root / algorithm / digest[:2] / digest

    def temp_path(self, target: pathlib.Path) -> pathlib.Path:
        return target.with_name(f"{target.name}.{secrets.token_hex(4)}{TEMP_SUFFIX}")

    def claim(self, target: pathlib.Path):
        return self.claims.claim(target)

    async def is_valid(self, target: pathlib.Path, digest: str, algorithm: str = 'sha1',
                       size: Optional[int] = None) -> bool:
        """True if `target` exists and matches the expected size and hash."""
        try:
            stats = await aiofiles.os.stat(target)
        except OSError:
            return False
        if size is not None and stats.st_size != size:
            log.warning(f"Size mismatch for cached file {target.name}. Expected {size}, got {stats.st_size}. Redownloading.")
            return False
        try:
            current = await hash_file(target, algorithm)
        except OSError as e:
            log.warning(f"Could not hash cached file {target}. Redownloading. Error: {e}")
            return False
        if current != digest.lower():
            log.warning(f"{algorithm} mismatch for cached file {target.name}. Expected {digest}, got {current}. Redownloading.")
            return False
        return True

    async def evict(self, target: pathlib.Path) -> None:
        """Removes a cached file that failed verification."""
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            return
        log.info(f"Removed invalid cached file {target}")

    async def promote(self, temp: pathlib.Path, target: pathlib.Path) -> None:
        await aiofiles.os.replace(temp, target)

    async def discard(self, temp: pathlib.Path) -> None:
        try:
            if await aiofiles.os.path.exists(temp):
                await aiofiles.os.remove(temp)
        except OSError as e:
            log.warning(f"Could not delete temporary file {temp}: {e}")
