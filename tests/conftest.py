import asyncio
import collections
import hashlib
import io
import json
import zipfile
from typing import Any, Dict, List, Optional

import pytest

from errors import NetworkError, VersionNotFoundError
from fetcher import Fetcher, RetryPolicy
from manifest import ManifestSource
from runtime import Account, RuntimeContext

BASE_URL = 'https://files.example.test'
ORIGIN = 'https://assets.example.test'
ASSETS = {'icons/icon.png': b'icon', 'sounds/a.ogg': b'sound', 'sounds/copy.ogg': b'sound'}


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


class FakeFetcher(Fetcher):
    """
    Serves canned bodies by URL and counts requests.

    A response may be bytes, an exception instance, or a list of those consumed
    one per request (the last one repeats). Unknown URLs fail with a 404.
    """
    retry = RetryPolicy(attempts=3, base_delay=0)

    def __init__(self, chunk_size: int = 4):
        self.responses: Dict[str, Any] = {}
        self.calls = collections.Counter()
        self.gates: Dict[str, asyncio.Event] = {}
        self.chunk_size = chunk_size

    def serve(self, name: str, data: bytes, **extra) -> Dict[str, Any]:
        """Registers `data` under `BASE_URL/name` and returns its manifest resource entry."""
        url = f"{BASE_URL}/{name}"
        self.responses[url] = data
        return dict(url=url, sha1=sha1(data), size=len(data), **extra)

    def requests(self) -> int:
        return sum(self.calls.values())

    def _next(self, url: str):
        response = self.responses.get(url)
        if isinstance(response, list):
            return response.pop(0) if len(response) > 1 else response[0]
        return response

    async def stream(self, url: str):
        self.calls[url] += 1
        response = self._next(url)
        if response is None:
            raise NetworkError(f"Failed to download {url}: 404 Not Found", url=url, status=404, transient=False)
        if isinstance(response, Exception):
            raise response
        gate = self.gates.get(url)
        if gate is not None:
            await gate.wait()
        for start in range(0, len(response), self.chunk_size):
            yield response[start:start + self.chunk_size]
            await asyncio.sleep(0)


class DictSource(ManifestSource):
    def __init__(self, documents: Dict[str, Dict[str, Any]]):
        self.documents = documents
        self.loads: List[str] = []

    async def load(self, version_id: str) -> Dict[str, Any]:
        self.loads.append(version_id)
        if version_id not in self.documents:
            raise VersionNotFoundError(version_id)
        return self.documents[version_id]


# --- Manifest builders ---

def os_rule(action: str = 'allow', name: Optional[str] = None, arch: Optional[str] = None,
            version: Optional[str] = None, features: Optional[Dict[str, bool]] = None) -> Dict[str, Any]:
    rule: Dict[str, Any] = {'action': action}
    os_desc = {key: value for key, value in (('name', name), ('arch', arch), ('version', version)) if value}
    if os_desc:
        rule['os'] = os_desc
    if features:
        rule['features'] = features
    return rule


def library(name: str, artifact: Optional[Dict[str, Any]] = None, rules=None, natives=None,
            classifiers=None, exclude=None) -> Dict[str, Any]:
    lib: Dict[str, Any] = {'name': name}
    downloads: Dict[str, Any] = {}
    if artifact is not None:
        downloads['artifact'] = artifact
    if classifiers:
        downloads['classifiers'] = classifiers
    if downloads:
        lib['downloads'] = downloads
    if rules is not None:
        lib['rules'] = rules
    if natives is not None:
        lib['natives'] = natives
    if exclude is not None:
        lib['extract'] = {'exclude': exclude}
    return lib


def resource(tag: str) -> Dict[str, Any]:
    """A download entry for content nobody needs to serve."""
    data = tag.encode()
    return {'url': f"{BASE_URL}/{tag}", 'sha1': sha1(data), 'size': len(data)}


def version_document(version_id: str, libraries=(), parent: Optional[str] = None,
                     main_class: Optional[str] = 'net.minecraft.client.main.Main', client=None,
                     asset_index=None, jvm=None, game=None, legacy: Optional[str] = None,
                     logging_file=None, java_major: Optional[int] = None) -> Dict[str, Any]:
    document: Dict[str, Any] = {'id': version_id, 'type': 'release', 'libraries': list(libraries)}
    if parent is not None:
        document['inheritsFrom'] = parent
    if main_class is not None:
        document['mainClass'] = main_class
    if client is not None:
        document['downloads'] = {'client': client}
    if asset_index is not None:
        document['assetIndex'] = asset_index
        document['assets'] = asset_index['id']
    if jvm is not None or game is not None:
        document['arguments'] = {'jvm': list(jvm or []), 'game': list(game or [])}
    if legacy is not None:
        document['minecraftArguments'] = legacy
    if logging_file is not None:
        document['logging'] = {'client': {'argument': '-Dlog4j.configurationFile=${path}', 'type': 'log4j2-xml',
                                          'file': logging_file}}
    if java_major is not None:
        document['javaVersion'] = {'component': 'java-runtime', 'majorVersion': java_major}
    return document


def zip_bytes(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


# --- Fixtures ---

def make_context(os_name: str, install_root, arch: str = 'x86_64', **kwargs) -> RuntimeContext:
    kwargs.setdefault('account', Account(player_name='Steve', uuid='1234', access_token='token'))
    return RuntimeContext(os_name=os_name, arch=arch, install_root=install_root, **kwargs)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def linux_ctx(tmp_path):
    return make_context('linux', tmp_path / 'game')


@pytest.fixture
def windows_ctx(tmp_path):
    return make_context('windows', tmp_path / 'game', os_version='10.0')


def serve_world(fetcher: FakeFetcher, libraries=None) -> DictSource:
    """Version 1.20 with two libraries, a client jar and a three-object asset index, all served by `fetcher`."""
    objects = {}
    for path, data in ASSETS.items():
        digest = sha1(data)
        objects[path] = {'hash': digest, 'size': len(data)}
        fetcher.responses[f"{ORIGIN}/{digest[:2]}/{digest}"] = data
    index = fetcher.serve('indexes/5.json', json.dumps({'objects': objects}).encode(), id='5')
    if libraries is None:
        libraries = [library('org:a:1.0', fetcher.serve('a.jar', b'a')), library('org:b:1.0', fetcher.serve('b.jar', b'b'))]
    document = version_document('1.20', client=fetcher.serve('client.jar', b'client'), asset_index=index,
                                libraries=libraries, jvm=['-cp', '${classpath}'],
                                game=['--assetsDir', '${assets_root}', '--assetIndex', '${assets_index_name}'])
    return DictSource({'1.20': document})
