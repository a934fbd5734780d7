import asyncio
import io
import logging
import os
import pathlib
import tarfile
import zipfile
from typing import Optional

import aiofiles.os

from errors import JavaInstallError
from runtime import RuntimeContext

log = logging.getLogger(__name__)

# --- Configuration ---
ADOPTIUM_API_BASE = 'https://api.adoptium.net/v3'
DEFAULT_JAVA_VERSION = 17
DEFAULT_IMAGE_TYPE = 'jre'

ADOPTIUM_OS = {'windows': 'windows', 'osx': 'mac', 'linux': 'linux'}
ADOPTIUM_ARCH = {'x86_64': 'x64', 'x86': 'x32', 'arm64': 'aarch64', 'arm32': 'arm'}


# --- Helper Functions ---

def adoptium_url(major: int, os_name: str, arch: str, image_type: str = DEFAULT_IMAGE_TYPE,
                 jvm_impl: str = 'hotspot', vendor: str = 'eclipse') -> str:
    """Maps a runtime context's os/arch to the Adoptium 'latest binary' endpoint."""
    api_os = ADOPTIUM_OS.get(os_name)
    api_arch = ADOPTIUM_ARCH.get(arch)
    if api_os is None or api_arch is None:
        raise JavaInstallError(f"No Adoptium build for {os_name}-{arch}")
    return f"{ADOPTIUM_API_BASE}/binary/latest/{major}/ga/{api_os}/{api_arch}/{image_type}/{jvm_impl}/normal/{vendor}"


def _executable_in(base: pathlib.Path, os_name: str) -> pathlib.Path:
    if os_name == 'windows':
        return base / 'bin' / 'java.exe'
    elif os_name == 'osx':
        return base / 'Contents' / 'Home' / 'bin' / 'java'
    return base / 'bin' / 'java'


async def find_java_executable(directory: pathlib.Path, os_name: str) -> Optional[pathlib.Path]:
    """
    Finds the Java executable inside an extracted runtime.

    Archives usually unpack to a single top-level folder, so the first
    subdirectory is checked before `directory` itself.
    """
    directory = pathlib.Path(directory)
    if not await aiofiles.os.path.isdir(directory):
        log.debug(f"[find_java_executable] Not a directory: {directory}")
        return None

    candidates = []
    try:
        with os.scandir(directory) as entries:
            subdirs = sorted(entry.path for entry in entries if entry.is_dir())
        if subdirs:
            candidates.append(pathlib.Path(subdirs[0]))
    except OSError as e:
        log.warning(f"[find_java_executable] Could not scan directory {directory}: {e}")
    candidates.append(directory)

    for base in candidates:
        java_path = _executable_in(base, os_name)
        if not await aiofiles.os.path.isfile(java_path):
            continue
        if os_name != 'windows' and not os.access(java_path, os.X_OK):
            log.warning(f"[find_java_executable] File found but not executable: {java_path}")
            continue
        log.info(f"[find_java_executable] Found Java executable: {java_path.resolve()}")
        return java_path.resolve()
    return None


# Function to run synchronous extraction in a separate thread
def _extract_zip(data: bytes, dest_path: pathlib.Path):
    with io.BytesIO(data) as zip_buffer:
        with zipfile.ZipFile(zip_buffer, 'r') as zip_ref:
            zip_ref.extractall(dest_path)


def _extract_tar(data: bytes, dest_path: pathlib.Path):
    with io.BytesIO(data) as tar_buffer:
        with tarfile.open(fileobj=tar_buffer, mode='r:gz') as tar_ref:
            tar_ref.extractall(path=dest_path, filter='data')


def archive_type(data: bytes) -> str:
    if data[:2] == b'PK':
        return 'zip'
    if data[:2] == b'\x1f\x8b':
        return 'tar.gz'
    raise JavaInstallError("Downloaded Java archive is neither a zip nor a gzip file")


# --- Main Exported Function ---

async def install_java(fetcher, major: int, destination: pathlib.Path, ctx: RuntimeContext,
                       image_type: str = DEFAULT_IMAGE_TYPE) -> pathlib.Path:
    """
    Downloads and extracts a Java runtime if `destination` does not hold one yet.

    Args:
        fetcher: The Fetcher used for every other download of the run.
        major: Major Java version (e.g. 8, 17, 21).
        destination: Directory the runtime is extracted into. An executable
                     already found there skips the download.
        ctx: Runtime context giving the target os and arch.
        image_type: 'jdk' or 'jre'.

    Returns:
        The absolute path to the Java executable.
    """
    destination = pathlib.Path(destination).resolve()
    existing = await find_java_executable(destination, ctx.os_name)
    if existing:
        log.info(f"Valid Java executable already found at: {existing}. Skipping download.")
        return existing

    url = adoptium_url(major, ctx.os_name, ctx.arch, image_type)
    log.info(f"Downloading Java {major} ({image_type}) for {ctx.os_name}-{ctx.arch} from {url}")
    data = await fetcher.read(url)
    kind = archive_type(data)

    await aiofiles.os.makedirs(destination, exist_ok=True)
    log.info(f"Extracting {kind} archive to {destination}...")
    loop = asyncio.get_running_loop()
    try:
        if kind == 'zip':
            await loop.run_in_executor(None, _extract_zip, data, destination)
        else:
            await loop.run_in_executor(None, _extract_tar, data, destination)
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise JavaInstallError(f"Could not extract Java archive: {e}") from e
    log.info('Extraction complete.')

    java_path = await find_java_executable(destination, ctx.os_name)
    if java_path is None:
        raise JavaInstallError(f"Java {major} was extracted to {destination} but no executable was found")
    return java_path
