import filecmp
import logging
import os
import pathlib
import secrets
import shutil
import zipfile
import zlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from cache import ArtifactCache
from errors import CompositionError
from manifest import AssetEntry, AssetIndex, VersionDescriptor
from replacer import substitute, substitute_all
from resolver import ResolvedArtifact, ResolvedSet
from rules import applicable_values
from runtime import RuntimeContext

log = logging.getLogger(__name__)

# Versions predating the `arguments` object only describe game arguments.
LEGACY_JVM_ARGUMENTS = ('-Djava.library.path=${natives_directory}', '-cp', '${classpath}')


@dataclass(frozen=True)
class LaunchSpec:
    version_id: str
    main_class: str
    classpath: Tuple[pathlib.Path, ...]
    natives_dir: pathlib.Path
    jvm_arguments: Tuple[str, ...]
    game_arguments: Tuple[str, ...]
    working_dir: pathlib.Path
    java_path: Optional[pathlib.Path] = None

    @property
    def arguments(self) -> Tuple[str, ...]:
        return self.jvm_arguments + (self.main_class,) + self.game_arguments

    def command(self, java_path=None) -> List[str]:
        """Full argv, ready for the caller's process spawning code."""
        java = java_path or self.java_path or 'java'
        return [str(java), *self.arguments]


def classpath_separator(ctx: RuntimeContext) -> str:
    return ';' if ctx.os_name == 'windows' else ':'


def natives_directory(ctx: RuntimeContext, version_id: str) -> pathlib.Path:
    return ctx.install_root / 'natives' / version_id


def _local_path(artifact: ResolvedArtifact, artifacts: Mapping[str, pathlib.Path], cache: ArtifactCache) -> pathlib.Path:
    # Missing artifacts still get their deterministic cache location.
    path = artifacts.get(artifact.id)
    if path is None:
        path = cache.path_for(artifact.download.digest, artifact.download.algorithm)
    return path


def build_classpath(resolved: ResolvedSet, artifacts: Mapping[str, pathlib.Path], cache: ArtifactCache) -> Tuple[pathlib.Path, ...]:
    """Main jars in resolver order, client jar last, each path once."""
    entries: Dict[pathlib.Path, None] = {}
    for artifact in resolved.libraries + (resolved.client,):
        entries.setdefault(_local_path(artifact, artifacts, cache), None)
    return tuple(entries)


# --- Natives ---

def _safe_target(root: pathlib.Path, member_name: str) -> Optional[pathlib.Path]:
    parts = pathlib.PurePosixPath(member_name).parts
    if not parts or member_name.startswith('/') or '..' in parts or ':' in parts[0]:
        return None
    return root.joinpath(*parts)


def _is_current(target: pathlib.Path, member: zipfile.ZipInfo) -> bool:
    try:
        if target.stat().st_size != member.file_size:
            return False
    except OSError:
        return False
    crc = 0
    with open(target, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            crc = zlib.crc32(chunk, crc)
    return crc == member.CRC


def extract_natives(archive: pathlib.Path, natives_dir: pathlib.Path, exclude: Sequence[str] = ()) -> int:
    """
    Extracts native libraries from a jar into `natives_dir`.

    Members already present with the same size and CRC are left alone, so
    extracting twice into the same directory is a no-op. Returns how many files
    were written.
    """
    natives_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with zipfile.ZipFile(archive, 'r') as zip_ref:
            for member in zip_ref.infolist():
                # Skip directories and META-INF
                if member.is_dir() or member.filename.upper().startswith('META-INF/'):
                    continue
                if any(member.filename.startswith(prefix) for prefix in exclude):
                    continue
                target = _safe_target(natives_dir, member.filename)
                if target is None:
                    log.warning(f"Skipping unsafe entry {member.filename} in {archive.name}")
                    continue
                if _is_current(target, member):
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                temp = target.with_name(f"{target.name}.{secrets.token_hex(4)}.part")
                try:
                    with zip_ref.open(member) as src, open(temp, 'wb') as dst:
                        shutil.copyfileobj(src, dst)
                    os.replace(temp, target)
                finally:
                    if temp.exists():
                        temp.unlink()
                written += 1
    except zipfile.BadZipFile as e:
        raise CompositionError(f"Native archive {archive} is not a valid zip file: {e}") from e
    return written


# --- Assets ---

def _link_or_copy(source: pathlib.Path, target: pathlib.Path, compare_content: bool = False) -> None:
    # Objects are named by digest, so a size match is enough for them.
    if target.is_file() and target.stat().st_size == source.stat().st_size:
        if not compare_content or filecmp.cmp(source, target, shallow=False):
            return
    target.parent.mkdir(parents=True, exist_ok=True)
    temp = target.with_name(f"{target.name}.{secrets.token_hex(4)}.part")
    try:
        try:
            os.link(source, temp)
        except OSError:
            shutil.copyfile(source, temp)
        os.replace(temp, target)
    finally:
        if temp.exists():
            temp.unlink()


def prepare_assets_root(assets_root: pathlib.Path, index: AssetIndex, index_path: pathlib.Path,
                        cache: ArtifactCache, available: Iterable[AssetEntry] = ()) -> pathlib.Path:
    """
    Lays out the directory the game expects as `${assets_root}`.

    `indexes/<id>.json` is a copy of the cached index; `objects` points at the
    cache's sha1 tree (a symlink, or hard links where symlinks are refused).
    Legacy virtual indexes also get their files under their logical paths.
    Returns the directory for `${game_assets}`.
    """
    indexes_dir = assets_root / 'indexes'
    indexes_dir.mkdir(parents=True, exist_ok=True)
    _link_or_copy(index_path, indexes_dir / f"{index.id}.json", compare_content=True)

    available = list(available)
    objects_dir = assets_root / 'objects'
    sha1_root = cache.root / 'sha1'
    if not objects_dir.exists() and not objects_dir.is_symlink():
        sha1_root.mkdir(parents=True, exist_ok=True)
        try:
            objects_dir.symlink_to(sha1_root.resolve(), target_is_directory=True)
        except OSError as e:
            log.warning(f"Could not symlink {objects_dir} to the cache ({e}). Linking files one by one.")
    if not objects_dir.is_symlink():
        for entry in available:
            _link_or_copy(cache.path_for(entry.digest, entry.algorithm), objects_dir / entry.digest[:2] / entry.digest)

    if not (index.virtual or index.map_to_resources):
        return assets_root
    game_assets = assets_root / 'virtual' / index.id
    for entry in available:
        target = _safe_target(game_assets, entry.path)
        if target is not None:
            _link_or_copy(cache.path_for(entry.digest, entry.algorithm), target)
    return game_assets


# --- Composition ---

def placeholder_values(resolved: ResolvedSet, descriptor: VersionDescriptor, ctx: RuntimeContext,
                       classpath: Sequence[pathlib.Path], natives_dir: pathlib.Path,
                       assets_root: pathlib.Path, game_assets: pathlib.Path) -> Dict[str, str]:
    separator = classpath_separator(ctx)
    account = ctx.account
    values = {
        'natives_directory': str(natives_dir),
        'library_directory': str(ctx.install_root / 'libraries'),
        'classpath_separator': separator,
        'classpath': separator.join(str(path) for path in classpath),
        'launcher_name': ctx.launcher_name,
        'launcher_version': ctx.launcher_version,
        'version_name': descriptor.id,
        'version_type': descriptor.version_type or 'release',
        'game_directory': str(ctx.install_root),
        'assets_root': str(assets_root),
        'game_assets': str(game_assets),
        'auth_player_name': account.player_name,
        'auth_uuid': account.uuid,
        'auth_access_token': account.access_token,
        'auth_session': account.access_token,
        'auth_xuid': account.xuid,
        'clientid': account.client_id,
        'user_type': account.user_type,
        'user_properties': '{}',
    }
    if descriptor.assets_id is not None:
        values['assets_index_name'] = descriptor.assets_id
    if ctx.max_memory_mb is not None:
        values['max_memory'] = f"{ctx.max_memory_mb}M"
    if ctx.min_memory_mb is not None:
        values['min_memory'] = f"{ctx.min_memory_mb}M"
    if ctx.resolution is not None:
        values['resolution_width'] = str(ctx.resolution[0])
        values['resolution_height'] = str(ctx.resolution[1])
    values.update(ctx.extra_placeholders)
    return values


def compose(resolved: ResolvedSet, artifacts: Mapping[str, pathlib.Path], descriptor: VersionDescriptor,
            ctx: RuntimeContext, cache: ArtifactCache, assets_root: Optional[pathlib.Path] = None,
            game_assets: Optional[pathlib.Path] = None) -> LaunchSpec:
    """
    Builds the launch command for a resolved and fetched version.

    Native archives present in `artifacts` are extracted into the version's
    natives directory; ones that failed to download are skipped (the caller
    already holds them in its failure list).
    """
    if not descriptor.main_class:
        raise CompositionError(f"Version {descriptor.id} has no main class")
    assets_root = assets_root or ctx.install_root / 'assets'
    game_assets = game_assets or assets_root
    natives_dir = natives_directory(ctx, descriptor.id)
    classpath = build_classpath(resolved, artifacts, cache)

    natives_dir.mkdir(parents=True, exist_ok=True)
    for native in resolved.natives:
        archive = artifacts.get(native.id)
        if archive is None:
            log.warning(f"Native archive {native.id} is missing, not extracting it.")
            continue
        written = extract_natives(archive, natives_dir, native.extract_exclude)
        log.debug(f"Extracted {written} files from {native.id}")

    values = placeholder_values(resolved, descriptor, ctx, classpath, natives_dir, assets_root, game_assets)

    if descriptor.jvm_arguments or descriptor.game_arguments:
        jvm_templates = applicable_values(descriptor.jvm_arguments, ctx)
        game_templates = applicable_values(descriptor.game_arguments, ctx)
    else:
        jvm_templates = list(LEGACY_JVM_ARGUMENTS)
        game_templates = list(descriptor.legacy_arguments or ())

    jvm_args: List[str] = []
    if ctx.min_memory_mb is not None:
        jvm_args.append(f"-Xms{ctx.min_memory_mb}M")
    if ctx.max_memory_mb is not None:
        jvm_args.append(f"-Xmx{ctx.max_memory_mb}M")
    jvm_args += substitute_all(jvm_templates, values)

    if resolved.logging is not None and descriptor.logging is not None:
        config_path = artifacts.get(resolved.logging.id)
        if config_path is not None:
            jvm_args.append(substitute(descriptor.logging.argument, {'path': str(config_path)}))

    game_args = substitute_all(game_templates, values)
    log.info(f"Launch command for {descriptor.id} built: {len(classpath)} classpath entries, "
             f"{len(jvm_args)} JVM and {len(game_args)} game arguments")

    return LaunchSpec(
        version_id=descriptor.id,
        main_class=descriptor.main_class,
        classpath=classpath,
        natives_dir=natives_dir,
        jvm_arguments=tuple(jvm_args),
        game_arguments=tuple(game_args),
        working_dir=ctx.install_root,
        java_path=ctx.java_path,
    )
