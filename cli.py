import argparse
import asyncio
import json
import logging
import shlex
import sys
from typing import Optional, Sequence

from errors import ConfigError
from fetcher import AiohttpFetcher, RetryPolicy
from manifest import ChainedManifestSource, DirectoryManifestSource, RemoteManifestSource
from orchestrator import Orchestrator, PrepareResult
from progress import TqdmObserver
from settings import LauncherConfig, load_config

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='launcher-engine',
        description='Resolves a game version, fetches and verifies its files and prints the launch command.')
    parser.add_argument('--config', default=None,
                        help='launcher_config.json, or the directory holding it (default: current directory)')
    parser.add_argument('--version', dest='version_id', default=None,
                        help="version id to prepare (default: 'version' from the config)")
    parser.add_argument('--print-json', action='store_true',
                        help='print the launch specification as JSON instead of a shell command')
    return parser


def _report(result: PrepareResult, as_json: bool) -> None:
    spec = result.launch_spec
    if as_json:
        print(json.dumps({
            'version': result.version_id,
            'state': result.state.value,
            'command': spec.command() if spec else None,
            'working_dir': str(spec.working_dir) if spec else None,
            'natives_dir': str(spec.natives_dir) if spec else None,
            'missing': result.missing,
            'error': str(result.error) if result.error else None,
        }, indent=2))
    elif spec is not None:
        print(shlex.join(spec.command()))


async def prepare(config: LauncherConfig, version_id: str, as_json: bool = False) -> int:
    observer = TqdmObserver(desc=version_id)
    retry = RetryPolicy(attempts=config.retries)
    async with AiohttpFetcher(retry=retry) as fetcher:
        source = ChainedManifestSource(
            DirectoryManifestSource(config.versions_dir),
            RemoteManifestSource(fetcher, save_dir=config.versions_dir),
        )
        orchestrator = Orchestrator(source, fetcher, config.runtime_context(), cache_root=config.cache_root,
                                    workers=config.workers, retry=retry,
                                    observer=observer, java_dir=config.java)
        try:
            result = await orchestrator.prepare(version_id)
        finally:
            observer.close()

    for failure in result.failures:
        log.error(f"Missing {failure.artifact_id}: {failure.error}")
    _report(result, as_json)
    return 0 if result.ok else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error(str(e))
        return 1
    version_id = args.version_id or config.version
    if not version_id:
        log.error("No version given on the command line or in the config.")
        return 1
    # Older configs name the manifest file rather than the version.
    if version_id.endswith('.json'):
        version_id = version_id[:-len('.json')]

    try:
        return asyncio.run(prepare(config, version_id, args.print_json))
    except KeyboardInterrupt:
        log.info("Preparation cancelled by user.")
        return 1


if __name__ == '__main__':
    sys.exit(main())
