"""Command line entry point for the leak radar worker."""
import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles
from tqdm import tqdm

from . import __version__
from .config import LOG_FORMATS, MANUAL_PROVIDERS, WorkerConfig, load_config
from .detection import is_likely_text_file, redact, scan_line
from .github_client import GitHubClient, preflight_token
from .log import setup_logging
from .models import JobMode
from .pipeline import Pipeline
from .scan_query import encode_providers, parse_scan_query
from .store import LeakDatabase

logger = logging.getLogger("leakradar.cli")


# ===================================================================
# COMMANDS
# ===================================================================

async def run_worker(config: WorkerConfig, once: bool = False) -> int:
    with LeakDatabase(config.database_path) as db:
        async with GitHubClient(config.github_token) as client:
            pipeline = Pipeline(config, client, db)
            if once:
                pipeline.publish_initial_status()
                status = await pipeline.run_cycle()
                logger.info(
                    f"Cycle finished: {status.last_auto_inserted} auto, "
                    f"{status.last_manual_inserted} manual leaks inserted"
                )
            else:
                await pipeline.run_forever()
    return 0


def _collect_files(paths: Sequence[str]) -> List[Path]:
    files = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            files.extend(p for p in sorted(path.rglob("*")) if p.is_file())
        elif path.is_file():
            files.append(path)
        else:
            logger.warning(f"Path does not exist: {path}")
    return [f for f in files if is_likely_text_file(f.name)]


async def check_paths(paths: Sequence[str], allowed_providers=None) -> int:
    """Run the detectors over local files and print redacted matches."""
    files = _collect_files(paths)
    total = 0

    with tqdm(total=len(files), desc="Checking files", unit="file") as pbar:
        for file_path in files:
            try:
                async with aiofiles.open(file_path, "r", errors="ignore") as f:
                    content = await f.read()
            except OSError as e:
                logger.warning(f"Failed to read {file_path}: {e}")
                pbar.update(1)
                continue

            seen = set()
            for line_number, line in enumerate(content.split("\n"), start=1):
                for match in scan_line(line, allowed_providers):
                    if match in seen:
                        continue
                    seen.add(match)
                    total += 1
                    tqdm.write(f"{file_path}:{line_number}: {match.provider} {redact(match.value)}")
            pbar.update(1)

    logger.info(f"Checked {len(files)} files, {total} potential keys")
    return total


def enqueue(config: WorkerConfig, query: Optional[str], providers: Optional[str], every: Optional[int]) -> int:
    if providers:
        query = encode_providers(p.strip() for p in providers.split(",") if p.strip())
        parse_scan_query(query)

    with LeakDatabase(config.database_path) as db:
        if every is not None:
            schedule = db.create_schedule(every, query)
            logger.info(f"Created schedule {schedule.id} every {every} minutes, first run {schedule.next_run_at.isoformat()}")
        else:
            job = db.create_job(JobMode.MANUAL, query)
            logger.info(f"Queued manual scan job {job.id}")
    return 0


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def parse_arguments(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        prog="leakradar",
        description="Watch public GitHub activity for leaked API keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f'''
ENVIRONMENT VARIABLES:
  GITHUB_TOKEN                      GitHub token (required for run/once)
  WORKER_POLL_INTERVAL_MS           Delay between cycles (default: 15000)
  WORKER_BACKFILL_MODE              commits, code or both (default: commits)
  WORKER_BACKFILL_ALWAYS            Backfill every cycle (default: false)
  WORKER_BACKFILL_ON_EMPTY          Backfill when the feed is empty (default: true)
  WORKER_MAX_FILE_BYTES             Largest file fetched whole (default: 200000)
  WORKER_RETENTION_DAYS             Delete findings older than this, 0 keeps all
  KEY_FINGERPRINT_SALT              Salt for key fingerprints
  LEAKRADAR_DB_PATH                 SQLite database (default: leakradar.db)

PROVIDERS:
  {", ".join(MANUAL_PROVIDERS)}

USAGE EXAMPLES:
  leakradar run
  leakradar once --log-format json
  leakradar check ./src --providers openai,anthropic
  leakradar enqueue --providers openai,mistral
  leakradar enqueue --query "sk-ant- in:file" --every 120

EXIT CODES:
  0   Success
  1   Error (missing token, invalid job, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    parser.add_argument(
        '--log-format',
        type=str,
        choices=LOG_FORMATS,
        default=None,
        help='Logging format (default: LOG_FORMAT or text)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    commands = parser.add_subparsers(dest='command')
    commands.add_parser('run', help='Run the worker loop forever (default)')
    commands.add_parser('once', help='Run a single cycle and exit')

    check = commands.add_parser('check', help='Scan local files for keys')
    check.add_argument('paths', nargs='+', metavar='PATH')
    check.add_argument('--providers', type=str, help='Comma-separated provider allowlist')

    queue = commands.add_parser('enqueue', help='Queue a manual scan job or create a schedule')
    target = queue.add_mutually_exclusive_group()
    target.add_argument('--query', type=str, help='Raw GitHub search query')
    target.add_argument('--providers', type=str, help='Comma-separated provider ids')
    queue.add_argument('--every', type=int, metavar='MINUTES',
                       help='Create a recurring schedule instead of a one-off job (>= 60)')

    return parser.parse_args(argv)


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)
    config = load_config()
    if args.log_format:
        config.log_format = args.log_format
    setup_logging(config.log_format, args.verbose)

    command = args.command or 'run'

    try:
        if command == 'check':
            allowed = None
            if args.providers:
                allowed = {p.strip().lower() for p in args.providers.split(",") if p.strip()}
            asyncio.run(check_paths(args.paths, allowed))
            return 0

        if command == 'enqueue':
            return enqueue(config, args.query, args.providers, args.every)

        if not config.github_token:
            logger.error("GITHUB_TOKEN environment variable not set - cannot start scanning")
            return 1

        for key, value in config.describe().items():
            logger.info(f"  {key}: {value}")
        preflight_token(config.github_token)

        return asyncio.run(run_worker(config, once=command == 'once'))

    except ValueError as e:
        # ScanQueryError or an invalid schedule interval
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    exit(main())
