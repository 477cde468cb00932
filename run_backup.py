# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Backs up a cloud vault's documents, photos/videos and audio to local zip files.

Each category is listed page by page; every page is zipped server-side,
streamed to disk, and checkpointed, so an interrupted run picks up at the
first unfinished page. The three categories run concurrently.

Usage:
  uv run ./run_backup.py "../backup_dir" --user-id <account-id> --repository TABLET --repository SyncDrive

Args:
  backup_dir (optional) -- prompted for when omitted
  --user-id (required unless CLOUD_USER_ID is set)
  --repository (optional, repeatable; or comma-separated CLOUD_REPOSITORIES)
  --base-url (optional; or CLOUD_BASE_URL)
  --page-size (optional) -- only applies to categories without a checkpoint yet
  --category (optional, repeatable) -- documents, photos, audio; defaults to all
  --mark-empty-page-terminal (optional)
  --no-progress (optional)
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from backup_pipeline import CATEGORIES, BackupFailedError, BackupOrchestrator, Category, CategoryPipeline
from checkpoint_store import DEFAULT_PAGE_COUNT, CheckpointStore, MalformedCheckpointError
from cloud_gateway import DEFAULT_BASE_URL, CloudGateway, CredentialRelocatedError, build_client
from credentials import CredentialManager, CredentialStore, MissingCredentialError

## setup logging ----------------------------------------------------
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):  # prevent httpx from logging
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False  # don't bubble up to root
log = logging.getLogger(__name__)

## constants --------------------------------------------------------
COPY_SUBDIR = 'Copy'
TOKEN_FILENAME = 'token.txt'

EXIT_OK = 0
EXIT_BACKUP_FAILED = 1
EXIT_CONFIG_ERROR = 2


@dataclass
class BackupOptions:
    working_dir: Path
    user_id: str
    repositories: list[str] = field(default_factory=list)
    base_url: str = DEFAULT_BASE_URL
    page_size: int = DEFAULT_PAGE_COUNT
    categories: list[Category] = field(default_factory=lambda: list(CATEGORIES.values()))
    mark_empty_page_terminal: bool = False
    show_progress: bool = True

    @property
    def backup_dir(self) -> Path:
        return self.working_dir / COPY_SUBDIR

    @property
    def token_path(self) -> Path:
        return self.backup_dir / TOKEN_FILENAME


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Accepts the backup directory positionally; prompts when it's missing.
    - Falls back to CLOUD_* environment variables for account settings.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Back up cloud vault files to local zip archives.')
        parser.add_argument('backup_dir', nargs='?', default=None, help='Directory to write backups into')
        parser.add_argument(
            '--user-id', default=os.getenv('CLOUD_USER_ID'), help='Account id used in API urls (env: CLOUD_USER_ID)'
        )
        parser.add_argument(
            '--repository',
            action='append',
            default=None,
            help='Storage repository (device) to include; repeatable (env: CLOUD_REPOSITORIES, comma-separated)',
        )
        parser.add_argument('--base-url', default=os.getenv('CLOUD_BASE_URL', DEFAULT_BASE_URL))
        parser.add_argument(
            '--page-size',
            type=positive_int,
            default=DEFAULT_PAGE_COUNT,
            metavar='INTEGER',
            help=f'Files per page for categories starting fresh (default: {DEFAULT_PAGE_COUNT}).',
        )
        parser.add_argument(
            '--category',
            action='append',
            choices=sorted(CATEGORIES),
            default=None,
            help='Category to back up; repeatable (default: all).',
        )
        parser.add_argument(
            '--mark-empty-page-terminal',
            action='store_true',
            help='Record a category as finished when the server lists an empty page.',
        )
        parser.add_argument('--no-progress', action='store_true', help='Hide download progress bars.')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def positive_int(value: str) -> int:
    number: int = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'must be a positive integer, got ``{value}``')
    return number


def prompt_until_given(message: str) -> str:
    """
    Asks repeatedly until a non-blank answer is entered.
    """
    answer: str = ''
    while not answer.strip():
        answer = input(message)
    return answer.strip()


def build_options(args: argparse.Namespace) -> BackupOptions:
    if not args.user_id:
        raise ValueError('an account id is required (--user-id or CLOUD_USER_ID)')
    backup_dir_input: str = args.backup_dir or prompt_until_given('Please enter a back up path. E.g. C:/MyBackupFolder: ')
    repositories: list[str] = args.repository or [
        r.strip() for r in os.getenv('CLOUD_REPOSITORIES', '').split(',') if r.strip()
    ]
    categories: list[Category] = [CATEGORIES[name] for name in (args.category or CATEGORIES)]
    return BackupOptions(
        working_dir=Path(backup_dir_input).expanduser().resolve(),
        user_id=args.user_id,
        repositories=repositories,
        base_url=args.base_url,
        page_size=args.page_size,
        categories=categories,
        mark_empty_page_terminal=args.mark_empty_page_terminal,
        show_progress=not args.no_progress,
    )


def ensure_seed_token(store: CredentialStore) -> None:
    if store.load() is None:
        store.save(prompt_until_given('Please enter token: '))


def build_pipelines(
    options: BackupOptions, gateway: CloudGateway, credentials: CredentialManager
) -> list[CategoryPipeline]:
    pipelines: list[CategoryPipeline] = []
    for position, category in enumerate(options.categories):
        store = CheckpointStore(options.backup_dir / category.checkpoint_filename, page_size=options.page_size)
        pipelines.append(
            CategoryPipeline(
                category,
                gateway,
                credentials,
                store,
                options.backup_dir / category.output_subdir,
                mark_empty_page_terminal=options.mark_empty_page_terminal,
                show_progress=options.show_progress,
                progress_position=position,
            )
        )
    return pipelines


async def perform_backup(options: BackupOptions, credential_store: CredentialStore) -> None:
    async with build_client() as client:
        gateway = CloudGateway(
            client, user_id=options.user_id, repositories=options.repositories, base_url=options.base_url
        )
        credentials = CredentialManager(credential_store, gateway)
        try:
            await BackupOrchestrator(build_pipelines(options, gateway, credentials)).run()
        finally:
            await credentials.close()


def main(argv: list[str] | None = None) -> int:
    """
    Resolves options, makes sure a seed token exists, then runs all category pipelines.

    Flow:
    - Parses CLI args; prompts for the backup directory when not given.
    - Creates `<backup_dir>/Copy`, which holds archives, checkpoints and the token file.
    - Prompts for a token when none is stored (or the stored one was cleared).
    - Runs the orchestrator; every category settles before the exit code is decided.

    Called by: dundermain, `cloud-backup` console script
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    try:
        options: BackupOptions = build_options(args)
    except ValueError as exc:
        log.error(str(exc))
        return EXIT_CONFIG_ERROR
    options.backup_dir.mkdir(parents=True, exist_ok=True)
    log.info(f'backup directory, ``{options.backup_dir}``')

    ## seed token ---------------------------------------------------
    credential_store = CredentialStore(options.token_path)
    ensure_seed_token(credential_store)

    ## run ----------------------------------------------------------
    log.info('beginning backup procedure')
    try:
        asyncio.run(perform_backup(options, credential_store))
    except BackupFailedError as exc:
        for name, failure in exc.failures.items():
            if isinstance(failure, (MissingCredentialError, CredentialRelocatedError)):
                log.error(f'{name}: token is no longer usable; run again and enter a new token')
            elif isinstance(failure, MalformedCheckpointError):
                log.error(f'{name}: {failure}; fix or move the checkpoint file before re-running')
        print(f'Backup incomplete: {exc}', file=sys.stderr)
        return EXIT_BACKUP_FAILED
    log.info('all backups complete')
    return EXIT_OK


def run() -> None:
    raise SystemExit(main())


if __name__ == '__main__':
    run()
