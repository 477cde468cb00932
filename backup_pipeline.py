"""
The resumable fetch -> package -> persist -> advance loop, run once per
file category, and the orchestrator that runs all categories side by side.

A page is atomic: its checkpoint only advances after the page's archive is
fully on disk, so a restart re-requests exactly the first page that wasn't
finished.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol

import humanize
from tqdm import tqdm

from checkpoint_store import Checkpoint, CheckpointParameters, CheckpointRecord, CheckpointStore
from cloud_gateway import ListedPage

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Category:
    """
    What differs between the categories: the remote browse path and where output lands.
    """

    name: str
    browse_path: str
    output_subdir: str
    checkpoint_filename: str
    label: str


DOCUMENTS = Category('documents', 'document', 'Documents', 'documentCheckpoint.json', 'documents')
PHOTOS_VIDEOS = Category('photos', 'imagevideo', 'Photos', 'photosVideosCheckpoint.json', 'photos/videos')
AUDIO = Category('audio', 'audio', 'Audio', 'audioCheckpoint.json', 'audio files')

CATEGORIES: dict[str, Category] = {c.name: c for c in (DOCUMENTS, PHOTOS_VIDEOS, AUDIO)}


class PageGateway(Protocol):
    async def list_page(
        self, category_path: str, start: int, count: int, cursor: str | None, token: str
    ) -> ListedPage: ...

    def open_archive(
        self, identifiers: list[str], token: str
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...


class TokenSource(Protocol):
    async def get_credential(self) -> str: ...


class BackupFailedError(Exception):
    """
    One or more categories failed; `failures` maps category name to its exception.
    """

    def __init__(self, failures: dict[str, BaseException]) -> None:
        names: str = ', '.join(sorted(failures))
        super().__init__(f'backup failed for: {names}')
        self.failures: dict[str, BaseException] = failures


def archive_filename(archive_start: int, archive_end: int) -> str:
    return f'Zip{archive_start}-{archive_end}.zip'


def flush_to_disk(fh: BinaryIO) -> None:
    fh.flush()
    os.fsync(fh.fileno())


class CategoryPipeline:
    """
    Backs up one category page by page.
    - Reads the category's checkpoint once; a terminal checkpoint means there's nothing to do.
    - Lists the page at the checkpoint's (start, count, cursor) with a fresh token.
    - Asks the server to zip the whole page and streams the zip to disk under a `.part` name.
    - Renames the zip into place only after the payload is drained and flushed.
    - Appends the advanced checkpoint to the record and saves it before the next page.
    - Stops on an empty page or once the server stops returning a continuation cursor.
    """

    def __init__(
        self,
        category: Category,
        gateway: PageGateway,
        credentials: TokenSource,
        store: CheckpointStore,
        output_dir: Path,
        *,
        mark_empty_page_terminal: bool = False,
        show_progress: bool = True,
        progress_position: int = 0,
    ) -> None:
        self.category: Category = category
        self.gateway: PageGateway = gateway
        self.credentials: TokenSource = credentials
        self.store: CheckpointStore = store
        self.output_dir: Path = output_dir
        self.mark_empty_page_terminal: bool = mark_empty_page_terminal
        self.show_progress: bool = show_progress
        self.progress_position: int = progress_position

    async def run(self) -> CheckpointRecord:
        record: CheckpointRecord = await asyncio.to_thread(self.store.load)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        while not record.current.is_terminal:
            next_record: CheckpointRecord | None = await self.backup_page(record)
            if next_record is None:
                log.info(f'no more {self.category.label} listed; stopping')
                return record
            record = next_record
        log.info(f'completed downloading {self.category.label}')
        return record

    async def backup_page(self, record: CheckpointRecord) -> CheckpointRecord | None:
        """
        Archives the page at `record.current` and returns the saved, advanced record.
        Returns None when the page is empty and the loop should stop.
        """
        checkpoint: Checkpoint = record.current
        params: CheckpointParameters = checkpoint.parameters
        log.info(
            f'{self.category.label} params: start, ``{params.start}``; count, ``{params.count}``; '
            f'cursor, ``{params.cursor}``'
        )
        started: float = time.monotonic()

        token: str = await self.credentials.get_credential()
        page: ListedPage = await self.gateway.list_page(
            self.category.browse_path, params.start, params.count, params.cursor, token
        )
        identifiers: list[str] = [item.identifier for item in page.items]
        if not identifiers:
            if self.mark_empty_page_terminal:
                record = record.append(checkpoint.as_terminal())
                await asyncio.to_thread(self.store.save, record)
                return record
            return None

        archive_start: int = checkpoint.cumulative_item_count + 1
        archive_end: int = checkpoint.cumulative_item_count + len(identifiers)
        log.info(
            f'requesting zip of {len(identifiers)} {self.category.label} ({archive_start} - {archive_end})'
        )
        archive_path: Path = self.output_dir / archive_filename(archive_start, archive_end)
        size: int = await self.write_archive(identifiers, token, archive_path)

        elapsed: float = time.monotonic() - started
        log.info(
            f'created zip of {len(identifiers)} {self.category.label} ({archive_start} - {archive_end}), '
            f'{humanize.naturalsize(size)} in {humanize.precisedelta(elapsed)}'
        )

        record = record.append(checkpoint.advance(len(identifiers), page.next_cursor))
        await asyncio.to_thread(self.store.save, record)
        return record

    async def write_archive(self, identifiers: list[str], token: str, archive_path: Path) -> int:
        """
        Streams the zip for `identifiers` into `archive_path`; returns bytes written.
        """
        part_path: Path = archive_path.with_name(f'{archive_path.name}.part')
        written: int = 0
        try:
            with tqdm(
                desc=f'{self.category.name} {archive_path.name}',
                unit='B',
                unit_scale=True,
                unit_divisor=1024,
                position=self.progress_position,
                leave=False,
                disable=not self.show_progress,
            ) as bar:
                async with self.gateway.open_archive(identifiers, token) as payload:
                    log.info(f'writing zip to ``{archive_path}``')
                    with part_path.open('wb') as fh:
                        async for chunk in payload:
                            await asyncio.to_thread(fh.write, chunk)
                            written += len(chunk)
                            bar.update(len(chunk))
                        await asyncio.to_thread(flush_to_disk, fh)
        except Exception:
            part_path.unlink(missing_ok=True)
            raise
        os.replace(part_path, archive_path)
        return written


class BackupOrchestrator:
    """
    Runs every category pipeline concurrently and waits for all of them to settle.
    A failing category never cancels the others; failures are reported together at the end.
    """

    def __init__(self, pipelines: list[CategoryPipeline]) -> None:
        self.pipelines: list[CategoryPipeline] = pipelines

    async def run(self) -> dict[str, CheckpointRecord]:
        results: list[CheckpointRecord | BaseException] = await asyncio.gather(
            *(pipeline.run() for pipeline in self.pipelines), return_exceptions=True
        )
        completed: dict[str, CheckpointRecord] = {}
        failures: dict[str, BaseException] = {}
        for pipeline, result in zip(self.pipelines, results):
            name: str = pipeline.category.name
            if isinstance(result, BaseException):
                log.error(f'{pipeline.category.label} backup failed', exc_info=result)
                failures[name] = result
            else:
                completed[name] = result
        if failures:
            raise BackupFailedError(failures)
        return completed
