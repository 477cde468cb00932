"""
Durable per-category progress records for the backup pipelines.

Each category owns one JSON file holding its current checkpoint plus the
append-only history of every checkpoint it has reached. Files are written
as whole-value replacements (tmp file + os.replace) so a failed save leaves
the previously stored record intact.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)


DEFAULT_PAGE_START = 1
DEFAULT_PAGE_COUNT = 500


class MalformedCheckpointError(ValueError):
    """
    Raised when a stored checkpoint record can't be parsed.
    Progress is never silently reset; the operator has to inspect the file.
    """

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f'malformed checkpoint at ``{path}``: {reason}')
        self.path: Path = path
        self.reason: str = reason


@dataclass(frozen=True)
class CheckpointParameters:
    start: int
    count: int
    cursor: str | None = None


@dataclass(frozen=True)
class Checkpoint:
    parameters: CheckpointParameters
    cumulative_item_count: int
    is_terminal: bool

    @classmethod
    def empty(cls, count: int = DEFAULT_PAGE_COUNT) -> Checkpoint:
        return cls(CheckpointParameters(DEFAULT_PAGE_START, count, None), 0, False)

    def advance(self, items_in_page: int, next_cursor: str | None) -> Checkpoint:
        """
        Builds the checkpoint that follows a fully archived page.
        `start` is a page number, so it moves by one regardless of how many items the page held.
        """
        params: CheckpointParameters = self.parameters
        return Checkpoint(
            CheckpointParameters(params.start + 1, params.count, next_cursor),
            self.cumulative_item_count + items_in_page,
            next_cursor is None,
        )

    def as_terminal(self) -> Checkpoint:
        return Checkpoint(self.parameters, self.cumulative_item_count, True)


@dataclass(frozen=True)
class CheckpointRecord:
    """
    Current checkpoint plus its history; `current` is always the last history entry.
    """

    current: Checkpoint
    history: tuple[Checkpoint, ...]

    @classmethod
    def empty(cls, count: int = DEFAULT_PAGE_COUNT) -> CheckpointRecord:
        first: Checkpoint = Checkpoint.empty(count)
        return cls(first, (first,))

    def append(self, checkpoint: Checkpoint) -> CheckpointRecord:
        if checkpoint.cumulative_item_count < self.current.cumulative_item_count:
            raise ValueError('cumulative item count must never decrease')
        if self.current.is_terminal and not checkpoint.is_terminal:
            raise ValueError('a terminal checkpoint cannot be reopened')
        return CheckpointRecord(checkpoint, self.history + (checkpoint,))


## serialization ----------------------------------------------------


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, object]:
    return {
        'parameters': {
            'start': checkpoint.parameters.start,
            'count': checkpoint.parameters.count,
            'cursor': checkpoint.parameters.cursor,
        },
        'cumulative_item_count': checkpoint.cumulative_item_count,
        'is_terminal': checkpoint.is_terminal,
    }


def record_to_dict(record: CheckpointRecord) -> dict[str, object]:
    return {
        'current': checkpoint_to_dict(record.current),
        'history': [checkpoint_to_dict(c) for c in record.history],
    }


def _require_int(data: dict[str, object], key: str) -> int:
    val: object = data.get(key)
    # bool is an int subclass; reject it explicitly
    if not isinstance(val, int) or isinstance(val, bool):
        raise ValueError(f'``{key}`` must be an integer, got ``{val!r}``')
    return val


def checkpoint_from_dict(data: object) -> Checkpoint:
    if not isinstance(data, dict):
        raise ValueError(f'checkpoint must be an object, got ``{type(data).__name__}``')
    params: object = data.get('parameters')
    if not isinstance(params, dict):
        raise ValueError('checkpoint is missing ``parameters``')
    cursor: object = params.get('cursor')
    if cursor is not None and not isinstance(cursor, str):
        raise ValueError(f'``cursor`` must be a string or null, got ``{cursor!r}``')
    is_terminal: object = data.get('is_terminal')
    if not isinstance(is_terminal, bool):
        raise ValueError(f'``is_terminal`` must be a boolean, got ``{is_terminal!r}``')
    return Checkpoint(
        CheckpointParameters(_require_int(params, 'start'), _require_int(params, 'count'), cursor),
        _require_int(data, 'cumulative_item_count'),
        is_terminal,
    )


def record_from_dict(data: object) -> CheckpointRecord:
    if not isinstance(data, dict):
        raise ValueError(f'record must be an object, got ``{type(data).__name__}``')
    raw_history: object = data.get('history')
    if not isinstance(raw_history, list) or not raw_history:
        raise ValueError('record ``history`` must be a non-empty list')
    history: list[Checkpoint] = [checkpoint_from_dict(c) for c in raw_history]
    current: Checkpoint = checkpoint_from_dict(data.get('current'))
    if current != history[-1]:
        raise ValueError('``current`` does not match the last ``history`` entry')
    ## replaying through append() rejects a decreasing count or a reopened terminal checkpoint
    record = CheckpointRecord(history[0], (history[0],))
    for checkpoint in history[1:]:
        record = record.append(checkpoint)
    return record


## store ------------------------------------------------------------


class CheckpointStore:
    """
    Persists one category's CheckpointRecord as human-readable JSON.
    - Loads the stored record, or creates and immediately persists the empty record.
    - Saves by writing a sibling tmp file and atomically replacing the target.
    - Raises MalformedCheckpointError for unreadable data instead of starting over.
    - Keeps no in-memory cache; every call reflects the file on disk.
    """

    def __init__(self, path: Path, *, page_size: int = DEFAULT_PAGE_COUNT) -> None:
        self.path: Path = path
        self.page_size: int = page_size
        log.info(f'checkpoint path, ``{self.path.resolve()}``')

    def load(self) -> CheckpointRecord:
        if not self.path.exists():
            record: CheckpointRecord = CheckpointRecord.empty(self.page_size)
            self.save(record)
            return record
        try:
            with self.path.open('r', encoding='utf-8') as fh:
                data: object = json.load(fh)
            return record_from_dict(data)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
            raise MalformedCheckpointError(self.path, str(exc)) from exc

    def save(self, record: CheckpointRecord) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Path = self.path.with_name(f'{self.path.name}.tmp')
        with tmp_path.open('w', encoding='utf-8') as fh:
            json.dump(record_to_dict(record), fh, ensure_ascii=False, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, self.path)
        log.debug(f'saved checkpoint, ``{record.current}``')
