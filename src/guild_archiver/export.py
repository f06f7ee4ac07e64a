"""JSON export of archived channels."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import IO, Callable

from .store import ArchiveStore, ChannelStore

logger = logging.getLogger(__name__)


def _write_atomic(target: Path, write: Callable[[IO[str]], None]) -> None:
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        write(handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, target)


def export_channel(store: ChannelStore, directory: Path) -> Path:
    """Write ``<channel_id>.messages.json`` ordered by message id."""

    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{store.channel_id}.messages.json"

    def write(handle: IO[str]) -> None:
        handle.write("[")
        for index, message in enumerate(store.iter_messages()):
            if index:
                handle.write(",")
            json.dump(asdict(message), handle, ensure_ascii=False)
        handle.write("]")

    _write_atomic(target, write)
    return target


def export_channel_meta(archive: ArchiveStore, channel_id: str, directory: Path) -> Path | None:
    """Write ``<channel_id>.meta.json`` if the channel was seen during discovery."""

    info = archive.channel_info(channel_id)
    if info is None:
        return None
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{channel_id}.meta.json"
    _write_atomic(target, lambda handle: json.dump(asdict(info), handle, ensure_ascii=False))
    return target


def export_archive(archive: ArchiveStore, directory: Path) -> list[Path]:
    written: list[Path] = []
    for progress in archive.list_progress():
        path = export_channel(archive.channel(progress.channel_id), directory)
        if not progress.complete:
            logger.warning("Канал %s выгружен не полностью", progress.channel_id)
        written.append(path)
        meta = export_channel_meta(archive, progress.channel_id, directory)
        if meta is not None:
            written.append(meta)
    return written
