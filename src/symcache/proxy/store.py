"""On-disk symbol cache rooted at a single directory."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import BinaryIO
from uuid import uuid4

import structlog

from .errors import CacheReadError, InvalidSymbolPath, LocalIOError


LOGGER = structlog.get_logger("symcache.store")
TEMP_SUFFIX = ".partial"


def _is_temp_name(name: str) -> bool:
    return name.startswith(".") and name.endswith(TEMP_SUFFIX)


class ChunkSink:
    """Destination for streamed bytes; the fetcher writes each chunk to its sinks in order."""

    name = "sink"

    async def write(self, chunk: bytes) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class CacheWriter(ChunkSink):
    """Writes a symbol into a sibling temp file and publishes it with an atomic rename."""

    name = "cache"

    def __init__(self, destination: Path, temp_path: Path, handle: BinaryIO) -> None:
        self.destination = destination
        self.temp_path = temp_path
        self._handle = handle
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._handle.closed

    async def write(self, chunk: bytes) -> None:
        await asyncio.to_thread(self._handle.write, chunk)
        self.bytes_written += len(chunk)

    async def commit(self) -> None:
        def _publish() -> None:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            os.replace(self.temp_path, self.destination)

        try:
            await asyncio.to_thread(_publish)
        except OSError as exc:
            self.abort()
            raise LocalIOError(f"Error publishing cache entry: {exc}") from exc

    def abort(self) -> None:
        # Synchronous so it still runs when the request task is being cancelled.
        if not self._handle.closed:
            self._handle.close()
        self.temp_path.unlink(missing_ok=True)


class SymbolCacheStore:
    """Maps request paths to files under ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_root(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)

    def is_writable(self) -> bool:
        return self._root.is_dir() and os.access(self._root, os.W_OK)

    @staticmethod
    def normalize(symbol_path: str) -> str:
        """Collapse empty segments so one symbol maps to one cache entry and one upstream URL."""

        if "\x00" in symbol_path or "\\" in symbol_path:
            raise InvalidSymbolPath("Invalid symbol path", symbol_path=symbol_path)
        parts = [part for part in symbol_path.split("/") if part]
        if not parts or any(part in {".", ".."} or _is_temp_name(part) for part in parts):
            raise InvalidSymbolPath("Invalid symbol path", symbol_path=symbol_path)
        return "/".join(parts)

    def resolve(self, symbol_path: str) -> Path:
        """Return the cache file for ``symbol_path``, rejecting anything that leaves the root."""

        parts = self.normalize(symbol_path).split("/")
        resolved = self._root.joinpath(*parts).resolve(strict=False)
        if resolved == self._root or not resolved.is_relative_to(self._root):
            raise InvalidSymbolPath("Invalid symbol path", symbol_path=symbol_path)
        return resolved

    async def lookup(self, symbol_path: str) -> bytes | None:
        """Return the cached bytes, or ``None`` on a miss."""

        path = self.resolve(symbol_path)
        if not path.exists():
            return None
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            LOGGER.error("cache_read_failed", symbol_path=symbol_path, error=str(exc))
            raise CacheReadError(f"Error reading file: {exc}", symbol_path=symbol_path) from exc

    async def open_writer(self, symbol_path: str) -> CacheWriter:
        destination = self.resolve(symbol_path)
        temp_path = destination.with_name(f".{destination.name}.{uuid4().hex}{TEMP_SUFFIX}")

        def _open() -> BinaryIO:
            destination.parent.mkdir(parents=True, exist_ok=True)
            if destination.is_dir():
                raise IsADirectoryError(f"{destination} is a directory")
            return temp_path.open("wb")

        try:
            handle = await asyncio.to_thread(_open)
        except OSError as exc:
            LOGGER.error("cache_create_failed", symbol_path=symbol_path, error=str(exc))
            raise LocalIOError(f"Error creating file: {exc}", symbol_path=symbol_path) from exc
        return CacheWriter(destination, temp_path, handle)
