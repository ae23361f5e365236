# src/photo_bundler/archive.py

"""
Streaming ZIP construction.

The builder writes a deflate-compressed ZIP entry by entry into a BytePipe, so
the archive is never materialized: the upload coordinator drains the pipe
while entries are still being added.

Each source is first drained into a SpooledTemporaryFile (RAM up to the spool
threshold, then local disk). Only once the source was read completely does the
entry get written, which guarantees that a download breaking halfway never
leaves a truncated entry in the archive.
"""

import logging
import shutil
import zipfile
from contextlib import closing
from tempfile import SpooledTemporaryFile
from typing import BinaryIO, cast

from .exceptions import ArchiveWriteFailedError, FetchFailedError
from .pipe import BytePipe, PipeWriter
from .schemas import ArchiveEntryResult

logger = logging.getLogger(__name__)

_COPY_CHUNK_SIZE = 64 * 1024


# --- Helpers ---
def _spool_source(stream: BinaryIO, spool_threshold: int) -> tuple[BinaryIO, int]:
    """
    Read *stream* into a SpooledTemporaryFile (in-RAM up to *spool_threshold*,
    then /tmp on disk) while counting bytes. Returns (file_like, size), rewound.
    """
    tmp = SpooledTemporaryFile(max_size=spool_threshold, mode="w+b")

    copied = 0
    try:
        for chunk in iter(lambda: stream.read(_COPY_CHUNK_SIZE), b""):
            tmp.write(chunk)
            copied += len(chunk)
    except BaseException:
        tmp.close()
        raise

    tmp.seek(0)  # rewind for reading
    return cast(BinaryIO, tmp), copied


def _needs_zip64(size: int) -> bool:
    # Same headroom zipfile itself applies when the size is known up front
    return size * 1.05 > zipfile.ZIP64_LIMIT


class StreamingArchiveBuilder:
    """
    Single-use ZIP writer bound to one pipe. Entries appear in the archive in
    the order ``append_entry`` is called.
    """

    def __init__(self, pipe: BytePipe, compression_level: int = 6, spool_threshold: int = 64 * 1_048_576):
        self._pipe = pipe
        self._spool_threshold = spool_threshold
        self._zip = zipfile.ZipFile(
            cast(BinaryIO, PipeWriter(pipe)),
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=compression_level,
            allowZip64=True,
        )
        self._results: list[ArchiveEntryResult] = []
        self._finalized = False

    @property
    def results(self) -> list[ArchiveEntryResult]:
        return list(self._results)

    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self._results if r.succeeded)

    def append_entry(
        self,
        name: str,
        stream: BinaryIO,
        *,
        source_url: str = "",
        declared_size: int | None = None,
    ) -> ArchiveEntryResult:
        """
        Drain ``stream`` and add it as entry ``name``.

        A source that fails while being read is recorded as a failed entry and
        nothing reaches the archive. Failures of the output side (the consumer
        aborted the pipe) are job-fatal and propagate.
        """
        if self._finalized:
            raise RuntimeError("archive already finalized")

        try:
            with closing(stream):
                spooled, size = _spool_source(stream, self._spool_threshold)
        except FetchFailedError as e:
            return self._record(ArchiveEntryResult.failure(name, source_url, e.reason))
        except OSError as e:
            error = ArchiveWriteFailedError(name, str(e))
            logger.warning("Source stream broke; skipping entry.", extra=error.to_dict())
            return self._record(ArchiveEntryResult.failure(name, source_url, error.reason))

        if declared_size is not None and declared_size != size:
            logger.warning(
                "Fetched size differs from declared size.",
                extra={"entry_name": name, "declared_size": declared_size, "actual_size": size},
            )

        with closing(spooled):
            with self._zip.open(name, mode="w", force_zip64=_needs_zip64(size)) as dest:
                shutil.copyfileobj(spooled, dest, _COPY_CHUNK_SIZE)

        logger.debug("Archived entry", extra={"entry_name": name, "bytes": size})
        return self._record(ArchiveEntryResult.success(name, source_url, size))

    def record_failure(self, name: str, source_url: str, reason: str) -> ArchiveEntryResult:
        """Record an item that never produced a stream (e.g. the fetch itself failed)."""
        return self._record(ArchiveEntryResult.failure(name, source_url, reason))

    def finalize(self) -> list[ArchiveEntryResult]:
        """Write the central directory and signal end-of-stream to the consumer."""
        if self._finalized:
            raise RuntimeError("archive already finalized")
        self._finalized = True
        self._zip.close()
        self._pipe.close()
        logger.debug(
            "Archive finalized",
            extra={"entries": self.succeeded_count, "archive_bytes": self._pipe.bytes_written},
        )
        return self.results

    def _record(self, result: ArchiveEntryResult) -> ArchiveEntryResult:
        self._results.append(result)
        if not result.succeeded:
            logger.warning(
                "Skipping media item",
                extra={"entry_name": result.entry_name, "reason": result.reason},
            )
        return result


def begin_archive(
    pipe: BytePipe, compression_level: int = 6, spool_threshold: int = 64 * 1_048_576
) -> StreamingArchiveBuilder:
    return StreamingArchiveBuilder(pipe, compression_level, spool_threshold)
