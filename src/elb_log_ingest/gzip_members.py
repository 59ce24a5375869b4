# src/elb_log_ingest/gzip_members.py

"""
Reconstruction of multi-member gzip objects.

Load balancer access logs are delivered as a single object made of several
independent gzip members appended one after another. Many decoders stop after
the first member, so this module finds every member explicitly:

1.  `scan_member_offsets` walks the raw bytes and reports every offset whose
    10 leading bytes look like a gzip member header. This is a heuristic and
    may report false positives inside compressed payloads.
2.  `decompress_members` visits the candidates in ascending order, decodes a
    single member starting at each one, and appends the plaintext of members
    that decode cleanly. Candidates that fail to decode are discarded in full.

Both steps work on seekable binary file objects. A forward-only stream (such
as a botocore `StreamingBody`) is first buffered by `ensure_seekable`.
"""

import logging
import shutil
import zlib
from contextlib import closing
from dataclasses import dataclass
from tempfile import SpooledTemporaryFile
from typing import TYPE_CHECKING, BinaryIO, Iterable, cast

if TYPE_CHECKING:
    from .indexer import Deadline

logger = logging.getLogger(__name__)

GZIP_ID1 = 0x1F
GZIP_ID2 = 0x8B
DEFLATE_METHOD = 0x08
# Only flag bits 0-4 are defined; 0x20 is a deliberately loose upper bound.
MAX_GZIP_FLAGS = 0x20
# XFL values a deflate encoder may write: unknown, maximum, fastest.
DEFLATE_EXTRA_FLAGS = frozenset({0x00, 0x02, 0x04})
HEADER_LENGTH = 10

_MAGIC = bytes((GZIP_ID1, GZIP_ID2, DEFLATE_METHOD))
_CHUNK_SIZE = 64 * 1024
_GZIP_WBITS = 16 + zlib.MAX_WBITS


def is_header_candidate(header: bytes) -> bool:
    """
    Returns True if *header* could be the first ten bytes of a gzip member.

    Fewer than ten bytes (end of source) never qualify.
    """
    if len(header) < HEADER_LENGTH:
        return False

    # Check the id tokens and compression method
    if header[0] != GZIP_ID1 or header[1] != GZIP_ID2 or header[2] != DEFLATE_METHOD:
        return False

    if header[3] > MAX_GZIP_FLAGS:
        return False

    return header[8] in DEFLATE_EXTRA_FLAGS


def ensure_seekable(stream: BinaryIO, spool_threshold: int) -> BinaryIO:
    """
    Return *stream* unchanged if it supports random access, otherwise copy it
    into a SpooledTemporaryFile (in-RAM up to *spool_threshold*, then /tmp)
    and return the copy rewound to the start.
    """
    seekable = getattr(stream, "seekable", None)
    if seekable is not None and seekable():
        return stream

    tmp = SpooledTemporaryFile(max_size=spool_threshold, mode="w+b")
    copied = 0
    for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
        tmp.write(chunk)
        copied += len(chunk)

    tmp.seek(0)
    logger.debug("Buffered forward-only stream.", extra={"bytes": copied})
    return cast(BinaryIO, tmp)


def scan_member_offsets(source: BinaryIO, chunk_size: int = _CHUNK_SIZE) -> list[int]:
    """
    Return every offset in *source* at which a gzip header candidate begins,
    in increasing order.

    The source is read in chunks that overlap by nine bytes so a header
    straddling a chunk boundary is still tested as a whole. The read
    position of *source* is restored before returning.
    """
    if chunk_size < HEADER_LENGTH:
        raise ValueError(f"chunk_size must be at least {HEADER_LENGTH} bytes")

    origin = source.tell()
    source.seek(0)
    offsets: list[int] = []

    try:
        window = b""
        window_start = 0  # absolute offset of window[0]
        eof = False
        while not eof:
            chunk = source.read(chunk_size)
            eof = not chunk
            window += chunk

            # Positions whose full header is inside the window, or every
            # remaining position once the source is exhausted.
            last = len(window) if eof else len(window) - HEADER_LENGTH + 1
            pos = window.find(_MAGIC, 0, max(last, 0) + len(_MAGIC) - 1)
            while pos != -1 and pos < last:
                if is_header_candidate(window[pos : pos + HEADER_LENGTH]):
                    offsets.append(window_start + pos)
                pos = window.find(_MAGIC, pos + 1, max(last, 0) + len(_MAGIC) - 1)

            if not eof and last > 0:
                window_start += last
                window = window[last:]
    finally:
        source.seek(origin)

    return offsets


@dataclass
class ReconstructedStream:
    """
    The plaintext of every member that decoded cleanly, in file order.

    `reader` is a seekable binary file positioned at its start. The caller
    owns it and must close it (or use the stream as a context manager).
    """

    reader: BinaryIO
    candidates: int = 0
    members_decoded: int = 0
    members_failed: int = 0
    bytes_out: int = 0

    def close(self) -> None:
        self.reader.close()

    def __enter__(self) -> "ReconstructedStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _decode_member(source: BinaryIO, offset: int, sink: BinaryIO) -> bool:
    """
    Decode the single gzip member starting at *offset* into *sink*.

    Returns True only when the member's end-of-stream marker was reached.
    """
    source.seek(offset)
    decoder = zlib.decompressobj(wbits=_GZIP_WBITS)
    while not decoder.eof:
        chunk = source.read(_CHUNK_SIZE)
        if not chunk:
            return False  # truncated member
        sink.write(decoder.decompress(chunk))
    sink.write(decoder.flush())
    return True


def decompress_members(
    source: BinaryIO,
    offsets: Iterable[int],
    spool_threshold: int,
    deadline: "Deadline | None" = None,
) -> ReconstructedStream:
    """
    Decode a gzip member at each candidate offset and concatenate the results.

    Members are visited in ascending offset order so lines keep their order
    across members. A candidate that fails to decode is skipped and counted;
    any partial output it produced is discarded and never reaches the result.
    A *deadline* is checked before each candidate; once spent it raises
    `IndexingTimeoutError`.
    """
    ordered = sorted(set(offsets))
    output = cast(BinaryIO, SpooledTemporaryFile(max_size=spool_threshold, mode="w+b"))
    result = ReconstructedStream(reader=output, candidates=len(ordered))

    try:
        for offset in ordered:
            if deadline is not None:
                deadline.budget_ms()
            scratch = cast(
                BinaryIO, SpooledTemporaryFile(max_size=spool_threshold, mode="w+b")
            )
            with closing(scratch):
                try:
                    complete = _decode_member(source, offset, scratch)
                except zlib.error as e:
                    logger.debug(
                        "Discarding gzip candidate that failed to decode.",
                        extra={"offset": offset, "error": str(e)},
                    )
                    result.members_failed += 1
                    continue

                if not complete:
                    logger.debug(
                        "Discarding truncated gzip candidate.",
                        extra={"offset": offset},
                    )
                    result.members_failed += 1
                    continue

                size = scratch.tell()
                scratch.seek(0)
                shutil.copyfileobj(scratch, output, _CHUNK_SIZE)
                result.members_decoded += 1
                result.bytes_out += size
    except BaseException:
        output.close()
        raise

    output.seek(0)
    if result.members_failed:
        logger.info(
            "Skipped gzip candidates that did not decode.",
            extra={
                "candidates": result.candidates,
                "members_decoded": result.members_decoded,
                "members_failed": result.members_failed,
            },
        )
    return result


def reconstruct_stream(
    stream: BinaryIO, spool_threshold: int, deadline: "Deadline | None" = None
) -> ReconstructedStream:
    """Buffer (if needed), scan, and decode a multi-member gzip stream."""
    source = ensure_seekable(stream, spool_threshold)
    try:
        offsets = scan_member_offsets(source)
        logger.debug("Gzip header scan finished.", extra={"candidates": len(offsets)})
        return decompress_members(source, offsets, spool_threshold, deadline=deadline)
    finally:
        if source is not stream:
            source.close()
