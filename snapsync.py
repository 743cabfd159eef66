#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
snapsync: Changed-Block Replication for Snapshotted Block Devices
=================================================================

Replicates only the byte ranges of an origin block device that changed since
a point-in-time snapshot was taken, to a second block device that is either
local or reachable through a remote shell.

Quick Start:
-----------
    >>> from snapsync import (
    ...     ByteRange, FileBlockDevice, MemoryBlockDevice, Receiver,
    ...     Sender, StreamChannel,
    ... )
    >>> import io
    >>>
    >>> buf = io.BytesIO()
    >>> with FileBlockDevice("/dev/vg0/data") as origin:
    ...     Sender().send(origin, [ByteRange(0, 4096)], StreamChannel(buf))
    >>>
    >>> buf.seek(0)
    >>> receiver = Receiver()
    >>> channel = StreamChannel(buf)
    >>> receiver.accept_handshake(channel)
    >>> receiver.apply(channel, MemoryBlockDevice(8192))

Wire Protocol:
-------------
    handshake   "snapsync PROTO[2]\\n"
    chunk       offset:uint64 BE | length:uint32 BE | payload (length bytes)
    ...         chunks repeat until end-of-stream; there is no trailer

Snapback:
--------
    While applying, the receiver can capture the bytes it is about to
    overwrite. The capture uses the same wire format, so feeding it back into
    `snapsync apply` restores the destination to its previous contents.

CLI Usage:
---------
    $ snapsync send /dev/vg0/data-snap backup:/dev/vg1/data --thin-delta delta.xml
    $ snapsync send /dev/vg0/data - --ranges changes.json > data.diff
    $ snapsync apply data.diff /dev/vg1/data --snapback data.undo
    $ snapsync apply data.undo /dev/vg1/data
    $ snapsync verify /dev/vg0/data /dev/vg1/data --ranges changes.json

License: GPLv3+
"""

from __future__ import annotations

__version__ = "1.0.0"
__license__ = "GPL-3.0-or-later"

# Public API exports
__all__ = [
    # Core engine
    'Sender',
    'Receiver',
    'ReceiverState',
    'SnapbackLog',
    'run_send',
    'run_apply',
    'iter_chunk_headers',

    # Data structures
    'ByteRange',
    'ChunkHeader',
    'TransferStats',
    'SendConfig',
    'ApplyConfig',

    # Codec
    'encode_handshake',
    'check_handshake',
    'encode_chunk_header',
    'decode_chunk_header',
    'read_chunk_header',

    # Devices
    'SeekResult',
    'BlockDevice',
    'FileBlockDevice',
    'MemoryBlockDevice',

    # Channels
    'ByteChannel',
    'StreamChannel',
    'FileChannel',
    'StdioChannel',
    'ProcessChannel',
    'read_exact',
    'split_remote',
    'build_peer_command',
    'open_send_channel',
    'open_apply_channel',

    # Difference sources
    'DifferenceSource',
    'RangeListSource',
    'ThinDeltaSource',

    # Verification
    'clip_ranges',
    'range_digest',
    'verify_replica',

    # Progress reporting
    'ProgressObserver',
    'ConsoleProgress',

    # Exceptions
    'SnapSyncError',
    'ValidationError',
    'ProtocolMismatchError',
    'ProtocolError',
    'FileIOError',
    'TransportError',

    # Configuration
    'Config',
    'Colors',

    # Protocol constants
    'PROTOCOL_VERSION',
    'HANDSHAKE',
    'CHUNK_HEADER_SIZE',
    'MAX_CHUNK_OFFSET',
    'MAX_CHUNK_LENGTH',
    'BYTE_OFFSET_UNIT',

    # Utility functions
    'format_size',
    'format_time',

    # CLI
    'create_parser',
    'main',
]

import os
import argparse
import sys
import json
import shlex
import struct
import logging
import subprocess
import time
import xml.etree.ElementTree as ElementTree
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, BinaryIO, ClassVar, Dict, Iterable, Iterator, List, Optional,
    Sequence, Tuple, Union,
)

import xxhash

# ============================================================================
# PROTOCOL CONSTANTS
# ============================================================================
#
# A stream is one handshake line followed by zero or more chunk records.
#
#   +--------------------+--------------------+---------------------+
#   | offset (uint64 BE) | length (uint32 BE) | payload (length B)  |
#   +--------------------+--------------------+---------------------+

PROTOCOL_VERSION = "snapsync PROTO[2]"
HANDSHAKE = (PROTOCOL_VERSION + "\n").encode("ascii")

_CHUNK_HEADER = struct.Struct('>QI')
CHUNK_HEADER_SIZE = _CHUNK_HEADER.size  # 12 bytes
MAX_CHUNK_OFFSET = 0xFFFFFFFFFFFFFFFF
MAX_CHUNK_LENGTH = 0xFFFFFFFF

# Multiplier the receiver applies to a wire offset before positioning the
# destination. Wire offsets are byte offsets, so the unit is 1.
BYTE_OFFSET_UNIT = 1

# thin_delta reports data block sizes in 512-byte sectors
SECTOR_SIZE = 512

DEFAULT_PROGRESS_INTERVAL = 100


# ============================================================================
# GLOBAL CONFIGURATION - Performance and behavior tuning
# ============================================================================

class Config:
    """
    Global tuning knobs for snapsync.

    Operation-specific settings live in `SendConfig` and `ApplyConfig`; this
    class only holds process-wide presentation and I/O sizing.

    Attributes:
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Start the module logger at INFO level
        IO_CHUNK_SIZE (int): Largest piece copied between device and channel
        PROGRESS_INTERVAL (int): Chunks between console progress lines

    Example:
        >>> Config.IO_CHUNK_SIZE = 64 * 1024
        >>> Config.reset_defaults()
    """
    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False
    IO_CHUNK_SIZE: ClassVar[int] = 1024 * 1024
    PROGRESS_INTERVAL: ClassVar[int] = DEFAULT_PROGRESS_INTERVAL

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
            "IO_CHUNK_SIZE": 1024 * 1024,
            "PROGRESS_INTERVAL": DEFAULT_PROGRESS_INTERVAL,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

_default_log_level = logging.INFO if Config.VERBOSE_LOGGING else logging.WARNING
logging.basicConfig(
    level=_default_log_level,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('snapsync')
logger.setLevel(_default_log_level)


# ============================================================================
# UTILITY FUNCTIONS - Formatting and helpers
# ============================================================================

def format_size(size: float) -> str:
    """
    Format byte size in human-readable format.

    Example:
        >>> format_size(1234567890)
        '1.15 GB'
    """
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if abs(size) < 1024.0:
            return f"{size:.2f} {unit}" if unit != 'B' else f"{int(size)} {unit}"
        size = size / 1024.0
    return f"{size:.2f} PB"


def format_time(seconds: float) -> str:
    """
    Format time duration in human-readable format.

    Example:
        >>> format_time(0.00123)
        '1.23ms'
    """
    if seconds < 0.001:
        return f"{seconds * 1000000:.0f}µs"
    elif seconds < 1.0:
        return f"{seconds * 1000:.2f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


# ============================================================================
# TERMINAL COLORS - For CLI output (auto-detects TTY)
# ============================================================================

class Colors:
    """
    ANSI color helpers for diagnostics.

    Disabled when stderr is not a TTY or `Config.USE_COLORS` is False, so
    piped output stays plain.

    Example:
        >>> print(Colors.success("Applied 12 chunks"))
        [OK] Applied 12 chunks
    """
    _RESET = '\033[0m'
    _RED = '\033[91m'
    _GREEN = '\033[92m'
    _YELLOW = '\033[93m'

    @classmethod
    def _is_enabled(cls) -> bool:
        if not Config.USE_COLORS:
            return False
        return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()

    @classmethod
    def success(cls, text: str) -> str:
        """Format text as success (green with checkmark)."""
        if cls._is_enabled():
            return f"{cls._GREEN}✓{cls._RESET} {text}"
        return f"[OK] {text}"

    @classmethod
    def error(cls, text: str) -> str:
        """Format text as error (red with X)."""
        if cls._is_enabled():
            return f"{cls._RED}✗{cls._RESET} {text}"
        return f"[ERROR] {text}"

    @classmethod
    def warning(cls, text: str) -> str:
        """Format text as warning (yellow with !)."""
        if cls._is_enabled():
            return f"{cls._YELLOW}⚠{cls._RESET} {text}"
        return f"[WARN] {text}"


# ============================================================================
# CUSTOM EXCEPTIONS - Hierarchical exception system
# ============================================================================

class SnapSyncError(Exception):
    """
    Base exception for all snapsync errors.

    Attributes:
        message: Human-readable error description
        code: Process exit status the CLI reports for this error
    """
    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(SnapSyncError):
    """
    Raised when input validation fails.

    Covers malformed ranges, values that do not fit the chunk header fields,
    and unreadable difference lists.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=2)


class ProtocolMismatchError(SnapSyncError):
    """
    Raised when the peer's handshake line is not ours.

    The destination device is never opened when this is raised.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=4)


class ProtocolError(SnapSyncError):
    """Raised when a stream is used out of order or is otherwise malformed."""
    def __init__(self, message: str, code: int = 5) -> None:
        super().__init__(message, code)


class FileIOError(SnapSyncError):
    """
    Raised for device and file I/O errors.

    This wraps OS-level errors with the path or location involved.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=6)


class TransportError(SnapSyncError):
    """Raised when a spawned peer cannot be started or exits unsuccessfully."""
    def __init__(self, message: str) -> None:
        super().__init__(message, code=7)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class ByteRange:
    """
    A contiguous span of changed bytes on the origin device.

    Attributes:
        start: Byte offset of the first changed byte
        length: Number of changed bytes (always positive)

    Example:
        >>> ByteRange.from_inclusive(1024, 1535)
        ByteRange(start=1024, length=512)
    """
    start: int
    length: int

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValidationError(f"Range start must be non-negative, got {self.start}")
        if self.length <= 0:
            raise ValidationError(f"Range length must be positive, got {self.length}")

    @property
    def end(self) -> int:
        """Offset one past the last byte of the range."""
        return self.start + self.length

    @classmethod
    def from_inclusive(cls, first: int, last: int) -> 'ByteRange':
        """Build a range from an inclusive ``[first, last]`` pair."""
        for value in (first, last):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"Range bounds must be integers, got {value!r}")
        return cls(first, last - first + 1)


@dataclass(frozen=True)
class ChunkHeader:
    """
    Fixed-width header preceding every chunk payload on the wire.

    Attributes:
        offset: Location of the payload, in wire offset units
        length: Exact number of payload bytes that follow the header
    """
    offset: int
    length: int

    def pack(self) -> bytes:
        return encode_chunk_header(self.offset, self.length)


@dataclass
class TransferStats:
    """
    Running totals for one send or apply operation.

    Attributes:
        chunks: Chunks emitted (sender) or written (receiver)
        bytes_transferred: Payload bytes emitted or written
        skipped_chunks: Chunks discarded because they lie past the device end
        skipped_bytes: Payload bytes discarded with those chunks
        snapback_bytes: Pre-image bytes captured into a snapback log
        device_size: Size of the origin (sender) or destination (receiver)
        started: Monotonic timestamp when the operation began
        finished: Monotonic timestamp when the operation ended, if it has
    """
    chunks: int = 0
    bytes_transferred: int = 0
    skipped_chunks: int = 0
    skipped_bytes: int = 0
    snapback_bytes: int = 0
    device_size: int = 0
    started: float = field(default_factory=time.monotonic)
    finished: Optional[float] = None

    def record_chunk(self, length: int) -> None:
        self.chunks += 1
        self.bytes_transferred += length

    def record_skip(self, length: int) -> None:
        self.skipped_chunks += 1
        self.skipped_bytes += length

    def finish(self) -> None:
        self.finished = time.monotonic()

    @property
    def headers_seen(self) -> int:
        """Chunk headers handled, whether written or skipped."""
        return self.chunks + self.skipped_chunks

    @property
    def elapsed(self) -> float:
        end = self.finished if self.finished is not None else time.monotonic()
        return max(0.0, end - self.started)

    @property
    def throughput(self) -> float:
        """Average payload bytes per second."""
        elapsed = self.elapsed
        return self.bytes_transferred / elapsed if elapsed > 0 else 0.0

    @property
    def efficiency(self) -> float:
        """Share of the full device that was transferred (lower is better)."""
        if self.device_size <= 0:
            return 0.0
        return self.bytes_transferred / self.device_size

    def __repr__(self) -> str:
        return (
            f"TransferStats(chunks={self.chunks}, bytes={self.bytes_transferred}, "
            f"skipped={self.skipped_chunks}, efficiency={self.efficiency:.1%})"
        )


@dataclass(frozen=True)
class SendConfig:
    """
    Settings for one send operation.

    Attributes:
        origin: Path of the origin (or snapshot) device to read from
        destination: ``-`` for stdout, ``host:/path`` for a remote device,
            or a local device path; ignored when `output` is set
        output: Write the stream to this file instead of a peer
        snapback: Snapback log path handed to the receiving peer
        progress_interval: Chunks between progress reports
        rsh: Remote shell command used for ``host:/path`` destinations
        remote_command: Command that runs snapsync on the remote host
    """
    origin: str
    destination: str = "-"
    output: Optional[str] = None
    snapback: Optional[str] = None
    progress_interval: int = DEFAULT_PROGRESS_INTERVAL
    rsh: Tuple[str, ...] = ("ssh",)
    remote_command: Tuple[str, ...] = ("snapsync",)


@dataclass(frozen=True)
class ApplyConfig:
    """
    Settings for one apply operation.

    Attributes:
        source: Path of the diff stream, or ``-`` for standard input
        device: Destination device path, opened for in-place writes
        snapback: Capture pre-overwrite bytes into this file when set
        offset_unit: Multiplier applied to wire offsets before positioning
    """
    source: str
    device: str
    snapback: Optional[str] = None
    offset_unit: int = BYTE_OFFSET_UNIT


# ============================================================================
# CODEC - Handshake and chunk header framing
# ============================================================================

def encode_handshake() -> bytes:
    """Return the handshake line that opens every stream."""
    return HANDSHAKE


def check_handshake(line: bytes) -> bool:
    """Byte-for-byte comparison of a received line with our handshake."""
    return line == HANDSHAKE


def encode_chunk_header(offset: int, length: int) -> bytes:
    """
    Encode a chunk header.

    Args:
        offset: Payload location, must fit an unsigned 64-bit field
        length: Payload size, must fit an unsigned 32-bit field

    Returns:
        12 bytes: big-endian uint64 offset followed by big-endian uint32 length

    Raises:
        ValidationError: If either value is negative or too large

    Example:
        >>> encode_chunk_header(1024, 512).hex()
        '000000000000040000000200'
    """
    if not 0 <= offset <= MAX_CHUNK_OFFSET:
        raise ValidationError(f"Chunk offset out of range: {offset}")
    if not 0 <= length <= MAX_CHUNK_LENGTH:
        raise ValidationError(f"Chunk length out of range: {length}")
    return _CHUNK_HEADER.pack(offset, length)


def decode_chunk_header(data: bytes) -> Optional[ChunkHeader]:
    """
    Decode a chunk header.

    Input shorter than a full header means the stream ended, so it yields
    None rather than an error. Bytes beyond the header are ignored.
    """
    if len(data) < CHUNK_HEADER_SIZE:
        return None
    offset, length = _CHUNK_HEADER.unpack(data[:CHUNK_HEADER_SIZE])
    return ChunkHeader(offset, length)


def read_chunk_header(channel: 'ByteChannel') -> Optional[ChunkHeader]:
    """Read the next chunk header from a channel, or None at end-of-stream."""
    data = read_exact(channel, CHUNK_HEADER_SIZE)
    if 0 < len(data) < CHUNK_HEADER_SIZE:
        logger.warning(f"Stream ended inside a chunk header ({len(data)} of {CHUNK_HEADER_SIZE} bytes)")
    return decode_chunk_header(data)


def iter_chunk_headers(ranges: Iterable[ByteRange]) -> Iterator[ChunkHeader]:
    """
    Frame an ascending sequence of ranges as chunk headers.

    A range longer than `MAX_CHUNK_LENGTH` is framed as several consecutive
    chunks.

    Raises:
        ValidationError: If ranges overlap or are not in ascending order
    """
    previous_end: Optional[int] = None
    for byte_range in ranges:
        if previous_end is not None and byte_range.start < previous_end:
            raise ValidationError(
                f"Ranges must be ascending and non-overlapping: {byte_range} "
                f"starts before offset {previous_end}"
            )
        previous_end = byte_range.end

        offset = byte_range.start
        remaining = byte_range.length
        while remaining > 0:
            length = min(remaining, MAX_CHUNK_LENGTH)
            yield ChunkHeader(offset, length)
            offset += length
            remaining -= length


# ============================================================================
# BLOCK DEVICES - Fixed-size random-access byte stores
# ============================================================================

class SeekResult(Enum):
    """Outcome of positioning a device cursor."""
    POSITIONED = "positioned"
    OUT_OF_BOUNDS = "out_of_bounds"


class BlockDevice(ABC):
    """
    Abstract fixed-size random-access byte store.

    Positioning never raises for a location past the end; it reports
    `SeekResult.OUT_OF_BOUNDS` instead so callers can branch on it. Writes
    never grow the device: bytes past the end are dropped and the return
    value says how many were stored.

    Example:
        >>> with FileBlockDevice("/dev/vg0/data", writable=True) as dev:
        ...     if dev.seek(4096) is SeekResult.POSITIONED:
        ...         dev.write(b"\\0" * 512)
    """

    @property
    @abstractmethod
    def size(self) -> int:
        """Total addressable size in bytes."""
        raise NotImplementedError

    @abstractmethod
    def seek(self, offset: int) -> SeekResult:
        """
        Move the cursor to a byte offset.

        Args:
            offset: Byte offset from the start of the device

        Returns:
            POSITIONED, or OUT_OF_BOUNDS if the offset is at or past the end
        """
        raise NotImplementedError

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Read up to size bytes from the cursor (empty at the end)."""
        raise NotImplementedError

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write at the cursor, returning the number of bytes stored."""
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        """Close the device and release resources."""
        pass

    def __enter__(self) -> 'BlockDevice':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class FileBlockDevice(BlockDevice):
    """
    BlockDevice backed by a block special file or a regular image file.

    The file is opened on `open()` (or entering the context) and is never
    created: a missing destination is an error. Its size is measured once by
    seeking to the end, which also works for block special files where
    ``os.path.getsize`` reports zero.

    Example:
        >>> with FileBlockDevice("/dev/vg0/data-snap") as origin:
        ...     print(format_size(origin.size))
    """

    def __init__(self, path: str, writable: bool = False) -> None:
        self.path = path
        self.writable = writable
        self._file: Optional[BinaryIO] = None
        self._size = 0

    def open(self) -> 'FileBlockDevice':
        if self._file is not None:
            return self
        mode = 'r+b' if self.writable else 'rb'
        try:
            self._file = open(self.path, mode)
            self._file.seek(0, os.SEEK_END)
            self._size = self._file.tell()
            self._file.seek(0, os.SEEK_SET)
        except OSError as e:
            self.close()
            raise FileIOError(f"Cannot open device {self.path}: {e}")
        logger.debug(f"Opened {self.path} ({mode}, {self._size} bytes)")
        return self

    def __enter__(self) -> 'FileBlockDevice':
        return self.open()

    @property
    def _handle(self) -> BinaryIO:
        if self._file is None:
            raise RuntimeError("Device not opened. Use 'with' statement.")
        return self._file

    @property
    def size(self) -> int:
        return self._size

    def seek(self, offset: int) -> SeekResult:
        if offset < 0 or offset >= self._size:
            return SeekResult.OUT_OF_BOUNDS
        try:
            self._handle.seek(offset, os.SEEK_SET)
        except OSError as e:
            raise FileIOError(f"Cannot seek {self.path} to {offset}: {e}")
        return SeekResult.POSITIONED

    def read(self, size: int) -> bytes:
        try:
            return self._handle.read(size)
        except OSError as e:
            raise FileIOError(f"Read error on {self.path}: {e}")

    def write(self, data: bytes) -> int:
        handle = self._handle
        try:
            room = self._size - handle.tell()
            if room <= 0:
                return 0
            if len(data) > room:
                data = data[:room]
            handle.write(data)
        except OSError as e:
            raise FileIOError(f"Write error on {self.path}: {e}")
        return len(data)

    def flush(self) -> None:
        if self._file is None or not self.writable:
            return
        try:
            self._file.flush()
            os.fsync(self._file.fileno())
        except OSError as e:
            raise FileIOError(f"Cannot flush {self.path}: {e}")

    def close(self) -> None:
        """Close the file handle."""
        if self._file is not None:
            handle = self._file
            self._file = None
            handle.close()


class MemoryBlockDevice(BlockDevice):
    """
    In-memory BlockDevice over a fixed-size bytearray.

    Example:
        >>> dev = MemoryBlockDevice(b"abcdef")
        >>> dev.seek(4)
        <SeekResult.POSITIONED: 'positioned'>
        >>> dev.write(b"XYZ")
        2
        >>> dev.data
        b'abcdXY'
    """

    def __init__(self, data: Union[bytes, bytearray, int]) -> None:
        # An int gives a zero-filled device of that size
        self._data = bytearray(data)
        self._position = 0

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    def seek(self, offset: int) -> SeekResult:
        if offset < 0 or offset >= len(self._data):
            return SeekResult.OUT_OF_BOUNDS
        self._position = offset
        return SeekResult.POSITIONED

    def read(self, size: int) -> bytes:
        chunk = bytes(self._data[self._position:self._position + size])
        self._position += len(chunk)
        return chunk

    def write(self, data: bytes) -> int:
        room = len(self._data) - self._position
        count = max(0, min(len(data), room))
        self._data[self._position:self._position + count] = data[:count]
        self._position += count
        return count


# ============================================================================
# CHANNELS - Ordered, reliable, blocking byte transports
# ============================================================================

class ByteChannel(ABC):
    """
    One direction of a byte stream between sender and receiver.

    The core only needs ordered, blocking reads and writes; whether the bytes
    travel through a file, a pipe to a local peer or a remote shell is up to
    the concrete channel.
    """

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Read up to size bytes; empty bytes means end-of-stream."""
        raise NotImplementedError

    @abstractmethod
    def readline(self, limit: int = -1) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> 'ByteChannel':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def read_exact(channel: ByteChannel, size: int) -> bytes:
    """
    Read exactly size bytes, or fewer only if the stream ends first.

    Pipes may return short reads, so this keeps reading until the request is
    satisfied or the channel reports end-of-stream.
    """
    if size <= 0:
        return b""
    data = channel.read(size)
    if len(data) == size or not data:
        return data
    parts = [data]
    remaining = size - len(data)
    while remaining > 0:
        piece = channel.read(remaining)
        if not piece:
            break
        parts.append(piece)
        remaining -= len(piece)
    return b"".join(parts)


class StreamChannel(ByteChannel):
    """
    ByteChannel over an already-open binary file object.

    Args:
        stream: Any binary file object (file, pipe, ``io.BytesIO``)
        close_stream: Close the stream when the channel closes
    """

    def __init__(self, stream: BinaryIO, close_stream: bool = False) -> None:
        self.stream = stream
        self.close_stream = close_stream

    def read(self, size: int) -> bytes:
        try:
            data = self.stream.read(size)
        except OSError as e:
            raise FileIOError(f"Read error on input stream: {e}")
        return data

    def readline(self, limit: int = -1) -> bytes:
        try:
            line = self.stream.readline(limit)
        except OSError as e:
            raise FileIOError(f"Read error on input stream: {e}")
        return line

    def write(self, data: bytes) -> None:
        try:
            self.stream.write(data)
        except BrokenPipeError as e:
            raise TransportError(f"Output stream closed by peer: {e}")
        except OSError as e:
            raise FileIOError(f"Write error on output stream: {e}")

    def flush(self) -> None:
        try:
            self.stream.flush()
        except BrokenPipeError as e:
            raise TransportError(f"Output stream closed by peer: {e}")
        except OSError as e:
            raise FileIOError(f"Cannot flush output stream: {e}")

    def close(self) -> None:
        if self.close_stream and not self.stream.closed:
            self.stream.close()


class FileChannel(StreamChannel):
    """ByteChannel over a local file, opened for reading ('rb') or writing ('wb')."""

    def __init__(self, path: str, mode: str = 'rb') -> None:
        if mode not in ('rb', 'wb'):
            raise ValidationError(f"FileChannel mode must be 'rb' or 'wb', got {mode!r}")
        self.path = path
        try:
            stream = open(path, mode)
        except OSError as e:
            raise FileIOError(f"Cannot open {path}: {e}")
        super().__init__(stream, close_stream=True)

    def close(self) -> None:
        try:
            if not self.stream.closed and self.stream.writable():
                self.flush()
        finally:
            super().close()


class StdioChannel(StreamChannel):
    """ByteChannel over this process's standard input or output; never closes them."""

    def __init__(self, mode: str = 'rb') -> None:
        if mode == 'rb':
            stream = sys.stdin.buffer
        elif mode == 'wb':
            stream = sys.stdout.buffer
        else:
            raise ValidationError(f"StdioChannel mode must be 'rb' or 'wb', got {mode!r}")
        super().__init__(stream, close_stream=False)
        self.mode = mode

    def close(self) -> None:
        if self.mode == 'wb':
            self.flush()


class ProcessChannel(ByteChannel):
    """
    ByteChannel to a spawned peer process.

    In 'wb' mode the stream is written to the peer's standard input (the
    usual sender setup, where the peer runs ``snapsync apply -``); in 'rb'
    mode it is read from the peer's standard output. The peer's standard
    error is inherited so its diagnostics reach the user.

    Closing the channel waits for the peer and raises `TransportError` if it
    exited unsuccessfully.

    Example:
        >>> argv = ["ssh", "backup", "snapsync", "apply", "-", "/dev/vg1/data"]
        >>> with ProcessChannel(argv) as channel:
        ...     Sender().send(origin, ranges, channel)
    """

    def __init__(self, argv: Sequence[str], mode: str = 'wb') -> None:
        if mode not in ('rb', 'wb'):
            raise ValidationError(f"ProcessChannel mode must be 'rb' or 'wb', got {mode!r}")
        self.argv = list(argv)
        self.mode = mode
        logger.info(f"Spawning peer: {' '.join(shlex.quote(a) for a in self.argv)}")
        try:
            if mode == 'wb':
                self._proc: Optional[subprocess.Popen[bytes]] = subprocess.Popen(
                    self.argv, stdin=subprocess.PIPE
                )
                pipe = self._proc.stdin
            else:
                self._proc = subprocess.Popen(self.argv, stdout=subprocess.PIPE)
                pipe = self._proc.stdout
        except OSError as e:
            raise TransportError(f"Cannot start peer {self.argv[0]!r}: {e}")
        assert pipe is not None
        self._pipe: BinaryIO = pipe

    def read(self, size: int) -> bytes:
        try:
            return self._pipe.read(size)
        except OSError as e:
            raise TransportError(f"Read error from peer: {e}")

    def readline(self, limit: int = -1) -> bytes:
        try:
            return self._pipe.readline(limit)
        except OSError as e:
            raise TransportError(f"Read error from peer: {e}")

    def write(self, data: bytes) -> None:
        try:
            self._pipe.write(data)
        except OSError as e:
            raise TransportError(f"Peer stopped accepting data: {e}")

    def flush(self) -> None:
        try:
            self._pipe.flush()
        except OSError as e:
            raise TransportError(f"Peer stopped accepting data: {e}")

    def _reap(self) -> Tuple[int, bool]:
        """Close our end of the pipe and wait; returns (exit status, pipe was broken)."""
        proc = self._proc
        assert proc is not None
        self._proc = None
        broken = False
        try:
            self._pipe.close()
        except BrokenPipeError:
            broken = True
        return proc.wait(), broken

    def close(self) -> None:
        if self._proc is None:
            return
        returncode, broken = self._reap()
        if returncode != 0:
            raise TransportError(f"Peer {self.argv[0]!r} exited with status {returncode}")
        if broken:
            raise TransportError("Peer closed the channel before the stream was complete")

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            self.close()
            return
        # A failed transfer keeps its own exception; the peer status is only logged
        if self._proc is None:
            return
        returncode, broken = self._reap()
        logger.warning(
            f"Peer {self.argv[0]!r} exited with status {returncode} after the transfer "
            f"was aborted{' (pipe broken)' if broken else ''}"
        )


def split_remote(destination: str) -> Tuple[Optional[str], str]:
    """
    Split ``host:/path`` into ``(host, path)``; local paths give ``(None, path)``.

    A colon in the second position is a Windows drive letter, not a host.
    """
    if ':' in destination and not destination.startswith('/'):
        if not (len(destination) >= 2 and destination[1] == ':'):
            host, path = destination.split(':', 1)
            if host and path:
                return host, path
    return None, destination


def build_peer_command(config: SendConfig) -> List[str]:
    """
    Command line of the receiving peer for a device destination.

    Remote peers run `config.remote_command` through `config.rsh`; their
    arguments are shell-quoted because the remote shell re-parses them. Local
    peers run this module with the current interpreter.
    """
    host, path = split_remote(config.destination)
    apply_args = ["apply", "-", path, "--quiet"]
    if config.snapback:
        apply_args += ["--snapback", config.snapback]

    if host is None:
        return [sys.executable, os.path.abspath(__file__)] + apply_args
    remote = list(config.remote_command) + apply_args
    return list(config.rsh) + [host] + [shlex.quote(arg) for arg in remote]


def open_send_channel(config: SendConfig) -> ByteChannel:
    """
    Pick the channel a send operation writes its stream into.

    Raises:
        ValidationError: If a snapback path is given but no peer applies the
            stream, since nothing would capture the pre-images
    """
    if config.snapback and (config.output is not None or config.destination == '-'):
        raise ValidationError(
            "--snapback needs a device destination; when writing a stream file or "
            "stdout, pass --snapback to 'snapsync apply' instead"
        )
    if config.output is not None:
        return FileChannel(config.output, 'wb')
    if config.destination == '-':
        return StdioChannel('wb')
    return ProcessChannel(build_peer_command(config), 'wb')


def open_apply_channel(source: str) -> ByteChannel:
    """Pick the channel an apply operation reads its stream from."""
    if source == '-':
        return StdioChannel('rb')
    return FileChannel(source, 'rb')


# ============================================================================
# PROGRESS REPORTING - Observer invoked by sender and receiver
# ============================================================================

class ProgressObserver:
    """No-op observer; subclasses override the hooks they need."""

    def on_start(self, stats: TransferStats) -> None:
        pass

    def on_chunk(self, stats: TransferStats) -> None:
        pass

    def on_finish(self, stats: TransferStats) -> None:
        pass


class ConsoleProgress(ProgressObserver):
    """
    Prints a progress line every `interval` chunks and a summary at the end.

    The throughput on each progress line covers only the chunks since the
    previous line, so it reflects the current transfer rate rather than the
    average.

    Args:
        interval: Chunks between progress lines
        verb: Word describing the operation ("Sending", "Applying")
        stream: Text stream to print to (stderr, so stdout can carry data)
    """

    def __init__(self, interval: int = DEFAULT_PROGRESS_INTERVAL, verb: str = "Sending",
                 stream: Optional[Any] = None) -> None:
        self.interval = max(1, interval)
        self.verb = verb
        self.stream = stream if stream is not None else sys.stderr
        self._last_time = 0.0
        self._last_bytes = 0

    def on_start(self, stats: TransferStats) -> None:
        self._last_time = time.monotonic()
        self._last_bytes = 0

    def on_chunk(self, stats: TransferStats) -> None:
        if stats.headers_seen % self.interval != 0:
            return
        now = time.monotonic()
        delta = now - self._last_time
        rate = (stats.bytes_transferred - self._last_bytes) / delta if delta > 0 else 0.0
        self._last_time = now
        self._last_bytes = stats.bytes_transferred
        print(f"{self.verb} chunk {stats.headers_seen:,} ({format_size(rate)}/s)", file=self.stream)

    def on_finish(self, stats: TransferStats) -> None:
        print(Colors.success(
            f"Transferred {format_size(stats.bytes_transferred)} in {stats.chunks:,} chunks "
            f"in {format_time(stats.elapsed)}"
        ), file=self.stream)
        if stats.skipped_chunks:
            print(Colors.warning(
                f"Skipped {stats.skipped_chunks:,} chunks ({format_size(stats.skipped_bytes)}) "
                f"beyond the end of the device"
            ), file=self.stream)
        if stats.snapback_bytes:
            print(f"  Snapback:     {format_size(stats.snapback_bytes)}", file=self.stream)
        if stats.device_size > 0:
            print(f"  Device size:  {format_size(stats.device_size)}", file=self.stream)
            print(f"  Efficiency:   {stats.efficiency:.2%} of the device transferred", file=self.stream)
            if stats.bytes_transferred > 0:
                speedup = stats.device_size / stats.bytes_transferred
                print(f"  Speedup:      {speedup:.1f}x less data than a full copy", file=self.stream)


# ============================================================================
# SENDER - Frames changed ranges of the origin device into a stream
# ============================================================================

class Sender:
    """
    Emits the handshake and one framed chunk per changed range.

    The origin must already be open: failing to open it has to abort before
    anything is written, so that is the caller's job (see `run_send`).

    Example:
        >>> with FileBlockDevice(origin_path) as origin, FileChannel(out, 'wb') as ch:
        ...     stats = Sender().send(origin, ranges, ch)
    """

    def __init__(self, observer: Optional[ProgressObserver] = None) -> None:
        self.observer = observer if observer is not None else ProgressObserver()

    def send(self, origin: BlockDevice, ranges: Iterable[ByteRange],
             channel: ByteChannel) -> TransferStats:
        """
        Stream the given ranges of `origin` into `channel`.

        Args:
            origin: Open origin device
            ranges: Ascending, non-overlapping changed ranges
            channel: Destination of the framed stream

        Returns:
            Totals for the emitted chunks

        Raises:
            ValidationError: If the ranges are out of order
            FileIOError: If a range cannot be read in full from the origin
        """
        stats = TransferStats(device_size=origin.size)
        self.observer.on_start(stats)

        channel.write(encode_handshake())
        for header in iter_chunk_headers(ranges):
            if header.offset + header.length > origin.size:
                raise FileIOError(
                    f"Range at {header.offset} (+{header.length}) extends past the "
                    f"end of the origin ({origin.size} bytes)"
                )
            if origin.seek(header.offset) is SeekResult.OUT_OF_BOUNDS:
                raise FileIOError(f"Cannot position origin at {header.offset}")
            channel.write(header.pack())
            self._copy_payload(origin, channel, header)
            stats.record_chunk(header.length)
            self.observer.on_chunk(stats)

        channel.flush()
        stats.finish()
        logger.info(f"Sent {stats.chunks} chunks, {stats.bytes_transferred} bytes")
        self.observer.on_finish(stats)
        return stats

    def _copy_payload(self, origin: BlockDevice, channel: ByteChannel, header: ChunkHeader) -> None:
        remaining = header.length
        while remaining > 0:
            piece = origin.read(min(Config.IO_CHUNK_SIZE, remaining))
            if not piece:
                raise FileIOError(
                    f"Short read from origin at {header.offset + header.length - remaining}"
                )
            channel.write(piece)
            remaining -= len(piece)


def run_send(config: SendConfig, ranges: Iterable[ByteRange],
             observer: Optional[ProgressObserver] = None,
             channel: Optional[ByteChannel] = None) -> TransferStats:
    """
    Open the origin, then the channel, and stream the changed ranges.

    The origin is opened first so that an unreadable origin fails before a
    handshake (or a peer process) exists.

    Args:
        config: Send settings
        ranges: Changed ranges, typically `DifferenceSource.ranges()`
        observer: Progress observer
        channel: Use this channel instead of the one `config` selects
    """
    with FileBlockDevice(config.origin) as origin:
        with (channel if channel is not None else open_send_channel(config)) as out:
            return Sender(observer).send(origin, ranges, out)


# ============================================================================
# SNAPBACK LOG - Pre-images captured while applying
# ============================================================================

class SnapbackLog:
    """
    Append-only capture of bytes about to be overwritten.

    The log starts with the handshake line and holds ordinary chunk records,
    so it is itself a valid stream for `Receiver.apply`.
    """

    def __init__(self, channel: ByteChannel) -> None:
        self.channel = channel
        self.records = 0
        self.bytes_captured = 0
        self.channel.write(encode_handshake())

    @classmethod
    def create(cls, path: str) -> 'SnapbackLog':
        return cls(FileChannel(path, 'wb'))

    def begin_record(self, header: ChunkHeader) -> None:
        self.channel.write(header.pack())
        self.records += 1

    def write(self, data: bytes) -> None:
        self.channel.write(data)
        self.bytes_captured += len(data)

    def close(self) -> None:
        try:
            self.channel.flush()
        finally:
            self.channel.close()

    def __enter__(self) -> 'SnapbackLog':
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# ============================================================================
# RECEIVER - Applies a stream of chunks to a destination device
# ============================================================================

class ReceiverState(Enum):
    AWAIT_HANDSHAKE = "await_handshake"
    STREAM_CHUNKS = "stream_chunks"
    DONE = "done"
    FAILED = "failed"


class Receiver:
    """
    Applies a framed stream to a destination device.

    The receiver is a small state machine. `accept_handshake` moves it from
    AWAIT_HANDSHAKE to STREAM_CHUNKS (or FAILED); `apply` then consumes chunk
    records until the stream ends (DONE) or an I/O error occurs (FAILED).

    Chunks whose location lies at or past the end of the destination are read
    and dropped so framing stays intact; this lets a smaller (for example
    thinly provisioned) replica receive a stream meant for a larger origin.

    Args:
        offset_unit: Multiplier applied to wire offsets before positioning
        observer: Progress observer, called after every chunk
    """

    def __init__(self, offset_unit: int = BYTE_OFFSET_UNIT,
                 observer: Optional[ProgressObserver] = None) -> None:
        if offset_unit <= 0:
            raise ValidationError(f"Offset unit must be positive, got {offset_unit}")
        self.offset_unit = offset_unit
        self.observer = observer if observer is not None else ProgressObserver()
        self.state = ReceiverState.AWAIT_HANDSHAKE

    def accept_handshake(self, channel: ByteChannel) -> None:
        """
        Read and check the handshake line.

        Raises:
            ProtocolError: If called in any state but AWAIT_HANDSHAKE
            ProtocolMismatchError: If the line is not our handshake
        """
        if self.state is not ReceiverState.AWAIT_HANDSHAKE:
            raise ProtocolError(f"Handshake already processed (state {self.state.value})")
        try:
            line = channel.readline(len(HANDSHAKE))
        except SnapSyncError:
            self.state = ReceiverState.FAILED
            raise
        if not check_handshake(line):
            self.state = ReceiverState.FAILED
            raise ProtocolMismatchError(
                f"expected {HANDSHAKE!r}, got {line!r}"
            )
        logger.debug("Handshake accepted")
        self.state = ReceiverState.STREAM_CHUNKS

    def apply(self, channel: ByteChannel, device: BlockDevice,
              snapback: Optional[SnapbackLog] = None) -> TransferStats:
        """
        Apply every remaining chunk of the stream to `device`.

        Args:
            channel: Stream positioned just after the handshake
            device: Open, writable destination
            snapback: Capture pre-images here before each write

        Returns:
            Totals for written and skipped chunks

        Raises:
            ProtocolError: If the handshake has not been accepted
            FileIOError: On any device or stream I/O error
        """
        if self.state is not ReceiverState.STREAM_CHUNKS:
            raise ProtocolError(f"Cannot apply chunks in state {self.state.value}")

        stats = TransferStats(device_size=device.size)
        self.observer.on_start(stats)
        try:
            self._stream_chunks(channel, device, snapback, stats)
            device.flush()
        except BaseException:
            self.state = ReceiverState.FAILED
            raise
        self.state = ReceiverState.DONE
        stats.finish()
        logger.info(
            f"Applied {stats.chunks} chunks ({stats.bytes_transferred} bytes), "
            f"skipped {stats.skipped_chunks}"
        )
        self.observer.on_finish(stats)
        return stats

    def _stream_chunks(self, channel: ByteChannel, device: BlockDevice,
                       snapback: Optional[SnapbackLog], stats: TransferStats) -> None:
        while True:
            header = read_chunk_header(channel)
            if header is None:
                return

            location = header.offset * self.offset_unit
            if device.seek(location) is SeekResult.OUT_OF_BOUNDS:
                logger.debug(
                    f"Skipping chunk at {location} (+{header.length}): "
                    f"beyond device end ({device.size} bytes)"
                )
                dropped = self._discard(channel, header.length)
                stats.record_skip(dropped)
                self.observer.on_chunk(stats)
                if dropped < header.length:
                    logger.warning("Stream ended inside a skipped chunk")
                    return
                continue

            if snapback is not None:
                stats.snapback_bytes += self._capture(device, header, location, snapback)
                device.seek(location)

            received = self._write_payload(channel, device, header, location)
            stats.record_chunk(received)
            self.observer.on_chunk(stats)
            if received < header.length:
                logger.warning(
                    f"Stream ended inside the chunk at {location}: "
                    f"{received} of {header.length} bytes applied"
                )
                return

    def _discard(self, channel: ByteChannel, length: int) -> int:
        remaining = length
        while remaining > 0:
            piece = read_exact(channel, min(Config.IO_CHUNK_SIZE, remaining))
            if not piece:
                break
            remaining -= len(piece)
        return length - remaining

    def _capture(self, device: BlockDevice, header: ChunkHeader, location: int,
                 snapback: SnapbackLog) -> int:
        # The record keeps the wire offset so the log replays with the same unit.
        length = min(header.length, device.size - location)
        snapback.begin_record(ChunkHeader(header.offset, length))
        remaining = length
        while remaining > 0:
            piece = device.read(min(Config.IO_CHUNK_SIZE, remaining))
            if not piece:
                raise FileIOError(f"Short read capturing snapback at {location + length - remaining}")
            snapback.write(piece)
            remaining -= len(piece)
        return length

    def _write_payload(self, channel: ByteChannel, device: BlockDevice,
                       header: ChunkHeader, location: int) -> int:
        received = 0
        clipped = False
        while received < header.length:
            piece = read_exact(channel, min(Config.IO_CHUNK_SIZE, header.length - received))
            if not piece:
                break
            received += len(piece)
            if device.write(piece) < len(piece):
                clipped = True
        if clipped:
            logger.warning(
                f"Chunk at {location} (+{header.length}) runs past the device end; "
                f"trailing bytes dropped"
            )
        return received


def run_apply(config: ApplyConfig, observer: Optional[ProgressObserver] = None,
              channel: Optional[ByteChannel] = None) -> TransferStats:
    """
    Apply a stream to a device, optionally capturing a snapback log.

    The destination and the snapback log are only opened after the handshake
    has been accepted, so a stream from an incompatible peer never touches
    them. Every handle is closed on every exit path.

    Args:
        config: Apply settings
        observer: Progress observer
        channel: Read from this channel instead of `config.source`
    """
    receiver = Receiver(offset_unit=config.offset_unit, observer=observer)
    with (channel if channel is not None else open_apply_channel(config.source)) as stream:
        receiver.accept_handshake(stream)
        with FileBlockDevice(config.device, writable=True) as device:
            if config.snapback is None:
                return receiver.apply(stream, device)
            with SnapbackLog.create(config.snapback) as snapback:
                return receiver.apply(stream, device, snapback)


# ============================================================================
# DIFFERENCE SOURCES - Where the changed ranges come from
# ============================================================================

class DifferenceSource(ABC):
    """
    Supplies the origin device and the ranges changed since a snapshot.

    Subclasses implement `ranges()`, which must yield ascending,
    non-overlapping ranges and may do so lazily.
    """

    def __init__(self, origin: str) -> None:
        self.origin = origin

    @property
    def origin_size(self) -> int:
        """Size of the origin device in bytes."""
        with FileBlockDevice(self.origin) as device:
            return device.size

    @abstractmethod
    def ranges(self) -> Iterator[ByteRange]:
        raise NotImplementedError


class RangeListSource(DifferenceSource):
    """
    DifferenceSource over an explicit list of ranges.

    Example:
        >>> source = RangeListSource.from_inclusive_pairs("/dev/vg0/data", [[0, 511]])
        >>> list(source.ranges())
        [ByteRange(start=0, length=512)]
    """

    def __init__(self, origin: str, ranges: Iterable[ByteRange]) -> None:
        super().__init__(origin)
        self._ranges = list(ranges)

    @classmethod
    def from_inclusive_pairs(cls, origin: str, pairs: Iterable[Sequence[int]]) -> 'RangeListSource':
        ranges = []
        for pair in pairs:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValidationError(f"Expected a [first, last] pair, got {pair!r}")
            ranges.append(ByteRange.from_inclusive(pair[0], pair[1]))
        return cls(origin, ranges)

    @classmethod
    def from_json(cls, origin: str, path: str) -> 'RangeListSource':
        """Load a JSON array of inclusive ``[first, last]`` byte pairs."""
        try:
            with open(path, 'r', encoding='utf-8') as f:
                pairs = json.load(f)
        except OSError as e:
            raise FileIOError(f"Cannot read range list {path}: {e}")
        except json.JSONDecodeError as e:
            raise ValidationError(f"Range list {path} is not valid JSON: {e}")
        if not isinstance(pairs, list):
            raise ValidationError(f"Range list {path} must be a JSON array")
        return cls.from_inclusive_pairs(origin, pairs)

    def ranges(self) -> Iterator[ByteRange]:
        return iter(self._ranges)


class ThinDeltaSource(DifferenceSource):
    """
    DifferenceSource reading the XML that ``thin_delta -m`` prints for two
    thin volumes of an LVM thin pool.

    ``data_block_size`` is given in 512-byte sectors and each entry's
    ``begin``/``length`` in data blocks. ``different`` and ``right_only``
    entries changed; ``same`` and ``left_only`` entries are ignored. Touching
    entries are merged into one range.
    """

    CHANGED_TAGS: ClassVar[Tuple[str, ...]] = ("different", "right_only")

    def __init__(self, origin: str, xml_text: str) -> None:
        super().__init__(origin)
        try:
            self._root = ElementTree.fromstring(xml_text)
        except ElementTree.ParseError as e:
            raise ValidationError(f"Cannot parse thin_delta output: {e}")
        block_size = self._root.get("data_block_size")
        if block_size is None:
            raise ValidationError("thin_delta output has no data_block_size attribute")
        sectors = self._parse_count(block_size, "data_block_size")
        if sectors <= 0:
            raise ValidationError(f"thin_delta data_block_size must be positive, got {sectors}")
        self.block_bytes = sectors * SECTOR_SIZE
        self._changed = list(self._changed_ranges())

    @staticmethod
    def _parse_count(value: str, name: str) -> int:
        try:
            return int(value)
        except ValueError:
            raise ValidationError(f"thin_delta attribute {name}={value!r} is not an integer")

    @classmethod
    def from_file(cls, origin: str, path: str) -> 'ThinDeltaSource':
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return cls(origin, f.read())
        except OSError as e:
            raise FileIOError(f"Cannot read thin_delta output {path}: {e}")

    def ranges(self) -> Iterator[ByteRange]:
        """
        Changed ranges, clipped to the origin's size.

        The last data block of a volume whose size is not a multiple of the
        block size extends past the origin's end.
        """
        return clip_ranges(self._changed, self.origin_size)

    def _changed_ranges(self) -> Iterator[ByteRange]:
        pending: Optional[ByteRange] = None
        for diff in self._root.iter("diff"):
            for entry in diff:
                if entry.tag not in self.CHANGED_TAGS:
                    continue
                current = ByteRange(
                    self._parse_count(entry.get("begin", "0"), "begin") * self.block_bytes,
                    self._parse_count(entry.get("length", "0"), "length") * self.block_bytes,
                )
                if pending is not None and pending.end == current.start:
                    pending = ByteRange(pending.start, pending.length + current.length)
                    continue
                if pending is not None:
                    yield pending
                pending = current
        if pending is not None:
            yield pending


# ============================================================================
# VERIFICATION - xxHash digests of replicated ranges
# ============================================================================

def clip_ranges(ranges: Iterable[ByteRange], size: int) -> Iterator[ByteRange]:
    """Yield the parts of the ranges that lie inside a device of `size` bytes."""
    for byte_range in ranges:
        if byte_range.start >= size:
            continue
        yield ByteRange(byte_range.start, min(byte_range.length, size - byte_range.start))


def range_digest(device: BlockDevice, ranges: Iterable[ByteRange]) -> str:
    """xxh64 hex digest of the device's bytes at the given ranges, in order."""
    digest = xxhash.xxh64()
    for byte_range in clip_ranges(ranges, device.size):
        device.seek(byte_range.start)
        remaining = byte_range.length
        while remaining > 0:
            piece = device.read(min(Config.IO_CHUNK_SIZE, remaining))
            if not piece:
                raise FileIOError(f"Short read at {byte_range.end - remaining}")
            digest.update(piece)
            remaining -= len(piece)
    return digest.hexdigest()


def verify_replica(origin: str, replica: str, ranges: Iterable[ByteRange]) -> bool:
    """
    Check that a replica holds the origin's bytes at every range it can hold.

    Ranges are clipped to the replica's size first, matching what an apply
    writes to a smaller destination.
    """
    with FileBlockDevice(origin) as origin_dev, FileBlockDevice(replica) as replica_dev:
        fitting = list(clip_ranges(ranges, replica_dev.size))
        origin_digest = range_digest(origin_dev, fitting)
        replica_digest = range_digest(replica_dev, fitting)
    logger.info(f"origin={origin_digest} replica={replica_digest} over {len(fitting)} ranges")
    return origin_digest == replica_digest


# ============================================================================
# CLI - Command-line interface
# ============================================================================

def _default_rsh() -> Tuple[str, ...]:
    override = os.environ.get("SNAPSYNC_RSH")
    if override:
        return tuple(shlex.split(override))
    return ("ssh",)


def _configure_logging(verbose: int) -> None:
    if verbose >= 2:
        logger.setLevel(logging.DEBUG)
    elif verbose == 1 or Config.VERBOSE_LOGGING:
        logger.setLevel(logging.INFO)
    else:
        logger.setLevel(logging.WARNING)


def _load_difference_source(args: Any) -> DifferenceSource:
    if args.thin_delta:
        return ThinDeltaSource.from_file(args.origin, args.thin_delta)
    return RangeListSource.from_json(args.origin, args.ranges)


def _report_error(e: BaseException) -> int:
    if isinstance(e, ProtocolMismatchError):
        print(Colors.error(f"Protocol mismatch: {e}"), file=sys.stderr)
    elif isinstance(e, ValidationError):
        print(Colors.error(f"Validation error: {e}"), file=sys.stderr)
    elif isinstance(e, FileIOError):
        print(Colors.error(f"I/O error: {e}"), file=sys.stderr)
    elif isinstance(e, TransportError):
        print(Colors.error(f"Transport error: {e}"), file=sys.stderr)
    else:
        print(Colors.error(f"Error: {e}"), file=sys.stderr)
    return e.code if isinstance(e, SnapSyncError) else 1


def cli_send(args: Any) -> int:
    """Stream the changed ranges of the origin to a destination."""
    config = SendConfig(
        origin=args.origin,
        destination=args.destination,
        output=args.output,
        snapback=args.snapback,
        progress_interval=args.progress_interval,
        rsh=tuple(shlex.split(args.rsh)) if args.rsh else _default_rsh(),
        remote_command=tuple(shlex.split(args.remote_command)),
    )
    if config.output is None and config.destination == '-' and sys.stdout.isatty():
        print(Colors.error("Refusing to write a binary stream to a terminal"), file=sys.stderr)
        return 2

    observer = ProgressObserver() if args.quiet else ConsoleProgress(config.progress_interval, "Sending")
    try:
        source = _load_difference_source(args)
        run_send(config, source.ranges(), observer)
        return 0
    except SnapSyncError as e:
        return _report_error(e)
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130


def cli_apply(args: Any) -> int:
    """Apply a stream (or a snapback log) to a destination device."""
    config = ApplyConfig(source=args.input, device=args.device, snapback=args.snapback)
    observer = ProgressObserver() if args.quiet else ConsoleProgress(args.progress_interval, "Applying")
    try:
        run_apply(config, observer)
        return 0
    except SnapSyncError as e:
        return _report_error(e)
    except KeyboardInterrupt:
        print(Colors.warning("\nOperation cancelled by user"), file=sys.stderr)
        return 130


def cli_verify(args: Any) -> int:
    """Compare origin and replica over the changed ranges."""
    try:
        source = _load_difference_source(args)
        matched = verify_replica(args.origin, args.replica, source.ranges())
    except SnapSyncError as e:
        return _report_error(e)
    if matched:
        print(Colors.success(f"{args.replica} matches {args.origin}"), file=sys.stderr)
        return 0
    print(Colors.error(f"{args.replica} differs from {args.origin}"), file=sys.stderr)
    return 1


def _add_range_options(parser: Any, required: bool = True) -> None:
    group = parser.add_mutually_exclusive_group(required=required)
    group.add_argument('--ranges', metavar='FILE',
                       help='JSON array of inclusive [first, last] changed byte pairs')
    group.add_argument('--thin-delta', metavar='FILE',
                       help='output of thin_delta -m for the origin and its snapshot')


def create_parser() -> "argparse.ArgumentParser":

    parser = argparse.ArgumentParser(
        prog='snapsync',
        description='Replicate the changed blocks of a snapshotted device.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-v', '--verbose', action='count', default=0,
                        help='increase log verbosity (repeat for debug output)')
    common.add_argument('-q', '--quiet', action='store_true',
                        help='suppress progress and summary output')
    common.add_argument('--progress-interval', type=int, default=Config.PROGRESS_INTERVAL,
                        metavar='N', help='chunks between progress lines (default: %(default)s)')

    send = subparsers.add_parser('send', parents=[common],
                                 help='stream changed ranges to a destination')
    send.add_argument('origin', help='origin (or snapshot) device to read from')
    send.add_argument('destination', nargs='?', default='-',
                      help="'-' for stdout, HOST:DEVICE for a remote device, or a local device")
    _add_range_options(send)
    send.add_argument('-o', '--output', metavar='FILE',
                      help='write the stream to FILE instead of a destination device')
    send.add_argument('--snapback', metavar='PATH',
                      help='have the receiver capture overwritten bytes into PATH')
    send.add_argument('--rsh', metavar='CMD',
                      help='remote shell command (default: $SNAPSYNC_RSH or ssh)')
    send.add_argument('--remote-command', metavar='CMD', default='snapsync',
                      help='snapsync command on the remote host (default: %(default)s)')
    send.set_defaults(func=cli_send)

    apply = subparsers.add_parser('apply', parents=[common],
                                  help='apply a stream or snapback log to a device')
    apply.add_argument('input', help="stream file, or '-' for standard input")
    apply.add_argument('device', help='destination device, written in place')
    apply.add_argument('--snapback', metavar='PATH',
                       help='capture overwritten bytes into PATH for rollback')
    apply.set_defaults(func=cli_apply)

    verify = subparsers.add_parser('verify', parents=[common],
                                   help='compare origin and replica over the changed ranges')
    verify.add_argument('origin')
    verify.add_argument('replica')
    _add_range_options(verify)
    verify.set_defaults(func=cli_verify)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        Exit code (0 for success, the error's code otherwise)
    """
    args = create_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


# Entry point when run as script
if __name__ == "__main__":
    sys.exit(main())
