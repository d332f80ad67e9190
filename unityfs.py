"""unityfs: streaming decoder for Unity asset containers (Python-only).

Reads the container families found in shipped Unity content:

- UnityFS: block-compressed asset bundles (LZMA, LZ4/LZ4HC, Brotli or stored blocks).
- UnityWeb / UnityRaw: the legacy streamed bundle layout.
- UnityWebData1.0: the WebGL data wrapper, optionally gzip or Brotli wrapped.

Every SerializedFile inside a container is parsed and each object is rebuilt from its
embedded TypeTree into plain Python values (int, float, bool, str, bytes, list, dict,
ObjectRef). Many inputs can be decoded concurrently with bounded memory through the
async batch pipeline (process_batch / run_batch).

Errors are scoped to the smallest unit that failed: a broken object is reported on
its DecodedObject, a broken container on the BatchResult of that input.

CLI (subcommands):
  info   show container metadata
  l      list directory entries
  dump   decode objects of every SerializedFile (text or --json)
  batch  decode many files concurrently

Notable flags:
  --jobs N      max concurrent decodes for batch (default $UNITYFS_MAX_CONCURRENT or 4)
  --profile     print per-operation timing breakdown
  -v            debug logging on stderr

Environment knobs: UNITYFS_MAX_CONCURRENT, UNITYFS_IO_CHUNK, UNITYFS_POOL_THRESHOLD,
UNITYFS_RETRY_ATTEMPTS.
"""



from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import contextlib
import functools
import gzip
import inspect
import io
import json
import logging
import lzma
import os
import pathlib
import struct
import sys
import threading
import time
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import (Any, AsyncIterator, BinaryIO, Callable, Dict, Iterable, Iterator, List,
                    Optional, Sequence, Tuple, Union)

import aiofiles
import brotli
import lz4.block
from blake3 import blake3

log = logging.getLogger("unityfs")

# -----------------------------
# Versioning / format
# -----------------------------
TOOL_VERSION = "0.3.0"
__version__ = TOOL_VERSION

SIG_UNITYFS = "UnityFS"
SIG_UNITYWEB = "UnityWeb"
SIG_UNITYRAW = "UnityRaw"
SIG_WEBDATA = "UnityWebData1.0"
SIG_TUANJIE_WEBDATA = "TuanjieWebData1.0"
LEGACY_SIGNATURES = (SIG_UNITYWEB, SIG_UNITYRAW)
WEBDATA_SIGNATURES = (SIG_WEBDATA, SIG_TUANJIE_WEBDATA)

UNITYFS_VERSIONS = (6, 7, 8)
LEGACY_VERSIONS = (1, 2, 3, 4, 5, 6)
MAX_SIGNATURE = 32
MAX_CSTRING = 64 * 1024

# UnityFS header tail (big-endian): size, compressed blocks info, uncompressed blocks info, flags
FS_HDR = struct.Struct(">qIII")
FS_BLOCK = struct.Struct(">IIH")    # uncompressed, compressed, flags
FS_NODE = struct.Struct(">qqI")     # offset, size, flags (+ cstring path)
FS_INFO_HASH = 16

# Archive flags
AF_COMPRESSION_MASK = 0x3F
AF_BLOCKS_AND_DIR_COMBINED = 0x40
AF_BLOCKS_INFO_AT_END = 0x80
AF_OLD_WEB_PLUGIN = 0x100
AF_BLOCK_INFO_NEED_PADDING = 0x200
AF_ENCRYPTION = 0x400
# Before the block alignment fix 0x200 marked asset bundle encryption and there was
# no padding flag; the fix shipped in these releases (and every later major).
AF_ENCRYPTION_OLD = 0x200
PADDING_FLAG_SINCE = {2020: (2020, 3, 34), 2021: (2021, 3, 2), 2022: (2022, 1, 1)}

# Block flags
BF_COMPRESSION_MASK = 0x3F
BF_STREAMED = 0x40
BF_ENCRYPTED = 0x100

# Directory node flags
NF_SERIALIZED = 0x4

RESOURCE_SUFFIXES = (".resS", ".resource")

# WebData wrapper detection
GZIP_MAGIC = b"\x1f\x8b"
BROTLI_WEB_MAGIC = b"\xce\xb2\xcf\x81\x13\x00"
BROTLI_WEB_MAGIC_OFF = 0x20

# -----------------------------
# Codecs
# -----------------------------
class Codec(IntEnum):
    NONE = 0
    LZMA = 1
    LZ4 = 2
    LZ4HC = 3
    LZHAM = 4
    BROTLI = 5
    # legacy whole-file wrapper; never stored in block flags
    GZIP = 0x100

CODEC_NAME = {
    Codec.NONE: "none",
    Codec.LZMA: "lzma",
    Codec.LZ4: "lz4",
    Codec.LZ4HC: "lz4hc",
    Codec.LZHAM: "lzham",
    Codec.BROTLI: "brotli",
    Codec.GZIP: "gzip",
}

LZMA_PROPS_SIZE = 5
LZMA_ALONE_HDR = struct.Struct("<BIq")  # props byte, dict size, uncompressed size (-1 = unknown)

# -----------------------------
# Defaults / knobs
# -----------------------------
IO_CHUNK = 256 * 1024
DECODE_STEP = 256 * 1024
POOL_THRESHOLD = 1024 * 1024
POOL_MAX_SMALL = 32
POOL_MAX_LARGE = 4
DEF_MAX_CONCURRENT = 4
DEF_RETRY_ATTEMPTS = 3
DEF_RETRY_BASE_DELAY = 0.1
DEF_RETRY_MAX_DELAY = 30.0
DEF_RETRY_FACTOR = 2.0

# Sanity guards against hostile headers
MAX_BLOCKS = 1 << 20
MAX_NODES = 1 << 20
MAX_BLOCK_SIZE = 1 << 31
MAX_TYPETREE_NODES = 1 << 20
MAX_OBJECTS = 1 << 24
SERIALIZED_MAX_VERSION = 50
ALIGN_FLAG = 0x4000


def env_int(name: str, default: int, *, minimum: int = 1) -> int:
    """Read an integer knob from the environment; bad or missing values give the default."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        n = int(v.strip())
    except ValueError:
        log.warning("ignoring %s=%r (not an integer)", name, v)
        return default
    if n < minimum:
        log.warning("ignoring %s=%r (below %d)", name, v, minimum)
        return default
    return n


@dataclass
class DecodeOptions:
    chunk_size: int = IO_CHUNK
    pool_threshold: int = POOL_THRESHOLD
    max_concurrent: int = DEF_MAX_CONCURRENT
    retry_attempts: int = DEF_RETRY_ATTEMPTS
    # decode objects (False = container + SerializedFile metadata only)
    decode_objects: bool = True

    @classmethod
    def from_env(cls) -> "DecodeOptions":
        return cls(
            chunk_size=env_int("UNITYFS_IO_CHUNK", IO_CHUNK, minimum=4096),
            pool_threshold=env_int("UNITYFS_POOL_THRESHOLD", POOL_THRESHOLD),
            max_concurrent=env_int("UNITYFS_MAX_CONCURRENT", DEF_MAX_CONCURRENT),
            retry_attempts=env_int("UNITYFS_RETRY_ATTEMPTS", DEF_RETRY_ATTEMPTS),
        )

# -----------------------------
# Errors
# -----------------------------
class UnityFSError(Exception):
    retryable = False


class TransientIOError(UnityFSError):
    """I/O failure that may succeed when repeated (busy file, flaky mount)."""
    retryable = True


class Cancelled(UnityFSError):
    pass


class FormatError(UnityFSError):
    pass


class BadMagic(FormatError):
    pass


class UnsupportedVersion(FormatError):
    pass


class TruncatedData(FormatError):
    pass


class OverlappingEntries(FormatError):
    pass


class DuplicatePathId(FormatError):
    pass


class CodecError(UnityFSError):
    pass


class UnsupportedVariant(CodecError):
    pass


class CorruptStream(CodecError):
    pass


class UnknownVariant(CodecError):
    pass


class TypeTreeError(UnityFSError):
    pass


class MissingSchema(TypeTreeError):
    pass


class FieldMismatch(TypeTreeError):
    def __init__(self, message: str, *, expected: int = -1, consumed: int = -1) -> None:
        super().__init__(message)
        self.expected = expected
        self.consumed = consumed


class RetryExhausted(UnityFSError):
    def __init__(self, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts

# -----------------------------
# Metrics
# -----------------------------
class NullMetrics:
    """Metrics sink that drops every event."""
    __slots__ = ()

    def on_progress(self, bytes_read: int, total: int) -> None:
        pass

    def on_timing(self, op: str, seconds: float, nbytes: int = 0) -> None:
        pass


class MetricsRecorder:
    """Thread-safe sink accumulating per-operation time and bytes."""
    __slots__ = ("lock", "acc", "nbytes", "calls", "progress_events", "last_progress")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.acc: Dict[str, float] = {}  # op -> seconds
        self.nbytes: Dict[str, int] = {}
        self.calls: Dict[str, int] = {}
        self.progress_events = 0
        self.last_progress = (0, 0)

    def on_progress(self, bytes_read: int, total: int) -> None:
        with self.lock:
            self.progress_events += 1
            self.last_progress = (bytes_read, total)

    def on_timing(self, op: str, seconds: float, nbytes: int = 0) -> None:
        with self.lock:
            self.acc[op] = self.acc.get(op, 0.0) + seconds
            self.nbytes[op] = self.nbytes.get(op, 0) + nbytes
            self.calls[op] = self.calls.get(op, 0) + 1

    def report(self) -> str:
        with self.lock:
            items = sorted(self.acc.items(), key=lambda kv: (-kv[1], kv[0]))
            total = sum(v for _, v in items) or 1e-9
            parts = []
            for k, v in items:
                s = f"{k}={v:.3f}s({(100.0*v/total):.1f}%) x{self.calls[k]}"
                nb = self.nbytes.get(k, 0)
                if nb and v > 0:
                    s += f" {nb / v / 1e6:.1f}MB/s"
                parts.append(s)
        return " | ".join(parts)


@contextlib.contextmanager
def timed(metrics, op: str, nbytes: int = 0) -> Iterator[None]:
    t0 = time.perf_counter()
    try:
        yield
    finally:
        metrics.on_timing(op, time.perf_counter() - t0, nbytes)

# -----------------------------
# Utilities
# -----------------------------
def align_up(n: int, a: int) -> int:
    return (n + a - 1) & ~(a - 1)

def unity_version_tuple(version: str) -> Tuple[int, ...]:
    """Parse "2021.3.16f1" as (2021, 3, 16); stops at the first part without leading digits."""
    out: List[int] = []
    for part in version.split(".")[:3]:
        n = 0
        while n < len(part) and part[n].isdigit():
            n += 1
        if n == 0:
            break
        out.append(int(part[:n]))
    return tuple(out)

def uses_padding_flag(revision: str) -> bool:
    """True when archive flag 0x200 means block info padding rather than encryption.

    Takes the engine revision (e.g. 2021.3.16f1); UnityFS headers put "5.x.x" first.
    """
    v = unity_version_tuple(revision)
    if not v:
        return True
    if v[0] < 2020:
        return False
    since = PADDING_FLAG_SINCE.get(v[0])
    return since is None or v >= since

def stable_hash32(data) -> bytes:
    return blake3(data).digest(length=32)

def class_name_for(class_id: int) -> str:
    return CLASS_NAMES.get(class_id, f"Class{class_id}")

# Common Unity class ids (ClassIDType)
CLASS_NAMES: Dict[int, str] = {
    1: "GameObject",
    4: "Transform",
    21: "Material",
    23: "MeshRenderer",
    25: "MeshFilter",
    28: "Texture2D",
    33: "MeshCollider",
    43: "Mesh",
    48: "Shader",
    49: "TextAsset",
    74: "AnimationClip",
    83: "AudioClip",
    108: "Behaviour",
    114: "MonoBehaviour",
    115: "MonoScript",
    128: "Font",
    142: "AssetBundle",
    212: "SpriteRenderer",
    213: "Sprite",
    224: "RectTransform",
}
CLASS_TEXT_ASSET = 49
CLASS_MONO_BEHAVIOUR = 114

# -----------------------------
# Memory pool
# -----------------------------
class MemoryPool:
    """Size-bucketed cache of reusable bytearrays.

    Buffers at or below `threshold` go to the small bucket, larger ones to the large
    bucket; each bucket keeps at most `max_small` / `max_large` buffers and a release
    into a full bucket simply drops the buffer. An acquired buffer is zero-filled and
    exclusively owned by the caller until it is released.
    """

    def __init__(self, threshold: int = POOL_THRESHOLD, max_small: int = POOL_MAX_SMALL,
                 max_large: int = POOL_MAX_LARGE) -> None:
        self.threshold = int(threshold)
        self.max_small = int(max_small)
        self.max_large = int(max_large)
        self._lock = threading.Lock()
        self._small: List[bytearray] = []
        self._large: List[bytearray] = []
        self._out: set = set()  # id() of buffers currently handed out
        self.hits = 0
        self.misses = 0
        self.dropped = 0

    def _bucket(self, size: int) -> Tuple[List[bytearray], int]:
        if size <= self.threshold:
            return self._small, self.max_small
        return self._large, self.max_large

    def acquire(self, size: int) -> bytearray:
        if size < 0:
            raise ValueError(f"negative buffer size {size}")
        with self._lock:
            bucket, _cap = self._bucket(size)
            buf = bucket.pop() if bucket else None
            if buf is None:
                self.misses += 1
            else:
                self.hits += 1
        if buf is not None:
            try:
                old = len(buf)
                if old > size:
                    del buf[size:]
                elif old < size:
                    buf.extend(bytes(size - old))
                # the previous owner's bytes never leak into a new acquisition
                keep = min(old, size)
                buf[:keep] = bytes(keep)
            except BufferError:
                # a stale memoryview still pins the old buffer; leave it to the GC
                buf = None
        if buf is None:
            buf = bytearray(size)
        with self._lock:
            self._out.add(id(buf))
        return buf

    def release(self, buf: bytearray) -> bool:
        """Return `buf` to its bucket. Returns False when the bucket was full."""
        with self._lock:
            if id(buf) not in self._out:
                raise ValueError("buffer was not acquired from this pool (or released twice)")
            self._out.discard(id(buf))
            bucket, cap = self._bucket(len(buf))
            if len(bucket) >= cap:
                self.dropped += 1
                return False
            bucket.append(buf)
            return True

    @contextlib.contextmanager
    def pooled(self, size: int) -> Iterator[bytearray]:
        buf = self.acquire(size)
        try:
            yield buf
        finally:
            self.release(buf)

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._out)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "small": len(self._small),
                "large": len(self._large),
                "outstanding": len(self._out),
                "hits": self.hits,
                "misses": self.misses,
                "dropped": self.dropped,
            }

# -----------------------------
# Cancellation
# -----------------------------
class CancelToken:
    """Shared cancellation flag polled at suspension points."""
    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled")

# -----------------------------
# Streaming reader
# -----------------------------
Source = Union[str, os.PathLike, bytes, bytearray, memoryview, BinaryIO]
ProgressFn = Callable[[int, int], None]


def source_name(source) -> str:
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return f"<memory:{len(source)}>"
    return str(getattr(source, "name", "<stream>"))


async def _settle(fut: asyncio.Future):
    """Await `fut`; if the caller is cancelled first, wait for `fut` anyway before
    re-raising, since the worker behind it still writes into caller-owned memory."""
    try:
        return await asyncio.shield(fut)
    except asyncio.CancelledError:
        while not fut.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait([fut])
        if not fut.cancelled():
            fut.exception()
        raise


class StreamReader:
    """Chunked, position-tracked reader over a path, a binary file object or a buffer.

    Bulk reads move at most `chunk_size` bytes at a time. After every chunk the
    progress callback gets (bytes_read, total), the cancel token is checked and the
    reader yields: the sync API releases the thread, the async API awaits the loop.
    """

    def __init__(self, source: Source, *, chunk_size: int = IO_CHUNK,
                 progress: Optional[ProgressFn] = None, cancel: Optional[CancelToken] = None,
                 pool: Optional[MemoryPool] = None, name: Optional[str] = None) -> None:
        self.chunk_size = max(1, int(chunk_size))
        self.progress = progress
        self.cancel = cancel
        self.pool = pool
        self.name = name or source_name(source)
        self._mem: Optional[memoryview] = None
        self._f: Optional[BinaryIO] = None
        self._path: Optional[str] = None
        self._owns_file = False
        self._work: Optional[bytearray] = None
        self._pos = 0
        if isinstance(source, (bytes, bytearray, memoryview)):
            mv = memoryview(source)
            self._mem = mv if mv.format == "B" and mv.ndim == 1 else mv.cast("B")
            self.size = len(self._mem)
        elif isinstance(source, (str, os.PathLike)):
            try:
                self._f = open(source, "rb")
            except (FileNotFoundError, IsADirectoryError, NotADirectoryError, PermissionError):
                raise
            except OSError as e:
                raise TransientIOError(f"{self.name}: open failed: {e}") from e
            self._owns_file = True
            self._path = os.fspath(source)
            self.size = os.fstat(self._f.fileno()).st_size
        else:
            self._f = source
            self._pos = source.tell()
            self.size = source.seek(0, io.SEEK_END)
            source.seek(self._pos)

    def __enter__(self) -> "StreamReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._work is not None and self.pool is not None:
            self.pool.release(self._work)
        self._work = None
        if self._mem is not None:
            self._mem.release()
            self._mem = None
        if self._owns_file and self._f is not None:
            self._f.close()
        self._f = None
        self._owns_file = False

    def tell(self) -> int:
        return self._pos

    def remaining(self) -> int:
        return self.size - self._pos

    def seek(self, pos: int) -> int:
        if pos < 0 or pos > self.size:
            raise TruncatedData(f"{self.name}: seek to {pos} outside 0..{self.size}")
        if self._f is not None:
            self._f.seek(pos)
        self._pos = pos
        return pos

    def _read_some(self, view: memoryview) -> int:
        n = len(view)
        if self._mem is not None:
            got = min(n, self.size - self._pos)
            view[:got] = self._mem[self._pos:self._pos + got]
            self._pos += got
            return got
        if self._f is None:
            raise ValueError(f"{self.name}: reader is closed")
        got = 0
        while got < n:
            try:
                k = self._f.readinto(view[got:])
            except OSError as e:
                raise TransientIOError(f"{self.name}: read failed at {self._pos + got}: {e}") from e
            if not k:
                break
            got += k
        self._pos += got
        return got

    def _after_chunk(self) -> None:
        if self.progress is not None:
            self.progress(self._pos, self.size)
        if self.cancel is not None:
            self.cancel.check()

    def _check_avail(self, need: int) -> None:
        if need < 0 or need > self.size - self._pos:
            raise TruncatedData(
                f"{self.name}: need {need} bytes at offset {self._pos}, {self.size - self._pos} left")

    def read_into(self, out) -> None:
        """Fill `out` completely from the current position."""
        out = memoryview(out).cast("B")
        need = len(out)
        self._check_avail(need)
        off = 0
        while off < need:
            step = min(self.chunk_size, need - off)
            if self._read_some(out[off:off + step]) != step:
                raise TruncatedData(f"{self.name}: source shrank while reading at {self._pos}")
            off += step
            self._after_chunk()
            if off < need:
                time.sleep(0)

    def read_exact(self, n: int) -> bytearray:
        buf = bytearray(n)
        self.read_into(buf)
        return buf

    def read_upto(self, n: int) -> bytearray:
        """Read min(n, remaining) bytes; used for header probes."""
        return self.read_exact(min(n, self.remaining()))

    def iter_chunks(self, start: Optional[int] = None, length: Optional[int] = None) -> Iterator[bytes]:
        """Lazily yield the bytes of [start, start+length) in chunk_size pieces.

        Each call starts a fresh pass, so the sequence can be replayed from any offset.
        """
        if start is not None:
            self.seek(start)
        left = self.remaining() if length is None else length
        self._check_avail(left)
        if self._work is None:
            self._work = self.pool.acquire(self.chunk_size) if self.pool is not None else bytearray(self.chunk_size)
        work = memoryview(self._work)
        while left > 0:
            step = min(self.chunk_size, left)
            got = self._read_some(work[:step])
            if got != step:
                raise TruncatedData(f"{self.name}: source shrank while reading at {self._pos}")
            left -= step
            self._after_chunk()
            yield bytes(work[:step])

    async def _aread_some(self, readinto, view: memoryview) -> int:
        n = len(view)
        got = 0
        while got < n:
            try:
                k = await _settle(asyncio.ensure_future(readinto(view[got:])))
            except OSError as e:
                raise TransientIOError(f"{self.name}: read failed at {self._pos + got}: {e}") from e
            if not k:
                break
            got += k
        self._pos += got
        return got

    async def _afill(self, out: memoryview, readinto) -> None:
        need = len(out)
        off = 0
        while off < need:
            step = min(self.chunk_size, need - off)
            if readinto is None:
                got = self._read_some(out[off:off + step])
            else:
                got = await self._aread_some(readinto, out[off:off + step])
            if got != step:
                raise TruncatedData(f"{self.name}: source shrank while reading at {self._pos}")
            off += step
            self._after_chunk()
            if readinto is None:
                await asyncio.sleep(0)

    async def aread_into(self, out) -> None:
        """Async counterpart of read_into; file reads never block the loop.

        Path sources are read through aiofiles, caller file objects on the loop's
        default executor, in-memory sources directly with a yield per chunk.
        """
        out = memoryview(out).cast("B")
        self._check_avail(len(out))
        if self._mem is not None:
            await self._afill(out, None)
            return
        if self._f is None:
            raise ValueError(f"{self.name}: reader is closed")
        if self._path is None:
            loop = asyncio.get_running_loop()
            f = self._f
            await self._afill(out, lambda v: loop.run_in_executor(None, f.readinto, v))
            return
        try:
            async with aiofiles.open(self._path, "rb") as af:
                await af.seek(self._pos)
                await self._afill(out, af.readinto)
        finally:
            # keep the sync handle at the same position for later seek/read calls
            if self._f is not None:
                self._f.seek(self._pos)

    async def aread_exact(self, n: int) -> bytearray:
        buf = bytearray(n)
        await self.aread_into(buf)
        return buf

    async def aread_all(self) -> bytearray:
        """Read everything left into one buffer (pooled when the reader has a pool).

        A pooled buffer belongs to the caller, who releases it to `self.pool`.
        """
        n = self.remaining()
        buf = self.pool.acquire(n) if self.pool is not None else bytearray(n)
        try:
            await self.aread_into(buf)
        except BaseException:
            if self.pool is not None:
                self.pool.release(buf)
            raise
        return buf

# -----------------------------
# Byte cursor (typed reads over memory)
# -----------------------------
_STRUCTS: Dict[str, struct.Struct] = {}

def _st(fmt: str) -> struct.Struct:
    s = _STRUCTS.get(fmt)
    if s is None:
        s = _STRUCTS[fmt] = struct.Struct(fmt)
    return s


class ByteCursor:
    """Endian-aware reads over bytes/bytearray using absolute positions.

    `base` is the origin used by align(); Unity aligns relative to the start of the
    structure being read (file header, object data), not to the buffer.
    """
    __slots__ = ("data", "pos", "end", "base", "endian", "name")

    def __init__(self, data, pos: int = 0, end: Optional[int] = None, *, endian: str = ">",
                 base: Optional[int] = None, name: str = "<buffer>") -> None:
        if isinstance(data, memoryview):
            data = data.tobytes()
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end
        self.base = pos if base is None else base
        self.endian = endian
        self.name = name

    def remaining(self) -> int:
        return self.end - self.pos

    def need(self, n: int) -> None:
        if n < 0 or self.pos + n > self.end:
            raise TruncatedData(
                f"{self.name}: need {n} bytes at offset {self.pos}, {self.end - self.pos} left")

    def skip(self, n: int) -> None:
        self.need(n)
        self.pos += n

    def seek(self, pos: int) -> None:
        if pos < 0 or pos > self.end:
            raise TruncatedData(f"{self.name}: seek to {pos} outside buffer (end {self.end})")
        self.pos = pos

    def align(self, a: int = 4) -> None:
        rel = self.pos - self.base
        pad = align_up(rel, a) - rel
        if pad:
            # trailing padding may be cut off at the very end of a buffer
            self.pos = min(self.pos + pad, self.end)

    def read(self, n: int) -> bytes:
        self.need(n)
        p = self.pos
        self.pos = p + n
        return bytes(self.data[p:p + n])

    def unpack(self, fmt) -> tuple:
        s = fmt if isinstance(fmt, struct.Struct) else _st(self.endian + fmt)
        self.need(s.size)
        p = self.pos
        self.pos = p + s.size
        return s.unpack_from(self.data, p)

    def unpack_array(self, code: str, count: int) -> tuple:
        s = _st(f"{self.endian}{count}{code}")
        self.need(s.size)
        p = self.pos
        self.pos = p + s.size
        return s.unpack_from(self.data, p)

    def _one(self, code: str):
        s = _st(self.endian + code)
        p = self.pos
        if p + s.size > self.end:
            raise TruncatedData(
                f"{self.name}: need {s.size} bytes at offset {p}, {self.end - p} left")
        self.pos = p + s.size
        return s.unpack_from(self.data, p)[0]

    def u8(self) -> int: return self._one("B")
    def i8(self) -> int: return self._one("b")
    def boolean(self) -> bool: return self._one("B") != 0
    def u16(self) -> int: return self._one("H")
    def i16(self) -> int: return self._one("h")
    def u32(self) -> int: return self._one("I")
    def i32(self) -> int: return self._one("i")
    def u64(self) -> int: return self._one("Q")
    def i64(self) -> int: return self._one("q")
    def f32(self) -> float: return self._one("f")
    def f64(self) -> float: return self._one("d")

    def count(self, what: str, limit: int) -> int:
        """i32 element count, rejected when negative or above `limit`."""
        n = self.i32()
        if n < 0 or n > limit:
            raise TruncatedData(f"{self.name}: implausible {what} count {n} at offset {self.pos - 4}")
        return n

    def cstring(self, limit: int = MAX_CSTRING) -> str:
        stop = min(self.end, self.pos + limit + 1)
        i = self.data.find(b"\x00", self.pos, stop)
        if i < 0:
            raise TruncatedData(f"{self.name}: unterminated string at offset {self.pos}")
        s = bytes(self.data[self.pos:i]).decode("utf-8", errors="replace")
        self.pos = i + 1
        return s

# -----------------------------
# Codec dispatch
# -----------------------------
_CODEC_ERRORS = (lzma.LZMAError, lz4.block.LZ4BlockError, brotli.error, zlib.error, EOFError,
                 gzip.BadGzipFile)


def codec_for(variant: int) -> Codec:
    try:
        return Codec(int(variant))
    except ValueError:
        raise UnknownVariant(f"unknown compression variant {variant}") from None


def _lzma_raw_filters(props) -> List[dict]:
    b = props[0]
    if b >= 9 * 5 * 5:
        raise CorruptStream(f"lzma: bad properties byte 0x{b:02x}")
    lc = b % 9
    b //= 9
    lp = b % 5
    pb = b // 5
    dict_size = int.from_bytes(bytes(props[1:LZMA_PROPS_SIZE]), "little")
    # liblzma refuses dictionaries below 4 KiB; a larger window decodes the same stream
    return [{"id": lzma.FILTER_LZMA1, "lc": lc, "lp": lp, "pb": pb, "dict_size": max(dict_size, 4096)}]


def _lzma_raw_decoder(data) -> Tuple[lzma.LZMADecompressor, Any]:
    """Split a Unity LZMA block into a raw LZMA1 decoder and its payload."""
    if len(data) < LZMA_PROPS_SIZE:
        raise CorruptStream(f"lzma: {len(data)} bytes is shorter than the properties header")
    filters = _lzma_raw_filters(data[:LZMA_PROPS_SIZE])
    return lzma.LZMADecompressor(format=lzma.FORMAT_RAW, filters=filters), data[LZMA_PROPS_SIZE:]


def decompress_lzma_alone(data, expected: Optional[int] = None) -> bytes:
    """Decode a .lzma ("alone") stream: 13-byte header, then LZMA1 data (UnityWeb)."""
    if len(data) < LZMA_ALONE_HDR.size:
        raise CorruptStream(f"lzma-alone: {len(data)} bytes is shorter than its header")
    _props, _dict_size, hdr_size = LZMA_ALONE_HDR.unpack_from(data, 0)
    if expected is None and hdr_size >= 0:
        expected = hdr_size
    try:
        dec = lzma.LZMADecompressor(format=lzma.FORMAT_ALONE)
        out = dec.decompress(data) if expected is None else dec.decompress(data, max_length=expected + 1)
    except lzma.LZMAError as e:
        raise CorruptStream(f"lzma-alone: {e}") from e
    if expected is not None and len(out) != expected:
        raise CorruptStream(f"lzma-alone: produced {len(out)} bytes, expected {expected}")
    return out


def _check_block(codec: Codec, data, compressed_size: Optional[int]) -> str:
    name = CODEC_NAME[codec]
    if compressed_size is not None and len(data) != compressed_size:
        raise TruncatedData(f"{name}: have {len(data)} compressed bytes, expected {compressed_size}")
    if codec == Codec.LZHAM:
        raise UnsupportedVariant("lzham: no decoder available for LZHAM blocks")
    return name


def _fill(out: memoryview, piece: bytes, more: Callable[[], bytes], name: str) -> int:
    """Copy successive decoder pieces into `out`; stops when `more()` runs dry."""
    n = len(out)
    off = 0
    while piece:
        if len(piece) > n - off:
            raise CorruptStream(f"{name}: produced more than {n} bytes")
        out[off:off + len(piece)] = piece
        off += len(piece)
        piece = more()
    return off


def decompress(variant: int, data, compressed_size: Optional[int] = None,
               uncompressed_size: Optional[int] = None) -> Union[bytes, bytearray]:
    """Decompress one block of `variant`.

    When `uncompressed_size` is given the output must have exactly that length
    and the decoder never produces more than that; it may only be omitted for
    whole-file wrappers (gzip, Brotli) whose size is not recorded anywhere.
    """
    codec = codec_for(variant)
    name = _check_block(codec, data, compressed_size)
    if uncompressed_size is not None:
        out = bytearray(uncompressed_size)
        decompress_into(codec, data, out, compressed_size)
        return out
    try:
        if codec == Codec.NONE:
            return data
        if codec == Codec.LZMA:
            dec, payload = _lzma_raw_decoder(data)
            return dec.decompress(payload)
        if codec in (Codec.LZ4, Codec.LZ4HC):
            raise CorruptStream(f"{name}: block size unknown")
        if codec == Codec.BROTLI:
            return brotli.decompress(bytes(data))
        return gzip.decompress(bytes(data))
    except _CODEC_ERRORS as e:
        raise CorruptStream(f"{name}: {e}") from e


def decompress_into(variant: int, data, out, compressed_size: Optional[int] = None) -> int:
    """Decompress into the writable buffer `out`, whose length is the expected size.

    LZMA, Brotli and gzip stream into `out` in DECODE_STEP pieces, so a block
    that inflates past its declared size fails after at most one extra piece.
    """
    codec = codec_for(variant)
    name = _check_block(codec, data, compressed_size)
    out = memoryview(out).cast("B")
    n = len(out)
    try:
        if codec == Codec.NONE:
            got = _fill(out, memoryview(data).cast("B"), lambda: b"", name)
        elif codec in (Codec.LZ4, Codec.LZ4HC):
            # lz4.block has no decode-into; uncompressed_size caps the allocation
            got = _fill(out, lz4.block.decompress(data, uncompressed_size=n), lambda: b"", name)
        elif codec == Codec.LZMA:
            dec, payload = _lzma_raw_decoder(data)
            got = _fill(out, dec.decompress(payload, max_length=DECODE_STEP),
                        lambda: b"" if dec.eof else dec.decompress(b"", max_length=DECODE_STEP), name)
        elif codec == Codec.BROTLI:
            bd = brotli.Decompressor()
            got = _fill(out, bd.process(bytes(data), output_buffer_limit=DECODE_STEP),
                        lambda: b"" if bd.is_finished() else bd.process(b"", output_buffer_limit=DECODE_STEP),
                        name)
            if not bd.is_finished():
                raise CorruptStream(f"{name}: stream ends early after {got} bytes")
        else:
            zd = zlib.decompressobj(16 + zlib.MAX_WBITS)
            got = _fill(out, zd.decompress(bytes(data), DECODE_STEP),
                        lambda: b"" if zd.eof else zd.decompress(zd.unconsumed_tail, DECODE_STEP), name)
            if not zd.eof:
                raise CorruptStream(f"{name}: stream ends early after {got} bytes")
    except _CODEC_ERRORS as e:
        raise CorruptStream(f"{name}: {e}") from e
    if got != n:
        raise CorruptStream(f"{name}: produced {got} bytes, expected {n}")
    return n


def detect_web_wrapper(head) -> Optional[Codec]:
    """Whole-file compression used by WebGL builds: gzip by magic, Brotli by the
    comment block Unity writes at 0x20."""
    if bytes(head[:2]) == GZIP_MAGIC:
        return Codec.GZIP
    end = BROTLI_WEB_MAGIC_OFF + len(BROTLI_WEB_MAGIC)
    if len(head) >= end and bytes(head[BROTLI_WEB_MAGIC_OFF:end]) == BROTLI_WEB_MAGIC:
        return Codec.BROTLI
    return None

# -----------------------------
# Container data structures
# -----------------------------
@dataclass
class CompressionBlock:
    uncompressed_size: int
    compressed_size: int
    flags: int

    @property
    def variant(self) -> int:
        return self.flags & BF_COMPRESSION_MASK

    @property
    def streamed(self) -> bool:
        return bool(self.flags & BF_STREAMED)

    @property
    def encrypted(self) -> bool:
        return bool(self.flags & BF_ENCRYPTED)


@dataclass
class DirectoryEntry:
    name: str
    offset: int
    size: int
    flags: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def is_serialized(self) -> bool:
        return bool(self.flags & NF_SERIALIZED)

    @property
    def is_resource(self) -> bool:
        return self.name.endswith(RESOURCE_SUFFIXES)


@dataclass
class UnityFSLayout:
    size: int
    compressed_blocks_info_size: int
    uncompressed_blocks_info_size: int
    flags: int
    blocks_info_hash: bytes = b""

    @property
    def blocks_info_codec(self) -> int:
        return self.flags & AF_COMPRESSION_MASK

    @property
    def blocks_info_at_end(self) -> bool:
        return bool(self.flags & AF_BLOCKS_INFO_AT_END)


@dataclass
class LegacyLayout:
    header_size: int
    minimum_streamed_bytes: int
    levels_before_streaming: int
    levels: List[Tuple[int, int]]  # (compressed, uncompressed) per level
    complete_file_size: int = 0
    file_info_header_size: int = 0
    bundle_hash: bytes = b""
    crc: int = 0


@dataclass
class WebDataLayout:
    wrapper: Codec
    head_length: int


ContainerLayout = Union[UnityFSLayout, LegacyLayout, WebDataLayout]


@dataclass
class Container:
    name: str
    signature: str
    version: int
    unity_version: str
    unity_revision: str
    layout: ContainerLayout
    blocks: List[CompressionBlock]
    entries: List[DirectoryEntry]
    data: bytearray = field(repr=False)
    pool: Optional[MemoryPool] = field(default=None, repr=False)

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        """Hand the block stream back to the pool; entry views must not outlive this."""
        if self.pool is not None and self.data is not None:
            self.pool.release(self.data)
        self.pool = None

    @property
    def kind(self) -> str:
        if isinstance(self.layout, UnityFSLayout):
            return "unityfs"
        if isinstance(self.layout, LegacyLayout):
            return "legacy"
        return "webdata"

    def entry_data(self, entry: DirectoryEntry) -> memoryview:
        return memoryview(self.data)[entry.offset:entry.end]

    def read_entry(self, entry: DirectoryEntry) -> bytes:
        return bytes(self.data[entry.offset:entry.end])

    def find(self, name: str) -> Optional[DirectoryEntry]:
        for e in self.entries:
            if e.name == name:
                return e
        return None

    def entry_digest(self, entry: DirectoryEntry) -> bytes:
        return stable_hash32(self.entry_data(entry))

    def statistics(self) -> Dict[str, Any]:
        codecs: Dict[str, int] = {}
        for b in self.blocks:
            k = CODEC_NAME.get(b.variant, str(b.variant))
            codecs[k] = codecs.get(k, 0) + 1
        comp = sum(b.compressed_size for b in self.blocks)
        raw = sum(b.uncompressed_size for b in self.blocks)
        return {
            "kind": self.kind,
            "signature": self.signature,
            "version": self.version,
            "unity_version": self.unity_version,
            "blocks": len(self.blocks),
            "entries": len(self.entries),
            "compressed_bytes": comp,
            "uncompressed_bytes": raw,
            "ratio": (comp / float(raw)) if raw else 1.0,
            "codecs": codecs,
        }

# -----------------------------
# Container parsing
# -----------------------------
HEADER_PROBE = 4096


def _read_signature(cur: ByteCursor) -> str:
    i = cur.data.find(b"\x00", cur.pos, min(cur.end, cur.pos + MAX_SIGNATURE))
    if i < 0:
        raise BadMagic(f"{cur.name}: no container signature (starts {bytes(cur.data[:8])!r})")
    sig = bytes(cur.data[cur.pos:i]).decode("latin-1")
    if sig not in (SIG_UNITYFS,) + LEGACY_SIGNATURES + WEBDATA_SIGNATURES:
        raise BadMagic(f"{cur.name}: unknown container signature {sig!r}")
    cur.pos = i + 1
    return sig


def check_entries(entries: Sequence[DirectoryEntry], total: int, name: str = "") -> None:
    """Every entry must lie inside the block stream and no two entries may overlap."""
    for e in entries:
        if e.offset < 0 or e.size < 0 or e.end > total:
            raise TruncatedData(
                f"{name}: entry {e.name!r} spans {e.offset}..{e.end}, stream has {total} bytes")
    prev: Optional[DirectoryEntry] = None
    for e in sorted((e for e in entries if e.size > 0), key=lambda e: (e.offset, e.end)):
        if prev is not None and e.offset < prev.end:
            raise OverlappingEntries(f"{name}: entry {e.name!r} overlaps {prev.name!r}")
        prev = e


def _materialize_blocks(reader: StreamReader, blocks: List[CompressionBlock], pool: MemoryPool,
                        metrics) -> bytearray:
    total = sum(b.uncompressed_size for b in blocks)
    buf = pool.acquire(total)
    try:
        with memoryview(buf) as out:
            pos = 0
            for i, b in enumerate(blocks):
                if b.encrypted:
                    raise UnsupportedVariant(f"{reader.name}: block {i} is encrypted")
                if b.compressed_size > MAX_BLOCK_SIZE or b.uncompressed_size > MAX_BLOCK_SIZE:
                    raise TruncatedData(f"{reader.name}: block {i} has implausible size")
                comp = reader.read_exact(b.compressed_size)
                op = "decompress." + CODEC_NAME.get(b.variant, str(b.variant))
                try:
                    with timed(metrics, op, b.uncompressed_size):
                        decompress_into(b.variant, comp, out[pos:pos + b.uncompressed_size],
                                        b.compressed_size)
                except CodecError as e:
                    raise type(e)(f"{reader.name}: block {i}: {e}") from e
                pos += b.uncompressed_size
    except BaseException:
        pool.release(buf)
        raise
    return buf


def _parse_unityfs(reader: StreamReader, cur: ByteCursor, start: int, sig: str,
                   pool: MemoryPool, metrics) -> Container:
    version = cur.u32()
    if version not in UNITYFS_VERSIONS:
        raise UnsupportedVersion(f"{reader.name}: {sig} version {version} is not supported")
    unity_version = cur.cstring()
    unity_revision = cur.cstring()
    size, csize, usize, flags = cur.unpack(FS_HDR)
    padding_flags = uses_padding_flag(unity_revision)
    if flags & (AF_ENCRYPTION if padding_flags else AF_ENCRYPTION_OLD):
        raise UnsupportedVariant(f"{reader.name}: bundle uses asset bundle encryption")
    if version >= 7:
        cur.align(16)
    header_end = start + cur.pos
    if flags & AF_BLOCKS_INFO_AT_END:
        if csize > reader.size - header_end:
            raise TruncatedData(f"{reader.name}: blocks info ({csize} bytes) beyond end of file")
        reader.seek(reader.size - csize)
        data_pos = header_end
    else:
        reader.seek(header_end)
        data_pos = header_end + csize
    comp_info = reader.read_exact(csize)
    with timed(metrics, "blocks_info", usize):
        try:
            info = decompress(flags & AF_COMPRESSION_MASK, comp_info, csize, usize)
        except CodecError as e:
            raise type(e)(f"{reader.name}: blocks info: {e}") from e

    ic = ByteCursor(info, name=f"{reader.name}:blocks-info")
    info_hash = ic.read(FS_INFO_HASH)
    blocks = [CompressionBlock(*ic.unpack(FS_BLOCK)) for _ in range(ic.count("block", MAX_BLOCKS))]
    entries: List[DirectoryEntry] = []
    for _ in range(ic.count("node", MAX_NODES)):
        off, sz, nf = ic.unpack(FS_NODE)
        entries.append(DirectoryEntry(name=ic.cstring(), offset=off, size=sz, flags=nf))
    if padding_flags and flags & AF_BLOCK_INFO_NEED_PADDING:
        data_pos = start + align_up(data_pos - start, 16)
    log.debug("%s: UnityFS v%d %s, %d block(s), %d entr(y/ies)", reader.name, version,
              unity_version, len(blocks), len(entries))

    reader.seek(data_pos)
    data = _materialize_blocks(reader, blocks, pool, metrics)
    try:
        check_entries(entries, len(data), reader.name)
    except FormatError:
        pool.release(data)
        raise
    layout = UnityFSLayout(size=size, compressed_blocks_info_size=csize,
                           uncompressed_blocks_info_size=usize, flags=flags,
                           blocks_info_hash=info_hash)
    return Container(name=reader.name, signature=sig, version=version, unity_version=unity_version,
                     unity_revision=unity_revision, layout=layout, blocks=blocks, entries=entries,
                     data=data, pool=pool)


def _parse_legacy(reader: StreamReader, cur: ByteCursor, start: int, sig: str,
                  pool: MemoryPool, metrics) -> Container:
    version = cur.u32()
    if version not in LEGACY_VERSIONS:
        raise UnsupportedVersion(f"{reader.name}: {sig} version {version} is not supported")
    unity_version = cur.cstring()
    unity_revision = cur.cstring()
    bundle_hash = b""
    crc = 0
    if version >= 4:
        bundle_hash = cur.read(16)
        crc = cur.u32()
    min_streamed, header_size, levels_before = cur.unpack("III")
    level_count = cur.i32()
    if level_count < 1 or level_count > 4096:
        raise TruncatedData(f"{reader.name}: implausible level count {level_count}")
    levels = [cur.unpack("II") for _ in range(level_count)]
    complete_file_size = cur.u32() if version >= 2 else 0
    file_info_header_size = cur.u32() if version >= 3 else 0
    compressed_size, uncompressed_size = levels[-1]

    reader.seek(start + header_size)
    if sig == SIG_UNITYWEB:
        comp = reader.read_exact(compressed_size)
        with timed(metrics, "decompress.lzma", uncompressed_size):
            raw = decompress_lzma_alone(comp, uncompressed_size)
        data = pool.acquire(len(raw))
        data[:] = raw
        block = CompressionBlock(uncompressed_size, compressed_size, Codec.LZMA)
    else:
        data = pool.acquire(compressed_size)
        try:
            reader.read_into(data)
        except BaseException:
            pool.release(data)
            raise
        block = CompressionBlock(compressed_size, compressed_size, Codec.NONE)

    try:
        dc = ByteCursor(data, name=f"{reader.name}:directory")
        entries = []
        for _ in range(dc.count("entry", MAX_NODES)):
            name = dc.cstring()
            off, sz = dc.unpack("II")
            entries.append(DirectoryEntry(name=name, offset=off, size=sz))
        check_entries(entries, len(data), reader.name)
    except FormatError:
        pool.release(data)
        raise
    layout = LegacyLayout(header_size=header_size, minimum_streamed_bytes=min_streamed,
                          levels_before_streaming=levels_before, levels=levels,
                          complete_file_size=complete_file_size,
                          file_info_header_size=file_info_header_size,
                          bundle_hash=bundle_hash, crc=crc)
    return Container(name=reader.name, signature=sig, version=version, unity_version=unity_version,
                     unity_revision=unity_revision, layout=layout, blocks=[block], entries=entries,
                     data=data, pool=pool)


def _parse_webdata(reader: StreamReader, start: int, wrapper: Optional[Codec], pool: MemoryPool,
                   metrics) -> Container:
    reader.seek(start)
    n = reader.remaining()
    if wrapper is None:
        data = pool.acquire(n)
        try:
            reader.read_into(data)
        except BaseException:
            pool.release(data)
            raise
        block = CompressionBlock(n, n, Codec.NONE)
    else:
        comp = reader.read_exact(n)
        with timed(metrics, "decompress." + CODEC_NAME[wrapper], n):
            raw = decompress(wrapper, comp)
        data = pool.acquire(len(raw))
        data[:] = raw
        block = CompressionBlock(len(raw), n, wrapper)

    try:
        cur = ByteCursor(data, endian="<", name=reader.name)
        sig = _read_signature(cur)
        if sig not in WEBDATA_SIGNATURES:
            raise BadMagic(f"{reader.name}: {CODEC_NAME[wrapper]} wrapper holds {sig!r}, not web data")
        head_length = cur.i32()
        if head_length < cur.pos or head_length > len(data):
            raise TruncatedData(f"{reader.name}: bad web data header length {head_length}")
        entries = []
        while cur.pos < head_length:
            off, ln, name_len = cur.unpack("iii")
            name = cur.read(name_len).decode("utf-8", errors="replace")
            entries.append(DirectoryEntry(name=name, offset=off, size=ln))
        check_entries(entries, len(data), reader.name)
    except FormatError:
        pool.release(data)
        raise
    return Container(name=reader.name, signature=sig, version=1, unity_version="", unity_revision="",
                     layout=WebDataLayout(wrapper=wrapper or Codec.NONE, head_length=head_length),
                     blocks=[block], entries=entries, data=data, pool=pool)


def parse_container(reader: StreamReader, *, pool: Optional[MemoryPool] = None,
                    metrics=None) -> Container:
    """Parse the container starting at the reader's position and materialize its blocks.

    The returned Container owns one pooled buffer holding the whole decompressed
    block stream; close it (or use it as a context manager) to hand the buffer back.
    """
    if pool is None:
        pool = reader.pool if reader.pool is not None else MemoryPool()
    if metrics is None:
        metrics = NullMetrics()
    start = reader.tell()
    with timed(metrics, "container", reader.remaining()):
        probe = reader.read_upto(HEADER_PROBE)
        if not probe:
            raise TruncatedData(f"{reader.name}: empty input")
        wrapper = detect_web_wrapper(probe)
        if wrapper is not None:
            return _parse_webdata(reader, start, wrapper, pool, metrics)
        cur = ByteCursor(probe, name=reader.name)
        sig = _read_signature(cur)
        if sig == SIG_UNITYFS:
            return _parse_unityfs(reader, cur, start, sig, pool, metrics)
        if sig in LEGACY_SIGNATURES:
            return _parse_legacy(reader, cur, start, sig, pool, metrics)
        return _parse_webdata(reader, start, None, pool, metrics)


def open_container(source: Source, *, pool: Optional[MemoryPool] = None, metrics=None,
                   cancel: Optional[CancelToken] = None, chunk_size: int = IO_CHUNK,
                   progress: Optional[ProgressFn] = None) -> Container:
    if progress is None and metrics is not None:
        progress = metrics.on_progress
    with StreamReader(source, chunk_size=chunk_size, progress=progress, cancel=cancel,
                      pool=pool) as reader:
        return parse_container(reader, pool=pool, metrics=metrics)

# -----------------------------
# TypeTree schema
# -----------------------------
# Built-in string table; node names with the high offset bit set index into it.
COMMON_STRINGS = (
    "AABB", "AnimationClip", "AnimationCurve", "AnimationState", "Array", "Base", "BitField",
    "bitset", "bool", "char", "ColorRGBA", "Component", "data", "deque", "double",
    "dynamic_array", "FastPropertyName", "first", "float", "Font", "GameObject", "Generic Mono",
    "GradientNEW", "GUID", "GUIStyle", "int", "list", "long long", "map", "Matrix4x4f", "MdFour",
    "MonoBehaviour", "MonoScript", "m_ByteSize", "m_Curve", "m_EditorClassIdentifier",
    "m_EditorHideFlags", "m_Enabled", "m_ExtensionPtr", "m_GameObject", "m_Index", "m_IsArray",
    "m_IsStatic", "m_MetaFlag", "m_Name", "m_ObjectHideFlags", "m_PrefabInternal",
    "m_PrefabParentObject", "m_Script", "m_StaticEditorFlags", "m_Type", "m_Version", "Object",
    "pair", "PPtr<Component>", "PPtr<GameObject>", "PPtr<Material>", "PPtr<MonoBehaviour>",
    "PPtr<MonoScript>", "PPtr<Object>", "PPtr<Prefab>", "PPtr<Sprite>", "PPtr<TextAsset>",
    "PPtr<Texture>", "PPtr<Texture2D>", "PPtr<Transform>", "Prefab", "Quaternionf", "Rectf",
    "RectInt", "RectOffset", "second", "set", "short", "size", "SInt16", "SInt32", "SInt64",
    "SInt8", "staticvector", "string", "TextAsset", "TextMesh", "Texture", "Texture2D",
    "Transform", "TypelessData", "UInt16", "UInt32", "UInt64", "UInt8", "unsigned int",
    "unsigned long long", "unsigned short", "vector", "Vector2f", "Vector3f", "Vector4f",
    "m_ScriptingClassIdentifier", "Gradient", "Type*", "int2_storage", "int3_storage",
    "BoundsInt", "m_CorrespondingSourceObject", "m_PrefabInstance", "m_PrefabAsset", "FileSize",
    "Hash128",
)


def _common_string_offsets() -> Dict[int, str]:
    table: Dict[int, str] = {}
    off = 0
    for s in COMMON_STRINGS:
        table[off] = s
        off += len(s.encode("ascii")) + 1
    return table

COMMON_STRING_TABLE = _common_string_offsets()
COMMON_STRING_FLAG = 0x80000000
MAX_TREE_DEPTH = 256


@dataclass
class TypeTreeNode:
    type: str
    name: str
    byte_size: int
    index: int
    is_array: bool
    version: int
    meta_flag: int
    level: int
    ref_type_hash: int = 0

    @property
    def aligned(self) -> bool:
        return bool(self.meta_flag & ALIGN_FLAG)


class TypeTree:
    """Flat node arena in pre-order; the children of node i are the following nodes
    exactly one level deeper, up to the next node at level <= i's level.

    Immutable once built, so one tree is shared by every object of its type.
    """
    __slots__ = ("nodes", "_children")

    def __init__(self, nodes: Iterable[TypeTreeNode]) -> None:
        self.nodes: Tuple[TypeTreeNode, ...] = tuple(nodes)
        self._children = _link_children(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def root(self) -> TypeTreeNode:
        return self.nodes[0]

    def children(self, i: int) -> Tuple[int, ...]:
        return self._children[i]

    def describe(self) -> str:
        return "\n".join(f"{'  ' * n.level}{n.type} {n.name} // size={n.byte_size} flags=0x{n.meta_flag:x}"
                         for n in self.nodes)


def _link_children(nodes: Sequence[TypeTreeNode]) -> Tuple[Tuple[int, ...], ...]:
    kids: List[List[int]] = [[] for _ in nodes]
    stack: List[int] = []
    for i, n in enumerate(nodes):
        while stack and nodes[stack[-1]].level >= n.level:
            stack.pop()
        if stack:
            kids[stack[-1]].append(i)
        elif i:
            raise FormatError(f"type tree node {i} ({n.type} {n.name}) is a second root")
        stack.append(i)
    return tuple(tuple(k) for k in kids)


def parse_typetree_blob(cur: ByteCursor, version: int) -> TypeTree:
    """Blob layout (format 10 and 12+): node records followed by a string buffer."""
    node_count = cur.count("type tree node", MAX_TYPETREE_NODES)
    str_size = cur.count("type tree string buffer", MAX_BLOCK_SIZE)
    rec = "HBBIIiii" + ("Q" if version >= 19 else "")
    raw = [cur.unpack(rec) for _ in range(node_count)]
    strings = cur.read(str_size)

    def string_at(off: int) -> str:
        if off & COMMON_STRING_FLAG:
            s = COMMON_STRING_TABLE.get(off & ~COMMON_STRING_FLAG)
            return s if s is not None else f"unknown_{off & ~COMMON_STRING_FLAG}"
        end = strings.find(b"\x00", off)
        if off >= len(strings) or end < 0:
            raise TruncatedData(f"{cur.name}: type tree string offset {off} outside buffer")
        return strings[off:end].decode("utf-8", errors="replace")

    nodes = []
    for r in raw:
        nodes.append(TypeTreeNode(
            type=string_at(r[3]),
            name=string_at(r[4]),
            byte_size=r[5],
            index=r[6],
            is_array=bool(r[2] & 1),
            version=r[0],
            meta_flag=r[7],
            level=r[1],
            ref_type_hash=r[8] if len(r) > 8 else 0,
        ))
    return TypeTree(nodes)


def parse_typetree_legacy(cur: ByteCursor, version: int) -> TypeTree:
    """Pre-blob layout: each node followed by its children, read with an explicit stack."""
    nodes: List[TypeTreeNode] = []
    pending = [1]  # nodes still to read at each depth
    while pending:
        if not pending[-1]:
            pending.pop()
            continue
        pending[-1] -= 1
        level = len(pending) - 1
        type_name = cur.cstring()
        name = cur.cstring()
        byte_size = cur.i32()
        if version == 2:
            cur.i32()  # variable count
        index = cur.i32() if version != 3 else len(nodes)
        is_array = cur.i32()
        node_version = cur.i32()
        meta_flag = cur.i32() if version != 3 else 0
        nchild = cur.count("type tree child", MAX_TYPETREE_NODES)
        nodes.append(TypeTreeNode(type=type_name, name=name, byte_size=byte_size, index=index,
                                  is_array=bool(is_array), version=node_version,
                                  meta_flag=meta_flag, level=level))
        if len(nodes) > MAX_TYPETREE_NODES:
            raise TruncatedData(f"{cur.name}: type tree exceeds {MAX_TYPETREE_NODES} nodes")
        if nchild:
            if len(pending) >= MAX_TREE_DEPTH:
                raise FormatError(f"{cur.name}: type tree deeper than {MAX_TREE_DEPTH} levels")
            pending.append(nchild)
    return TypeTree(nodes)

# -----------------------------
# SerializedFile
# -----------------------------
SF_HDR = struct.Struct(">IIII")     # metadata size, file size, version, data offset
SF_HDR22 = struct.Struct(">Iqqq")   # metadata size, file size, data offset, reserved


@dataclass
class SerializedType:
    class_id: int
    is_stripped: bool = False
    script_type_index: int = -1
    script_id: bytes = b""
    old_type_hash: bytes = b""
    type_tree: Optional[TypeTree] = field(default=None, repr=False)
    class_name: str = ""
    namespace: str = ""
    assembly_name: str = ""
    type_dependencies: List[int] = field(default_factory=list)


@dataclass
class ObjectEntry:
    path_id: int
    byte_start: int  # relative to the start of the SerializedFile
    byte_size: int
    type_id: int
    class_id: int
    serialized_type: Optional[SerializedType] = field(default=None, repr=False)

    @property
    def class_name(self) -> str:
        return class_name_for(self.class_id)


@dataclass
class FileIdentifier:
    path: str
    guid: bytes = b""
    type: int = 0
    temp_empty: str = ""


@dataclass(frozen=True)
class ObjectRef:
    """PPtr: file_id 0 is the same file, n > 0 is externals[n - 1]."""
    file_id: int
    path_id: int

    @property
    def is_null(self) -> bool:
        return self.file_id == 0 and self.path_id == 0


@dataclass
class SerializedFile:
    name: str
    version: int
    metadata_size: int
    file_size: int
    data_offset: int
    endian: str
    unity_version: str = ""
    target_platform: int = 0
    enable_type_tree: bool = True
    types: List[SerializedType] = field(default_factory=list)
    objects: Dict[int, ObjectEntry] = field(default_factory=dict)
    script_types: List[Tuple[int, int]] = field(default_factory=list)
    externals: List[FileIdentifier] = field(default_factory=list)
    ref_types: List[SerializedType] = field(default_factory=list)
    user_information: str = ""
    data: Any = field(default=b"", repr=False)
    base: int = field(default=0, repr=False)
    span: int = field(default=0, repr=False)

    def object_bytes(self, entry: ObjectEntry) -> memoryview:
        start = self.base + entry.byte_start
        return memoryview(self.data)[start:start + entry.byte_size]

    def resolve(self, ref: ObjectRef, files: Optional[Dict[str, "SerializedFile"]] = None) -> Optional[ObjectEntry]:
        """Look up the target of a PPtr. Dangling references give None.

        Cross-file references need `files`, keyed by external path or base name.
        """
        if ref.is_null:
            return None
        if ref.file_id == 0:
            return self.objects.get(ref.path_id)
        if files is None or not (0 < ref.file_id <= len(self.externals)):
            return None
        path = self.externals[ref.file_id - 1].path
        target = files.get(path) or files.get(path.replace("\\", "/").rsplit("/", 1)[-1])
        if target is None:
            return None
        return target.objects.get(ref.path_id)


def _sf_header_fields(data, offset: int, size: int) -> Optional[Tuple[int, int, int, int]]:
    avail = min(size, len(data) - offset)
    if avail < SF_HDR.size + 4:
        return None
    metadata_size, file_size, version, data_offset = SF_HDR.unpack_from(data, offset)
    if version >= 22:
        if avail < SF_HDR.size + 4 + SF_HDR22.size:
            return None
        metadata_size, file_size, data_offset, _ = SF_HDR22.unpack_from(data, offset + SF_HDR.size + 4)
    return metadata_size, file_size, version, data_offset


def looks_like_serialized_file(data, offset: int = 0, size: Optional[int] = None) -> bool:
    """Header sanity check used to tell SerializedFiles from resource blobs."""
    if size is None:
        size = len(data) - offset
    f = _sf_header_fields(data, offset, size)
    if f is None:
        return False
    metadata_size, file_size, version, data_offset = f
    if version < 1 or version > SERIALIZED_MAX_VERSION:
        return False
    if file_size <= 0 or data_offset < 0 or file_size > size or metadata_size > size:
        return False
    return data_offset <= file_size and metadata_size <= file_size


def _read_serialized_type(cur: ByteCursor, version: int, enable_type_tree: bool,
                          is_ref: bool) -> SerializedType:
    st = SerializedType(class_id=cur.i32())
    if version >= 16:
        st.is_stripped = cur.boolean()
    if version >= 17:
        st.script_type_index = cur.i16()
    if version >= 13:
        if ((is_ref and st.script_type_index >= 0)
                or (version < 16 and st.class_id < 0)
                or (version >= 16 and st.class_id == CLASS_MONO_BEHAVIOUR)):
            st.script_id = cur.read(16)
        st.old_type_hash = cur.read(16)
    if enable_type_tree:
        if version >= 12 or version == 10:
            st.type_tree = parse_typetree_blob(cur, version)
        else:
            st.type_tree = parse_typetree_legacy(cur, version)
        if version >= 21:
            if is_ref:
                st.class_name = cur.cstring()
                st.namespace = cur.cstring()
                st.assembly_name = cur.cstring()
            else:
                n = cur.count("type dependency", MAX_OBJECTS)
                st.type_dependencies = list(cur.unpack_array("i", n))
    return st


def parse_serialized_file(data, name: str = "<serialized>", offset: int = 0,
                          size: Optional[int] = None) -> SerializedFile:
    """Parse the metadata of the SerializedFile stored at data[offset:offset+size].

    Object payloads are not touched here; see decode_object.
    """
    if size is None:
        size = len(data) - offset
    end = offset + size
    hc = ByteCursor(data, offset, end, endian=">", name=name)
    metadata_size, file_size, version, data_offset = hc.unpack(SF_HDR)
    if version < 1 or version > SERIALIZED_MAX_VERSION:
        raise UnsupportedVersion(f"{name}: SerializedFile version {version} is not supported")
    if version >= 9:
        endian_byte = hc.u8()
        hc.skip(3)
        if version >= 22:
            metadata_size, file_size, data_offset, _ = hc.unpack(SF_HDR22)
    else:
        hc.seek(offset + file_size - metadata_size)
        endian_byte = hc.u8()
    if file_size > size:
        raise TruncatedData(f"{name}: header claims {file_size} bytes, entry has {size}")
    if data_offset < 0 or data_offset > file_size:
        raise TruncatedData(f"{name}: data offset {data_offset} outside file of {file_size} bytes")

    cur = hc
    cur.endian = ">" if endian_byte else "<"
    sf = SerializedFile(name=name, version=version, metadata_size=metadata_size,
                        file_size=file_size, data_offset=data_offset, endian=cur.endian,
                        data=cur.data, base=offset, span=size)
    if version >= 7:
        sf.unity_version = cur.cstring()
    if version >= 8:
        sf.target_platform = cur.i32()
    if version >= 13:
        sf.enable_type_tree = cur.boolean()

    for _ in range(cur.count("type", MAX_OBJECTS)):
        sf.types.append(_read_serialized_type(cur, version, sf.enable_type_tree, is_ref=False))
    by_class = {t.class_id: t for t in sf.types}

    big_id = cur.i32() if 7 <= version < 14 else 0
    for _ in range(cur.count("object", MAX_OBJECTS)):
        if big_id:
            path_id = cur.i64()
        elif version < 14:
            path_id = cur.i32()
        else:
            cur.align(4)
            path_id = cur.i64()
        byte_start = cur.i64() if version >= 22 else cur.u32()
        byte_size = cur.u32()
        type_id = cur.i32()
        if version < 16:
            class_id = cur.u16()
            stype = by_class.get(type_id)
        else:
            if not (0 <= type_id < len(sf.types)):
                raise TruncatedData(f"{name}: object {path_id} has type index {type_id} of {len(sf.types)}")
            stype = sf.types[type_id]
            class_id = stype.class_id
        if version < 11:
            cur.u16()  # is_destroyed
        if 11 <= version < 17:
            sti = cur.i16()
            if stype is not None:
                stype.script_type_index = sti
        if version in (15, 16):
            cur.u8()  # stripped
        if path_id in sf.objects:
            raise DuplicatePathId(f"{name}: path id {path_id} appears twice")
        sf.objects[path_id] = ObjectEntry(path_id=path_id, byte_start=byte_start + data_offset,
                                          byte_size=byte_size, type_id=type_id, class_id=class_id,
                                          serialized_type=stype)

    if version >= 11:
        for _ in range(cur.count("script type", MAX_OBJECTS)):
            file_index = cur.i32()
            if version < 14:
                ident = cur.i32()
            else:
                cur.align(4)
                ident = cur.i64()
            sf.script_types.append((file_index, ident))

    for _ in range(cur.count("external", MAX_OBJECTS)):
        ext = FileIdentifier(path="")
        if version >= 6:
            ext.temp_empty = cur.cstring()
        if version >= 5:
            ext.guid = cur.read(16)
            ext.type = cur.i32()
        ext.path = cur.cstring()
        sf.externals.append(ext)

    if version >= 20:
        for _ in range(cur.count("ref type", MAX_OBJECTS)):
            sf.ref_types.append(_read_serialized_type(cur, version, sf.enable_type_tree, is_ref=True))
    if version >= 5:
        sf.user_information = cur.cstring()
    log.debug("%s: SerializedFile v%d (%s) %d type(s) %d object(s)", name, version,
              sf.unity_version or "?", len(sf.types), len(sf.objects))
    return sf

# -----------------------------
# TypeTree value walk
# -----------------------------
PRIMITIVE_CODES: Dict[str, str] = {
    "SInt8": "b",
    "UInt8": "B",
    "char": "B",
    "bool": "?",
    "SInt16": "h",
    "short": "h",
    "UInt16": "H",
    "unsigned short": "H",
    "SInt32": "i",
    "int": "i",
    "UInt32": "I",
    "unsigned int": "I",
    "Type*": "I",
    "SInt64": "q",
    "long long": "q",
    "UInt64": "Q",
    "unsigned long long": "Q",
    "FileSize": "Q",
    "float": "f",
    "double": "d",
}


def _put(parent, key, value) -> None:
    if key is None:
        parent.append(value)
    else:
        parent[key] = value


class _ValueWalker:
    """Reads one object against a TypeTree.

    Containers are attached to their parent before they are filled, so when the
    data runs out the caller still holds everything decoded up to that point.
    Recursion depth is bounded by the one-byte node level.
    """
    __slots__ = ("tree", "nodes", "cur", "warnings")

    def __init__(self, tree: TypeTree, cur: ByteCursor, warnings: List[str]) -> None:
        self.tree = tree
        self.nodes = tree.nodes
        self.cur = cur
        self.warnings = warnings

    def read_into(self, i: int, parent, key) -> None:
        node = self.nodes[i]
        cur = self.cur
        kids = self.tree.children(i)
        t = node.type
        align = node.aligned
        code = PRIMITIVE_CODES.get(t)
        if code is not None and not kids:
            _put(parent, key, cur._one(code))
        elif t == "string":
            n = cur.i32()
            if n < 0:
                raise TruncatedData(f"{cur.name}: negative string length {n} in {node.name}")
            raw = cur.read(n)
            try:
                s = raw.decode("utf-8")
            except UnicodeDecodeError:
                s = raw.decode("utf-8", errors="replace")
                self.warnings.append(f"{node.name}: invalid UTF-8 in {n}-byte string")
            _put(parent, key, s)
            if kids and self.nodes[kids[0]].aligned:
                align = True
        elif t == "TypelessData":
            n = cur.i32()
            if n < 0:
                raise TruncatedData(f"{cur.name}: negative TypelessData length {n}")
            _put(parent, key, cur.read(n))
        elif node.is_array:
            self._read_array(node, kids, parent, key)
        elif kids and self.nodes[kids[0]].is_array:
            # vector / map / set / staticvector: the value is the inner array
            self.read_into(kids[0], parent, key)
        elif t == "pair" and len(kids) == 2:
            tmp: Dict[str, Any] = {}
            self.read_into(kids[0], tmp, "first")
            self.read_into(kids[1], tmp, "second")
            _put(parent, key, (tmp["first"], tmp["second"]))
        elif t.startswith("PPtr<"):
            tmp = {}
            for c in kids:
                self.read_into(c, tmp, self.nodes[c].name)
            _put(parent, key, ObjectRef(int(tmp.get("m_FileID", 0)), int(tmp.get("m_PathID", 0))))
        elif not kids and node.byte_size > 0:
            # leaf of a type we have no reader for: keep its declared bytes
            _put(parent, key, cur.read(node.byte_size))
        else:
            out: Dict[str, Any] = {}
            _put(parent, key, out)
            for c in kids:
                self.read_into(c, out, self.nodes[c].name)
        if align:
            cur.align(4)

    def _read_array(self, node: TypeTreeNode, kids: Tuple[int, ...], parent, key) -> None:
        cur = self.cur
        if len(kids) != 2:
            raise FormatError(f"{cur.name}: array {node.name} has {len(kids)} children, expected size + data")
        n = cur.i32()
        if n < 0 or n > cur.remaining():
            raise TruncatedData(f"{cur.name}: array {node.name} claims {n} elements, "
                                f"{cur.remaining()} bytes left")
        elem = kids[1]
        code = PRIMITIVE_CODES.get(self.nodes[elem].type)
        if code is not None and not self.tree.children(elem):
            _put(parent, key, list(cur.unpack_array(code, n)))
            return
        items: List[Any] = []
        _put(parent, key, items)
        for _ in range(n):
            self.read_into(elem, items, None)


def read_typetree_value(tree: TypeTree, data, offset: int = 0, size: Optional[int] = None, *,
                        endian: str = "<", warnings: Optional[List[str]] = None) -> Tuple[Any, int]:
    """Decode one value with `tree` from data[offset:offset+size].

    Returns (value, bytes consumed). Running out of data raises TruncatedData.
    """
    end = len(data) if size is None else offset + size
    cur = ByteCursor(data, offset, end, endian=endian, base=offset)
    holder: Dict[str, Any] = {}
    _ValueWalker(tree, cur, warnings if warnings is not None else []).read_into(0, holder, "value")
    return holder["value"], cur.pos - offset

# -----------------------------
# Object decoding
# -----------------------------
class _Unsupported:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSUPPORTED"

UNSUPPORTED = _Unsupported()


@dataclass
class TextAsset:
    name: str
    script: str


def decode_text_asset(value: Dict[str, Any]) -> TextAsset:
    return TextAsset(name=value.get("m_Name", ""), script=value.get("m_Script", ""))


class ClassRegistry:
    """classId -> specialised decoder applied to the generic value tree."""

    def __init__(self) -> None:
        self._decoders: Dict[int, Callable[[Any], Any]] = {}

    def register(self, class_id: int, fn: Callable[[Any], Any]) -> None:
        self._decoders[class_id] = fn

    def decode_specialized(self, class_id: int, value: Any) -> Any:
        fn = self._decoders.get(class_id)
        if fn is None:
            return UNSUPPORTED
        return fn(value)

    @classmethod
    def default(cls) -> "ClassRegistry":
        reg = cls()
        reg.register(CLASS_TEXT_ASSET, decode_text_asset)
        return reg


class DictSchemaRegistry:
    """In-memory schema store for files built without embedded type trees.

    Keys are the 16-byte type hash, or the class id for files too old to carry one.
    """

    def __init__(self, schemas: Optional[Dict[Any, TypeTree]] = None) -> None:
        self._schemas: Dict[Any, TypeTree] = dict(schemas or {})

    def add(self, key, tree: TypeTree) -> None:
        self._schemas[key] = tree

    def resolve_schema(self, version_hash) -> Optional[TypeTree]:
        return self._schemas.get(version_hash)


@dataclass
class DecodedObject:
    entry: ObjectEntry
    class_name: str
    value: Any = None
    specialized: Any = None
    errors: List[UnityFSError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def path_id(self) -> int:
        return self.entry.path_id


def schema_for(entry: ObjectEntry, schemas=None) -> TypeTree:
    st = entry.serialized_type
    if st is not None and st.type_tree is not None and len(st.type_tree):
        return st.type_tree
    if schemas is not None:
        key = st.old_type_hash if st is not None and st.old_type_hash else entry.class_id
        tree = schemas.resolve_schema(key)
        if tree is not None and len(tree):
            return tree
    raise MissingSchema(f"no type tree for {entry.class_name} (path id {entry.path_id})")


def decode_object(sf: SerializedFile, entry: ObjectEntry, *, schemas=None,
                  classes: Optional[ClassRegistry] = None) -> DecodedObject:
    """Rebuild one object. Failures are recorded on the result, never raised,
    so one bad object does not affect its siblings."""
    out = DecodedObject(entry=entry, class_name=entry.class_name)
    try:
        tree = schema_for(entry, schemas)
    except MissingSchema as e:
        out.errors.append(e)
        return out
    if entry.byte_start < 0 or entry.byte_start + entry.byte_size > sf.span:
        out.errors.append(TruncatedData(
            f"{sf.name}: object {entry.path_id} spans {entry.byte_start}..{entry.byte_start + entry.byte_size}, "
            f"file has {sf.span} bytes"))
        return out

    start = sf.base + entry.byte_start
    cur = ByteCursor(sf.data, start, start + entry.byte_size, endian=sf.endian, base=start,
                     name=f"{sf.name}#{entry.path_id}")
    holder: Dict[str, Any] = {}
    try:
        _ValueWalker(tree, cur, out.warnings).read_into(0, holder, "value")
    except FormatError as e:
        out.value = holder.get("value")
        out.errors.append(FieldMismatch(
            f"{sf.name}: {entry.class_name} {entry.path_id}: {e}",
            expected=entry.byte_size, consumed=cur.pos - start))
        log.warning("%s", out.errors[-1])
        return out
    out.value = holder["value"]
    consumed = cur.pos - start
    if consumed != entry.byte_size:
        out.errors.append(FieldMismatch(
            f"{sf.name}: {entry.class_name} {entry.path_id}: read {consumed} of {entry.byte_size} bytes",
            expected=entry.byte_size, consumed=consumed))
        log.warning("%s", out.errors[-1])
        return out
    for w in out.warnings:
        log.warning("%s: %s %d: %s", sf.name, entry.class_name, entry.path_id, w)

    if classes is not None:
        try:
            res = classes.decode_specialized(entry.class_id, out.value)
        except Exception as e:
            err = TypeTreeError(f"{entry.class_name} {entry.path_id}: specialised decode failed: {e!r}")
            err.__cause__ = e
            out.errors.append(err)
            log.warning("%s: %s", sf.name, err)
        else:
            if res is not UNSUPPORTED:
                out.specialized = res
    return out


def decode_serialized_file(sf: SerializedFile, *, schemas=None, classes: Optional[ClassRegistry] = None,
                           cancel: Optional[CancelToken] = None) -> List[DecodedObject]:
    objs = []
    for entry in sf.objects.values():
        if cancel is not None:
            cancel.check()
        objs.append(decode_object(sf, entry, schemas=schemas, classes=classes))
    return objs

# -----------------------------
# Retry / recovery
# -----------------------------
@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEF_RETRY_ATTEMPTS
    base_delay: float = DEF_RETRY_BASE_DELAY
    max_delay: float = DEF_RETRY_MAX_DELAY
    backoff_factor: float = DEF_RETRY_FACTOR

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.backoff_factor < 1.0:
            raise ValueError("delays must be >= 0 and backoff_factor >= 1")

    def delay_for(self, retry: int) -> float:
        """Delay before retry number `retry` (1 = first retry)."""
        return min(self.max_delay, self.base_delay * (self.backoff_factor ** (retry - 1)))


NON_RETRYABLE_OS_ERRORS = (FileNotFoundError, IsADirectoryError, NotADirectoryError,
                           PermissionError, gzip.BadGzipFile)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, UnityFSError):
        return exc.retryable
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, NON_RETRYABLE_OS_ERRORS):
        return False
    return isinstance(exc, OSError)


RetryCallback = Callable[[int, BaseException, float], None]


def retry_with_backoff(operation: Callable[[], Any], policy: Optional[RetryPolicy] = None, *,
                       sleep: Callable[[float], Any] = time.sleep,
                       on_retry: Optional[RetryCallback] = None) -> Any:
    """Run `operation` until it succeeds, fails permanently or runs out of attempts."""
    if policy is None:
        policy = RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                raise RetryExhausted(e, attempt) from e
            delay = policy.delay_for(attempt)
            log.debug("attempt %d failed (%s); retrying in %.3fs", attempt, e, delay)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            sleep(delay)


async def aretry_with_backoff(operation: Callable[[], Any], policy: Optional[RetryPolicy] = None, *,
                              sleep: Callable[[float], Any] = asyncio.sleep,
                              on_retry: Optional[RetryCallback] = None) -> Any:
    """Async variant; `operation` returns a fresh awaitable per attempt."""
    if policy is None:
        policy = RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                raise RetryExhausted(e, attempt) from e
            delay = policy.delay_for(attempt)
            log.debug("attempt %d failed (%s); retrying in %.3fs", attempt, e, delay)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)

# -----------------------------
# Decode pipeline
# -----------------------------
@dataclass
class ResourceInfo:
    name: str
    size: int
    digest: bytes


@dataclass
class DecodedSerializedFile:
    entry_name: str
    file: SerializedFile
    objects: List[DecodedObject] = field(default_factory=list)

    @property
    def failed(self) -> List[DecodedObject]:
        return [o for o in self.objects if not o.ok]


@dataclass
class DecodedFile:
    source: str
    signature: str
    version: int
    unity_version: str
    statistics: Dict[str, Any] = field(default_factory=dict)
    files: List[DecodedSerializedFile] = field(default_factory=list)
    resources: List[ResourceInfo] = field(default_factory=list)

    @property
    def object_count(self) -> int:
        return sum(len(f.objects) for f in self.files)

    @property
    def error_count(self) -> int:
        return sum(len(f.failed) for f in self.files)


def _decode_entry(name: str, data: bytes, *, schemas, classes, decode_objects: bool,
                  keep_data: bool, cancel: Optional[CancelToken], metrics) -> DecodedSerializedFile:
    with timed(metrics, "serialized", len(data)):
        sf = parse_serialized_file(data, name)
    out = DecodedSerializedFile(entry_name=name, file=sf)
    if decode_objects:
        with timed(metrics, "objects", len(data)):
            out.objects = decode_serialized_file(sf, schemas=schemas, classes=classes, cancel=cancel)
    if not keep_data:
        sf.data = b""
    return out


def decode_container(container: Container, *, schemas=None, classes: Optional[ClassRegistry] = None,
                     decode_objects: bool = True, keep_data: bool = False,
                     cancel: Optional[CancelToken] = None, metrics=None) -> DecodedFile:
    """Parse every SerializedFile in `container`; other entries are listed as resources.

    Entry bytes are copied out of the container, so the result stays valid after the
    container is closed.
    """
    if metrics is None:
        metrics = NullMetrics()
    if classes is None:
        classes = ClassRegistry.default()
    out = DecodedFile(source=container.name, signature=container.signature,
                      version=container.version, unity_version=container.unity_version,
                      statistics=container.statistics())
    for e in container.entries:
        view = container.entry_data(e)
        if e.is_resource or not looks_like_serialized_file(view):
            out.resources.append(ResourceInfo(e.name, e.size, stable_hash32(view)))
            continue
        out.files.append(_decode_entry(e.name, container.read_entry(e), schemas=schemas,
                                       classes=classes, decode_objects=decode_objects,
                                       keep_data=keep_data, cancel=cancel, metrics=metrics))
    return out


def sniff_kind(head, total_size: int) -> Optional[str]:
    """'unityfs', 'legacy', 'webdata', 'serialized' or None from the first bytes of a file."""
    if detect_web_wrapper(head) is not None:
        return "webdata"
    i = bytes(head[:MAX_SIGNATURE]).find(b"\x00")
    if i > 0:
        sig = bytes(head[:i]).decode("latin-1")
        if sig == SIG_UNITYFS:
            return "unityfs"
        if sig in LEGACY_SIGNATURES:
            return "legacy"
        if sig in WEBDATA_SIGNATURES:
            return "webdata"
    if looks_like_serialized_file(head, 0, total_size):
        return "serialized"
    return None


def decode_source(source: Source, *, name: Optional[str] = None, pool: Optional[MemoryPool] = None,
                  metrics=None, cancel: Optional[CancelToken] = None,
                  options: Optional[DecodeOptions] = None, schemas=None,
                  classes: Optional[ClassRegistry] = None) -> DecodedFile:
    """Decode one container (or bare SerializedFile) from a path, file object or buffer."""
    if options is None:
        options = DecodeOptions()
    if metrics is None:
        metrics = NullMetrics()
    if pool is None:
        pool = MemoryPool(threshold=options.pool_threshold)
    with StreamReader(source, chunk_size=options.chunk_size, progress=metrics.on_progress,
                      cancel=cancel, pool=pool, name=name) as reader:
        start = reader.tell()
        head = reader.read_upto(HEADER_PROBE)
        reader.seek(start)
        if sniff_kind(head, reader.size - start) == "serialized":
            data = bytes(reader.read_exact(reader.remaining()))
            out = DecodedFile(source=reader.name, signature="SerializedFile", version=0,
                              unity_version="", statistics={"kind": "serialized", "size": len(data)})
            f = _decode_entry(reader.name, data, schemas=schemas,
                              classes=classes if classes is not None else ClassRegistry.default(),
                              decode_objects=options.decode_objects, keep_data=False,
                              cancel=cancel, metrics=metrics)
            out.version = f.file.version
            out.unity_version = f.file.unity_version
            out.files.append(f)
            return out
        with parse_container(reader, pool=pool, metrics=metrics) as container:
            return decode_container(container, schemas=schemas, classes=classes,
                                    decode_objects=options.decode_objects, cancel=cancel,
                                    metrics=metrics)


async def adecode_source(source: Source, *, pool: Optional[MemoryPool] = None, metrics=None,
                         options: Optional[DecodeOptions] = None, schemas=None,
                         classes: Optional[ClassRegistry] = None,
                         executor: Optional[concurrent.futures.Executor] = None) -> DecodedFile:
    """Read `source` cooperatively on the loop, then decode it on `executor`."""
    if options is None:
        options = DecodeOptions()
    if metrics is None:
        metrics = NullMetrics()
    if pool is None:
        pool = MemoryPool(threshold=options.pool_threshold)
    name = source_name(source)
    with StreamReader(source, chunk_size=options.chunk_size, progress=metrics.on_progress,
                      pool=pool, name=name) as reader:
        buf = await reader.aread_all()
    job = functools.partial(decode_source, buf, name=name, pool=pool, metrics=metrics,
                            options=options, schemas=schemas, classes=classes)
    try:
        fut = asyncio.get_running_loop().run_in_executor(executor, job)
    except BaseException:
        pool.release(buf)
        raise

    def done(f: asyncio.Future) -> None:
        pool.release(buf)
        if not f.cancelled():
            f.exception()

    # the worker reads `buf` until it returns, even when this coroutine is cancelled
    fut.add_done_callback(done)
    return await asyncio.shield(fut)

# -----------------------------
# Batch processing
# -----------------------------
@dataclass
class BatchResult:
    index: int
    source: Any
    value: Any = None
    error: Optional[BaseException] = None
    retries: int = 0
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchStats:
    started: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0


async def process_batch(inputs: Iterable[Any], *, unit: Optional[Callable[[Any], Any]] = None,
                        max_concurrent: int = DEF_MAX_CONCURRENT, retry: Optional[RetryPolicy] = None,
                        cancel: Optional[CancelToken] = None,
                        executor: Optional[concurrent.futures.Executor] = None,
                        pool: Optional[MemoryPool] = None, metrics=None,
                        options: Optional[DecodeOptions] = None,
                        stats: Optional[BatchStats] = None) -> AsyncIterator[BatchResult]:
    """Decode `inputs` with at most `max_concurrent` in flight; yield results as they finish.

    `unit` maps one input to a value; coroutine functions run on the loop, plain
    callables on the executor. Every input yields exactly one BatchResult: after
    `cancel` fires no new unit starts and the remaining inputs come back as
    Cancelled, while units already running are left to finish. Closing the iterator
    early likewise starts nothing new and waits for the running units.
    """
    if max_concurrent < 1:
        raise ValueError("max_concurrent must be >= 1")
    items = list(inputs)
    if stats is None:
        stats = BatchStats()
    own_executor = None
    if executor is None:
        executor = own_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="unityfs")
    if unit is None:
        unit = functools.partial(adecode_source, pool=pool if pool is not None else MemoryPool(),
                                 metrics=metrics, options=options, executor=executor)
    is_coro = inspect.iscoroutinefunction(unit)

    loop = asyncio.get_running_loop()
    sem = asyncio.Semaphore(max_concurrent)
    done: asyncio.Queue = asyncio.Queue()
    running: set = set()

    async def call(src):
        if is_coro:
            return await unit(src)
        return await loop.run_in_executor(executor, unit, src)

    async def run_one(i: int, src) -> None:
        retries = 0

        def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            nonlocal retries
            retries += 1
            log.info("%s: retry %d after %s", src, attempt, exc)

        t0 = time.perf_counter()
        try:
            value = await aretry_with_backoff(lambda: call(src), retry, on_retry=on_retry)
        except Exception as e:
            res = BatchResult(i, src, error=e, retries=retries, elapsed=time.perf_counter() - t0)
        else:
            res = BatchResult(i, src, value=value, retries=retries, elapsed=time.perf_counter() - t0)
        finally:
            stats.in_flight -= 1
            sem.release()
        done.put_nowait(res)

    def skip(i: int, src) -> None:
        done.put_nowait(BatchResult(i, src, error=Cancelled(f"{src}: batch cancelled before start")))

    async def feed() -> None:
        for i, src in enumerate(items):
            if cancel is not None and cancel.cancelled:
                skip(i, src)
                continue
            await sem.acquire()
            if cancel is not None and cancel.cancelled:
                sem.release()
                skip(i, src)
                continue
            stats.started += 1
            stats.in_flight += 1
            stats.peak_in_flight = max(stats.peak_in_flight, stats.in_flight)
            t = asyncio.ensure_future(run_one(i, src))
            running.add(t)
            t.add_done_callback(running.discard)

    feeder = asyncio.ensure_future(feed())
    try:
        for _ in range(len(items)):
            res = await done.get()
            if res.ok:
                stats.succeeded += 1
            elif isinstance(res.error, Cancelled):
                stats.cancelled += 1
            else:
                stats.failed += 1
            yield res
        await feeder
    finally:
        # an early close stops feeding; units already running finish on their own
        if not feeder.done():
            feeder.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        if own_executor is not None:
            own_executor.shutdown(wait=False)


def run_batch(inputs: Iterable[Any], **kwargs) -> List[BatchResult]:
    """Synchronous wrapper around process_batch; results in completion order."""
    async def _collect() -> List[BatchResult]:
        return [r async for r in process_batch(inputs, **kwargs)]
    return asyncio.run(_collect())

# -----------------------------
# Input gathering
# -----------------------------
def gather_input_paths(inputs: List[str]) -> List[pathlib.Path]:
    out: List[pathlib.Path] = []
    for x in inputs:
        p = pathlib.Path(x)
        if p.is_dir():
            for dp, _, fnames in os.walk(p):
                for n in sorted(fnames):
                    out.append(pathlib.Path(dp, n))
        else:
            out.append(p)
    return out

# -----------------------------
# Commands
# -----------------------------
def _json_default(o):
    if isinstance(o, ObjectRef):
        return {"m_FileID": o.file_id, "m_PathID": o.path_id}
    if isinstance(o, (bytes, bytearray)):
        if len(o) <= 64:
            return o.hex()
        return {"bytes": len(o), "blake3": stable_hash32(o)[:8].hex()}
    if isinstance(o, TextAsset):
        return {"name": o.name, "script": o.script}
    raise TypeError(f"not JSON serializable: {type(o).__name__}")


def _short(value, limit: int = 160) -> str:
    s = repr(value)
    return s if len(s) <= limit else s[:limit - 3] + "..."


def cmd_info(args: argparse.Namespace) -> None:
    metrics = args.metrics
    res = decode_source(args.file, metrics=metrics, options=DecodeOptions(decode_objects=False))
    st = res.statistics
    print(f"File: {res.source}")
    print(f"  signature: {res.signature}  version: {res.version}  unity: {res.unity_version or '?'}")
    if st.get("kind") != "serialized":
        print(f"  kind: {st['kind']}  blocks: {st['blocks']}  entries: {st['entries']}")
        print(f"  compressed bytes: {st['compressed_bytes']}")
        print(f"  uncompressed bytes: {st['uncompressed_bytes']}")
        print(f"  compressed/raw ratio: {st['ratio']:.4f}")
        print("  codecs: " + ", ".join(f"{k}={v}" for k, v in sorted(st["codecs"].items())))
    for f in res.files:
        sf = f.file
        print(f"  serialized: {f.entry_name}  v{sf.version}  unity={sf.unity_version or '?'}  "
              f"platform={sf.target_platform}  types={len(sf.types)}  objects={len(sf.objects)}  "
              f"externals={len(sf.externals)}")
    for r in res.resources:
        print(f"  resource: {r.name}  {r.size} bytes  blake3={r.digest[:8].hex()}")


def cmd_list(args: argparse.Namespace) -> None:
    with open_container(args.file, metrics=args.metrics) as c:
        print(f"{c.name}: {c.signature} v{c.version}, {len(c.entries)} entr{'y' if len(c.entries) == 1 else 'ies'}")
        for e in c.entries:
            print(f"{e.size:12d}  {e.offset:12d}  {c.entry_digest(e)[:8].hex()}  {e.name}")


def cmd_dump(args: argparse.Namespace) -> None:
    res = decode_source(args.file, metrics=args.metrics)
    for f in res.files:
        if args.types:
            for t in f.file.types:
                if t.type_tree is not None:
                    print(f"# {class_name_for(t.class_id)} ({t.class_id})")
                    print(t.type_tree.describe())
        for o in f.objects:
            if args.object is not None and o.path_id != args.object:
                continue
            if args.json:
                rec = {"file": f.entry_name, "path_id": o.path_id, "class": o.class_name,
                       "value": o.value, "errors": [str(e) for e in o.errors]}
                print(json.dumps(rec, default=_json_default, sort_keys=False))
                continue
            status = "ok" if o.ok else "; ".join(f"{type(e).__name__}: {e}" for e in o.errors)
            print(f"{f.entry_name} {o.path_id:>20d} {o.class_name:<16s} {status}")
            if o.value is not None:
                print(f"    {_short(o.value)}")


def cmd_batch(args: argparse.Namespace) -> int:
    paths = [str(p) for p in gather_input_paths(args.inputs)]
    options = DecodeOptions.from_env()
    jobs = args.jobs or options.max_concurrent
    retry = RetryPolicy(max_attempts=options.retry_attempts)
    stats = BatchStats()
    t0 = time.perf_counter()
    results = run_batch(paths, max_concurrent=jobs, retry=retry, metrics=args.metrics,
                        options=options, stats=stats)
    for r in sorted(results, key=lambda r: r.index):
        if r.ok:
            v = r.value
            print(f"OK   {r.source}  files={len(v.files)} objects={v.object_count} "
                  f"errors={v.error_count} retries={r.retries} {r.elapsed:.3f}s")
        else:
            print(f"ERR  {r.source}  {type(r.error).__name__}: {r.error}")
    dt = time.perf_counter() - t0
    print(f"{len(results)} input(s): {stats.succeeded} ok, {stats.failed} failed, "
          f"{stats.cancelled} cancelled; peak in flight {stats.peak_in_flight}; {dt:.3f}s")
    return 0 if stats.failed == 0 and stats.cancelled == 0 else 1


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="unityfs.py", add_help=True)
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    ap.add_argument("--profile", action="store_true",
                    help="print per-operation timing breakdown")
    sub = ap.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("info", help="container metadata")
    pi.add_argument("file")
    pi.set_defaults(func=cmd_info)

    pl = sub.add_parser("l", help="list directory entries")
    pl.add_argument("file")
    pl.set_defaults(func=cmd_list)

    pd = sub.add_parser("dump", help="decode objects")
    pd.add_argument("file")
    pd.add_argument("--object", type=int, default=None, help="only this path id")
    pd.add_argument("--json", action="store_true", help="one JSON record per object")
    pd.add_argument("--types", action="store_true", help="print type trees first")
    pd.set_defaults(func=cmd_dump)

    pb = sub.add_parser("batch", help="decode many files concurrently")
    pb.add_argument("inputs", nargs="+")
    pb.add_argument("--jobs", type=int, default=0,
                    help="max concurrent decodes (0 = $UNITYFS_MAX_CONCURRENT or 4)")
    pb.set_defaults(func=cmd_batch)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    args.metrics = MetricsRecorder() if args.profile else NullMetrics()
    try:
        rc = args.func(args) or 0
    except (UnityFSError, OSError) as e:
        print(f"FATAL: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    if args.profile:
        print(f"profile: {args.metrics.report()}")
    return rc

if __name__ == "__main__":
    sys.exit(main())
