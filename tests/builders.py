"""Synthetic Unity containers for the tests, built with the real codec libraries."""

import gzip
import lzma
import struct
from typing import List, Optional, Sequence, Tuple

import brotli
import lz4.block

import unityfs
from unityfs import Codec

LZMA_DICT = 1 << 16
# lc=3 lp=0 pb=2, the settings Unity uses
LZMA_PROPS = bytes([(2 * 5 + 0) * 9 + 3]) + LZMA_DICT.to_bytes(4, "little")
LZMA_FILTERS = [{"id": lzma.FILTER_LZMA1, "dict_size": LZMA_DICT, "lc": 3, "lp": 0, "pb": 2}]


def compress(codec: int, raw: bytes) -> bytes:
    if codec == Codec.NONE:
        return bytes(raw)
    if codec == Codec.LZMA:
        return LZMA_PROPS + lzma.compress(raw, format=lzma.FORMAT_RAW, filters=LZMA_FILTERS)
    if codec == Codec.LZ4:
        return lz4.block.compress(raw, store_size=False)
    if codec == Codec.LZ4HC:
        return lz4.block.compress(raw, mode="high_compression", store_size=False)
    if codec == Codec.BROTLI:
        return brotli.compress(raw)
    if codec == Codec.GZIP:
        return gzip.compress(raw)
    raise ValueError(f"no compressor for {codec}")


def cstr(s: str) -> bytes:
    return s.encode("utf-8") + b"\x00"


def align(n: int, a: int) -> int:
    return (n + a - 1) // a * a


# -----------------------------------------------------------------------------
# TYPE TREES AND OBJECT PAYLOADS
# -----------------------------------------------------------------------------
_COMMON = {s: off for off, s in unityfs.COMMON_STRING_TABLE.items()}

# (type, name, level, meta_flag)
Node = Tuple[str, str, int, int]


def typetree_blob(nodes: Sequence[Node], *, endian: str = "<", version: int = 22,
                  use_common: bool = False) -> bytes:
    strings = bytearray()
    offsets = {}

    def off(s: str) -> int:
        if use_common and s in _COMMON:
            return 0x80000000 | _COMMON[s]
        if s not in offsets:
            offsets[s] = len(strings)
            strings.extend(cstr(s))
        return offsets[s]

    recs = bytearray()
    for i, (typ, name, level, meta) in enumerate(nodes):
        is_array = 1 if typ == "Array" else 0
        recs += struct.pack(endian + "HBBIIiii", 1, level, is_array, off(typ), off(name), -1, i, meta)
        if version >= 19:
            recs += struct.pack(endian + "Q", 0)
    return struct.pack(endian + "ii", len(nodes), len(strings)) + bytes(recs) + bytes(strings)


def typetree_legacy(nodes: Sequence[Node], *, endian: str = "<") -> bytes:
    """Pre-blob recursive layout (formats 4..9 and 11)."""
    out = bytearray()
    for i, (typ, name, level, meta) in enumerate(nodes):
        nchild = 0
        for t in nodes[i + 1:]:
            if t[2] <= level:
                break
            if t[2] == level + 1:
                nchild += 1
        out += cstr(typ) + cstr(name)
        out += struct.pack(endian + "iiiiii", -1, i, 1 if typ == "Array" else 0, 1, meta, nchild)
    return bytes(out)


def string_nodes(name: str, level: int) -> List[Node]:
    return [
        ("string", name, level, 0x8000),
        ("Array", "Array", level + 1, 0x4000),
        ("int", "size", level + 2, 0),
        ("char", "data", level + 2, 0),
    ]


TEXT_ASSET_NODES: List[Node] = (
    [("TextAsset", "Base", 0, 0)]
    + string_nodes("m_Name", 1)
    + string_nodes("m_Script", 1)
)

GAME_OBJECT_NODES: List[Node] = (
    [
        ("GameObject", "Base", 0, 0),
        ("int", "m_Layer", 1, 0),
        ("bool", "m_IsActive", 1, 0x4000),
        ("float", "m_Weight", 1, 0),
        ("vector", "m_Values", 1, 0),
        ("Array", "Array", 2, 0x4000),
        ("int", "size", 3, 0),
        ("SInt32", "data", 3, 0),
        ("PPtr<Object>", "m_Ref", 1, 0),
        ("int", "m_FileID", 2, 0),
        ("SInt64", "m_PathID", 2, 0),
        ("map", "m_Table", 1, 0),
        ("Array", "Array", 2, 0x4000),
        ("int", "size", 3, 0),
        ("pair", "data", 3, 0),
    ]
    + string_nodes("first", 4)
    + [
        ("int", "second", 4, 0),
        ("TypelessData", "m_Blob", 1, 0x4000),
        ("int", "size", 2, 0),
        ("UInt8", "data", 2, 0),
    ]
)


class Payload:
    """Little helper writing object data the way Unity serializes it."""

    def __init__(self, endian: str = "<") -> None:
        self.e = endian
        self.buf = bytearray()

    def i32(self, v: int) -> "Payload":
        self.buf += struct.pack(self.e + "i", v)
        return self

    def i64(self, v: int) -> "Payload":
        self.buf += struct.pack(self.e + "q", v)
        return self

    def f32(self, v: float) -> "Payload":
        self.buf += struct.pack(self.e + "f", v)
        return self

    def boolean(self, v: bool) -> "Payload":
        self.buf.append(1 if v else 0)
        return self

    def raw(self, b: bytes) -> "Payload":
        self.buf += b
        return self

    def align(self, a: int = 4) -> "Payload":
        while len(self.buf) % a:
            self.buf.append(0)
        return self

    def string(self, s) -> "Payload":
        b = s.encode("utf-8") if isinstance(s, str) else bytes(s)
        self.i32(len(b))
        self.buf += b
        return self.align()

    def bytes(self) -> bytes:
        return bytes(self.buf)


def text_asset_payload(name: str, script, endian: str = "<") -> bytes:
    return Payload(endian).string(name).string(script).bytes()


def game_object_payload(*, layer: int = 5, active: bool = True, weight: float = 0.5,
                        values: Sequence[int] = (1, 2, 3), ref: Tuple[int, int] = (0, 2),
                        table: Sequence[Tuple[str, int]] = (("a", 1), ("bc", 2)),
                        blob: bytes = b"\x01\x02\x03", endian: str = "<") -> bytes:
    p = Payload(endian)
    p.i32(layer).boolean(active).align().f32(weight)
    p.i32(len(values))
    for v in values:
        p.i32(v)
    p.i32(ref[0]).i64(ref[1])
    p.i32(len(table))
    for k, v in table:
        p.string(k).i32(v)
    p.i32(len(blob)).raw(blob).align()
    return p.bytes()


GAME_OBJECT_VALUE = {
    "m_Layer": 5,
    "m_IsActive": True,
    "m_Weight": 0.5,
    "m_Values": [1, 2, 3],
    "m_Ref": unityfs.ObjectRef(0, 2),
    "m_Table": [("a", 1), ("bc", 2)],
    "m_Blob": b"\x01\x02\x03",
}

TYPE_HASH_TEXT = bytes(range(16))
TYPE_HASH_GO = bytes(range(16, 32))


# -----------------------------------------------------------------------------
# SERIALIZED FILES
# -----------------------------------------------------------------------------
def serialized_file(types, objects, *, version: int = 22, endian: str = "<",
                    unity_version: str = "2021.3.16f1", platform: int = 19,
                    externals: Sequence[str] = (), enable_type_tree: bool = True) -> bytes:
    """types: [(class_id, nodes, type_hash)], objects: [(path_id, type_index, payload)]."""
    e = endian
    hdr_len = 48 if version >= 22 else 20
    meta = bytearray()
    meta += cstr(unity_version)
    meta += struct.pack(e + "i", platform)
    meta.append(1 if enable_type_tree else 0)
    meta += struct.pack(e + "i", len(types))
    for class_id, nodes, type_hash in types:
        meta += struct.pack(e + "i", class_id)
        meta.append(0)                      # stripped
        meta += struct.pack(e + "h", -1)    # script type index
        if class_id == 114:
            meta += b"\x11" * 16
        meta += type_hash
        if enable_type_tree:
            meta += typetree_blob(nodes or [], endian=e, version=version)
            if version >= 21:
                meta += struct.pack(e + "i", 0)

    meta += struct.pack(e + "i", len(objects))
    placed = []
    rel = 0
    for _pid, _ti, payload in objects:
        placed.append(rel)
        rel = align(rel + len(payload), 8)
    for (pid, ti, payload), off in zip(objects, placed):
        while (hdr_len + len(meta)) % 4:
            meta.append(0)
        meta += struct.pack(e + "q", pid)
        meta += struct.pack(e + ("q" if version >= 22 else "I"), off)
        meta += struct.pack(e + "I", len(payload))
        meta += struct.pack(e + "i", ti)
    meta += struct.pack(e + "i", 0)  # script types
    meta += struct.pack(e + "i", len(externals))
    for path in externals:
        meta += cstr("") + b"\x00" * 16 + struct.pack(e + "i", 0) + cstr(path)
    if version >= 20:
        meta += struct.pack(e + "i", 0)  # ref types
    meta += cstr("")  # user information

    data_offset = align(hdr_len + len(meta), 16)
    body = bytes(meta) + b"\x00" * (data_offset - hdr_len - len(meta))
    data = bytearray()
    for (_pid, _ti, payload), off in zip(objects, placed):
        data += b"\x00" * (off - len(data))
        data += payload
    file_size = data_offset + len(data)
    endian_byte = bytes([1 if e == ">" else 0, 0, 0, 0])
    if version >= 22:
        header = (struct.pack(">IIII", 0, 0, version, 0) + endian_byte
                  + struct.pack(">Iqqq", len(meta), file_size, data_offset, 0))
    else:
        header = struct.pack(">IIII", len(meta), file_size, version, data_offset) + endian_byte
    return header + body + bytes(data)


def sample_serialized(version: int = 22, endian: str = "<", **kw) -> bytes:
    """Two types, three objects: TextAsset 1, GameObject 2 (refs 1), TextAsset 3."""
    types = [(49, TEXT_ASSET_NODES, TYPE_HASH_TEXT), (1, GAME_OBJECT_NODES, TYPE_HASH_GO)]
    objects = [
        (1, 0, text_asset_payload("readme", "hello world", endian)),
        (2, 1, game_object_payload(ref=(0, 1), endian=endian)),
        (3, 0, text_asset_payload("notes", "second", endian)),
    ]
    return serialized_file(types, objects, version=version, endian=endian, **kw)


# -----------------------------------------------------------------------------
# CONTAINERS
# -----------------------------------------------------------------------------
def unityfs_bundle(entries, *, codec=Codec.LZ4HC, info_codec=Codec.LZ4, block_size: Optional[int] = None,
                   version: int = 7, info_at_end: bool = False, need_padding: bool = False,
                   block_flags: int = 0, size_delta: int = 0, nodes_override=None,
                   unity_version: str = "2021.3.16f1", archive_flags: int = 0) -> bytes:
    """entries: [(name, payload)] or [(name, payload, flags)]; codec may be a list cycled per block."""
    ents = [(e[0], e[1], e[2] if len(e) > 2 else 4) for e in entries]
    data = b"".join(p for _, p, _ in ents)
    size = block_size or max(len(data), 1)
    chunks = [data[i:i + size] for i in range(0, len(data), size)]
    codecs = list(codec) if isinstance(codec, (list, tuple)) else [codec]
    blocks = []
    for i, c in enumerate(chunks):
        k = codecs[i % len(codecs)]
        blocks.append((len(c), compress(k, c), int(k) | block_flags))

    info = bytearray(b"\x00" * 16)
    info += struct.pack(">i", len(blocks))
    for j, (u, comp, fl) in enumerate(blocks):
        info += struct.pack(">IIH", u + (size_delta if j == 0 else 0), len(comp), fl)
    if nodes_override is None:
        nodes = []
        off = 0
        for name, payload, fl in ents:
            nodes.append((off, len(payload), fl, name))
            off += len(payload)
    else:
        nodes = nodes_override
    info += struct.pack(">i", len(nodes))
    for off, sz, fl, name in nodes:
        info += struct.pack(">qqI", off, sz, fl) + cstr(name)
    cinfo = compress(info_codec, bytes(info))

    flags = int(info_codec) | 0x40 | archive_flags
    if info_at_end:
        flags |= 0x80
    if need_padding:
        flags |= 0x200
    head = cstr("UnityFS") + struct.pack(">I", version) + cstr("5.x.x") + cstr(unity_version)
    hdr_len = len(head) + 20
    if version >= 7:
        hdr_len = align(hdr_len, 16)
    body = bytearray()
    if not info_at_end:
        body += cinfo
    if need_padding:
        while (hdr_len + len(body)) % 16:
            body.append(0)
    for _u, comp, _fl in blocks:
        body += comp
    if info_at_end:
        body += cinfo
    total = hdr_len + len(body)
    out = bytearray(head + struct.pack(">qIII", total, len(cinfo), len(info), flags))
    out += b"\x00" * (hdr_len - len(out))
    return bytes(out + body)


def legacy_bundle(entries, *, signature: str = "UnityRaw", version: int = 3) -> bytes:
    dir_size = 4 + sum(len(cstr(n)) + 8 for n, _ in entries)
    raw = bytearray(struct.pack(">i", len(entries)))
    off = dir_size
    for name, payload in entries:
        raw += cstr(name) + struct.pack(">II", off, len(payload))
        off += len(payload)
    for _, payload in entries:
        raw += payload
    stored = lzma.compress(bytes(raw), format=lzma.FORMAT_ALONE) if signature == "UnityWeb" else bytes(raw)

    head = cstr(signature) + struct.pack(">I", version) + cstr("3.x.x") + cstr("4.7.2f1")
    if version >= 4:
        head += b"\x00" * 16 + struct.pack(">I", 0)
    header_size = len(head) + 16 + 8 + (4 if version >= 2 else 0) + (4 if version >= 3 else 0)
    fixed = struct.pack(">IIIi", len(stored), header_size, 1, 1) + struct.pack(">II", len(stored), len(raw))
    if version >= 2:
        fixed += struct.pack(">I", header_size + len(stored))
    if version >= 3:
        fixed += struct.pack(">I", 0)
    return head + fixed + stored


def webdata(entries, *, signature: str = "UnityWebData1.0", wrap: Optional[str] = None) -> bytes:
    sig = cstr(signature)
    head_len = len(sig) + 4 + sum(12 + len(n.encode("utf-8")) for n, _ in entries)
    hdr = bytearray(sig + struct.pack("<i", head_len))
    off = head_len
    for name, payload in entries:
        nb = name.encode("utf-8")
        hdr += struct.pack("<iii", off, len(payload), len(nb)) + nb
        off += len(payload)
    data = bytes(hdr) + b"".join(p for _, p in entries)
    if wrap == "gzip":
        return gzip.compress(data)
    return data
