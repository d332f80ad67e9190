# tests/conftest.py

import pytest

import builders
import unityfs


@pytest.fixture
def pool():
    """A small pool so bucket limits are easy to hit."""
    return unityfs.MemoryPool(threshold=1024, max_small=4, max_large=2)


@pytest.fixture
def serialized_bytes():
    """A version 22 SerializedFile holding two TextAssets and a GameObject."""
    return builders.sample_serialized()


@pytest.fixture
def bundle_bytes(serialized_bytes):
    """UnityFS bundle: one SerializedFile plus a resource blob, split over several blocks."""
    return builders.unityfs_bundle(
        [("CAB-sample", serialized_bytes), ("CAB-sample.resS", b"\xAB" * 3000, 0)],
        codec=[unityfs.Codec.LZ4HC, unityfs.Codec.LZMA, unityfs.Codec.NONE],
        block_size=1024,
    )


@pytest.fixture
def bundle_path(tmp_path, bundle_bytes):
    p = tmp_path / "sample.bundle"
    p.write_bytes(bundle_bytes)
    return p
