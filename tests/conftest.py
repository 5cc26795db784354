"""Shared fixtures: synthetic GLB files packed directly with struct + numpy."""

from __future__ import annotations

import json
import struct
from pathlib import Path

import numpy as np
import pytest

CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942
PAD_BYTE = b"\xab"


def _pad(data: bytes, fill: bytes) -> bytes:
    return data + fill * ((4 - len(data) % 4) % 4)


def pack_glb(document, bin_data=b"", *, extra_chunks=(), version=2, **json_kwargs) -> bytes:
    if not json_kwargs:
        json_kwargs = {"separators": (",", ":")}
    chunks = [(CHUNK_JSON, _pad(json.dumps(document, **json_kwargs).encode("utf-8"), b" "))]
    if bin_data is not None:
        chunks.append((CHUNK_BIN, _pad(bytes(bin_data), b"\0")))
    chunks.extend(extra_chunks)
    body = b"".join(struct.pack("<II", len(payload), ctype) + payload for ctype, payload in chunks)
    return struct.pack("<4sII", b"glTF", version, 12 + len(body)) + body


def build_document(meshes, *, byte_stride=None, seed=0):
    """
    meshes: list of meshes, each a list of primitives, each a dict
    attribute name -> vertex count. Every attribute is a float32 VEC3.
    """
    rng = np.random.default_rng(seed)
    bin_data = bytearray()
    accessors, views, out_meshes = [], [], []
    stride = byte_stride or 12

    for mesh in meshes:
        primitives = []
        for primitive in mesh:
            attributes = {}
            for name, count in primitive.items():
                values = rng.uniform(-1.0, 1.0, size=(count, 3)).astype("<f4")
                block = bytearray(PAD_BYTE * (stride * count))
                for i in range(count):
                    block[i * stride:i * stride + 12] = values[i].tobytes()
                view = {"buffer": 0, "byteOffset": len(bin_data), "byteLength": len(block)}
                if byte_stride:
                    view["byteStride"] = byte_stride
                views.append(view)
                bin_data += block
                accessors.append({
                    "bufferView": len(views) - 1,
                    "componentType": 5126,
                    "count": count,
                    "type": "VEC3",
                    "min": values.min(axis=0).tolist(),
                    "max": values.max(axis=0).tolist(),
                })
                attributes[name] = len(accessors) - 1
            primitives.append({"attributes": attributes, "mode": 4})
        out_meshes.append({"name": f"mesh{len(out_meshes)}", "primitives": primitives})

    document = {
        "asset": {"version": "2.0", "generator": "meshmark-tests"},
        "buffers": [{"byteLength": len(bin_data)}],
        "bufferViews": views,
        "accessors": accessors,
        "meshes": out_meshes,
    }
    return document, bytes(bin_data)


def build_glb(meshes, **kwargs) -> bytes:
    document, bin_data = build_document(meshes, **kwargs)
    return pack_glb(document, bin_data)


@pytest.fixture
def make_glb(tmp_path: Path):
    def _make(meshes, name="model.glb", **kwargs) -> str:
        path = tmp_path / name
        path.write_bytes(build_glb(meshes, **kwargs))
        return str(path)

    return _make


@pytest.fixture
def single_mesh_glb(make_glb):
    """One mesh, one primitive, 1000 POSITION vertices."""
    return make_glb([[{"POSITION": 1000}]])
