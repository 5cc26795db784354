# glb.py
import os
import json
import base64
import struct

import numpy as np

from .errors import ModelNotFoundError, ParseError, SaveError

# -------------------------
# GLB container constants
# -------------------------
GLB_MAGIC = b'glTF'
GLB_VERSION = 2
GLB_HEADER = struct.Struct('<4sII')     # magic, version, total length
CHUNK_HEADER = struct.Struct('<II')     # chunk length, chunk type
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

COMPONENT_FLOAT = 5126
DATA_URI_PREFIX = 'data:application/octet-stream;base64,'

COMPONENTS_IN_TYPE = {
    'SCALAR': 1,
    'VEC2': 2,
    'VEC3': 3,
    'VEC4': 4,
    'MAT2': 4,
    'MAT3': 9,
    'MAT4': 16,
}


def num_components(accessor_type: str) -> int:
    try:
        return COMPONENTS_IN_TYPE[accessor_type]
    except (KeyError, TypeError):
        raise ParseError(f"Unknown accessor type: {accessor_type!r}")


def _pad4(data: bytes, fill: bytes) -> bytes:
    pad_len = (4 - (len(data) % 4)) % 4
    return data + fill * pad_len


# -------------------------
# Document structure checks
# -------------------------
def _is_index(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _objects(document, name):
    items = document.get(name, [])
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ParseError(f"'{name}' must be an array of objects")
    return items


def _check_indices(item, what, required=(), optional=()):
    for name in required:
        if name not in item:
            raise ParseError(f"{what} is missing '{name}'")
    for name in tuple(required) + tuple(optional):
        if name in item and not _is_index(item[name]):
            raise ParseError(f"{what} has an invalid '{name}': {item[name]!r}")


def validate_document(document):
    """
    Reject JSON that is well-formed but not a usable glTF layout, so later
    lookups only ever see non-negative integer indices and the expected containers.
    """
    for i, buf in enumerate(_objects(document, 'buffers')):
        if not isinstance(buf.get('uri', ''), str):
            raise ParseError(f"Buffer {i} has a non-string uri")
        _check_indices(buf, f"Buffer {i}", optional=('byteLength',))

    for i, view in enumerate(_objects(document, 'bufferViews')):
        _check_indices(view, f"BufferView {i}", required=('buffer',),
                       optional=('byteOffset', 'byteLength', 'byteStride'))

    for i, acc in enumerate(_objects(document, 'accessors')):
        _check_indices(acc, f"Accessor {i}", optional=('bufferView', 'byteOffset', 'count', 'componentType'))
        if 'type' in acc and not isinstance(acc['type'], str):
            raise ParseError(f"Accessor {i} has a non-string type")

    for m, mesh in enumerate(_objects(document, 'meshes')):
        primitives = mesh.get('primitives', [])
        if not isinstance(primitives, list) or not all(isinstance(p, dict) for p in primitives):
            raise ParseError(f"Mesh {m} primitives must be an array of objects")
        for p, primitive in enumerate(primitives):
            attributes = primitive.get('attributes', {})
            if not isinstance(attributes, dict):
                raise ParseError(f"Mesh {m} primitive {p} attributes must be an object")
            _check_indices(attributes, f"Mesh {m} primitive {p} attributes", optional=tuple(attributes))


def _lookup(items, index, what):
    if not _is_index(index) or index >= len(items):
        raise ParseError(f"{what} index out of range: {index!r}")
    return items[index]


# -------------------------
# Bit-cast helpers (float32 <-> raw uint32 pattern)
# -------------------------
def float_bits(values) -> np.ndarray:
    """Raw IEEE-754 bit patterns of float32 values, as uint32."""
    return np.ascontiguousarray(values, dtype='<f4').view('<u4')


def bits_to_float(bits) -> np.ndarray:
    return np.ascontiguousarray(bits, dtype='<u4').view('<f4')


# -------------------------
# Model: parsed GLB document + mutable buffer bytes
# -------------------------
class GltfModel:
    """
    Binary glTF (GLB) scene graph held as the JSON document plus one
    bytearray per buffer. Vertex data is edited in place through
    component_view(); nothing here reallocates a buffer.
    """

    def __init__(self, document: dict, buffers, extra_chunks=()):
        validate_document(document)
        self.document = document
        self.buffers = [bytearray(b) for b in buffers]
        self.extra_chunks = list(extra_chunks)  # (type, bytes) pairs kept verbatim after BIN

    # -------------------------------------------------
    # Loading / saving
    # -------------------------------------------------
    @classmethod
    def load(cls, filename: str):
        if not os.path.isfile(filename):
            raise ModelNotFoundError(f"File not found: {filename}")
        with open(filename, 'rb') as f:
            data = f.read()
        model = cls.from_bytes(data)
        print(f"[GLB] Loaded {filename}: meshes={len(model.meshes)}, "
              f"accessors={len(model.accessors)}, buffers={len(model.buffers)}")
        return model

    @classmethod
    def from_bytes(cls, data: bytes):
        if len(data) < GLB_HEADER.size:
            raise ParseError("Not a valid GLB (header too short)")
        magic, version, length = GLB_HEADER.unpack_from(data, 0)
        if magic != GLB_MAGIC:
            raise ParseError("Not a GLB (magic mismatch)")
        if version != GLB_VERSION:
            raise ParseError(f"Unsupported GLB version: {version}")
        if length > len(data):
            raise ParseError(f"GLB truncated: header says {length} bytes, got {len(data)}")

        chunks = []
        ptr = GLB_HEADER.size
        while ptr < length:
            if ptr + CHUNK_HEADER.size > length:
                raise ParseError("GLB truncated inside a chunk header")
            chunk_len, chunk_type = CHUNK_HEADER.unpack_from(data, ptr)
            ptr += CHUNK_HEADER.size
            if ptr + chunk_len > length:
                raise ParseError("GLB truncated inside a chunk body")
            chunks.append((chunk_type, data[ptr:ptr + chunk_len]))
            ptr += chunk_len

        if not chunks or chunks[0][0] != CHUNK_JSON:
            raise ParseError("GLB has no leading JSON chunk")
        try:
            document = json.loads(chunks[0][1].decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise ParseError(f"Invalid JSON chunk: {e}")
        if not isinstance(document, dict):
            raise ParseError("JSON chunk is not an object")
        try:
            json.dumps(document, ensure_ascii=False).encode('utf-8')
        except UnicodeEncodeError as e:
            raise ParseError(f"JSON chunk holds text that cannot be re-encoded as UTF-8: {e}")
        validate_document(document)

        rest = chunks[1:]
        bin_chunk = None
        if rest and rest[0][0] == CHUNK_BIN:
            bin_chunk = rest[0][1]
            rest = rest[1:]

        buffers = []
        for i, buf in enumerate(document.get('buffers', [])):
            uri = buf.get('uri')
            if uri is None:
                if i != 0 or bin_chunk is None:
                    raise ParseError(f"Buffer {i} has no uri and no BIN chunk backs it")
                raw = bin_chunk
            elif uri.startswith('data:'):
                try:
                    raw = base64.b64decode(uri.split(',', 1)[1])
                except (IndexError, ValueError) as e:
                    raise ParseError(f"Buffer {i} has an invalid data uri: {e}")
            else:
                raise ParseError(f"External buffer uri not supported: {uri}")
            declared = int(buf.get('byteLength', len(raw)))
            if declared > len(raw):
                raise ParseError(f"Buffer {i} shorter than its byteLength ({len(raw)} < {declared})")
            buffers.append(raw)

        return cls(document, buffers, extra_chunks=rest)

    def to_bytes(self) -> bytes:
        """Deterministic GLB serialization of the current state."""
        for i, buf in enumerate(self.document.get('buffers', [])):
            uri = buf.get('uri', '')
            if uri.startswith('data:'):
                prefix = uri.split(',', 1)[0] + ',' if ',' in uri else DATA_URI_PREFIX
                buf['uri'] = prefix + base64.b64encode(bytes(self.buffers[i])).decode('ascii')

        json_bytes = json.dumps(self.document, separators=(',', ':'), ensure_ascii=False).encode('utf-8')
        json_bytes = _pad4(json_bytes, b' ')

        chunks = [(CHUNK_JSON, json_bytes)]
        docs_buffers = self.document.get('buffers', [])
        if docs_buffers and 'uri' not in docs_buffers[0]:
            chunks.append((CHUNK_BIN, _pad4(bytes(self.buffers[0]), b'\0')))
        chunks.extend(self.extra_chunks)

        body = b''.join(CHUNK_HEADER.pack(len(payload), ctype) + payload for ctype, payload in chunks)
        return GLB_HEADER.pack(GLB_MAGIC, GLB_VERSION, GLB_HEADER.size + len(body)) + body

    def save(self, filename: str):
        data = self.to_bytes()
        try:
            with open(filename, 'wb') as f:
                f.write(data)
        except OSError as e:
            raise SaveError(f"Failed to save model: {filename} ({e})")
        print(f"[GLB] Saved {filename} ({len(data):,} bytes)")

    # -------------------------------------------------
    # Document access
    # -------------------------------------------------
    @property
    def meshes(self):
        return self.document.get('meshes', [])

    @property
    def accessors(self):
        return self.document.get('accessors', [])

    @property
    def buffer_views(self):
        return self.document.get('bufferViews', [])

    def accessor(self, index: int) -> dict:
        return _lookup(self.accessors, index, "Accessor")

    def component_view(self, accessor_index: int) -> np.ndarray:
        """
        Writable (count, components) uint32 view over a float32 accessor's bytes.
        Writes go straight into the backing buffer.
        """
        acc = self.accessor(accessor_index)
        if acc.get('componentType') != COMPONENT_FLOAT:
            raise ParseError(f"Accessor {accessor_index} is not float32 (componentType={acc.get('componentType')})")
        if 'sparse' in acc:
            raise ParseError(f"Sparse accessor {accessor_index} not supported")
        if 'bufferView' not in acc:
            raise ParseError(f"Accessor {accessor_index} has no bufferView")

        view = _lookup(self.buffer_views, acc['bufferView'], f"Accessor {accessor_index} bufferView")
        buf = _lookup(self.buffers, view['buffer'], f"BufferView {acc['bufferView']} buffer")

        ncomp = num_components(acc.get('type'))
        count = int(acc.get('count', 0))
        elem_size = ncomp * 4
        stride = int(view.get('byteStride') or elem_size)
        base = int(view.get('byteOffset', 0)) + int(acc.get('byteOffset', 0))

        end = base + (count - 1) * stride + elem_size if count > 0 else base
        if end > len(buf):
            raise ParseError(f"Accessor {accessor_index} runs past the end of buffer {view['buffer']}")

        return np.ndarray(shape=(count, ncomp), dtype='<u4', buffer=buf,
                          offset=base, strides=(stride, 4))

    def positions(self, accessor_index: int) -> np.ndarray:
        """Float32 copy of an accessor's values."""
        return self.component_view(accessor_index).view('<f4').copy()
