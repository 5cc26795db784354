# watermark.py
"""
Fragile HMAC watermark for GLB meshes.

The keyed digest of the whole (zeroed) file is written into the lowest
`bit_density` bits of the float components of 512 pseudo-randomly chosen
vertices. Verification reads the bits back, zeroes them again, re-serializes
and recomputes the digest: any change to the file breaks the match.
"""
import os
import hmac
import hashlib
import tempfile
from dataclasses import dataclass, field

import numpy as np

from .errors import (
    MalformedKeyError,
    InsufficientCapacityError,
    InsufficientVerticesError,
    MissingAttributeError,
    DigestMismatchError,
)
from .glb import GltfModel, num_components

# -------------------------
# Configurable limits
# -------------------------
DIGEST_BYTES = hashlib.sha512().digest_size   # 64
DIGEST_BITS = DIGEST_BYTES * 8
EMBED_BUDGET_BITS = 512        # (vertex, component, bit) slots touched by zeroing/embedding
PERMUTATION_SIZE = 512         # keyed vertex indices drawn per run
SIZING_COMPONENTS = 3          # components per vertex assumed by the capacity guard
SIZING_ATTRIBUTE = 'POSITION'  # attribute used to size meshes, independent of the key's target
MAX_BIT_DENSITY = 23           # float32 mantissa width
MARKED_SUFFIX = '_marked'
DEFAULT_MARKED_EXT = '.glb'

if EMBED_BUDGET_BITS < DIGEST_BITS:
    raise RuntimeError(f"Embedding budget ({EMBED_BUDGET_BITS} bits) cannot hold a {DIGEST_BITS}-bit digest")


# -------------------------
# Key
# -------------------------
def _is_ascii_digits(text: str) -> bool:
    return text.isascii() and text.isdigit()


@dataclass(frozen=True)
class KeySpec:
    bit_density: int
    seed: int
    attribute: str
    digest_key: str = field(repr=False)

    @classmethod
    def parse(cls, key: str):
        """
        Parse "BB<seed>*<attribute>*<digestKey>". BB is the two-digit bit density;
        the digest key is everything after the second '*' and may contain '*'.
        """
        if len(key) < 2 or not _is_ascii_digits(key[:2]):
            raise MalformedKeyError("Invalid key format: key must start with a two-digit bit density")
        bit_density = int(key[:2])

        seed_str, sep, rest = key[2:].partition('*')
        if not sep:
            raise MalformedKeyError("Invalid key format: missing '*' after seed")
        attribute, sep, digest_key = rest.partition('*')
        if not sep:
            raise MalformedKeyError("Invalid key format: missing '*' after attribute")

        if not _is_ascii_digits(seed_str[1:] if seed_str.startswith('-') else seed_str):
            raise MalformedKeyError(f"Invalid key format: seed {seed_str!r} is not an integer")
        seed = int(seed_str)
        if not attribute:
            raise MalformedKeyError("Invalid key format: empty attribute name")
        if not 1 <= bit_density <= MAX_BIT_DENSITY:
            raise MalformedKeyError(f"Bit density must be in 1..{MAX_BIT_DENSITY}, got {bit_density}")

        return cls(bit_density, seed, attribute, digest_key)


# -------------------------
# Vertex selection
# -------------------------
def generate_vertex_indices(seed: int, max_index: int, size=PERMUTATION_SIZE) -> np.ndarray:
    """
    First `size` entries of a seeded Fisher-Yates shuffle of 0..max_index-1.
    Pure function of (seed, max_index): embedding and extraction both
    regenerate it from the key, no index list is stored anywhere.
    """
    if max_index < size:
        raise InsufficientVerticesError(f"Need at least {size} vertices, mesh has {max_index}")
    # legacy MT19937 stream is frozen across numpy releases
    rng = np.random.RandomState(seed & 0xFFFFFFFF)
    return rng.permutation(max_index)[:size]


def find_max_vertices_mesh(model: GltfModel):
    """
    (mesh index, element count) of the mesh with the most position elements.
    Ties keep the first mesh; primitives without POSITION are not counted.
    """
    max_elements = 0
    max_mesh_id = 0
    for i, mesh in enumerate(model.meshes):
        num_elements = 0
        for primitive in mesh.get('primitives', []):
            attrs = primitive.get('attributes', {})
            if SIZING_ATTRIBUTE not in attrs:
                continue
            accessor = model.accessor(attrs[SIZING_ATTRIBUTE])
            num_elements += int(accessor.get('count', 0)) * num_components(accessor.get('type'))
        if num_elements > max_elements:
            max_elements = num_elements
            max_mesh_id = i
    return max_mesh_id, max_elements


def required_vertices(bit_density: int, payload_bits=EMBED_BUDGET_BITS) -> int:
    return -(-payload_bits // (bit_density * SIZING_COMPONENTS))


def check_capacity(available: int, bit_density: int, payload_bits=EMBED_BUDGET_BITS):
    needed = required_vertices(bit_density, payload_bits)
    if available < needed:
        raise InsufficientCapacityError(
            f"Mesh too small: {available} available, {needed} needed at bit density {bit_density}")
    return needed


def carrier_view(model: GltfModel, key: KeySpec):
    """
    Resolve the keyed carrier: (uint32 component view, vertex indices).
    All checks run before anything is modified.
    """
    mesh_id, max_elements = find_max_vertices_mesh(model)
    check_capacity(max_elements, key.bit_density)

    primitives = model.meshes[mesh_id].get('primitives', [])
    for p_idx, primitive in enumerate(primitives):
        if key.attribute not in primitive.get('attributes', {}):
            raise MissingAttributeError(
                f"primitive {p_idx} of mesh {mesh_id} has no {key.attribute!r}")

    view = model.component_view(primitives[0]['attributes'][key.attribute])
    indices = generate_vertex_indices(key.seed, view.shape[0])
    return view, indices


# -------------------------
# Bit-level passes over a uint32 component view
# -------------------------
def embedding_slots(indices, num_comps: int, bit_density: int, budget=EMBED_BUDGET_BITS):
    """
    Canonical (vertex, component, bit) order: vertices in permutation order,
    then components, then bit positions from bit 0 upward. Truncated to budget.
    """
    per_vertex = num_comps * bit_density
    n_slots = min(budget, len(indices) * per_vertex)
    slot = np.arange(n_slots)
    vertex = np.asarray(indices)[slot // per_vertex]
    comp = (slot // bit_density) % num_comps
    bit = (slot % bit_density).astype(np.uint32)
    return vertex, comp, bit


def zero_slots(view: np.ndarray, indices, bit_density: int):
    vertex, comp, bit = embedding_slots(indices, view.shape[1], bit_density)
    masks = np.invert(np.left_shift(np.uint32(1), bit))
    np.bitwise_and.at(view, (vertex, comp), masks)


def embed_bits(view: np.ndarray, indices, bit_density: int, digest: bytes):
    """XOR digest bits (MSB first per byte) into the zeroed slots."""
    vertex, comp, bit = embedding_slots(indices, view.shape[1], bit_density)
    bits = np.unpackbits(np.frombuffer(digest, dtype=np.uint8))
    if len(bits) > len(bit):
        raise InsufficientCapacityError(f"{len(bits)} digest bits, only {len(bit)} slots")
    n = len(bits)
    payload = np.left_shift(bits.astype(np.uint32), bit[:n])
    np.bitwise_xor.at(view, (vertex[:n], comp[:n]), payload)


def extract_bits(view: np.ndarray, indices, bit_density: int, num_bytes=DIGEST_BYTES) -> bytes:
    vertex, comp, bit = embedding_slots(indices, view.shape[1], bit_density)
    n = num_bytes * 8
    if n > len(bit):
        raise InsufficientCapacityError(f"{n} digest bits, only {len(bit)} slots")
    bits = np.right_shift(view[vertex[:n], comp[:n]], bit[:n]) & 1
    return np.packbits(bits.astype(np.uint8)).tobytes()


# -------------------------
# Model-level operations
# -------------------------
def zero_bits(model: GltfModel, key: KeySpec):
    view, indices = carrier_view(model, key)
    zero_slots(view, indices, key.bit_density)


def calculate_hmac(data: bytes, digest_key: str) -> bytes:
    return hmac.new(digest_key.encode('utf-8'), data, hashlib.sha512).digest()


def embed_hmac(model: GltfModel, key: KeySpec, digest: bytes):
    view, indices = carrier_view(model, key)
    embed_bits(view, indices, key.bit_density, digest)


def extract_hmac(model: GltfModel, key: KeySpec) -> bytes:
    view, indices = carrier_view(model, key)
    return extract_bits(view, indices, key.bit_density)


def carrier_vertex_indices(model: GltfModel, key: KeySpec) -> np.ndarray:
    """Indices of the keyed vertices that carry bits (for display)."""
    view, indices = carrier_view(model, key)
    per_vertex = view.shape[1] * key.bit_density
    used = -(-EMBED_BUDGET_BITS // per_vertex)
    return indices[:used]


# -------------------------
# Marking / verification
# -------------------------
class VerificationResult:
    def __init__(self, extracted: bytes, recomputed: bytes):
        self.extracted = extracted
        self.recomputed = recomputed
        self.matched = hmac.compare_digest(extracted, recomputed)

    def __bool__(self):
        return self.matched

    def __repr__(self):
        return f"VerificationResult(matched={self.matched})"

    def raise_for_mismatch(self):
        if not self.matched:
            raise DigestMismatchError("Watermark violated: embedded digest does not match the file")


def mark_model(model: GltfModel, key: KeySpec) -> bytes:
    """In-memory marking. Returns the embedded digest."""
    zero_bits(model, key)
    digest = calculate_hmac(model.to_bytes(), key.digest_key)
    embed_hmac(model, key, digest)
    return digest


def verify_model(model: GltfModel, key: KeySpec) -> VerificationResult:
    """In-memory verification; the given model is left untouched."""
    work = GltfModel.from_bytes(model.to_bytes())
    extracted = extract_hmac(work, key)
    zero_bits(work, key)
    return VerificationResult(extracted, calculate_hmac(work.to_bytes(), key.digest_key))


def load_file_data(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def get_marked_filename(filename: str) -> str:
    root, ext = os.path.splitext(filename)
    if not ext:
        return filename + MARKED_SUFFIX + DEFAULT_MARKED_EXT
    return root + MARKED_SUFFIX + ext


def mark_file(filename: str, key: KeySpec, output=None) -> str:
    """
    Load -> zero -> save -> HMAC(saved bytes) -> reload -> embed -> save.
    Returns the marked file path.
    """
    output = output or get_marked_filename(filename)

    model = GltfModel.load(filename)
    zero_bits(model, key)
    model.save(output)

    digest = calculate_hmac(load_file_data(output), key.digest_key)

    marked = GltfModel.load(output)
    embed_hmac(marked, key, digest)
    marked.save(output)

    print(f"[Watermark] Marked {filename} -> {output} (density={key.bit_density}, attr={key.attribute})")
    return output


def verify_file(filename: str, key: KeySpec) -> VerificationResult:
    """
    Extract -> zero -> save scratch -> HMAC(scratch bytes) -> compare.
    The scratch file is removed whatever happens.
    """
    marked = GltfModel.load(filename)
    extracted = extract_hmac(marked, key)
    zero_bits(marked, key)

    fd, scratch = tempfile.mkstemp(suffix='.glb', prefix='meshmark_')
    os.close(fd)
    try:
        marked.save(scratch)
        recomputed = calculate_hmac(load_file_data(scratch), key.digest_key)
    finally:
        os.remove(scratch)

    result = VerificationResult(extracted, recomputed)
    print(f"[Watermark] Verified {filename}: {'match' if result.matched else 'MISMATCH'}")
    return result
