"""Fragile, key-dependent watermarking of GLB mesh geometry."""
from .errors import (
    WatermarkError,
    MalformedKeyError,
    ModelNotFoundError,
    ParseError,
    SaveError,
    InsufficientCapacityError,
    InsufficientVerticesError,
    MissingAttributeError,
    DigestMismatchError,
)
from .glb import GltfModel
from .watermark import (
    KeySpec,
    VerificationResult,
    generate_vertex_indices,
    find_max_vertices_mesh,
    check_capacity,
    zero_bits,
    embed_hmac,
    extract_hmac,
    calculate_hmac,
    mark_model,
    verify_model,
    mark_file,
    verify_file,
    get_marked_filename,
)

__version__ = '1.0.0'
