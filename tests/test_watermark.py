"""Marking and verification of GLB files end to end."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import numpy as np
import pytest

from conftest import pack_glb
from meshmark import (
    DigestMismatchError,
    GltfModel,
    InsufficientCapacityError,
    InsufficientVerticesError,
    KeySpec,
    MissingAttributeError,
    ModelNotFoundError,
    get_marked_filename,
    mark_file,
    mark_model,
    verify_file,
    verify_model,
    zero_bits,
)
from meshmark import watermark
from meshmark.watermark import carrier_vertex_indices

KEY = KeySpec.parse("017*POSITION*secret")


def _flip_bit(path: str, vertex: int, component: int = 0, bit: int = 0) -> None:
    model = GltfModel.load(path)
    model.component_view(0)[vertex, component] ^= np.uint32(1 << bit)
    model.save(path)


def test_mark_then_verify_matches(single_mesh_glb: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)

    assert marked == get_marked_filename(single_mesh_glb)
    assert Path(marked).read_bytes() != Path(single_mesh_glb).read_bytes()
    assert verify_file(marked, KEY).matched


@pytest.mark.parametrize("key_string", ["021*POSITION*mysecret", "0399*POSITION*k*e*y", "08123456789*POSITION*"])
def test_round_trip_for_various_keys(single_mesh_glb: str, key_string: str) -> None:
    key = KeySpec.parse(key_string)

    assert verify_file(mark_file(single_mesh_glb, key), key)


def test_marking_only_touches_low_bits(single_mesh_glb: str) -> None:
    key = KeySpec.parse("021*POSITION*mysecret")
    marked = mark_file(single_mesh_glb, key)

    before = GltfModel.load(single_mesh_glb).component_view(0)
    after = GltfModel.load(marked).component_view(0)
    changed = before ^ after

    assert np.all(changed >> 2 == 0)
    assert np.count_nonzero(changed) > 0


def test_explicit_output_path(single_mesh_glb: str, tmp_path: Path) -> None:
    out = str(tmp_path / "custom.glb")

    assert mark_file(single_mesh_glb, KEY, out) == out
    assert verify_file(out, KEY)


def test_flipping_a_carrier_bit_is_detected(single_mesh_glb: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    first = int(carrier_vertex_indices(GltfModel.load(marked), KEY)[0])

    _flip_bit(marked, first)

    assert not verify_file(marked, KEY).matched


def test_flipping_any_other_vertex_bit_is_detected(single_mesh_glb: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    carriers = set(carrier_vertex_indices(GltfModel.load(marked), KEY).tolist())
    other = next(i for i in range(1000) if i not in carriers)

    _flip_bit(marked, other, component=2, bit=5)

    assert not verify_file(marked, KEY).matched


def test_reexported_file_does_not_verify(single_mesh_glb: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    model = GltfModel.load(marked)
    # same geometry, different JSON layout as written by another exporter
    Path(marked).write_bytes(pack_glb(model.document, model.buffers[0], indent=2, sort_keys=True))

    assert not verify_file(marked, KEY).matched


@pytest.mark.parametrize("wrong", ["017*POSITION*other", "018*POSITION*secret", "027*POSITION*secret"])
def test_wrong_key_does_not_verify(single_mesh_glb: str, wrong: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)

    assert not verify_file(marked, KeySpec.parse(wrong)).matched


def test_unmarked_file_does_not_verify(single_mesh_glb: str) -> None:
    assert not verify_file(single_mesh_glb, KEY).matched


def test_raise_for_mismatch(single_mesh_glb: str) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    verify_file(marked, KEY).raise_for_mismatch()

    with pytest.raises(DigestMismatchError):
        verify_file(single_mesh_glb, KEY).raise_for_mismatch()


def test_target_attribute_other_than_position(make_glb) -> None:
    path = make_glb([[{"POSITION": 700, "NORMAL": 700}]])
    key = KeySpec.parse("015*NORMAL*n")

    marked = mark_file(path, key)

    assert verify_file(marked, key)
    np.testing.assert_array_equal(GltfModel.load(path).component_view(0), GltfModel.load(marked).component_view(0))


def test_interleaved_stride_padding_is_preserved(make_glb) -> None:
    path = make_glb([[{"POSITION": 600}]], byte_stride=16)
    marked = mark_file(path, KEY)

    assert verify_file(marked, KEY)
    data = GltfModel.load(marked).buffers[0]
    assert all(bytes(data[i * 16 + 12:i * 16 + 16]) == b"\xab" * 4 for i in range(600))


def test_largest_mesh_carries_the_mark(make_glb) -> None:
    path = make_glb([[{"POSITION": 600}], [{"POSITION": 900}]])
    marked = mark_file(path, KEY)

    before, after = GltfModel.load(path), GltfModel.load(marked)
    np.testing.assert_array_equal(before.component_view(0), after.component_view(0))
    assert not np.array_equal(before.component_view(1), after.component_view(1))
    assert verify_file(marked, KEY)


def test_missing_attribute_aborts_before_writing(make_glb) -> None:
    path = make_glb([[{"POSITION": 700}, {"NORMAL": 700}]])

    with pytest.raises(MissingAttributeError):
        mark_file(path, KEY)
    assert not os.path.exists(get_marked_filename(path))


def test_unknown_target_attribute(single_mesh_glb: str) -> None:
    with pytest.raises(MissingAttributeError):
        verify_file(single_mesh_glb, KeySpec.parse("017*TEXCOORD_0*k"))


def test_too_few_vertices_for_permutation(make_glb) -> None:
    with pytest.raises(InsufficientVerticesError):
        mark_file(make_glb([[{"POSITION": 300}]]), KEY)


def test_too_small_mesh_for_capacity(make_glb) -> None:
    with pytest.raises(InsufficientCapacityError):
        mark_file(make_glb([[{"POSITION": 50}]]), KEY)


def test_missing_input_file(tmp_path: Path) -> None:
    with pytest.raises(ModelNotFoundError):
        mark_file(str(tmp_path / "missing.glb"), KEY)
    with pytest.raises(ModelNotFoundError):
        verify_file(str(tmp_path / "missing.glb"), KEY)


def _scratch_in(tmp_path: Path, monkeypatch):
    scratch_dir = tmp_path / "scratch"
    scratch_dir.mkdir()
    real_mkstemp = tempfile.mkstemp
    monkeypatch.setattr(watermark.tempfile, "mkstemp",
                        lambda **kwargs: real_mkstemp(dir=str(scratch_dir), **kwargs))
    return scratch_dir


def test_scratch_file_is_removed(single_mesh_glb: str, tmp_path: Path, monkeypatch) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    scratch_dir = _scratch_in(tmp_path, monkeypatch)

    verify_file(marked, KEY)

    assert list(scratch_dir.iterdir()) == []


def test_scratch_file_is_removed_on_failure(single_mesh_glb: str, tmp_path: Path, monkeypatch) -> None:
    marked = mark_file(single_mesh_glb, KEY)
    scratch_dir = _scratch_in(tmp_path, monkeypatch)

    def boom(data, digest_key):
        raise RuntimeError("digest failed")

    monkeypatch.setattr(watermark, "calculate_hmac", boom)
    with pytest.raises(RuntimeError):
        verify_file(marked, KEY)

    assert list(scratch_dir.iterdir()) == []


def test_in_memory_mark_and_verify(single_mesh_glb: str) -> None:
    model = GltfModel.load(single_mesh_glb)
    digest = mark_model(model, KEY)
    snapshot = model.to_bytes()

    result = verify_model(model, KEY)

    assert result.matched
    assert result.extracted == digest
    assert model.to_bytes() == snapshot


def test_in_memory_and_file_marking_agree(single_mesh_glb: str) -> None:
    model = GltfModel.load(single_mesh_glb)
    mark_model(model, KEY)

    assert model.to_bytes() == Path(mark_file(single_mesh_glb, KEY)).read_bytes()


def test_zeroing_model_twice_is_stable(single_mesh_glb: str) -> None:
    model = GltfModel.load(single_mesh_glb)
    zero_bits(model, KEY)
    once = model.to_bytes()
    zero_bits(model, KEY)

    assert model.to_bytes() == once


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("model.glb", "model_marked.glb"),
        ("dir/scene.v2.glb", "dir/scene.v2_marked.glb"),
        ("noext", "noext_marked.glb"),
    ],
)
def test_marked_filename(filename: str, expected: str) -> None:
    assert get_marked_filename(filename) == expected
