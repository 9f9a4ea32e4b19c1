"""Tests for diagnostic readback helpers."""

import cv2
import numpy as np
import pytest

from boolmap.config import Channel, NormMode
from boolmap.metrics.stat_helpers import (
    gather_images,
    load_attention_maxima,
    load_channel_maxima,
    normalize_map,
    restore_attention_map)
from boolmap.salience.artifacts import DiskArtifactSink
from boolmap.salience.models import BMS


class TestGatherImages:
    """Test image discovery in a folder."""

    def test_filters_and_sorts(self, image_dir):
        assert gather_images(str(image_dir)) == ["blob.png", "blob_flipped.png", "broken.png"]

    def test_empty_dir(self, tmp_path):
        assert gather_images(str(tmp_path)) == []


class TestNormalizeMap:
    """Test min-max scaling to [0, 1]."""

    def test_range(self):
        out = normalize_map(np.array([[2.0, 4.0], [6.0, 10.0]]))
        assert out.min() == 0.0
        assert out.max() == pytest.approx(1.0)

    def test_flat_map_no_nan(self):
        out = normalize_map(np.full((3, 3), 7, dtype=np.uint8))
        assert np.isfinite(out).all()
        assert (out == 0).all()


class TestAttentionMaxima:
    """Test reading channel logs and undoing the display rescale."""

    @pytest.fixture
    def artifacts(self, blob_image, tmp_path):
        with DiskArtifactSink(str(tmp_path), "blob") as sink:
            bms = BMS(blob_image, 1, 1, NormMode.L2, False, sink=sink)
            bms.compute_saliency(32)
        return tmp_path, bms

    def test_columns(self, artifacts):
        out_dir, _ = artifacts
        df = load_attention_maxima(str(out_dir / "blob-L.log"))
        assert list(df.columns) == ["artifact", "max"]
        assert df["max"].dtype == np.float64

    def test_rows_match_attention_maps(self, artifacts):
        out_dir, bms = artifacts
        maxima = load_channel_maxima(str(out_dir), "blob.png")
        assert set(maxima) == set(Channel)
        assert sum(len(df) for df in maxima.values()) == bms.accumulator.count

    def test_restore_recovers_maximum(self, artifacts):
        out_dir, _ = artifacts
        df = load_attention_maxima(str(out_dir / "blob-a.log"))
        for row in df.itertuples():
            restored = restore_attention_map(row.artifact, row.max)
            assert restored.max() == pytest.approx(row.max)
            assert restored.min() >= 0.0

    def test_empty_log(self, tmp_path):
        log = tmp_path / "x-L.log"
        log.write_text("")
        df = load_attention_maxima(str(log))
        assert df.empty
        assert list(df.columns) == ["artifact", "max"]

    def test_restore_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            restore_attention_map(str(tmp_path / "nope.png"), 1.0)

    def test_restore_uniform_attention_map(self, tmp_path):
        """A map dilated over the whole grid restores to its logged value."""
        bm = np.zeros((8, 8), dtype=np.uint8)
        bm[2:6, 2:6] = 1
        with DiskArtifactSink(str(tmp_path), "tiny") as sink:
            bms = BMS(np.full((8, 8, 3), 90, dtype=np.uint8), 2, 0, NormMode.L2, False, sink=sink)
            attn = bms.activate_bool_map(bm, "L-000", Channel.L)
        assert np.unique(attn) == pytest.approx([0.125])

        row = next(load_attention_maxima(str(tmp_path / "tiny-L.log")).itertuples())
        restored = restore_attention_map(row.artifact, row.max)
        np.testing.assert_allclose(restored, attn)

    def test_restore_all_zero_map(self, tmp_path):
        path = str(tmp_path / "attn.png")
        cv2.imwrite(path, np.zeros((3, 3), dtype=np.uint8))
        assert (restore_attention_map(path, 0.0) == 0).all()

    def test_restore_scales_display(self, tmp_path):
        path = str(tmp_path / "attn.png")
        cv2.imwrite(path, np.array([[0, 255], [51, 255]], dtype=np.uint8))
        restored = restore_attention_map(path, 0.5)
        np.testing.assert_allclose(restored, [[0.0, 0.5], [0.1, 0.5]])
