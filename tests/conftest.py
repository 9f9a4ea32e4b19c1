"""Shared pytest fixtures for Boolean Map saliency tests."""

from collections import defaultdict

import cv2
import numpy as np
import pytest

from boolmap.salience.artifacts import ArtifactSink


class RecordingArtifactSink(ArtifactSink):
    """In-memory sink: keeps every artifact name and logged maximum."""

    def __init__(self):
        self.channels = {}
        self.masks = {}
        self.images = {}
        self.maxima = defaultdict(list)
        self.closed = False

    def save_channel(self, channel, grid):
        self.channels[channel] = grid.copy()

    def save_mask(self, name, mask):
        self.masks[name] = mask.copy()
        return name

    def save_image(self, name, image):
        self.images[name] = image.copy()
        return name

    def record_max(self, channel, name, value):
        self.maxima[channel].append((name, value))

    def close(self):
        self.closed = True


class AlwaysJump:
    """Stand-in RNG that jitters every border seed by a fixed offset."""

    def __init__(self, offset):
        self.offset = offset

    def uniform(self, low=0.0, high=1.0, size=None):
        return np.ones(size)

    def integers(self, low, high=None, size=None):
        return np.full(size, self.offset)


@pytest.fixture
def recording_sink():
    return RecordingArtifactSink()


@pytest.fixture
def always_jump():
    """Factory for an RNG that always jitters by the given offset."""
    return AlwaysJump


@pytest.fixture
def blob_image():
    """48x64 BGR image: gray background with a red square off center."""
    img = np.full((48, 64, 3), 120, dtype=np.uint8)
    img[14:30, 20:40] = (30, 30, 220)
    return img


@pytest.fixture
def flat_image():
    return np.full((20, 30, 3), 77, dtype=np.uint8)


@pytest.fixture
def centered_block():
    """4x4 single-channel map, 2x2 block of 200 in the middle of zeros."""
    grid = np.zeros((4, 4), dtype=np.uint8)
    grid[1:3, 1:3] = 200
    return grid


@pytest.fixture
def image_dir(tmp_path, blob_image):
    """Directory with two readable images and one corrupt file."""
    input_dir = tmp_path / "images"
    input_dir.mkdir()
    cv2.imwrite(str(input_dir / "blob.png"), blob_image)
    cv2.imwrite(str(input_dir / "blob_flipped.png"), np.ascontiguousarray(blob_image[::-1]))
    (input_dir / "broken.png").write_bytes(b"not an image")
    (input_dir / "notes.txt").write_text("ignored")
    return input_dir
