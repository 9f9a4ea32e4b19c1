import logging
import os
import threading

import cv2
import numpy as np

from boolmap.config import Channel

logger = logging.getLogger(__name__)


class ArtifactSink:
    """
    Receives the intermediate images and attention maxima of a BMS run.
    The base class discards everything; subclasses decide where it goes.
    """

    def save_channel(self, channel, grid):
        pass

    def save_mask(self, name, mask):
        """Store a 0/1 mask, return the artifact name used for it."""
        return name

    def save_image(self, name, image):
        """Store an 8-bit image as is, return the artifact name used for it."""
        return name

    def record_max(self, channel, name, value):
        pass

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class NullArtifactSink(ArtifactSink):
    """No-op sink: the pipeline runs without touching the filesystem."""


class DiskArtifactSink(ArtifactSink):
    """
    Writes every intermediate as a PNG into out_dir and keeps one log per
    channel with `<artifact>,<max>` lines, so the 8-bit attention images can
    later be scaled back to their true range. Logs are truncated when the
    sink is created and appended to for the rest of the run.
    """

    def __init__(self, out_dir, stem):
        self.out_dir = out_dir
        self.stem = os.path.splitext(os.path.basename(stem))[0]
        os.makedirs(out_dir, exist_ok=True)
        self._lock = threading.Lock()
        self._logs = {}
        try:
            for channel in Channel:
                log_path = os.path.join(out_dir, f"{self.stem}-{channel.value}.log")
                self._logs[channel] = open(log_path, "w")
        except OSError:
            for log in self._logs.values():
                log.close()
            raise

    def _write(self, filename, image):
        path = os.path.join(self.out_dir, filename)
        if not cv2.imwrite(path, image):
            raise OSError(f"Could not write artifact {path}")
        return path

    def save_channel(self, channel, grid):
        self._write(f"{self.stem}-{channel.value}.png", grid)

    def save_mask(self, name, mask):
        # 0/1 -> 0/255 so masks are visible
        return self._write(f"{self.stem}-{name}.png", (mask > 0).astype(np.uint8) * 255)

    def save_image(self, name, image):
        return self._write(f"{self.stem}-{name}.png", image)

    def record_max(self, channel, name, value):
        with self._lock:
            self._logs[channel].write(f"{name},{value}\n")

    def close(self):
        with self._lock:
            for log in self._logs.values():
                log.close()
            self._logs = {}
        logger.debug("Closed artifact logs for %s", self.stem)
