import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np
from skimage.util import img_as_ubyte

from boolmap.config import (
    JITTER_MAX,
    JITTER_MIN,
    JITTER_PROB,
    Channel,
    Marker,
    NormMode,
    Polarity,
    resolve_norm_mode,
    validate_params)
from boolmap.errors import InvalidConfiguration, InvalidInput
from boolmap.salience.artifacts import NullArtifactSink

logger = logging.getLogger(__name__)

# Artifact name infix per polarity: "L-040" vs "L-neg-040"
POLARITY_TAGS = {Polarity.ABOVE: "", Polarity.AT_MOST: "neg-"}


class SaliencyAccumulator:
    """
    Running elementwise sum of attention maps.
    Only ever added to; read once at the end as an 8-bit saliency map.
    """

    def __init__(self, shape):
        self._sum = np.zeros(shape, dtype=np.float64)
        self._lock = threading.Lock()
        self.count = 0

    @property
    def shape(self):
        return self._sum.shape

    @property
    def total(self):
        with self._lock:
            total = self._sum.copy()
        total.flags.writeable = False
        return total

    def add(self, attention_map):
        if attention_map.shape != self._sum.shape:
            raise ValueError(f"Attention map shape {attention_map.shape} != {self._sum.shape}")
        with self._lock:
            self._sum += attention_map
            self.count += 1

    def merge(self, partial_sum, count=1):
        """Fold in a sum of `count` maps accumulated elsewhere."""
        if partial_sum.shape != self._sum.shape:
            raise ValueError(f"Partial sum shape {partial_sum.shape} != {self._sum.shape}")
        with self._lock:
            self._sum += partial_sum
            self.count += count

    def saliency_map(self):
        # Uniform sums come out uniform: cv2 zeroes the scale when max == min
        with self._lock:
            return cv2.normalize(self._sum, None, 0, 255, cv2.NORM_MINMAX, cv2.CV_8U)


class BMS:
    """
    Boolean Map Saliency.

    Each Lab channel of the source image is thresholded at regular steps.
    Every boolean map (and its complement) is opened, stripped of the
    regions connected to the image border and normalized into an
    attention map; the attention maps are summed into the saliency map.
    """

    def __init__(self, src, dilation_width, opening_width, normalize, handle_border,
                 rng=None, sink=None, name="image", rgb_input=False):
        validate_params(dilation_width=dilation_width, opening_width=opening_width)
        self.dilation_width = dilation_width
        self.opening_width = opening_width
        self.normalize = resolve_norm_mode(normalize)
        self.handle_border = handle_border
        self.name = name

        self._src = BMS.validate_image(src).copy()
        self._rng = rng if rng is not None else np.random.default_rng()
        self._sink = sink if sink is not None else NullArtifactSink()

        self.feature_maps = BMS.extract_channels(self._src, rgb_input)
        for channel, grid in self.feature_maps.items():
            self._sink.save_channel(channel, grid)

        self._acc = SaliencyAccumulator(self._src.shape[:2])

    @property
    def shape(self):
        return self._src.shape[:2]

    @property
    def accumulator(self):
        return self._acc

    # ========================== Channels & thresholds ==========================

    @staticmethod
    def validate_image(img):
        if img is None:
            raise InvalidInput("Image not found.")
        img = np.asarray(img)
        if img.size == 0:
            raise InvalidInput("Image is empty.")
        if img.ndim != 3 or img.shape[2] != 3:
            raise InvalidInput(f"Invalid image shape {img.shape}: must be HxWx3")
        if img.dtype == np.uint8:
            return img
        if not np.issubdtype(img.dtype, np.floating):
            raise InvalidInput(f"Unsupported image dtype {img.dtype}: use uint8 or float in [0, 1]")
        try:
            return img_as_ubyte(img)
        except ValueError as e:
            raise InvalidInput(str(e)) from e

    @staticmethod
    def extract_channels(img, rgb_input=False):
        """Split an 8-bit color image into its L, a and b channel maps."""
        code = cv2.COLOR_RGB2LAB if rgb_input else cv2.COLOR_BGR2LAB
        lab = cv2.cvtColor(img, code)
        return dict(zip(Channel, cv2.split(lab)))

    @staticmethod
    def sweep_thresholds(channel_map, step):
        """Thresholds min, min+step, ... strictly below the channel max."""
        if not step > 0:
            raise InvalidConfiguration(f"Threshold step must be positive, got {step}")
        min_, max_ = float(channel_map.min()), float(channel_map.max())
        # min + k*step rather than repeated addition: no float drift
        n = int(np.ceil((max_ - min_) / step))
        return [t for t in (min_ + k * step for k in range(n)) if t < max_]

    @staticmethod
    def binarize_img(channel_map, threshold):
        # Use faster numpy vector comparison to threshold image
        above = (channel_map > threshold).astype(np.uint8)
        return above, 1 - above

    @staticmethod
    def threshold_label(threshold):
        # Half away from zero, zero padded: 7.5 -> "008"
        return f"{int(np.floor(threshold + 0.5)):03d}"

    # ============================== Morphology =================================

    @staticmethod
    def refine_bool_map(bool_map, opening_width):
        """Morphological opening with the default 3x3 element, `opening_width` iterations."""
        if opening_width < 0:
            raise InvalidConfiguration(f"Opening width must be >= 0, got {opening_width}")
        if opening_width == 0:
            return bool_map
        opened = cv2.erode(bool_map, None, iterations=opening_width)
        return cv2.dilate(opened, None, iterations=opening_width)

    # ========================== Border flood fill ==============================

    @staticmethod
    def border_seeds(shape, handle_border=False, rng=None):
        """
        Flood fill seeds on the image frame as an (N, 2) array of (row, col):
        left and right of every row, then top and bottom of every column.
        With handle_border, about 1% of seeds are pushed inward by 5-24 px
        so thin frames or borders do not shield the real background.
        """
        h, w = shape
        rows, cols = np.arange(h), np.arange(w)
        n = 2 * (h + w)
        if handle_border:
            rng = rng if rng is not None else np.random.default_rng()
            hit = rng.uniform(0.0, 1.0, size=n) > 1.0 - JITTER_PROB
            jump = np.where(hit, rng.integers(JITTER_MIN, JITTER_MAX, size=n), 0)
        else:
            jump = np.zeros(n, dtype=np.int64)
        left, right = np.minimum(jump[:h], w - 1), np.minimum(jump[h:2 * h], w - 1)
        top, bottom = np.minimum(jump[2 * h:2 * h + w], h - 1), np.minimum(jump[2 * h + w:], h - 1)

        seed_rows = np.concatenate([rows, rows, top, h - 1 - bottom])
        seed_cols = np.concatenate([left, w - 1 - right, cols, cols])
        return np.stack([seed_rows, seed_cols], axis=1)

    @staticmethod
    def mark_background(bool_map, seeds):
        """
        8-connected flood fill of same-valued pixels from every seed, tracked
        in a separate visited mask so mask values are never overloaded.
        Returns a Marker grid: BACKGROUND where reached, FOREGROUND elsewhere.
        """
        h, w = bool_map.shape
        image = np.ascontiguousarray(bool_map, dtype=np.uint8)
        # cv2 wants the mask padded by one pixel on every side
        visited = np.zeros((h + 2, w + 2), dtype=np.uint8)
        flags = 8 | cv2.FLOODFILL_MASK_ONLY | (1 << 8)
        for row, col in seeds:
            if visited[row + 1, col + 1]:
                continue
            cv2.floodFill(image, visited, (int(col), int(row)), 1, 0, 0, flags)

        markers = np.full((h, w), Marker.UNVISITED, dtype=np.uint8)
        markers[visited[1:-1, 1:-1] > 0] = Marker.BACKGROUND
        # Never reached from the frame
        markers[markers == Marker.UNVISITED] = Marker.FOREGROUND
        return markers

    @staticmethod
    def normalize_attention(mask, normalize):
        attn = mask.astype(np.float64)
        norm_type = cv2.NORM_L2 if normalize is NormMode.L2 else cv2.NORM_MINMAX
        return cv2.normalize(attn, None, 1.0, 0.0, norm_type)

    # ============================= Attention maps ==============================

    def activate_bool_map(self, bool_map, name, channel, rng=None):
        """Turn one (opened) boolean map into a normalized attention map."""
        rng = rng if rng is not None else self._rng
        seeds = BMS.border_seeds(bool_map.shape, self.handle_border, rng)
        markers = BMS.mark_background(bool_map, seeds)

        attn = (markers == Marker.FOREGROUND).astype(np.uint8)
        self._sink.save_mask(f"{name}-attention", attn)

        if self.dilation_width > 0:
            attn = cv2.dilate(attn, None, iterations=self.dilation_width)
        self._sink.save_mask(f"{name}-attention-dilated", attn)

        attn = BMS.normalize_attention(attn, self.normalize)

        # 8-bit copy for viewing; the true maximum goes to the channel log
        display = cv2.normalize(attn, None, 255.0, 0.0, cv2.NORM_MINMAX, cv2.CV_8U)
        artifact = self._sink.save_image(f"{name}-attention-normal", display)
        self._sink.record_max(channel, artifact, float(attn.max()))
        return attn

    def extract_attention(self, bool_map, name, channel, rng=None):
        """Open one boolean map and turn it into an attention map."""
        opened = BMS.refine_bool_map(bool_map, self.opening_width)
        self._sink.save_mask(f"{name}-open", opened)
        return self.activate_bool_map(opened, name, channel, rng)

    def register_position(self, bool_map, name, channel, rng=None):
        attn = self.extract_attention(bool_map, name, channel, rng)
        self._acc.add(attn)
        return attn

    def _partial_sum(self, jobs, channel):
        # Worker-private sum, merged into the shared accumulator once
        partial = np.zeros(self.shape, dtype=np.float64)
        for name, bm, stream in jobs:
            partial += self.extract_attention(bm, name, channel, stream)
        return partial, len(jobs)

    def bool_maps(self, channel, step):
        """Yield (name, boolean map) for every threshold and polarity of a channel."""
        feature_map = self.feature_maps[channel]
        thresholds = BMS.sweep_thresholds(feature_map, step)
        logger.debug("Channel %s: %d thresholds over [%d, %d]",
                     channel.value, len(thresholds), feature_map.min(), feature_map.max())
        for thresh in thresholds:
            label = BMS.threshold_label(thresh)
            for polarity, bm in zip(Polarity, BMS.binarize_img(feature_map, thresh)):
                yield f"{channel.value}-{POLARITY_TAGS[polarity]}{label}", bm

    def compute_saliency(self, step, workers=1):
        """Sweep every channel and accumulate; returns the 8-bit saliency map."""
        validate_params(step=step, workers=workers)
        for channel in Channel:
            if workers == 1:
                for name, bm in self.bool_maps(channel, step):
                    self._sink.save_mask(name, bm)
                    self.register_position(bm, name, channel)
                continue

            # One independent child stream per map keeps seeded runs reproducible
            jobs = list(self.bool_maps(channel, step))
            streams = self._rng.spawn(len(jobs))
            tasks = []
            for (name, bm), stream in zip(jobs, streams):
                self._sink.save_mask(name, bm)
                tasks.append((name, bm, stream))
            with ThreadPoolExecutor(max_workers=workers) as exe:
                futures = [exe.submit(self._partial_sum, tasks[i::workers], channel)
                           for i in range(min(workers, len(tasks)))]
                for future in futures:
                    partial, count = future.result()
                    self._acc.merge(partial, count)

        logger.info("%s: accumulated %d attention maps (%dx%d)",
                    self.name, self._acc.count, self.shape[1], self.shape[0])
        return self.get_saliency_map()

    def get_saliency_map(self):
        return self._acc.saliency_map()


def compute_saliency(image, config, sink=None, name="image", rgb_input=False):
    """Run the full pipeline on one image with a BMSConfig."""
    bms = BMS(image,
              config.dilation_width,
              config.opening_width,
              config.normalize,
              config.handle_border,
              rng=np.random.default_rng(config.seed),
              sink=sink,
              name=name,
              rgb_input=rgb_input)
    return bms.compute_saliency(config.step, workers=config.workers)
