import os

import cv2
import numpy as np
import pandas as pd

from boolmap.config import Channel, IMAGE_EXTENSIONS


def gather_images(img_dir):
    # Sorted list of image file names in img_dir (no recursion)
    return [fn for fn in sorted(os.listdir(img_dir))
            if fn.lower().endswith(IMAGE_EXTENSIONS)]


def normalize_map(sal_map):
    sal = sal_map.astype(np.float32)
    sal -= sal.min()
    sal /= (sal.max() + 1e-12)
    return sal


def load_attention_maxima(log_path: str) -> pd.DataFrame:
    """
    Read one channel log written by DiskArtifactSink.
    Returns a DataFrame with columns 'artifact' and 'max', one row per
    attention map, in the order the maps were produced.
    """
    # No rows yet (e.g. every threshold sweep was empty)
    if os.path.getsize(log_path) == 0:
        return pd.DataFrame({"artifact": pd.Series(dtype=str), "max": pd.Series(dtype=float)})
    return pd.read_csv(log_path, header=None, names=["artifact", "max"],
                       dtype={"artifact": str, "max": float})


def load_channel_maxima(out_dir, stem):
    """All three channel logs of one image as {Channel: DataFrame}."""
    stem = os.path.splitext(os.path.basename(stem))[0]
    return {channel: load_attention_maxima(os.path.join(out_dir, f"{stem}-{channel.value}.log"))
            for channel in Channel}


def restore_attention_map(path, maximum):
    """
    Undo the 8-bit display rescale of an '-attention-normal' image using the
    maximum recorded in its channel log.
    """
    display = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if display is None:
        raise FileNotFoundError(f"Could not read attention image {path}")
    # Uniform non-zero map: min-max display collapsed it to all zeros
    if display.max() == 0 and maximum > 0:
        return np.full(display.shape, maximum, dtype=np.float64)
    return display.astype(np.float64) / 255.0 * maximum
