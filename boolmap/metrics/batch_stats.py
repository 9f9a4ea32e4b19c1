import os
import time
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np
import pandas as pd
from tqdm import tqdm

from boolmap.config import BMSConfig
from boolmap.errors import BMSError, InvalidInput
from boolmap.metrics.stat_helpers import gather_images, normalize_map
from boolmap.salience.artifacts import DiskArtifactSink, NullArtifactSink
from boolmap.salience.models import BMS

STATS_CSV = "saliency_stats.csv"


def _process(args):
    img_path, output_dir, config, dump_artifacts = args
    try:
        return process_one_image(img_path, output_dir, config, dump_artifacts)
    except (BMSError, OSError) as e:
        # One bad file should not sink the whole batch
        tqdm.write(f"  -> skip {os.path.basename(img_path)}: {e}")
        return None


def process_one_image(img_path, output_dir, config, dump_artifacts=False):
    """
    Load, compute saliency, write the map, and return a dict of run stats.
    Artifacts (when requested) go to <output_dir>/artifacts/<stem>/.
    """
    img = cv2.imread(img_path)
    if img is None:
        raise InvalidInput(f"Could not read image {img_path}")

    fn = os.path.basename(img_path)
    stem = os.path.splitext(fn)[0]
    if dump_artifacts:
        sink = DiskArtifactSink(os.path.join(output_dir, "artifacts", stem), stem)
    else:
        sink = NullArtifactSink()

    start = time.perf_counter()
    with sink:
        bms = BMS(img,
                  config.dilation_width,
                  config.opening_width,
                  config.normalize,
                  config.handle_border,
                  rng=np.random.default_rng(config.seed),
                  sink=sink,
                  name=fn)
        sal_map = bms.compute_saliency(config.step, workers=config.workers)
    elapsed = time.perf_counter() - start

    # Verify that salience map has same shape as input
    h, w = img.shape[:2]
    if sal_map.shape != (h, w):
        raise RuntimeError(f"Saliency map {sal_map.shape} != image {h}x{w}")

    out_path = os.path.join(output_dir, f"saliency_{stem}.png")
    if not cv2.imwrite(out_path, sal_map):
        raise OSError(f"Could not write {out_path}")

    # Fraction of pixels in the upper half of the [0, 1] saliency range
    sal = normalize_map(sal_map)
    return {
        "image": fn,
        "height": h,
        "width": w,
        "attention_maps": bms.accumulator.count,
        "mean_saliency": float(sal.mean()),
        "salient_fraction": float((sal >= 0.5).mean()),
        "seconds": elapsed,
    }


def evaluate_all(input_dir, output_dir, config=None, dump_artifacts=False, max_workers=None):
    """
    Compute saliency maps for every image in input_dir, in parallel over
    images, and write a per-image stats CSV. Returns the stats DataFrame.
    """
    config = config or BMSConfig()
    os.makedirs(output_dir, exist_ok=True)

    files = gather_images(input_dir)
    if max_workers is None:
        # Leave 2 cores free: prevents CPU saturation
        max_workers = max(1, (os.cpu_count() or 1) - 2)

    args = [(os.path.join(input_dir, fn), output_dir, config, dump_artifacts)
            for fn in files]

    stats = []
    with ThreadPoolExecutor(max_workers=max_workers) as exe:
        for result in tqdm(exe.map(_process, args),
                           total=len(args),
                           desc="Computing saliency",
                           unit="img"):
            if result:
                stats.append(result)

    stats_df = pd.DataFrame(stats, columns=["image", "height", "width", "attention_maps",
                                            "mean_saliency", "salient_fraction", "seconds"])
    stats_df.to_csv(os.path.join(output_dir, STATS_CSV), index=False)
    print(f"Done! Computed saliency maps for {len(stats)}/{len(files)} images in {output_dir}")
    return stats_df
