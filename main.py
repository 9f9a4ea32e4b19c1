import argparse
import logging
import os
import sys

import cv2

from boolmap.config import (
    BMSConfig,
    DEFAULT_DILATION_WIDTH,
    DEFAULT_NORMALIZE,
    DEFAULT_OPENING_WIDTH,
    DEFAULT_STEP,
    DEFAULT_WORKERS,
    NormMode)
from boolmap.errors import BMSError, InvalidInput
from boolmap.metrics.batch_stats import evaluate_all
from boolmap.salience.artifacts import DiskArtifactSink, NullArtifactSink
from boolmap.salience.models import compute_saliency


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Boolean Map saliency for an image or a folder of images.")
    parser.add_argument("input", help="image file or directory of images")
    parser.add_argument("-o", "--output", default="results",
                        help="output directory (default: results)")
    parser.add_argument("--step", type=float, default=DEFAULT_STEP,
                        help="threshold sampling step")
    parser.add_argument("--dilation-width", type=int, default=DEFAULT_DILATION_WIDTH)
    parser.add_argument("--opening-width", type=int, default=DEFAULT_OPENING_WIDTH)
    parser.add_argument("--norm", choices=[m.value for m in NormMode], default=DEFAULT_NORMALIZE.value,
                        help="attention map normalization")
    parser.add_argument("--handle-border", action="store_true",
                        help="jitter border seeds inward")
    parser.add_argument("--seed", type=int, default=None, help="RNG seed for seed jitter")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS,
                        help="threads per channel sweep")
    parser.add_argument("--artifacts", action="store_true",
                        help="dump every intermediate map and the per-channel max logs")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def run_single(img_path, output_dir, config, dump_artifacts):
    img = cv2.imread(img_path)
    if img is None:
        raise InvalidInput(f"Could not read image {img_path}")
    os.makedirs(output_dir, exist_ok=True)
    stem = os.path.splitext(os.path.basename(img_path))[0]

    sink = DiskArtifactSink(output_dir, stem) if dump_artifacts else NullArtifactSink()
    with sink:
        sal_map = compute_saliency(img, config, sink=sink, name=os.path.basename(img_path))

    out_path = os.path.join(output_dir, f"saliency_{stem}.png")
    if not cv2.imwrite(out_path, sal_map):
        raise OSError(f"Could not write {out_path}")
    print(f"Saliency map written to {out_path}")
    return out_path


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        config = BMSConfig(step=args.step,
                           dilation_width=args.dilation_width,
                           opening_width=args.opening_width,
                           normalize=args.norm,
                           handle_border=args.handle_border,
                           seed=args.seed,
                           workers=args.workers)
        if os.path.isdir(args.input):
            evaluate_all(args.input, args.output, config, dump_artifacts=args.artifacts)
        else:
            run_single(args.input, args.output, config, args.artifacts)
    except (BMSError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
