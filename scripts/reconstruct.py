#!/usr/bin/env python3
"""
eventcomb Reconstruction Script - Event Recording to Image Sequence

Replays a recorded event stream through the comb filter reconstructor and
writes the published display frames as a numbered PNG sequence.

Usage:
    python scripts/reconstruct.py --input recording.h5 --height 260 --width 346 --save-dir frames
    python scripts/reconstruct.py --input events.txt --config my_run.yaml --framerate 60
    python scripts/reconstruct.py --input rec.npy --auto-thresholds --auto-range --batch-ms 1
"""

import argparse
import logging
import time
from pathlib import Path

from eventcomb.config import load_config, merge_configs
from eventcomb.data.events import iter_batches, load_events
from eventcomb.pipeline import CombReconstructor


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(message)s",
    datefmt="%H:%M:%S"
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconstruct intensity frames from an event recording"
    )
    parser.add_argument("--input", type=str, required=True,
                        help="Event file (.h5, .hdf5, .mat, .npy, .txt)")
    parser.add_argument("--config", type=str, default=None,
                        help="YAML configuration (default: eventcomb/configs/default.yaml)")
    parser.add_argument("--height", type=int, default=None,
                        help="Sensor height (default: text file header, else 180)")
    parser.add_argument("--width", type=int, default=None,
                        help="Sensor width (default: text file header, else 240)")
    parser.add_argument("--time-scale", type=float, default=None,
                        help="Seconds per timestamp unit (default: 1e-6 binary, 1 text)")
    parser.add_argument("--batch-ms", type=float, default=1.0,
                        help="Replay batch duration in milliseconds")
    parser.add_argument("--framerate", type=float, default=None,
                        help="Override publish framerate (Hz)")
    parser.add_argument("--save-dir", type=str, default=None,
                        help="Directory for the PNG sequence")
    parser.add_argument("--working-dir", type=str, default=None,
                        help="Base directory for --save-dir")
    parser.add_argument("--auto-thresholds", action="store_true",
                        help="Calibrate contrast thresholds from the stream")
    parser.add_argument("--auto-range", action="store_true",
                        help="Track the display range from the image")
    parser.add_argument("--sigma", type=float, default=None,
                        help="Spatial smoothing sigma (0 disables)")
    parser.add_argument("--bilateral", action="store_true",
                        help="Bilateral instead of Gaussian smoothing")
    parser.add_argument("--color", action="store_true",
                        help="Demosaic a Bayer colour sensor")
    parser.add_argument("--device", type=str, default="cpu",
                        help="Torch device for the filter state")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args()


def build_overrides(args: argparse.Namespace) -> dict:
    options = {}
    if args.framerate is not None:
        options["publish_framerate"] = args.framerate
    if args.save_dir is not None:
        options["save_dir"] = args.save_dir
    if args.working_dir is not None:
        options["working_dir"] = args.working_dir
    if args.auto_thresholds:
        options["auto_detect_contrast_thresholds"] = True
    if args.auto_range:
        options["auto_adjust_dynamic_range"] = True
    if args.sigma is not None:
        options["spatial_filter_sigma"] = args.sigma
    if args.bilateral:
        options["bilateral_filter"] = 1
    if args.color:
        options["color_display"] = True
    return {"options": options} if options else {}


def main():
    args = parse_args()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)
    config = merge_configs(config, build_overrides(args))

    input_path = Path(args.input)
    logger.info(f"Loading events: {input_path}")
    events = load_events(input_path, height=args.height, width=args.width,
                         time_scale=args.time_scale)
    logger.info(f"  {len(events)} events, {events.duration:.3f}s, "
                f"{events.event_rate:.0f} ev/s, sensor {events.height}x{events.width}")

    reconstructor = CombReconstructor.from_config(config, device=args.device)
    if reconstructor.writer is None:
        logger.warning("No save directory configured, frames will not be written")

    start = time.time()
    n_batches = 0
    with reconstructor:
        for batch in iter_batches(events, batch_duration=args.batch_ms * 1e-3):
            reconstructor.process_batch(batch)
            n_batches += 1
            if n_batches % 1000 == 0:
                logger.info(f"  {n_batches} batches, {reconstructor.frames_published} frames")

        elapsed = time.time() - start
        logger.info(f"Processed {n_batches} batches in {elapsed:.1f}s, "
                    f"{reconstructor.frames_published} frames published")
        if reconstructor.options.auto_detect_contrast_thresholds and reconstructor.initialised:
            thresholds = reconstructor.calibrator.thresholds
            logger.info(f"Adaptive thresholds: ON={thresholds.on:.4f} OFF={thresholds.off:.4f}")


if __name__ == "__main__":
    main()
