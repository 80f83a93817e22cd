#!/usr/bin/env python3
"""Train a retrieval vocabulary on EuRoC sequences.

Extracts ORB descriptors from the left images of every sequence under a
data directory, clusters them into visual words and writes a vocabulary
file accepted by ``vislam slam``.

Usage:
    python scripts/train_vocabulary.py
    python scripts/train_vocabulary.py --n-words 2000 --max-images 10000
    python scripts/train_vocabulary.py --data-dir /path/to/euroc --output voc.json

The trained vocabulary is saved to data/vocabulary.npz by default.
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import cv2
import numpy as np

from vislam.frontend import FeatureDetector
from vislam.mapping import VisualVocabulary


def collect_descriptors(
    data_dir: Path,
    n_features: int = 500,
    max_images: int | None = None,
    skip_every: int = 1,
) -> np.ndarray:
    """Extract ORB descriptors from all EuRoC sequences.

    Args:
        data_dir: Path to euroc data directory containing sequences
        n_features: Number of ORB features per image
        max_images: Maximum images to process (None for all)
        skip_every: Process every Nth image (for speed)

    Returns:
        Stacked descriptors array, shape (total_descriptors, 32)
    """
    detector = FeatureDetector(n_features=n_features)
    all_descriptors: list[np.ndarray] = []
    image_count = 0

    sequence_dirs = sorted(p for p in data_dir.iterdir() if p.is_dir())
    print(f"Found {len(sequence_dirs)} potential sequences in {data_dir}")

    for sequence_dir in sequence_dirs:
        cam0_dir = sequence_dir / "mav0" / "cam0" / "data"
        if not cam0_dir.exists():
            continue

        print(f"Processing {sequence_dir.name}...", end=" ", flush=True)
        seq_count = 0

        for i, img_path in enumerate(sorted(cam0_dir.glob("*.png"))):
            if max_images and image_count >= max_images:
                break
            if i % skip_every != 0:
                continue

            img = cv2.imread(str(img_path), cv2.IMREAD_GRAYSCALE)
            if img is None:
                continue

            features = detector.detect(img)
            if len(features) > 0:
                all_descriptors.append(features.descriptors)
                image_count += 1
                seq_count += 1

        print(f"{seq_count} images")

        if max_images and image_count >= max_images:
            print(f"Reached max_images limit ({max_images})")
            break

    if not all_descriptors:
        raise ValueError(f"No descriptors found in {data_dir}")

    stacked = np.vstack(all_descriptors)
    print(f"\nCollected {len(stacked)} descriptors from {image_count} images")
    return stacked


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Train a visual vocabulary for keyframe retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path("data/euroc"),
        help="Path to EuRoC data directory (default: data/euroc)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("data/vocabulary.npz"),
        help="Output vocabulary file, .npz or .json (default: data/vocabulary.npz)",
    )
    parser.add_argument(
        "--n-words",
        type=int,
        default=1000,
        help="Number of visual words (default: 1000)",
    )
    parser.add_argument(
        "--n-features",
        type=int,
        default=500,
        help="ORB features per image (default: 500)",
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Max images to process (default: all)",
    )
    parser.add_argument(
        "--skip-every",
        type=int,
        default=3,
        help="Process every Nth image (default: 3 for speed)",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if not args.data_dir.exists():
        print(f"Error: Data directory not found: {args.data_dir}")
        print("Please download EuRoC dataset sequences to this directory.")
        sys.exit(1)

    descriptors = collect_descriptors(
        args.data_dir,
        n_features=args.n_features,
        max_images=args.max_images,
        skip_every=args.skip_every,
    )

    print(f"\nTraining vocabulary with {args.n_words} words...")
    start_time = time.time()
    vocabulary = VisualVocabulary.train(descriptors, args.n_words)
    print(f"Training complete in {time.time() - start_time:.1f}s")

    vocabulary.save(args.output)
    print(f"Vocabulary saved to: {args.output} ({vocabulary.n_words} words)")


if __name__ == "__main__":
    main()
