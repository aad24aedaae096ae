#!/usr/bin/env python3
"""
CLI tool to validate finished shorts and repair broken ones in place.

Usage:
    python scripts/repair_outputs.py [--output-dir <dir>] [--no-backup] [--json]

Example:
    python scripts/repair_outputs.py --output-dir ./data/output
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from viralshort.config import settings
from viralshort.pipeline.composition import scan_and_repair
from viralshort.utils import ffmpeg


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger(__name__)


async def repair_outputs(output_dir: Path, keep_backup: bool = True) -> list:
    """Scan output_dir and return one outcome dict per video."""
    if not output_dir.exists():
        raise FileNotFoundError(f"Output directory not found: {output_dir}")

    if not ffmpeg.check_ffmpeg_available() or not ffmpeg.check_ffprobe_available():
        raise RuntimeError("ffmpeg and ffprobe are required")

    logger.info(f"Scanning {output_dir}")
    outcomes = await scan_and_repair(output_dir, ffmpeg, keep_backup=keep_backup)

    counts = {"valid": 0, "repaired": 0, "failed": 0}
    for outcome in outcomes:
        counts[outcome.status] += 1
    logger.info(
        f"{len(outcomes)} videos: {counts['valid']} valid, "
        f"{counts['repaired']} repaired, {counts['failed']} unrecoverable"
    )
    return [outcome.to_dict() for outcome in outcomes]


def main():
    parser = argparse.ArgumentParser(
        description="Validate and repair finished ViralShort videos",
    )

    parser.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=None,
        help=f"Directory to scan (default: {settings.output_dir})"
    )

    parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Do not keep a .bak copy of repaired files"
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the outcome list as JSON"
    )

    args = parser.parse_args()
    output_dir = args.output_dir or settings.output_dir

    try:
        outcomes = asyncio.run(repair_outputs(output_dir, keep_backup=not args.no_backup))
    except (FileNotFoundError, RuntimeError) as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)

    if args.json:
        print(json.dumps(outcomes, indent=2))

    if any(outcome["status"] == "failed" for outcome in outcomes):
        sys.exit(2)


if __name__ == "__main__":
    main()
