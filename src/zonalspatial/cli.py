# src/zonalspatial/cli.py

import argparse
import sys
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from zonalspatial.exceptions import GeometryMismatch, ZonalError
from zonalspatial.raster.io import load
from zonalspatial.vector.io import load_vector
from zonalspatial.vector.geom import to_crs
from zonalspatial.zonal.aggregate import AGGREGATORS
from zonalspatial.zonal.extract import extract_points, extract_polygons
from zonalspatial.zonal.parallel import extract_parallel
from zonalspatial.zonal.policy import OverlayPolicy
from zonalspatial.zonal.result import OverlayResult

log = logging.getLogger("zonalspatial.cli")

LOG_LEVEL_ENV = "ZONALSPATIAL_LOG_LEVEL"
OUTPUT_FORMATS = (".csv", ".parquet")

def setup_logging(level: Optional[int] = None) -> None:
    """
    Configures the standard logging format and level for the command-line interface.

    Args:
        level (int): The logging threshold level. Defaults to the ZONALSPATIAL_LOG_LEVEL
            environment variable, then INFO.
    """
    if level is None:
        name = os.getenv(LOG_LEVEL_ENV, "INFO").upper()
        level = getattr(logging, name, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

def build_policy(args: argparse.Namespace) -> OverlayPolicy:
    """
    Starts from the --policy JSON file (or the defaults) and applies the explicit flags on top.
    """
    policy = OverlayPolicy.from_json(args.policy) if args.policy else OverlayPolicy()

    changes: Dict[str, Any] = {}
    if args.command == "points":
        if args.buffer is not None:
            changes["point_buffer_radius"] = args.buffer
        if args.interpolation is not None:
            changes["point_interpolation"] = args.interpolation
        if args.edge_fallback is not None:
            changes["edge_fallback"] = args.edge_fallback
    else:
        if args.area_weighted:
            changes["area_weighted"] = True
        if args.no_fallback:
            changes["small_polygon_fallback"] = False
        if args.normalize:
            changes["normalize_weights"] = True

    return policy.replace(**changes) if changes else policy

def write_result(result: OverlayResult, path: Path) -> Path:
    """Writes the tabular result with polars; the format follows the file suffix."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in OUTPUT_FORMATS:
        raise ValueError(f"Unsupported output format '{suffix}'. Use one of {OUTPUT_FORMATS}.")

    path.parent.mkdir(parents=True, exist_ok=True)
    df = result.to_polars()
    if suffix == ".csv":
        df.write_csv(path)
    else:
        df.write_parquet(path)
    log.info(f"Wrote {len(df)} rows to {path}")
    return path

def run(args: argparse.Namespace) -> OverlayResult:
    """
    Loads the inputs, runs the requested extraction and writes the output table.
    """
    policy = build_policy(args)
    grid = load(args.raster, bands=args.bands)
    if args.clip and args.to_raster_crs:
        raise ValueError("--clip reads by raster extent and cannot be combined with --to-raster-crs")
    vector = load_vector(args.vector, bbox=grid.bounds if args.clip else None)

    if vector.kind not in (None, args.command):
        raise GeometryMismatch(f"'{args.command}' cannot overlay {vector.kind} from {args.vector.name}")
    log.info(f"Overlaying {len(vector)} {vector.kind or 'features'} on {grid}")

    if args.to_raster_crs:
        if grid.crs is None:
            raise ValueError("--to-raster-crs given but the raster has no CRS")
        vector = to_crs(vector, grid.crs)

    if args.jobs != 1:
        result = extract_parallel(
            grid, vector,
            kind=args.command,
            aggregator=args.stat,
            policy=policy,
            n_jobs=args.jobs,
            id_col=args.id_col,
            strict=args.strict or None
        )
    elif args.command == "points":
        result = extract_points(
            grid, vector, policy=policy, aggregator=args.stat, id_col=args.id_col, strict=args.strict or None
        )
    else:
        result = extract_polygons(
            grid, vector, aggregator=args.stat, policy=policy, id_col=args.id_col, strict=args.strict or None
        )

    write_result(result, args.output)
    return result

def _add_shared_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("raster", type=Path, help="Input raster (any GDAL format).")
    parser.add_argument("vector", type=Path, help="Input vector file (any OGR format).")
    parser.add_argument(
        "-o", "--output",
        type=Path,
        required=True,
        help="Output table, .csv or .parquet."
    )
    parser.add_argument(
        "--stat",
        choices=sorted(AGGREGATORS),
        default="mean",
        help="Aggregator applied to the contributing cells. Defaults to mean."
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Any no-data cell among the contributing cells makes the summary missing."
    )
    parser.add_argument("--id-col", default=None, help="Attribute used as geometry identifier.")
    parser.add_argument(
        "--bands",
        type=int,
        nargs="+",
        default=None,
        help="1-based band indexes to read. Defaults to all bands."
    )
    parser.add_argument("--policy", type=Path, default=None, help="JSON file with overlay policy options.")
    parser.add_argument(
        "--to-raster-crs",
        action="store_true",
        help="Reproject the vectors to the raster CRS before extraction."
    )
    parser.add_argument(
        "--clip",
        action="store_true",
        help="Only read features whose bounding box meets the raster extent (vector must already share the raster CRS)."
    )
    parser.add_argument(
        "--jobs",
        type=int,
        default=1,
        help="Parallel workers (-1 = all cores). Defaults to 1 (sequential)."
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zonalspatial",
        description="Point sampling and zonal statistics of rasters over vector geometries"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    points_parser = subparsers.add_parser("points", help="Sample raster values at point locations.")
    _add_shared_arguments(points_parser)
    points_parser.add_argument(
        "--buffer",
        type=float,
        default=None,
        help="Use every cell whose centre lies within this distance of the point."
    )
    points_parser.add_argument(
        "--interpolation",
        choices=["nearest", "bilinear"],
        default=None,
        help="Point sampling mode when no buffer is given."
    )
    points_parser.add_argument(
        "--edge-fallback",
        choices=["nearest", "missing"],
        default=None,
        help="Bilinear behaviour when a neighbour lies outside the raster."
    )

    polygons_parser = subparsers.add_parser("polygons", help="Summarize raster values within polygons.")
    _add_shared_arguments(polygons_parser)
    polygons_parser.add_argument(
        "--area-weighted",
        action="store_true",
        help="Weight each cell by the fraction of its area covered by the polygon."
    )
    polygons_parser.add_argument(
        "--no-fallback",
        action="store_true",
        help="Report polygons covering no cell centre as empty instead of using the centroid cell."
    )
    polygons_parser.add_argument(
        "--normalize",
        action="store_true",
        help="Rescale each polygon's weights to sum to 1."
    )
    return parser

def main(argv: Optional[List[str]] = None) -> None:
    """
    Parses command-line arguments and routes execution to the extraction subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        setup_logging(logging.DEBUG)
    elif args.quiet:
        setup_logging(logging.WARNING)
    else:
        setup_logging()

    try:
        run(args)
    except (ZonalError, FileNotFoundError, IOError, ValueError, KeyError, MemoryError) as e:
        log.error(f"{args.command} extraction failed: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
