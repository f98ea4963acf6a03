#!/usr/bin/env python
"""
FishMIP regional ensemble - percentage change in total consumer biomass
per CCAMLR planning domain and MEASO assessment region.

Stages:
  1. Reduce every (model, forcing) pair to reference/future decade means
  2. Convert each pair to percentage change against its own reference
  3. Average the change across the ensemble at each grid cell
  4. Join the ensemble to each region scheme and summarise per region

Every stage writes its table under output_root; the plotting notebooks
read the regional_result_<scheme>.csv and regional_summary_<scheme>.csv
files.
"""

import sys
import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
from joblib import Parallel, delayed

from .logging_utils import (
    setup_logging, collect_records, replay_records,
    print_header, print_step, print_success, print_info, print_warning, print_error
)
from .regions_config import PipelineConfig, parse_config_file
from .regions_io import (
    PERC_CHANGE_SUFFIX, PERIOD_MEANS_SUFFIX, OutputWriter, SourceFile,
    collect_model_artifacts, discover_source_files
)
from .regions_masks import RegionalMask
from .regions_processor import (
    compute_ensemble_mean, compute_percentage_change, join_regions,
    reduce_model_pair, summarise_regions
)

log = logging.getLogger("Run")

ENSEMBLE_FILE = "ensemble_perc_bio_change.csv"


@dataclass
class ModelStatus:
    """Outcome of reducing one (model, forcing) pair."""
    model: str
    forcing: str
    n_cells: int = 0
    artifacts: List[Path] = field(default_factory=list)
    failed_files: List[Tuple[str, str]] = field(default_factory=list)
    log_records: List[logging.LogRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.artifacts)


@dataclass
class PipelineResult:
    """Tables produced by one run, keyed as they are written."""
    models: List[ModelStatus]
    ensemble: pd.DataFrame
    regional: Dict[str, pd.DataFrame]
    summaries: Dict[str, pd.DataFrame]
    failed_files: List[Tuple[str, str]]


def process_model_pair(
    sources: Sequence[SourceFile],
    config: PipelineConfig,
    capture_logs: bool = False
) -> ModelStatus:
    """
    Reduce one (model, forcing) pair and write its two artifacts.

    Runs in a worker process when n_jobs > 1, so it only touches its own
    output files. With capture_logs the records emitted while processing
    are returned on the status for the driver to replay; worker processes
    have no handlers of their own.
    """
    if not capture_logs:
        return _reduce_and_write(sources, config)
    with collect_records() as records:
        status = _reduce_and_write(sources, config)
    status.log_records = list(records)
    return status


def _reduce_and_write(sources: Sequence[SourceFile], config: PipelineConfig) -> ModelStatus:
    model, forcing = sources[0].pair
    status = ModelStatus(model=model, forcing=forcing)

    period_means, failed = reduce_model_pair(sources, config)
    status.failed_files.extend(failed)
    if period_means is None:
        log.warning(f"{model}/{forcing}: every file was skipped, no artifacts written")
        return status

    perc = compute_percentage_change(period_means)
    status.n_cells = len(perc)
    status.artifacts.append(
        OutputWriter.write_period_means(config.per_model_dir, model, forcing, period_means)
    )
    status.artifacts.append(
        OutputWriter.write_percentage_change(config.per_model_dir, model, forcing, perc)
    )
    return status


def clear_model_artifacts(per_model_dir: Path):
    """Remove artifacts of a previous run so only this run's models are collected."""
    per_model_dir = Path(per_model_dir)
    if not per_model_dir.exists():
        return
    for suffix in (PERIOD_MEANS_SUFFIX, PERC_CHANGE_SUFFIX):
        for path in sorted(per_model_dir.glob(f"*{suffix}")):
            log.debug(f"Removing previous artifact {path}")
            path.unlink()


def run_pipeline(config: PipelineConfig, mask: Optional[RegionalMask] = None) -> PipelineResult:
    """
    Run every stage for one configuration.

    Args:
        config: Pipeline configuration (input/output roots, masks, ...)
        mask: Pre-loaded region mask; loaded from config.masks if None

    Returns:
        PipelineResult with the in-memory versions of the written tables
    """
    output_root = Path(config.output_root)
    output_root.mkdir(parents=True, exist_ok=True)

    # ---------- 1-2 PER-MODEL REDUCTION ----------
    print_header("Per-model reduction")
    sources, skipped = discover_source_files(config.input_root, config.file_patterns, config.name_regex)
    failed_files = list(skipped)

    clear_model_artifacts(config.per_model_dir)
    pairs = sorted(sources)
    print_info(f"{len(pairs)} model pair(s), n_jobs={config.n_jobs}")
    in_workers = config.n_jobs != 1
    statuses = Parallel(n_jobs=config.n_jobs)(
        delayed(process_model_pair)(sources[pair], config, in_workers) for pair in pairs
    )
    for i, status in enumerate(statuses, start=1):
        print_step(i, len(statuses), f"{status.model} / {status.forcing}")
        replay_records(status.log_records)
        failed_files.extend(status.failed_files)
        if status.ok:
            print_info(f"{status.model}/{status.forcing}: {status.n_cells} cells")
        else:
            print_warning(f"{status.model}/{status.forcing}: skipped")

    # ---------- 3 ENSEMBLE ----------
    print_header("Ensemble mean")
    perc = collect_model_artifacts(config.per_model_dir)
    ensemble = compute_ensemble_mean(perc)
    OutputWriter.write_table(output_root / ENSEMBLE_FILE, ensemble, ["lat", "lon"])

    # ---------- 4 REGIONS ----------
    print_header("Regional join")
    if mask is None:
        mask = RegionalMask.from_config(config.masks, decimals=config.coordinate_decimals)

    regional = {}
    summaries = {}
    for scheme in mask.schemes:
        regional[scheme] = join_regions(ensemble, mask.table(scheme), scheme)
        summaries[scheme] = summarise_regions(regional[scheme])
        OutputWriter.write_table(output_root / f"regional_result_{scheme}.csv", regional[scheme])
        OutputWriter.write_table(output_root / f"regional_summary_{scheme}.csv", summaries[scheme])
        print_success(f"{scheme}: {len(regional[scheme])} cells in "
                      f"{regional[scheme]['region'].nunique()} regions")

    # Summary of skipped files
    if failed_files:
        log.warning("=" * 60)
        log.warning(f"{len(failed_files)} file(s) were skipped:")
        for path, reason in failed_files:
            log.warning(f"  {path}: {reason}")
        log.warning("=" * 60)

    return PipelineResult(
        models=list(statuses),
        ensemble=ensemble,
        regional=regional,
        summaries=summaries,
        failed_files=failed_files,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='fishmip-regions',
        description='Regional ensemble percentage change of FishMIP total consumer biomass',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s regions_config.toml
  %(prog)s regions_config.toml --input-root ./raw --output-root ./processed --n-jobs 4
    '''
    )
    parser.add_argument('config', type=Path, nargs='?', default=None,
                        help='Path to the TOML configuration file (defaults are used if omitted)')
    parser.add_argument('--input-root', type=Path, default=None,
                        help='Directory with the raw per-model series (overrides config)')
    parser.add_argument('--output-root', type=Path, default=None,
                        help='Directory for all intermediate and final tables (overrides config)')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='Worker processes for the per-model reduction (overrides config)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Show debug messages on the console')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.config is not None and not args.config.exists():
        parser.error(f"Configuration file not found: {args.config}")

    config = parse_config_file(str(args.config) if args.config is not None else None)
    if args.input_root is not None:
        config.input_root = args.input_root
    if args.output_root is not None:
        config.output_root = args.output_root
    if args.n_jobs is not None:
        config.n_jobs = args.n_jobs

    if not config.input_root.is_dir():
        parser.error(f"Input root is not a directory: {config.input_root}")

    setup_logging(config.output_root / "fishmip_regions.log", verbose=args.verbose)
    log.info(f"Configuration: {args.config}")
    log.info(f"Reading model series from {config.input_root}")
    log.info(f"Writing tables to {config.output_root}")

    result = run_pipeline(config)

    if not any(status.ok for status in result.models):
        print_error("No model could be processed")
        return 1

    print_success(f"Processed {sum(s.ok for s in result.models)} of {len(result.models)} model pairs")
    return 0


if __name__ == '__main__':
    sys.exit(main())
