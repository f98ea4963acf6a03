#!/usr/bin/env python
"""
I/O module for the regional ensemble pipeline.

This module handles:
- Discovery of per-model biomass series files and their identifiers
- Reading CSV and NetCDF series with a required-column check
- Writing and collecting the per-model and final tabular artifacts
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd
import xarray as xr

log = logging.getLogger("IO")

PERIOD_MEANS_SUFFIX = "_bio_period_means.csv"
PERC_CHANGE_SUFFIX = "_perc_bio_change_data_map.csv"


class SchemaMismatchError(ValueError):
    """A source file lacks one of the columns the pipeline needs."""

    def __init__(self, path, missing: Sequence[str]):
        self.path = Path(path)
        self.missing = list(missing)
        super().__init__(f"{self.path.name} is missing required column(s): {', '.join(self.missing)}")


@dataclass
class SourceFile:
    """One per-model series file and the identifiers parsed from its name."""
    path: Path
    model: str
    forcing: str
    scenario: str

    @property
    def pair(self) -> Tuple[str, str]:
        return self.model, self.forcing


# ---------- DISCOVERY ----------

def discover_source_files(
    input_root: Path,
    file_patterns: Sequence[str],
    name_regex: str
) -> Tuple[Dict[Tuple[str, str], List[SourceFile]], List[Tuple[str, str]]]:
    """
    Find all series files below input_root and group them by model pair.

    Args:
        input_root: Directory containing the raw per-model files
        file_patterns: Glob patterns to search for
        name_regex: Regular expression with 'model', 'forcing' and
            'scenario' named groups, matched against the file name

    Returns:
        Tuple of (sources, skipped)
        - sources: dict mapping (model, forcing) to its files, sorted by path
        - skipped: list of (file_path, reason) for unrecognised file names
          and for files sharing a scenario within one model pair
    """
    input_root = Path(input_root)
    pattern = re.compile(name_regex)

    paths = set()
    for glob_pattern in file_patterns:
        paths.update(p for p in input_root.glob(glob_pattern) if p.is_file())

    sources: Dict[Tuple[str, str], List[SourceFile]] = {}
    skipped = []
    for path in sorted(paths):
        match = pattern.match(path.name)
        if match is None:
            log.warning(f"SKIPPED unrecognised file name: {path.name}")
            skipped.append((str(path), "file name does not match naming pattern"))
            continue
        source = SourceFile(
            path=path,
            model=match.group('model').lower(),
            forcing=match.group('forcing').lower(),
            scenario=match.group('scenario').lower(),
        )
        sources.setdefault(source.pair, []).append(source)

    # One file per (model, forcing, scenario): files sharing a scenario would
    # be averaged into the same future period, so none of them is used
    for pair in sorted(sources):
        files = sources[pair]
        counts = Counter(s.scenario for s in files)
        for source in files:
            if counts[source.scenario] > 1:
                log.warning(f"SKIPPED {source.path.name}: {counts[source.scenario]} files of "
                            f"{pair[0]}/{pair[1]} resolve to scenario '{source.scenario}'")
                skipped.append((str(source.path),
                                f"duplicate scenario '{source.scenario}' for {pair[0]}/{pair[1]}"))
        sources[pair] = [s for s in files if counts[s.scenario] == 1]
        if not sources[pair]:
            del sources[pair]

    if not sources:
        log.warning(f"No model series files found in {input_root}")
    for (model, forcing), files in sources.items():
        log.info(f"{model}/{forcing}: {len(files)} file(s)")

    return sources, skipped


# ---------- SERIES READING ----------

def read_model_series(path: Path, required: Sequence[str], value_var: Optional[str] = None) -> pd.DataFrame:
    """
    Read one per-model series file into a flat table.

    Extra columns are kept; callers select what they need.

    Args:
        path: CSV or NetCDF file
        required: Column names that must be present
        value_var: Variable to extract when reading NetCDF

    Returns:
        DataFrame with at least the required columns

    Raises:
        SchemaMismatchError: if any required column is absent
    """
    path = Path(path)
    if path.suffix == ".nc":
        with xr.open_dataset(path) as ds:
            if value_var is not None and value_var in ds:
                df = ds[value_var].to_dataframe().reset_index()
            else:
                df = ds.to_dataframe().reset_index()
    else:
        df = pd.read_csv(path)

    missing = [col for col in required if col not in df.columns]
    if missing:
        raise SchemaMismatchError(path, missing)

    log.debug(f"Read {len(df)} rows from {path.name}")
    return df


# ---------- ARTIFACTS ----------

def artifact_stem(model: str, forcing: str) -> str:
    return f"{model}_{forcing}"


class OutputWriter:
    """Writes pipeline tables with a stable row order and full precision."""

    @staticmethod
    def write_table(filename: Path, df: pd.DataFrame, sort_by: Optional[List[str]] = None) -> Path:
        """
        Write a table as CSV, overwriting any previous version.

        Args:
            filename: Output path; parent directories are created
            df: Table to write
            sort_by: Columns defining the row order

        Returns:
            The path written
        """
        filename = Path(filename)
        filename.parent.mkdir(parents=True, exist_ok=True)
        if sort_by:
            keys = [c for c in sort_by if c in df.columns]
            if keys:
                df = df.sort_values(keys, kind="mergesort")
        df.to_csv(filename, index=False)
        log.info(f"Wrote {len(df)} rows to {filename}")
        return filename

    @staticmethod
    def write_period_means(per_model_dir: Path, model: str, forcing: str, df: pd.DataFrame) -> Path:
        filename = Path(per_model_dir) / f"{artifact_stem(model, forcing)}{PERIOD_MEANS_SUFFIX}"
        return OutputWriter.write_table(filename, df, ["period", "lat", "lon"])

    @staticmethod
    def write_percentage_change(per_model_dir: Path, model: str, forcing: str, df: pd.DataFrame) -> Path:
        filename = Path(per_model_dir) / f"{artifact_stem(model, forcing)}{PERC_CHANGE_SUFFIX}"
        return OutputWriter.write_table(filename, df, ["lat", "lon"])


def collect_model_artifacts(per_model_dir: Path, pattern: str = f"*{PERC_CHANGE_SUFFIX}") -> pd.DataFrame:
    """
    Gather every per-model percentage-change artifact into one table.

    Artifacts are read in file-name order so the ensemble reduction sees
    rows in a fixed order on every run. A 'source' column records which
    artifact each row came from.

    Args:
        per_model_dir: Directory holding the per-model artifacts
        pattern: Glob pattern for the artifacts

    Returns:
        Concatenated DataFrame; empty (with lon/lat columns) if none exist
    """
    per_model_dir = Path(per_model_dir)
    paths = sorted(per_model_dir.glob(pattern))
    if not paths:
        log.warning(f"No percentage-change artifacts found in {per_model_dir}")
        return pd.DataFrame(columns=["source", "lon", "lat"])

    frames = []
    for path in paths:
        df = pd.read_csv(path)
        if df.empty:
            log.info(f"{path.name} is empty, no contribution")
            continue
        df.insert(0, "source", path.name.replace(PERC_CHANGE_SUFFIX, ""))
        frames.append(df)
        log.info(f"Collected {len(df)} cells from {path.name}")

    if not frames:
        return pd.DataFrame(columns=["source", "lon", "lat"])
    return pd.concat(frames, ignore_index=True, sort=False)
