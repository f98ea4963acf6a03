#!/usr/bin/env python
"""
Processing module for the regional ensemble pipeline.

Reduces per-model biomass series to decade means, converts them to
percentage change against the reference decade, averages the change
across the model ensemble at each grid cell and joins the result to a
region scheme.

Missing values propagate as NaN through every stage and are never
replaced by zero: a zero percentage change is a real result.
"""

import fnmatch
import logging
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd

from .regions_config import ColumnConfig, CoordinateOffset, PipelineConfig
from .regions_io import SchemaMismatchError, SourceFile, read_model_series

log = logging.getLogger("Processor")

REFERENCE = "reference"
FUTURE_PREFIX = "mean00_"
PERC_PREFIX = "perc_change_"
MEAN_PREFIX = "ensemble_mean_"
COUNT_PREFIX = "n_models_"
SD_PREFIX = "region_sd_"

CELL = ["lon", "lat"]
PERIOD_MEAN_COLUMNS = ["lon", "lat", "period", "mean_biomass"]


def scenarios_from_columns(df: pd.DataFrame, prefix: str) -> List[str]:
    """Scenario names encoded as '<prefix><scenario>' column names, sorted."""
    return sorted(c[len(prefix):] for c in df.columns if isinstance(c, str) and c.startswith(prefix))


# ---------- PER-MODEL LOADER ----------

def extract_year(times: pd.Series) -> pd.Series:
    """
    Calendar year of each timestamp as float (NaN if unparseable).

    Numeric columns are read as (possibly fractional) years. Datetime
    columns, strings and cftime objects are all accepted.
    """
    if pd.api.types.is_numeric_dtype(times):
        return np.floor(times.astype(float))
    if pd.api.types.is_datetime64_any_dtype(times):
        return times.dt.year.astype(float)

    first = times.dropna().head(1)
    if len(first) and hasattr(first.iloc[0], "year") and not isinstance(first.iloc[0], str):
        # cftime dates from non-standard model calendars
        return times.map(lambda t: float(t.year) if hasattr(t, "year") else np.nan)

    parsed = pd.to_datetime(times, errors="coerce")
    return parsed.dt.year.astype(float)


def resolve_offset(model: str, offsets: Sequence[CoordinateOffset]) -> Tuple[float, float]:
    """First matching (lon, lat) correction for a model family, else (0, 0)."""
    for offset in offsets:
        if fnmatch.fnmatch(model.lower(), offset.pattern.lower()):
            return offset.lon, offset.lat
    return 0.0, 0.0


def label_periods(
    df: pd.DataFrame,
    scenario: str,
    columns: ColumnConfig,
    reference_period: Tuple[int, int],
    future_period: Tuple[int, int]
) -> pd.DataFrame:
    """
    Keep rows inside the averaging windows and tag them with their period.

    Args:
        df: Raw series for one file
        scenario: Scenario from the file name; a scenario column in df
            takes precedence row by row
        columns: Column names in df
        reference_period: Inclusive (first, last) reference years
        future_period: Inclusive (first, last) future years

    Returns:
        DataFrame with lon, lat, period and value columns
    """
    years = extract_year(df[columns.time])
    in_reference = years.between(*reference_period)
    in_future = years.between(*future_period) & ~in_reference
    keep = in_reference | in_future

    if columns.scenario in df.columns:
        scenarios = df[columns.scenario].astype("string").str.strip().str.lower().fillna(scenario)
    else:
        scenarios = pd.Series(scenario, index=df.index, dtype="string")

    period = (FUTURE_PREFIX + scenarios).where(~in_reference, REFERENCE)

    labelled = pd.DataFrame({
        "lon": pd.to_numeric(df[columns.lon], errors="coerce"),
        "lat": pd.to_numeric(df[columns.lat], errors="coerce"),
        "period": period.astype(object),
        "value": pd.to_numeric(df[columns.value], errors="coerce"),
    })[keep.to_numpy()]

    log.debug(f"Kept {len(labelled)} of {len(df)} rows inside the averaging windows")
    return labelled.reset_index(drop=True)


def compute_period_means(
    labelled: pd.DataFrame,
    model: str,
    offsets: Sequence[CoordinateOffset] = (),
    decimals: int = 4
) -> pd.DataFrame:
    """
    Mean biomass per grid cell and period tag.

    All-missing groups produce no row. The model family's coordinate
    correction is applied before grouping so the output sits on the
    shared lattice.

    Returns:
        DataFrame with lon, lat, period and mean_biomass columns
    """
    if labelled.empty:
        return pd.DataFrame(columns=PERIOD_MEAN_COLUMNS)

    dlon, dlat = resolve_offset(model, offsets)
    lon = labelled["lon"].astype(float)
    lat = labelled["lat"].astype(float)
    if dlon or dlat:
        log.info(f"{model}: shifting coordinates by ({dlon:+g} lon, {dlat:+g} lat)")
        lon = lon + dlon
        lat = lat + dlat

    shifted = labelled.assign(lon=lon.round(decimals), lat=lat.round(decimals))
    means = (
        shifted.groupby(["lon", "lat", "period"], sort=True)["value"]
        .mean()
        .dropna()
        .rename("mean_biomass")
        .reset_index()
    )
    return means[PERIOD_MEAN_COLUMNS]


def reduce_model_pair(
    sources: Sequence[SourceFile],
    config: PipelineConfig
) -> Tuple[pd.DataFrame, List[Tuple[str, str]]]:
    """
    Reduce every file of one (model, forcing) pair to period means.

    Files that cannot be read or lack required columns are skipped and
    reported; the remaining files of the pair are still used.

    Returns:
        Tuple of (period_means, failed_files)
        - period_means: None if no file of the pair could be read
        - failed_files: list of (file_path, error_message)
    """
    columns = config.columns
    required = [columns.time, columns.value, columns.lon, columns.lat]
    model = sources[0].model

    labelled = []
    failed = []
    for source in sources:
        try:
            df = read_model_series(source.path, required, value_var=columns.value)
        except (SchemaMismatchError, OSError, ValueError) as e:
            error_msg = f"{type(e).__name__}: {e}"
            failed.append((str(source.path), error_msg))
            log.warning(f"SKIPPED {source.path.name}")
            log.warning(f"  Error: {error_msg}")
            continue
        labelled.append(label_periods(
            df, source.scenario, columns, config.reference_period, config.future_period
        ))

    if not labelled:
        return None, failed

    combined = pd.concat(labelled, ignore_index=True)
    period_means = compute_period_means(
        combined, model, config.coordinate_offsets, config.coordinate_decimals
    )
    if period_means.empty:
        log.warning(f"{model}/{sources[0].forcing}: no data inside the averaging windows")
    return period_means, failed


# ---------- PERCENTAGE CHANGE ----------

def compute_percentage_change(period_means: pd.DataFrame) -> pd.DataFrame:
    """
    Percentage change of each future period against the reference.

    (future - reference) / reference * 100, NaN where the reference is
    zero or missing or the future mean is missing.

    Returns:
        DataFrame with lon, lat and one perc_change_<scenario> column per
        future period present
    """
    if period_means.empty:
        return pd.DataFrame(columns=CELL)

    wide = period_means.set_index(["lon", "lat", "period"])["mean_biomass"].unstack("period")
    if REFERENCE in wide.columns:
        reference = wide[REFERENCE]
    else:
        reference = pd.Series(np.nan, index=wide.index)

    out = pd.DataFrame(index=wide.index)
    for col in sorted(c for c in wide.columns if c.startswith(FUTURE_PREFIX)):
        scenario = col[len(FUTURE_PREFIX):]
        out[f"{PERC_PREFIX}{scenario}"] = (wide[col] - reference) / reference.where(reference != 0) * 100

    out.columns.name = None
    return out.reset_index()


# ---------- ENSEMBLE AGGREGATION ----------

def compute_ensemble_mean(perc: pd.DataFrame) -> pd.DataFrame:
    """
    Ensemble-mean percentage change per grid cell.

    Missing contributions are excluded, not zero-filled. Rows are reduced
    in (source, lat, lon) order so the sums are accumulated identically on
    every run. No spread statistic is computed here.

    Returns:
        DataFrame with lon, lat and, per scenario, ensemble_mean_<scenario>
        and n_models_<scenario>
    """
    scenarios = scenarios_from_columns(perc, PERC_PREFIX)
    if perc.empty or not scenarios:
        return pd.DataFrame(columns=CELL + [f"{p}{s}" for s in scenarios for p in (MEAN_PREFIX, COUNT_PREFIX)])

    value_cols = [f"{PERC_PREFIX}{s}" for s in scenarios]
    ordered = perc.assign(lon=perc["lon"].astype(float), lat=perc["lat"].astype(float))
    ordered[value_cols] = ordered[value_cols].astype(float)
    if "source" in ordered.columns:
        ordered = ordered.sort_values(["source", "lat", "lon"], kind="mergesort")

    grouped = ordered.groupby(CELL, sort=True)[value_cols]
    means = grouped.mean()
    counts = grouped.count()

    out = pd.DataFrame(index=means.index)
    for scenario, col in zip(scenarios, value_cols):
        out[f"{MEAN_PREFIX}{scenario}"] = means[col]
        out[f"{COUNT_PREFIX}{scenario}"] = counts[col].astype(int)

    log.info(f"Ensemble mean over {ordered['source'].nunique() if 'source' in ordered else 1} "
             f"model(s) at {len(out)} cells")
    return out.reset_index()


# ---------- REGIONAL JOIN ----------

def join_regions(ensemble: pd.DataFrame, assignments: pd.DataFrame, scheme: str) -> pd.DataFrame:
    """
    Attach one region scheme to the ensemble cells.

    Cells without an assignment in the scheme are dropped. For each
    scenario, region_sd_<scenario> is the sample standard deviation of the
    per-cell ensemble means inside the region (spatial spread of the
    ensemble mean, not spread between models), NaN for regions with fewer
    than two cells holding a value.

    Returns:
        DataFrame with scheme, region, lon, lat and the per-scenario columns
    """
    scenarios = scenarios_from_columns(ensemble, MEAN_PREFIX)

    cells = ensemble.assign(lon=ensemble["lon"].astype(float), lat=ensemble["lat"].astype(float))
    regions = assignments[["lon", "lat", "region"]].astype({"lon": float, "lat": float})

    joined = cells.merge(regions, on=CELL, how="left")
    unassigned = joined["region"].isna()
    if unassigned.any():
        log.info(f"{scheme}: dropping {int(unassigned.sum())} cells outside every region")
    joined = joined[~unassigned].copy()
    joined.insert(0, "scheme", scheme)

    ordered_cols = ["scheme", "region", "lon", "lat"]
    for scenario in scenarios:
        mean_col = f"{MEAN_PREFIX}{scenario}"
        joined[f"{SD_PREFIX}{scenario}"] = joined.groupby("region")[mean_col].transform("std")
        ordered_cols += [mean_col, f"{SD_PREFIX}{scenario}"]
        if f"{COUNT_PREFIX}{scenario}" in joined.columns:
            ordered_cols.append(f"{COUNT_PREFIX}{scenario}")

    joined = joined[ordered_cols].sort_values(["region", "lat", "lon"], kind="mergesort")
    log.info(f"{scheme}: {len(joined)} cells in {joined['region'].nunique()} regions")
    return joined.reset_index(drop=True)


def summarise_regions(regional: pd.DataFrame) -> pd.DataFrame:
    """
    Distribution of the per-cell ensemble mean within each region.

    One row per (scheme, region, scenario) with the statistics a boxplot
    needs; 'sd' is the same within-region spread as region_sd_<scenario>.
    """
    columns = ["scheme", "region", "scenario", "n_cells", "mean", "sd",
               "min", "q25", "median", "q75", "max"]
    frames = []
    for scenario in scenarios_from_columns(regional, MEAN_PREFIX):
        if regional.empty:
            continue
        stats = regional.groupby(["scheme", "region"], sort=True)[f"{MEAN_PREFIX}{scenario}"].agg(
            n_cells="count",
            mean="mean",
            sd="std",
            min="min",
            q25=lambda x: x.quantile(0.25),
            median="median",
            q75=lambda x: x.quantile(0.75),
            max="max",
        ).reset_index()
        stats.insert(2, "scenario", scenario)
        frames.append(stats)

    if not frames:
        return pd.DataFrame(columns=columns)
    return pd.concat(frames, ignore_index=True)[columns].sort_values(
        ["scheme", "region", "scenario"], kind="mergesort"
    ).reset_index(drop=True)
