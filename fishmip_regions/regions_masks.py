#!/usr/bin/env python
"""
Region mask module for the regional ensemble pipeline.

Loads the CCAMLR planning-domain and MEASO assessment-region tables, which
are rasterised onto the shared model grid elsewhere, and answers exact-key
lookups by grid cell. Nothing here interpolates: a cell that is not listed
in a scheme's table is simply not part of that scheme.
"""

import logging
import re
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import numpy as np
import pandas as pd

from .regions_config import MaskConfig

log = logging.getLogger("Masks")

CCAMLR = "ccamlr"
MEASO = "measo"

_PENINSULA = re.compile(r"peninsula", re.IGNORECASE)


def normalise_region_name(name: str) -> str:
    """
    Collapse peninsula sub-regions into their common reporting bucket.

    "Weddell Sea - Peninsula" -> "Weddell Sea"; names without a peninsula
    qualifier are returned stripped but otherwise unchanged.
    """
    name = str(name).strip()
    parts = [p.strip() for p in name.split(" - ")]
    if len(parts) > 1 and any(_PENINSULA.search(p) for p in parts):
        return parts[0]
    return name


def round_coords(df: pd.DataFrame, decimals: int, lon: str = "lon", lat: str = "lat") -> pd.DataFrame:
    """Round coordinates so equal lattice points compare equal."""
    df = df.copy()
    df[lon] = df[lon].astype(float).round(decimals)
    df[lat] = df[lat].astype(float).round(decimals)
    return df


def _key_str(value) -> str:
    # 3.0 and 3 are the same key
    if isinstance(value, (int, float, np.number)) and float(value).is_integer():
        return str(int(value))
    return str(value).strip()


def _apply_key_table(
    grid: pd.DataFrame,
    keys: pd.DataFrame,
    grid_key: str,
    key_column: str,
    name_column: str,
    scheme: str
) -> pd.DataFrame:
    """Replace numeric/identifier keys in grid by display names from keys."""
    keys = keys.dropna(subset=[key_column, name_column])
    lookup = dict(zip(keys[key_column].map(_key_str), keys[name_column].astype(str)))
    codes = grid[grid_key].map(_key_str, na_action="ignore")
    named = grid.assign(region=codes.map(lookup))
    unmatched = named['region'].isna() & grid[grid_key].notna()
    if unmatched.any():
        log.warning(f"{scheme}: {int(unmatched.sum())} cells have keys missing from the key table; left unassigned")
    return named


def load_scheme_table(
    mask_path: Path,
    region_column: str,
    scheme: str,
    *,
    keys_path: Optional[Path] = None,
    key_column: str = "id",
    name_column: str = "name",
    lon_column: str = "lon",
    lat_column: str = "lat",
    decimals: int = 4
) -> pd.DataFrame:
    """
    Load one scheme's grid table as (lon, lat, region).

    Args:
        mask_path: CSV with grid coordinates and a region key or name
        region_column: Column in mask_path holding the key or name
        scheme: Scheme label used in log messages
        keys_path: Optional CSV mapping key_column -> name_column
        decimals: Coordinate rounding applied before any join

    Returns:
        DataFrame with one row per (cell, region); unassigned cells dropped
    """
    grid = pd.read_csv(mask_path)
    missing = [c for c in (lon_column, lat_column, region_column) if c not in grid.columns]
    if missing:
        raise ValueError(f"{scheme} mask {mask_path} is missing column(s): {', '.join(missing)}")

    if keys_path:
        keys = pd.read_csv(keys_path)
        missing = [c for c in (key_column, name_column) if c not in keys.columns]
        if missing:
            raise ValueError(f"{scheme} key table {keys_path} is missing column(s): {', '.join(missing)}")
        grid = _apply_key_table(grid, keys, region_column, key_column, name_column, scheme)
    else:
        grid = grid.assign(region=grid[region_column].where(grid[region_column].notna()))

    table = grid[[lon_column, lat_column, 'region']].rename(columns={lon_column: 'lon', lat_column: 'lat'})
    table = table.dropna(subset=['region'])
    table['region'] = table['region'].map(normalise_region_name)
    table = round_coords(table, decimals)
    table = table.drop_duplicates().sort_values(['region', 'lat', 'lon'], kind='mergesort').reset_index(drop=True)

    log.info(f"{scheme}: {len(table)} cell assignments across {table['region'].nunique()} regions")
    return table


class RegionalMask:
    """Read-only mapping from grid cell to (scheme, region) assignments."""

    def __init__(self, tables: Dict[str, pd.DataFrame], decimals: int = 4):
        self.decimals = decimals
        self._tables = {scheme: t.reset_index(drop=True) for scheme, t in tables.items()}
        self._index: Dict[Tuple[float, float], Set[Tuple[str, str]]] = {}
        for scheme, table in self._tables.items():
            for lon, lat, region in table[['lon', 'lat', 'region']].itertuples(index=False):
                self._index.setdefault((lon, lat), set()).add((scheme, region))

    @classmethod
    def from_config(cls, masks: MaskConfig, decimals: int = 4) -> "RegionalMask":
        """Load whichever schemes the configuration provides."""
        tables = {}
        if masks.ccamlr_mask:
            tables[CCAMLR] = load_scheme_table(
                masks.ccamlr_mask, masks.ccamlr_region_column, CCAMLR,
                keys_path=masks.ccamlr_keys or None,
                key_column=masks.ccamlr_key_column,
                name_column=masks.ccamlr_name_column,
                lon_column=masks.lon_column,
                lat_column=masks.lat_column,
                decimals=decimals,
            )
        if masks.measo_mask:
            tables[MEASO] = load_scheme_table(
                masks.measo_mask, masks.measo_region_column, MEASO,
                keys_path=masks.measo_keys or None,
                key_column=masks.measo_region_column,
                name_column=masks.measo_name_column,
                lon_column=masks.lon_column,
                lat_column=masks.lat_column,
                decimals=decimals,
            )
        if not tables:
            log.warning("No region masks configured")
        return cls(tables, decimals=decimals)

    @property
    def schemes(self):
        return sorted(self._tables)

    def table(self, scheme: str) -> pd.DataFrame:
        """Assignment table (lon, lat, region) for one scheme."""
        if scheme not in self._tables:
            raise KeyError(f"Region scheme '{scheme}' is not loaded (available: {self.schemes})")
        return self._tables[scheme].copy()

    def lookup(self, lon: float, lat: float) -> Set[Tuple[str, str]]:
        """All (scheme, region) pairs assigned to a cell; empty if none."""
        key = (float(np.round(lon, self.decimals)), float(np.round(lat, self.decimals)))
        return set(self._index.get(key, ()))
