#!/usr/bin/env python
"""
Configuration parsing module for the regional ensemble pipeline.

This module handles parsing of the regions_config.toml file and provides
structured configuration objects. Every key has a default, so an empty
file (or no file at all) yields a usable configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple, Optional
import logging

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

log = logging.getLogger("Config")


# ---------- DEFAULTS ----------

# <model>_<forcing>[_<bias-adjustment>]_<scenario>_..., which also covers the
# ISIMIP3b layout, e.g. boats_gfdl-esm4_nobasd_ssp585_nat_default_tcb_global_annual_1950_2100.nc
DEFAULT_NAME_REGEX = (
    r"(?i)^(?P<model>[^_]+)_(?P<forcing>[^_]+)_(?:[^_]+_)?"
    r"(?P<scenario>historical|picontrol|ssp\d{3})(?=[_.])"
)
DEFAULT_FILE_PATTERNS = ("*.csv", "*.nc")


# ---------- DATA STRUCTURES ----------

@dataclass
class CoordinateOffset:
    """Fixed grid correction for a family of source models."""
    pattern: str  # glob matched against the model identifier
    lon: float = 0.0
    lat: float = 0.0


# Two source families whose native grid is shifted half a cell west of the
# shared lattice.
DEFAULT_COORDINATE_OFFSETS = [
    CoordinateOffset(pattern="dbpm*", lon=0.5),
    CoordinateOffset(pattern="zoomss*", lon=0.5),
]


@dataclass
class ColumnConfig:
    """Column names expected in the per-model series files."""
    time: str = "time"
    value: str = "tcb"
    lon: str = "lon"
    lat: str = "lat"
    scenario: str = "scenario"  # optional; overrides the file-name scenario


@dataclass
class MaskConfig:
    """Locations and column names of the pre-rasterised region tables."""
    ccamlr_mask: str = ""
    ccamlr_keys: str = ""
    ccamlr_region_column: str = "id"  # key column in the grid table
    ccamlr_key_column: str = "id"  # key column in the key table
    ccamlr_name_column: str = "name"
    measo_mask: str = ""
    measo_keys: str = ""  # optional identifier -> display name table
    measo_region_column: str = "region"
    measo_name_column: str = "name"
    lon_column: str = "lon"
    lat_column: str = "lat"


@dataclass
class PipelineConfig:
    """Complete configuration for a pipeline run."""
    input_root: Path = Path("data/raw")
    output_root: Path = Path("data/processed")

    reference_period: Tuple[int, int] = (2005, 2014)
    future_period: Tuple[int, int] = (2091, 2100)

    file_patterns: Tuple[str, ...] = DEFAULT_FILE_PATTERNS
    name_regex: str = DEFAULT_NAME_REGEX

    n_jobs: int = 1
    coordinate_decimals: int = 4

    columns: ColumnConfig = field(default_factory=ColumnConfig)
    masks: MaskConfig = field(default_factory=MaskConfig)
    coordinate_offsets: Optional[List[CoordinateOffset]] = None

    def __post_init__(self):
        """Initialize the offset table and coerce paths."""
        if self.coordinate_offsets is None:
            self.coordinate_offsets = list(DEFAULT_COORDINATE_OFFSETS)
        self.input_root = Path(self.input_root)
        self.output_root = Path(self.output_root)

    @property
    def per_model_dir(self) -> Path:
        """Directory holding the per-model intermediate artifacts."""
        return self.output_root / "per_model"


# ---------- PARSING FUNCTIONS ----------

def _period(value, default: Tuple[int, int], name: str) -> Tuple[int, int]:
    if value is None:
        return default
    if len(value) != 2:
        raise ValueError(f"Period '{name}' must be [first_year, last_year], got {value!r}")
    first, last = int(value[0]), int(value[1])
    if last < first:
        raise ValueError(f"Period '{name}' ends ({last}) before it starts ({first})")
    return first, last


def parse_toml_config(file_path: str) -> PipelineConfig:
    """
    Parse TOML configuration file.

    Args:
        file_path: Path to the .toml configuration file

    Returns:
        PipelineConfig object with all parsed configuration
    """
    with open(file_path, 'rb') as f:
        data = tomllib.load(f)

    config = PipelineConfig()

    # Parse file paths
    if 'paths' in data:
        config.input_root = Path(data['paths'].get('input_root', config.input_root))
        config.output_root = Path(data['paths'].get('output_root', config.output_root))

    # Parse mask tables
    masks = data.get('masks', {})
    for name in MaskConfig.__dataclass_fields__:
        if name in masks:
            setattr(config.masks, name, str(masks[name]))

    # Parse column names
    columns = data.get('columns', {})
    for name in ColumnConfig.__dataclass_fields__:
        if name in columns:
            setattr(config.columns, name, str(columns[name]))

    # Parse averaging windows
    periods = data.get('periods', {})
    config.reference_period = _period(periods.get('reference'), config.reference_period, 'reference')
    config.future_period = _period(periods.get('future'), config.future_period, 'future')

    # Parse source discovery
    sources = data.get('sources', {})
    if 'file_patterns' in sources:
        config.file_patterns = tuple(sources['file_patterns'])
    config.name_regex = sources.get('name_regex', config.name_regex)

    # Parse processing options
    processing = data.get('processing', {})
    config.n_jobs = int(processing.get('n_jobs', config.n_jobs))
    config.coordinate_decimals = int(processing.get('coordinate_decimals', config.coordinate_decimals))

    # Parse coordinate corrections; an explicit empty list disables the defaults
    if 'coordinate_offsets' in data:
        config.coordinate_offsets = [
            CoordinateOffset(
                pattern=off['pattern'],
                lon=float(off.get('lon', 0.0)),
                lat=float(off.get('lat', 0.0)),
            )
            for off in data['coordinate_offsets']
        ]

    log.info(f"Input root: {config.input_root}")
    log.info(f"Output root: {config.output_root}")
    log.info(f"Reference period: {config.reference_period[0]}-{config.reference_period[1]}")
    log.info(f"Future period: {config.future_period[0]}-{config.future_period[1]}")
    log.info(f"Parsed {len(config.coordinate_offsets)} coordinate offsets from TOML")

    return config


def parse_config_file(file_path: Optional[str] = None) -> PipelineConfig:
    """
    Parse configuration file (TOML format).

    Args:
        file_path: Path to the .toml configuration file, or None for defaults

    Returns:
        PipelineConfig object with all parsed configuration
    """
    if file_path is None:
        log.info("No configuration file given, using defaults")
        return PipelineConfig()
    return parse_toml_config(file_path)
