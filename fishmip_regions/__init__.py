"""Regional ensemble analysis of FishMIP biomass projections."""

from .regions_config import PipelineConfig, CoordinateOffset, parse_config_file
from .regions_io import SchemaMismatchError, collect_model_artifacts, discover_source_files
from .regions_masks import RegionalMask, normalise_region_name
from .regions_processor import (
    compute_period_means,
    compute_percentage_change,
    compute_ensemble_mean,
    join_regions,
    summarise_regions,
)
from .regions import run_pipeline

__all__ = [
    'PipelineConfig',
    'CoordinateOffset',
    'parse_config_file',
    'SchemaMismatchError',
    'collect_model_artifacts',
    'discover_source_files',
    'RegionalMask',
    'normalise_region_name',
    'compute_period_means',
    'compute_percentage_change',
    'compute_ensemble_mean',
    'join_regions',
    'summarise_regions',
    'run_pipeline',
]
