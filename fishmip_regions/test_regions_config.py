"""Tests for TOML configuration parsing."""

from pathlib import Path
from typing import List, Optional, get_type_hints

import pytest

from fishmip_regions.regions_config import (
    DEFAULT_COORDINATE_OFFSETS,
    DEFAULT_NAME_REGEX,
    CoordinateOffset,
    PipelineConfig,
    parse_config_file,
)


def write_config(tmp_path, text):
    path = tmp_path / "regions_config.toml"
    path.write_text(text)
    return str(path)


def test_defaults_without_file():
    config = parse_config_file(None)
    assert config.reference_period == (2005, 2014)
    assert config.future_period == (2091, 2100)
    assert config.columns.value == "tcb"
    assert [o.pattern for o in config.coordinate_offsets] == [o.pattern for o in DEFAULT_COORDINATE_OFFSETS]
    assert config.per_model_dir == Path("data/processed") / "per_model"


def test_toml_overrides(tmp_path):
    config = parse_config_file(write_config(tmp_path, '''
[paths]
input_root = "in"
output_root = "out"

[masks]
ccamlr_mask = "ccamlr.csv"
ccamlr_region_column = "domain_id"
measo_region_column = "measo_id"

[columns]
value = "total_consumer_biomass"

[periods]
reference = [1995, 2004]

[processing]
n_jobs = 4

[[coordinate_offsets]]
pattern = "ecotroph*"
lon = 0.5
lat = -0.5
'''))

    assert config.input_root == Path("in")
    assert config.per_model_dir == Path("out") / "per_model"
    assert config.masks.ccamlr_mask == "ccamlr.csv"
    assert config.masks.ccamlr_region_column == "domain_id"
    assert config.masks.ccamlr_key_column == "id"
    assert config.masks.measo_region_column == "measo_id"
    assert config.columns.value == "total_consumer_biomass"
    assert config.columns.time == "time"
    assert config.reference_period == (1995, 2004)
    assert config.future_period == (2091, 2100)
    assert config.n_jobs == 4
    assert len(config.coordinate_offsets) == 1
    assert (config.coordinate_offsets[0].lon, config.coordinate_offsets[0].lat) == (0.5, -0.5)


def test_empty_offset_table_disables_corrections(tmp_path):
    config = parse_config_file(write_config(tmp_path, "coordinate_offsets = []\n"))
    assert config.coordinate_offsets == []


def test_reversed_period_is_rejected(tmp_path):
    with pytest.raises(ValueError, match="before it starts"):
        parse_config_file(write_config(tmp_path, "[periods]\nfuture = [2100, 2091]\n"))


def test_default_offsets_are_not_shared_between_configs():
    first = PipelineConfig()
    first.coordinate_offsets.clear()
    assert len(PipelineConfig().coordinate_offsets) == len(DEFAULT_COORDINATE_OFFSETS)


def test_offset_table_is_optional():
    assert get_type_hints(PipelineConfig)["coordinate_offsets"] == Optional[List[CoordinateOffset]]
    assert PipelineConfig(coordinate_offsets=None).coordinate_offsets == DEFAULT_COORDINATE_OFFSETS


def test_example_config_matches_defaults():
    example = Path(__file__).resolve().parent.parent / "regions_config.toml"
    config = parse_config_file(str(example))
    assert config.name_regex == DEFAULT_NAME_REGEX
    assert config.masks.ccamlr_region_column == "id"
