"""Tests for series discovery, reading and artifact collection."""

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from fishmip_regions.regions_config import DEFAULT_NAME_REGEX
from fishmip_regions.regions_io import (
    OutputWriter,
    SchemaMismatchError,
    collect_model_artifacts,
    discover_source_files,
    read_model_series,
)

REQUIRED = ["time", "tcb", "lon", "lat"]


def test_discover_groups_files_by_model_pair(raw_dir, write_series):
    write_series("apecosm_gfdl-esm4_historical_tcb.csv", [])
    write_series("apecosm_gfdl-esm4_ssp585_tcb.csv", [])
    write_series("BOATS_IPSL-CM6A-LR_ssp126_tcb.csv", [])
    write_series("notes.csv", [])

    sources, skipped = discover_source_files(raw_dir, ["*.csv"], DEFAULT_NAME_REGEX)

    assert sorted(sources) == [("apecosm", "gfdl-esm4"), ("boats", "ipsl-cm6a-lr")]
    assert [s.scenario for s in sources[("apecosm", "gfdl-esm4")]] == ["historical", "ssp585"]
    assert len(skipped) == 1 and skipped[0][0].endswith("notes.csv")


def test_missing_column_raises_schema_mismatch(write_series):
    path = write_series("apecosm_gfdl-esm4_ssp585.csv", [{"time": "2095-01-01", "lon": 0.0, "lat": -65.0}])
    with pytest.raises(SchemaMismatchError) as excinfo:
        read_model_series(path, REQUIRED)
    assert excinfo.value.missing == ["tcb"]


def test_extra_columns_are_kept(write_series):
    path = write_series("apecosm_gfdl-esm4_ssp585.csv", [
        {"time": "2095-01-01", "lon": 0.0, "lat": -65.0, "tcb": 1.5, "area_m2": 1e9},
    ])
    df = read_model_series(path, REQUIRED)
    assert df["tcb"].tolist() == [1.5]
    assert "area_m2" in df.columns


def test_read_netcdf_series(raw_dir):
    ds = xr.Dataset(
        {"tcb": (("time", "lat", "lon"), np.arange(4.0).reshape(2, 1, 2))},
        coords={
            "time": pd.to_datetime(["2005-07-01", "2095-07-01"]),
            "lat": [-65.0],
            "lon": [0.0, 1.0],
        },
    )
    path = raw_dir / "apecosm_gfdl-esm4_ssp585_tcb.nc"
    ds.to_netcdf(path)

    df = read_model_series(path, REQUIRED, value_var="tcb")
    assert len(df) == 4
    assert sorted(df["tcb"].tolist()) == [0.0, 1.0, 2.0, 3.0]


def test_collect_reads_artifacts_in_name_order(tmp_path):
    per_model = tmp_path / "artifacts"
    for name, value in (("boats_gfdl-esm4", 2.0), ("apecosm_gfdl-esm4", 1.0)):
        OutputWriter.write_percentage_change(per_model, *name.split("_"), pd.DataFrame({
            "lon": [0.0], "lat": [-65.0], "perc_change_ssp585": [value],
        }))
    OutputWriter.write_percentage_change(per_model, "dbpm", "gfdl-esm4", pd.DataFrame(columns=["lon", "lat"]))

    collected = collect_model_artifacts(per_model)
    assert collected["source"].tolist() == ["apecosm_gfdl-esm4", "boats_gfdl-esm4"]
    assert collected["perc_change_ssp585"].tolist() == [1.0, 2.0]


def test_collect_without_artifacts(tmp_path):
    collected = collect_model_artifacts(tmp_path / "per_model")
    assert collected.empty
    assert {"lon", "lat"} <= set(collected.columns)


def test_discover_isimip3b_names(raw_dir, write_series):
    stem = "boats_gfdl-esm4_nobasd_{}_nat_default_tcb_global_annual_{}.csv"
    write_series(stem.format("historical", "1950_2014"), [])
    write_series(stem.format("ssp126", "2015_2100"), [])
    write_series(stem.format("ssp585", "2015_2100"), [])
    write_series("APECOSM_IPSL-CM6A-LR_nobasd_picontrol_nat_default_tcb_global_annual_1950_2100.csv", [])

    sources, skipped = discover_source_files(raw_dir, ["*.csv"], DEFAULT_NAME_REGEX)

    assert skipped == []
    assert [s.scenario for s in sources[("boats", "gfdl-esm4")]] == ["historical", "ssp126", "ssp585"]
    assert [s.scenario for s in sources[("apecosm", "ipsl-cm6a-lr")]] == ["picontrol"]


def test_files_sharing_a_scenario_are_skipped(raw_dir, write_series):
    write_series("boats_gfdl-esm4_nobasd_historical_tcb.csv", [])
    write_series("boats_gfdl-esm4_nobasd_ssp126_tcb.csv", [])
    write_series("boats_gfdl-esm4_nobasd_ssp585_tcb.csv", [])
    write_series("apecosm_gfdl-esm4_ssp585_tcb.csv", [])

    # a pattern that reads the bias-adjustment field as the scenario
    third_field = r"^(?P<model>[^_]+)_(?P<forcing>[^_]+)_(?P<scenario>[^_.]+)"
    sources, skipped = discover_source_files(raw_dir, ["*.csv"], third_field)

    assert sorted(sources) == [("apecosm", "gfdl-esm4")]
    assert len(skipped) == 3
    assert all("duplicate scenario 'nobasd'" in reason for _, reason in skipped)


def test_duplicate_scenario_keeps_the_rest_of_the_pair(raw_dir, write_series):
    write_series("boats_gfdl-esm4_historical_tcb.csv", [])
    write_series("boats_gfdl-esm4_ssp585_tcb_annual.csv", [])
    write_series("boats_gfdl-esm4_ssp585_tcb_monthly.csv", [])

    sources, skipped = discover_source_files(raw_dir, ["*.csv"], DEFAULT_NAME_REGEX)

    assert [s.scenario for s in sources[("boats", "gfdl-esm4")]] == ["historical"]
    assert sorted(p.rsplit("_", 1)[-1] for p, _ in skipped) == ["annual.csv", "monthly.csv"]
