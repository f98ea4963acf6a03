"""Shared fixtures: small FishMIP-style series and region tables on disk."""

import pandas as pd
import pytest

from fishmip_regions.regions_config import MaskConfig, PipelineConfig


def decade_rows(lon, lat, first_year, value, n_years=10):
    """Yearly mid-year rows for one cell with a constant biomass value."""
    return [
        {"time": f"{year}-07-01", "lon": lon, "lat": lat, "tcb": value}
        for year in range(first_year, first_year + n_years)
    ]


@pytest.fixture
def raw_dir(tmp_path):
    path = tmp_path / "raw"
    path.mkdir()
    return path


@pytest.fixture
def write_series(raw_dir):
    """Factory writing a per-model CSV into the raw directory."""
    def _write(name, rows, columns=None):
        df = pd.DataFrame(rows, columns=columns)
        path = raw_dir / name
        df.to_csv(path, index=False)
        return path
    return _write


@pytest.fixture
def mask_config(tmp_path):
    """CCAMLR grid + key table and a MEASO grid covering three cells."""
    mask_dir = tmp_path / "masks"
    mask_dir.mkdir()

    pd.DataFrame({
        "lon": [0.0, 1.0, 2.0],
        "lat": [-65.0, -65.0, -65.0],
        "id": [1, 1, 2],
    }).to_csv(mask_dir / "ccamlr_grid.csv", index=False)
    pd.DataFrame({
        "id": [1, 2],
        "name": ["Ross Sea", "Weddell Sea - Peninsula"],
    }).to_csv(mask_dir / "ccamlr_keys.csv", index=False)
    pd.DataFrame({
        "lon": [0.0, 1.0, 5.0],
        "lat": [-65.0, -65.0, -70.0],
        "region": ["Central Pacific", "Central Pacific", "East Indian"],
    }).to_csv(mask_dir / "measo_grid.csv", index=False)

    return MaskConfig(
        ccamlr_mask=str(mask_dir / "ccamlr_grid.csv"),
        ccamlr_keys=str(mask_dir / "ccamlr_keys.csv"),
        measo_mask=str(mask_dir / "measo_grid.csv"),
    )


@pytest.fixture
def pipeline_config(tmp_path, raw_dir, mask_config):
    return PipelineConfig(
        input_root=raw_dir,
        output_root=tmp_path / "processed",
        masks=mask_config,
        coordinate_offsets=[],
    )


@pytest.fixture
def two_model_ensemble(write_series):
    """
    Two models at three cells.

    (0, -65): reference 100, futures 120 and 80 -> ensemble 0 %
    (1, -65): reference 100, futures 110 and 110 -> ensemble 10 %
    (5, -70): reference 50, futures 100 and 100 -> ensemble 100 %, no CCAMLR region
    """
    for model, fut0 in (("apecosm", 120.0), ("boats", 80.0)):
        write_series(
            f"{model}_gfdl-esm4_historical_tcb_annual.csv",
            decade_rows(0.0, -65.0, 2005, 100.0)
            + decade_rows(1.0, -65.0, 2005, 100.0)
            + decade_rows(5.0, -70.0, 2005, 50.0),
        )
        write_series(
            f"{model}_gfdl-esm4_ssp585_tcb_annual.csv",
            decade_rows(0.0, -65.0, 2091, fut0)
            + decade_rows(1.0, -65.0, 2091, 110.0)
            + decade_rows(5.0, -70.0, 2091, 100.0),
        )
