"""Pytest configuration and shared fixtures."""

from pathlib import Path

import matplotlib
import numpy as np
import pandas as pd
import pytest

matplotlib.use("Agg")

from allometry_data import Observation  # noqa: E402


def make_obs(response, x, species="A", region="0_0"):
    return Observation(response=float(response), predictors=(float(x),),
                       species=species, region=region)


@pytest.fixture
def linear_dataset():
    """Four trees in two species with response = 2 * predictor."""
    return (
        make_obs(2.0, 1.0, "A"),
        make_obs(4.0, 2.0, "A"),
        make_obs(6.0, 3.0, "B"),
        make_obs(8.0, 4.0, "B"),
    )


@pytest.fixture
def tree_frame() -> pd.DataFrame:
    """Synthetic Tallo-style table: 3 species over 2 one-degree cells."""
    rng = np.random.default_rng(7)
    rows = []
    for sp_ix, species in enumerate(["Pinus sylvestris", "Quercus robur", "Fagus sylvatica"]):
        for lon, lat in [(-3.8, 40.3), (2.1, 41.9)]:
            for _ in range(12):
                height = float(rng.uniform(3.0, 30.0))
                log_crown = -1.2 + 0.1 * sp_ix + 0.7 * np.log(height) + rng.normal(0, 0.1)
                rows.append({
                    "species": species,
                    "longitude": lon + rng.uniform(-0.2, 0.2),
                    "latitude": lat + rng.uniform(-0.2, 0.2),
                    "height_m": height,
                    "crown_radius_m": float(np.exp(log_crown)),
                    "stem_diameter_cm": float(rng.uniform(5.0, 60.0)),
                })
    return pd.DataFrame(rows)


@pytest.fixture
def tree_csv(tmp_path: Path, tree_frame: pd.DataFrame) -> Path:
    path = tmp_path / "trees.csv"
    tree_frame.to_csv(path, index=False)
    return path
