"""
Tree allometry data: loading, derived log columns and typed observations.

The layout follows the Tallo database (Jucker et al. 2022): one row per tree
with species, coordinates, height, crown radius and stem diameter.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("species", "longitude", "latitude", "height_m", "crown_radius_m")


class DataError(Exception):
    """Raised when the allometry table is unusable."""


@dataclass(frozen=True)
class Observation:
    response: float
    predictors: tuple[float, ...]
    species: str
    region: str
    longitude: float | None = None
    latitude: float | None = None


def region_label(longitude, latitude) -> str:
    """Integer-degree grid cell, e.g. (-3.7, 40.4) -> "-4_40". Rounds half to even."""
    if np.isnan(longitude) or np.isnan(latitude):
        raise DataError(f"cannot label region for ({longitude}, {latitude})")
    return f"{int(round(longitude))}_{int(round(latitude))}"


def add_derived_columns(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df["log_height"] = np.log(df["height_m"])
    df["log_crown_radius"] = np.log(df["crown_radius_m"])
    if "stem_diameter_cm" in df.columns:
        diameter = df["stem_diameter_cm"].where(df["stem_diameter_cm"] > 0)
        df["log_diameter"] = np.log(diameter)
    df["region"] = [region_label(lon, lat)
                    for lon, lat in zip(df["longitude"], df["latitude"])]
    return df


def load_allometry(path) -> pd.DataFrame:
    """Read the tree table from a path or URL and add the log/region columns."""
    df = pd.read_csv(path)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise DataError(f"{path}: missing columns {missing}")

    n_raw = len(df)
    df = df.dropna(subset=list(REQUIRED_COLUMNS))
    df = df[(df["height_m"] > 0) & (df["crown_radius_m"] > 0)].copy()
    df["species"] = df["species"].astype(str)
    logger.info("Loaded %d of %d trees from %s", len(df), n_raw, path)
    return add_derived_columns(df).reset_index(drop=True)


def subset_bbox(df, lon_min, lon_max, lat_min, lat_max):
    inside = (df["longitude"].between(lon_min, lon_max)
              & df["latitude"].between(lat_min, lat_max))
    logger.info("Bounding box keeps %d of %d trees", int(inside.sum()), len(df))
    return df[inside].reset_index(drop=True)


def filter_min_group_size(df, column, n):
    counts = df[column].value_counts()
    keep = counts[counts >= n].index
    return df[df[column].isin(keep)].reset_index(drop=True)


def dataset_from_frame(df, response="log_crown_radius", predictors=("log_height",)):
    """Convert a prepared table into a tuple of Observations."""
    missing = [c for c in (response, *predictors) if c not in df.columns]
    if missing:
        raise DataError(f"missing columns {missing}")
    has_coords = {"longitude", "latitude"} <= set(df.columns)
    dataset = []
    for row in df.to_dict("records"):
        dataset.append(Observation(
            response=float(row[response]),
            predictors=tuple(float(row[p]) for p in predictors),
            species=str(row["species"]),
            region=str(row["region"]),
            longitude=float(row["longitude"]) if has_coords else None,
            latitude=float(row["latitude"]) if has_coords else None,
        ))
    return tuple(dataset)


def dataset_to_frame(dataset, predictor_names=None) -> pd.DataFrame:
    n_pred = len(dataset[0].predictors) if dataset else 0
    names = list(predictor_names or [f"x{i}" for i in range(n_pred)])
    rows = [(obs.response, *obs.predictors, obs.species, obs.region)
            for obs in dataset]
    return pd.DataFrame(rows, columns=["response", *names, "species", "region"])


def group_by_species(obs: Observation) -> str:
    return obs.species


def group_by_region(obs: Observation) -> str:
    return obs.region
