"""Unit tests for allometry data loading and conversion."""

import numpy as np
import pandas as pd
import pytest

from allometry_data import (
    DataError,
    Observation,
    dataset_from_frame,
    dataset_to_frame,
    filter_min_group_size,
    group_by_region,
    group_by_species,
    load_allometry,
    region_label,
    subset_bbox,
)


class TestRegionLabel:
    def test_rounds_to_integer_degrees(self) -> None:
        assert region_label(-3.7, 40.4) == "-4_40"
        assert region_label(2.2, 41.9) == "2_42"

    def test_nearby_points_share_a_cell(self) -> None:
        assert region_label(10.1, 50.2) == region_label(9.8, 49.7)

    def test_nan_coordinates_rejected(self) -> None:
        with pytest.raises(DataError):
            region_label(float("nan"), 40.0)


class TestLoadAllometry:
    """Tests for load_allometry."""

    def test_adds_log_and_region_columns(self, tree_csv) -> None:
        df = load_allometry(tree_csv)

        assert len(df) == 72
        assert np.allclose(df["log_height"], np.log(df["height_m"]))
        assert np.allclose(df["log_crown_radius"], np.log(df["crown_radius_m"]))
        assert "log_diameter" in df.columns
        assert set(df["region"]) == {"-4_40", "2_42"}

    def test_drops_non_positive_and_missing_rows(self, tmp_path, tree_frame) -> None:
        tree_frame.loc[0, "height_m"] = 0.0
        tree_frame.loc[1, "crown_radius_m"] = -1.0
        tree_frame.loc[2, "latitude"] = np.nan
        path = tmp_path / "dirty.csv"
        tree_frame.to_csv(path, index=False)

        df = load_allometry(path)

        assert len(df) == 69
        assert (df["height_m"] > 0).all()

    def test_missing_columns_raise(self, tmp_path) -> None:
        path = tmp_path / "bad.csv"
        pd.DataFrame({"species": ["a"], "height_m": [1.0]}).to_csv(path, index=False)

        with pytest.raises(DataError, match="missing columns"):
            load_allometry(path)


class TestSubsetting:
    def test_subset_bbox(self, tree_csv) -> None:
        df = load_allometry(tree_csv)

        spain_west = subset_bbox(df, -10.0, 0.0, 35.0, 45.0)

        assert len(spain_west) == 36
        assert set(spain_west["region"]) == {"-4_40"}

    def test_filter_min_group_size(self) -> None:
        df = pd.DataFrame({"species": ["a", "a", "a", "b", "c", "c"]})

        kept = filter_min_group_size(df, "species", 2)

        assert sorted(kept["species"].unique()) == ["a", "c"]
        assert len(kept) == 5


class TestDatasetConversion:
    def test_dataset_from_frame(self, tree_csv) -> None:
        df = load_allometry(tree_csv)

        dataset = dataset_from_frame(df)

        assert len(dataset) == len(df)
        first = dataset[0]
        assert isinstance(first, Observation)
        assert first.response == pytest.approx(df.loc[0, "log_crown_radius"])
        assert first.predictors == (pytest.approx(df.loc[0, "log_height"]),)
        assert group_by_species(first) == df.loc[0, "species"]
        assert group_by_region(first) == df.loc[0, "region"]

    def test_multiple_predictors(self, tree_csv) -> None:
        df = load_allometry(tree_csv)

        dataset = dataset_from_frame(df, predictors=("log_height", "log_diameter"))

        assert all(len(obs.predictors) == 2 for obs in dataset)

    def test_unknown_column_raises(self, tree_csv) -> None:
        df = load_allometry(tree_csv)

        with pytest.raises(DataError):
            dataset_from_frame(df, response="wood_density")

    def test_dataset_to_frame(self) -> None:
        dataset = (Observation(1.0, (2.0,), "a", "0_0"), Observation(3.0, (4.0,), "b", "1_1"))

        frame = dataset_to_frame(dataset, ["log_height"])

        assert list(frame.columns) == ["response", "log_height", "species", "region"]
        assert frame["log_height"].tolist() == [2.0, 4.0]
