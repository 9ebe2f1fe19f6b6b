"""
Leave-one-group-out cross-validation.

Every distinct group (species, region cell, ...) is held out once: the model is
fitted on the remaining groups and scored on the held-out one. Predictions are
pooled over all groups and summarised by R² (squared Pearson correlation) and
RMSE, using pairwise-complete pairs only.
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Hashable, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class HoldoutError(Exception):
    """Base exception for group holdout validation."""


class DegenerateSplitError(HoldoutError):
    """Raised when a holdout would leave nothing to train on."""


class GroupFitError(HoldoutError):
    """Raised when fitting the model for one held-out group fails."""

    def __init__(self, group: Hashable, cause: BaseException):
        super().__init__(f"fit failed with group {group!r} held out: {cause}")
        self.group = group


class MissingPrediction(HoldoutError):
    """Raised by a fitted model that cannot score an observation."""


@dataclass(frozen=True)
class PredictionRecord:
    group: Hashable
    actual: float
    predicted: float  # NaN when the model could not predict


@dataclass(frozen=True)
class ValidationSummary:
    """Pooled accuracy of the held-out predictions.

    r2 and rmse are None when fewer than two complete pairs remain. r2 is also
    None when either side has zero variance.
    """

    r2: float | None
    rmse: float | None
    n_records: int
    n_complete: int

    @property
    def is_defined(self) -> bool:
        return self.rmse is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "r2": self.r2,
            "rmse": self.rmse,
            "n_records": self.n_records,
            "n_complete": self.n_complete,
        }


@dataclass(frozen=True)
class ValidationResult:
    records: tuple[PredictionRecord, ...]
    summary: ValidationSummary

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(r.group, r.actual, r.predicted) for r in self.records],
            columns=["group", "actual", "predicted"],
        )


def split_by_group(dataset: Sequence, group_fn: Callable) -> dict:
    """Map each group value to its (train, test) partition, in sorted order.

    Keys that can't be compared with each other are ordered by repr.
    """
    keys = [group_fn(obs) for obs in dataset]
    try:
        groups = sorted(set(keys))
    except TypeError:
        groups = sorted(set(keys), key=repr)
    return {
        g: (
            tuple(obs for obs, k in zip(dataset, keys) if k != g),
            tuple(obs for obs, k in zip(dataset, keys) if k == g),
        )
        for g in groups
    }


def summarize(records: Sequence[PredictionRecord]) -> ValidationSummary:
    actual = np.array([r.actual for r in records], dtype=np.float64)
    predicted = np.array([r.predicted for r in records], dtype=np.float64)
    complete = ~(np.isnan(actual) | np.isnan(predicted))
    actual, predicted = actual[complete], predicted[complete]
    n_complete = int(complete.sum())

    if n_complete < 2:
        logger.warning(
            "Only %d complete prediction pairs, summary is undefined", n_complete
        )
        return ValidationSummary(None, None, len(records), n_complete)

    rmse = float(np.sqrt(np.mean((actual - predicted) ** 2)))
    if np.ptp(actual) == 0 or np.ptp(predicted) == 0:
        r2 = None
    else:
        r2 = float(np.corrcoef(actual, predicted)[0, 1] ** 2)
    return ValidationSummary(r2, rmse, len(records), n_complete)


def _predict_one(model, obs) -> float:
    try:
        value = model.predict(obs)
    except MissingPrediction:
        return math.nan
    return math.nan if value is None else float(value)


def _holdout_group(group, train, test, fit_fn) -> list[PredictionRecord]:
    if not train:
        raise DegenerateSplitError(f"holding out {group!r} leaves no training data")
    try:
        model = fit_fn(train)
    except Exception as e:
        raise GroupFitError(group, e) from e
    records = [PredictionRecord(group, obs.response, _predict_one(model, obs))
               for obs in test]
    n_missing = sum(math.isnan(r.predicted) for r in records)
    if n_missing:
        logger.warning("%d of %d predictions missing for group %r",
                       n_missing, len(records), group)
    logger.debug("Group %r: trained on %d, scored %d", group, len(train), len(test))
    return records


def _missing_records(group, test) -> list[PredictionRecord]:
    return [PredictionRecord(group, obs.response, math.nan) for obs in test]


def _run_parallel(splits, fit_fn, max_workers, fit_timeout) -> dict:
    """Fit groups on a thread pool; return records keyed by group.

    A group's timeout clock starts when its fit starts, not when it is queued.
    """
    started = {}

    def task(group, train, test):
        started[group] = time.monotonic()
        return _holdout_group(group, train, test, fit_fn)

    results = {}
    executor = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = {
            executor.submit(task, group, train, test): group
            for group, (train, test) in splits.items()
        }
        pending = set(futures)
        while pending:
            poll = None
            if fit_timeout is not None:
                # a group starting now can't expire sooner than fit_timeout
                deadlines = [started[futures[f]] + fit_timeout
                             for f in pending if futures[f] in started]
                poll = max(0.0, min(deadlines + [time.monotonic() + fit_timeout])
                           - time.monotonic())
            done, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
            for future in done:
                results[futures[future]] = future.result()
            if fit_timeout is None:
                continue
            now = time.monotonic()
            for future in list(pending):
                group = futures[future]
                if group in started and now - started[group] >= fit_timeout:
                    logger.warning("Fit for group %r timed out after %ss",
                                   group, fit_timeout)
                    results[group] = _missing_records(group, splits[group][1])
                    pending.discard(future)
    finally:
        # timed-out fits keep running in the background; don't wait on them
        executor.shutdown(wait=False, cancel_futures=True)
    return results


def leave_one_group_out(
    dataset: Sequence,
    group_fn: Callable,
    fit_fn: Callable,
    *,
    max_workers: int | None = None,
    fit_timeout: float | None = None,
) -> ValidationResult:
    """Hold out each group in turn and pool the held-out predictions.

    fit_timeout only applies when max_workers > 1.
    """
    splits = split_by_group(dataset, group_fn)
    if len(splits) < 2:
        raise DegenerateSplitError(
            f"need at least two groups for holdout, got {list(splits)}"
        )
    logger.info("Leave-one-group-out over %d groups, %d observations",
                len(splits), len(dataset))

    records: list[PredictionRecord] = []
    if max_workers is None or max_workers <= 1:
        for group, (train, test) in splits.items():
            records.extend(_holdout_group(group, train, test, fit_fn))
    else:
        by_group = _run_parallel(splits, fit_fn, max_workers, fit_timeout)
        for group in splits:
            records.extend(by_group[group])

    return ValidationResult(tuple(records), summarize(records))
