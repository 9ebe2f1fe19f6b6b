import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
import arviz as az
from jax import random

from allometry_data import (
    dataset_from_frame,
    filter_min_group_size,
    group_by_region,
    group_by_species,
    load_allometry,
    subset_bbox,
)
from allometry_models import (
    POPULATION_PARAMS,
    PriorConfig,
    SamplerConfig,
    fit_hierarchical,
    fit_ols,
    prior_sensitivity,
)
from group_holdout import leave_one_group_out

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowConfig:
    data: str
    outdir: Path = Path("out")
    bbox: tuple | None = None  # (lon_min, lon_max, lat_min, lat_max)
    min_species_size: int = 20
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    priors: PriorConfig = field(default_factory=PriorConfig)
    prior_scales: tuple = (0.5, 1.0, 2.0)
    workers: int | None = None
    skip_bayes: bool = False


def _format_stat(value):
    return "undefined" if value is None else f"{value:.3f}"


def plot_raw(df, outdir):
    fig, ax = plt.subplots(figsize=(12, 12,))
    sns.scatterplot(df, x="log_height", y="log_crown_radius", hue="species",
                    legend=df["species"].nunique() <= 20, s=12, ax=ax)
    ax.set(xlabel="log height (m)", ylabel="log crown radius (m)")
    path = Path(outdir) / "raw_allometry.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def plot_holdout(result, title, path):
    frame = result.to_frame()
    fig, ax = plt.subplots(figsize=(10, 10,))
    sns.scatterplot(frame, x="actual", y="predicted", hue="group",
                    legend=frame["group"].nunique() <= 20, s=12, ax=ax)
    lims = [np.nanmin(frame[["actual", "predicted"]].values),
            np.nanmax(frame[["actual", "predicted"]].values)]
    ax.plot(lims, lims, color="black", linestyle="--", linewidth=1)
    ax.set_title(f"{title}: R² = {_format_stat(result.summary.r2)}, "
                 f"RMSE = {_format_stat(result.summary.rmse)}")
    fig.savefig(path)
    plt.close(fig)
    return path


def plot_posterior(model, rng_key, outdir, name):
    data = model.to_inference_data(rng_key)
    var_names = POPULATION_PARAMS + (["c"] if model.nonlinear else [])
    az.plot_trace(data, var_names=var_names)
    trace_path = Path(outdir) / f"{name}_trace.png"
    plt.savefig(trace_path)
    plt.close("all")
    az.plot_ppc(data, num_pp_samples=100)
    ppc_path = Path(outdir) / f"{name}_ppc.png"
    plt.savefig(ppc_path)
    plt.close("all")
    return trace_path, ppc_path


def run_holdouts(dataset, outdir, workers=None):
    """OLS leave-one-group-out by species and by region cell."""
    results = {}
    for name, group_fn in [("species", group_by_species), ("region", group_by_region)]:
        result = leave_one_group_out(dataset, group_fn, fit_ols, max_workers=workers)
        logger.info("Holdout by %s: R2=%s RMSE=%s (%d/%d scored)", name,
                    _format_stat(result.summary.r2), _format_stat(result.summary.rmse),
                    result.summary.n_complete, result.summary.n_records)
        result.to_frame().to_csv(Path(outdir) / f"holdout_{name}.csv", index=False)
        plot_holdout(result, f"Leave one {name} out",
                     Path(outdir) / f"holdout_{name}.png")
        results[name] = result
    return results


def run_workflow(config):
    outdir = Path(config.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    # Data setup
    tree_dset = load_allometry(config.data)
    if config.bbox is not None:
        tree_dset = subset_bbox(tree_dset, *config.bbox)
    tree_dset = filter_min_group_size(tree_dset, "species", config.min_species_size)
    if tree_dset.empty:
        raise ValueError("no trees left after subsetting")
    dataset = dataset_from_frame(tree_dset)
    plot_raw(tree_dset, outdir)

    ols = fit_ols(dataset)
    logger.info("OLS: log crown radius = %.3f + %.3f * log height",
                ols.regression.intercept_, ols.regression.coef_[0])
    results = {"ols": ols, "holdout": run_holdouts(dataset, outdir, config.workers)}
    summary = pd.DataFrame({name: r.summary.to_dict()
                            for name, r in results["holdout"].items()}).T
    summary.to_csv(outdir / "holdout_summary.csv")
    if config.skip_bayes:
        return results

    # Start from this source of randomness. We will split keys for subsequent operations.
    rng_key = random.PRNGKey(config.sampler.seed)
    for name, nonlinear in [("linear", False), ("quadratic", True)]:
        rng_key, rng_key_ = random.split(rng_key)
        model = fit_hierarchical(dataset, config.priors, config.sampler,
                                 nonlinear=nonlinear, rng_key=rng_key_)
        rng_key, rng_key_ = random.split(rng_key)
        plot_posterior(model, rng_key_, outdir, f"hierarchical_{name}")
        results[f"hierarchical_{name}"] = model

    sensitivity = prior_sensitivity(dataset, config.prior_scales, config.sampler,
                                    base_priors=config.priors)
    sensitivity.to_csv(outdir / "prior_sensitivity.csv", index=False)
    results["prior_sensitivity"] = sensitivity
    return results


def parse_args(argv=None):
    ap = argparse.ArgumentParser(
        description="Tree allometry: OLS and hierarchical Bayesian models "
                    "with leave-one-group-out validation")
    ap.add_argument("--data", required=True, help="Path or URL of the tree CSV.")
    ap.add_argument("--outdir", default="out", help="Output directory.")
    ap.add_argument("--bbox", type=float, nargs=4,
                    metavar=("LON_MIN", "LON_MAX", "LAT_MIN", "LAT_MAX"),
                    help="Keep only trees inside this box.")
    ap.add_argument("--min-species", type=int, default=20,
                    help="Drop species with fewer trees than this.")
    ap.add_argument("--warmup", type=int, default=1000)
    ap.add_argument("--samples", type=int, default=2000)
    ap.add_argument("--chains", type=int, default=1)
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--prior-scales", type=float, nargs="+", default=[0.5, 1.0, 2.0])
    ap.add_argument("--workers", type=int, default=None,
                    help="Fit holdout groups in parallel.")
    ap.add_argument("--skip-bayes", action="store_true",
                    help="Only run the OLS holdouts.")
    ap.add_argument("--log-level", default="INFO")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    config = WorkflowConfig(
        data=args.data,
        outdir=Path(args.outdir),
        bbox=tuple(args.bbox) if args.bbox else None,
        min_species_size=args.min_species,
        sampler=SamplerConfig(num_warmup=args.warmup, num_samples=args.samples,
                              num_chains=args.chains, seed=args.seed),
        prior_scales=tuple(args.prior_scales),
        workers=args.workers,
        skip_bayes=args.skip_bayes,
    )
    return run_workflow(config)


if __name__ == "__main__":
    main()
