"""
Regression models for crown radius against height.

- OLS baseline (scikit-learn), optionally with species as a categorical term
- Hierarchical Bayesian model (numpyro) with species-varying intercepts and
  slopes, an optional quadratic term, and configurable priors for
  sensitivity runs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import arviz as az
import jax.numpy as jnp
import numpy as np
import numpyro
import numpyro.distributions as dist
import pandas as pd
from jax import random
from numpyro.infer import MCMC, NUTS, Predictive
from sklearn.linear_model import LinearRegression
from sklearn.preprocessing import LabelEncoder

from group_holdout import MissingPrediction

logger = logging.getLogger(__name__)

POPULATION_PARAMS = ["a", "b", "a_sigma", "b_sigma", "sigma"]


# --- OLS ---


@dataclass(frozen=True)
class OLSModel:
    regression: LinearRegression
    # sorted training species; first level is the reference. None = no species term
    species_levels: tuple[str, ...] | None = None

    def design_row(self, obs):
        row = list(obs.predictors)
        if self.species_levels is not None:
            if obs.species not in self.species_levels:
                raise MissingPrediction(f"species {obs.species!r} not seen in training")
            row += [float(obs.species == s) for s in self.species_levels[1:]]
        return row

    def predict(self, obs):
        x = np.array([self.design_row(obs)])
        return float(self.regression.predict(x)[0])


def fit_ols(dataset, categorical=False):
    levels = tuple(sorted({obs.species for obs in dataset})) if categorical else None
    model = OLSModel(LinearRegression(), levels)
    x = np.array([model.design_row(obs) for obs in dataset])
    y = np.array([obs.response for obs in dataset])
    model.regression.fit(x, y)
    return model


# --- Hierarchical Bayesian model ---


@dataclass(frozen=True)
class PriorConfig:
    intercept_sd: float = 1.0
    slope_sd: float = 1.0
    group_sd: float = 0.5
    curvature_sd: float = 0.5
    sigma_sd: float = 1.0

    def scaled(self, factor):
        """Every prior scale multiplied by factor."""
        return replace(
            self,
            intercept_sd=self.intercept_sd * factor,
            slope_sd=self.slope_sd * factor,
            group_sd=self.group_sd * factor,
            curvature_sd=self.curvature_sd * factor,
            sigma_sd=self.sigma_sd * factor,
        )


@dataclass(frozen=True)
class SamplerConfig:
    num_warmup: int = 1000
    num_samples: int = 2000
    num_chains: int = 1
    seed: int = 0
    progress_bar: bool = False


def allometry_model(species, log_height, n_species, priors=PriorConfig(),
                    nonlinear=False, log_crown=None):
    a = numpyro.sample("a", dist.Normal(0.0, priors.intercept_sd))
    b = numpyro.sample("b", dist.Normal(0.0, priors.slope_sd))
    a_sigma = numpyro.sample("a_sigma", dist.HalfNormal(priors.group_sd))
    b_sigma = numpyro.sample("b_sigma", dist.HalfNormal(priors.group_sd))
    # non-centred species offsets
    with numpyro.plate("species", n_species):
        a_z = numpyro.sample("a_z", dist.Normal(0.0, 1.0))
        b_z = numpyro.sample("b_z", dist.Normal(0.0, 1.0))
    a_sp = numpyro.deterministic("a_sp", a_sigma * a_z)
    b_sp = numpyro.deterministic("b_sp", b_sigma * b_z)
    mu = a + a_sp[species] + (b + b_sp[species]) * log_height
    if nonlinear:
        c = numpyro.sample("c", dist.Normal(0.0, priors.curvature_sd))
        mu = mu + c * log_height ** 2
    sigma = numpyro.sample("sigma", dist.HalfNormal(priors.sigma_sd))
    with numpyro.plate("data", log_height.shape[0]):
        numpyro.sample("obs", dist.Normal(mu, sigma), obs=log_crown)


@dataclass
class HierarchicalModel:
    mcmc: MCMC
    species_encoder: LabelEncoder
    priors: PriorConfig
    nonlinear: bool
    species_ix: jnp.ndarray
    log_height: jnp.ndarray

    def __post_init__(self):
        samples = self.mcmc.get_samples()
        self.means = {k: np.asarray(v).mean(axis=0) for k, v in samples.items()}

    def predict(self, obs):
        """Posterior mean response. Unseen species use the population line."""
        x = obs.predictors[0]
        a, b = float(self.means["a"]), float(self.means["b"])
        if obs.species in self.species_encoder.classes_:
            ix = int(self.species_encoder.transform([obs.species])[0])
            a += float(self.means["a_sp"][ix])
            b += float(self.means["b_sp"][ix])
        mu = a + b * x
        if self.nonlinear:
            mu += float(self.means["c"]) * x ** 2
        return mu

    def posterior_predictive(self, rng_key):
        pred = Predictive(allometry_model, posterior_samples=self.mcmc.get_samples())
        return pred(
            rng_key,
            species=self.species_ix,
            log_height=self.log_height,
            n_species=len(self.species_encoder.classes_),
            priors=self.priors,
            nonlinear=self.nonlinear,
        )["obs"]

    def to_inference_data(self, rng_key=None):
        ppc = None
        if rng_key is not None:
            ppc = {"obs": self.posterior_predictive(rng_key)}
        return az.from_numpyro(self.mcmc, posterior_predictive=ppc)


def fit_hierarchical(dataset, priors=None, sampler=None, nonlinear=False, rng_key=None):
    priors = priors or PriorConfig()
    sampler = sampler or SamplerConfig()
    if rng_key is None:
        rng_key = random.PRNGKey(sampler.seed)

    species_le = LabelEncoder()
    species_ix = jnp.asarray(species_le.fit_transform([obs.species for obs in dataset]))
    log_height = jnp.asarray([obs.predictors[0] for obs in dataset])
    log_crown = jnp.asarray([obs.response for obs in dataset])

    kernel = NUTS(allometry_model)
    mcmc = MCMC(
        kernel,
        num_warmup=sampler.num_warmup,
        num_samples=sampler.num_samples,
        num_chains=sampler.num_chains,
        progress_bar=sampler.progress_bar,
    )
    mcmc.run(
        rng_key,
        species=species_ix,
        log_height=log_height,
        n_species=len(species_le.classes_),
        priors=priors,
        nonlinear=nonlinear,
        log_crown=log_crown,
    )
    logger.info("Sampled hierarchical model (%s) on %d trees, %d species",
                "quadratic" if nonlinear else "linear",
                len(dataset), len(species_le.classes_))
    return HierarchicalModel(mcmc, species_le, priors, nonlinear, species_ix, log_height)


def prior_sensitivity(dataset, scales=(0.5, 1.0, 2.0), sampler=None,
                      base_priors=None, nonlinear=False):
    """Refit under scaled priors and collect population-parameter summaries."""
    sampler = sampler or SamplerConfig()
    base_priors = base_priors or PriorConfig()
    rng_key = random.PRNGKey(sampler.seed)
    tables = []
    for scale in scales:
        rng_key, rng_key_ = random.split(rng_key)
        model = fit_hierarchical(dataset, base_priors.scaled(scale), sampler,
                                 nonlinear=nonlinear, rng_key=rng_key_)
        var_names = POPULATION_PARAMS + (["c"] if nonlinear else [])
        summary = az.summary(model.to_inference_data(), var_names=var_names, kind="stats")
        summary = summary.rename_axis("parameter").reset_index()
        summary.insert(0, "prior_scale", scale)
        tables.append(summary)
    return pd.concat(tables, ignore_index=True)
