# targetkit_pipeline.py
# Pipeline for the bundled measurements: load, summarise per site, fit a
# depth gradient per bootstrap sample.
from __future__ import annotations

import random

import pandas as pd

from targetkit.dsl import combine, file_target, map_over, pipeline as define, static_map, target
from targetkit.expr import call, ref

DATA_FILE = "data/measurements.csv"
BOOTSTRAP_SAMPLES = 20
SEED = 7


def load_measurements(path):
    return pd.read_csv(path)


def site_names(data):
    return sorted(data["site"].unique())


def site_mean(data, site):
    rows = data[data["site"] == site]
    return {"site": site, "temperature": float(rows["temperature"].mean())}


def sample_seeds(n, seed):
    rng = random.Random(seed)
    return [rng.randrange(1_000_000) for _ in range(n)]


def fit_gradient(data, seed):
    sample = data.sample(frac=1.0, replace=True, random_state=seed)
    depth = sample["depth"] - sample["depth"].mean()
    temp = sample["temperature"] - sample["temperature"].mean()
    denom = float((depth * depth).sum())
    return float((depth * temp).sum() / denom) if denom else 0.0


def summarise(gradients):
    ordered = sorted(gradients)
    return {
        "n": len(ordered),
        "median": ordered[len(ordered) // 2] if ordered else None,
        "low": ordered[0] if ordered else None,
        "high": ordered[-1] if ordered else None,
    }


def pipeline():
    # one summary per known site, fixed at build time
    means = static_map(
        target("mean", call(site_mean, ref("data"), ref("site")), format="json"),
        values={"site": ["north", "south", "east"]},
    )
    return define(
        file_target("raw", DATA_FILE),
        target("data", call(load_measurements, ref("raw")), format="csv"),
        target("sites", site_names, deployment="local"),

        means,
        combine("site_means", means, format="json"),

        # bootstrap, batched five samples per branch
        target("seeds", call(sample_seeds, ref("BOOTSTRAP_SAMPLES"), ref("SEED"))),
        target(
            "gradient",
            call(fit_gradient, ref("data"), ref("seeds")),
            pattern=map_over("seeds"),
            reps=5,
        ),
        target("gradient_summary", call(summarise, ref("gradient")), format="json", priority=1.0),
    )
