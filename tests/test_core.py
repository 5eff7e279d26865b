"""End-to-end tests for fit_marginal."""

import numpy as np
import pandas as pd
import pytest

import scmarginal.core as core_mod
from scmarginal import (
    ClusterConfig,
    FitResult,
    InvalidFamilyError,
    MarginalData,
    ParallelConfigError,
    fit_marginal,
)


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def small_data(rng):
    n = 80
    covariates = pd.DataFrame(
        {
            "cell_type": np.repeat(["A", "B"], n // 2),
            "batch": np.tile(["x", "y"], n // 2),
            "pseudotime": np.linspace(0, 1, n),
        }
    )
    mu = np.where(covariates["cell_type"] == "A", 1.5, 6.0)
    counts = np.column_stack(
        [
            rng.poisson(3.0, size=n),
            rng.negative_binomial(3, 3 / (3 + mu)),
            np.r_[np.zeros(n - 1, dtype=int), 1],
        ]
    )
    return MarginalData.from_arrays(
        covariates,
        counts,
        feature_names=["g_pois", "g_nb", "g_rare"],
        min_nonzero=2,
    )


def _wide_data(rng, n_features, n_obs=40):
    covariates = pd.DataFrame({"pseudotime": np.linspace(0, 1, n_obs)})
    lam = rng.uniform(0.2, 20, size=n_features)
    counts = rng.poisson(lam, size=(n_obs, n_features))
    return MarginalData.from_arrays(
        covariates, counts, feature_names=[f"g{i:03d}" for i in range(n_features)]
    )


class TestScenarios:
    def test_intercept_only_poisson(self, small_data):
        fits = fit_marginal(
            small_data, mu_formula="gene ~ 1", family_use="poisson", parallelization="multiprocess"
        )
        res = fits["g_pois"]
        assert res.fit is not None
        assert (res.zero == 0).all()
        assert res.dispersion.nunique() == 1
        assert list(res.mean.index) == list(small_data.covariates.index)

    def test_category_fast_path(self, small_data):
        fits = fit_marginal(small_data, mu_formula="cell_type", family_use="nb")
        res = fits["g_nb"]
        assert res.model_type == "glm.nb"
        cell_type = small_data.covariates["cell_type"].to_numpy()
        for level in ("A", "B"):
            assert res.mean[cell_type == level].nunique() == 1

    def test_filtered_feature_skipped(self, small_data):
        fits = fit_marginal(small_data, mu_formula="1", family_use="poisson")
        assert fits["g_rare"].skipped
        assert fits["g_rare"].log[0].source == "fit_marginal"
        assert fits.features == ["g_pois", "g_nb", "g_rare"]

    def test_per_feature_families(self, small_data):
        fits = fit_marginal(
            small_data, mu_formula="1", family_use=["poisson", "nb", "poisson"]
        )
        assert fits["g_pois"].family.value == "poisson"
        assert fits["g_nb"].family.value == "nb"

    def test_debug_fits_first_feature_only(self, small_data):
        fits = fit_marginal(small_data, mu_formula="1", family_use="poisson", debug=True)
        assert fits.features == ["g_pois"]

    def test_smooth_formula(self, small_data):
        fits = fit_marginal(
            small_data, mu_formula="s(pseudotime, k = 8)", family_use="nb", trace=True
        )
        res = fits["g_nb"]
        assert res.model_type == "gam"
        assert np.isfinite(res.edf)
        assert np.all(np.isfinite(res.mean))

    def test_trace_flag(self, small_data):
        fits = fit_marginal(small_data, mu_formula="1", family_use="poisson", trace=True)
        assert fits["g_pois"].time is not None


class TestCallLevelErrors:
    def test_family_length_mismatch(self, small_data):
        with pytest.raises(ValueError, match="same length as all features"):
            fit_marginal(small_data, family_use=["nb", "poisson"])

    def test_invalid_family(self, small_data):
        with pytest.raises(InvalidFamilyError):
            fit_marginal(small_data, family_use="lognormal")

    def test_incompatible_parallel_config(self, small_data):
        with pytest.raises(ParallelConfigError):
            fit_marginal(
                small_data,
                parallelization="progress",
                parallel_config=ClusterConfig(),
            )

    def test_predictor_is_covariate(self, small_data):
        with pytest.raises(ValueError, match="is a covariate column"):
            fit_marginal(small_data, predictor="batch")

    def test_requires_marginal_data(self):
        with pytest.raises(TypeError, match="MarginalData"):
            fit_marginal(pd.DataFrame({"a": [1]}))


class _RecordingFitter:
    """Stands in for the per-feature fitter; EDF grows with the index."""

    def __init__(self):
        self.calls = []

    def __call__(self, feature, family, edf=None, **shared):
        self.calls.append((feature, edf))
        realised = float(edf) if edf is not None else 5.0 + int(feature[1:]) % 9
        return FitResult(feature=feature, family=family, edf=realised)


class TestAcceleration:
    def test_two_passes(self, rng, monkeypatch):
        data = _wide_data(rng, 150)
        recorder = _RecordingFitter()
        monkeypatch.setattr(core_mod, "fit_feature", recorder)
        fits = fit_marginal(
            data,
            mu_formula="s(pseudotime, k = 250)",
            family_use="poisson",
            edf_flexible=True,
            random_state=7,
        )
        first = [f for f, edf in recorder.calls if edf is None]
        second = [f for f, edf in recorder.calls if edf is not None]
        assert len(first) == 100
        assert len(second) == 50
        assert set(first).isdisjoint(second)
        assert len(fits) == 150
        assert fits.features == data.feature_names
        assert fits.edf_model is not None
        assert sorted(fits.gini_features) == sorted(first)
        assert all(edf >= 4 for _, edf in recorder.calls if edf is not None)

    @pytest.mark.parametrize(
        "n_features, formula, flag",
        [
            (100, "s(pseudotime, k = 250)", True),
            (150, "s(pseudotime, k = 150)", True),
            (150, "s(pseudotime, k = 250)", False),
        ],
    )
    def test_not_activated(self, rng, monkeypatch, n_features, formula, flag):
        data = _wide_data(rng, n_features)
        recorder = _RecordingFitter()
        monkeypatch.setattr(core_mod, "fit_feature", recorder)
        fits = fit_marginal(data, mu_formula=formula, family_use="poisson", edf_flexible=flag)
        assert len(recorder.calls) == n_features
        assert all(edf is None for _, edf in recorder.calls)
        assert fits.edf_model is None
        assert fits.gini_features == ()
