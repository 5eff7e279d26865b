"""Tests for the per-feature fitter."""

import numpy as np
import pandas as pd
import pytest

import scmarginal.fitter as fitter_mod
from scmarginal._config import FitOptions
from scmarginal.families import Family, InvalidFamilyError
from scmarginal.fitter import fast_path_keys, fit_feature
from scmarginal.formula import parse_formula
from scmarginal.location_scale import DistributionalFit


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def inputs(rng):
    n = 120
    covariates = pd.DataFrame(
        {
            "cell_type": np.tile(["A", "B"], n // 2),
            "batch": np.repeat(["x", "y", "z"], n // 3),
            "pseudotime": np.linspace(0, 1, n),
        },
        index=[f"cell{i}" for i in range(n)],
    )
    mu = np.where(covariates["cell_type"] == "A", 2.0, 9.0)
    counts = pd.DataFrame(
        {
            "g_nb": rng.negative_binomial(2, 2 / (2 + mu)),
            "g_pois": rng.poisson(3.0, size=n),
            "g_sparse": np.zeros(n, dtype=int),
        },
        index=covariates.index,
    )
    return covariates, counts


def _fit(inputs, feature, family, mu="1", sigma="1", filtered=(), edf=None, **opts):
    covariates, counts = inputs
    options = FitOptions(**opts)
    return fit_feature(
        feature,
        family,
        covariates,
        counts,
        parse_formula(mu, "gene"),
        parse_formula(sigma, "gene"),
        "gene",
        frozenset(filtered),
        options,
        edf=edf,
    )


class TestSkipAndErrors:
    def test_filtered_feature_is_skipped(self, inputs):
        res = _fit(inputs, "g_sparse", "nb", filtered={"g_sparse"})
        assert res.skipped
        assert res.fit is None
        assert not res.has_fit
        assert res.log[0].severity == "warning"
        assert "too few cells" in res.log[0].message

    def test_invalid_family_propagates(self, inputs):
        with pytest.raises(InvalidFamilyError):
            _fit(inputs, "g_pois", "weibull")

    def test_unexpected_error_is_isolated(self, inputs, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("backend exploded")

        monkeypatch.setattr(fitter_mod, "resolve_smoother", boom)
        res = _fit(inputs, "g_pois", "poisson")
        assert res.fit is None
        assert res.log[-1].severity == "error"
        assert "backend exploded" in res.log[-1].message


class TestGeneralPath:
    def test_intercept_only_poisson(self, inputs):
        res = _fit(inputs, "g_pois", "poisson")
        covariates, counts = inputs
        assert res.fit is not None
        assert res.model_type == "gam"
        assert res.family is Family.POISSON
        assert list(res.mean.index) == list(covariates.index)
        np.testing.assert_allclose(res.mean, counts["g_pois"].mean(), rtol=1e-6)
        assert (res.zero == 0).all()
        assert res.dispersion.nunique() == 1
        assert res.edf == pytest.approx(1.0)

    def test_trace_off_hides_log_and_time(self, inputs):
        res = _fit(inputs, "g_pois", "poisson")
        assert res.log is None
        assert res.time is None

    def test_trace_on_records_time(self, inputs):
        res = _fit(inputs, "g_pois", "poisson", trace=True)
        assert res.log is not None
        assert res.time[0] is not None
        # No distributional fit for a non-inflated family with sigma ~ 1.
        assert res.time[1] is None

    def test_simplify_removes_data(self, inputs):
        res = _fit(inputs, "g_pois", "poisson", simplify=True)
        assert res.fit is not None

    def test_smooth_formula_fits_gam(self, inputs):
        covariates, _ = inputs
        res = _fit(inputs, "g_pois", "poisson", mu="s(pseudotime, k = 8)", trace=True)
        assert res.model_type == "gam"
        assert list(res.mean.index) == list(covariates.index)
        assert np.isfinite(res.edf)
        assert 1.0 <= res.edf <= 9.0
        assert not any(e.severity == "error" for e in res.log)

    def test_smooth_formula_nb(self, inputs):
        res = _fit(inputs, "g_nb", "nb", mu="s(pseudotime, k = 6)")
        assert res.model_type == "gam"
        assert np.isfinite(res.edf)
        assert res.dispersion.nunique() == 1
        assert res.dispersion.iloc[0] > 0

    def test_edf_override_rewrites_basis_dim(self, inputs, monkeypatch):
        seen = {}

        class Recorder:
            name = "standard"

            def fit(self, data, predictor, formula, family):
                seen["k"] = formula.smooths[0].basis_dim
                raise RuntimeError("stop")

        monkeypatch.setattr(fitter_mod, "resolve_smoother", lambda large: Recorder())
        _fit(inputs, "g_pois", "poisson", mu="s(pseudotime, k = 200)", edf=11.6)
        assert seen["k"] == 12


def _fake_distributional(mean_value, sigma_value, aic):
    def fake(data, predictor, mu, sigma, family):
        n = len(data)
        return DistributionalFit(
            results="gamlss-results",
            mean=np.full(n, mean_value),
            sigma=np.full(n, sigma_value),
            aic=aic,
        )

    return fake


class TestSelection:
    def test_distributional_runs_for_zero_inflated(self, inputs, monkeypatch):
        monkeypatch.setattr(fitter_mod, "fit_location_scale", _fake_distributional(3.0, 0.1, -1e9))
        res = _fit(inputs, "g_pois", "zip")
        assert res.model_type == "gamlss"
        assert res.fit == "gamlss-results"
        np.testing.assert_allclose(res.dispersion, 0.1)

    def test_distributional_runs_for_dispersion_formula(self, inputs, monkeypatch):
        monkeypatch.setattr(fitter_mod, "fit_location_scale", _fake_distributional(3.0, 0.4, 1e9))
        res = _fit(inputs, "g_nb", "nb", mu="s(pseudotime, k = 6)", sigma="batch")
        # Accepted even with a worse AIC: only the sanity checks gate it.
        assert res.model_type == "gamlss"
        assert res.edf is not None

    def test_real_smooth_and_distributional_fits(self, inputs):
        res = _fit(inputs, "g_nb", "nb", mu="s(pseudotime, k = 6)", sigma="batch", trace=True)
        assert res.fit is not None
        assert res.model_type in {"gam", "gamlss"}
        assert np.isfinite(res.edf)
        assert res.time[0] is not None
        assert np.all(np.isfinite(res.mean))

    def test_abnormal_fit_rejected_despite_better_aic(self, inputs, monkeypatch):
        _, counts = inputs
        too_big = 11 * counts["g_pois"].max()
        monkeypatch.setattr(
            fitter_mod, "fit_location_scale", _fake_distributional(too_big, 0.1, -1e9)
        )
        res = _fit(inputs, "g_pois", "zip", trace=True)
        assert res.model_type == "gam"
        assert any("abnormal fitting values" in e.message for e in res.log)

    def test_nb_dispersion_runaway_rejected(self, inputs, monkeypatch):
        monkeypatch.setattr(fitter_mod, "fit_location_scale", _fake_distributional(3.0, 5000.0, -1e9))
        res = _fit(inputs, "g_nb", "zinb")
        assert res.model_type == "gam"

    def test_failed_distributional_falls_back(self, inputs, monkeypatch):
        def fail(*args, **kwargs):
            raise np.linalg.LinAlgError("singular")

        monkeypatch.setattr(fitter_mod, "fit_location_scale", fail)
        res = _fit(inputs, "g_pois", "poisson", sigma="batch", trace=True)
        assert res.model_type == "gam"
        sources = [(e.source, e.severity) for e in res.log]
        assert ("gamlss", "error") in sources
        assert ("fit_marginal", "warning") in sources

    def test_both_fits_fail(self, inputs, monkeypatch):
        def fail(*args, **kwargs):
            raise RuntimeError("nope")

        class Broken:
            name = "standard"
            fit = staticmethod(fail)

        monkeypatch.setattr(fitter_mod, "resolve_smoother", lambda large: Broken())
        monkeypatch.setattr(fitter_mod, "fit_location_scale", fail)
        res = _fit(inputs, "g_pois", "zip")
        assert res.fit is None
        assert res.mean is None
        assert res.model_type is None


class TestFastPath:
    def test_keys(self):
        opts = FitOptions()
        assert fast_path_keys(parse_formula("cell_type"), opts) == ["cell_type"]
        assert fast_path_keys(parse_formula("cell_type + batch"), opts) == ["cell_type", "batch"]
        assert fast_path_keys(parse_formula("batch + cell_type"), opts) is None
        assert fast_path_keys(parse_formula("s(pseudotime)"), opts) is None

    def test_custom_covariate_names(self):
        opts = FitOptions(group_covariate="cluster")
        assert fast_path_keys(parse_formula("cluster"), opts) == ["cluster"]

    def test_category_means(self, inputs):
        covariates, counts = inputs
        res = _fit(inputs, "g_nb", "nb", mu="cell_type")
        assert res.model_type == "glm.nb"
        assert list(res.mean.index) == list(covariates.index)
        for level in ("A", "B"):
            in_group = (covariates["cell_type"] == level).to_numpy()
            group_mean = res.mean[in_group]
            assert group_mean.nunique() == 1
            np.testing.assert_allclose(
                group_mean.iloc[0], counts["g_nb"][in_group].mean(), rtol=1e-3
            )
        assert (res.zero == 0).all()
        assert set(res.fit) == {("A",), ("B",)} or set(res.fit) == {"A", "B"}

    def test_failed_split_keeps_alignment(self, inputs, monkeypatch):
        covariates, counts = inputs
        failed = (covariates["cell_type"] == "B").to_numpy()
        counts = counts.copy()
        counts.loc[failed, "g_nb"] += 100
        real = fitter_mod._intercept_nb

        def flaky(y):
            if y.mean() > 50:
                raise FloatingPointError("no")
            return real(y)

        monkeypatch.setattr(fitter_mod, "_intercept_nb", flaky)
        res = _fit((covariates, counts), "g_nb", "nb", mu="cell_type + batch", trace=True)
        assert list(res.mean.index) == list(covariates.index)
        assert list(res.dispersion.index) == list(covariates.index)
        np.testing.assert_allclose(res.mean[failed], counts["g_nb"][failed])
        assert (res.dispersion[failed] == 0).all()
        assert any(e.source == "glm.nb" and e.severity == "warning" for e in res.log)

    def test_cell_filter_removes_rows_before_fast_path(self, inputs):
        covariates, counts = inputs
        counts = counts.copy()
        counts.loc[covariates["batch"] == "z", "g_pois"] = 0
        res = fit_feature(
            "g_pois",
            "nb",
            covariates,
            counts,
            parse_formula("cell_type + batch"),
            parse_formula("1"),
            "gene",
            frozenset(),
            FitOptions(filter_cells=True),
        )
        removed = set(res.removed_cells)
        assert removed == set(covariates.index[covariates["batch"] == "z"])
        assert set(res.mean.index).isdisjoint(removed)
