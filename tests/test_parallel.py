"""Tests for the parallel dispatcher."""

import pytest

from scmarginal._config import ParallelBackend
from scmarginal.parallel import (
    ClusterConfig,
    ParallelConfigError,
    dispatch,
    resolve_parallel_config,
)


def _echo(feature, family, edf, scale):
    """Module-level so the process pools can pickle it."""
    return (feature, family, edf, scale)


class TestResolveParallelConfig:
    def test_multiprocess_takes_none(self):
        assert resolve_parallel_config(ParallelBackend.MULTIPROCESS, None, 2) is None

    def test_multiprocess_rejects_config(self):
        with pytest.raises(ParallelConfigError, match="takes no parallel configuration"):
            resolve_parallel_config(ParallelBackend.MULTIPROCESS, ClusterConfig(), 2)

    def test_progress_rejects_config(self):
        with pytest.raises(ParallelConfigError):
            resolve_parallel_config(ParallelBackend.PROGRESS, {"workers": 2}, 2)

    def test_cluster_default(self):
        config = resolve_parallel_config(ParallelBackend.CLUSTER, None, 3)
        assert config == ClusterConfig(workers=3, start_method="spawn")

    def test_cluster_workers_overridden_by_n_cores(self):
        config = resolve_parallel_config(ParallelBackend.CLUSTER, ClusterConfig(workers=8), 2)
        assert config.workers == 2

    def test_cluster_rejects_other_types(self):
        with pytest.raises(ParallelConfigError, match="needs a ClusterConfig"):
            resolve_parallel_config(ParallelBackend.CLUSTER, {"workers": 2}, 2)

    def test_unknown_start_method(self):
        with pytest.raises(ParallelConfigError, match="not available"):
            resolve_parallel_config(
                ParallelBackend.CLUSTER, ClusterConfig(start_method="teleport"), 2
            )

    @pytest.mark.parametrize("n_cores", [0, -1, 1.5, True])
    def test_bad_n_cores(self, n_cores):
        with pytest.raises(ValueError, match="positive integer"):
            resolve_parallel_config(ParallelBackend.MULTIPROCESS, None, n_cores)

    def test_config_error_is_value_error(self):
        assert issubclass(ParallelConfigError, ValueError)


class TestDispatch:
    FEATURES = ["g1", "g2", "g3", "g4"]
    FAMILIES = ["nb", "poisson", "nb", "zip"]

    def _check(self, out):
        assert set(out) == set(self.FEATURES)
        assert out["g2"] == ("g2", "poisson", None, 10)
        assert out["g3"] == ("g3", "nb", 42, 10)

    @pytest.mark.parametrize("backend", list(ParallelBackend))
    def test_serial(self, backend):
        out = dispatch(
            _echo,
            self.FEATURES,
            self.FAMILIES,
            {"scale": 10},
            {"g3": 42},
            backend=backend,
            n_cores=1,
        )
        self._check(out)
        assert list(out) == self.FEATURES

    @pytest.mark.parametrize("backend", [ParallelBackend.MULTIPROCESS, ParallelBackend.PROGRESS])
    def test_joblib_pools(self, backend):
        out = dispatch(
            _echo,
            self.FEATURES,
            self.FAMILIES,
            {"scale": 10},
            {"g3": 42},
            backend=backend,
            n_cores=2,
        )
        self._check(out)

    def test_cluster_pool(self):
        config = ClusterConfig(workers=2)
        out = dispatch(
            _echo,
            self.FEATURES,
            self.FAMILIES,
            {"scale": 10},
            {"g3": 42},
            backend=ParallelBackend.CLUSTER,
            n_cores=2,
            config=config,
        )
        self._check(out)

    def test_empty(self):
        assert dispatch(_echo, [], [], {"scale": 1}) == {}

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="same length"):
            dispatch(_echo, ["g1"], [], {"scale": 1})
