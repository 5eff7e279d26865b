"""Parallel dispatcher.

Fans the per-feature fitter out over features and fans the results
back in as a feature-keyed dict.  Three interchangeable pools are
available (see :class:`~scmarginal._config.ParallelBackend`):

* ``MULTIPROCESS`` — ``joblib.Parallel`` on the loky process backend.
* ``CLUSTER`` — a ``concurrent.futures.ProcessPoolExecutor`` with an
  explicit start method.  The shared arguments are sent once per
  worker through the pool initializer rather than once per task.
* ``PROGRESS`` — ``joblib.Parallel`` yielding results as they complete,
  wrapped in a ``tqdm`` progress bar.

With ``n_cores == 1`` every backend runs the features in-process, one
after the other; the progress backend still reports progress.

Workers only read the shared arguments.  Results come back in
completion order; callers rely on the feature keys, never on order.
"""

from __future__ import annotations

import logging
import multiprocessing
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import Any

from joblib import Parallel, delayed
from tqdm.auto import tqdm

from ._config import ParallelBackend

logger = logging.getLogger(__name__)


class ParallelConfigError(ValueError):
    """Raised when a parallel configuration does not fit the backend."""


@dataclass(frozen=True)
class ClusterConfig:
    """Configuration of the ``CLUSTER`` backend.

    Attributes:
        workers: Pool size.  Always replaced by the call's ``n_cores``.
        start_method: :mod:`multiprocessing` start method of the pool.
    """

    workers: int | None = None
    start_method: str = "spawn"


def resolve_parallel_config(
    backend: ParallelBackend,
    config: Any,
    n_cores: int,
) -> ClusterConfig | None:
    """Validate *config* against *backend* and fill in the worker count.

    Args:
        backend: Resolved concurrency backend.
        config: User-supplied configuration object (or ``None``).
        n_cores: Requested number of workers.

    Returns:
        The :class:`ClusterConfig` to use for ``CLUSTER``, else ``None``.

    Raises:
        ValueError: If *n_cores* is not a positive integer.
        ParallelConfigError: If *config* is incompatible with *backend*
            or names an unavailable start method.
    """
    if isinstance(n_cores, bool) or not isinstance(n_cores, int) or n_cores < 1:
        raise ValueError(f"n_cores must be a positive integer, got {n_cores!r}.")

    if backend is not ParallelBackend.CLUSTER:
        if config is not None:
            raise ParallelConfigError(
                f"The {backend.value!r} backend takes no parallel configuration; "
                f"got {type(config).__name__}."
            )
        return None

    if config is None:
        config = ClusterConfig()
    if not isinstance(config, ClusterConfig):
        raise ParallelConfigError(
            "The 'cluster' backend needs a ClusterConfig, "
            f"got {type(config).__name__}."
        )
    available = multiprocessing.get_all_start_methods()
    if config.start_method not in available:
        raise ParallelConfigError(
            f"Start method {config.start_method!r} is not available on this "
            f"platform. Choose from: {available}"
        )
    if config.workers is not None and config.workers != n_cores:
        logger.debug("ClusterConfig.workers=%s overridden by n_cores=%d", config.workers, n_cores)
    return replace(config, workers=n_cores)


# ------------------------------------------------------------------ #
# Cluster worker state
# ------------------------------------------------------------------ #

# Populated once per worker process by the pool initializer.
_WORKER_STATE: dict[str, Any] = {}


def _init_worker(fn: Callable[..., Any], shared: Mapping[str, Any]) -> None:
    _WORKER_STATE["fn"] = fn
    _WORKER_STATE["shared"] = dict(shared)


def _run_in_worker(feature: str, family: Any, edf: float | None) -> Any:
    fn = _WORKER_STATE["fn"]
    return fn(feature=feature, family=family, edf=edf, **_WORKER_STATE["shared"])


def _keyed(
    fn: Callable[..., Any],
    feature: str,
    family: Any,
    edf: float | None,
    shared: Mapping[str, Any],
) -> tuple[str, Any]:
    return feature, fn(feature=feature, family=family, edf=edf, **shared)


# ------------------------------------------------------------------ #
# Dispatch
# ------------------------------------------------------------------ #


def dispatch(
    fn: Callable[..., Any],
    features: Sequence[str],
    families: Sequence[Any],
    shared: Mapping[str, Any],
    overrides: Mapping[str, float] | None = None,
    *,
    backend: ParallelBackend = ParallelBackend.MULTIPROCESS,
    n_cores: int = 1,
    config: ClusterConfig | None = None,
) -> dict[str, Any]:
    """Call *fn* once per feature and collect the results by feature.

    Each call is ``fn(feature=..., family=..., edf=..., **shared)``.

    Args:
        fn: Per-feature function; must be picklable (module-level) for
            the process backends.
        features: Features to run.
        families: One family per feature, aligned with *features*.
        shared: Read-only keyword arguments passed to every call.
        overrides: Per-feature ``edf`` values; missing features get
            ``None``.
        backend: Resolved concurrency backend.
        n_cores: Worker count cap.
        config: Cluster configuration from
            :func:`resolve_parallel_config`.

    Returns:
        ``{feature: result}`` in completion order.
    """
    if len(features) != len(families):
        raise ValueError("features and families must have the same length.")
    overrides = overrides or {}
    tasks = [(f, fam, overrides.get(f)) for f, fam in zip(features, families)]
    if not tasks:
        return {}

    logger.info(
        "Fitting %d features on the %s backend with %d worker(s)",
        len(tasks),
        backend.value,
        n_cores,
    )
    show_progress = backend is ParallelBackend.PROGRESS

    # Sequential path for a single worker.
    if n_cores == 1:
        out: dict[str, Any] = {}
        for feature, family, edf in tqdm(tasks, disable=not show_progress, desc="Fitting"):
            out[feature] = fn(feature=feature, family=family, edf=edf, **shared)
        return out

    if backend is ParallelBackend.CLUSTER:
        config = config or ClusterConfig(workers=n_cores)
        context = multiprocessing.get_context(config.start_method)
        out = {}
        with ProcessPoolExecutor(
            max_workers=config.workers or n_cores,
            mp_context=context,
            initializer=_init_worker,
            initargs=(fn, dict(shared)),
        ) as executor:
            futures = {
                executor.submit(_run_in_worker, feature, family, edf): feature
                for feature, family, edf in tasks
            }
            for future in as_completed(futures):
                out[futures[future]] = future.result()
        return out

    if backend is ParallelBackend.PROGRESS:
        stream = Parallel(n_jobs=n_cores, backend="loky", return_as="generator_unordered")(
            delayed(_keyed)(fn, feature, family, edf, shared) for feature, family, edf in tasks
        )
        return dict(tqdm(stream, total=len(tasks), desc="Fitting"))

    results = Parallel(n_jobs=n_cores, backend="loky")(
        delayed(fn)(feature=feature, family=family, edf=edf, **shared)
        for feature, family, edf in tasks
    )
    return {feature: result for (feature, _, _), result in zip(tasks, results)}


__all__ = [
    "ClusterConfig",
    "ParallelConfigError",
    "dispatch",
    "resolve_parallel_config",
]
