from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple

import numpy as np
import torch

from .backend import ComputeBackend
from .model import RBM, BestSnapshot
from ..common import (CancellationToken, Diagnostics, SeedStream, UniformSource, as_data_matrix, batch_bounds,
                      batch_sizes, clamped_data_mean, logit)
from ..errors import RBMError
from ..types import VisibleFloat


FAILED = -1.0


class InitResult(NamedTuple):
    """Outcome of initialize_weights.

    error: Best mean reconstruction error per case and input, or -1.0 if the backend failed.
    params: Best weights and biases found. None on failure.
    n_trials: How many random weight sets were actually evaluated.
    cancelled: True if the user interrupted before all trials were done.
    failure: The exception that aborted initialization, if any.
    """
    error: float
    params: RBM | None
    n_trials: int
    cancelled: bool = False
    failure: RBMError | None = None


def draw_trial_weights(n_inputs: int,
                       n_hidden: int,
                       data_mean: VisibleFloat,
                       uniform: UniformSource) -> RBM:
    """One random starting point, with biases that center both layers' activations.

    Weights are diff * (u - 0.5) for a scale diff drawn once per trial. Hidden biases cancel each hidden unit's
    average input, visible biases start at the log-odds of the data mean minus half the column weight sum.
    """
    diff = 4.0 * uniform.next_uniform() / np.sqrt(np.sqrt(float(n_inputs * n_hidden)))
    w = torch.as_tensor(diff * (uniform.uniform_array((n_hidden, n_inputs)) - 0.5), dtype=torch.float64)
    hid_bias = -(w @ data_mean)
    in_bias = logit(data_mean) - 0.5 * w.sum(dim=0)
    return RBM.from_tensors(w, in_bias, hid_bias)


def initialize_weights(data,
                       n_inputs: int,
                       n_hidden: int,
                       backend: ComputeBackend,
                       n_rand: int = 20,
                       n_batches: int = 1,
                       uniform: UniformSource | None = None,
                       cancel: CancellationToken | None = None,
                       diagnostics: Diagnostics | None = None,
                       verbose: bool = True,
                       log: Callable[[str], None] = print) -> InitResult:
    """Try several random weight sets and keep the one with the lowest one-step reconstruction error.

    No training happens here. Each trial is pushed to the backend and evaluated by a deterministic data -> hidden
    probabilities -> visible probabilities pass over all batches. Since training error is stochastic, don't expect an
    exact match between this error and what the first training epoch reports; they should be close though.

    Parameters:
        data: Cases x columns, values in [0, 1]. Only the first n_inputs columns are used.
        n_inputs: Number of visible units.
        n_hidden: Number of hidden units.
        backend: Compute backend to evaluate on. It is initialized and cleaned up inside this call.
        n_rand: Number of random weight sets to try.
        n_batches: Number of batches per evaluation pass. Only affects memory use, not the result.
        uniform: Source of uniform random numbers. Defaults to an unseeded one.
        cancel: Cleared on entry, then polled after each trial. If cancellation was requested, the best weights so far
                are returned.
        diagnostics: Accumulates backend timings. A fresh one is used if not given.
        verbose: If True, report on progress through log.
        log: Where progress and error messages go.
    """
    data = as_data_matrix(data)
    n_cases, n_cols = data.shape
    if n_rand < 1:
        raise ValueError(f"n_rand must be at least 1, got {n_rand}")
    if not 1 <= n_inputs <= n_cols:
        raise ValueError(f"n_inputs must be in [1, {n_cols}], got {n_inputs}")
    if n_hidden < 1:
        raise ValueError(f"n_hidden must be at least 1, got {n_hidden}")
    max_batch = max(batch_sizes(n_cases, n_batches))
    uniform = uniform if uniform is not None else UniformSource()
    cancel = cancel if cancel is not None else CancellationToken()
    # a request left over from earlier work must not cut this call short
    cancel.clear()
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    # fetches never sample here, so the seed is never advanced
    seed = SeedStream().state

    data_mean = clamped_data_mean(data, n_inputs)
    params = RBM(n_inputs, n_hidden)
    best = BestSnapshot.empty()
    n_trials = 0
    cancelled = False
    try:
        with diagnostics.timed("init"):
            backend.init(data, n_inputs, n_hidden, data_mean, params, max_batch,
                         mean_field=True, greedy_mean_field=True)
        with diagnostics.timed("push_shuffle"):
            backend.push_shuffle(np.arange(n_cases, dtype=np.int64))

        for _ in range(n_rand):
            params.copy_from(draw_trial_weights(n_inputs, n_hidden, data_mean, uniform))
            with diagnostics.timed("push_parameters"):
                backend.push_parameters(params)

            error = 0.
            for batch_start, batch_stop in batch_bounds(n_cases, n_batches):
                with diagnostics.timed("fetch_visible"):
                    backend.fetch_visible(batch_start, batch_stop, seed)
                with diagnostics.timed("visible_to_hidden"):
                    backend.visible_to_hidden()
                with diagnostics.timed("hidden_to_visible_direct"):
                    backend.hidden_to_visible_direct()
                with diagnostics.timed("reconstruction_error"):
                    error += backend.reconstruction_error().sum().item()
            n_trials += 1

            if best.improved_by(error):
                best = BestSnapshot.capture(error, params)
                if verbose:
                    log(f"Trial {n_trials}: new best reconstruction error {error / (n_cases * n_inputs):.6g}")

            if cancel.poll():
                cancel.clear()
                cancelled = True
                log("")
                log("WARNING... User interrupted weight initialization!  Incomplete results")
                log("")
                break
    except RBMError as failure:
        for line in failure.describe():
            log(line)
        return InitResult(error=FAILED, params=None, n_trials=n_trials, cancelled=cancelled, failure=failure)
    finally:
        backend.cleanup()

    best.restore_into(params)
    return InitResult(error=best.score / (n_cases * n_inputs), params=params, n_trials=n_trials,
                      cancelled=cancelled)
