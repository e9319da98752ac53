from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any, NamedTuple

import numpy as np
from torch.utils.tensorboard import SummaryWriter
from tqdm.auto import tqdm

from .backend import ComputeBackend, TorchBackend
from .controller import AdaptiveController, StopReason
from .initializer import FAILED, InitResult, initialize_weights
from .model import RBM
from ..common import (CancellationToken, Diagnostics, SeedStream, UniformSource, as_data_matrix, batch_bounds,
                      batch_sizes, clamped_data_mean, shuffle_in_place)
from ..errors import RBMError
from ..types import VisibleFloat


class EpochOutcome(NamedTuple):
    """What one pass of the batch loop produced.

    error_sum: Reconstruction error summed over all batches that were run (not yet normalized).
    max_increment: Largest weight increment seen in any of those batches.
    completed: False if cancellation cut the batch loop short, in which case error_sum is an undercount.
    """
    error_sum: float
    max_increment: float
    completed: bool


class TrainingResult(NamedTuple):
    """Outcome of RBMTrainer.train.

    error: Mean reconstruction error per case and input of the last complete epoch. -1.0 on failure.
    best_error: Lowest such error over all complete epochs. -1.0 on failure.
    n_epochs: Number of complete epochs.
    stop_reason: Why training ended.
    params: The trained parameters (the same object that was passed in, updated in place). None on failure.
    history: Maps metric names to numpy arrays with one entry per complete epoch.
    diagnostics: Backend timings for this run.
    failure: The exception that aborted training, if any.
    """
    error: float
    best_error: float
    n_epochs: int
    stop_reason: StopReason
    params: RBM | None
    history: dict[str, np.ndarray]
    diagnostics: Diagnostics
    failure: RBMError | None = None


class RBMTrainer:
    def __init__(self,
                 backend: ComputeBackend,
                 n_batches: int,
                 max_epochs: int,
                 n_chain_start: int = 1,
                 n_chain_end: int = 1,
                 n_chain_rate: float = 0.5,
                 mean_field: bool = False,
                 greedy_mean_field: bool = False,
                 max_no_imp: int = 100,
                 convergence_crit: float = 1e-3,
                 learning_rate: float = 0.1,
                 start_momentum: float = 0.5,
                 end_momentum: float = 0.9,
                 weight_penalty: float = 1e-4,
                 sparsity_penalty: float = 0.,
                 sparsity_target: float = 0.1,
                 seed: int = 1,
                 uniform: UniformSource | None = None,
                 cancel: CancellationToken | None = None,
                 verbose: bool = True,
                 use_tqdm: bool = False,
                 tensorboard_logdir: str | None = None,
                 log: Callable[[str], None] = print):
        """Trainer for binary Restricted Boltzmann Machines via contrastive divergence on a compute backend.

        Each epoch reshuffles the data and runs over all batches. Each batch runs a short Markov chain starting from the
        data, then updates biases and weights with momentum. Learning rate, momentum and chain length are tuned along
        the way (see AdaptiveController). Training stops on convergence, after too many epochs without improvement,
        after max_epochs, or on user cancellation.

        Parameters:
            backend: Where all the number crunching happens. Initialized and cleaned up inside each train call.
            n_batches: Number of batches per epoch. Batches are as equal in size as possible.
            max_epochs: Maximum number of full passes over the data.
            n_chain_start: Markov chain length in the first epoch, generally 1.
            n_chain_end: Markov chain length the schedule drifts toward, generally 1 or a small number.
            n_chain_rate: Exponential smoothing rate per epoch for that drift.
            mean_field: If True, the chain's visible reconstructions (and the positive-phase hidden activations) are
                        probabilities instead of samples.
            greedy_mean_field: If True, data batches are used as probabilities instead of being sampled.
            max_no_imp: Stop once the convergence ratio failed to improve for more than this many epochs in a row.
            convergence_crit: Stop once max weight increment / max weight magnitude over an epoch falls below this.
            learning_rate: Starting learning rate. Adapted per batch and always kept in [0.001, 1].
            start_momentum: Momentum in the first epoch.
            end_momentum: Momentum the schedule drifts toward.
            weight_penalty: Weight decay coefficient.
            sparsity_penalty: How strongly hidden unit activation is pushed toward sparsity_target. 0 disables it.
            sparsity_target: Desired fraction of time each hidden unit is on.
            seed: Starting state of the integer seed stream that drives all backend sampling.
            uniform: Source of uniform random numbers for shuffling. Defaults to one seeded with seed, so that two runs
                     with the same seed and data see the same shuffles and sampling decisions.
            cancel: Polled at batch and epoch granularity, never during the first epoch.
            verbose: If True, report on training progress throughout.
            use_tqdm: If True, and verbose is also True, show a progress bar over epochs.
            tensorboard_logdir: If given, will log per-epoch error, convergence ratio and controller state to the
                                specified directory for visualization with TensorBoard. Pass None to disable logging.
            log: Where progress and error messages go.
        """
        if n_batches < 1:
            raise ValueError(f"n_batches must be at least 1, got {n_batches}")
        if max_epochs < 1:
            raise ValueError(f"max_epochs must be at least 1, got {max_epochs}")
        if n_chain_start < 1 or n_chain_end < 1:
            raise ValueError(f"Markov chain lengths must be at least 1, got {n_chain_start}, {n_chain_end}")
        if not 0 <= n_chain_rate <= 1:
            raise ValueError(f"n_chain_rate must be in [0, 1], got {n_chain_rate}")
        if max_no_imp < 0:
            raise ValueError(f"max_no_imp must be non-negative, got {max_no_imp}")
        if convergence_crit < 0:
            raise ValueError(f"convergence_crit must be non-negative, got {convergence_crit}")
        if learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {learning_rate}")
        if not (0 <= start_momentum < 1 and 0 <= end_momentum < 1):
            raise ValueError(f"Momentum must be in [0, 1), got {start_momentum}, {end_momentum}")
        if weight_penalty < 0 or sparsity_penalty < 0:
            raise ValueError(f"Penalties must be non-negative, got {weight_penalty}, {sparsity_penalty}")
        if not 0 < sparsity_target < 1:
            raise ValueError(f"sparsity_target must be in (0, 1), got {sparsity_target}")
        SeedStream.from_seed(seed)

        self.backend = backend
        self.n_batches = n_batches
        self.max_epochs = max_epochs
        self.n_chain_start = n_chain_start
        self.n_chain_end = n_chain_end
        self.n_chain_rate = n_chain_rate
        self.mean_field = mean_field
        self.greedy_mean_field = greedy_mean_field
        self.max_no_imp = max_no_imp
        self.convergence_crit = convergence_crit
        self.learning_rate = learning_rate
        self.start_momentum = start_momentum
        self.end_momentum = end_momentum
        self.weight_penalty = weight_penalty
        self.sparsity_penalty = sparsity_penalty
        self.sparsity_target = sparsity_target
        self.seed = seed
        self.uniform = uniform if uniform is not None else UniformSource(seed)
        self.cancel = cancel if cancel is not None else CancellationToken()
        self.verbose = verbose
        self.use_tqdm = use_tqdm
        self.tensorboard_logdir = tensorboard_logdir
        self.log = log

        # per-run state, reset at the start of each train call
        self.controller = None
        self.seeds = None
        self.shuffle_index = None
        self.diagnostics = None
        self.writer = None

    def call(self,
             operation: str,
             *args) -> Any:
        """Run one backend operation, timing it."""
        with self.diagnostics.timed(operation):
            return getattr(self.backend, operation)(*args)

    def next_seed(self) -> int:
        self.seeds = self.seeds.advance()
        return self.seeds.state

    def train(self,
              data,
              n_inputs: int,
              params: RBM) -> TrainingResult:
        """Main training loop + housekeeping.

        Parameters:
            data: Cases x columns, values in [0, 1]. Only the first n_inputs columns are used.
            n_inputs: Number of visible units.
            params: Starting weights and biases, e.g. from initialize_weights. Updated in place at the end of
                    training, but only if training did not fail.
        """
        data = as_data_matrix(data)
        n_cases, n_cols = data.shape
        if not 1 <= n_inputs <= n_cols:
            raise ValueError(f"n_inputs must be in [1, {n_cols}], got {n_inputs}")
        if params.n_inputs != n_inputs:
            raise ValueError(f"Parameters are for {params.n_inputs} inputs, but n_inputs is {n_inputs}")
        max_batch = max(batch_sizes(n_cases, self.n_batches))
        data_mean = clamped_data_mean(data, n_inputs)

        self.controller = AdaptiveController(
            n_weights=params.n_hidden * n_inputs, learning_rate=self.learning_rate,
            start_momentum=self.start_momentum, end_momentum=self.end_momentum, n_chain_start=self.n_chain_start,
            n_chain_end=self.n_chain_end, n_chain_rate=self.n_chain_rate, convergence_crit=self.convergence_crit,
            max_no_imp=self.max_no_imp)
        self.seeds = SeedStream.from_seed(self.seed)
        self.shuffle_index = np.arange(n_cases, dtype=np.int64)
        self.diagnostics = Diagnostics()
        self.writer = SummaryWriter(self.tensorboard_logdir) if self.tensorboard_logdir is not None else None

        history = defaultdict(list)
        error = best_error = FAILED
        stop_reason = StopReason.MAX_EPOCHS
        if self.verbose:
            self.log(f"Training for up to {self.max_epochs} epochs at {self.n_batches} batches per epoch.")
        try:
            self.call("init", data, n_inputs, params.n_hidden, data_mean, params, max_batch,
                      self.mean_field, self.greedy_mean_field)

            for epoch_ind in tqdm(iterable=range(self.max_epochs), desc="Epochs", leave=True,
                                  disable=not self.use_tqdm or not self.verbose):
                outcome = self.train_epoch(epoch_ind, n_cases)

                # the first epoch always runs to completion
                if epoch_ind and self.cancel.poll():
                    self.cancel.clear()
                    self.report_cancellation(outcome, n_cases * n_inputs)
                    stop_reason = StopReason.USER_CANCELLED
                    break

                error = outcome.error_sum / (n_cases * n_inputs)
                best_error = error if epoch_ind == 0 else min(best_error, error)
                should_stop = self.finish_epoch(epoch_ind, error, best_error, outcome.max_increment, history)
                if should_stop is not None:
                    stop_reason = should_stop
                    break

            trained = self.call("pull_parameters")
        except RBMError as failure:
            for line in failure.describe():
                self.log(line)
            return TrainingResult(error=FAILED, best_error=FAILED, n_epochs=len(history["error"]),
                                  stop_reason=StopReason.FAILED, params=None, history=self.finalize_history(history),
                                  diagnostics=self.diagnostics, failure=failure)
        finally:
            self.backend.cleanup()
            if self.writer is not None:
                self.writer.close()

        params.copy_from(trained)
        if self.verbose:
            self.log(f"Training stopped ({stop_reason.value}) after {len(history['error'])} epochs. "
                     f"Final error {error:.6g}, best {best_error:.6g}")
            self.log("")
            for line in self.diagnostics.report():
                self.log(line)
        return TrainingResult(error=error, best_error=best_error, n_epochs=len(history["error"]),
                              stop_reason=stop_reason, params=params, history=self.finalize_history(history),
                              diagnostics=self.diagnostics)

    def train_epoch(self,
                    epoch_ind: int,
                    n_cases: int) -> EpochOutcome:
        """One epoch: reshuffle, then run every batch through the Markov chain and the parameter updates."""
        shuffle_in_place(self.shuffle_index, self.uniform)
        self.call("push_shuffle", self.shuffle_index)

        error_sum = 0.
        max_increment = 0.
        for batch_start, batch_stop in batch_bounds(n_cases, self.n_batches):
            # greedy mean field fetches don't sample, so they reuse the current seed without advancing
            if not self.greedy_mean_field:
                self.next_seed()
            self.call("fetch_visible", batch_start, batch_stop, self.seeds.state)
            self.call("visible_to_hidden")

            error_vec = self.markov_chain()
            self.update_parameters()
            error_sum += error_vec.sum().item()
            max_increment = max(max_increment, self.call("max_weight_increment"))

            if epoch_ind and self.cancel.poll():
                return EpochOutcome(error_sum, max_increment, completed=False)

            self.controller.batch_update(self.call("gradient_length_and_dot"))
        return EpochOutcome(error_sum, max_increment, completed=True)

    def markov_chain(self) -> VisibleFloat:
        """Gibbs chain starting from the data's hidden probabilities.

        Returns:
            Per-input reconstruction error from the first step only. This is the one-step CD error, no matter how long
            the chain is.
        """
        error_vec = None
        for chain_ind in range(self.controller.n_chain):
            self.call("sample_hidden", self.next_seed())
            self.call("hidden_to_visible", self.next_seed())
            if chain_ind == 0:
                error_vec = self.call("reconstruction_error")
            self.call("visible2_to_hidden2")
        return error_vec

    def update_parameters(self):
        learning_rate = self.controller.learning_rate
        momentum = self.controller.momentum
        self.call("update_visible_bias", learning_rate, momentum)
        self.call("update_hidden_bias", learning_rate, momentum, self.next_seed(), self.sparsity_penalty,
                  self.sparsity_target)
        self.call("update_weights", learning_rate, momentum, self.weight_penalty, self.sparsity_penalty,
                  self.sparsity_target)
        self.call("transpose_weights")

    def finish_epoch(self,
                     epoch_ind: int,
                     error: float,
                     best_error: float,
                     max_increment: float,
                     history: dict[str, list[float]]) -> StopReason | None:
        """Bunch of housekeeping after each complete epoch.

        This function:
            - Runs the convergence and stall tests and the controller's per-epoch schedule.
            - Collects metrics in one place.
            - Optionally writes Tensorboard summaries.

        Returns:
            Reason to stop training, or None.
        """
        should_stop = self.controller.epoch_update(max_increment, self.call("max_weight_magnitude"))
        ratio = self.controller.last_ratio

        metrics = {"error": error,
                   "best_error": best_error,
                   "ratio": ratio,
                   "learning_rate": self.controller.learning_rate,
                   "momentum": self.controller.momentum,
                   "chain_length": self.controller.chain_length,
                   "smoothed_ratio": self.controller.smoothed_ratio if self.controller.smoothed_ratio is not None
                   else ratio,
                   "smoothed_len": self.controller.smoothed_len,
                   "smoothed_dot": self.controller.smoothed_dot}
        for key, value in metrics.items():
            history[key].append(value)
            if self.writer is not None:
                self.writer.add_scalar(key, value, epoch_ind)

        if self.verbose:
            self.log(f"Epoch {epoch_ind + 1}: error {error:.6g}  max inc/w {ratio:.4g}  "
                     f"LR {self.controller.learning_rate:.4g}  momentum {self.controller.momentum:.4g}  "
                     f"chain {self.controller.chain_length:.3g}")
        if self.writer is not None:
            self.writer.flush()
        return should_stop

    def report_cancellation(self,
                            outcome: EpochOutcome,
                            n_values: int):
        self.log("")
        self.log("WARNING... User interrupted training!  Incomplete results")
        if not outcome.completed:
            # remaining batches were skipped, so this error is too small
            self.log(f"           Partial epoch error {outcome.error_sum / n_values:.6g} is an undercount and was "
                     f"discarded")
        self.log("")

    @staticmethod
    def finalize_history(history: dict[str, list[float]]) -> dict[str, np.ndarray]:
        return {key: np.array(values) for key, values in history.items()}


def fit_rbm(data,
            n_inputs: int,
            n_hidden: int,
            backend: ComputeBackend | dict[str, Any] | None = None,
            trainer: dict[str, Any] | None = None,
            initializer: dict[str, Any] | None = None,
            uniform: UniformSource | None = None,
            cancel: CancellationToken | None = None,
            verbose: bool = True,
            log: Callable[[str], None] = print) -> tuple[InitResult, TrainingResult | None]:
    """Find good starting weights, then train from them. This is how one RBM layer gets pretrained.

    Parameters:
        data, n_inputs, n_hidden: See initialize_weights.
        backend: A compute backend, or keyword arguments for a TorchBackend. Defaults to a CPU TorchBackend.
        trainer: Keyword arguments for RBMTrainer. n_batches and max_epochs are required.
        initializer: Keyword arguments for initialize_weights. n_batches defaults to the trainer's.
        uniform: Shared by both stages. Defaults to an unseeded one.
        cancel: Shared by both stages. Cancelling the initializer only cuts the trials short; training still runs.
        verbose, log: See RBMTrainer.

    Returns:
        Both stages' results. Training is skipped (None) if initialization failed.
    """
    if backend is None or isinstance(backend, dict):
        backend = TorchBackend(**(backend or {}))
    trainer = dict(trainer or {})
    initializer = dict(initializer or {})
    initializer.setdefault("n_batches", trainer.get("n_batches", 1))
    uniform = uniform if uniform is not None else UniformSource()
    cancel = cancel if cancel is not None else CancellationToken()

    init_result = initialize_weights(data, n_inputs, n_hidden, backend, uniform=uniform, cancel=cancel,
                                     verbose=verbose, log=log, **initializer)
    if init_result.params is None:
        return init_result, None
    if verbose:
        log(f"Initial reconstruction error {init_result.error:.6g} after {init_result.n_trials} trials")

    rbm_trainer = RBMTrainer(backend, uniform=uniform, cancel=cancel, verbose=verbose, log=log, **trainer)
    return init_result, rbm_trainer.train(data, n_inputs, init_result.params)
