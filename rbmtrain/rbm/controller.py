from __future__ import annotations

import math
from enum import Enum

from .backend import GradientStats
from ..common import StallMonitor


MIN_LEARNING_RATE = 0.001
MAX_LEARNING_RATE = 1.0

# (stall count that must be exceeded, learning rate cap)
LEARNING_RATE_RATCHET = ((50, 0.03), (100, 0.02), (150, 0.01), (200, 0.005), (250, 0.002))


class StopReason(Enum):
    CONVERGED = "converged"
    STALLED = "stalled"
    MAX_EPOCHS = "max_epochs"
    USER_CANCELLED = "user_cancelled"
    FAILED = "failed"


def clamp_learning_rate(learning_rate: float) -> float:
    return min(max(learning_rate, MIN_LEARNING_RATE), MAX_LEARNING_RATE)


def adjust_learning_rate(learning_rate: float,
                         dot: float) -> float:
    """Grow the rate while successive gradients agree, shrink it while they point against each other."""
    if dot > 0.5:
        learning_rate *= 1.2
    elif dot > 0.3:
        learning_rate *= 1.1
    elif dot < -0.5:
        learning_rate /= 1.2
    elif dot < -0.3:
        learning_rate /= 1.1
    return clamp_learning_rate(learning_rate)


class AdaptiveController:
    def __init__(self,
                 n_weights: int,
                 learning_rate: float,
                 start_momentum: float,
                 end_momentum: float,
                 n_chain_start: int,
                 n_chain_end: int,
                 n_chain_rate: float,
                 convergence_crit: float,
                 max_no_imp: int):
        """Tunes learning rate, momentum and Markov chain length during one training run.

        Per batch, the learning rate follows the normalized dot product between this batch's weight gradient and the
        previous one. Per epoch, momentum and chain length are smoothed toward their end values, and the convergence
        and stall tests are run on the ratio of largest weight increment to largest weight.

        Parameters:
            n_weights: nhid * n_inputs. Only used to scale the (purely informational) smoothed gradient length.
            learning_rate: Starting learning rate. Clamped to [0.001, 1].
            start_momentum, end_momentum: Momentum starts at the former and drifts toward the latter.
            n_chain_start, n_chain_end: Markov chain length starts at the former and drifts toward the latter.
            n_chain_rate: Exponential smoothing rate per epoch for the chain length drift.
            convergence_crit: Converged once max increment / max weight falls below this.
            max_no_imp: Stalled once that ratio failed to improve more than this many epochs in a row.
        """
        self.n_weights = n_weights
        self.learning_rate = clamp_learning_rate(learning_rate)
        self.momentum = start_momentum
        self.end_momentum = end_momentum
        self.chain_length = float(n_chain_start)
        self.n_chain_end = n_chain_end
        self.n_chain_rate = n_chain_rate
        self.convergence_crit = convergence_crit
        self.stall_monitor = StallMonitor(patience=max_no_imp)

        self.len_prev = None
        self.smoothed_len = 0.
        self.smoothed_dot = 0.
        self.smoothed_ratio = None
        self.last_ratio = None

    @property
    def n_chain(self) -> int:
        """Number of Markov chain steps to run this epoch: the smoothed chain length, rounded."""
        return int(self.chain_length + 0.5)

    @property
    def n_no_improvement(self) -> int:
        return self.stall_monitor.disappointment

    @property
    def best_crit(self) -> float | None:
        return self.stall_monitor.best_value

    def batch_update(self,
                     stats: GradientStats) -> float | None:
        """Adjust learning rate and momentum after a batch. Returns the normalized dot product, if there was one.

        The first call only records the gradient length, since there is no previous gradient to compare with.
        """
        if self.len_prev is None:
            self.len_prev = stats.length
            self.smoothed_len = math.sqrt(stats.length / self.n_weights)
            self.smoothed_dot = 0.
            return None

        norm = math.sqrt(stats.length * self.len_prev)
        dot = stats.dot / norm if norm > 0 else 0.
        self.len_prev = stats.length

        self.learning_rate = adjust_learning_rate(self.learning_rate, dot)
        if abs(dot) > 0.3:  # oscillation damping
            self.momentum /= 1.5

        self.smoothed_len = 0.99 * self.smoothed_len + 0.01 * math.sqrt(stats.length / self.n_weights)
        self.smoothed_dot = 0.9 * self.smoothed_dot + 0.1 * dot
        return dot

    def epoch_update(self,
                     max_increment: float,
                     max_weight: float) -> StopReason | None:
        """End-of-epoch convergence tests, then momentum/chain length drift and the learning rate ratchet.

        Parameters:
            max_increment: Largest weight increment over all batches of the epoch.
            max_weight: Largest weight magnitude at the end of the epoch.

        Returns:
            Reason to stop, or None to keep going. When stopping, nothing else is updated.
        """
        ratio = max_increment / max_weight if max_weight > 0 else math.inf
        self.last_ratio = ratio
        if ratio < self.convergence_crit:
            return StopReason.CONVERGED
        if self.stall_monitor.update(ratio):
            return StopReason.STALLED

        self.momentum = 0.99 * self.momentum + 0.01 * self.end_momentum
        self.chain_length = (1.0 - self.n_chain_rate) * self.chain_length + self.n_chain_rate * self.n_chain_end
        if self.smoothed_ratio is None:
            self.smoothed_ratio = ratio
        else:
            self.smoothed_ratio = 0.9 * self.smoothed_ratio + 0.1 * ratio

        # prevent wild gyrations when near convergence
        for threshold, cap in LEARNING_RATE_RATCHET:
            if self.n_no_improvement > threshold and self.learning_rate > cap:
                self.learning_rate = cap
        return None
