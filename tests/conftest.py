"""Shared fixtures: a scripted backend for control flow tests, and small Bernoulli datasets."""

from collections.abc import Iterable

import pytest
import torch

from rbmtrain.errors import BackendOperationFailed
from rbmtrain.rbm import RBM, ComputeBackend, GradientStats


class ScriptedBackend(ComputeBackend):
    """Backend that does no math. It records every call and plays back scripted results."""

    def __init__(self,
                 recon_errors: Iterable[float] = (),
                 max_increments: Iterable[float] = (),
                 max_weight: float = 1.0,
                 gradient_stats: Iterable[GradientStats] = (),
                 fail_on: str | None = None,
                 init_error: Exception | None = None):
        self.recon_errors = list(recon_errors)
        self.max_increments = list(max_increments)
        self.max_weight = max_weight
        self.gradient_stats = list(gradient_stats)
        self.fail_on = fail_on
        self.init_error = init_error
        self.calls = []
        self.pushed = []
        self.cleanup_count = 0
        self.params = None
        self.n_inputs = 0

    def record(self, name, *args):
        self.calls.append((name, args))
        if name == self.fail_on:
            raise BackendOperationFailed(name, "scripted failure")

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def seeds(self, name: str) -> list[int]:
        return [args[-1] if name != "update_hidden_bias" else args[2] for op, args in self.calls if op == name]

    def init(self, data, n_inputs, n_hidden, data_mean, params, max_batch, mean_field, greedy_mean_field):
        self.record("init", n_inputs, n_hidden, max_batch, mean_field, greedy_mean_field)
        if self.init_error is not None:
            raise self.init_error
        self.params = params.clone()
        self.n_inputs = n_inputs

    def cleanup(self):
        self.cleanup_count += 1

    def push_shuffle(self, index):
        self.record("push_shuffle", index.copy())

    def push_parameters(self, params):
        self.record("push_parameters")
        self.params = params.clone()
        self.pushed.append(params.clone())

    def pull_parameters(self):
        self.record("pull_parameters")
        pulled = self.params.clone()
        pulled.w.add_(1.0)  # so tests can tell trained from initial parameters
        return pulled

    def fetch_visible(self, batch_start, batch_stop, seed):
        self.record("fetch_visible", batch_start, batch_stop, seed)

    def visible_to_hidden(self):
        self.record("visible_to_hidden")

    def sample_hidden(self, seed):
        self.record("sample_hidden", seed)

    def hidden_to_visible(self, seed):
        self.record("hidden_to_visible", seed)

    def hidden_to_visible_direct(self):
        self.record("hidden_to_visible_direct")

    def visible2_to_hidden2(self):
        self.record("visible2_to_hidden2")

    def reconstruction_error(self):
        self.record("reconstruction_error")
        total = self.recon_errors.pop(0) if self.recon_errors else 0.1 * self.n_inputs
        return torch.full((self.n_inputs,), total / self.n_inputs, dtype=torch.float64)

    def update_visible_bias(self, learning_rate, momentum):
        self.record("update_visible_bias", learning_rate, momentum)

    def update_hidden_bias(self, learning_rate, momentum, seed, sparsity_penalty, sparsity_target):
        self.record("update_hidden_bias", learning_rate, momentum, seed, sparsity_penalty, sparsity_target)

    def update_weights(self, learning_rate, momentum, weight_penalty, sparsity_penalty, sparsity_target):
        self.record("update_weights", learning_rate, momentum, weight_penalty, sparsity_penalty, sparsity_target)

    def transpose_weights(self):
        self.record("transpose_weights")

    def max_weight_increment(self):
        self.record("max_weight_increment")
        return self.max_increments.pop(0) if self.max_increments else 0.5

    def max_weight_magnitude(self):
        self.record("max_weight_magnitude")
        return self.max_weight

    def gradient_length_and_dot(self):
        self.record("gradient_length_and_dot")
        return self.gradient_stats.pop(0) if self.gradient_stats else GradientStats(length=1.0, dot=0.0)


@pytest.fixture
def scripted_backend():
    return ScriptedBackend()


@pytest.fixture
def bernoulli_data():
    """100 cases, 10 independent Bernoulli(0.3) columns plus 2 unused columns."""
    generator = torch.Generator().manual_seed(1234)
    data = (torch.rand(100, 12, generator=generator) < 0.3).to(torch.float64)
    return data


@pytest.fixture
def small_rbm():
    generator = torch.Generator().manual_seed(7)
    w = 0.1 * torch.randn(5, 10, generator=generator, dtype=torch.float64)
    return RBM.from_tensors(w, torch.zeros(10, dtype=torch.float64), torch.zeros(5, dtype=torch.float64))
