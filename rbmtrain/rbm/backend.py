"""Compute backends: where the dense linear algebra of RBM training actually happens.

The trainer and initializer never touch batch data themselves. They issue coarse operations (fetch a batch, propagate,
sample, update) to a backend which keeps its own copies of the data, the parameters and per-batch scratch memory.
Every operation is a blocking call. Failures are raised as exceptions from rbmtrain.errors.

TorchBackend is the reference implementation. It runs on any torch device; pass device="cuda" for a GPU.
"""
from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import NamedTuple, TypeVar

import torch

from .model import RBM
from ..errors import BackendOperationFailed, DeviceError, InsufficientDeviceMemory, InsufficientHostMemory
from ..types import DataMatrixFloat, ShuffleIndex, VisibleFloat


class GradientStats(NamedTuple):
    """Squared length of the current weight gradient, and its dot product with the previous batch's gradient."""
    length: float
    dot: float


class ComputeBackend(ABC):
    """Interface between the training algorithm and whatever does the number crunching.

    Call order within a training run: init, then any of the operations, then cleanup exactly once. The backend owns
    three visible layers per batch (visible1 = data, visible2 = reconstruction) and three hidden ones (hidden1 =
    probabilities from data, hidden2 = probabilities along the Markov chain, hidden_act = sampled activations).
    Operations that need randomness take an integer seed; equal seeds must give equal sampling decisions.
    """

    @abstractmethod
    def init(self,
             data: DataMatrixFloat,
             n_inputs: int,
             n_hidden: int,
             data_mean: VisibleFloat,
             params: RBM,
             max_batch: int,
             mean_field: bool,
             greedy_mean_field: bool):
        """Allocate device mirrors of data (first n_inputs columns only), parameters and scratch memory.

        Raises:
            InsufficientHostMemory, InsufficientDeviceMemory, DeviceError
        """

    @abstractmethod
    def cleanup(self):
        """Release everything allocated in init. Must be safe to call even if init failed."""

    @abstractmethod
    def push_shuffle(self,
                     index: ShuffleIndex):
        """Define which data row each position in the epoch refers to."""

    @abstractmethod
    def push_parameters(self,
                        params: RBM):
        """Overwrite the device parameters."""

    @abstractmethod
    def pull_parameters(self) -> RBM:
        """Copy the device parameters back to a new host RBM."""

    @abstractmethod
    def fetch_visible(self,
                      batch_start: int,
                      batch_stop: int,
                      seed: int):
        """Load shuffled rows [batch_start, batch_stop) into visible1, sampling them unless greedy mean field."""

    @abstractmethod
    def visible_to_hidden(self):
        """hidden1 = p(h|visible1), also copied into hidden2 to start the chain."""

    @abstractmethod
    def sample_hidden(self,
                      seed: int):
        """hidden_act = Bernoulli samples of hidden2."""

    @abstractmethod
    def hidden_to_visible(self,
                          seed: int):
        """visible2 = p(v|hidden_act), sampled unless mean field."""

    @abstractmethod
    def hidden_to_visible_direct(self):
        """visible2 = p(v|hidden1). No sampling anywhere."""

    @abstractmethod
    def visible2_to_hidden2(self):
        """hidden2 = p(h|visible2). No sampling."""

    @abstractmethod
    def reconstruction_error(self) -> VisibleFloat:
        """Per-input error between visible1 and the visible2 probabilities, summed over the batch."""

    @abstractmethod
    def update_visible_bias(self,
                            learning_rate: float,
                            momentum: float):
        """Momentum step on the visible bias."""

    @abstractmethod
    def update_hidden_bias(self,
                           learning_rate: float,
                           momentum: float,
                           seed: int,
                           sparsity_penalty: float,
                           sparsity_target: float):
        """Momentum step on the hidden bias, including the sparsity penalty."""

    @abstractmethod
    def update_weights(self,
                       learning_rate: float,
                       momentum: float,
                       weight_penalty: float,
                       sparsity_penalty: float,
                       sparsity_target: float):
        """Momentum step on the weights, including weight decay and the sparsity penalty."""

    @abstractmethod
    def transpose_weights(self):
        """Refresh the transposed weight copy used for visible to hidden propagation."""

    @abstractmethod
    def max_weight_increment(self) -> float:
        """Largest absolute weight increment of the most recent update."""

    @abstractmethod
    def max_weight_magnitude(self) -> float:
        """Largest absolute weight."""

    @abstractmethod
    def gradient_length_and_dot(self) -> GradientStats:
        """See GradientStats."""


Method = TypeVar("Method", bound=Callable)


def backend_operation(method: Method) -> Method:
    """Turn torch errors (and calls on an uninitialized backend) into BackendOperationFailed."""
    @functools.wraps(method)
    def wrapper(self: TorchBackend, *args, **kwargs):
        if not self.is_initialized:
            raise BackendOperationFailed(method.__name__, "backend is not initialized")
        try:
            return method(self, *args, **kwargs)
        except (RuntimeError, IndexError) as error:
            raise BackendOperationFailed(method.__name__, str(error)) from error
    return wrapper


def is_host_allocation_failure(error: RuntimeError) -> bool:
    """torch reports failed CPU allocations as a plain RuntimeError from its CPU allocator."""
    message = str(error)
    return "DefaultCPUAllocator" in message or "can't allocate memory" in message


class TorchBackend(ComputeBackend):
    def __init__(self,
                 device: str | torch.device = "cpu",
                 dtype: torch.dtype = torch.float32,
                 error_type: str = "mse",
                 on_fraction_smoothing: float = 0.95):
        """Reference backend built on plain torch tensor ops.

        Parameters:
            device: Device on which all the torch stuff should happen (e.g. "cuda").
            dtype: Device precision. Host-side parameters are always float64.
            error_type: One of 'mse', 'cross_entropy'. How reconstruction error is measured.
            on_fraction_smoothing: Exponential smoothing factor for the per-hidden-unit "on" fraction that the
                                   sparsity penalty works with.
        """
        if error_type not in ["mse", "cross_entropy"]:
            raise ValueError(f"Invalid error_type {error_type}. Valid are 'mse', 'cross_entropy'.")
        if not 0 <= on_fraction_smoothing < 1:
            raise ValueError(f"on_fraction_smoothing must be in [0, 1), got {on_fraction_smoothing}")
        self.device = torch.device(device)
        self.dtype = dtype
        self.error_type = error_type
        self.on_fraction_smoothing = on_fraction_smoothing
        self._reset()

    def _reset(self):
        self.is_initialized = False
        self.data = None
        self.data_mean = None
        self.shuffle = None
        self.model = None
        self.w_t = None
        self.increments = {}
        self.w_grad = None
        self.w_grad_prev = None
        self.on_smoothed = None
        self.buffers = {}
        self.max_batch = 0
        self.n_in_batch = 0
        self.mean_field = False
        self.greedy_mean_field = False

    def init(self,
             data: DataMatrixFloat,
             n_inputs: int,
             n_hidden: int,
             data_mean: VisibleFloat,
             params: RBM,
             max_batch: int,
             mean_field: bool,
             greedy_mean_field: bool):
        self._reset()
        try:
            self.data = data[:, :n_inputs].to(device=self.device, dtype=self.dtype).contiguous()
            self.data_mean = data_mean.to(device=self.device, dtype=self.dtype)
            self.shuffle = torch.arange(data.shape[0], device=self.device)
            self.model = params.clone().to(device=self.device, dtype=self.dtype)
            self.w_t = self.model.w.T.contiguous()

            self.increments = {"in_bias": torch.zeros_like(self.model.in_bias),
                               "hid_bias": torch.zeros_like(self.model.hid_bias),
                               "w": torch.zeros_like(self.model.w)}
            self.w_grad = torch.zeros_like(self.model.w)
            self.w_grad_prev = torch.zeros_like(self.model.w)
            # what the hidden layer does for an "average" input; starting point for the sparsity bookkeeping
            self.on_smoothed = self.model.to_hidden_p(self.data_mean[None])[0]

            for name, width in [("visible1", n_inputs), ("visible2", n_inputs), ("visible2_p", n_inputs),
                                ("hidden1", n_hidden), ("hidden2", n_hidden), ("hidden_act", n_hidden)]:
                self.buffers[name] = torch.zeros(max_batch, width, device=self.device, dtype=self.dtype)
        except torch.cuda.OutOfMemoryError as error:
            self._reset()
            raise InsufficientDeviceMemory(str(error)) from error
        except MemoryError as error:
            self._reset()
            raise InsufficientHostMemory(str(error)) from error
        except RuntimeError as error:
            self._reset()
            if is_host_allocation_failure(error):
                raise InsufficientHostMemory(str(error)) from error
            raise DeviceError(str(error)) from error

        self.max_batch = max_batch
        self.mean_field = mean_field
        self.greedy_mean_field = greedy_mean_field
        self.is_initialized = True

    def cleanup(self):
        on_cuda = self.device.type == "cuda"
        self._reset()
        if on_cuda and torch.cuda.is_available():
            torch.cuda.empty_cache()

    def batch(self,
              name: str) -> torch.Tensor:
        """View of one scratch buffer restricted to the current batch."""
        return self.buffers[name][:self.n_in_batch]

    def uniform(self,
                shape: torch.Size,
                seed: int) -> torch.Tensor:
        generator = torch.Generator(device=self.device)
        generator.manual_seed(seed)
        return torch.rand(shape, generator=generator, device=self.device, dtype=self.dtype)

    def bernoulli(self,
                  probabilities: torch.Tensor,
                  seed: int) -> torch.Tensor:
        return (self.uniform(probabilities.shape, seed) < probabilities).to(self.dtype)

    @backend_operation
    def push_shuffle(self,
                     index: ShuffleIndex):
        index = torch.as_tensor(index, dtype=torch.int64)
        if index.shape != self.shuffle.shape:
            raise BackendOperationFailed("push_shuffle",
                                         f"expected {self.shuffle.shape[0]} indices, got {tuple(index.shape)}")
        self.shuffle.copy_(index)

    @backend_operation
    @torch.no_grad()
    def push_parameters(self,
                        params: RBM):
        self.model.copy_from(params)
        self.w_t.copy_(self.model.w.T)

    @backend_operation
    def pull_parameters(self) -> RBM:
        host = dict(device="cpu", dtype=torch.float64)
        return RBM.from_tensors(self.model.w.detach().to(**host), self.model.in_bias.detach().to(**host),
                                self.model.hid_bias.detach().to(**host))

    @backend_operation
    @torch.no_grad()
    def fetch_visible(self,
                      batch_start: int,
                      batch_stop: int,
                      seed: int):
        n_in_batch = batch_stop - batch_start
        if not 0 < n_in_batch <= self.max_batch or batch_start < 0 or batch_stop > self.data.shape[0]:
            raise BackendOperationFailed("fetch_visible", f"invalid batch [{batch_start}, {batch_stop})")
        self.n_in_batch = n_in_batch
        rows = self.data[self.shuffle[batch_start:batch_stop]]
        if not self.greedy_mean_field:
            rows = self.bernoulli(rows, seed)
        self.batch("visible1").copy_(rows)

    @backend_operation
    @torch.no_grad()
    def visible_to_hidden(self):
        hidden = torch.sigmoid(self.batch("visible1") @ self.w_t + self.model.hid_bias)
        self.batch("hidden1").copy_(hidden)
        self.batch("hidden2").copy_(hidden)

    @backend_operation
    @torch.no_grad()
    def sample_hidden(self,
                      seed: int):
        self.batch("hidden_act").copy_(self.bernoulli(self.batch("hidden2"), seed))

    @backend_operation
    @torch.no_grad()
    def hidden_to_visible(self,
                          seed: int):
        visible_p = self.model.to_visible_p(self.batch("hidden_act"))
        self.batch("visible2_p").copy_(visible_p)
        if self.mean_field:
            self.batch("visible2").copy_(visible_p)
        else:
            self.batch("visible2").copy_(self.bernoulli(visible_p, seed))

    @backend_operation
    @torch.no_grad()
    def hidden_to_visible_direct(self):
        visible_p = self.model.to_visible_p(self.batch("hidden1"))
        self.batch("visible2_p").copy_(visible_p)
        self.batch("visible2").copy_(visible_p)

    @backend_operation
    @torch.no_grad()
    def visible2_to_hidden2(self):
        self.batch("hidden2").copy_(torch.sigmoid(self.batch("visible2") @ self.w_t + self.model.hid_bias))

    @backend_operation
    @torch.no_grad()
    def reconstruction_error(self) -> VisibleFloat:
        target = self.batch("visible1")
        reconstruction = self.batch("visible2_p")
        if self.error_type == "mse":
            error = (target - reconstruction)**2
        else:
            eps = 1e-10  # keep log finite for saturated units
            error = -(target * torch.log(reconstruction + eps) + (1 - target) * torch.log(1 - reconstruction + eps))
        return error.sum(dim=0).to(device="cpu", dtype=torch.float64)

    def momentum_step(self,
                      name: str,
                      parameter: torch.Tensor,
                      gradient: torch.Tensor,
                      learning_rate: float,
                      momentum: float):
        increment = self.increments[name]
        increment.mul_(momentum).add_(gradient, alpha=learning_rate)
        parameter.add_(increment)

    @backend_operation
    @torch.no_grad()
    def update_visible_bias(self,
                            learning_rate: float,
                            momentum: float):
        gradient = (self.batch("visible1") - self.batch("visible2")).mean(dim=0)
        self.momentum_step("in_bias", self.model.in_bias, gradient, learning_rate, momentum)

    @backend_operation
    @torch.no_grad()
    def update_hidden_bias(self,
                           learning_rate: float,
                           momentum: float,
                           seed: int,
                           sparsity_penalty: float,
                           sparsity_target: float):
        hidden1 = self.batch("hidden1")
        # positive phase activations, also used by update_weights
        if self.mean_field:
            self.batch("hidden_act").copy_(hidden1)
        else:
            self.batch("hidden_act").copy_(self.bernoulli(hidden1, seed))

        self.on_smoothed.mul_(self.on_fraction_smoothing).add_(hidden1.mean(dim=0),
                                                               alpha=1 - self.on_fraction_smoothing)
        gradient = (self.batch("hidden_act").mean(dim=0) - self.batch("hidden2").mean(dim=0)
                    - sparsity_penalty * (self.on_smoothed - sparsity_target))
        self.momentum_step("hid_bias", self.model.hid_bias, gradient, learning_rate, momentum)

    @backend_operation
    @torch.no_grad()
    def update_weights(self,
                       learning_rate: float,
                       momentum: float,
                       weight_penalty: float,
                       sparsity_penalty: float,
                       sparsity_target: float):
        positive = self.batch("hidden_act").T @ self.batch("visible1")
        negative = self.batch("hidden2").T @ self.batch("visible2")
        sparsity = sparsity_penalty * (self.on_smoothed - sparsity_target)[:, None] * self.data_mean[None, :]
        gradient = (positive - negative) / self.n_in_batch - weight_penalty * self.model.w - sparsity

        self.w_grad_prev, self.w_grad = self.w_grad, gradient
        self.momentum_step("w", self.model.w, gradient, learning_rate, momentum)

    @backend_operation
    @torch.no_grad()
    def transpose_weights(self):
        self.w_t.copy_(self.model.w.T)

    @backend_operation
    def max_weight_increment(self) -> float:
        return self.increments["w"].abs().max().item()

    @backend_operation
    def max_weight_magnitude(self) -> float:
        return self.model.w.abs().max().item()

    @backend_operation
    def gradient_length_and_dot(self) -> GradientStats:
        return GradientStats(length=(self.w_grad * self.w_grad).sum().item(),
                             dot=(self.w_grad * self.w_grad_prev).sum().item())
