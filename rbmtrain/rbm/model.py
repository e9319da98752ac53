from __future__ import annotations

import math
from dataclasses import dataclass

import torch
from torch import nn

from ..types import HiddenBatchFloat, HiddenFloat, VisibleBatchFloat, VisibleFloat, WeightMatrixFloat


class RBM(nn.Module):
    def __init__(self,
                 n_inputs: int,
                 n_hidden: int,
                 dtype: torch.dtype = torch.float64):
        """Binary RBM parameter set.

        Nothing here is trained by autograd; all updates happen on the compute backend and are copied back. That's
        why the parameters don't require gradients.

        Parameters:
            n_inputs: Number of visible units.
            n_hidden: Number of hidden units.
            dtype: Host precision. Keep float64 unless you have a reason not to; the data mean clamp relies on it.
        """
        super().__init__()
        if n_inputs < 1 or n_hidden < 1:
            raise ValueError(f"Need at least one visible and one hidden unit, got {n_inputs}, {n_hidden}")
        self.n_inputs = n_inputs
        self.n_hidden = n_hidden
        self.w = nn.Parameter(torch.zeros(n_hidden, n_inputs, dtype=dtype), requires_grad=False)
        self.in_bias = nn.Parameter(torch.zeros(n_inputs, dtype=dtype), requires_grad=False)
        self.hid_bias = nn.Parameter(torch.zeros(n_hidden, dtype=dtype), requires_grad=False)

    @classmethod
    def from_tensors(cls,
                     w: WeightMatrixFloat,
                     in_bias: VisibleFloat,
                     hid_bias: HiddenFloat) -> RBM:
        n_hidden, n_inputs = w.shape
        if in_bias.shape != (n_inputs,) or hid_bias.shape != (n_hidden,):
            raise ValueError(f"Bias shapes {tuple(in_bias.shape)}, {tuple(hid_bias.shape)} don't fit weights "
                             f"{tuple(w.shape)}")
        rbm = cls(n_inputs, n_hidden, dtype=w.dtype)
        rbm.assign(w, in_bias, hid_bias)
        return rbm

    @torch.no_grad()
    def assign(self,
               w: WeightMatrixFloat,
               in_bias: VisibleFloat,
               hid_bias: HiddenFloat):
        """Overwrite all parameters in place, converting device/dtype as needed."""
        self.w.copy_(w)
        self.in_bias.copy_(in_bias)
        self.hid_bias.copy_(hid_bias)

    @torch.no_grad()
    def copy_from(self,
                  other: RBM):
        self.assign(other.w, other.in_bias, other.hid_bias)

    def clone(self) -> RBM:
        """Deep copy that shares no storage with this one."""
        return RBM.from_tensors(self.w.detach().clone(), self.in_bias.detach().clone(),
                                self.hid_bias.detach().clone())

    def to_hidden_p(self,
                    visible: VisibleBatchFloat) -> HiddenBatchFloat:
        """Get conditional probabilities p(h|v)."""
        return nn.functional.sigmoid(visible @ self.w.T + self.hid_bias)

    def to_visible_p(self,
                     hidden: HiddenBatchFloat) -> VisibleBatchFloat:
        """Get conditional probabilities p(v|h)."""
        return nn.functional.sigmoid(hidden @ self.w + self.in_bias)


@dataclass(frozen=True)
class BestSnapshot:
    """Best parameter set seen so far, with its score (lower is better).

    The parameters are always a private copy: use capture() to build one from a live model, and restore_into() to
    copy them back out. Neither direction aliases the live working copy.
    """
    score: float
    params: RBM | None = None

    @classmethod
    def empty(cls) -> BestSnapshot:
        return cls(score=math.inf)

    @classmethod
    def capture(cls,
                score: float,
                params: RBM) -> BestSnapshot:
        return cls(score=score, params=params.clone())

    @property
    def is_empty(self) -> bool:
        return self.params is None

    def improved_by(self,
                    score: float) -> bool:
        return score < self.score

    def restore_into(self,
                     target: RBM):
        if self.params is None:
            raise ValueError("Empty snapshot; nothing to restore")
        target.copy_from(self.params)
