"""Host-side randomness: the integer seed stream fed to the backend, plus uniform draws for shuffling and weights.

Two separate sources are used on purpose. SeedStream is a tiny deterministic integer generator whose values are
handed to the backend, so device-side sampling is reproducible from the host. UniformSource produces continuous
draws that never leave the host (weight trials, shuffling).
"""
from __future__ import annotations

from typing import NamedTuple

import numpy as np

from ..types import ShuffleIndex


# Park-Miller minimal standard generator with Schrage's factorization to avoid overflow
LCG_MULTIPLIER = 16807
LCG_MODULUS = 2147483647
LCG_QUOTIENT = 127773
LCG_REMAINDER = 2836


class SeedStream(NamedTuple):
    """Immutable 31-bit linear congruential stream.

    advance() returns a new stream; the emitted value is its state. Pass the state to whichever backend operation
    needs random numbers. Zero is a fixed point of the generator and therefore not a valid state.
    """
    state: int = 1

    def advance(self) -> SeedStream:
        k = self.state // LCG_QUOTIENT
        state = LCG_MULTIPLIER * (self.state - k * LCG_QUOTIENT) - LCG_REMAINDER * k
        if state < 0:
            state += LCG_MODULUS
        return SeedStream(state)

    @classmethod
    def from_seed(cls,
                  seed: int) -> SeedStream:
        if not 0 < seed < LCG_MODULUS:
            raise ValueError(f"seed must be in [1, {LCG_MODULUS - 1}], got {seed}")
        return cls(seed)


class UniformSource:
    def __init__(self,
                 seed: int | None = None):
        """Continuous uniform draws in [0, 1).

        Parameters:
            seed: Seed for the underlying numpy generator. None gives fresh OS entropy (non-reproducible).
        """
        self.rng = np.random.default_rng(seed)

    def next_uniform(self) -> float:
        return float(self.rng.random())

    def uniform_array(self,
                      shape: int | tuple[int, ...]) -> np.ndarray:
        """Many draws at once, in the same order repeated next_uniform calls would give them."""
        return self.rng.random(shape)


def shuffle_in_place(index: ShuffleIndex,
                     uniform: UniformSource):
    """Fisher-Yates shuffle driven by the uniform source.

    Works from the back: each position swaps with a random one at or before it. The index stays a permutation of
    whatever it held before, however often this is called.
    """
    i = len(index)
    while i > 1:
        j = int(uniform.next_uniform() * i)
        if j >= i:  # guard against draws that round up to 1
            j = i - 1
        i -= 1
        index[i], index[j] = index[j], index[i]
