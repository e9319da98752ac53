"""This module uses jaxtyping to add various more specific tensor types."""
from typing import TypeAlias

import numpy as np
from jaxtyping import Float, Int
from torch import Tensor


DataMatrixFloat: TypeAlias = Float[Tensor, "cases cols"]

VisibleFloat: TypeAlias = Float[Tensor, "n_inputs"]
HiddenFloat: TypeAlias = Float[Tensor, "nhid"]
VisibleBatchFloat: TypeAlias = Float[Tensor, "batch n_inputs"]
HiddenBatchFloat: TypeAlias = Float[Tensor, "batch nhid"]

WeightMatrixFloat: TypeAlias = Float[Tensor, "nhid n_inputs"]

ShuffleIndex: TypeAlias = Int[np.ndarray, "cases"]
