from collections.abc import Iterator

import torch

from ..types import DataMatrixFloat, VisibleFloat


MEAN_FLOOR = 1e-8


def batch_sizes(n_cases: int,
                n_batches: int) -> list[int]:
    """Split n_cases into n_batches near-equal batches.

    Each batch takes (cases left) / (batches left), rounded down. This covers every case exactly once and no two
    batch sizes differ by more than one; the larger batches come last.
    """
    if n_batches < 1:
        raise ValueError(f"n_batches must be at least 1, got {n_batches}")
    if n_cases < n_batches:
        raise ValueError(f"Can't split {n_cases} cases into {n_batches} non-empty batches")
    sizes = []
    n_done = 0
    for batch_ind in range(n_batches):
        n_in_batch = (n_cases - n_done) // (n_batches - batch_ind)
        sizes.append(n_in_batch)
        n_done += n_in_batch
    return sizes


def batch_bounds(n_cases: int,
                 n_batches: int) -> Iterator[tuple[int, int]]:
    """(start, stop) row ranges in shuffled order, one per batch. Stop is exclusive."""
    start = 0
    for n_in_batch in batch_sizes(n_cases, n_batches):
        yield start, start + n_in_batch
        start += n_in_batch


def as_data_matrix(data) -> DataMatrixFloat:
    """Host copy of the dataset as a 2D float64 tensor. Accepts tensors, numpy arrays and nested lists."""
    data = torch.as_tensor(data, dtype=torch.float64)
    if data.ndim != 2:
        raise ValueError(f"Data must be 2D (cases x columns), got shape {tuple(data.shape)}")
    return data


def clamped_data_mean(data: DataMatrixFloat,
                      n_inputs: int) -> VisibleFloat:
    """Mean of each of the first n_inputs columns, kept strictly inside (0, 1) so log-odds stay finite."""
    data_mean = data[:, :n_inputs].to(torch.float64).mean(dim=0)
    return data_mean.clamp(MEAN_FLOOR, 1.0 - MEAN_FLOOR)


def logit(p: torch.Tensor) -> torch.Tensor:
    return torch.log(p / (1.0 - p))
