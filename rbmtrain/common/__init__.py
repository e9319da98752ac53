"""This module contains functionalities that are shared by the weight initializer and the trainer.

This mostly concerns host-side randomness (the seed stream handed to the backend, uniform draws, shuffling), batch
partitioning, and training housekeeping such as cancellation, timing diagnostics and stall detection.
"""
from .config import load_config
from .rng import SeedStream, UniformSource, shuffle_in_place
from .training import CancellationToken, Diagnostics, StallMonitor
from .utils import as_data_matrix, batch_bounds, batch_sizes, clamped_data_mean, logit
