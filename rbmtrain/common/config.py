import os
from typing import Any

import yaml


CONFIG_SECTIONS = ("trainer", "initializer", "backend")


def load_config(path: str | os.PathLike) -> dict[str, dict[str, Any]]:
    """Load a YAML file with keyword arguments for the trainer, initializer and backend.

    Any of the sections may be missing; they come back as empty dicts. Each section is passed straight through as
    keyword arguments, so key names are those of RBMTrainer, initialize_weights and TorchBackend respectively.

    Example file:
        trainer:
          n_batches: 10
          max_epochs: 500
          learning_rate: 0.1
        initializer:
          n_rand: 20
        backend:
          device: cuda
    """
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    unknown = set(config) - set(CONFIG_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config sections {sorted(unknown)}. Valid are {', '.join(CONFIG_SECTIONS)}.")
    sections = {}
    for section in CONFIG_SECTIONS:
        values = config.get(section) or {}
        if not isinstance(values, dict):
            raise ValueError(f"Config section '{section}' must be a mapping, got {type(values).__name__}")
        sections[section] = values
    return sections
