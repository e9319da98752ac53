"""This module contains functionalities for training binary Restricted Boltzmann Machines.

Training is contrastive divergence with a Markov chain whose length is annealed over epochs. Learning rate and
momentum adapt to how consistent successive weight gradients are. A multi-trial initializer picks starting weights.
All bulk computation goes through a ComputeBackend; TorchBackend is the reference one.

REFERENCES
Training RBMs: https://www.cs.toronto.edu/~hinton/absps/guideTR.pdf
Contrastive divergence: https://www.cs.toronto.edu/~hinton/absps/tr00-004.pdf
"""
from .backend import ComputeBackend, GradientStats, TorchBackend
from .controller import AdaptiveController, StopReason
from .initializer import InitResult, initialize_weights
from .model import RBM, BestSnapshot
from .trainer import RBMTrainer, TrainingResult, fit_rbm
