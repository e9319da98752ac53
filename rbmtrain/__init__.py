"""This module contains functionalities for training Restricted Boltzmann Machines on a compute backend.

The algorithm (weight initialization trials, the epoch/batch/Markov chain training loop, and the adaptive controller
for learning rate, momentum and chain length) lives on the host. It drives a backend that does the heavy lifting on
device memory, handing it integer seeds so that all sampling is reproducible.

Start with rbmtrain.rbm.fit_rbm, or use initialize_weights and RBMTrainer separately.
"""
