"""
Element-wise nonlinearities shared by the layer types.
"""
from .backend import get_array_module


def sigmoid(x):
    """σ(x) = 1 / (1 + e^(-x))"""
    xp = get_array_module(x)
    return 1 / (1 + xp.exp(-xp.clip(x, -500, 500)))


def sigmoid_grad(out):
    """Derivative of the sigmoid expressed through its output."""
    return out * (1 - out)


def softmax(x):
    """Column-wise softmax; each column is one sample."""
    xp = get_array_module(x)
    # Numerical stability: subtract max
    exps = xp.exp(x - xp.max(x, axis=0, keepdims=True))
    return exps / xp.sum(exps, axis=0, keepdims=True)
