"""
Array backend selection.

Layers are written against ``xp``, which is CuPy when a CUDA device is
usable and NumPy otherwise. Set ``CUNN_DEVICE`` to ``gpu`` or ``cpu`` to
force a choice; ``auto`` (the default) probes for a device once at import.
"""
import os
import numpy as np

try:
    import cupy as cp
except ImportError:
    cp = None


DTYPE = np.float32


def _select(device):
    if device == 'cpu':
        return np
    if device == 'gpu':
        if cp is None:
            raise RuntimeError("CUNN_DEVICE=gpu but cupy is not installed (pip install cupy-cuda12x)")
        return cp
    if device == 'auto':
        if cp is not None and cp.cuda.is_available():
            return cp
        return np
    raise ValueError(f"Unknown device '{device}' (expected auto, gpu or cpu)")


xp = _select(os.environ.get('CUNN_DEVICE', 'auto').lower())


def on_gpu():
    return xp is not np


def to_device(x, dtype=DTYPE):
    """Copy a host (or device) array onto the active backend as ``dtype``."""
    return xp.asarray(x, dtype=dtype)


def asnumpy(x):
    """Bring an array back to host memory."""
    if cp is not None and isinstance(x, cp.ndarray):
        return cp.asnumpy(x)
    return np.asarray(x)


def get_array_module(x):
    if cp is not None:
        return cp.get_array_module(x)
    return np
