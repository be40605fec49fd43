"""
Conversions between the two feature-map layouts.

vector form: (H*W, N)  one flattened image per column
image form:  (N, H, W) one 2D image per sample

Several maps in vector form are stacked vertically to build the flat
matrix handed to a fully connected network.
"""
from .backend import get_array_module


def vectors_to_images(x, size):
    """(H*W, N) -> (N, H, W)"""
    h, w = size
    if x.ndim != 2 or x.shape[0] != h * w:
        raise ValueError(f"Cannot view {x.shape} as images of size {h}x{w}")
    return x.T.reshape(x.shape[1], h, w)


def images_to_vectors(images):
    """(N, H, W) -> (H*W, N)"""
    if images.ndim != 3:
        raise ValueError(f"Expected (N, H, W) images, got shape {images.shape}")
    n = images.shape[0]
    return images.reshape(n, -1).T.copy()


def add_bias(x):
    """Append a constant-1 row."""
    xp = get_array_module(x)
    ones = xp.ones((1, x.shape[1]), dtype=x.dtype)
    return xp.concatenate([x, ones], axis=0)


def strip_bias(x):
    return x[:-1]


def concat_maps(maps):
    xp = get_array_module(maps[0])
    return xp.concatenate(list(maps), axis=0)


def split_maps(x, n_maps):
    """Inverse of concat_maps: one (rows / n_maps, N) block per map."""
    if x.shape[0] % n_maps != 0:
        raise ValueError(f"{x.shape[0]} rows cannot be split into {n_maps} maps")
    step = x.shape[0] // n_maps
    return [x[i * step:(i + 1) * step] for i in range(n_maps)]
