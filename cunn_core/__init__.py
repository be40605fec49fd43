"""
Neural network core - GPU accelerated when CuPy is available.

Layers operate on dense matrices with one sample per column. The array
module (CuPy or NumPy) is picked by cunn_core.backend.

Usage:
    from cunn_core import AffineTransform, Softmax, to_device

    layer = AffineTransform.from_weights(W)
    x = to_device(batch)           # (input_dim + 1, N), last row all ones
    out = layer.feed_forward(x)    # (output_dim + 1, N)
"""

from .backend import xp, to_device, asnumpy, on_gpu
from .base import FeatureTransform, MIMOFeatureTransform
from .activations import sigmoid, softmax
from .dense import AffineTransform, init_weights
from .losses import Softmax, L2Error, CrossEntropyError, ERROR_MEASURES, get_error_measure
from .conv import ConvolutionalLayer, correlate2d, convolve2d, rot180, im2col
from .pooling import SubSamplingLayer, downsample, upsample
from .reshape import (
    vectors_to_images,
    images_to_vectors,
    add_bias,
    strip_bias,
    concat_maps,
    split_maps,
)
from .optimizers import LearningRateSchedule


__all__ = [
    # Backend
    'xp', 'to_device', 'asnumpy', 'on_gpu',
    # Base
    'FeatureTransform', 'MIMOFeatureTransform',
    # Activations
    'sigmoid', 'softmax',
    # Fully connected
    'AffineTransform', 'Softmax', 'init_weights',
    # Error measures
    'L2Error', 'CrossEntropyError', 'ERROR_MEASURES', 'get_error_measure',
    # Convolution / sub-sampling
    'ConvolutionalLayer', 'correlate2d', 'convolve2d', 'rot180', 'im2col',
    'SubSamplingLayer', 'downsample', 'upsample',
    # Reshaping
    'vectors_to_images', 'images_to_vectors', 'add_bias', 'strip_bias',
    'concat_maps', 'split_maps',
    # Schedule
    'LearningRateSchedule',
]
