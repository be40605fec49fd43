"""
Sub-sampling: block-mean pooling and its adjoint.
"""
from .base import MIMOFeatureTransform
from .reshape import vectors_to_images, images_to_vectors
from .backend import get_array_module


def downsample(images, scale):
    """Mean over non-overlapping scale x scale blocks. images: (N, H, W)."""
    N, H, W = images.shape
    if H % scale or W % scale:
        raise ValueError(f"Image size {H}x{W} is not divisible by scale {scale}")
    blocks = images.reshape(N, H // scale, scale, W // scale, scale)
    return blocks.mean(axis=(2, 4))


def upsample(images, size):
    """Repeat every pixel into a block so the result has spatial size `size`."""
    module = get_array_module(images)
    N, h, w = images.shape
    H, W = size
    if H % h or W % w or H // h != W // w:
        raise ValueError(f"Cannot upsample {h}x{w} to {H}x{W} with one integer scale")
    scale = H // h
    return module.repeat(module.repeat(images, scale, axis=1), scale, axis=2)


class SubSamplingLayer(MIMOFeatureTransform):
    """
    Per-map pooling by an integer factor; no learnable parameters.

    Args:
        n_maps: Number of maps (same on both sides)
        scale: Downsampling factor
        input_size: (H, W) of each input map
    """
    def __init__(self, n_maps, scale, input_size):
        super().__init__(n_maps, n_maps, input_size)
        if scale < 1:
            raise ValueError(f"Sub-sampling scale must be positive, got {scale}")
        H, W = self.input_size
        if H % scale or W % scale:
            raise ValueError(f"Sub-sampling scale {scale} does not divide map size {H}x{W}")
        self.scale = scale

    @property
    def output_size(self):
        H, W = self.input_size
        return (H // self.scale, W // self.scale)

    def feed_forward(self, fins):
        self.check_maps('input', fins, self.n_input_maps, self.input_size)
        return [
            images_to_vectors(downsample(vectors_to_images(f, self.input_size), self.scale))
            for f in fins
        ]

    def feed_backward(self, errors):
        """Spread each pooled error uniformly over its block."""
        self.check_maps('error', errors, self.n_output_maps, self.output_size)
        area = self.scale * self.scale
        return [
            images_to_vectors(upsample(vectors_to_images(e, self.output_size), self.input_size) / area)
            for e in errors
        ]

    def back_propagate(self, errors, fins, fouts, learning_rate):
        return self.feed_backward(errors)

    def describe(self):
        return (f"<subsampling> {self.n_input_maps} maps, scale {self.scale}, "
                f"{self.input_size[0]}x{self.input_size[1]} -> "
                f"{self.output_size[0]}x{self.output_size[1]}")
