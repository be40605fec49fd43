"""
Convolution primitives and the convolutional layer.

Correlation is computed with the im2col gather: every kh x kw window of
the (padded) image becomes one column, and the kernel is applied to all
columns with a single matrix product.

Relations used by the layer:
    convolve2d(x, k, mode) == correlate2d(x, rot180(k), mode)
    forward:         y  = correlate2d(x, k, 'valid')
    input error:     dx = convolve2d(delta, k, 'full')
    kernel gradient: dk = sum over batch of correlate2d(x, delta, 'valid')
"""
from .backend import xp, DTYPE, get_array_module
from .base import MIMOFeatureTransform
from .activations import sigmoid, sigmoid_grad
from .reshape import vectors_to_images, images_to_vectors


MODES = ('valid', 'full')


def rot180(kernel):
    """Rotate the last two axes by 180 degrees."""
    return kernel[..., ::-1, ::-1]


def get_im2col_indices(image_shape, field_height, field_width, module):
    """
    Calculate row/column indices of every sliding window.

    Args:
        image_shape: (H, W) of the padded images
        field_height: Kernel height
        field_width: Kernel width
        module: numpy or cupy

    Returns:
        tuple: Indices (i, j), each (field_height * field_width, out_h * out_w)
    """
    H, W = image_shape
    out_height = H - field_height + 1
    out_width = W - field_width + 1

    i0 = module.repeat(module.arange(field_height), field_width)
    i1 = module.repeat(module.arange(out_height), out_width)
    j0 = module.tile(module.arange(field_width), field_height)
    j1 = module.tile(module.arange(out_width), out_height)

    i = i0.reshape(-1, 1) + i1.reshape(1, -1)
    j = j0.reshape(-1, 1) + j1.reshape(1, -1)
    return i, j


def im2col(images, field_height, field_width, padding=(0, 0)):
    """
    Gather sliding windows of a batch of images.

    Args:
        images: (N, H, W)
        padding: zero rows/cols added on each side

    Returns:
        cols: (N, field_height * field_width, out_h * out_w)
        out_shape: (out_h, out_w)
    """
    module = get_array_module(images)
    ph, pw = padding
    if ph or pw:
        images = module.pad(images, ((0, 0), (ph, ph), (pw, pw)), mode='constant')

    H, W = images.shape[1:]
    if field_height > H or field_width > W:
        raise ValueError(f"Kernel {field_height}x{field_width} does not fit image {H}x{W}")

    i, j = get_im2col_indices((H, W), field_height, field_width, module)
    cols = images[:, i, j]
    return cols, (H - field_height + 1, W - field_width + 1)


def correlate2d(images, kernel, mode='valid'):
    """
    Batched 2D cross-correlation.

    Args:
        images: (N, H, W)
        kernel: (kh, kw) shared by the batch, or (N, kh, kw) one per sample
        mode: 'valid' (no padding) or 'full' (zero padding of k - 1)

    Returns:
        (N, out_h, out_w)
    """
    if mode not in MODES:
        raise ValueError(f"Unknown convolution mode '{mode}' (expected one of {MODES})")
    if images.ndim != 3:
        raise ValueError(f"Expected (N, H, W) images, got shape {images.shape}")

    kh, kw = kernel.shape[-2:]
    padding = (kh - 1, kw - 1) if mode == 'full' else (0, 0)
    cols, (out_h, out_w) = im2col(images, kh, kw, padding)

    N = images.shape[0]
    if kernel.ndim == 2:
        out = kernel.reshape(1, -1) @ cols
    elif kernel.ndim == 3 and kernel.shape[0] == N:
        out = kernel.reshape(N, 1, -1) @ cols
    else:
        raise ValueError(f"Kernel shape {kernel.shape} does not match a batch of {N} images")
    return out.reshape(N, out_h, out_w)


def convolve2d(images, kernel, mode='valid'):
    """Batched 2D convolution: correlation with the rotated kernel."""
    return correlate2d(images, rot180(kernel), mode)


class ConvolutionalLayer(MIMOFeatureTransform):
    """
    Bank of n x m kernels with one bias per output map and a sigmoid.

    Args:
        n_input_maps: Number of input feature maps (n)
        n_output_maps: Number of output feature maps (m)
        kernel_size: (kh, kw)
        input_size: (H, W) of each input map
    """
    def __init__(self, n_input_maps, n_output_maps, kernel_size, input_size):
        super().__init__(n_input_maps, n_output_maps, input_size)
        kh, kw = kernel_size
        H, W = self.input_size
        if kh < 1 or kw < 1:
            raise ValueError(f"Kernel sides must be positive, got {kh}x{kw}")
        if kh > H or kw > W:
            raise ValueError(f"Kernel {kh}x{kw} is larger than input maps {H}x{W}")
        self.kernel_size = (kh, kw)

        # Kaiming/He initialization (fan_out mode)
        fan_out = n_output_maps * kh * kw
        scale = (2.0 / fan_out) ** 0.5
        self.kernels = xp.random.randn(n_input_maps, n_output_maps, kh, kw).astype(DTYPE) * DTYPE(scale)
        self.bias = xp.zeros(n_output_maps, dtype=DTYPE)

    @property
    def output_size(self):
        H, W = self.input_size
        kh, kw = self.kernel_size
        return (H - kh + 1, W - kw + 1)

    def feed_forward(self, fins):
        """Forward pass: n maps of (H*W, N) -> m maps of (out_h*out_w, N)."""
        self.check_maps('input', fins, self.n_input_maps, self.input_size)
        images = [vectors_to_images(f, self.input_size) for f in fins]

        fouts = []
        for j in range(self.n_output_maps):
            acc = correlate2d(images[0], self.kernels[0, j], 'valid')
            for i in range(1, self.n_input_maps):
                acc = acc + correlate2d(images[i], self.kernels[i, j], 'valid')
            fouts.append(images_to_vectors(sigmoid(acc + self.bias[j])))
        return fouts

    def feed_backward(self, deltas):
        """Propagate local deltas of the output maps to the input maps."""
        self.check_maps('delta', deltas, self.n_output_maps, self.output_size)
        delta_images = [vectors_to_images(d, self.output_size) for d in deltas]

        errors = []
        for i in range(self.n_input_maps):
            acc = convolve2d(delta_images[0], self.kernels[i, 0], 'full')
            for j in range(1, self.n_output_maps):
                acc = acc + convolve2d(delta_images[j], self.kernels[i, j], 'full')
            errors.append(images_to_vectors(acc))
        return errors

    def back_propagate(self, errors, fins, fouts, learning_rate):
        """
        Backward pass with a fused gradient-descent step.

        Input errors are computed with the kernels as they were during the
        forward pass, then kernels and bias move by -lr/N * gradient.

        Args:
            errors: dE/d(output) per output map, (out_h*out_w, N) each
            fins: input maps given to feed_forward
            fouts: output maps returned by feed_forward
            learning_rate: step size

        Returns:
            list: dE/d(input) per input map
        """
        self.check_maps('input', fins, self.n_input_maps, self.input_size)
        self.check_maps('output', fouts, self.n_output_maps, self.output_size)
        self.check_maps('error', errors, self.n_output_maps, self.output_size)

        n_data = fins[0].shape[1]
        deltas = [error * sigmoid_grad(fout) for error, fout in zip(errors, fouts)]
        input_errors = self.feed_backward(deltas)

        in_images = [vectors_to_images(f, self.input_size) for f in fins]
        delta_images = [vectors_to_images(d, self.output_size) for d in deltas]
        step = DTYPE(learning_rate / n_data)

        for i in range(self.n_input_maps):
            for j in range(self.n_output_maps):
                grad = correlate2d(in_images[i], delta_images[j], 'valid').sum(axis=0)
                self.kernels[i, j] -= step * grad

        for j in range(self.n_output_maps):
            self.bias[j] -= step * delta_images[j].sum()

        return input_errors

    def describe(self):
        kh, kw = self.kernel_size
        return (f"<convolution> {self.n_input_maps} -> {self.n_output_maps} maps, "
                f"kernel {kh}x{kw}, {self.input_size[0]}x{self.input_size[1]} -> "
                f"{self.output_size[0]}x{self.output_size[1]}")
