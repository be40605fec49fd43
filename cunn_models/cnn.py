"""
Convolutional front end.

Built from a compact descriptor of '-'-joined tokens:
    NxHxW   convolutional layer with N output maps and HxW kernels
    Ns      sub-sampling layer with factor N

e.g. CNN('10x5x5-2s-20x3x3', image_size=(28, 28)).

feed_forward returns the flattened, bias-augmented output ready for a
DNN together with a ForwardContext holding every layer's output. The
context must be handed to back_propagate for the same batch, once.
A CNN is not thread-safe: one forward/backward pair at a time.
"""
import re
import itertools

from cunn_core import (
    to_device,
    ConvolutionalLayer, SubSamplingLayer,
    add_bias, concat_maps, split_maps,
)


CONV_TOKEN = re.compile(r'(\d+)x(\d+)x(\d+)')
SUBSAMPLING_TOKEN = re.compile(r'(\d+)s')

_context_ids = itertools.count()


class ForwardContext:
    """
    Cached per-layer outputs of one forward pass.

    houts[0] are the input maps, houts[i + 1] the output maps of layer i.
    """

    def __init__(self, owner, houts):
        self.owner = owner
        self.houts = houts
        self.consumed = False
        self.id = next(_context_ids)

    @property
    def n_data(self):
        return self.houts[0][0].shape[1]


class CNN:
    """
    Pipeline of MIMOFeatureTransform layers.

    Args:
        structure: Layer descriptor string, e.g. '10x5x5-2s'
        image_size: (H, W) of the input images
        n_input_maps: Number of input feature maps
    """

    def __init__(self, structure, image_size, n_input_maps=1):
        self.image_size = tuple(image_size)
        self.n_input_maps = n_input_maps
        self.structure = structure
        self.layers = []
        self.init(structure)

    def init(self, structure):
        """Build layers token by token, threading map count and size."""
        size = self.image_size
        n_maps = self.n_input_maps
        self.layers = []

        for token in structure.split('-'):
            conv = CONV_TOKEN.fullmatch(token)
            sub = SUBSAMPLING_TOKEN.fullmatch(token)
            if conv:
                n_outputs, kh, kw = (int(g) for g in conv.groups())
                if n_outputs == 0 or kh == 0 or kw == 0:
                    raise ValueError(f"Layer token '{token}' has a zero map count or kernel side")
            elif not sub:
                raise ValueError(
                    f"Unrecognized layer token '{token}' in '{structure}' "
                    f"(expected NxHxW or Ns)")

            try:
                if conv:
                    layer = ConvolutionalLayer(n_maps, n_outputs, (kh, kw), size)
                else:
                    layer = SubSamplingLayer(n_maps, int(sub.group(1)), size)
            except ValueError as e:
                raise ValueError(f"Layer token '{token}': {e}") from e
            self.layers.append(layer)
            size = layer.output_size
            n_maps = layer.n_output_maps

    @property
    def output_size(self):
        return self.layers[-1].output_size

    @property
    def n_output_maps(self):
        return self.layers[-1].n_output_maps

    @property
    def input_dim(self):
        return self.n_input_maps * self.image_size[0] * self.image_size[1]

    @property
    def output_dim(self):
        """Flattened output width, without the bias row."""
        h, w = self.output_size
        return self.n_output_maps * h * w

    def feed_forward(self, x):
        """
        Forward pass.

        Args:
            x: (input_dim, N) or (input_dim + 1, N); a trailing bias row
               is dropped

        Returns:
            tuple: (output of shape (output_dim + 1, N), ForwardContext)
        """
        x = to_device(x)
        if x.ndim != 2 or x.shape[0] not in (self.input_dim, self.input_dim + 1):
            raise ValueError(
                f"Input has shape {tuple(x.shape)}, expected ({self.input_dim}[+1], N)")
        if x.shape[0] == self.input_dim + 1:
            x = x[:-1]

        houts = [split_maps(x, self.n_input_maps)]
        for layer in self.layers:
            houts.append(layer.feed_forward(houts[-1]))

        out = add_bias(concat_maps(houts[-1]))
        return out, ForwardContext(self, houts)

    def back_propagate(self, context, error, learning_rate):
        """
        Backward pass with fused parameter updates.

        Args:
            context: ForwardContext from feed_forward on the same batch
            error: dE/d(output), (output_dim, N) or with a bias row
            learning_rate: step size for the convolution kernels

        Returns:
            dE/d(input) of shape (input_dim, N)
        """
        if not isinstance(context, ForwardContext) or context.owner is not self:
            raise RuntimeError("back_propagate needs the ForwardContext returned by this CNN's feed_forward")
        if context.consumed:
            raise RuntimeError(f"ForwardContext {context.id} was already used by back_propagate")

        error = to_device(error)
        if error.ndim != 2 or error.shape[1] != context.n_data or \
                error.shape[0] not in (self.output_dim, self.output_dim + 1):
            raise ValueError(
                f"Error has shape {tuple(error.shape)}, "
                f"expected ({self.output_dim}[+1], {context.n_data})")
        if error.shape[0] == self.output_dim + 1:
            error = error[:-1]

        context.consumed = True
        houts = context.houts
        errors = split_maps(error, self.n_output_maps)
        for i in reversed(range(len(self.layers))):
            errors = self.layers[i].back_propagate(errors, houts[i], houts[i + 1], learning_rate)
        return concat_maps(errors)

    def feed_backward(self, error):
        raise NotImplementedError("CNN.feed_backward is not supported; use back_propagate")

    def read(self, path):
        raise NotImplementedError(f"Reading CNN models is not supported ({path})")

    def save(self, path):
        raise NotImplementedError(f"Saving CNN models is not supported ({path})")

    def describe(self):
        return '\n'.join(
            f"  [{i}] {layer.describe()}" for i, layer in enumerate(self.layers))
