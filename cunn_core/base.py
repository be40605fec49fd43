"""
Layer interfaces.

Two independent families:
    FeatureTransform      single input, single output matrix (DNN layers)
    MIMOFeatureTransform  lists of feature maps in and out (CNN layers)

Instances are mutated in place by back_propagate/update and are not
thread-safe; callers must hold exclusive access for a whole
forward/backward pair.
"""
import copy

from .backend import xp, DTYPE


def check_shape(name, array, expected):
    """Fail fast on a shape mismatch instead of letting broadcasting hide it."""
    if tuple(array.shape) != tuple(expected):
        raise ValueError(f"{name} has shape {tuple(array.shape)}, expected {tuple(expected)}")


class FeatureTransform:
    """
    Base class for fully connected layers.

    W has shape (input_dim + 1, output_dim); its last row is the bias.
    Inputs are (input_dim + 1, N) with a trailing ones row, outputs are
    (output_dim + 1, N) with a ones row appended for the next layer.

    There is no offset/count window: callers slice the batch first,
    e.g. layer.feed_forward(to_device(data.get_x(batch))).
    """
    type_tag = None

    def __init__(self, rows, cols, is_output_layer=False):
        self.W = xp.zeros((rows, cols), dtype=DTYPE)
        self.dW = xp.zeros((rows, cols), dtype=DTYPE)
        self.is_output_layer = is_output_layer

    @classmethod
    def from_weights(cls, W, is_output_layer=False):
        layer = cls(W.shape[0], W.shape[1], is_output_layer)
        layer.W = xp.asarray(W, dtype=DTYPE).copy()
        return layer

    @property
    def input_dim(self):
        return self.W.shape[0] - 1

    @property
    def output_dim(self):
        return self.W.shape[1]

    def resize(self, rows, cols):
        """Reallocate W and dW; previous values are discarded."""
        self.W = xp.zeros((rows, cols), dtype=DTYPE)
        self.dW = xp.zeros((rows, cols), dtype=DTYPE)

    def check_input(self, fin):
        if fin.ndim != 2 or fin.shape[0] != self.W.shape[0]:
            raise ValueError(
                f"{self.describe()}: input has shape {tuple(fin.shape)}, "
                f"expected ({self.W.shape[0]}, N)")

    def check_backward(self, fin, fout, error):
        self.check_input(fin)
        n = fin.shape[1]
        check_shape(f"{self.describe()} output", fout, (self.output_dim + 1, n))
        check_shape(f"{self.describe()} error", error, (self.output_dim, n))

    def feed_forward(self, fin):
        raise NotImplementedError

    def back_propagate(self, fin, fout, error):
        raise NotImplementedError

    def update(self, learning_rate):
        """Plain gradient descent step with the gradient of the last batch."""
        self.W -= learning_rate * self.dW

    def copy(self):
        return copy.deepcopy(self)

    def describe(self):
        return f"<{self.type_tag}> {self.input_dim} -> {self.output_dim}"

    def __repr__(self):
        return self.describe()


class MIMOFeatureTransform:
    """
    Base class for image layers operating on lists of feature maps.

    Every map is passed in vector form (H*W, N). input_size and
    output_size are the (rows, cols) of one map.
    """
    def __init__(self, n_input_maps, n_output_maps, input_size):
        self.n_input_maps = n_input_maps
        self.n_output_maps = n_output_maps
        self.input_size = tuple(input_size)

    @property
    def output_size(self):
        raise NotImplementedError

    def check_maps(self, name, maps, n_maps, size):
        if len(maps) != n_maps:
            raise ValueError(f"{self.describe()}: got {len(maps)} {name} maps, expected {n_maps}")
        n = maps[0].shape[1]
        for m in maps:
            check_shape(f"{self.describe()} {name} map", m, (size[0] * size[1], n))

    def feed_forward(self, fins):
        raise NotImplementedError

    def feed_backward(self, errors):
        raise NotImplementedError

    def back_propagate(self, errors, fins, fouts, learning_rate):
        raise NotImplementedError

    def describe(self):
        raise NotImplementedError

    def __repr__(self):
        return self.describe()
