"""
Deep (fully connected) network.

Stacks sigmoid AffineTransform layers and a Softmax output layer. Data
enters as (input_dim + 1, N) with the last row all ones; every layer
output carries a bias row, which is stripped from the final layer.

Training step:
    outputs = dnn.feed_forward(x)
    error = dnn.get_error(target, strip_bias(outputs[-1]))
    dnn.back_propagate(outputs, error)
    dnn.update()

A DNN and its layers are not thread-safe: one caller at a time.
"""
import os
import copy
import re

import numpy as np

from cunn_core import (
    xp, to_device, asnumpy,
    AffineTransform, Softmax, init_weights, get_error_measure,
    strip_bias,
)


LAYER_TYPES = {
    'sigmoid': AffineTransform,
    'softmax': Softmax,
}


class Config:
    """
    Training hyperparameters.

    Args:
        learning_rate: Gradient descent step size
        variance: Variance of the Gaussian weight initialization
        batch_size: Samples per gradient step
        max_epoch: Upper bound on training epochs
        min_valid_accuracy: Stop once validation accuracy reaches this;
                            None disables early stopping
        valid_ratio: Fraction of the data held out for validation
        error_measure: 'L2ERROR' or 'CROSS_ENTROPY'
        seed: Seed for weight initialization and shuffling
    """
    DEFAULTS = {
        'learning_rate': 0.1,
        'variance': 0.2,
        'batch_size': 32,
        'max_epoch': 1024,
        'min_valid_accuracy': None,
        'valid_ratio': 0.2,
        'error_measure': 'CROSS_ENTROPY',
        'seed': None,
    }

    def __init__(self, **kwargs):
        unknown = set(kwargs) - set(self.DEFAULTS)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        for key, default in self.DEFAULTS.items():
            setattr(self, key, kwargs.get(key, default))
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if not 0 <= self.valid_ratio < 1:
            raise ValueError(f"valid_ratio must be in [0, 1), got {self.valid_ratio}")
        get_error_measure(self.error_measure)

    @classmethod
    def from_dict(cls, config):
        return cls(**config)

    def to_dict(self):
        return {key: getattr(self, key) for key in self.DEFAULTS}

    def __repr__(self):
        fields = ', '.join(f'{k}={v!r}' for k, v in self.to_dict().items())
        return f"Config({fields})"


class DNN:
    """
    Pipeline of FeatureTransform layers.

    Args:
        dims: Layer widths [input_dim, hidden..., output_dim]; omit to
              build an empty model (e.g. before read())
        config: Config instance
    """

    def __init__(self, dims=None, config=None):
        self.config = config if config is not None else Config()
        self.layers = []
        if dims is not None:
            self.init(dims)

    @classmethod
    def from_file(cls, path, config=None):
        dnn = cls(config=config)
        dnn.read(path)
        return dnn

    def init(self, dims):
        """Randomly initialize layers for the given widths."""
        if len(dims) < 2:
            raise ValueError(f"Need at least input and output dims, got {dims}")
        if any(d <= 0 for d in dims):
            raise ValueError(f"Layer dims must be positive, got {dims}")
        if self.config.seed is not None:
            xp.random.seed(self.config.seed)

        self.layers = []
        for i in range(len(dims) - 1):
            is_output = (i == len(dims) - 2)
            cls = Softmax if is_output else AffineTransform
            W = init_weights(dims[i], dims[i + 1], self.config.variance)
            self.layers.append(cls.from_weights(W, is_output_layer=is_output))

    @property
    def input_dim(self):
        if not self.layers:
            raise RuntimeError("DNN has no layers; initialize or read a model first")
        return self.layers[0].input_dim

    @property
    def output_dim(self):
        if not self.layers:
            raise RuntimeError("DNN has no layers; initialize or read a model first")
        return self.layers[-1].output_dim

    @property
    def dims(self):
        return [self.input_dim] + [layer.output_dim for layer in self.layers]

    def feed_forward(self, x):
        """
        Forward pass keeping every intermediate output.

        Args:
            x: (input_dim + 1, N) batch, last row all ones

        Returns:
            list: [x, O_1, ..., O_L], each O_i of shape (dim_i + 1, N)
        """
        x = to_device(x)
        if x.ndim != 2 or x.shape[0] != self.input_dim + 1:
            raise ValueError(
                f"Input has shape {tuple(x.shape)}, expected ({self.input_dim + 1}, N)")

        outputs = [x]
        for layer in self.layers:
            outputs.append(layer.feed_forward(outputs[-1]))
        return outputs

    def predict(self, x):
        """Network output without the bias row, (output_dim, N)."""
        return strip_bias(self.feed_forward(x)[-1])

    def get_error(self, target, output, measure=None):
        """
        Error signal at the output layer.

        Args:
            target: One-hot targets (output_dim, N)
            output: predict() result (output_dim, N)
            measure: 'L2ERROR' or 'CROSS_ENTROPY'; defaults to config
        """
        target = to_device(target)
        if target.shape != output.shape:
            raise ValueError(f"Target shape {tuple(target.shape)} != output shape {tuple(output.shape)}")
        error_measure = get_error_measure(measure or self.config.error_measure)
        error_measure.forward(output, target)
        return error_measure.backward()

    def back_propagate(self, outputs, error):
        """
        Right-to-left pass filling every layer's dW.

        Args:
            outputs: list returned by feed_forward for the same batch
            error: get_error() result

        Returns:
            dE/d(input) without the bias row, (input_dim, N)
        """
        if len(outputs) != len(self.layers) + 1:
            raise ValueError(
                f"Expected {len(self.layers) + 1} cached outputs, got {len(outputs)}")

        for i in reversed(range(len(self.layers))):
            error = self.layers[i].back_propagate(outputs[i], outputs[i + 1], error)
        return error

    def update(self, learning_rate=None):
        lr = self.config.learning_rate if learning_rate is None else learning_rate
        for layer in self.layers:
            layer.update(lr)

    def adjust_learning_rate(self, train_accuracy, schedule):
        """Decay config.learning_rate according to the caller's schedule."""
        self.config.learning_rate = schedule.step(self.config.learning_rate, train_accuracy)
        return self.config.learning_rate

    def train_batch(self, x, target):
        """
        One gradient descent step on a batch.

        Returns:
            tuple: (loss, output) with output of shape (output_dim, N)
        """
        outputs = self.feed_forward(x)
        output = strip_bias(outputs[-1])

        error_measure = get_error_measure(self.config.error_measure)
        loss = error_measure.forward(output, to_device(target))
        self.back_propagate(outputs, error_measure.backward())
        self.update()
        return loss, output

    def copy(self):
        """Deep copy: layers and config are not shared."""
        return copy.deepcopy(self)

    # =========================================================================
    # Model file I/O
    # =========================================================================

    def save(self, path):
        """
        Write the model as text.

        Per layer:
            <type> rows cols
            [ (rows - 1) x cols weights ]
            <bias>
            [ cols bias values ]
        """
        if not self.layers:
            raise RuntimeError("Cannot save an empty DNN")

        with open(path, 'w', encoding='utf-8') as f:
            for layer in self.layers:
                W = asnumpy(layer.W)
                rows, cols = W.shape
                f.write(f"<{layer.type_tag}> {rows} {cols}\n")
                f.write(_format_block(W[:-1]))
                f.write("<bias>\n")
                f.write(_format_block(W[-1:]))
        print(f"[SAVE] Model saved to: {path}")

    def read(self, path):
        """Replace all layers with the ones stored in `path`."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Model file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            tokens = re.sub(r'([\[\]])', r' \1 ', f.read()).split()

        layers = []
        reader = _TokenReader(tokens, path)
        while not reader.done():
            tag = reader.next()
            match = re.fullmatch(r'<(\w+)>', tag)
            if not match or match.group(1) not in LAYER_TYPES:
                raise ValueError(f"{path}: unknown layer type '{tag}'")
            rows, cols = reader.next_int(), reader.next_int()
            if rows < 2 or cols < 1:
                raise ValueError(f"{path}: invalid layer dimensions {rows}x{cols}")

            weights = reader.next_block((rows - 1) * cols)
            reader.expect('<bias>')
            bias = reader.next_block(cols)

            W = np.vstack([weights.reshape(rows - 1, cols), bias.reshape(1, cols)])
            layers.append(LAYER_TYPES[match.group(1)].from_weights(W))

        if not layers:
            raise ValueError(f"{path}: no layers found")
        for prev, layer in zip(layers, layers[1:]):
            if prev.output_dim != layer.input_dim:
                raise ValueError(
                    f"{path}: layer dims do not chain ({prev.output_dim} -> {layer.input_dim})")
        layers[-1].is_output_layer = True
        self.layers = layers

    def describe(self):
        return '\n'.join(
            f"  [{i}] {layer.describe()}" for i, layer in enumerate(self.layers))


def _format_block(M):
    lines = [' '.join(f'{v:.9g}' for v in row) for row in M]
    return '[ ' + '\n  '.join(lines) + ' ]\n'


class _TokenReader:
    """Sequential access to the whitespace-split model file."""

    def __init__(self, tokens, path):
        self.tokens = tokens
        self.path = path
        self.pos = 0

    def done(self):
        return self.pos >= len(self.tokens)

    def next(self):
        if self.done():
            raise ValueError(f"{self.path}: unexpected end of file")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def next_int(self):
        token = self.next()
        try:
            return int(token)
        except ValueError:
            raise ValueError(f"{self.path}: expected an integer, got '{token}'") from None

    def expect(self, expected):
        token = self.next()
        if token != expected:
            raise ValueError(f"{self.path}: expected '{expected}', got '{token}'")

    def next_block(self, count):
        self.expect('[')
        values = [self.next() for _ in range(count)]
        self.expect(']')
        try:
            return np.array(values, dtype=np.float32)
        except ValueError:
            raise ValueError(f"{self.path}: malformed number in weight block") from None
