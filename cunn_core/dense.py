"""
Fully connected layer: bias-augmented affine map followed by a sigmoid.
"""
from .backend import xp, DTYPE
from .base import FeatureTransform
from .activations import sigmoid, sigmoid_grad
from .reshape import add_bias


class AffineTransform(FeatureTransform):
    """
    Sigmoid layer: out = [sigmoid(W^T @ fin); 1].

    Args:
        rows: input_dim + 1
        cols: output_dim
        is_output_layer: set on the last layer of a network
    """
    type_tag = 'sigmoid'

    def activation(self, z):
        return sigmoid(z)

    def local_delta(self, fout, error):
        return error * sigmoid_grad(fout[:-1])

    def feed_forward(self, fin):
        """Forward pass. fin: (input_dim + 1, N) -> (output_dim + 1, N)."""
        self.check_input(fin)
        z = self.W.T @ fin
        return add_bias(self.activation(z))

    def back_propagate(self, fin, fout, error):
        """
        Backward pass.

        Stores the batch-averaged weight gradient in dW and returns the
        error with respect to the non-bias inputs, (input_dim, N).

        Args:
            fin: input given to feed_forward
            fout: output returned by feed_forward
            error: dE/d(output) without the bias row, (output_dim, N)
        """
        self.check_backward(fin, fout, error)
        n = fin.shape[1]
        delta = self.local_delta(fout, error)
        self.dW = (fin @ delta.T / n).astype(DTYPE)
        return self.W[:-1] @ delta


def init_weights(input_dim, output_dim, variance):
    """Gaussian weights with the given variance, zero bias row."""
    W = xp.random.randn(input_dim + 1, output_dim).astype(DTYPE) * DTYPE(variance ** 0.5)
    W[-1] = 0
    return W
