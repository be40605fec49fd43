"""
Output layer and error measures.
"""
from .backend import get_array_module
from .dense import AffineTransform
from .activations import softmax


class Softmax(AffineTransform):
    """
    Affine map followed by a column-wise softmax.

    The backward pass applies the full softmax Jacobian, so an incoming
    cross-entropy derivative -target/out turns into out - target.
    """
    type_tag = 'softmax'

    def activation(self, z):
        return softmax(z)

    def local_delta(self, fout, error):
        xp = get_array_module(error)
        out = fout[:-1]
        return out * (error - xp.sum(out * error, axis=0, keepdims=True))


class L2Error:
    """Squared error, 0.5 * ||pred - target||^2 averaged over samples."""
    def __init__(self):
        self.pred = None
        self.target = None

    def forward(self, pred, target):
        """
        Args:
            pred: Predictions (K, N)
            target: Targets (K, N)
        """
        xp = get_array_module(pred)
        self.pred = pred
        self.target = target
        return float(0.5 * xp.sum((pred - target) ** 2) / pred.shape[1])

    def backward(self):
        """dE/d(pred) per sample."""
        return self.pred - self.target


class CrossEntropyError:
    """Cross entropy against one-hot targets."""
    eps = 1e-10

    def __init__(self):
        self.pred = None
        self.target = None

    def forward(self, pred, target):
        xp = get_array_module(pred)
        # Clamp away from zero before log and division
        self.pred = xp.maximum(pred, self.eps)
        self.target = target
        return float(-xp.sum(target * xp.log(self.pred)) / pred.shape[1])

    def backward(self):
        return -self.target / self.pred


ERROR_MEASURES = {
    'L2ERROR': L2Error,
    'CROSS_ENTROPY': CrossEntropyError,
}


def get_error_measure(name):
    """Instantiate an error measure by name (L2ERROR or CROSS_ENTROPY)."""
    key = name.upper().replace('-', '_')
    if key not in ERROR_MEASURES:
        raise ValueError(f"Unknown error measure '{name}' (choose from {', '.join(ERROR_MEASURES)})")
    return ERROR_MEASURES[key]()
