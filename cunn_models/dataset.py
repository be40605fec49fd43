"""
Text dataset loading.

Two line-oriented formats, one sample per line:
    dense:   <label> f1 f2 ... fD
    sparse:  <label> idx:val idx:val ...   (1-based indices, libsvm style)

Features are held on the host as X of shape (dim + 1, N), last row all
ones, and labels as Y of shape (1, N) remapped to 0..K-1.
"""
import os
from collections import namedtuple

import numpy as np


Batch = namedtuple('Batch', ['offset', 'n_data'])

INPUT_FORMATS = ('auto', 'dense', 'sparse')
NORMALIZATIONS = ('rescale', 'zscore')


def _parse_label(token):
    value = float(token)
    return int(value) if value.is_integer() else value


class DataSet:
    """
    Feature/label matrices plus batching helpers.

    Args:
        features: (N, dim) array
        labels: (N,) raw labels
        label_map: raw label -> class index; built from the sorted unique
                   labels when omitted
    """

    def __init__(self, features, labels, label_map=None):
        features = np.asarray(features, dtype=np.float32)
        labels = np.asarray(labels).ravel()
        if features.ndim != 2 or features.shape[0] != labels.shape[0]:
            raise ValueError(
                f"features {features.shape} and labels {labels.shape} disagree on sample count")

        if label_map is None:
            label_map = {label: i for i, label in enumerate(sorted(set(labels.tolist())))}
        unknown = set(labels.tolist()) - set(label_map)
        if unknown:
            raise ValueError(f"Labels not in label map: {sorted(unknown)}")
        self.label_map = dict(label_map)

        N = features.shape[0]
        self.X = np.ones((features.shape[1] + 1, N), dtype=np.float32)
        self.X[:-1] = features.T
        self.Y = np.array([[self.label_map[l] for l in labels.tolist()]], dtype=np.int64).reshape(1, N)

    @classmethod
    def _from_matrices(cls, X, Y, label_map):
        data = cls.__new__(cls)
        data.X = X
        data.Y = Y
        data.label_map = dict(label_map)
        return data

    @classmethod
    def from_file(cls, path, input_format='auto', dim=None, label_map=None):
        """
        Load a dense or sparse text file.

        Args:
            path: Data file
            input_format: 'auto', 'dense' or 'sparse'
            dim: Feature dimension (sparse only); inferred when omitted
            label_map: Reuse the label mapping of another set
        """
        if input_format not in INPUT_FORMATS:
            raise ValueError(f"Unknown input format '{input_format}' (expected one of {INPUT_FORMATS})")
        if not os.path.exists(path):
            raise FileNotFoundError(f"Data file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            lines = [(n, line.split()) for n, line in enumerate(f, 1)
                     if line.strip() and not line.lstrip().startswith('#')]
        if not lines:
            raise ValueError(f"{path}: no samples")

        if input_format == 'auto':
            input_format = 'sparse' if ':' in ' '.join(lines[0][1][1:]) else 'dense'

        if input_format == 'sparse':
            features, labels = _read_sparse(path, lines, dim)
        else:
            features, labels = _read_dense(path, lines)

        data = cls(features, labels, label_map)
        print(f"[DATA] Loaded {len(data)} samples, dim {data.dim}, "
              f"{data.n_classes} classes from {path}")
        return data

    def __len__(self):
        return self.X.shape[1]

    @property
    def dim(self):
        return self.X.shape[0] - 1

    @property
    def n_classes(self):
        return len(self.label_map)

    def get_x(self, batch):
        """(dim + 1, n_data) slice for a Batch descriptor."""
        return self.X[:, batch.offset:batch.offset + batch.n_data]

    def get_y(self, batch):
        return self.Y[:, batch.offset:batch.offset + batch.n_data]

    def batches(self, batch_size):
        """Iterate Batch descriptors covering the set in order."""
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        for offset in range(0, len(self), batch_size):
            yield Batch(offset, min(batch_size, len(self) - offset))

    def shuffle(self, seed=None):
        perm = np.random.RandomState(seed).permutation(len(self))
        self.X = self.X[:, perm]
        self.Y = self.Y[:, perm]

    def split(self, ratio, seed=42):
        """
        Random train/validation split.

        Returns:
            tuple: (train, valid); valid holds int(N * ratio) samples
        """
        if not 0 <= ratio < 1:
            raise ValueError(f"Split ratio must be in [0, 1), got {ratio}")
        perm = np.random.RandomState(seed).permutation(len(self))
        num_val = int(len(self) * ratio)
        valid_idx, train_idx = perm[:num_val], perm[num_val:]
        train = DataSet._from_matrices(self.X[:, train_idx], self.Y[:, train_idx], self.label_map)
        valid = DataSet._from_matrices(self.X[:, valid_idx], self.Y[:, valid_idx], self.label_map)
        return train, valid

    def normalize(self, method, stats=None):
        """
        Normalize features in place (the bias row is untouched).

        Args:
            method: 'rescale' to [0, 1] per feature, or 'zscore'
            stats: (shift, scale) returned by a previous call, to apply the
                   training set's statistics to another set

        Returns:
            tuple: (shift, scale) column vectors
        """
        if method not in NORMALIZATIONS:
            raise ValueError(f"Unknown normalization '{method}' (expected one of {NORMALIZATIONS})")

        features = self.X[:-1]
        if stats is None:
            if method == 'rescale':
                shift = features.min(axis=1, keepdims=True)
                scale = features.max(axis=1, keepdims=True) - shift
            else:
                shift = features.mean(axis=1, keepdims=True)
                scale = features.std(axis=1, keepdims=True)
            # Constant features
            scale[scale == 0] = 1
            stats = (shift, scale)

        shift, scale = stats
        self.X[:-1] = (features - shift) / scale
        return stats


def _read_dense(path, lines):
    width = len(lines[0][1])
    features, labels = [], []
    for n, parts in lines:
        if len(parts) != width:
            raise ValueError(f"{path}:{n}: expected {width - 1} features, got {len(parts) - 1}")
        try:
            labels.append(_parse_label(parts[0]))
            features.append([float(v) for v in parts[1:]])
        except ValueError:
            raise ValueError(f"{path}:{n}: malformed number") from None
    return np.array(features, dtype=np.float32).reshape(len(lines), width - 1), labels


def _read_sparse(path, lines, dim):
    entries, labels = [], []
    max_index = 0
    for n, parts in lines:
        try:
            labels.append(_parse_label(parts[0]))
            row = []
            for item in parts[1:]:
                index, value = item.split(':')
                row.append((int(index), float(value)))
        except ValueError:
            raise ValueError(f"{path}:{n}: malformed entry") from None
        for index, _ in row:
            if index < 1:
                raise ValueError(f"{path}:{n}: feature indices are 1-based, got {index}")
            max_index = max(max_index, index)
        entries.append(row)

    if dim is None:
        dim = max_index
    elif max_index > dim:
        raise ValueError(f"{path}: feature index {max_index} exceeds dim {dim}")

    features = np.zeros((len(entries), dim), dtype=np.float32)
    for i, row in enumerate(entries):
        for index, value in row:
            features[i, index - 1] = value
    return features, labels


def one_hot(labels, n_classes):
    """(1, N) or (N,) class indices -> (n_classes, N) float32."""
    labels = np.asarray(labels).ravel()
    target = np.zeros((n_classes, labels.shape[0]), dtype=np.float32)
    target[labels, np.arange(labels.shape[0])] = 1.0
    return target
