"""
Evaluation helpers, model metadata and CSV metric logging.
"""
import os
import csv
import json

import numpy as np

from cunn_core import asnumpy


def predict_labels(output):
    """Class index per column of a (K, N) network output."""
    return np.argmax(asnumpy(output), axis=0)


def accuracy(output, labels):
    """Fraction of columns whose argmax matches `labels` ((1, N) or (N,))."""
    labels = np.asarray(labels).ravel()
    if labels.size == 0:
        return 0.0
    return float(np.mean(predict_labels(output) == labels))


def evaluate(forward, data, batch_size):
    """
    Accuracy of `forward` over a whole DataSet.

    Args:
        forward: callable mapping (dim + 1, n) -> (K, n) network output
        data: DataSet
        batch_size: Samples per forward call
    """
    if len(data) == 0:
        return 0.0
    correct = 0
    for batch in data.batches(batch_size):
        output = forward(data.get_x(batch))
        correct += int(np.sum(predict_labels(output) == data.get_y(batch).ravel()))
    return correct / len(data)


class CSVLogger:
    """Append training metrics to a CSV file, one row per call."""

    def __init__(self, log_path):
        """
        Args:
            log_path: Path of the CSV file
        """
        self.log_path = log_path

    def log(self, metrics_dict):
        """
        Write one row of metrics.

        Args:
            metrics_dict: e.g. {'epoch': 1, 'train_loss': 0.5, ...}
        """
        file_exists = os.path.exists(self.log_path)

        with open(self.log_path, 'a', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=metrics_dict.keys())

            if not file_exists:
                writer.writeheader()

            writer.writerow(metrics_dict)


def metadata_path(model_path):
    """Sidecar file written next to a saved model."""
    return model_path + '.meta.json'


def save_metadata(model_path, label_map, normalization=None):
    """
    Save what a model needs to read new data the way it was trained.

    Args:
        model_path: Path of the saved model; the sidecar goes next to it
        label_map: raw label -> class index of the training set
        normalization: None or (method, (shift, scale)) from DataSet.normalize

    Returns:
        Path of the sidecar file
    """
    meta = {
        # pairs, not a dict: JSON keys would turn labels into strings
        'labels': sorted(([label, index] for label, index in label_map.items()),
                         key=lambda pair: pair[1]),
        'normalize': None,
    }
    if normalization is not None:
        method, (shift, scale) = normalization
        meta['normalize'] = {
            'method': method,
            'shift': np.asarray(shift, dtype=np.float64).ravel().tolist(),
            'scale': np.asarray(scale, dtype=np.float64).ravel().tolist(),
        }

    path = metadata_path(model_path)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(meta, f, indent=2)
    print(f"[SAVE] Metadata saved to: {path}")
    return path


def load_metadata(model_path):
    """
    Read the sidecar of `model_path`.

    Returns:
        tuple: (label_map, normalization), or (None, None) when the model
        has no sidecar. normalization is None or (method, (shift, scale))
        with (dim, 1) float32 columns.
    """
    path = metadata_path(model_path)
    if not os.path.exists(path):
        return None, None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            meta = json.load(f)
        label_map = {label: int(index) for label, index in meta['labels']}
        normalization = None
        if meta.get('normalize'):
            norm = meta['normalize']
            shift = np.array(norm['shift'], dtype=np.float32).reshape(-1, 1)
            scale = np.array(norm['scale'], dtype=np.float32).reshape(-1, 1)
            normalization = (norm['method'], (shift, scale))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"{path}: malformed model metadata ({e})") from None
    return label_map, normalization
