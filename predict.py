"""
Prediction Script

Loads a trained DNN, predicts labels for a dataset and reports accuracy
against its labels. The label map and normalization statistics saved by
train.py next to the model are reused so indices line up with training.

Usage:
    python predict.py data/test.dat model.txt
    python predict.py data/test.dat model.txt predictions.txt --normalize rescale
"""

import os
import sys
import argparse
import numpy as np

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cunn_core import on_gpu
from cunn_models import DNN, DataSet, predict_labels, load_metadata


def predict(config):
    print(f"Loading model: {config['model_file']} ({'GPU' if on_gpu() else 'CPU'})")
    dnn = DNN.from_file(config['model_file'])
    print(dnn.describe())

    label_map, normalization = load_metadata(config['model_file'])
    if label_map is None:
        print(f"[WARNING] No metadata next to {config['model_file']}; "
              f"labels are indexed from the test file itself")
    elif len(label_map) != dnn.output_dim:
        raise ValueError(
            f"Metadata lists {len(label_map)} classes, model has {dnn.output_dim} outputs")

    # dim only applies to sparse files
    data = DataSet.from_file(config['test_file'], config['input_format'], dnn.input_dim, label_map)
    if data.dim != dnn.input_dim:
        raise ValueError(f"Model expects {dnn.input_dim} features, {config['test_file']} has {data.dim}")

    if normalization is not None:
        method, stats = normalization
        if config['normalize'] and config['normalize'] != method:
            raise ValueError(f"Model was trained with '{method}' normalization, not '{config['normalize']}'")
        data.normalize(method, stats)
    elif config['normalize']:
        print("[WARNING] No training statistics saved; normalizing with the test set's own")
        data.normalize(config['normalize'])

    predictions = []
    for batch in data.batches(config['batch_size']):
        predictions.append(predict_labels(dnn.predict(data.get_x(batch))))
    predictions = np.concatenate(predictions)

    acc = float(np.mean(predictions == data.Y.ravel()))
    print(f"Accuracy: {acc:.4f} ({int(round(acc * len(data)))}/{len(data)})")

    if config['output_file']:
        # without a saved label map the indices cannot be traced back to labels
        labels = predictions if label_map is None else index_to_label(label_map, predictions)
        np.savetxt(config['output_file'], labels, fmt='%.9g')
        print(f"[SAVE] Predictions saved to: {config['output_file']}")
    return predictions, acc


def index_to_label(label_map, indices):
    """Class indices -> the raw labels they were mapped from."""
    labels = {index: label for label, index in label_map.items()}
    return np.array([labels[i] for i in np.asarray(indices).tolist()])


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Predict with a trained DNN")
    parser.add_argument('test_file', type=str)
    parser.add_argument('model_file', type=str)
    parser.add_argument('output_file', type=str, nargs='?', default=None)
    parser.add_argument('--input-format', type=str, default='auto', choices=['auto', 'dense', 'sparse'])
    parser.add_argument('--normalize', type=str, default=None, choices=['rescale', 'zscore'])
    parser.add_argument('--batch-size', type=int, default=256)
    args = parser.parse_args()

    config = {
        'test_file': args.test_file,
        'model_file': args.model_file,
        'output_file': args.output_file,
        'input_format': args.input_format,
        'normalize': args.normalize,
        'batch_size': args.batch_size,
    }

    predict(config)
