"""
Network models built on cunn_core.

Usage:
    from cunn_models import DNN, CNN, Config, DataSet

    data = DataSet.from_file('train.dat')
    dnn = DNN([data.dim, 64, data.n_classes], Config(learning_rate=0.1))
    cnn = CNN('10x5x5-2s', image_size=(28, 28))
"""

from .dnn import DNN, Config, LAYER_TYPES
from .cnn import CNN, ForwardContext
from .dataset import DataSet, Batch, one_hot
from .utils import (
    predict_labels, accuracy, evaluate, CSVLogger,
    metadata_path, save_metadata, load_metadata,
)


__all__ = [
    'DNN', 'Config', 'LAYER_TYPES',
    'CNN', 'ForwardContext',
    'DataSet', 'Batch', 'one_hot',
    'predict_labels', 'accuracy', 'evaluate', 'CSVLogger',
    'metadata_path', 'save_metadata', 'load_metadata',
]
