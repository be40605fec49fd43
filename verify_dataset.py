import numpy as np
import pytest

from cunn_core import asnumpy
from cunn_models import DataSet, Batch, one_hot, CSVLogger, evaluate, DNN, Config, save_metadata, load_metadata

import predict as predict_script


def write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def test_dense_file(tmp_path):
    print("Testing dense dataset...")
    path = write(tmp_path, 'dense.dat', "3 1.0 2.0\n# comment\n7 3.0 4.0\n\n3 5.0 6.0\n")
    data = DataSet.from_file(path)
    assert len(data) == 3 and data.dim == 2
    assert data.label_map == {3: 0, 7: 1}
    assert data.X.shape == (3, 3)
    assert np.allclose(data.X[:, 1], [3.0, 4.0, 1.0])
    assert np.all(data.X[-1] == 1)
    assert data.Y.shape == (1, 3)
    assert data.Y.ravel().tolist() == [0, 1, 0]
    print("Dense dataset Passed!\n")


def test_sparse_file(tmp_path):
    path = write(tmp_path, 'sparse.dat', "1 1:0.5 4:2\n-1 2:1.5\n")
    data = DataSet.from_file(path)
    assert data.dim == 4
    assert data.label_map == {-1: 0, 1: 1}
    assert np.allclose(data.X[:, 0], [0.5, 0, 0, 2, 1])
    assert np.allclose(data.X[:, 1], [0, 1.5, 0, 0, 1])

    wide = DataSet.from_file(path, input_format='sparse', dim=6)
    assert wide.dim == 6
    with pytest.raises(ValueError):
        DataSet.from_file(path, input_format='sparse', dim=3)


def test_file_errors(tmp_path):
    with pytest.raises(FileNotFoundError, match='nothing.dat'):
        DataSet.from_file(str(tmp_path / 'nothing.dat'))
    ragged = write(tmp_path, 'ragged.dat', "1 1 2\n0 1\n")
    with pytest.raises(ValueError, match='ragged.dat:2'):
        DataSet.from_file(ragged)
    with pytest.raises(ValueError):
        DataSet.from_file(ragged, input_format='csv')


def test_batches_and_split():
    rng = np.random.RandomState(0)
    data = DataSet(rng.randn(10, 3), np.arange(10) % 2)
    batches = list(data.batches(4))
    assert batches == [Batch(0, 4), Batch(4, 4), Batch(8, 2)]
    assert data.get_x(batches[2]).shape == (4, 2)
    assert data.get_y(batches[1]).shape == (1, 4)

    train, valid = data.split(0.3, seed=1)
    assert len(train) == 7 and len(valid) == 3
    assert train.label_map == data.label_map
    merged = np.sort(np.concatenate([train.X[0], valid.X[0]]))
    assert np.allclose(merged, np.sort(data.X[0]))


def test_normalize():
    features = np.array([[0.0, 10.0], [5.0, 10.0], [10.0, 10.0]])
    data = DataSet(features, [0, 1, 0])
    stats = data.normalize('rescale')
    assert np.allclose(data.X[0], [0, 0.5, 1])
    # Constant feature keeps finite values
    assert np.all(np.isfinite(data.X[1]))
    assert np.all(data.X[-1] == 1)

    other = DataSet(np.array([[20.0, 10.0]]), [0])
    other.normalize('rescale', stats)
    assert np.isclose(other.X[0, 0], 2.0)

    z = DataSet(features, [0, 1, 0])
    z.normalize('zscore')
    assert np.isclose(z.X[0].mean(), 0, atol=1e-6)


def test_one_hot():
    target = one_hot(np.array([[2, 0, 1]]), 3)
    assert target.shape == (3, 3)
    assert np.allclose(target, [[0, 1, 0], [0, 0, 1], [1, 0, 0]])


def test_evaluate_and_csv_logger(tmp_path):
    rng = np.random.RandomState(1)
    data = DataSet(rng.randn(9, 4), rng.randint(0, 3, size=9))
    dnn = DNN([4, 3], Config(seed=1))
    acc = evaluate(dnn.predict, data, batch_size=4)
    assert 0.0 <= acc <= 1.0

    log_path = str(tmp_path / 'log.csv')
    logger = CSVLogger(log_path)
    logger.log({'epoch': 1, 'valid_acc': acc})
    logger.log({'epoch': 2, 'valid_acc': acc})
    with open(log_path) as f:
        lines = f.read().splitlines()
    assert lines[0] == 'epoch,valid_acc'
    assert len(lines) == 3

def test_batch_window_matches_full_pass():
    rng = np.random.RandomState(2)
    data = DataSet(rng.randn(10, 4), rng.randint(0, 3, size=10))
    dnn = DNN([4, 5, 3], Config(seed=2))
    full = asnumpy(dnn.predict(data.get_x(Batch(0, len(data)))))
    window = asnumpy(dnn.predict(data.get_x(Batch(3, 4))))
    assert window.shape == (3, 4)
    assert np.allclose(window, full[:, 3:7], atol=1e-6)


def test_shared_label_map():
    train = DataSet(np.zeros((3, 1)), [1, 2, 3])
    test = DataSet(np.zeros((2, 1)), [3, 2], label_map=train.label_map)
    assert test.Y.ravel().tolist() == [2, 1]
    assert test.n_classes == 3
    with pytest.raises(ValueError):
        DataSet(np.zeros((1, 1)), [4], label_map=train.label_map)


def test_metadata_roundtrip(tmp_path):
    print("Testing model metadata...")
    model_path = str(tmp_path / 'model.txt')
    assert load_metadata(model_path) == (None, None)

    train = DataSet(np.array([[0.0], [10.0]]), [-1, 2.5])
    stats = train.normalize('rescale')
    save_metadata(model_path, train.label_map, ('rescale', stats))

    label_map, normalization = load_metadata(model_path)
    assert label_map == {-1: 0, 2.5: 1}
    method, loaded = normalization
    assert method == 'rescale'

    test = DataSet(np.array([[5.0]]), [2.5], label_map=label_map)
    test.normalize(method, loaded)
    assert np.isclose(test.X[0, 0], 0.5)
    assert test.Y.ravel().tolist() == [1]

    (tmp_path / 'model.txt.meta.json').write_text('{"labels": 3}')
    with pytest.raises(ValueError, match='meta.json'):
        load_metadata(model_path)
    print("Model metadata Passed!\n")


def test_predict_uses_training_labels_and_stats(tmp_path):
    print("Testing prediction with saved training metadata...")
    # f > 0 after normalization -> class 1, f < 0 -> class 2, class 0 never wins
    model_path = str(tmp_path / 'model.txt')
    (tmp_path / 'model.txt').write_text("<softmax> 2 3\n[ 0 20 -20 ]\n<bias>\n[ -100 0 0 ]\n")
    shift = np.array([[10.0]], dtype=np.float32)
    scale = np.array([[2.0]], dtype=np.float32)
    save_metadata(model_path, {1: 0, 2: 1, 3: 2}, ('zscore', (shift, scale)))

    # label 1 is absent; the file's own mean (11.25) would flip the 11 row
    test_path = write(tmp_path, 'test.dat', "3 9\n2 11\n2 12\n2 13\n")
    output_path = str(tmp_path / 'predictions.txt')
    predictions, acc = predict_script.predict({
        'test_file': test_path,
        'model_file': model_path,
        'output_file': output_path,
        'input_format': 'auto',
        'normalize': None,
        'batch_size': 3,
    })
    assert predictions.tolist() == [2, 1, 1, 1]
    assert acc == 1.0
    assert np.loadtxt(output_path).tolist() == [3, 2, 2, 2]
    print("Prediction with metadata Passed!\n")


if __name__ == "__main__":
    test_one_hot()
    test_batches_and_split()
    test_normalize()
    test_batch_window_matches_full_pass()
    test_shared_label_map()
