import os

import numpy as np
import pytest

from cunn_core import xp, LearningRateSchedule, L2Error, CrossEntropyError, get_error_measure, asnumpy, strip_bias
from cunn_models import DNN, CNN, Config, DataSet, ForwardContext, one_hot, accuracy, load_metadata

import train as train_script


def batch_with_bias(n_features, n_data, seed=0):
    rng = np.random.RandomState(seed)
    x = rng.randn(n_features, n_data).astype(np.float32)
    return np.vstack([x, np.ones((1, n_data), dtype=np.float32)])


def test_dnn_end_to_end():
    print("Testing DNN [3, 4, 2]...")
    dnn = DNN([3, 4, 2], Config(seed=0))
    assert [l.type_tag for l in dnn.layers] == ['sigmoid', 'softmax']
    assert dnn.layers[-1].is_output_layer and not dnn.layers[0].is_output_layer

    x = batch_with_bias(3, 5)
    outputs = dnn.feed_forward(x)
    assert [o.shape for o in outputs] == [(4, 5), (5, 5), (3, 5)]

    prob = asnumpy(dnn.predict(x))
    print(f"Output shape: {prob.shape} (Expected: (2, 5))")
    assert prob.shape == (2, 5)
    assert np.allclose(prob.sum(axis=0), 1.0, atol=1e-6)

    target = one_hot([0, 1, 1, 0, 1], 2)
    error = dnn.get_error(target, strip_bias(outputs[-1]))
    dx = dnn.back_propagate(outputs, error)
    assert dx.shape == (3, 5)
    for layer in dnn.layers:
        assert layer.dW.shape == layer.W.shape
    print("DNN Passed!\n")


def test_dnn_rejects_bad_input():
    dnn = DNN([3, 2])
    with pytest.raises(ValueError):
        dnn.feed_forward(np.ones((3, 5), dtype=np.float32))
    with pytest.raises(ValueError):
        dnn.get_error(np.ones((3, 5)), dnn.predict(batch_with_bias(3, 5)))
    with pytest.raises(ValueError):
        DNN([3])


def test_uninitialized_model():
    dnn = DNN()
    with pytest.raises(RuntimeError):
        dnn.input_dim
    with pytest.raises(RuntimeError):
        dnn.output_dim


def test_error_measures():
    pred = np.array([[0.25, 0.0], [0.75, 1.0]], dtype=np.float32)
    target = np.array([[0.0, 1.0], [1.0, 0.0]], dtype=np.float32)

    l2 = L2Error()
    assert np.isclose(l2.forward(pred, target), 0.5 * (0.0625 + 0.0625 + 1 + 1) / 2)
    assert np.allclose(l2.backward(), pred - target)

    ce = CrossEntropyError()
    loss = ce.forward(pred, target)
    grad = ce.backward()
    # Zero probability is clamped, so everything stays finite
    assert np.isfinite(loss) and np.all(np.isfinite(grad))
    assert np.isclose(grad[1, 0], -1 / 0.75)

    assert isinstance(get_error_measure('cross-entropy'), CrossEntropyError)
    with pytest.raises(ValueError):
        get_error_measure('hinge')


def test_config():
    config = Config.from_dict({'learning_rate': 0.5, 'batch_size': 8})
    assert config.learning_rate == 0.5 and config.batch_size == 8
    assert config.error_measure == 'CROSS_ENTROPY'
    assert Config.from_dict(config.to_dict()).to_dict() == config.to_dict()
    with pytest.raises(ValueError):
        Config(momentum=0.9)
    with pytest.raises(ValueError):
        Config(error_measure='hinge')
    assert Config().min_valid_accuracy is None


def test_dnn_save_read_roundtrip(tmp_path):
    print("Testing model save/read...")
    dnn = DNN([6, 5, 4, 3], Config(seed=1))
    path = str(tmp_path / 'model.txt')
    dnn.save(path)

    with open(path) as f:
        lines = f.read().splitlines()
    assert lines[0] == '<sigmoid> 7 5'
    assert '<bias>' in lines
    assert sum(line.startswith('<softmax>') for line in lines) == 1

    loaded = DNN.from_file(path)
    assert loaded.dims == [6, 5, 4, 3]
    assert loaded.layers[-1].is_output_layer

    x = batch_with_bias(6, 7, seed=2)
    assert np.allclose(asnumpy(loaded.predict(x)), asnumpy(dnn.predict(x)), rtol=1e-5, atol=1e-7)
    print("Save/read Passed!\n")


def test_read_errors(tmp_path):
    missing = str(tmp_path / 'missing.txt')
    with pytest.raises(FileNotFoundError, match='missing.txt'):
        DNN().read(missing)

    bad_type = tmp_path / 'bad_type.txt'
    bad_type.write_text("<relu> 2 1\n[ 1 ]\n<bias>\n[ 0 ]\n")
    with pytest.raises(ValueError, match='relu'):
        DNN.from_file(str(bad_type))

    short = tmp_path / 'short.txt'
    short.write_text("<sigmoid> 3 2\n[ 1 2 3 ]\n<bias>\n[ 0 0 ]\n")
    with pytest.raises(ValueError):
        DNN.from_file(str(short))

    unchained = tmp_path / 'unchained.txt'
    unchained.write_text(
        "<sigmoid> 2 2\n[ 1 2 ]\n<bias>\n[ 0 0 ]\n"
        "<softmax> 4 2\n[ 1 2\n 3 4\n 5 6 ]\n<bias>\n[ 0 0 ]\n")
    with pytest.raises(ValueError, match='chain'):
        DNN.from_file(str(unchained))


def test_read_hand_written_model(tmp_path):
    path = tmp_path / 'model.txt'
    path.write_text("<softmax> 3 2\n[ 1 -1\n  0 2 ]\n<bias>\n[ 0.5 0 ]\n")
    dnn = DNN.from_file(str(path))
    W = asnumpy(dnn.layers[0].W)
    assert np.allclose(W, [[1, -1], [0, 2], [0.5, 0]])

    x = np.array([[1.0], [1.0], [1.0]], dtype=np.float32)
    z = np.array([1.5, 1.0])
    expected = np.exp(z) / np.exp(z).sum()
    assert np.allclose(asnumpy(dnn.predict(x)).ravel(), expected, atol=1e-6)


def test_copy_is_deep():
    dnn = DNN([3, 4, 2], Config(seed=3))
    clone = dnn.copy()
    clone.layers[0].W += 1
    clone.config.learning_rate = 0.01
    assert not np.allclose(asnumpy(clone.layers[0].W), asnumpy(dnn.layers[0].W))
    assert dnn.config.learning_rate == 0.1


def test_dnn_learns_separable_data():
    print("Testing DNN training...")
    rng = np.random.RandomState(4)
    n = 100
    labels = np.repeat([0, 1], n // 2)
    centers = np.array([[-2.0, -2.0], [2.0, 2.0]])
    features = centers[labels] + 0.5 * rng.randn(n, 2)
    x = np.vstack([features.T, np.ones((1, n))]).astype(np.float32)
    target = one_hot(labels, 2)

    dnn = DNN([2, 8, 2], Config(learning_rate=0.5, seed=4))
    first_loss, _ = dnn.train_batch(x, target)
    for _ in range(300):
        loss, _ = dnn.train_batch(x, target)

    acc = accuracy(dnn.predict(x), labels)
    print(f"Loss {first_loss:.4f} -> {loss:.4f}, accuracy {acc:.2f}")
    assert loss < first_loss
    assert acc >= 0.9
    print("Training Passed!\n")


def test_learning_rate_schedule():
    print("Testing learning rate schedule...")
    schedule = LearningRateSchedule()
    lr = 1.0
    decays = 0
    for acc in [0.5, 0.79, 0.81, 0.82, 0.86, 0.88, 0.91, 0.915, 0.93, 0.96, 0.965, 0.98, 0.99]:
        new_lr = schedule.step(lr, acc)
        if new_lr != lr:
            decays += 1
            assert np.isclose(new_lr, lr * 0.9)
        lr = new_lr
    assert decays == 6
    assert schedule.finished
    assert np.isclose(lr, 0.9 ** 6)

    # Revisiting a crossed threshold does not trigger again
    schedule = LearningRateSchedule()
    lr = schedule.step(1.0, 0.81)
    lr = schedule.step(lr, 0.70)
    lr = schedule.step(lr, 0.82)
    assert np.isclose(lr, 0.9)

    # One phase per call, even on a large jump
    schedule = LearningRateSchedule()
    assert np.isclose(schedule.step(1.0, 0.99), 0.9)
    assert schedule.phase == 1
    print("Schedule Passed!\n")


def test_adjust_learning_rate_updates_config():
    dnn = DNN([2, 2], Config(learning_rate=0.2))
    schedule = LearningRateSchedule()
    assert np.isclose(dnn.adjust_learning_rate(0.5, schedule), 0.2)
    assert np.isclose(dnn.adjust_learning_rate(0.85, schedule), 0.18)
    assert np.isclose(dnn.config.learning_rate, 0.18)


def test_cnn_structure():
    print("Testing CNN construction...")
    cnn = CNN('2x5x5-2s-3x2x2', image_size=(10, 10))
    assert len(cnn.layers) == 3
    assert cnn.layers[1].scale == 2
    assert cnn.layers[2].n_input_maps == 2 and cnn.layers[2].n_output_maps == 3
    assert cnn.output_size == (2, 2)
    assert cnn.output_dim == 3 * 2 * 2

    with pytest.raises(ValueError, match='5y5'):
        CNN('2x5y5', image_size=(10, 10))
    with pytest.raises(ValueError):
        CNN('2x5x5-4s', image_size=(10, 10))
    with pytest.raises(ValueError):
        CNN('2x11x11', image_size=(10, 10))
    with pytest.raises(ValueError, match='2x0x3'):
        CNN('2x0x3', image_size=(5, 5))
    with pytest.raises(ValueError, match='0x3x3'):
        CNN('0x3x3', image_size=(5, 5))
    print("CNN construction Passed!\n")


def test_cnn_forward_backward():
    print("Testing CNN forward/backward...")
    rng = np.random.RandomState(5)
    cnn = CNN('2x5x5', image_size=(10, 10))
    x = np.vstack([rng.rand(100, 4), np.ones((1, 4))]).astype(np.float32)

    out, context = cnn.feed_forward(x)
    print(f"Output shape: {out.shape} (Expected: (73, 4))")
    assert out.shape == (73, 4)
    assert np.allclose(asnumpy(out)[-1], 1.0)
    assert isinstance(context, ForwardContext)
    assert [len(h) for h in context.houts] == [1, 2]

    error = rng.randn(73, 4).astype(np.float32)
    dx = cnn.back_propagate(context, error, 0.1)
    assert dx.shape == (100, 4)

    with pytest.raises(RuntimeError):
        cnn.back_propagate(context, error, 0.1)

    other = CNN('2x5x5', image_size=(10, 10))
    _, foreign = other.feed_forward(x)
    with pytest.raises(RuntimeError):
        cnn.back_propagate(foreign, error, 0.1)
    print("CNN forward/backward Passed!\n")


def test_cnn_unsupported_operations(tmp_path):
    cnn = CNN('2x3x3', image_size=(5, 5))
    with pytest.raises(NotImplementedError):
        cnn.save(str(tmp_path / 'cnn.txt'))
    with pytest.raises(NotImplementedError):
        cnn.read(str(tmp_path / 'cnn.txt'))
    with pytest.raises(NotImplementedError):
        cnn.feed_backward(np.zeros((18, 1)))


def test_cnn_dnn_training_step():
    rng = np.random.RandomState(6)
    cnn = CNN('3x3x3-2s', image_size=(8, 8))
    dnn = DNN([cnn.output_dim, 5, 2], Config(seed=6))
    x = rng.rand(64, 6).astype(np.float32)
    target = one_hot([0, 1, 0, 1, 1, 0], 2)

    hidden, context = cnn.feed_forward(x)
    assert hidden.shape == (3 * 3 * 3 + 1, 6)
    outputs = dnn.feed_forward(hidden)
    error = dnn.get_error(target, strip_bias(outputs[-1]))
    dnn_error = dnn.back_propagate(outputs, error)
    assert dnn_error.shape == (27, 6)

    kernels_before = asnumpy(cnn.layers[0].kernels).copy()
    dx = cnn.back_propagate(context, dnn_error, 0.5)
    dnn.update()
    assert dx.shape == (64, 6)
    assert not np.allclose(asnumpy(cnn.layers[0].kernels), kernels_before)

def test_cnn_input_error_numeric():
    print("Testing CNN input error against finite differences...")
    xp.random.seed(4)
    rng = np.random.RandomState(4)
    cnn = CNN('2x3x3-2s', image_size=(8, 8))
    x = rng.rand(64, 2).astype(np.float32)
    R = rng.randn(18, 2).astype(np.float32)

    def loss(inputs):
        out, _ = cnn.feed_forward(inputs)
        return float(np.sum(R * asnumpy(out)[:-1]))

    _, context = cnn.feed_forward(x)
    # zero learning rate leaves the kernels untouched for the checks below
    dx = asnumpy(cnn.back_propagate(context, R, 0.0))
    assert dx.shape == (64, 2)

    eps = 1e-2
    for row, col in [(0, 0), (9, 1), (27, 0), (36, 1), (63, 0)]:
        plus = x.copy()
        plus[row, col] += eps
        minus = x.copy()
        minus[row, col] -= eps
        numeric = (loss(plus) - loss(minus)) / (2 * eps)
        print(f"dx[{row}, {col}]: analytic {dx[row, col]:.6f}, numeric {numeric:.6f}")
        assert np.isclose(dx[row, col], numeric, rtol=1e-2, atol=1e-3)
    print("CNN input error Passed!\n")


def write_dataset(path, n_data, seed):
    rng = np.random.RandomState(seed)
    with open(path, 'w') as f:
        for _ in range(n_data):
            label = rng.randint(0, 2)
            features = rng.rand(16) + label
            f.write(f"{label} " + ' '.join(f'{v:.4f}' for v in features) + '\n')


def train_config(tmp_path, **hparams):
    train_file = str(tmp_path / 'train.dat')
    write_dataset(train_file, 20, seed=0)
    config = {
        'train_file': train_file,
        'model_out': str(tmp_path / 'model.txt'),
        'hidden': [4],
        'cnn': '',
        'image_size': (4, 4),
        'n_input_maps': 1,
        'init_model': None,
        'input_format': 'auto',
        'dim': None,
        'normalize': 'rescale',
        'save_dir': str(tmp_path / 'logs'),
        'hparams': dict(Config.DEFAULTS, max_epoch=3, batch_size=5, seed=0),
    }
    config['hparams'].update(hparams)
    return config


def logged_epochs(config):
    with open(os.path.join(config['save_dir'], 'training_log.csv')) as f:
        return len(f.read().splitlines()) - 1


def test_train_early_stop(tmp_path):
    config = train_config(tmp_path)
    train_script.train(config)
    assert logged_epochs(config) == 3
    assert os.path.exists(config['model_out'] + '.meta.json')

    label_map, normalization = load_metadata(config['model_out'])
    assert label_map == {0: 0, 1: 1}
    assert normalization[0] == 'rescale'
    assert normalization[1][0].shape == (16, 1)

    stopping = train_config(tmp_path, min_valid_accuracy=0.0)
    train_script.train(stopping)
    assert logged_epochs(stopping) == 1


def test_seed_reproduces_cnn(tmp_path):
    config = train_config(tmp_path)
    config['cnn'] = '2x3x3'
    data = DataSet.from_file(config['train_file'])

    cnn_a, dnn_a = train_script.build_model(config, data)
    xp.random.seed(123)
    cnn_b, dnn_b = train_script.build_model(config, data)
    assert np.array_equal(asnumpy(cnn_a.layers[0].kernels), asnumpy(cnn_b.layers[0].kernels))
    assert np.array_equal(asnumpy(dnn_a.layers[0].W), asnumpy(dnn_b.layers[0].W))



if __name__ == "__main__":
    test_dnn_end_to_end()
    test_dnn_learns_separable_data()
    test_learning_rate_schedule()
    test_cnn_structure()
    test_cnn_forward_backward()
    test_cnn_input_error_numeric()
