import copy

import numpy as np
import pytest

from cunn_core import (
    AffineTransform, Softmax, ConvolutionalLayer, SubSamplingLayer,
    correlate2d, convolve2d, rot180, downsample, upsample,
    vectors_to_images, images_to_vectors, add_bias, concat_maps, split_maps,
    to_device, asnumpy,
)


def with_bias(n_features, n_data, rng):
    x = rng.randn(n_features, n_data).astype(np.float32)
    return np.vstack([x, np.ones((1, n_data), dtype=np.float32)])


def test_image_reshape():
    print("Testing image reshape...")
    rng = np.random.RandomState(0)
    x = rng.randn(12, 5)
    images = vectors_to_images(x, (3, 4))
    assert images.shape == (5, 3, 4)
    # Column k is sample k, flattened row-major
    assert np.allclose(images[2], x[:, 2].reshape(3, 4))
    assert np.allclose(images_to_vectors(images), x)

    maps = [rng.randn(4, 3) for _ in range(3)]
    stacked = concat_maps(maps)
    assert stacked.shape == (12, 3)
    for a, b in zip(split_maps(stacked, 3), maps):
        assert np.allclose(a, b)
    with pytest.raises(ValueError):
        split_maps(stacked, 5)

    augmented = add_bias(x)
    assert augmented.shape == (13, 5)
    assert np.all(augmented[-1] == 1)
    print("Reshape Passed!\n")


def test_affine_transform():
    print("Testing AffineTransform...")
    rng = np.random.RandomState(1)
    W = rng.randn(4, 5).astype(np.float32)
    layer = AffineTransform.from_weights(W)
    assert (layer.input_dim, layer.output_dim) == (3, 5)

    x = to_device(with_bias(3, 6, rng))
    out = layer.feed_forward(x)
    print(f"Forward shape: {out.shape} (Expected: (6, 6))")
    assert out.shape == (6, 6)
    out_np = asnumpy(out)
    assert np.allclose(out_np[-1], 1.0)
    expected = 1 / (1 + np.exp(-(W.T @ asnumpy(x))))
    assert np.allclose(out_np[:-1], expected, atol=1e-6)

    error = to_device(rng.randn(5, 6).astype(np.float32))
    dx = layer.back_propagate(x, out, error)
    print(f"Backward shape: {dx.shape} (Expected: (3, 6))")
    assert dx.shape == (3, 6)
    assert layer.dW.shape == layer.W.shape
    print("AffineTransform Passed!\n")


def test_affine_gradient_matches_numeric():
    rng = np.random.RandomState(2)
    layer = AffineTransform.from_weights(rng.randn(4, 2).astype(np.float32))
    x = to_device(with_bias(3, 4, rng))
    R = rng.randn(2, 4).astype(np.float32)

    def loss(l):
        return float(np.sum(asnumpy(l.feed_forward(x))[:-1].astype(np.float64) * R))

    out = layer.feed_forward(x)
    layer.back_propagate(x, out, to_device(R))
    dW = asnumpy(layer.dW)

    eps = 1e-2
    numeric = np.zeros_like(dW)
    for r in range(4):
        for c in range(2):
            plus, minus = layer.copy(), layer.copy()
            plus.W[r, c] += eps
            minus.W[r, c] -= eps
            numeric[r, c] = (loss(plus) - loss(minus)) / (2 * eps)
    # dW is averaged over the batch
    assert np.allclose(dW, numeric / 4, atol=1e-3)


def test_softmax_layer():
    print("Testing Softmax...")
    rng = np.random.RandomState(3)
    layer = Softmax.from_weights(rng.randn(4, 3).astype(np.float32), is_output_layer=True)
    x = to_device(with_bias(3, 5, rng))
    out = layer.feed_forward(x)
    probs = asnumpy(out)[:-1]
    assert np.allclose(probs.sum(axis=0), 1.0, atol=1e-6)

    # Cross-entropy derivative turns into out - target
    target = np.zeros((3, 5), dtype=np.float32)
    target[rng.randint(0, 3, size=5), np.arange(5)] = 1
    error = -target / probs
    dx = asnumpy(layer.back_propagate(x, out, to_device(error)))
    delta = probs - target
    W = asnumpy(layer.W)
    assert np.allclose(asnumpy(layer.dW), asnumpy(x) @ delta.T / 5, atol=1e-5)
    assert np.allclose(dx, W[:-1] @ delta, atol=1e-5)
    print("Softmax Passed!\n")


def test_update_and_resize():
    layer = AffineTransform.from_weights(np.ones((3, 2), dtype=np.float32))
    layer.dW = to_device(np.full((3, 2), 2.0))
    layer.update(0.25)
    assert np.allclose(asnumpy(layer.W), 0.5)

    layer.resize(5, 4)
    assert layer.W.shape == (5, 4) and layer.dW.shape == (5, 4)
    assert np.all(asnumpy(layer.W) == 0)


def test_shape_mismatch_raises():
    layer = AffineTransform(4, 2)
    with pytest.raises(ValueError):
        layer.feed_forward(to_device(np.ones((3, 5))))
    x = to_device(np.ones((4, 5)))
    out = layer.feed_forward(x)
    with pytest.raises(ValueError):
        layer.back_propagate(x, out, to_device(np.ones((2, 4))))
    with pytest.raises(ValueError):
        layer.back_propagate(x, out[:-1], to_device(np.ones((2, 5))))


def test_correlate_known_values():
    x = np.arange(16, dtype=np.float64).reshape(1, 4, 4)
    k = np.array([[1.0, 0.0], [0.0, 0.0]])
    out = correlate2d(x, k, 'valid')
    assert out.shape == (1, 3, 3)
    assert np.allclose(out[0], x[0, :3, :3])

    # Convolution flips the kernel, picking the bottom-right pixel
    out = convolve2d(x, k, 'valid')
    assert np.allclose(out[0], x[0, 1:, 1:])

    full = correlate2d(x, np.ones((3, 3)), 'full')
    assert full.shape == (1, 6, 6)
    assert np.isclose(full[0, 0, 0], x[0, 0, 0])
    assert np.isclose(full.sum(), 9 * x.sum())

    with pytest.raises(ValueError):
        correlate2d(x, k, 'same')


def test_convolution_mode_duality():
    print("Testing convolution identities...")
    rng = np.random.RandomState(4)
    x = rng.randn(3, 7, 6)
    h = rng.randn(3, 2)
    assert np.allclose(convolve2d(x, rot180(h), 'full'), correlate2d(x, h, 'full'))
    assert np.allclose(
        rot180(convolve2d(rot180(x), h, 'valid')),
        correlate2d(x, h, 'valid'))

    # Per-sample kernels
    hs = rng.randn(3, 2, 2)
    batched = correlate2d(x, hs, 'valid')
    for n in range(3):
        assert np.allclose(batched[n], correlate2d(x[n:n + 1], hs[n], 'valid')[0])
    print("Convolution identities Passed!\n")


def test_convolution_adjoint_numeric():
    rng = np.random.RandomState(5)
    x = rng.randn(2, 6, 5)
    k = rng.randn(3, 2)
    R = rng.randn(2, 4, 4)

    def loss(x_, k_):
        return np.sum(correlate2d(x_, k_, 'valid') * R)

    dx = convolve2d(R, k, 'full')
    dk = correlate2d(x, R, 'valid').sum(axis=0)

    eps = 1e-6
    for idx in [(0, 0, 0), (1, 3, 2), (0, 5, 4)]:
        xp_, xm_ = x.copy(), x.copy()
        xp_[idx] += eps
        xm_[idx] -= eps
        assert np.isclose(dx[idx], (loss(xp_, k) - loss(xm_, k)) / (2 * eps), atol=1e-5)
    for idx in [(0, 0), (2, 1)]:
        kp, km = k.copy(), k.copy()
        kp[idx] += eps
        km[idx] -= eps
        assert np.isclose(dk[idx], (loss(x, kp) - loss(x, km)) / (2 * eps), atol=1e-5)


def test_downsample_upsample_adjoint():
    print("Testing sub-sampling primitives...")
    rng = np.random.RandomState(6)
    images = rng.randn(2, 6, 9)
    with pytest.raises(ValueError):
        downsample(images, 2)

    images = rng.randn(2, 6, 6)
    pooled = downsample(images, 3)
    assert pooled.shape == (2, 2, 2)
    assert np.isclose(pooled[0, 1, 0], images[0, 3:, :3].mean())

    delta = rng.randn(2, 2, 2)
    spread = upsample(delta, (6, 6)) / 9
    assert spread.shape == (2, 6, 6)
    # Summing a block recovers its pooled delta
    assert np.allclose(spread.reshape(2, 2, 3, 2, 3).sum(axis=(2, 4)), delta)
    # <downsample(I), d> == <I, upsample(d) / s^2>
    assert np.isclose(np.sum(pooled * delta), np.sum(images * spread))
    print("Sub-sampling primitives Passed!\n")


def test_conv_layer_shapes():
    print("Testing ConvolutionalLayer...")
    rng = np.random.RandomState(7)
    layer = ConvolutionalLayer(1, 2, (5, 5), (10, 10))
    assert layer.output_size == (6, 6)

    fins = [to_device(rng.rand(100, 4))]
    fouts = layer.feed_forward(fins)
    print(f"Forward maps: {len(fouts)} x {fouts[0].shape} (Expected: 2 x (36, 4))")
    assert len(fouts) == 2
    assert all(f.shape == (36, 4) for f in fouts)

    flat = add_bias(concat_maps(fouts))
    assert flat.shape == (73, 4)

    errors = [to_device(rng.randn(36, 4)) for _ in range(2)]
    dx = layer.back_propagate(errors, fins, fouts, 0.1)
    assert len(dx) == 1 and dx[0].shape == (100, 4)

    with pytest.raises(ValueError):
        layer.feed_forward([fins[0], fins[0]])
    with pytest.raises(ValueError):
        ConvolutionalLayer(1, 2, (11, 3), (10, 10))
    with pytest.raises(ValueError, match='0x3'):
        ConvolutionalLayer(1, 2, (0, 3), (10, 10))
    print("ConvolutionalLayer Passed!\n")


def test_conv_layer_backprop():
    rng = np.random.RandomState(8)
    layer = ConvolutionalLayer(2, 3, (3, 3), (6, 6))
    before = copy.deepcopy(layer)
    n_data = 2
    fins = [to_device(rng.rand(36, n_data)) for _ in range(2)]
    fouts = layer.feed_forward(fins)
    R = [rng.randn(16, n_data).astype(np.float32) for _ in range(3)]

    lr = 0.5
    dx = layer.back_propagate([to_device(r) for r in R], fins, fouts, lr)

    kernels = asnumpy(before.kernels).astype(np.float64)
    x_img = [vectors_to_images(asnumpy(f).astype(np.float64), (6, 6)) for f in fins]
    deltas = [vectors_to_images(r * asnumpy(o) * (1 - asnumpy(o)), (4, 4)) for r, o in zip(R, fouts)]

    # Input errors use the pre-update kernels
    for i in range(2):
        expected = sum(convolve2d(deltas[j], kernels[i, j], 'full') for j in range(3))
        assert np.allclose(asnumpy(dx[i]), images_to_vectors(expected), atol=1e-4)

    # Fused update: kernel -= lr / N * grad
    for i in range(2):
        for j in range(3):
            grad = correlate2d(x_img[i], deltas[j], 'valid').sum(axis=0)
            assert np.allclose(asnumpy(layer.kernels[i, j]), kernels[i, j] - lr / n_data * grad, atol=1e-4)
    for j in range(3):
        assert np.isclose(float(layer.bias[j]),
                          float(before.bias[j]) - lr / n_data * deltas[j].sum(), atol=1e-4)


def test_conv_layer_gradient_numeric():
    rng = np.random.RandomState(9)
    layer = ConvolutionalLayer(1, 2, (3, 3), (5, 5))
    fins = [to_device(rng.rand(25, 2))]
    R = [rng.randn(9, 2) for _ in range(2)]

    def loss(l):
        return sum(float(np.sum(asnumpy(o).astype(np.float64) * r)) for o, r in zip(l.feed_forward(fins), R))

    original = copy.deepcopy(layer)
    fouts = layer.feed_forward(fins)
    lr = 1.0
    layer.back_propagate([to_device(r) for r in R], fins, fouts, lr)
    grad = (asnumpy(original.kernels) - asnumpy(layer.kernels)) * 2 / lr

    eps = 1e-2
    for idx in [(0, 0, 0, 0), (0, 1, 2, 1), (0, 0, 1, 2)]:
        plus, minus = copy.deepcopy(original), copy.deepcopy(original)
        plus.kernels[idx] += eps
        minus.kernels[idx] -= eps
        numeric = (loss(plus) - loss(minus)) / (2 * eps)
        assert np.isclose(grad[idx], numeric, atol=1e-2, rtol=1e-2)


def test_subsampling_layer():
    print("Testing SubSamplingLayer...")
    rng = np.random.RandomState(10)
    layer = SubSamplingLayer(2, 2, (6, 6))
    assert layer.n_output_maps == 2 and layer.output_size == (3, 3)

    fins = [to_device(rng.randn(36, 3)) for _ in range(2)]
    fouts = layer.feed_forward(fins)
    assert all(f.shape == (9, 3) for f in fouts)

    errors = [to_device(rng.randn(9, 3)) for _ in range(2)]
    dx = layer.back_propagate(errors, fins, fouts, 0.1)
    assert all(d.shape == (36, 3) for d in dx)
    # Each pooled error is spread as error / 4 over its 2x2 block
    block = vectors_to_images(asnumpy(dx[0]), (6, 6))[:, :2, :2]
    assert np.allclose(block, asnumpy(errors[0])[0].reshape(3, 1, 1) / 4)

    with pytest.raises(ValueError):
        SubSamplingLayer(1, 4, (6, 6))
    print("SubSamplingLayer Passed!\n")


if __name__ == "__main__":
    test_image_reshape()
    test_affine_transform()
    test_softmax_layer()
    test_convolution_mode_duality()
    test_downsample_upsample_adjoint()
    test_conv_layer_shapes()
    test_subsampling_layer()
