"""
Network Training Script - GPU Accelerated

Trains a fully connected network, optionally behind a convolutional
front end, on a dense or sparse text dataset.

Usage:
    python train.py data/train.dat model.txt --nodes 256-256
    python train.py data/digits.dat model.txt --cnn 10x5x5-2s --image-size 28x28 --nodes 64
"""

import os
import sys
import time
import argparse
from tqdm import tqdm

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from cunn_core import xp, LearningRateSchedule, get_error_measure, strip_bias, to_device, on_gpu
from cunn_models import DNN, CNN, Config, DataSet, one_hot, accuracy, evaluate, CSVLogger, save_metadata


# =============================================================================
# CONFIG
# =============================================================================
SAVE_DIR = os.path.join(os.path.dirname(__file__), 'checkpoints')


def parse_dims(text, flag):
    """'256-128' -> [256, 128]; empty string -> []"""
    if not text:
        return []
    try:
        return [int(t) for t in text.split('-')]
    except ValueError:
        raise ValueError(f"{flag} expects '-'-joined integers, got '{text}'") from None


def parse_image_size(text):
    """'28x28' -> (28, 28)"""
    parts = text.lower().split('x')
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"--image-size expects HxW, got '{text}'")
    return int(parts[0]), int(parts[1])


# =============================================================================
# MODEL
# =============================================================================

def build_model(config, data):
    """Create (cnn, dnn); cnn is None for a plain fully connected network."""
    cnn = None
    input_dim = data.dim
    hparams = Config.from_dict(config['hparams'])

    if config['cnn']:
        if hparams.seed is not None:
            xp.random.seed(hparams.seed)
        cnn = CNN(config['cnn'], config['image_size'], config['n_input_maps'])
        if cnn.input_dim != data.dim:
            raise ValueError(
                f"CNN expects {cnn.input_dim} input features "
                f"({config['n_input_maps']} maps of {config['image_size']}), data has {data.dim}")
        input_dim = cnn.output_dim
        print("CNN:")
        print(cnn.describe())

    if config['init_model']:
        dnn = DNN.from_file(config['init_model'], hparams)
        if dnn.input_dim != input_dim or dnn.output_dim != data.n_classes:
            raise ValueError(
                f"{config['init_model']} has dims {dnn.dims}, "
                f"expected input {input_dim} and output {data.n_classes}")
    else:
        dnn = DNN([input_dim] + config['hidden'] + [data.n_classes], hparams)

    print("DNN:")
    print(dnn.describe())
    return cnn, dnn


def make_forward(cnn, dnn):
    if cnn is None:
        return dnn.predict
    return lambda x: dnn.predict(cnn.feed_forward(x)[0])


def train_step(cnn, dnn, x, target, error_measure):
    """One batch: forward, error, backward, update. Returns (loss, output)."""
    if cnn is None:
        return dnn.train_batch(x, target)

    hidden, context = cnn.feed_forward(x)
    outputs = dnn.feed_forward(hidden)
    output = strip_bias(outputs[-1])

    loss = error_measure.forward(output, to_device(target))
    input_error = dnn.back_propagate(outputs, error_measure.backward())
    cnn.back_propagate(context, input_error, dnn.config.learning_rate)
    dnn.update()
    return loss, output


# =============================================================================
# TRAINING
# =============================================================================

def train(config):
    print("=" * 60)
    print(f"Network Training ({'GPU' if on_gpu() else 'CPU'})")
    print("=" * 60)

    hparams = config['hparams']
    data = DataSet.from_file(config['train_file'], config['input_format'], config['dim'])
    normalization = None
    if config['normalize']:
        normalization = (config['normalize'], data.normalize(config['normalize']))
    split_seed = 42 if hparams['seed'] is None else hparams['seed']
    train_set, valid_set = data.split(hparams['valid_ratio'], seed=split_seed)
    print(f"[train] {len(train_set)} samples, [valid] {len(valid_set)} samples")

    cnn, dnn = build_model(config, data)
    forward = make_forward(cnn, dnn)
    error_measure = get_error_measure(dnn.config.error_measure)
    schedule = LearningRateSchedule()
    batch_size = dnn.config.batch_size

    os.makedirs(config['save_dir'], exist_ok=True)
    csv_path = os.path.join(config['save_dir'], 'training_log.csv')
    if os.path.exists(csv_path):
        os.remove(csv_path)
    logger = CSVLogger(csv_path)

    best_valid_acc = -1.0

    for epoch in range(dnn.config.max_epoch):
        epoch_start = time.time()
        train_set.shuffle(seed=None if hparams['seed'] is None else hparams['seed'] + epoch)

        train_loss = 0.0
        train_correct = 0
        n_batches = 0

        pbar = tqdm(list(train_set.batches(batch_size)), desc=f"Epoch {epoch+1}", leave=False)
        for batch in pbar:
            x = train_set.get_x(batch)
            labels = train_set.get_y(batch)
            target = one_hot(labels, data.n_classes)

            loss, output = train_step(cnn, dnn, x, target, error_measure)

            train_loss += loss
            train_correct += int(round(accuracy(output, labels) * batch.n_data))
            n_batches += 1
            pbar.set_postfix({'loss': f'{loss:.4f}', 'lr': f'{dnn.config.learning_rate:.2e}'})

        avg_train_loss = train_loss / max(1, n_batches)
        train_acc = train_correct / max(1, len(train_set))
        valid_acc = evaluate(forward, valid_set, batch_size) if len(valid_set) else train_acc
        current_lr = dnn.config.learning_rate

        epoch_time = time.time() - epoch_start
        print(f"Epoch {epoch+1} done. Train Loss: {avg_train_loss:.4f}, Train Acc: {train_acc:.4f}, "
              f"Valid Acc: {valid_acc:.4f}, LR: {current_lr:.4g}, Time: {epoch_time:.1f}s")

        logger.log({
            'epoch': epoch + 1,
            'train_loss': avg_train_loss,
            'train_acc': train_acc,
            'valid_acc': valid_acc,
            'lr': current_lr,
        })

        if valid_acc > best_valid_acc:
            best_valid_acc = valid_acc
            save_model(cnn, dnn, config['model_out'], data.label_map, normalization)

        new_lr = dnn.adjust_learning_rate(train_acc, schedule)
        if new_lr != current_lr:
            print(f"[LR] Train accuracy {train_acc:.4f} passed phase {schedule.phase}, "
                  f"learning rate {current_lr:.4g} -> {new_lr:.4g}")

        min_acc = dnn.config.min_valid_accuracy
        if min_acc is not None and valid_acc >= min_acc:
            print(f"[STOP] Validation accuracy {valid_acc:.4f} reached {min_acc}")
            break

    print(f"Best validation accuracy: {best_valid_acc:.4f}")
    return cnn, dnn


def save_model(cnn, dnn, path, label_map, normalization=None):
    """Save the DNN and, next to it, the label map and normalization stats."""
    if path is None:
        return
    if cnn is not None:
        print("[WARNING] CNN layers cannot be serialized; model not saved")
        return
    dnn.save(path)
    save_metadata(path, label_map, normalization)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Train a DNN / CNN+DNN classifier")
    parser.add_argument('train_file', type=str)
    parser.add_argument('model_out', type=str, nargs='?', default=None)
    parser.add_argument('--nodes', type=str, default='', help="Hidden layer widths, e.g. 256-128")
    parser.add_argument('--cnn', type=str, default='', help="Conv structure, e.g. 10x5x5-2s")
    parser.add_argument('--image-size', type=str, default='28x28')
    parser.add_argument('--input-maps', type=int, default=1)
    parser.add_argument('--init-model', type=str, default=None, help="Continue from a saved DNN")
    parser.add_argument('--input-format', type=str, default='auto', choices=['auto', 'dense', 'sparse'])
    parser.add_argument('--dim', type=int, default=None, help="Feature dimension (sparse format)")
    parser.add_argument('--normalize', type=str, default=None, choices=['rescale', 'zscore'])
    parser.add_argument('--lr', type=float, default=Config.DEFAULTS['learning_rate'])
    parser.add_argument('--variance', type=float, default=Config.DEFAULTS['variance'])
    parser.add_argument('--batch-size', type=int, default=Config.DEFAULTS['batch_size'])
    parser.add_argument('--max-epoch', type=int, default=Config.DEFAULTS['max_epoch'])
    parser.add_argument('--min-acc', type=float, default=Config.DEFAULTS['min_valid_accuracy'],
                        help="Stop once validation accuracy reaches this (default: never)")
    parser.add_argument('--valid-ratio', type=float, default=Config.DEFAULTS['valid_ratio'])
    parser.add_argument('--error', type=str, default=Config.DEFAULTS['error_measure'],
                        choices=['L2ERROR', 'CROSS_ENTROPY'])
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--save-dir', type=str, default=SAVE_DIR)
    args = parser.parse_args()

    config = {
        'train_file': args.train_file,
        'model_out': args.model_out,
        'hidden': parse_dims(args.nodes, '--nodes'),
        'cnn': args.cnn,
        'image_size': parse_image_size(args.image_size),
        'n_input_maps': args.input_maps,
        'init_model': args.init_model,
        'input_format': args.input_format,
        'dim': args.dim,
        'normalize': args.normalize,
        'save_dir': args.save_dir,
        'hparams': {
            'learning_rate': args.lr,
            'variance': args.variance,
            'batch_size': args.batch_size,
            'max_epoch': args.max_epoch,
            'min_valid_accuracy': args.min_acc,
            'valid_ratio': args.valid_ratio,
            'error_measure': args.error,
            'seed': args.seed,
        },
    }

    train(config)
