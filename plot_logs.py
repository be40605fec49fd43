import os
import pandas as pd
import matplotlib.pyplot as plt


def plot_logs(log_dir='checkpoints'):
    """
    Plot loss, accuracy and learning rate from training_log.csv.
    """
    train_log_path = os.path.join(log_dir, 'training_log.csv')

    if not os.path.exists(train_log_path):
        print(f"[ERROR] Log file not found: {train_log_path}")
        return

    df = pd.read_csv(train_log_path)

    plt.figure(figsize=(15, 5))

    # --- Training loss ---
    plt.subplot(1, 3, 1)
    plt.plot(df['epoch'], df['train_loss'], marker='o', label='Train Loss')
    plt.title('Training Loss per Epoch')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.legend()
    plt.grid(True, linestyle='--', alpha=0.6)

    # --- Accuracy ---
    plt.subplot(1, 3, 2)
    plt.plot(df['epoch'], df['train_acc'], marker='o', label='Train Acc')
    plt.plot(df['epoch'], df['valid_acc'], marker='s', label='Valid Acc')
    plt.title('Training vs Validation Accuracy')
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy')
    plt.legend()
    plt.grid(True, linestyle='--', alpha=0.6)

    # --- Learning rate schedule ---
    plt.subplot(1, 3, 3)
    plt.step(df['epoch'], df['lr'], where='post', color='red')
    plt.title('Learning Rate')
    plt.xlabel('Epoch')
    plt.ylabel('LR')
    plt.grid(True, linestyle='--', alpha=0.6)

    plt.tight_layout()

    save_path = os.path.join(log_dir, 'training_plot.png')
    plt.savefig(save_path)
    print(f"[SAVE] Plot saved to: {save_path}")


if __name__ == "__main__":
    current_dir = os.path.dirname(os.path.abspath(__file__))
    log_dir = os.path.join(current_dir, 'checkpoints')
    plot_logs(log_dir)
