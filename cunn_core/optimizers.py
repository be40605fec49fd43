"""
Learning-rate schedule for fixed-rate gradient descent.
"""


class LearningRateSchedule:
    """
    Accuracy-phased learning-rate decay.

    The first time training accuracy exceeds each threshold (in order),
    the learning rate is multiplied by `decay`. At most one phase is
    advanced per call and a passed threshold never triggers again. The
    training loop owns the instance, so separate runs keep separate phases.

    Args:
        thresholds: Ascending accuracy thresholds
        decay: Multiplicative factor applied per crossed threshold
    """

    DEFAULT_THRESHOLDS = (0.80, 0.85, 0.90, 0.92, 0.95, 0.97)

    def __init__(self, thresholds=DEFAULT_THRESHOLDS, decay=0.9):
        thresholds = tuple(thresholds)
        if list(thresholds) != sorted(thresholds):
            raise ValueError(f"Thresholds must be ascending, got {thresholds}")
        self.thresholds = thresholds
        self.decay = decay
        self.phase = 0

    @property
    def finished(self):
        return self.phase >= len(self.thresholds)

    def step(self, learning_rate, train_accuracy):
        """Return the (possibly decayed) learning rate for the next epoch."""
        if self.finished:
            return learning_rate

        if train_accuracy > self.thresholds[self.phase]:
            self.phase += 1
            return learning_rate * self.decay
        return learning_rate

    def reset(self):
        self.phase = 0
