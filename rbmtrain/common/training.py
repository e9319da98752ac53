from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter


class CancellationToken:
    def __init__(self):
        """Cooperative cancellation flag, passed explicitly into long-running calls.

        Whoever wants to stop training calls request(). The training loops call poll() at batch and epoch
        granularity. The flag is sticky: it stays set until the loop that acted on it calls clear(). This way, a
        request seen inside the batch loop is still visible to the epoch-level check right after it.
        """
        self._requested = False

    def request(self):
        self._requested = True

    def poll(self) -> bool:
        return self._requested

    def clear(self):
        self._requested = False


class Diagnostics:
    def __init__(self):
        """Wall-clock time and call counts per backend operation.

        One of these is threaded through a training call; nothing is stored globally. Use timed() as a context manager
        around each backend call.
        """
        self.seconds = defaultdict(float)
        self.calls = defaultdict(int)

    @contextmanager
    def timed(self,
              operation: str) -> Iterator[None]:
        start_time = perf_counter()
        try:
            yield
        finally:
            self.seconds[operation] += perf_counter() - start_time
            self.calls[operation] += 1

    @property
    def total_seconds(self) -> float:
        return sum(self.seconds.values())

    def report(self,
               title: str = "Backend times in seconds: total, (percent), per launch") -> list[str]:
        """Timing table, one line per operation in the order they were first used."""
        total = self.total_seconds
        lines = [title]
        for operation, seconds in self.seconds.items():
            percent = 100 * seconds / total if total > 0 else 0.
            per_launch = seconds / max(self.calls[operation], 1)
            lines.append(f"  {operation:<24}{seconds:10.3f}   ({percent:5.1f} percent) {per_launch:12.6f} per launch")
        return lines


class StallMonitor:
    def __init__(self,
                 patience: int,
                 verbose: bool = False):
        """Count how many epochs in a row a criterion fails to improve.

        Like early stopping on a validation loss, except the tracked value is whatever the caller minimizes (for RBMs,
        the ratio of largest weight increment to largest weight). No parameters are tracked; the trainer keeps its
        weights on the backend.

        Parameters:
            patience: Number of consecutive non-improving updates that still count as progress. The update that
                      pushes the count past this number is the one that reports a stall, so patience=0 stalls on the
                      first non-improving value after the first update.
            verbose: If True, report on how things are going.
        """
        if patience < 0:
            raise ValueError(f"patience must be non-negative, got {patience}")
        self.best_value = None
        self.patience = patience
        self.disappointment = 0
        self.verbose = verbose

    def update(self,
               value: float) -> bool:
        """Run one 'iteration'. Returns True if the caller should stop.

        The first value always counts as an improvement, even if it is inf or nan. After that, improvement must be
        strict.
        """
        if self.best_value is None or value < self.best_value:
            self.best_value = value
            self.disappointment = 0
            return False

        self.disappointment += 1
        if self.verbose:
            print(f"StallMonitor disappointment increased to {self.disappointment}")
        return self.disappointment > self.patience
