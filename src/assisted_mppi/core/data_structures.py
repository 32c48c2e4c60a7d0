"""
Shared data structures for the decision core.

Structures
----------
ReadWriteLock      -- Single-writer / multiple-reader lock guarding published
                      state (trajectories, forecast buffers, forecast caches).
MeasurementWindow  -- Time-ordered window of vector measurements with
                      trailing-window pruning.
ForecastBuffer     -- Immutable sequence of predicted vectors on a regular
                      time grid, with clamped-index and interpolated lookup.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from contextlib import contextmanager
from typing import Deque, Iterator, List, Optional, Tuple

import numpy as np

from assisted_mppi.core.constants import STEP_ROUNDING_TOLERANCE


# ---------------------------------------------------------------------------
# 1. ReadWriteLock
# ---------------------------------------------------------------------------

class ReadWriteLock:
    """Single-writer / multiple-reader lock.

    Readers (``forecast``/``get`` calls issued from rollout threads) share
    the lock; the writer (the owning ``update``/``observe`` call) holds it
    exclusively while it swaps in newly computed state.  Writers only hold
    the lock for the swap itself, so readers never wait on a full
    optimisation cycle.

    Writers take precedence: once a writer is waiting, new readers block
    until it has finished, so a steady stream of overlapping readers cannot
    hold off an update.  The lock is not reentrant; a thread holding the
    read side must not acquire it again.

    Usage
    -----
    >>> lock = ReadWriteLock()
    >>> with lock.read():
    ...     pass
    >>> with lock.write():
    ...     pass
    """

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers: int = 0
        self._writing: bool = False
        self._writers_waiting: int = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold shared access for the duration of the ``with`` block."""
        with self._condition:
            while self._writing or self._writers_waiting:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        """Hold exclusive access for the duration of the ``with`` block."""
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writing or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writing = True
        try:
            yield
        finally:
            with self._condition:
                self._writing = False
                self._condition.notify_all()

    @property
    def readers(self) -> int:
        """Number of readers currently holding the lock."""
        return self._readers

    @property
    def writing(self) -> bool:
        return self._writing


# ---------------------------------------------------------------------------
# 2. MeasurementWindow
# ---------------------------------------------------------------------------

class MeasurementWindow:
    """Time-ordered window of ``(time, vector)`` measurements.

    Invariants
    ----------
    * Entry times are non-decreasing; a measurement older than the newest
      entry is rejected by :meth:`append`.
    * :meth:`prune` never removes the newest entry, so the window is never
      empty once a measurement has been accepted.

    Parameters
    ----------
    dimension : int
        Length of each measurement vector.
    """

    def __init__(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._dimension: int = dimension
        self._entries: Deque[Tuple[float, np.ndarray]] = deque()

    def append(self, time: float, value: np.ndarray) -> bool:
        """
        Add a measurement.

        Returns
        -------
        bool
            ``False`` (and nothing is stored) when ``time`` precedes the
            newest entry.
        """
        value = np.asarray(value, dtype=np.float64).reshape(-1)
        if value.shape != (self._dimension,):
            raise ValueError(
                f"Expected measurement shape ({self._dimension},), got {value.shape}"
            )
        if self._entries and time < self._entries[-1][0]:
            return False
        self._entries.append((float(time), value.copy()))
        return True

    def prune(self, time: float, window: float) -> int:
        """
        Drop entries with ``entry_time <= time - window``, keeping the newest.

        Returns
        -------
        int
            Number of entries removed.
        """
        cutoff = time - window
        removed = 0
        while len(self._entries) > 1 and self._entries[0][0] <= cutoff:
            self._entries.popleft()
            removed += 1
        return removed

    def mean(self) -> np.ndarray:
        """Arithmetic mean of the retained measurements (zeros when empty)."""
        if not self._entries:
            return np.zeros(self._dimension)
        return np.mean([value for _, value in self._entries], axis=0)

    @property
    def times(self) -> List[float]:
        return [t for t, _ in self._entries]

    @property
    def latest(self) -> Optional[Tuple[float, np.ndarray]]:
        """The newest ``(time, value)`` entry, or None when empty."""
        if not self._entries:
            return None
        t, value = self._entries[-1]
        return t, value.copy()

    @property
    def dimension(self) -> int:
        return self._dimension

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        span = (self._entries[0][0], self._entries[-1][0]) if self._entries else None
        return f"MeasurementWindow(dim={self._dimension}, n={len(self)}, span={span})"


# ---------------------------------------------------------------------------
# 3. ForecastBuffer
# ---------------------------------------------------------------------------

class ForecastBuffer:
    """Predicted vectors on a regular grid starting at an anchor time.

    Entry ``i`` is the prediction for ``anchor + i * step``.  Instances are
    treated as immutable: producers build a new buffer and publish it in one
    assignment, so a reader holding a buffer always sees a consistent set of
    predictions.

    Parameters
    ----------
    anchor : float
        Time of entry 0 (the last observation).
    step : float
        Grid spacing (s).
    values : np.ndarray
        Shape ``(n, dim)``.
    """

    def __init__(self, anchor: float, step: float, values: np.ndarray) -> None:
        values = np.array(values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, np.newaxis]
        if values.ndim != 2 or len(values) == 0:
            raise ValueError(f"values must be a non-empty (n, dim) array, got {values.shape}")
        if step <= 0.0:
            raise ValueError(f"step must be positive, got {step}")
        values.setflags(write=False)
        self._anchor: float = float(anchor)
        self._step: float = float(step)
        self._values: np.ndarray = values

    def index(self, time: float) -> int:
        """
        Clamped grid index of ``time``.

        0 for times at or before the anchor, ``floor((time - anchor) / step)``
        otherwise, clamped to the last entry.
        """
        if time <= self._anchor:
            return 0
        position = (time - self._anchor) / self._step
        index = int(math.floor(position + STEP_ROUNDING_TOLERANCE))
        return min(index, len(self._values) - 1)

    def lookup(self, time: float) -> np.ndarray:
        """Entry at the clamped index of ``time`` (no interpolation)."""
        return self._values[self.index(time)].copy()

    def interpolate(self, time: float, horizon: Optional[float] = None) -> np.ndarray:
        """
        Linear interpolation between the entries bracketing ``time``.

        Parameters
        ----------
        time : float
            Query time.
        horizon : float or None
            Queries at least ``horizon`` past the anchor return the last
            entry unchanged.
        """
        elapsed = time - self._anchor
        last = len(self._values) - 1
        if elapsed <= 0.0:
            return self._values[0].copy()
        if horizon is not None and elapsed >= horizon:
            return self._values[last].copy()

        position = elapsed / self._step
        lower = int(math.floor(position))
        if lower >= last:
            return self._values[last].copy()
        fraction = position - lower
        return (1.0 - fraction) * self._values[lower] + fraction * self._values[lower + 1]

    @property
    def anchor(self) -> float:
        return self._anchor

    @property
    def step(self) -> float:
        return self._step

    @property
    def values(self) -> np.ndarray:
        """Read-only view of the predictions, shape ``(n, dim)``."""
        return self._values

    def __len__(self) -> int:
        return len(self._values)

    def __getitem__(self, index: int) -> np.ndarray:
        return self._values[index].copy()

    def __repr__(self) -> str:
        return (
            f"ForecastBuffer(anchor={self._anchor}, step={self._step}, "
            f"shape={self._values.shape})"
        )
