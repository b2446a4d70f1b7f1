import numpy as np

_TIME_EPS = 1.0e-10


class TimeGrid:
    """Discretisation skeleton shared by the tree and the PDE engines.

    The grid starts at 0, contains every mandatory time exactly once and
    splits each interval between consecutive mandatory times uniformly so that
    no step is longer than ``last_time / steps``.
    """

    def __init__(self, mandatory_times, steps):
        if int(steps) < 1:
            raise ValueError("TimeGrid needs at least one step")
        times = sorted(float(t) for t in mandatory_times)
        if not times:
            raise ValueError("TimeGrid needs at least one mandatory time")
        if times[0] < 0.0:
            raise ValueError("Negative times are not allowed in a TimeGrid")

        mandatory = []
        for t in times:
            if t <= _TIME_EPS:
                continue
            if not mandatory or t - mandatory[-1] > _TIME_EPS:
                mandatory.append(t)
        if not mandatory:
            raise ValueError("TimeGrid needs a positive mandatory time")

        dt_max = mandatory[-1] / int(steps)
        grid = [0.0]
        begin = 0.0
        for end in mandatory:
            n = max(int(np.ceil((end - begin) / dt_max - _TIME_EPS)), 1)
            for k in range(1, n):
                grid.append(begin + (end - begin) * k / n)
            grid.append(end)
            begin = end

        self.times = np.array(grid)
        self.mandatory_times = np.array([0.0] + mandatory)

    @classmethod
    def from_instruments(cls, instruments, steps):
        """Grid over the exercise/payment times of a set of instruments."""
        times = []
        for inst in instruments:
            times.extend(inst.times())
        return cls(times, steps)

    def __len__(self):
        return len(self.times)

    def __getitem__(self, i):
        return float(self.times[i])

    def __iter__(self):
        return iter(self.times.tolist())

    def dt(self, i):
        return float(self.times[i + 1] - self.times[i])

    def index(self, t):
        """Index of a grid time; raises if ``t`` is not on the grid."""
        i = self.closest_index(t)
        if abs(self.times[i] - t) > _TIME_EPS:
            raise ValueError(f"Time {t} is not on the grid (closest {self.times[i]})")
        return i

    def closest_index(self, t):
        i = int(np.searchsorted(self.times, t))
        if i == 0:
            return 0
        if i >= len(self.times):
            return len(self.times) - 1
        return i if self.times[i] - t < t - self.times[i - 1] else i - 1
