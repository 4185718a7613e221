from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Dict, Iterator

from .errors import InvalidArgumentError

STAGES = ("image_read", "preprocess", "engine", "result_copy", "postprocess")


@dataclass(frozen=True)
class Timings:
    """Per-call latency breakdown in fractional milliseconds."""

    total: float = 0.0
    image_read: float = 0.0
    preprocess: float = 0.0
    engine: float = 0.0
    postprocess: float = 0.0
    result_copy: float = 0.0

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if value < 0:
                raise InvalidArgumentError(f"Timing '{name}' must be >= 0 (got {value}).")

    @property
    def fps(self) -> float:
        return 1000.0 / self.total if self.total > 0 else 0.0

    @property
    def engine_share(self) -> float:
        """Percentage of the total spent inside the inference engine."""
        return self.engine / self.total * 100.0 if self.total > 0 else 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


class StageTimer:
    """
    Accumulates wall-clock time per stage with `time.perf_counter`.

        timer = StageTimer()
        with timer.total():
            with timer.stage("engine"):
                ...
        timings = timer.timings()

    Stages that never ran report 0.0. `total` is measured independently of the stages.
    """

    def __init__(self) -> None:
        self._ms: Dict[str, float] = {}
        self._total_ms = 0.0

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        if name not in STAGES:
            raise InvalidArgumentError(f"Unknown timing stage {name!r}; expected one of {STAGES}.")
        start = time.perf_counter()
        try:
            yield
        finally:
            self._ms[name] = self._ms.get(name, 0.0) + (time.perf_counter() - start) * 1000.0

    @contextmanager
    def total(self) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self._total_ms += (time.perf_counter() - start) * 1000.0

    def elapsed(self, name: str) -> float:
        return self._ms.get(name, 0.0)

    def timings(self) -> Timings:
        return Timings(total=self._total_ms, **{name: self._ms.get(name, 0.0) for name in STAGES})
