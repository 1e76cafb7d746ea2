from __future__ import annotations

from collections import Counter
from statistics import mean
from threading import Lock


class _RuntimeTelemetryStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._decision_times_s: list[float] = []
        self.total_transitions: int = 0
        self.accepted_transitions: int = 0
        self.rejected_transitions: int = 0
        self.rejections_by_code: Counter[str] = Counter()
        self.completed_sessions: int = 0
        self.abandoned_sessions: int = 0
        self.generation_failures: int = 0
        self.ending_distribution: Counter[str] = Counter()

    def reset(self) -> None:
        with self._lock:
            self._decision_times_s = []
            self.total_transitions = 0
            self.accepted_transitions = 0
            self.rejected_transitions = 0
            self.rejections_by_code = Counter()
            self.completed_sessions = 0
            self.abandoned_sessions = 0
            self.generation_failures = 0
            self.ending_distribution = Counter()

    def record_transition(self, *, time_taken_s: float, ending_id: str | None) -> None:
        with self._lock:
            self.total_transitions += 1
            self.accepted_transitions += 1
            self._decision_times_s.append(float(time_taken_s))
            if len(self._decision_times_s) > 1000:
                self._decision_times_s = self._decision_times_s[-1000:]
            if ending_id:
                self.completed_sessions += 1
                self.ending_distribution[str(ending_id)] += 1

    def record_rejection(self, *, error_code: str) -> None:
        with self._lock:
            self.total_transitions += 1
            self.rejected_transitions += 1
            self.rejections_by_code[str(error_code)] += 1

    def record_abandoned(self, count: int = 1) -> None:
        with self._lock:
            self.abandoned_sessions += int(count)

    def record_generation_failure(self) -> None:
        with self._lock:
            self.generation_failures += 1

    def summary(self) -> dict:
        with self._lock:
            times = list(self._decision_times_s)
            total = int(self.total_transitions)
            rejection_rate = 0.0 if total <= 0 else float(self.rejected_transitions) / float(total)
            return {
                "total_transitions": total,
                "accepted_transitions": int(self.accepted_transitions),
                "rejected_transitions": int(self.rejected_transitions),
                "rejection_rate": round(rejection_rate, 4),
                "rejections_by_code": dict(self.rejections_by_code),
                "avg_decision_time_s": round(float(mean(times)) if times else 0.0, 3),
                "completed_sessions": int(self.completed_sessions),
                "abandoned_sessions": int(self.abandoned_sessions),
                "generation_failures": int(self.generation_failures),
                "ending_distribution": dict(self.ending_distribution),
            }


_runtime_telemetry = _RuntimeTelemetryStore()


def reset_runtime_telemetry() -> None:
    _runtime_telemetry.reset()


def record_transition(*, time_taken_s: float, ending_id: str | None) -> None:
    _runtime_telemetry.record_transition(time_taken_s=time_taken_s, ending_id=ending_id)


def record_rejection(*, error_code: str) -> None:
    _runtime_telemetry.record_rejection(error_code=error_code)


def record_abandoned(count: int = 1) -> None:
    _runtime_telemetry.record_abandoned(count)


def record_generation_failure() -> None:
    _runtime_telemetry.record_generation_failure()


def get_runtime_telemetry_summary() -> dict:
    return _runtime_telemetry.summary()
