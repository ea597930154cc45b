"""
Prometheus instruments for the executor.

Bundled in one object and bound to an explicit CollectorRegistry so tests
(and multiple app instances) never fight over the global registry.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

ERROR_STAGES = ("read", "unmarshal", "start")

PROCESS_DURATION_BUCKETS = [1, 10, 60, 600, 900, 1800]


class ExecutorMetrics:
    """Duration histogram, in-flight gauge and per-stage error counter."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.process_duration = Histogram(
            'am_executor_process_duration_seconds',
            'Time the processes handling alerts ran.',
            buckets=PROCESS_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.processes_current = Gauge(
            'am_executor_processes_current',
            'Current number of processes running.',
            registry=self.registry,
        )

        self.errors = Counter(
            'am_executor_errors_total',
            'Total number of errors while processing alerts.',
            ['stage'],  # stage: read|unmarshal|start
            registry=self.registry,
        )
        for stage in ERROR_STAGES:
            self.errors.labels(stage=stage)

    def count_error(self, stage: str) -> None:
        self.errors.labels(stage=stage).inc()
