"""
In-process metrics and tracing sink.

One registry is built at startup and injected into the cache layer, the
scheduler and the flush worker. Counters and histograms are aggregated in
memory; while a metrics session is active every sample is also buffered so
the metrics middleware can ship it to redis.
"""
import logging
import time
import uuid
from collections import defaultdict, deque
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field

from catalog.ops.stats.collector import Metric, MetricsCollector, MetricsSession, compute_statistics

logger = logging.getLogger(__name__)

AttributeValue = str | int | float | bool
Labels = tuple[tuple[str, str], ...]

_current_span: ContextVar["Span | None"] = ContextVar("current_span", default=None)


@dataclass
class Span:
    name: str
    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    start_time: float = field(default_factory=time.perf_counter)
    end_time: float | None = None
    status: str = "unset"
    error_type: str | None = None

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self.attributes[key] = value

    def set_attributes(self, **attributes: AttributeValue) -> None:
        self.attributes.update(attributes)

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time

    @property
    def traceparent(self) -> str:
        # W3C Trace Context format
        return f"00-{self.trace_id}-{self.span_id}-01"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "attributes": dict(self.attributes),
            "duration_seconds": round(self.duration_seconds, 6),
            "status": self.status,
            "error_type": self.error_type,
        }


def _labels(tags: dict | None) -> Labels:
    return tuple(sorted((key, str(value)) for key, value in (tags or {}).items()))


def _matches(labels: Labels, wanted: dict) -> bool:
    label_map = dict(labels)
    return all(label_map.get(key) == str(value) for key, value in wanted.items())


class MetricsRegistry:
    """Central registry for counters, histograms and spans."""

    def __init__(self, histogram_window: int = 2048, span_buffer_size: int = 256, pending_limit: int = 10_000):
        self.current_session: MetricsSession | None = None
        self.collector = MetricsCollector()
        self._counters: dict[tuple[str, Labels], float] = defaultdict(float)
        self._histograms: dict[tuple[str, Labels], deque[float]] = defaultdict(
            lambda: deque(maxlen=histogram_window)
        )
        self._pending: deque[Metric] = deque(maxlen=pending_limit)
        self.spans: deque[Span] = deque(maxlen=span_buffer_size)

    def increment(self, name: str, tags: dict | None = None, value: float = 1.0) -> None:
        self._counters[(name, _labels(tags))] += value
        self._buffer(Metric(timestamp=time.time(), name=name, value=value, kind="counter", tags=tags))

    def observe(self, name: str, value: float, tags: dict | None = None) -> None:
        self._histograms[(name, _labels(tags))].append(value)
        self._buffer(Metric(timestamp=time.time(), name=name, value=value, kind="histogram", tags=tags))

    def counter(self, name: str, **tags) -> float:
        """Counter total across every label set carrying ``tags``."""
        return sum(value for (key, labels), value in self._counters.items() if key == name and _matches(labels, tags))

    def histogram(self, name: str, **tags) -> list[float]:
        values: list[float] = []
        for (key, labels), samples in self._histograms.items():
            if key == name and _matches(labels, tags):
                values.extend(samples)
        return values

    @contextmanager
    def span(self, name: str, **attributes: AttributeValue) -> Iterator[Span]:
        """
        Time a unit of work as a span.

        Nested spans inherit the trace id of the enclosing span. An exception
        marks the span as failed with its class name and propagates unchanged.
        """
        parent = _current_span.get()
        span = Span(
            name=name,
            trace_id=parent.trace_id if parent else uuid.uuid4().hex,
            span_id=uuid.uuid4().hex[:16],
            parent_span_id=parent.span_id if parent else None,
            attributes=dict(attributes),
        )
        token = _current_span.set(span)
        logger.debug(f"span start {name} {span.traceparent}")
        try:
            yield span
            if span.status == "unset":
                span.status = "ok"
        except BaseException as e:
            span.status = "error"
            span.error_type = type(e).__name__
            raise
        finally:
            span.end_time = time.perf_counter()
            _current_span.reset(token)
            self.spans.append(span)
            logger.debug(f"span end {name} status={span.status} duration={span.duration_seconds:.6f}s")

    def _buffer(self, metric: Metric) -> None:
        if self.current_session is not None:
            self._pending.append(metric)

    def drain_pending(self) -> list[Metric]:
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def snapshot(self) -> dict:
        counters = [
            {"name": name, "tags": dict(labels), "value": value}
            for (name, labels), value in sorted(self._counters.items())
        ]
        samples = [
            {"name": f"{name}{{{','.join(f'{k}={v}' for k, v in labels)}}}" if labels else name, "value": value}
            for (name, labels), values in self._histograms.items()
            for value in values
        ]
        return {
            "counters": counters,
            "histograms": compute_statistics(samples),
            "spans": [span.to_dict() for span in list(self.spans)[-20:]],
        }
