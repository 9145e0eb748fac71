"""Time logging infrastructure for tracking kernel generation and compilation.

Events are registered once with a category, then recorded as start, stop
and progress events. Start/stop pairs are matched per thread, so several
threads can time the same named operation concurrently.
"""

from collections import deque
import os
import threading
import time
from typing import Any, Optional
from warnings import warn

import attrs


_VERBOSITY_LEVELS = {"default", "verbose", "debug", None}
_CATEGORIES = {"codegen", "build", "runtime"}
DEFAULT_MAX_EVENTS = 10000


def _normalise_verbosity(verbosity: Optional[str]) -> Optional[str]:
    if verbosity == "None":
        verbosity = None
    if verbosity not in _VERBOSITY_LEVELS:
        raise ValueError(
            f"verbosity must be 'default', 'verbose', 'debug', or None, "
            f"got '{verbosity}'"
        )
    return verbosity


@attrs.define(frozen=True)
class TimingEvent:
    """Record of a single timing event.

    Attributes
    ----------
    name : str
        Identifier for the event (e.g., 'rtc_compile')
    event_type : str
        Type of event: 'start', 'stop', or 'progress'
    timestamp : float
        Wall-clock time from time.perf_counter()
    thread_id : int
        Identifier of the thread which recorded the event
    metadata : dict
        Optional metadata (kernel names, sizes, compile path, etc.)
    """
    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    event_type: str = attrs.field(
        validator=attrs.validators.in_({'start', 'stop', 'progress'})
    )
    timestamp: float = attrs.field(
        validator=attrs.validators.instance_of(float)
    )
    thread_id: int = attrs.field(default=0)
    metadata: dict = attrs.field(factory=dict)


class TimeLogger:
    """Callback-based timing system for jitcache operations.

    Parameters
    ----------
    verbosity : str or None, default='default'
        Output verbosity level. Options:
        - 'default': Aggregate times and cache messages only
        - 'verbose': Per-event durations as they complete
        - 'debug': All events with start/stop/progress, plus source dumps
        - None: No-op logger, nothing is recorded or printed
    max_events : int, default=10000
        Number of most recent events kept. Older events are discarded,
        so aggregate durations cover this window only.

    Attributes
    ----------
    verbosity : str or None
        Current verbosity level
    events : collections.deque[TimingEvent]
        Chronological record of the most recent events

    Notes
    -----
    Events must be registered with :meth:`_register_event` before use.
    Registration is idempotent for an identical category.
    """

    def __init__(
        self,
        verbosity: Optional[str] = 'default',
        max_events: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self.verbosity = _normalise_verbosity(verbosity)
        self.events: deque[TimingEvent] = deque(maxlen=max_events)
        self._event_registry: dict[str, dict[str, str]] = {}
        self._active_starts: dict[tuple[str, int], float] = {}
        self._lock = threading.RLock()

    def set_verbosity(self, verbosity: Optional[str]) -> None:
        """Change the verbosity level."""
        self.verbosity = _normalise_verbosity(verbosity)

    def _register_event(
        self, event_name: str, category: str, description: str
    ) -> None:
        """Register an event name with a category and description.

        Parameters
        ----------
        event_name : str
            Name used in start_event/stop_event/progress calls
        category : str
            One of 'codegen', 'build' or 'runtime'
        description : str
            Human-readable description of the event
        """
        if category not in _CATEGORIES:
            raise ValueError(
                f"category must be 'codegen', 'build', or 'runtime', "
                f"got '{category}'"
            )
        with self._lock:
            self._event_registry[event_name] = {
                "category": category,
                "description": description,
            }

    def _check_event(self, event_name: str) -> None:
        if not event_name:
            raise ValueError("event_name cannot be empty")
        if event_name not in self._event_registry:
            raise ValueError(f"Event '{event_name}' is not registered")

    def _record(self, event_name, event_type, metadata) -> TimingEvent:
        registered = self._event_registry[event_name]
        metadata = dict(metadata)
        metadata.setdefault("category", registered["category"])
        event = TimingEvent(
            name=event_name,
            event_type=event_type,
            timestamp=time.perf_counter(),
            thread_id=threading.get_ident(),
            metadata=metadata,
        )
        self.events.append(event)
        return event

    def start_event(self, event_name: str, **metadata: Any) -> None:
        """Record the start of a timed operation in the calling thread.

        Raises
        ------
        ValueError
            If the event is unregistered, or the calling thread already
            has an active start for it.
        """
        self._check_event(event_name)
        if self.verbosity is None:
            return
        slot = (event_name, threading.get_ident())
        with self._lock:
            if slot in self._active_starts:
                raise ValueError(
                    f"Event '{event_name}' already has an active start"
                )
            event = self._record(event_name, 'start', metadata)
            self._active_starts[slot] = event.timestamp

        if self.verbosity == 'debug':
            print(f"[DEBUG] Started: {event_name}")

    def stop_event(self, event_name: str, **metadata: Any) -> None:
        """Record the end of a timed operation in the calling thread.

        Raises
        ------
        ValueError
            If the event is unregistered or was never started by the
            calling thread.
        """
        self._check_event(event_name)
        if self.verbosity is None:
            return
        slot = (event_name, threading.get_ident())
        with self._lock:
            if slot not in self._active_starts:
                raise ValueError(
                    f"Event '{event_name}' has no active start"
                )
            event = self._record(event_name, 'stop', metadata)
            duration = event.timestamp - self._active_starts.pop(slot)

        label = event_name
        if "kernel_name" in metadata:
            label = f"{event_name}[{metadata['kernel_name']}]"
        if self.verbosity == 'debug':
            print(f"[DEBUG] Stopped: {label} ({duration:.3f}s)")
        elif self.verbosity == 'verbose':
            print(f"{label}: {duration:.3f}s")

    def progress(
        self, event_name: str, message: str, **metadata: Any
    ) -> None:
        """Record a progress update within an operation.

        Progress events don't require matching start/stop and are only
        printed in debug mode.
        """
        self._check_event(event_name)
        if self.verbosity is None:
            return
        metadata_with_msg = dict(metadata)
        metadata_with_msg['message'] = message
        with self._lock:
            self._record(event_name, 'progress', metadata_with_msg)

        if self.verbosity == 'debug':
            print(f"[DEBUG] Progress: {event_name} - {message}")

    def print_message(self, message: str) -> None:
        """Print a diagnostic message unless logging is disabled.

        Used for opportunistic operations (cache reads and writes) whose
        failures are reported but never raised.
        """
        if self.verbosity is not None:
            print(message)

    def get_event_duration(self, event_name: str) -> Optional[float]:
        """Query duration of the most recent completed event.

        Returns
        -------
        float or None
            Duration in seconds, or None if no matching start/stop pair
        """
        stop = None
        with self._lock:
            events = list(self.events)
        for event in reversed(events):
            if event.name != event_name:
                continue
            if event.event_type == 'stop' and stop is None:
                stop = event
            elif (event.event_type == 'start' and stop is not None
                  and event.thread_id == stop.thread_id):
                return stop.timestamp - event.timestamp
        return None

    def get_aggregate_durations(
        self, category: Optional[str] = None
    ) -> dict[str, float]:
        """Sum durations of completed events, optionally by category.

        Parameters
        ----------
        category : str, optional
            If provided, only events registered under this category are
            included.

        Returns
        -------
        dict[str, float]
            Mapping of event names to total durations
        """
        durations: dict[str, float] = {}
        starts: dict[tuple[str, int], float] = {}
        with self._lock:
            events = list(self.events)

        for event in events:
            if category is not None:
                if event.metadata.get('category') != category:
                    continue
            slot = (event.name, event.thread_id)
            if event.event_type == 'start':
                starts[slot] = event.timestamp
            elif event.event_type == 'stop' and slot in starts:
                duration = event.timestamp - starts.pop(slot)
                durations[event.name] = (
                    durations.get(event.name, 0.0) + duration
                )
        return durations

    def print_summary(self) -> None:
        """Print timing summary based on verbosity level.

        Only 'default' prints here; 'verbose' and 'debug' already printed
        inline.
        """
        if self.verbosity == 'default':
            durations = self.get_aggregate_durations()
            if durations:
                print("\nTiming Summary:")
                for name, duration in sorted(durations.items()):
                    print(f"  {name}: {duration:.3f}s")


def _verbosity_from_environ() -> Optional[str]:
    requested = os.environ.get("JITCACHE_TIME_LOGGING", "default") or None
    try:
        return _normalise_verbosity(requested)
    except ValueError:
        warn(
            f"Ignoring JITCACHE_TIME_LOGGING={requested!r}; using 'default'",
            RuntimeWarning,
        )
        return 'default'


default_timelogger = TimeLogger(verbosity=_verbosity_from_environ())
