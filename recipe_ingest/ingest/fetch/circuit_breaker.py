from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Literal
from urllib.parse import urlsplit

from loguru import logger

from recipe_ingest.services.logger import log_event

BreakerState = Literal["closed", "open", "half_open"]
TripCallback = Callable[[str, int], None]


@dataclass(slots=True)
class _DomainCircuit:
    failures: deque[float] = field(default_factory=deque)
    state: BreakerState = "closed"
    opened_at: float | None = None
    trial_in_flight: bool = False


def domain_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class CircuitBreaker:
    """Per-domain failure tracker.

    Opens after ``failure_threshold`` failures inside ``failure_window_seconds``,
    short-circuits calls for ``block_duration_seconds`` and then lets a single
    trial request through (half-open). A successful trial closes the circuit, a failed
    one re-opens it.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        failure_window_seconds: float = 600.0,
        block_duration_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
        on_trip: TripCallback | None = None,
    ):
        self.failure_threshold = max(int(failure_threshold), 1)
        self.failure_window_seconds = failure_window_seconds
        self.block_duration_seconds = block_duration_seconds
        self._clock = clock
        self._on_trip = on_trip
        self._circuits: dict[str, _DomainCircuit] = {}
        self._lock = threading.Lock()
        self.trip_count = 0

    def _circuit(self, domain: str) -> _DomainCircuit:
        key = domain.lower()
        circuit = self._circuits.get(key)
        if circuit is None:
            circuit = _DomainCircuit()
            self._circuits[key] = circuit
        return circuit

    def _prune(self, circuit: _DomainCircuit, now: float) -> None:
        cutoff = now - self.failure_window_seconds
        while circuit.failures and circuit.failures[0] < cutoff:
            circuit.failures.popleft()

    def is_allowed(self, domain: str) -> bool:
        with self._lock:
            circuit = self._circuit(domain)
            now = self._clock()
            if circuit.state == "closed":
                return True
            if circuit.state == "open":
                opened_at = circuit.opened_at if circuit.opened_at is not None else now
                if now - opened_at < self.block_duration_seconds:
                    return False
                circuit.state = "half_open"
                circuit.trial_in_flight = True
                logger.info(f"Circuit half-open for {domain}, allowing one trial request")
                return True
            # half_open: only the single trial request is allowed
            if circuit.trial_in_flight:
                return False
            circuit.trial_in_flight = True
            return True

    def release_trial(self, domain: str) -> None:
        """Free a half-open trial slot whose call ended without a recorded outcome."""
        with self._lock:
            circuit = self._circuit(domain)
            if circuit.state == "half_open" and circuit.trial_in_flight:
                circuit.trial_in_flight = False
                logger.debug(f"Trial request for {domain} ended without an outcome, slot released")

    def record_success(self, domain: str) -> None:
        with self._lock:
            circuit = self._circuit(domain)
            if circuit.state != "closed":
                logger.info(f"Circuit closed for {domain}")
            circuit.failures.clear()
            circuit.state = "closed"
            circuit.opened_at = None
            circuit.trial_in_flight = False

    def record_failure(self, domain: str) -> None:
        tripped_with: int | None = None
        with self._lock:
            circuit = self._circuit(domain)
            now = self._clock()
            circuit.failures.append(now)
            self._prune(circuit, now)
            count = len(circuit.failures)
            if circuit.state == "half_open":
                circuit.state = "open"
                circuit.opened_at = now
                circuit.trial_in_flight = False
                tripped_with = count
            elif circuit.state == "closed" and count >= self.failure_threshold:
                circuit.state = "open"
                circuit.opened_at = now
                tripped_with = count
            if tripped_with is not None:
                self.trip_count += 1

        if tripped_with is not None:
            logger.warning(f"Circuit opened for {domain} after {tripped_with} failures")
            log_event(
                "circuit_breaker_tripped",
                f"Circuit breaker opened for {domain}",
                domain=domain,
                failures=tripped_with,
            )
            if self._on_trip is not None:
                self._on_trip(domain, tripped_with)

    def get_state(self, domain: str) -> BreakerState:
        with self._lock:
            circuit = self._circuit(domain)
            if (
                circuit.state == "open"
                and circuit.opened_at is not None
                and self._clock() - circuit.opened_at >= self.block_duration_seconds
            ):
                return "half_open"
            return circuit.state

    def failure_count(self, domain: str) -> int:
        with self._lock:
            circuit = self._circuit(domain)
            self._prune(circuit, self._clock())
            return len(circuit.failures)
