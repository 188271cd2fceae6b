"""Per-domain circuit breaker"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .config import CIRCUIT_BREAKER_RESET_TIMEOUT, CIRCUIT_BREAKER_THRESHOLD
from .exceptions import CircuitOpenError
from .models import CircuitState, DomainCircuit, ErrorKind
from .policies import get_policy
from .utils import extract_domain


class CircuitBreaker:
    """
    Circuit breaker pattern keyed by domain to stop hammering failing sites.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``reset_timeout`` has elapsed; the transition is
    made under the lock by the first caller, who becomes the single probe.
    Concurrent callers keep being rejected while the probe is in flight.
    HALF_OPEN -> CLOSED on probe success, back to OPEN (timer reset) on
    probe failure. A probe that never reports back is abandoned after
    another ``reset_timeout`` so the domain cannot stay wedged.
    """

    def __init__(
        self,
        failure_threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        reset_timeout: float = CIRCUIT_BREAKER_RESET_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening a domain's circuit
            reset_timeout: Seconds an open circuit waits before admitting a probe
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock

        self._circuits: Dict[str, DomainCircuit] = {}
        self._domain_configs: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

        logger.debug(
            f"Circuit breaker initialized: "
            f"threshold={failure_threshold}, reset_timeout={reset_timeout}s"
        )

    # ------------------------------------------------------------------ #
    # Configuration
    # ------------------------------------------------------------------ #

    def configure_domain(
        self,
        domain: str,
        failure_threshold: Optional[int] = None,
        reset_timeout: Optional[float] = None,
    ) -> None:
        """Override threshold / reset timeout for one domain"""
        name = extract_domain(domain)
        if not name:
            logger.warning("Attempted to configure circuit breaker for an empty domain")
            return

        with self._lock:
            config = self._domain_configs.setdefault(name, {})
            if failure_threshold is not None:
                config["failure_threshold"] = failure_threshold
            if reset_timeout is not None:
                config["reset_timeout"] = reset_timeout

            circuit = self._circuits.get(name)
            if circuit is not None:
                circuit.failure_threshold = int(
                    config.get("failure_threshold", circuit.failure_threshold)
                )
                circuit.reset_timeout = config.get("reset_timeout", circuit.reset_timeout)

    # ------------------------------------------------------------------ #
    # Gate
    # ------------------------------------------------------------------ #

    def is_request_allowed(self, url_or_domain: Optional[str]) -> bool:
        """Whether an attempt against this domain may proceed"""
        domain = extract_domain(url_or_domain)
        if not domain:
            return True

        with self._lock:
            circuit = self._circuits.get(domain)
            if circuit is None or circuit.state == CircuitState.CLOSED:
                return True

            now = self.clock()

            if circuit.state == CircuitState.OPEN:
                opened_at = circuit.opened_at if circuit.opened_at is not None else now
                if now - opened_at >= circuit.reset_timeout:
                    self._half_open(circuit, now)
                    return True
                circuit.rejected_requests += 1
                return False

            # HALF_OPEN: one probe at a time
            if circuit.probe_started_at is None or (
                now - circuit.probe_started_at >= circuit.reset_timeout
            ):
                circuit.probe_started_at = now
                logger.info(f"Circuit '{domain}' admitting new probe (previous probe abandoned)")
                return True
            circuit.rejected_requests += 1
            return False

    def record_success(self, url_or_domain: Optional[str]) -> None:
        domain = extract_domain(url_or_domain)
        if not domain:
            return

        with self._lock:
            circuit = self._circuits.get(domain)
            if circuit is None:
                return

            circuit.total_requests += 1
            circuit.successful_requests += 1

            if circuit.state == CircuitState.HALF_OPEN:
                self._close(circuit)
            elif circuit.state == CircuitState.CLOSED:
                circuit.consecutive_failures = 0

    def record_failure(self, url_or_domain: Optional[str]) -> None:
        domain = extract_domain(url_or_domain)
        if not domain:
            return

        with self._lock:
            circuit = self._get_or_create(domain)
            now = self.clock()

            circuit.total_requests += 1
            circuit.failed_requests += 1
            circuit.consecutive_failures += 1

            if circuit.state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{domain}' probe failed, reopening")
                self._open(circuit, now)
            elif circuit.state == CircuitState.CLOSED:
                if circuit.consecutive_failures >= circuit.failure_threshold:
                    self._open(circuit, now)
                else:
                    logger.debug(
                        f"Circuit '{domain}' failure "
                        f"{circuit.consecutive_failures}/{circuit.failure_threshold}"
                    )

    async def call(self, url: Optional[str], func: Callable, *args: Any, **kwargs: Any) -> Any:
        """Execute an async function with circuit breaker protection"""
        if not url:
            return await func(*args, **kwargs)

        domain = extract_domain(url)
        if not self.is_request_allowed(domain):
            raise self.open_error(domain)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure(domain)
            raise

        self.record_success(domain)
        return result

    def open_error(self, url_or_domain: Optional[str]) -> CircuitOpenError:
        """Build the CIRCUIT_OPEN error for a rejected domain"""
        domain = extract_domain(url_or_domain)
        state = self.get_state(domain)
        if state == CircuitState.HALF_OPEN:
            message = f"Circuit '{domain}' is HALF_OPEN, trial request in flight"
        else:
            remaining = self.remaining_open_time(domain)
            message = f"Circuit '{domain}' is {state.name}, retry in {remaining:.0f}s"
        return CircuitOpenError(
            message,
            policy=get_policy(ErrorKind.CIRCUIT_OPEN),
            domain=domain,
        )

    def remaining_open_time(self, url_or_domain: Optional[str]) -> float:
        domain = extract_domain(url_or_domain)
        with self._lock:
            circuit = self._circuits.get(domain) if domain else None
            if circuit is None or circuit.state != CircuitState.OPEN or circuit.opened_at is None:
                return 0.0
            return max(0.0, circuit.reset_timeout - (self.clock() - circuit.opened_at))

    # ------------------------------------------------------------------ #
    # Inspection / manual control
    # ------------------------------------------------------------------ #

    def get_state(self, url_or_domain: Optional[str]) -> CircuitState:
        domain = extract_domain(url_or_domain)
        with self._lock:
            circuit = self._circuits.get(domain) if domain else None
            return circuit.state if circuit else CircuitState.CLOSED

    def get_failure_count(self, url_or_domain: Optional[str]) -> int:
        domain = extract_domain(url_or_domain)
        with self._lock:
            circuit = self._circuits.get(domain) if domain else None
            return circuit.consecutive_failures if circuit else 0

    def get_all_states(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [circuit.to_dict() for circuit in self._circuits.values()]

    def reset(self, url_or_domain: Optional[str]) -> None:
        domain = extract_domain(url_or_domain)
        with self._lock:
            circuit = self._circuits.get(domain) if domain else None
            if circuit is not None:
                logger.info(f"Manually resetting circuit '{domain}'")
                self._close(circuit)

    def reset_all(self) -> None:
        with self._lock:
            for circuit in self._circuits.values():
                self._close(circuit)

    # ------------------------------------------------------------------ #
    # Transitions (caller holds the lock)
    # ------------------------------------------------------------------ #

    def _get_or_create(self, domain: str) -> DomainCircuit:
        circuit = self._circuits.get(domain)
        if circuit is None:
            config = self._domain_configs.get(domain, {})
            circuit = DomainCircuit(
                domain=domain,
                failure_threshold=int(config.get("failure_threshold", self.failure_threshold)),
                reset_timeout=config.get("reset_timeout", self.reset_timeout),
            )
            self._circuits[domain] = circuit
        return circuit

    def _open(self, circuit: DomainCircuit, now: float) -> None:
        logger.error(
            f"Circuit '{circuit.domain}' OPENING after "
            f"{circuit.consecutive_failures} consecutive failures "
            f"(reset in {circuit.reset_timeout:.0f}s)"
        )
        circuit.state = CircuitState.OPEN
        circuit.opened_at = now
        circuit.probe_started_at = None
        circuit.open_count += 1

    def _half_open(self, circuit: DomainCircuit, now: float) -> None:
        logger.info(f"Circuit '{circuit.domain}' transitioning to HALF_OPEN (timeout expired)")
        if circuit.opened_at is not None:
            circuit.total_open_time += now - circuit.opened_at
        circuit.state = CircuitState.HALF_OPEN
        circuit.probe_started_at = now

    def _close(self, circuit: DomainCircuit) -> None:
        if circuit.state != CircuitState.CLOSED:
            logger.success(f"Circuit '{circuit.domain}' recovered, closing")
        if circuit.state == CircuitState.OPEN and circuit.opened_at is not None:
            circuit.total_open_time += self.clock() - circuit.opened_at
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.opened_at = None
        circuit.probe_started_at = None
