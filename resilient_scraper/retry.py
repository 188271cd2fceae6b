"""Retry orchestrator: breaker gate, classification, proxy rotation and backoff"""

import asyncio
import functools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from .captcha import CaptchaInfo, CaptchaSolver
from .circuit_breaker import CircuitBreaker
from .classifier import ErrorClassifier, error_message
from .config import BACKOFF_MULTIPLIER, INITIAL_BACKOFF, JITTER_RANGE, MAX_DURATION, MAX_RETRIES
from .exceptions import ClassifiedError
from .models import ErrorContext, ErrorKind, RetryPolicy, RetryState
from .policies import calculate_backoff_delay
from .proxy_pool import ProxyPool
from .utils import extract_domain

Operation = Callable[[RetryState], Awaitable[Any]]


@dataclass
class RetryContext:
    """
    Per-call retry context.

    Args:
        url: Target URL; keys the circuit breaker and proxy affinity
        proxy_id: Proxy already chosen for the first attempt
        max_retries: Extra cap on top of the error kind's policy
        max_duration: Seconds before the loop gives up, overriding the default
        captcha: Captcha details handed to the solver when a policy asks for it
        timeout: Base timeout of the operation, in seconds
        proxy_options: Keyword arguments for ProxyPool.get_proxy
    """

    url: Optional[str] = None
    proxy_id: Optional[str] = None
    max_retries: Optional[int] = None
    max_duration: Optional[float] = None
    captcha: Optional[CaptchaInfo] = None
    timeout: Optional[float] = None
    proxy_options: Dict[str, Any] = field(default_factory=dict)


class RetryOrchestrator:
    """
    Drives an operation until it succeeds or its error policy is exhausted.

    Every failure is classified, reported to the circuit breaker and the
    proxy pool, then retried with the kind's backoff and recovery flags.
    Only ClassifiedError ever escapes ``with_retry``.
    """

    def __init__(
        self,
        classifier: ErrorClassifier,
        breaker: CircuitBreaker,
        proxy_pool: Optional[ProxyPool] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
        max_retries: Optional[int] = None,
        max_duration: float = MAX_DURATION,
        use_circuit_breaker: bool = True,
        use_error_classification: bool = True,
        use_captcha_solving: bool = True,
        use_proxy_rotation: bool = True,
        jitter_range: Optional[Tuple[float, float]] = JITTER_RANGE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize retry orchestrator.

        Args:
            classifier: Error classifier
            breaker: Per-domain circuit breaker
            proxy_pool: Optional proxy pool for rotation and outcome reporting
            captcha_solver: Optional captcha capability
            max_retries: Global cap applied on top of every policy (None = policy only)
            max_duration: Default seconds per with_retry call
            use_circuit_breaker: Gate and report to the breaker
            use_error_classification: Classify failures; otherwise every failure
                gets a plain exponential backoff policy
            use_captcha_solving: Call the solver when a policy asks for it
            use_proxy_rotation: Take, report and rotate proxies through the pool
            jitter_range: Backoff jitter, or None for exact delays
            sleep: Async sleep used between attempts
            clock: Monotonic time source for the deadline
        """
        self.classifier = classifier
        self.breaker = breaker
        self.proxy_pool = proxy_pool
        self.captcha_solver = captcha_solver
        self.max_retries = max_retries
        self.max_duration = max_duration
        self.use_circuit_breaker = use_circuit_breaker
        self.use_error_classification = use_error_classification
        self.use_captcha_solving = use_captcha_solving
        self.use_proxy_rotation = use_proxy_rotation
        self.jitter_range = jitter_range
        self.sleep = sleep
        self.clock = clock

        self._plain_policy = RetryPolicy(
            max_retries=max_retries if max_retries is not None else MAX_RETRIES,
            base_delay=INITIAL_BACKOFF,
            backoff_factor=BACKOFF_MULTIPLIER,
        )

    async def with_retry(
        self, operation: Operation, context: Optional[RetryContext] = None, **kwargs: Any
    ) -> Any:
        """
        Run ``operation(state)`` with classification-driven retries.

        Args:
            operation: Single-attempt async callable taking the RetryState
            context: Retry context; keyword arguments build one when omitted

        Raises:
            CircuitOpenError: The domain's circuit rejected the call (no attempt made)
            ClassifiedError: Retries exhausted, policy forbids retry, or deadline hit
        """
        if context is None:
            context = RetryContext(**kwargs)

        started = self.clock()
        max_duration = context.max_duration if context.max_duration is not None else self.max_duration
        deadline = started + max_duration
        domain = extract_domain(context.url)

        if self.use_circuit_breaker and domain and not self.breaker.is_request_allowed(domain):
            error = self.breaker.open_error(domain)
            logger.warning(f"🚫 {error}")
            raise error

        state = RetryState(proxy_id=context.proxy_id)
        if self._rotating():
            if state.proxy_id:
                proxy = self.proxy_pool.get_proxy_by_id(state.proxy_id)
                state.proxy_url = proxy.url if proxy else None
            elif context.url:
                self._assign_proxy(state, context)

        attempts = 0
        while True:
            attempts += 1
            attempt_started = self.clock()
            try:
                result = await operation(state)
            except Exception as error:
                classified = self._classify(error, context)
                classified.attempts = attempts
                self._report_failure(domain, state, classified)

                if self.clock() >= deadline:
                    logger.warning(
                        f"⏱️ Retry operation exceeded maximum duration "
                        f"({max_duration:.0f}s) for {context.url}: {classified}"
                    )
                    raise classified

                policy = classified.policy
                limit = self._retry_limit(policy, context)
                state.retry_count += 1
                if state.retry_count > limit:
                    logger.error(
                        f"❌ Failed after {state.retry_count - 1} retries "
                        f"({classified.kind.value}): {classified}"
                    )
                    raise classified

                state.delay = calculate_backoff_delay(
                    policy.base_delay,
                    state.retry_count,
                    policy.backoff_factor,
                    jitter_range=self.jitter_range,
                )
                state.apply_policy(classified.kind, policy)
                await self._apply_side_effects(state, context)

                remaining = deadline - self.clock()
                if state.delay >= remaining:
                    logger.warning(
                        f"⏱️ Next retry in {state.delay:.1f}s would exceed the deadline "
                        f"({remaining:.1f}s left) for {context.url}"
                    )
                    raise classified

                logger.warning(
                    f"⚠️ Attempt {attempts}/{limit + 1} failed "
                    f"({classified.kind.value}): {error_message(error)}"
                )
                logger.info(f"   Retrying in {state.delay:.1f}s...")

                await self.sleep(state.delay)

                if self.clock() >= deadline:
                    logger.warning(f"⏱️ Deadline reached while backing off for {context.url}")
                    raise classified
                continue

            if self.use_circuit_breaker and domain:
                self.breaker.record_success(domain)
            if self._rotating() and state.proxy_id:
                self.proxy_pool.record_success(state.proxy_id, self.clock() - attempt_started)

            if state.retry_count > 0:
                logger.success(f"✓ Recovered after {state.retry_count} retries")
            return result

    def create_retriable(
        self, fn: Callable[..., Awaitable[Any]], context: Optional[RetryContext] = None
    ) -> Callable[..., Awaitable[Any]]:
        """Wrap an async function so every call goes through with_retry"""

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await self.with_retry(lambda state: fn(*args, **kwargs), context)

        return wrapper

    async def execute_with_circuit_breaker(
        self, url: Optional[str], fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Single attempt guarded by the circuit breaker, no retries"""
        if not self.use_circuit_breaker or not url:
            return await fn(*args, **kwargs)
        return await self.breaker.call(url, fn, *args, **kwargs)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _rotating(self) -> bool:
        return self.use_proxy_rotation and self.proxy_pool is not None

    def _retry_limit(self, policy: RetryPolicy, context: RetryContext) -> int:
        limit = policy.max_retries
        for cap in (self.max_retries, context.max_retries):
            if cap is not None:
                limit = min(limit, cap)
        return limit

    def _classify(self, error: Exception, context: RetryContext) -> ClassifiedError:
        if self.use_error_classification:
            return self.classifier.classify(error, ErrorContext(url=context.url))

        if isinstance(error, ClassifiedError):
            return error
        return ClassifiedError(
            error_message(error),
            kind=ErrorKind.UNKNOWN,
            policy=self._plain_policy,
            original=error,
            context=ErrorContext(url=context.url),
        )

    def _report_failure(
        self, domain: Optional[str], state: RetryState, classified: ClassifiedError
    ) -> None:
        if self.use_circuit_breaker and domain:
            self.breaker.record_failure(domain)
        if self._rotating() and state.proxy_id:
            self.proxy_pool.record_failure(state.proxy_id, reason=str(classified))

    def _assign_proxy(self, state: RetryState, context: RetryContext, rotate: bool = False) -> None:
        options = dict(context.proxy_options)
        if rotate:
            options.update(bind_to_site=False, enforce_unique=True)

        proxy = self.proxy_pool.get_proxy(context.url, **options)
        state.proxy_id = proxy.id if proxy else None
        state.proxy_url = proxy.url if proxy else None

    async def _apply_side_effects(self, state: RetryState, context: RetryContext) -> None:
        if self._rotating():
            if state.disable_proxy and state.proxy_id:
                self.proxy_pool.mark_proxy_banned(
                    state.proxy_id, f"Marked as banned during retry ({state.last_error_kind.value})"
                )
            if state.rotate_proxy and context.url:
                previous = state.proxy_id
                self._assign_proxy(state, context, rotate=True)
                logger.info(
                    f"🔄 Rotating proxy for next attempt on {context.url}: "
                    f"{previous or 'none'} → {state.proxy_id or 'none'}"
                )

        if self.use_captcha_solving and state.solve_captcha:
            await self._solve_captcha(state, context)

    async def _solve_captcha(self, state: RetryState, context: RetryContext) -> None:
        """Attach a captcha token to the state; failures fall through to a plain retry"""
        if context.captcha is None:
            logger.debug("No captcha info available for solving")
            return
        if self.captcha_solver is None:
            logger.debug("No captcha solver configured")
            return

        info = context.captcha
        logger.info(f"🧩 Attempting to solve {info.kind} captcha for {context.url}")
        try:
            solution = await self.captcha_solver.solve(info.kind, dict(info.params))
        except Exception as e:
            logger.warning(f"Failed to solve captcha: {type(e).__name__}: {e}")
            return

        if solution:
            state.captcha_solution = solution
            logger.info("🧩 Captcha solved successfully")
        else:
            logger.warning("Captcha solver returned no solution")
