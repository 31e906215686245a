"""Step retry policies.

Provides the retry coordinator wrapped around every step dispatch:
- Count strategy: up to ``count + 1`` attempts
- Until-condition strategy: retry until a session/API condition holds or
  the timeout is spent
- Fixed or exponential delay (capped by ``max_delay``)
- ``fail_silently``: failures become a SUPPRESSED outcome instead of an error

All delays and timeouts are in milliseconds, matching the workflow JSON.

Usage:
    policy = RetryPolicy.from_node_data(node.data, context)
    outcome = await execute_with_retry(lambda: handler.execute(node, context), policy,
                                       context=context, token=token)
    value = outcome.unwrap()
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from app.config import get_settings
from core.constants import DelayStrategy, RetryStrategyType
from core.exceptions import RetryExhaustedError, StepCancelledError, StepError
from workflow.cancellation import CancellationToken
from workflow.conditions import Condition, ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.models import StepOutcome

logger = structlog.get_logger(__name__)


@dataclass
class RetryPolicy:
    """Retry configuration attached to a node."""
    enabled: bool = False
    strategy: RetryStrategyType = RetryStrategyType.COUNT
    count: int = 3
    delay: float = 1000
    delay_strategy: DelayStrategy = DelayStrategy.FIXED
    max_delay: Optional[float] = None
    fail_silently: bool = False
    condition: Optional[Condition] = None
    timeout: float = 30000

    @classmethod
    def disabled(cls, fail_silently: bool = False) -> "RetryPolicy":
        """Single attempt; only ``fail_silently`` applies."""
        return cls(enabled=False, fail_silently=fail_silently)

    @classmethod
    def count_based(
        cls,
        count: int = 3,
        delay: float = 1000,
        delay_strategy: DelayStrategy = DelayStrategy.FIXED,
        max_delay: Optional[float] = None,
        fail_silently: bool = False,
    ) -> "RetryPolicy":
        return cls(
            enabled=True,
            strategy=RetryStrategyType.COUNT,
            count=count,
            delay=delay,
            delay_strategy=delay_strategy,
            max_delay=max_delay,
            fail_silently=fail_silently,
        )

    @classmethod
    def until_condition(
        cls,
        condition: Condition,
        timeout: float = 30000,
        delay: float = 1000,
        delay_strategy: DelayStrategy = DelayStrategy.FIXED,
        max_delay: Optional[float] = None,
        fail_silently: bool = False,
    ) -> "RetryPolicy":
        return cls(
            enabled=True,
            strategy=RetryStrategyType.UNTIL_CONDITION,
            condition=condition,
            timeout=timeout,
            delay=delay,
            delay_strategy=delay_strategy,
            max_delay=max_delay,
            fail_silently=fail_silently,
        )

    @classmethod
    def from_node_data(cls, data: dict, context: Optional[ExecutionContext] = None) -> Optional["RetryPolicy"]:
        """Build the policy declared on a node, or None if it declares none.

        Numeric fields may reference ``${variables.x}`` / ``${data.x}``.
        """
        enabled = bool(data.get("retryEnabled", False))
        fail_silently = bool(data.get("failSilently", False))
        if not enabled:
            return cls.disabled(fail_silently=True) if fail_silently else None

        settings = get_settings()

        def number(value, default):
            if context is not None:
                return context.interpolate_number(value, default)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except (TypeError, ValueError):
                return default

        condition = None
        timeout = settings.DEFAULT_RETRY_TIMEOUT
        raw_condition = data.get("retryUntilCondition")
        if raw_condition:
            raw_condition = dict(raw_condition)
            expected = raw_condition.get("expectedValue")
            if context is not None and isinstance(expected, str):
                raw_condition["expectedValue"] = context.interpolate(expected)
            if raw_condition.get("expectedStatus") is not None:
                raw_condition["expectedStatus"] = number(raw_condition["expectedStatus"], None)
            condition = Condition.from_dict(raw_condition)
            timeout = number(raw_condition.get("timeout"), settings.DEFAULT_RETRY_TIMEOUT)

        count = number(data.get("retryCount"), settings.DEFAULT_RETRY_COUNT)
        max_delay = number(data.get("retryMaxDelay"), None)
        return cls(
            enabled=True,
            strategy=RetryStrategyType(data.get("retryStrategy") or RetryStrategyType.COUNT.value),
            count=int(count),
            delay=number(data.get("retryDelay"), settings.DEFAULT_RETRY_DELAY),
            delay_strategy=DelayStrategy(data.get("retryDelayStrategy") or DelayStrategy.FIXED.value),
            max_delay=max_delay,
            fail_silently=fail_silently,
            condition=condition,
            timeout=timeout,
        )

    def to_dict(self) -> dict:
        """Serialize back to node data keys."""
        data = {
            "retryEnabled": self.enabled,
            "retryStrategy": self.strategy.value,
            "retryCount": self.count,
            "retryDelay": self.delay,
            "retryDelayStrategy": self.delay_strategy.value,
            "retryMaxDelay": self.max_delay,
            "failSilently": self.fail_silently,
        }
        if self.condition is not None:
            data["retryUntilCondition"] = {**self.condition.to_dict(), "timeout": self.timeout}
        return data

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay in ms before retry number ``attempt`` (1-based)."""
        if self.delay_strategy == DelayStrategy.EXPONENTIAL:
            delay = self.delay * (2 ** (attempt - 1))
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            return delay
        return self.delay


async def _sleep_ms(delay_ms: float, token: Optional[CancellationToken]) -> None:
    if token is not None:
        await token.sleep(delay_ms / 1000)
    elif delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000)


async def _invoke(operation: Callable[[], Awaitable[Any]], token: Optional[CancellationToken]) -> Any:
    if token is not None:
        return await token.run(operation())
    return await operation()


async def _notify(on_retry: Optional[Callable], attempt: int, error: Optional[BaseException], delay: float) -> None:
    if on_retry is None:
        return
    try:
        if asyncio.iscoroutinefunction(on_retry):
            await on_retry(attempt, error, delay)
        else:
            on_retry(attempt, error, delay)
    except Exception as e:
        logger.warning("Retry callback failed", error=str(e))


async def execute_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: Optional[RetryPolicy],
    context: Optional[ExecutionContext] = None,
    token: Optional[CancellationToken] = None,
    evaluator: Optional[ConditionEvaluator] = None,
    on_retry: Optional[Callable] = None,
) -> StepOutcome:
    """Run ``operation`` under ``policy`` and report a tri-state outcome.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt.
        policy: RetryPolicy; None behaves like a disabled policy.
        context: Execution context (session for browser conditions,
            stored API responses, trace log).
        token: Cancellation token; a stop aborts the attempt or the sleep.
        evaluator: Condition evaluator (default ConditionEvaluator()).
        on_retry: Optional callback(attempt, error, delay_ms) before each retry.

    Returns:
        StepOutcome. StepCancelledError is raised, never absorbed.
    """
    policy = policy or RetryPolicy.disabled()

    if not policy.enabled:
        try:
            return StepOutcome.success(await _invoke(operation, token))
        except StepCancelledError:
            raise
        except Exception as e:
            return _fail(policy, e, attempts=1)

    if policy.strategy == RetryStrategyType.UNTIL_CONDITION:
        return await _retry_until_condition(operation, policy, context, token, evaluator or ConditionEvaluator(), on_retry)
    return await _retry_with_count(operation, policy, token, on_retry, context)


def _fail(policy: RetryPolicy, error: BaseException, attempts: int, detail: Optional[str] = None) -> StepOutcome:
    if policy.fail_silently:
        logger.warning("Operation failed silently", error=str(error), attempts=attempts)
        return StepOutcome.suppressed(error, attempts=attempts, detail=detail)
    return StepOutcome.failure(error, attempts=attempts, detail=detail)


async def _retry_with_count(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    token: Optional[CancellationToken],
    on_retry: Optional[Callable],
    context: Optional[ExecutionContext],
) -> StepOutcome:
    retry_count = max(0, policy.count)
    last_error: Optional[BaseException] = None

    for attempt in range(retry_count + 1):
        try:
            result = await _invoke(operation, token)
            return StepOutcome.success(result, attempts=attempt + 1)
        except StepCancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt >= retry_count:
                break
            delay = policy.compute_delay(attempt + 1)
            message = f"Retry attempt {attempt + 1}/{retry_count} failed: {e}. Retrying in {delay:g}ms..."
            if context is not None:
                context.trace(message)
            logger.info("Retrying step", attempt=attempt + 1, retries=retry_count, delay_ms=delay, error=str(e))
            await _notify(on_retry, attempt + 1, e, delay)
            await _sleep_ms(delay, token)

    error = last_error or StepError("Operation failed after retries")
    return _fail(policy, error, attempts=retry_count + 1)


async def _retry_until_condition(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    context: Optional[ExecutionContext],
    token: Optional[CancellationToken],
    evaluator: ConditionEvaluator,
    on_retry: Optional[Callable],
) -> StepOutcome:
    condition = policy.condition
    if condition is None:
        return _fail(policy, StepError("untilCondition is required for retry until condition strategy"), attempts=0)
    if context is None:
        return _fail(policy, StepError("Context is required for retry until condition strategy"), attempts=0)
    if not condition.is_api and context.session is None:
        return _fail(
            policy,
            StepError("An automation session is required for browser-based retry until condition"),
            attempts=0,
        )

    timeout = policy.timeout
    started = time.monotonic()
    attempt = 0
    last_error: Optional[BaseException] = None
    last_detail = "Condition not met"

    def elapsed_ms() -> float:
        return (time.monotonic() - started) * 1000

    def timed_out() -> StepOutcome:
        detail = str(last_error) if last_error is not None else last_detail
        error = RetryExhaustedError(
            f"Retry until condition timed out after {timeout:g}ms: {detail}",
            last_error=last_error,
            detail=last_detail,
            attempts=attempt,
        )
        if last_error is not None:
            error.__cause__ = last_error
        return _fail(policy, error, attempts=attempt, detail=last_detail)

    while True:
        if elapsed_ms() >= timeout:
            return timed_out()

        result = None
        operation_error: Optional[BaseException] = None
        try:
            result = await _invoke(operation, token)
        except StepCancelledError:
            raise
        except Exception as e:
            operation_error = e
        last_error = operation_error
        attempt += 1

        check = await evaluator.evaluate(condition, context)
        last_detail = check.details or "Condition not met"
        if check.met:
            # Condition truth wins even when the operation itself raised
            return StepOutcome.success(None if operation_error else result, attempts=attempt, detail=last_detail)

        delay = policy.compute_delay(attempt)
        if operation_error is not None:
            context.trace(f"Retry attempt {attempt} failed: {operation_error}. Retrying in {delay:g}ms...")
        else:
            context.trace(f"Retry [{attempt}]: {last_detail} | Retrying in {delay:g}ms...")

        if elapsed_ms() + delay >= timeout:
            return timed_out()

        await _notify(on_retry, attempt, operation_error, delay)
        await _sleep_ms(delay, token)
