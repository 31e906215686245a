"""Pre/post step waits.

A node may declare up to three waits, each with its own timeout (ms):

    waitForSelector / waitForSelectorType / waitForSelectorTimeout
    waitForUrl / waitForUrlTimeout              ("/regex/" or literal)
    waitForCondition / waitForConditionTimeout  (in-page script)

``waitStrategy`` is "parallel" (default) or "sequential"; sequential runs
selector, then url, then script. ``waitAfterOperation`` moves the waits
after the step. A declared wait with a blank value is an error unless
the node fails silently.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from app.config import get_settings
from core.constants import WaitStrategy, WaitTiming
from core.exceptions import StepCancelledError, WaitTimeoutError
from workflow.cancellation import CancellationToken
from workflow.conditions import compile_url_pattern
from workflow.models import StepOutcome
from workflow.session import AutomationSession

logger = structlog.get_logger(__name__)

_WAIT_KEYS = ("waitForSelector", "waitForUrl", "waitForCondition")


@dataclass
class WaitSpec:
    """Waits declared on one node."""
    selector: Optional[str] = None
    selector_type: str = "css"
    selector_timeout: Optional[int] = None
    url: Optional[str] = None
    url_timeout: Optional[int] = None
    script: Optional[str] = None
    script_timeout: Optional[int] = None
    strategy: WaitStrategy = WaitStrategy.PARALLEL
    fail_silently: bool = False
    timing: WaitTiming = WaitTiming.BEFORE

    @property
    def timing_label(self) -> str:
        return "after operation" if self.timing == WaitTiming.AFTER else "before operation"

    @property
    def is_empty(self) -> bool:
        return self.selector is None and self.url is None and self.script is None

    @classmethod
    def from_node_data(cls, data: dict) -> Optional["WaitSpec"]:
        """Build the spec declared on a node, or None when it declares no waits."""
        if not any(data.get(key) is not None for key in _WAIT_KEYS):
            return None

        def timeout(key: str) -> Optional[int]:
            value = data.get(key)
            if value in (None, ""):
                return None
            try:
                return int(float(value))
            except (TypeError, ValueError):
                return None

        return cls(
            selector=data.get("waitForSelector"),
            selector_type=data.get("waitForSelectorType") or "css",
            selector_timeout=timeout("waitForSelectorTimeout"),
            url=data.get("waitForUrl"),
            url_timeout=timeout("waitForUrlTimeout"),
            script=data.get("waitForCondition"),
            script_timeout=timeout("waitForConditionTimeout"),
            strategy=WaitStrategy(data.get("waitStrategy") or WaitStrategy.PARALLEL.value),
            fail_silently=bool(data.get("failSilently", False)),
            timing=WaitTiming.AFTER if data.get("waitAfterOperation") else WaitTiming.BEFORE,
        )


async def _wait_for_selector(session: AutomationSession, spec: WaitSpec, default_timeout: int) -> None:
    label = spec.timing_label
    selector = (spec.selector or "").strip()
    if not selector:
        raise WaitTimeoutError(f"Wait for selector failed ({label}): selector cannot be empty", spec.timing.value)

    timeout = spec.selector_timeout or default_timeout
    try:
        await session.wait_for_selector(selector, spec.selector_type, timeout)
    except (TimeoutError, asyncio.TimeoutError) as e:
        raise WaitTimeoutError(
            f'Wait {label}: Selector "{selector}" ({spec.selector_type}) did not appear within {timeout}ms',
            spec.timing.value,
        ) from e
    except (StepCancelledError, WaitTimeoutError):
        raise
    except Exception as e:
        raise WaitTimeoutError(
            f"Wait for selector failed ({label}): {selector} ({spec.selector_type}): {e}",
            spec.timing.value,
        ) from e


async def _wait_for_url(session: AutomationSession, spec: WaitSpec, default_timeout: int) -> None:
    label = spec.timing_label
    pattern = (spec.url or "").strip()
    if not pattern:
        raise WaitTimeoutError(f"Wait for URL pattern failed ({label}): pattern cannot be empty", spec.timing.value)

    try:
        compiled = compile_url_pattern(pattern)
    except re.error as e:
        raise WaitTimeoutError(f'Invalid regex pattern "{pattern}" ({label}): {e}', spec.timing.value) from e

    timeout = spec.url_timeout or default_timeout
    try:
        await session.wait_for_url(compiled, timeout)
    except (TimeoutError, asyncio.TimeoutError) as e:
        current = await session.current_url()
        raise WaitTimeoutError(
            f'Wait {label}: URL did not match pattern "{pattern}" within {timeout}ms. Current URL: {current}',
            spec.timing.value,
        ) from e
    except (StepCancelledError, WaitTimeoutError):
        raise
    except Exception as e:
        raise WaitTimeoutError(f"Wait for URL pattern failed ({label}): {pattern}: {e}", spec.timing.value) from e


async def _wait_for_script(session: AutomationSession, spec: WaitSpec, default_timeout: int) -> None:
    label = spec.timing_label
    script = (spec.script or "").strip()
    if not script:
        raise WaitTimeoutError(f"Wait for condition failed ({label}): condition cannot be empty", spec.timing.value)

    timeout = spec.script_timeout or default_timeout
    try:
        await session.wait_for_function(script, timeout)
    except (TimeoutError, asyncio.TimeoutError) as e:
        raise WaitTimeoutError(
            f"Wait {label}: Condition did not evaluate to true within {timeout}ms: {script}",
            spec.timing.value,
        ) from e
    except (StepCancelledError, WaitTimeoutError):
        raise
    except Exception as e:
        raise WaitTimeoutError(f"Wait for condition failed ({label}): {script}: {e}", spec.timing.value) from e


def _build_waits(
    session: AutomationSession, spec: WaitSpec, default_timeout: int
) -> list[Callable[[], Awaitable[None]]]:
    """One factory per declared wait, in declaration order."""
    waits = []
    if spec.selector is not None:
        waits.append(lambda: _wait_for_selector(session, spec, default_timeout))
    if spec.url is not None:
        waits.append(lambda: _wait_for_url(session, spec, default_timeout))
    if spec.script is not None:
        waits.append(lambda: _wait_for_script(session, spec, default_timeout))
    return waits


async def execute_waits(
    session: Optional[AutomationSession],
    spec: Optional[WaitSpec],
    token: Optional[CancellationToken] = None,
    default_timeout: Optional[int] = None,
) -> StepOutcome:
    """Run the declared waits and report a tri-state outcome.

    Failures are collected per wait. With ``fail_silently`` they are
    logged and SUPPRESSED; otherwise the first failure in declaration
    order is returned as FAILURE. StepCancelledError is raised.
    """
    if spec is None or spec.is_empty:
        return StepOutcome.success()

    if session is None:
        error = WaitTimeoutError(
            f"Wait {spec.timing_label}: no automation session available", spec.timing.value
        )
        return _finish(spec, [error])

    default_timeout = default_timeout or get_settings().DEFAULT_WAIT_TIMEOUT
    waits = _build_waits(session, spec, default_timeout)
    failures: list[BaseException] = []

    if spec.strategy == WaitStrategy.SEQUENTIAL:
        for wait in waits:
            try:
                if token is not None:
                    await token.run(wait())
                else:
                    await wait()
            except StepCancelledError:
                raise
            except Exception as e:
                failures.append(e)
                if not spec.fail_silently:
                    break
    else:
        gathered = asyncio.gather(*(wait() for wait in waits), return_exceptions=True)
        results = await token.run(gathered) if token is not None else await gathered
        for result in results:
            if isinstance(result, StepCancelledError):
                raise result
            if isinstance(result, BaseException):
                failures.append(result)

    return _finish(spec, failures)


def _finish(spec: WaitSpec, failures: list[BaseException]) -> StepOutcome:
    if not failures:
        return StepOutcome.success()

    if spec.fail_silently:
        for failure in failures:
            logger.warning("Wait failed silently", timing=spec.timing.value, error=str(failure))
        return StepOutcome.suppressed(failures[0], attempts=len(failures), detail=str(failures[0]))

    first = failures[0]
    if not isinstance(first, WaitTimeoutError):
        first = WaitTimeoutError(f"Wait {spec.timing_label} failed: {first}", spec.timing.value)
    return StepOutcome.failure(first, detail=str(first))
