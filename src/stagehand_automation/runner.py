from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional, Sequence

from .errors import ProviderApplyError
from .executors import Executor
from .providers.base import Provider
from .types import Action, ExecutionReport, Outcome, ReportEntry

logger = logging.getLogger(__name__)

DEFAULT_FOUNDATIONAL = frozenset({"package", "service"})


class ActionRunner:
    """Apply planned actions in order, one at a time.

    Per-resource failures never escape ``run``: they become report entries.
    A fatal failure on a foundational kind stops the run; anything else is
    contained to the failed resource and whatever depends on it.
    """

    def __init__(
        self,
        providers: dict[str, Provider],
        executor: Executor,
        *,
        foundational: Iterable[str] = DEFAULT_FOUNDATIONAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        progress_callback: Optional[Callable[[Action], None]] = None,
    ):
        self.providers = providers
        self.executor = executor
        self.foundational = frozenset(foundational)
        self.sleep = sleep
        self.clock = clock
        self.progress_callback = progress_callback

    def run(self, actions: Sequence[Action], report: Optional[ExecutionReport] = None) -> ExecutionReport:
        report = report if report is not None else ExecutionReport()
        failed: set[str] = set()
        for position, action in enumerate(actions):
            if position == 0 or not _same_batch(actions[position - 1], action):
                self._prepare(actions, position, failed)
            blocker = self._blocker(action, failed)
            if blocker is not None:
                logger.warning("%s skipped: %s did not converge", action.describe(), blocker)
                report.record(
                    ReportEntry(
                        resource_id=action.resource_id,
                        operation=action.operation,
                        outcome=Outcome.BLOCKED,
                        detail=f"skipped, {blocker} did not converge",
                    )
                )
                failed.add(action.resource_id)
                continue

            if self.progress_callback:
                self.progress_callback(action)
            entry = self._execute(action)
            report.record(entry)
            logger.debug(
                "action=%s resource=%s outcome=%s", action.operation.value, action.resource_id, entry.outcome.value
            )
            if entry.outcome is not Outcome.FAILED_FATAL:
                continue
            failed.add(action.resource_id)
            if action.resource.kind in self.foundational:
                remaining = list(actions[position + 1:])
                logger.error(
                    "%s failed on foundational resource %s; aborting %d remaining action(s)",
                    action.describe(),
                    action.resource_id,
                    len(remaining),
                )
                report.abort(remaining)
                break
        return report

    def _prepare(self, actions: Sequence[Action], start: int, failed: set[str]) -> None:
        first = actions[start]
        provider = self.providers.get(first.resource.kind)
        if provider is None or not hasattr(provider, "prepare"):
            return
        group: list[Action] = []
        for action in actions[start:]:
            if not _same_batch(first, action):
                break
            if self._blocker(action, failed) is None:
                group.append(action)
        if not group:
            return
        try:
            provider.prepare(group, self.executor)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Preparing %d %s action(s) failed: %s", len(group), first.operation.value, exc)

    @staticmethod
    def _blocker(action: Action, failed: set[str]) -> Optional[str]:
        if action.resource_id in failed:
            return action.resource_id
        for dep in action.preconditions:
            if dep in failed:
                return dep
        return None

    def _execute(self, action: Action) -> ReportEntry:
        started = self.clock()
        provider = self.providers.get(action.resource.kind)
        if provider is None:
            return ReportEntry(
                resource_id=action.resource_id,
                operation=action.operation,
                outcome=Outcome.FAILED_FATAL,
                detail=f"no provider for kind '{action.resource.kind}'",
            )

        attempt = 0
        while True:
            attempt += 1
            try:
                result = provider.apply(action, self.executor)
            except ProviderApplyError as exc:
                if action.retry.should_retry(exc, attempt):
                    logger.warning(
                        "%s failed (attempt %d/%d): %s; retrying in %gs",
                        action.describe(),
                        attempt,
                        action.retry.max_attempts,
                        exc.reason,
                        action.retry.backoff,
                    )
                    self.sleep(action.retry.backoff)
                    continue
                outcome = Outcome.FAILED_RECOVERED if exc.recoverable else Outcome.FAILED_FATAL
                log = logger.warning if exc.recoverable else logger.error
                log("%s failed: %s", action.describe(), exc.reason)
                return ReportEntry(
                    resource_id=action.resource_id,
                    operation=action.operation,
                    outcome=outcome,
                    duration=self.clock() - started,
                    detail=exc.reason,
                    remediation=exc.remediation,
                    attempts=attempt,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("%s raised unexpectedly: %s", action.describe(), exc, exc_info=True)
                return ReportEntry(
                    resource_id=action.resource_id,
                    operation=action.operation,
                    outcome=Outcome.FAILED_FATAL,
                    duration=self.clock() - started,
                    detail=str(exc) or exc.__class__.__name__,
                    attempts=attempt,
                )

            if attempt > 1:
                outcome = Outcome.RETRIED
            elif result.changed:
                outcome = Outcome.APPLIED
            else:
                outcome = Outcome.SATISFIED
            return ReportEntry(
                resource_id=action.resource_id,
                operation=action.operation,
                outcome=outcome,
                duration=self.clock() - started,
                detail=result.detail,
                remediation=result.remediation,
                attempts=attempt,
            )


def _same_batch(previous: Action, action: Action) -> bool:
    return previous.resource.kind == action.resource.kind and previous.operation is action.operation
