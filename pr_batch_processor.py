"""
Concurrent Pull Request Batch Processor

Classifies a batch of pull request snapshots and dispatches the resulting
notifications on a bounded pool of worker threads.

A feeder thread fills a bounded work queue in input order, workers drain it,
and every per-snapshot outcome travels through a second bounded queue to a
single aggregator (the calling thread), which is the only writer of the
RunResult. A failed notification is recorded and never stops the batch.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from pr_rules import ActionKind, ClassifiedAction, PullRequestSnapshot, RuleThresholds, classify_pull_request


logger = logging.getLogger(__name__)


DEFAULT_WORKER_COUNT = 5

# Seconds a blocked feeder or idle worker waits before re-checking for cancellation
QUEUE_POLL_INTERVAL = 0.05

_WORKER_FINISHED = object()

ProgressCallback = Callable[[int, int, PullRequestSnapshot], None]


@dataclass(frozen=True)
class DispatchFailure:
    identifier: str
    kind: ActionKind
    error: str

    def __str__(self) -> str:
        return f"{self.kind.label} for PR {self.identifier}: {self.error}"


@dataclass(frozen=True)
class ProcessedItem:
    """Outcome of classifying and dispatching one snapshot."""

    action: ClassifiedAction
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _empty_counts() -> Dict[ActionKind, int]:
    return {kind: 0 for kind in ActionKind}


@dataclass
class RunResult:
    """
    Aggregate outcome of one run.

    ``counts`` holds successful dispatches per action kind; the NONE entry
    counts snapshots that needed no notification. Failed dispatches only
    appear in ``errors``.
    """

    total: int = 0
    processed: int = 0
    counts: Dict[ActionKind, int] = field(default_factory=_empty_counts)
    errors: List[DispatchFailure] = field(default_factory=list)
    cancelled: bool = False

    def record(self, item: ProcessedItem) -> None:
        self.processed += 1
        kind = item.action.kind
        if item.succeeded:
            self.counts[kind] += 1
        else:
            self.errors.append(
                DispatchFailure(item.action.pull_request.identifier, kind, item.error)
            )

    @property
    def approval_reminders(self) -> int:
        return self.counts[ActionKind.APPROVAL_REMINDER]

    @property
    def merge_reminders(self) -> int:
        return self.counts[ActionKind.MERGE_REMINDER]

    @property
    def escalations(self) -> int:
        return self.counts[ActionKind.ESCALATION]

    @property
    def draft_overdue(self) -> int:
        return self.counts[ActionKind.DRAFT_OVERDUE]

    @property
    def notifications_sent(self) -> int:
        return sum(count for kind, count in self.counts.items() if kind is not ActionKind.NONE)


def get_validated_worker_count(worker_count) -> int:
    """Return worker_count, or the default when it is not a positive integer."""
    try:
        worker_count = int(worker_count)
    except (TypeError, ValueError):
        return DEFAULT_WORKER_COUNT
    if worker_count <= 0:
        return DEFAULT_WORKER_COUNT
    return worker_count


def dispatch_action(dispatcher, action: ClassifiedAction, thresholds: RuleThresholds) -> None:
    """
    Route a classified action to the matching dispatcher operation.

    Args:
        dispatcher: Object exposing send_approval_reminder, send_merge_reminder,
            send_escalation and send_draft_overdue
        action: Action to deliver (must not be ActionKind.NONE)
        thresholds: Rule thresholds, for the escalation recipient override

    Raises:
        ValueError: If the action requires no notification
    """
    pr = action.pull_request
    if action.kind is ActionKind.APPROVAL_REMINDER:
        dispatcher.send_approval_reminder(pr, action.age, action.threshold)
    elif action.kind is ActionKind.MERGE_REMINDER:
        dispatcher.send_merge_reminder(pr, action.age, action.threshold)
    elif action.kind is ActionKind.ESCALATION:
        dispatcher.send_escalation(pr, action.age, action.threshold, thresholds.escalation_email)
    elif action.kind is ActionKind.DRAFT_OVERDUE:
        dispatcher.send_draft_overdue(pr, action.age, action.threshold)
    else:
        raise ValueError(f"No notification for action kind {action.kind.name}")


def process_pull_request(
    pull_request: PullRequestSnapshot,
    thresholds: RuleThresholds,
    dispatcher,
    now: Optional[datetime] = None
) -> ProcessedItem:
    """Classify one snapshot and dispatch its notification, if any."""
    action = classify_pull_request(pull_request, thresholds, now)
    if not action.requires_notification:
        return ProcessedItem(action)

    logger.debug(
        f"PR {pull_request.identifier} needs {action.kind.label} "
        f"(age: {action.age}, threshold: {action.threshold}, reviews: {pull_request.review_count})"
    )
    try:
        dispatch_action(dispatcher, action, thresholds)
    except Exception as e:
        logger.error(f"Failed to send {action.kind.label} for PR {pull_request.identifier}: {e}")
        return ProcessedItem(action, str(e) or e.__class__.__name__)

    logger.info(f"Sent {action.kind.label} for PR {pull_request.identifier}")
    return ProcessedItem(action)


def _feed(
    pull_requests: Sequence[PullRequestSnapshot],
    work_queue: queue.Queue,
    feeding_done: threading.Event,
    should_stop: Callable[[], bool],
    progress_callback: Optional[ProgressCallback]
) -> None:
    total = len(pull_requests)
    try:
        for index, pr in enumerate(pull_requests, start=1):
            if should_stop():
                return
            logger.debug(f"Processing PR {index}/{total}: #{pr.number}")
            if progress_callback:
                try:
                    progress_callback(index, total, pr)
                except Exception as e:
                    logger.warning(f"Progress callback failed for PR {pr.identifier}: {e}")
            while True:
                if should_stop():
                    return
                try:
                    work_queue.put(pr, timeout=QUEUE_POLL_INTERVAL)
                    break
                except queue.Full:
                    continue
    finally:
        feeding_done.set()


def _work(
    work_queue: queue.Queue,
    result_queue: queue.Queue,
    feeding_done: threading.Event,
    cancel_event: threading.Event,
    thresholds: RuleThresholds,
    dispatcher,
    now: Optional[datetime]
) -> None:
    try:
        while not cancel_event.is_set():
            try:
                pull_request = work_queue.get(timeout=QUEUE_POLL_INTERVAL)
            except queue.Empty:
                # Once feeding is done nothing new can arrive
                if feeding_done.is_set() and work_queue.empty():
                    break
                continue
            if cancel_event.is_set():
                break
            result_queue.put(process_pull_request(pull_request, thresholds, dispatcher, now))
    finally:
        result_queue.put(_WORKER_FINISHED)


def process_pull_requests(
    pull_requests: Sequence[PullRequestSnapshot],
    thresholds: RuleThresholds,
    dispatcher,
    worker_count: int = DEFAULT_WORKER_COUNT,
    cancel_event: Optional[threading.Event] = None,
    progress_callback: Optional[ProgressCallback] = None,
    now: Optional[datetime] = None
) -> RunResult:
    """
    Classify and dispatch notifications for a batch of pull requests.

    Args:
        pull_requests: Snapshots to process
        thresholds: Rule thresholds, shared read-only by all workers
        dispatcher: Notification dispatcher (see dispatch_action)
        worker_count: Number of worker threads (values <= 0 use the default of 5)
        cancel_event: When set, no new snapshot is started; in-flight
            dispatches finish and are reported
        progress_callback: Optional callable receiving (index, total, pull_request)
            as snapshots are queued
        now: Fixed evaluation time; by default each snapshot is aged at the
            moment it is classified

    Returns:
        RunResult with per-kind counts and dispatch failures
    """
    pull_requests = list(pull_requests)
    worker_count = get_validated_worker_count(worker_count)
    if cancel_event is None:
        cancel_event = threading.Event()

    result = RunResult(total=len(pull_requests))
    if not pull_requests:
        return result

    worker_count = min(worker_count, len(pull_requests))
    work_queue = queue.Queue(maxsize=worker_count * 2)
    result_queue = queue.Queue(maxsize=worker_count * 2)
    feeding_done = threading.Event()
    halted = threading.Event()

    def should_stop() -> bool:
        return cancel_event.is_set() or halted.is_set()

    with ThreadPoolExecutor(max_workers=worker_count + 1, thread_name_prefix='pr-worker') as executor:
        feeder = executor.submit(
            _feed, pull_requests, work_queue, feeding_done, should_stop, progress_callback
        )
        workers = [
            executor.submit(
                _work, work_queue, result_queue, feeding_done, cancel_event,
                thresholds, dispatcher, now
            )
            for _ in range(worker_count)
        ]

        finished = 0
        while finished < worker_count:
            message = result_queue.get()
            if message is _WORKER_FINISHED:
                finished += 1
                continue
            result.record(message)

        # All workers are gone; release a feeder still blocked on a full queue
        halted.set()

    for future in [feeder] + workers:
        error = future.exception()
        if error is not None:
            logger.error(f"Batch worker terminated unexpectedly: {error}")

    if result.processed < result.total:
        if cancel_event.is_set():
            result.cancelled = True
            logger.warning(
                f"Run cancelled after processing {result.processed}/{result.total} pull requests"
            )
        else:
            logger.error(
                f"Run incomplete: only {result.processed}/{result.total} pull requests were processed"
            )
    return result
