"""
Pull Request Age Rules

Pure classification of open pull requests by age, draft status and review
count. Every snapshot maps to exactly one action, ``ActionKind.NONE``
included. Nothing in this module performs I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional


DEFAULT_APPROVAL_TIME = timedelta(hours=2)
DEFAULT_MERGE_REMINDER_TIME = timedelta(hours=4)
DEFAULT_MERGE_TIME = timedelta(hours=6)
DEFAULT_DRAFT_TIME = timedelta(hours=96)

# Number of non-comment reviews after which a PR counts as reviewed
REQUIRED_REVIEW_COUNT = 2


class ActionKind(Enum):
    NONE = 'none'
    APPROVAL_REMINDER = 'approval_reminder'
    MERGE_REMINDER = 'merge_reminder'
    ESCALATION = 'escalation'
    DRAFT_OVERDUE = 'draft_overdue'

    @property
    def label(self) -> str:
        return self.value.replace('_', ' ')


def categorize_pr_size(total_changes: int) -> str:
    """Bucket a PR by the number of changed lines."""
    if total_changes <= 50:
        return 'XS'
    if total_changes <= 200:
        return 'S'
    if total_changes <= 500:
        return 'M'
    if total_changes <= 1000:
        return 'L'
    return 'XL'


@dataclass(frozen=True)
class PullRequestSnapshot:
    """State of one open pull request at fetch time."""

    repo: str
    number: int
    title: str
    created_at: datetime
    author: str = 'Unknown'
    url: str = ''
    head_ref: str = ''
    base_ref: str = ''
    updated_at: Optional[datetime] = None
    draft: bool = False
    review_count: int = 0
    approved: bool = False
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0

    @property
    def identifier(self) -> str:
        return f"{self.repo}#{self.number}"

    @property
    def total_changes(self) -> int:
        return self.additions + self.deletions

    @property
    def size_category(self) -> str:
        return categorize_pr_size(self.total_changes)


@dataclass(frozen=True)
class RuleThresholds:
    approval_time: timedelta = DEFAULT_APPROVAL_TIME
    merge_reminder_time: timedelta = DEFAULT_MERGE_REMINDER_TIME
    merge_time: timedelta = DEFAULT_MERGE_TIME
    draft_time: timedelta = DEFAULT_DRAFT_TIME
    escalation_email: Optional[str] = None


@dataclass(frozen=True)
class ClassifiedAction:
    """The single notification decision for one snapshot."""

    kind: ActionKind
    pull_request: PullRequestSnapshot
    age: timedelta
    threshold: Optional[timedelta] = None

    @property
    def requires_notification(self) -> bool:
        return self.kind is not ActionKind.NONE


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_pr_age(pull_request: PullRequestSnapshot, now: Optional[datetime] = None) -> timedelta:
    """Age of a PR measured from its creation time to ``now`` (defaults to the current UTC time)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return _as_utc(now) - _as_utc(pull_request.created_at)


def classify_pull_request(
    pull_request: PullRequestSnapshot,
    thresholds: RuleThresholds,
    now: Optional[datetime] = None
) -> ClassifiedAction:
    """
    Classify a pull request into exactly one action.

    Rules are evaluated top to bottom and the first match wins:

    1. Draft PRs: DRAFT_OVERDUE once past draft_time, otherwise NONE.
       Drafts never reach the remaining rules.
    2. ESCALATION once past merge_time, whatever the review count.
    3. APPROVAL_REMINDER with fewer than two reviews once past approval_time.
    4. MERGE_REMINDER with two or more reviews once past merge_reminder_time.
    5. NONE.

    The review count includes every non-comment review, so two
    CHANGES_REQUESTED reviews qualify for a merge reminder.

    Args:
        pull_request: Snapshot to classify
        thresholds: Rule thresholds
        now: Evaluation time (defaults to the current UTC time)

    Returns:
        The classified action
    """
    age = get_pr_age(pull_request, now)

    if pull_request.draft:
        if age >= thresholds.draft_time:
            return ClassifiedAction(ActionKind.DRAFT_OVERDUE, pull_request, age, thresholds.draft_time)
        return ClassifiedAction(ActionKind.NONE, pull_request, age)

    if age >= thresholds.merge_time:
        return ClassifiedAction(ActionKind.ESCALATION, pull_request, age, thresholds.merge_time)

    if pull_request.review_count < REQUIRED_REVIEW_COUNT and age >= thresholds.approval_time:
        return ClassifiedAction(
            ActionKind.APPROVAL_REMINDER, pull_request, age, thresholds.approval_time
        )

    if pull_request.review_count >= REQUIRED_REVIEW_COUNT and age >= thresholds.merge_reminder_time:
        return ClassifiedAction(
            ActionKind.MERGE_REMINDER, pull_request, age, thresholds.merge_reminder_time
        )

    return ClassifiedAction(ActionKind.NONE, pull_request, age)


def get_pr_status(
    pull_request: PullRequestSnapshot,
    thresholds: RuleThresholds,
    age: timedelta
) -> str:
    """
    Human-readable status used by the summary view.

    Unlike classify_pull_request, a PR with two or more reviews reads as
    "Approved" before the merge-time check is applied.
    """
    if pull_request.draft:
        return 'Draft Overdue' if age >= thresholds.draft_time else 'Draft'
    if pull_request.review_count >= REQUIRED_REVIEW_COUNT:
        return 'Approved'
    if age >= thresholds.merge_time:
        return 'Needs Escalation'
    if age >= thresholds.approval_time:
        return 'Needs Approval'
    return 'OK'


def summarize_pull_requests(
    pull_requests: Iterable[PullRequestSnapshot],
    thresholds: RuleThresholds,
    now: Optional[datetime] = None
) -> dict:
    """
    Build a status summary for a set of open pull requests.

    Args:
        pull_requests: Snapshots to summarize
        thresholds: Rule thresholds
        now: Evaluation time (defaults to the current UTC time)

    Returns:
        Dictionary with aggregate counters and one row per PR under 'prs'
    """
    if now is None:
        now = datetime.now(timezone.utc)

    summary = {
        'total_prs': 0,
        'needs_approval': 0,
        'needs_escalation': 0,
        'approved': 0,
        'draft': 0,
        'prs': [],
    }
    counters = {
        'Needs Approval': 'needs_approval',
        'Needs Escalation': 'needs_escalation',
        'Approved': 'approved',
        'Draft': 'draft',
        'Draft Overdue': 'draft',
    }

    for pr in pull_requests:
        age = get_pr_age(pr, now)
        status = get_pr_status(pr, thresholds, age)
        summary['total_prs'] += 1
        if status in counters:
            summary[counters[status]] += 1
        summary['prs'].append({
            'number': pr.number,
            'title': pr.title,
            'repo': pr.repo,
            'author': pr.author,
            'age': format_duration(age),
            'age_seconds': int(age.total_seconds()),
            'approved': pr.approved,
            'review_count': pr.review_count,
            'size': pr.size_category,
            'status': status,
            'url': pr.url,
        })

    return summary


def format_duration(delta: timedelta) -> str:
    """Render a duration the way notification e-mails show it."""
    seconds = delta.total_seconds()
    if seconds < 3600:
        return f"{seconds / 60:.0f} minutes"
    if seconds < 86400:
        return f"{seconds / 3600:.1f} hours"
    total_hours = int(seconds // 3600)
    days, hours = divmod(total_hours, 24)
    if hours == 0:
        return f"{days} days"
    return f"{days} days, {hours} hours"
