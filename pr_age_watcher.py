#!/usr/bin/env python3
"""
GitHub Pull Request Age Watcher

This script checks the open pull requests of the configured GitHub
repositories and e-mails the team when a PR has waited too long:
- Approval reminders for PRs with fewer than two reviews
- Merge reminders for reviewed PRs that are still open
- Escalations for PRs past the merge time threshold
- Draft-overdue alerts for drafts left open too long

It can run once (e.g. from cron) or keep watching at a fixed interval.
"""

import argparse
import logging
import os
import re
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import requests
import yaml
from github import Github, GithubException

from pr_batch_processor import (
    DEFAULT_WORKER_COUNT,
    RunResult,
    process_pull_request,
    process_pull_requests,
)
from pr_notifier import DEFAULT_RATE_LIMIT, DEFAULT_SUBJECT, EmailNotifier, NotificationError
from pr_rules import (
    DEFAULT_APPROVAL_TIME,
    DEFAULT_DRAFT_TIME,
    DEFAULT_MERGE_REMINDER_TIME,
    DEFAULT_MERGE_TIME,
    PullRequestSnapshot,
    RuleThresholds,
    summarize_pull_requests,
)


logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = 'config.yaml'
DEFAULT_CHECK_INTERVAL = timedelta(hours=1)
DEFAULT_SMTP_PORT = 587

# Review state that does not count towards the review total
COMMENT_REVIEW_STATE = 'COMMENTED'
APPROVED_REVIEW_STATE = 'APPROVED'

# Errors raised by PyGithub calls: API errors and transport failures
GITHUB_ERRORS = (GithubException, requests.RequestException)

_DURATION_PART_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|us|s|m|h|d)')
_DURATION_RE = re.compile(r'(?:\d+(?:\.\d+)?(?:ms|us|s|m|h|d))+')
_DURATION_UNITS = {
    'us': timedelta(microseconds=1),
    'ms': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""


class FetchError(Exception):
    """Raised when pull requests cannot be retrieved from GitHub."""


def parse_duration(value) -> timedelta:
    """
    Parse a duration such as '2h', '90m', '1h30m', '500ms' or '4d'.

    Bare numbers (or numeric strings) are read as seconds.

    Args:
        value: Duration string, number of seconds or timedelta

    Returns:
        Parsed timedelta

    Raises:
        ConfigurationError: If the value cannot be parsed
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool) or value is None:
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)

    text = str(value).strip().lower()
    if re.fullmatch(r'\d+(?:\.\d+)?', text):
        return timedelta(seconds=float(text))
    if not _DURATION_RE.fullmatch(text):
        raise ConfigurationError(f"Invalid duration: {value!r}")

    total = timedelta()
    for amount, unit in _DURATION_PART_RE.findall(text):
        total += _DURATION_UNITS[unit] * float(amount)
    return total


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() == 'true'


def load_config_from_env() -> dict:
    """Build a configuration dictionary from environment variables."""
    config = {
        'github': {
            'token': os.environ.get('GITHUB_TOKEN', ''),
            'owner': os.environ.get('GITHUB_OWNER', ''),
            'repos': _split_list(os.environ.get('GITHUB_REPOS')),
        },
        'email': {
            'smtp_host': os.environ.get('SMTP_HOST', ''),
            'smtp_port': os.environ.get('SMTP_PORT', DEFAULT_SMTP_PORT),
            'smtp_username': os.environ.get('SMTP_USERNAME', ''),
            'smtp_password': os.environ.get('SMTP_PASSWORD', ''),
            'from': os.environ.get('EMAIL_FROM', ''),
            'to': _split_list(os.environ.get('EMAIL_TO')),
        },
        'rules': {},
        'debug': {
            'enabled': _env_flag('DEBUG'),
            'verbose': _env_flag('VERBOSE'),
            'skip_emails': _env_flag('SKIP_EMAILS'),
        },
    }

    env_rules = {
        'approval_time': 'APPROVAL_TIME',
        'merge_reminder_time': 'MERGE_REMINDER_TIME',
        'merge_time': 'MERGE_TIME',
        'draft_time': 'DRAFT_TIME',
        'check_interval': 'CHECK_INTERVAL',
        'escalation_email': 'ESCALATION_EMAIL',
    }
    for key, env_name in env_rules.items():
        if os.environ.get(env_name):
            config['rules'][key] = os.environ[env_name]

    if os.environ.get('CONCURRENCY'):
        config['debug']['concurrency'] = os.environ['CONCURRENCY']

    return config


def validate_config(config: dict) -> None:
    """
    Validate that all required configuration keys are present.

    SMTP settings are only required when e-mails are actually sent.

    Args:
        config: Configuration dictionary to validate

    Raises:
        ConfigurationError: If required keys are missing
    """
    if not config:
        raise ConfigurationError("Configuration is empty")
    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    github = config.get('github')
    if not github:
        raise ConfigurationError("Missing 'github' section in configuration")
    for key in ('token', 'owner'):
        if not github.get(key):
            raise ConfigurationError(f"Missing required GitHub config key: '{key}'")
    if not github.get('repos'):
        raise ConfigurationError("No repositories configured. Add names to the 'github.repos' list.")

    if (config.get('debug') or {}).get('skip_emails'):
        return

    email = config.get('email')
    if not email:
        raise ConfigurationError("Missing 'email' section in configuration")
    for key in ('smtp_host', 'from'):
        if not email.get(key):
            raise ConfigurationError(f"Missing required email config key: '{key}'")
    if not email.get('to'):
        raise ConfigurationError("No notification recipients configured in 'email.to'")


def apply_defaults(config: dict) -> dict:
    """
    Fill in defaults and normalize durations and numbers.

    Returns:
        A new configuration dictionary; the input is left untouched

    Raises:
        ConfigurationError: If a duration or number is malformed
    """
    github = dict(config.get('github') or {})
    email = dict(config.get('email') or {})
    rules = dict(config.get('rules') or {})
    debug = dict(config.get('debug') or {})

    github['repos'] = list(github.get('repos') or [])

    rule_defaults = {
        'approval_time': DEFAULT_APPROVAL_TIME,
        'merge_reminder_time': DEFAULT_MERGE_REMINDER_TIME,
        'merge_time': DEFAULT_MERGE_TIME,
        'draft_time': DEFAULT_DRAFT_TIME,
        'check_interval': DEFAULT_CHECK_INTERVAL,
    }
    for key, default in rule_defaults.items():
        value = rules.get(key)
        duration = parse_duration(value) if value else default
        rules[key] = duration if duration > timedelta() else default
    rules['escalation_email'] = rules.get('escalation_email') or None

    email['subject'] = email.get('subject') or DEFAULT_SUBJECT
    rate_limit = email.get('rate_limit')
    email['rate_limit'] = parse_duration(rate_limit) if rate_limit else DEFAULT_RATE_LIMIT
    try:
        email['smtp_port'] = int(email.get('smtp_port') or DEFAULT_SMTP_PORT)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid SMTP port: {email.get('smtp_port')!r}")
    if isinstance(email.get('to'), str):
        email['to'] = _split_list(email['to'])
    email['to'] = list(email.get('to') or [])

    debug['enabled'] = bool(debug.get('enabled', False))
    debug['verbose'] = bool(debug.get('verbose', False))
    debug['skip_emails'] = bool(debug.get('skip_emails', False))
    try:
        debug['concurrency'] = int(debug.get('concurrency') or DEFAULT_WORKER_COUNT)
    except (TypeError, ValueError):
        logger.warning(
            f"Invalid 'concurrency' value {debug.get('concurrency')!r} in config; "
            f"falling back to default {DEFAULT_WORKER_COUNT}"
        )
        debug['concurrency'] = DEFAULT_WORKER_COUNT

    return {'github': github, 'email': email, 'rules': rules, 'debug': debug}


def load_config(config_path: str, skip_emails: bool = False) -> dict:
    """
    Load, validate and normalize the configuration.

    Reads the YAML file when it exists, otherwise falls back to environment
    variables.

    Args:
        config_path: Path to the YAML configuration file
        skip_emails: Force skip mode, which relaxes SMTP validation

    Returns:
        Normalized configuration dictionary
    """
    if os.path.exists(config_path):
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    else:
        logger.info(f"Configuration file {config_path} not found, reading environment variables")
        config = load_config_from_env()

    if isinstance(config, dict) and skip_emails:
        config.setdefault('debug', {})
        config['debug'] = dict(config['debug'] or {}, skip_emails=True)

    validate_config(config)
    return apply_defaults(config)


def get_rule_thresholds(config: dict) -> RuleThresholds:
    rules = config['rules']
    return RuleThresholds(
        approval_time=rules['approval_time'],
        merge_reminder_time=rules['merge_reminder_time'],
        merge_time=rules['merge_time'],
        draft_time=rules['draft_time'],
        escalation_email=rules.get('escalation_email'),
    )


def create_github_client(config: dict) -> Github:
    """
    Create and authenticate a GitHub client.

    Raises:
        ConfigurationError: If authentication fails
    """
    token = config['github']['token']
    api_url = config['github'].get('api_url')
    try:
        if api_url:
            gh = Github(login_or_token=token, base_url=api_url)
        else:
            gh = Github(login_or_token=token)
        # Verify authentication by fetching the authenticated user
        gh.get_user().login
    except GithubException as e:
        message = e.data.get('message', str(e)) if isinstance(e.data, dict) else str(e)
        raise ConfigurationError(f"Failed to authenticate with GitHub: {message}") from e
    except requests.RequestException as e:
        raise ConfigurationError(f"Failed to connect to GitHub: {e}") from e
    return gh


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_review_status(pr) -> tuple:
    """
    Summarize the reviews of a GitHub pull request.

    Returns:
        (approved, review_count): approved is True when any review is APPROVED;
        review_count counts every review that is not a bare comment
    """
    approved = False
    review_count = 0
    for review in pr.get_reviews():
        if review.state == APPROVED_REVIEW_STATE:
            approved = True
        if review.state != COMMENT_REVIEW_STATE:
            review_count += 1
    return approved, review_count


def build_snapshot(
    repo_name: str,
    pr,
    approved: bool,
    review_count: int,
    include_size: bool = False
) -> PullRequestSnapshot:
    """
    Convert a PyGithub PullRequest into an immutable snapshot.

    Args:
        repo_name: Repository the PR belongs to
        pr: PyGithub PullRequest
        approved: Whether any review approved the PR
        review_count: Number of non-comment reviews
        include_size: Read additions, deletions and changed files. Only the
            single-PR endpoint returns them; on listed PRs PyGithub would
            issue one extra request per PR.
    """
    author = 'Unknown'
    if pr.user:
        author = pr.user.login or pr.user.name or 'Unknown'

    return PullRequestSnapshot(
        repo=repo_name,
        number=pr.number,
        title=pr.title,
        created_at=_ensure_utc(pr.created_at),
        author=author,
        url=pr.html_url or '',
        head_ref=pr.head.ref if pr.head else '',
        base_ref=pr.base.ref if pr.base else '',
        updated_at=_ensure_utc(pr.updated_at),
        draft=bool(pr.draft),
        review_count=review_count,
        approved=approved,
        additions=(pr.additions or 0) if include_size else 0,
        deletions=(pr.deletions or 0) if include_size else 0,
        changed_files=(pr.changed_files or 0) if include_size else 0,
    )


def get_repo_pull_requests(gh: Github, owner: str, repo_name: str) -> List[PullRequestSnapshot]:
    """
    Fetch all open pull requests of one repository, drafts included.

    PyGithub follows pagination. A failure to list the reviews of a single PR
    is logged and that PR is kept with zero reviews. Size metadata is not part
    of the list payload and is left at zero rather than refetching every PR.
    """
    repo = gh.get_repo(f"{owner}/{repo_name}")
    snapshots = []

    for pr in repo.get_pulls(state='open'):
        try:
            approved, review_count = get_review_status(pr)
        except GITHUB_ERRORS as e:
            logger.warning(f"Failed to check approvals for PR #{pr.number} in {repo_name}: {e}")
            approved, review_count = False, 0
        snapshots.append(build_snapshot(repo_name, pr, approved, review_count))

    return snapshots


def fetch_open_pull_requests(gh: Github, owner: str, repos: List[str]) -> List[PullRequestSnapshot]:
    """
    Fetch the open pull requests of every configured repository.

    Args:
        gh: Authenticated GitHub client
        owner: Repository owner (user or organization)
        repos: Repository names

    Returns:
        Snapshots of all open pull requests

    Raises:
        FetchError: If any repository cannot be read
    """
    pull_requests = []
    for repo_name in repos:
        try:
            pull_requests.extend(get_repo_pull_requests(gh, owner, repo_name))
        except GITHUB_ERRORS as e:
            raise FetchError(f"Failed to get PRs for repo {repo_name}: {e}") from e
    return pull_requests


def get_pull_request(gh: Github, owner: str, repo_name: str, number: int) -> PullRequestSnapshot:
    """
    Fetch a single pull request with its review status.

    Raises:
        FetchError: If the PR or its reviews cannot be read
    """
    try:
        pr = gh.get_repo(f"{owner}/{repo_name}").get_pull(number)
        approved, review_count = get_review_status(pr)
        return build_snapshot(repo_name, pr, approved, review_count, include_size=True)
    except GITHUB_ERRORS as e:
        raise FetchError(f"Failed to fetch PR #{number} in {repo_name}: {e}") from e


def log_run_result(result: RunResult) -> None:
    logger.info(
        f"Completed processing: {result.approval_reminders} approval reminders, "
        f"{result.merge_reminders} merge reminders, {result.escalations} escalations, "
        f"and {result.draft_overdue} draft overdue notifications sent"
    )
    if result.errors:
        logger.error(f"Encountered {len(result.errors)} errors during processing")
        for error in result.errors:
            logger.error(f"Error: {error}")


class PRWatcher:
    """
    Runs fetch, classify, dispatch and report cycles.

    Args:
        gh: Authenticated GitHub client
        notifier: Notification dispatcher shared by all workers
        config: Normalized configuration (see load_config)
    """

    def __init__(self, gh: Github, notifier: EmailNotifier, config: dict):
        self.gh = gh
        self.notifier = notifier
        self.config = config
        self.thresholds = get_rule_thresholds(config)
        self._cancel_event = threading.Event()

    @property
    def owner(self) -> str:
        return self.config['github']['owner']

    @property
    def repos(self) -> List[str]:
        return self.config['github']['repos']

    def cancel(self) -> None:
        """
        Stop the in-progress run from starting any further pull requests.

        Cancellation is permanent: later calls to run_once return a cancelled
        result without contacting GitHub.
        """
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def close(self) -> None:
        self.cancel()
        self.notifier.close()

    def run_once(self) -> RunResult:
        """
        Run one complete check over all configured repositories.

        Returns:
            RunResult of the batch; individual notification failures are in
            its error list

        Raises:
            FetchError: If the pull requests cannot be fetched
        """
        if self.cancelled:
            logger.warning("PR watcher has been cancelled; skipping run")
            return RunResult(cancelled=True)

        logger.info(f"Checking PRs for repositories: {', '.join(self.repos)}")
        pull_requests = fetch_open_pull_requests(self.gh, self.owner, self.repos)
        logger.info(f"Found {len(pull_requests)} open pull requests (including drafts)")

        result = process_pull_requests(
            pull_requests,
            self.thresholds,
            self.notifier,
            worker_count=self.config['debug']['concurrency'],
            cancel_event=self._cancel_event,
        )
        log_run_result(result)
        return result

    def check_pull_request(self, repo_name: str, number: int) -> RunResult:
        """Classify and notify about a single pull request."""
        logger.info(f"Checking specific PR #{number} in repository {repo_name}")
        pull_request = get_pull_request(self.gh, self.owner, repo_name, number)

        result = RunResult(total=1)
        result.record(process_pull_request(pull_request, self.thresholds, self.notifier))
        log_run_result(result)
        return result

    def get_summary(self) -> dict:
        pull_requests = fetch_open_pull_requests(self.gh, self.owner, self.repos)
        return summarize_pull_requests(pull_requests, self.thresholds)


def run_watch(watcher: PRWatcher, interval: timedelta, stop_event: threading.Event) -> None:
    """
    Check immediately, then once per interval until stop_event is set.

    A failed fetch is logged and retried on the next cycle.
    """
    logger.info(f"Starting PR watcher in watch mode (interval: {interval})")
    while not stop_event.is_set():
        try:
            watcher.run_once()
        except FetchError as e:
            logger.error(f"Error checking PRs: {e}")
        if stop_event.wait(interval.total_seconds()):
            break
    logger.info("PR watcher stopped")


def install_signal_handlers(watcher: PRWatcher, stop_event: threading.Event) -> None:
    def _handler(signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping gracefully...")
        stop_event.set()
        watcher.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def _duration_arg(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ConfigurationError as e:
        raise argparse.ArgumentTypeError(str(e))


def main(argv: Optional[List[str]] = None) -> Optional[int]:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Notify the team about GitHub pull requests that have been open too long'
    )
    parser.add_argument(
        '-c', '--config',
        default=DEFAULT_CONFIG_PATH,
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '--watch',
        action='store_true',
        help='Keep running and check at every interval'
    )
    parser.add_argument(
        '--interval',
        type=_duration_arg,
        help='Check interval in watch mode, e.g. 30m or 1h (default: rules.check_interval)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--dry-run', '--skip-emails',
        dest='dry_run',
        action='store_true',
        help='Run without sending actual emails'
    )
    parser.add_argument(
        '--repo',
        help='Check a single pull request in this repository (requires --pr)'
    )
    parser.add_argument(
        '--pr',
        type=int,
        help='Number of the pull request to check (requires --repo)'
    )
    parser.add_argument(
        '--summary',
        action='store_true',
        help='Print a status summary of all open pull requests and exit'
    )

    args = parser.parse_args(argv)

    if (args.repo is None) != (args.pr is None):
        parser.error('--repo and --pr must be used together')

    if args.verbose or args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = load_config(args.config, skip_emails=args.dry_run)
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in configuration file: {e}")
        return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if config['debug']['enabled'] or config['debug']['verbose']:
        logging.getLogger().setLevel(logging.DEBUG)

    logger.info("Starting GitHub PR Age Watcher")
    logger.debug(f"Configuration loaded from: {args.config}")
    skip_emails = config['debug']['skip_emails']
    if skip_emails:
        logger.info("Email sending is DISABLED (dry run)")

    try:
        gh = create_github_client(config)
        notifier = EmailNotifier(config['email'], skip_emails=skip_emails)
    except (ConfigurationError, NotificationError) as e:
        logger.error(f"Initialization failed: {e}")
        return 1

    watcher = PRWatcher(gh, notifier, config)
    try:
        if args.summary:
            summary = watcher.get_summary()
            sys.stdout.write(yaml.safe_dump(summary, default_flow_style=False, sort_keys=False))
            return 0

        if args.repo:
            watcher.check_pull_request(args.repo, args.pr)
            return 0

        if args.watch:
            stop_event = threading.Event()
            install_signal_handlers(watcher, stop_event)
            run_watch(watcher, args.interval or config['rules']['check_interval'], stop_event)
            return 0

        logger.info("Running PR watcher once...")
        result = watcher.run_once()
    except FetchError as e:
        logger.error(f"Error checking PRs: {e}")
        return 1
    finally:
        watcher.close()

    logger.info("=" * 50)
    logger.info("PR Age Notification Summary")
    logger.info("=" * 50)
    logger.info(f"Open pull requests processed: {result.processed}/{result.total}")
    logger.info(f"Approval reminders sent: {result.approval_reminders}")
    logger.info(f"Merge reminders sent: {result.merge_reminders}")
    logger.info(f"Escalations sent: {result.escalations}")
    logger.info(f"Draft overdue notifications sent: {result.draft_overdue}")
    logger.info(f"Notifications failed: {len(result.errors)}")

    return 0


if __name__ == '__main__':
    exit(main())
