"""
Pull Request Age E-mail Notifier

Sends approval reminders, merge reminders, escalations and draft-overdue
alerts as HTML e-mails. All workers share one notifier: actual SMTP sends
are spaced by a rate-limit gate guarded by a lock.
"""

import logging
import smtplib
import threading
import time
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from jinja2 import Template

from pr_rules import ActionKind, PullRequestSnapshot, format_duration


logger = logging.getLogger(__name__)


EMAIL_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{{ title }}</title>
    <style>
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background-color: {{ header_color }}; color: white; padding: 15px; border-radius: 5px; }
        .pr-info { background-color: #f8f9fa; padding: 15px; border-radius: 5px; margin: 15px 0; }
        .pr-title { font-size: 18px; font-weight: bold; margin-bottom: 10px; }
        .age-info { background-color: {{ age_color }}; padding: 10px; border-radius: 3px; margin: 10px 0; }
        .action-required { background-color: #fff3cd; border: 1px solid #ffeaa7; padding: 15px; border-radius: 5px; }
        .footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #eee; font-size: 12px; color: #666; }
        .button { display: inline-block; background-color: #007bff; color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h2>{{ title }}</h2>
        </div>

        <div class="pr-info">
            <div class="pr-title">{{ pr.title }}</div>
            <strong>Repository:</strong> {{ pr.repo }}<br>
            <strong>Author:</strong> {{ pr.author }}<br>
            <strong>Branch:</strong> <code>{{ pr.head_ref }}</code> &rarr; <code>{{ pr.base_ref }}</code><br>
            <strong>Created:</strong> {{ created_at }}<br>
            {% if updated_at %}<strong>Last Updated:</strong> {{ updated_at }}<br>{% endif %}
            <strong>Size:</strong> {{ pr.size_category }} (+{{ pr.additions }} / -{{ pr.deletions }}, {{ pr.changed_files }} files)<br>
            <strong>Reviews:</strong> {{ pr.review_count }} ({% if pr.approved %}Approved{% else %}Pending{% endif %})
        </div>

        <div class="age-info">
            <strong>Age:</strong> {{ age_text }}<br>
            <strong>Threshold:</strong> {{ threshold_text }}
        </div>

        <div class="action-required">
            <h3>Action Required:</h3>
            <p>{{ action_text }}</p>
        </div>

        <div style="text-align: center;">
            <a href="{{ pr.url }}" class="button">View Pull Request</a>
        </div>

        <div class="footer">
            <p>This is an automated message from the PR Age Watcher.</p>
            <p>Generated at: {{ generated_at }}</p>
        </div>
    </div>
</body>
</html>
"""

DEFAULT_SUBJECT = 'PR Age Alert'
DEFAULT_RATE_LIMIT = timedelta(milliseconds=500)
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 2.0

# Per-kind presentation: title, header colour, age box colour
NOTIFICATION_STYLES = {
    ActionKind.APPROVAL_REMINDER: ('PR Needs Approval', '#ffc107', '#fff3cd'),
    ActionKind.MERGE_REMINDER: ('PR Ready to Merge', '#28a745', '#d4edda'),
    ActionKind.ESCALATION: ('PR Escalation Required', '#dc3545', '#f8d7da'),
    ActionKind.DRAFT_OVERDUE: ('Draft PR Overdue', '#6c757d', '#e9ecef'),
}


class NotificationError(Exception):
    """Raised when a notification could not be delivered."""


class EmailNotifier:
    """
    Delivers PR age notifications over SMTP.

    Args:
        email_config: The 'email' configuration section
        skip_emails: If True, log notifications instead of sending them
    """

    def __init__(self, email_config: dict, skip_emails: bool = False):
        if not skip_emails and (not email_config.get('smtp_host') or not email_config.get('smtp_port')):
            raise NotificationError("SMTP configuration is required")

        self.config = email_config
        self.skip_emails = skip_emails
        self.recipients: List[str] = list(email_config.get('to') or [])
        self.subject = email_config.get('subject') or DEFAULT_SUBJECT

        rate_limit = email_config.get('rate_limit', DEFAULT_RATE_LIMIT)
        if not isinstance(rate_limit, timedelta):
            rate_limit = timedelta(seconds=float(rate_limit))
        self.rate_limit = rate_limit.total_seconds()
        self.max_retries = max(1, int(email_config.get('max_retries', DEFAULT_MAX_RETRIES)))
        self.retry_base_delay = float(email_config.get('retry_base_delay', DEFAULT_RETRY_BASE_DELAY))

        self.template = Template(EMAIL_TEMPLATE, autoescape=True)
        self._lock = threading.Lock()
        self._closed = False
        self._last_sent = time.monotonic() - self.rate_limit

    def send_approval_reminder(
        self, pr: PullRequestSnapshot, age: timedelta, threshold: timedelta
    ) -> None:
        self._send_notification(ActionKind.APPROVAL_REMINDER, pr, age, threshold, self.recipients)

    def send_merge_reminder(
        self, pr: PullRequestSnapshot, age: timedelta, threshold: timedelta
    ) -> None:
        self._send_notification(ActionKind.MERGE_REMINDER, pr, age, threshold, self.recipients)

    def send_escalation(
        self,
        pr: PullRequestSnapshot,
        age: timedelta,
        threshold: timedelta,
        escalation_email: Optional[str] = None
    ) -> None:
        recipients = list(self.recipients)
        if escalation_email and escalation_email not in recipients:
            recipients.append(escalation_email)
        self._send_notification(ActionKind.ESCALATION, pr, age, threshold, recipients)

    def send_draft_overdue(
        self, pr: PullRequestSnapshot, age: timedelta, threshold: timedelta
    ) -> None:
        self._send_notification(ActionKind.DRAFT_OVERDUE, pr, age, threshold, self.recipients)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def get_subject(self, kind: ActionKind, pr: PullRequestSnapshot) -> str:
        if kind is ActionKind.APPROVAL_REMINDER:
            return f"{self.subject} - PR #{pr.number} needs approval ({pr.repo})"
        if kind is ActionKind.MERGE_REMINDER:
            return f"MERGE REMINDER: {self.subject} - PR #{pr.number} ready to merge ({pr.repo})"
        if kind is ActionKind.ESCALATION:
            return f"ESCALATION: {self.subject} - PR #{pr.number} exceeds merge time ({pr.repo})"
        if kind is ActionKind.DRAFT_OVERDUE:
            return (
                f"DRAFT OVERDUE: {self.subject} - Draft PR #{pr.number} "
                f"needs attention ({pr.repo})"
            )
        return self.subject

    def generate_email_content(
        self,
        kind: ActionKind,
        pr: PullRequestSnapshot,
        age: timedelta,
        threshold: timedelta
    ) -> str:
        """
        Render the HTML body for one notification.

        Args:
            kind: Notification kind (must not be ActionKind.NONE)
            pr: Pull request the notification is about
            age: Age of the PR at evaluation time
            threshold: Threshold that triggered the notification

        Returns:
            Rendered HTML content
        """
        title, header_color, age_color = NOTIFICATION_STYLES[kind]
        age_text = format_duration(age)
        threshold_text = format_duration(threshold)

        if kind is ActionKind.APPROVAL_REMINDER:
            action_text = (
                f"This pull request has been open for {age_text} without approval. "
                f"Please review and approve if ready."
            )
        elif kind is ActionKind.MERGE_REMINDER:
            action_text = (
                f"This pull request has been approved and ready for {age_text}. "
                f"Please merge it to complete the review process."
            )
        elif kind is ActionKind.ESCALATION:
            action_text = (
                f"This pull request has exceeded the merge time threshold of {threshold_text}. "
                f"Immediate action is required to review and merge or close this PR."
            )
        else:
            action_text = (
                f"This draft pull request has been open for {age_text} and exceeds the draft "
                f"time threshold of {threshold_text}. Please either mark as ready for review "
                f"or close if no longer needed."
            )

        return self.template.render(
            title=title,
            header_color=header_color,
            age_color=age_color,
            pr=pr,
            created_at=pr.created_at.strftime('%Y-%m-%d %H:%M:%S'),
            updated_at=pr.updated_at.strftime('%Y-%m-%d %H:%M:%S') if pr.updated_at else '',
            age_text=age_text,
            threshold_text=threshold_text,
            action_text=action_text,
            generated_at=datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
        )

    def _wait_for_rate_limit(self) -> None:
        # Held across the sleep so that concurrent senders queue behind the gate
        with self._lock:
            elapsed = time.monotonic() - self._last_sent
            if elapsed < self.rate_limit:
                wait_time = self.rate_limit - elapsed
                logger.debug(f"Rate limiting: waiting {wait_time:.2f}s before sending next email")
                time.sleep(wait_time)
            self._last_sent = time.monotonic()

    def _send_notification(
        self,
        kind: ActionKind,
        pr: PullRequestSnapshot,
        age: timedelta,
        threshold: timedelta,
        recipients: List[str]
    ) -> None:
        if self.closed:
            raise NotificationError("Email notifier is closed")

        if self.skip_emails:
            logger.info(
                f"[DRY RUN] Would send {kind.label} email for PR #{pr.number} "
                f"({pr.repo}) to: {', '.join(recipients)}"
            )
            return

        if not recipients:
            raise NotificationError(f"No recipients configured for {kind.label} on PR #{pr.number}")

        msg = MIMEMultipart('alternative')
        msg['Subject'] = self.get_subject(kind, pr)
        msg['From'] = self.config['from']
        msg['To'] = ', '.join(recipients)
        msg.attach(MIMEText(self.generate_email_content(kind, pr, age, threshold), 'html'))

        self._wait_for_rate_limit()
        self._deliver(msg, recipients)

    def _deliver(self, msg: MIMEMultipart, recipients: List[str]) -> None:
        host = self.config['smtp_host']
        port = int(self.config['smtp_port'])
        use_tls = self.config.get('use_tls', port == 587)
        username = self.config.get('smtp_username')
        password = self.config.get('smtp_password')

        for attempt in range(1, self.max_retries + 1):
            logger.debug(
                f"Attempting SMTP connection to {host}:{port} (attempt {attempt}/{self.max_retries})"
            )
            try:
                with smtplib.SMTP(host, port) as server:
                    if use_tls:
                        server.starttls()
                    if username and password:
                        server.login(username, password)
                    server.send_message(msg, to_addrs=recipients)
                logger.info(f"Email sent successfully to {', '.join(recipients)}")
                return
            except (smtplib.SMTPException, OSError) as e:
                if attempt == self.max_retries:
                    raise NotificationError(
                        f"Failed to send email after {self.max_retries} attempts: {e}"
                    ) from e
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Email send attempt {attempt} failed ({e}), retrying in {delay:.0f}s..."
                )
                time.sleep(delay)
