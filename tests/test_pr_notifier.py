"""Tests for the PR age e-mail notifier."""

import smtplib
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from pr_notifier import EmailNotifier, NotificationError
from pr_rules import ActionKind, PullRequestSnapshot


def make_pr(**kwargs):
    defaults = dict(
        repo='api',
        number=12,
        title='Add caching layer',
        created_at=datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
        author='octocat',
        url='https://github.com/acme/api/pull/12',
        head_ref='feature/cache',
        base_ref='main',
        additions=120,
        deletions=30,
        changed_files=4,
        review_count=1,
    )
    defaults.update(kwargs)
    return PullRequestSnapshot(**defaults)


def make_email_config(**overrides):
    config = {
        'smtp_host': 'smtp.example.com',
        'smtp_port': 587,
        'smtp_username': 'user',
        'smtp_password': 'pass',
        'from': 'watcher@example.com',
        'to': ['team@example.com'],
        'subject': 'PR Age Alert',
        'rate_limit': 0,
    }
    config.update(overrides)
    return config


class TestEmailNotifierInit(unittest.TestCase):
    """Tests for EmailNotifier construction."""

    def test_missing_smtp_host_raises(self):
        with self.assertRaises(NotificationError):
            EmailNotifier(make_email_config(smtp_host=''))

    def test_missing_smtp_port_raises(self):
        config = make_email_config()
        del config['smtp_port']
        with self.assertRaises(NotificationError):
            EmailNotifier(config)

    def test_skip_mode_does_not_need_smtp(self):
        notifier = EmailNotifier({}, skip_emails=True)
        self.assertTrue(notifier.skip_emails)
        self.assertEqual(notifier.recipients, [])

    def test_rate_limit_accepts_timedelta(self):
        notifier = EmailNotifier(make_email_config(rate_limit=timedelta(milliseconds=250)))
        self.assertEqual(notifier.rate_limit, 0.25)

    def test_defaults(self):
        config = make_email_config()
        del config['rate_limit']
        del config['subject']
        notifier = EmailNotifier(config)
        self.assertEqual(notifier.rate_limit, 0.5)
        self.assertEqual(notifier.subject, 'PR Age Alert')
        self.assertEqual(notifier.max_retries, 3)


class TestGetSubject(unittest.TestCase):
    """Tests for EmailNotifier.get_subject."""

    def setUp(self):
        self.notifier = EmailNotifier(make_email_config(subject='Review Bot'))
        self.pr = make_pr()

    def test_approval_subject(self):
        self.assertEqual(
            self.notifier.get_subject(ActionKind.APPROVAL_REMINDER, self.pr),
            'Review Bot - PR #12 needs approval (api)'
        )

    def test_merge_subject(self):
        self.assertEqual(
            self.notifier.get_subject(ActionKind.MERGE_REMINDER, self.pr),
            'MERGE REMINDER: Review Bot - PR #12 ready to merge (api)'
        )

    def test_escalation_subject(self):
        self.assertEqual(
            self.notifier.get_subject(ActionKind.ESCALATION, self.pr),
            'ESCALATION: Review Bot - PR #12 exceeds merge time (api)'
        )

    def test_draft_subject(self):
        self.assertEqual(
            self.notifier.get_subject(ActionKind.DRAFT_OVERDUE, self.pr),
            'DRAFT OVERDUE: Review Bot - Draft PR #12 needs attention (api)'
        )


class TestGenerateEmailContent(unittest.TestCase):
    """Tests for EmailNotifier.generate_email_content."""

    def setUp(self):
        self.notifier = EmailNotifier(make_email_config())

    def test_contains_pr_details(self):
        html = self.notifier.generate_email_content(
            ActionKind.APPROVAL_REMINDER, make_pr(), timedelta(hours=3), timedelta(hours=2)
        )

        self.assertIn('PR Needs Approval', html)
        self.assertIn('Add caching layer', html)
        self.assertIn('octocat', html)
        self.assertIn('feature/cache', html)
        self.assertIn('https://github.com/acme/api/pull/12', html)
        self.assertIn('3.0 hours', html)
        self.assertIn('2.0 hours', html)
        self.assertIn('S (+120 / -30, 4 files)', html)

    def test_escalation_mentions_threshold(self):
        html = self.notifier.generate_email_content(
            ActionKind.ESCALATION, make_pr(), timedelta(hours=8), timedelta(hours=6)
        )
        self.assertIn('PR Escalation Required', html)
        self.assertIn('exceeded the merge time threshold of 6.0 hours', html)

    def test_draft_overdue_content(self):
        html = self.notifier.generate_email_content(
            ActionKind.DRAFT_OVERDUE, make_pr(draft=True), timedelta(days=5), timedelta(days=4)
        )
        self.assertIn('Draft PR Overdue', html)
        self.assertIn('5 days', html)

    def test_title_is_escaped(self):
        html = self.notifier.generate_email_content(
            ActionKind.MERGE_REMINDER,
            make_pr(title='<script>alert(1)</script>'),
            timedelta(hours=5),
            timedelta(hours=4),
        )
        self.assertNotIn('<script>', html)
        self.assertIn('&lt;script&gt;', html)


class TestSendNotification(unittest.TestCase):
    """Tests for delivering notifications."""

    def test_skip_mode_does_not_send(self):
        """Dry runs log instead of opening an SMTP connection."""
        notifier = EmailNotifier(make_email_config(), skip_emails=True)

        with patch('smtplib.SMTP') as mock_smtp_class:
            notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))

        mock_smtp_class.assert_not_called()

    @patch('smtplib.SMTP')
    def test_sends_email_successfully(self, mock_smtp_class):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value.__enter__.return_value = mock_smtp
        notifier = EmailNotifier(make_email_config())

        notifier.send_merge_reminder(make_pr(), timedelta(hours=5), timedelta(hours=4))

        mock_smtp_class.assert_called_once_with('smtp.example.com', 587)
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with('user', 'pass')
        mock_smtp.send_message.assert_called_once()
        msg = mock_smtp.send_message.call_args[0][0]
        self.assertEqual(msg['Subject'], 'MERGE REMINDER: PR Age Alert - PR #12 ready to merge (api)')
        self.assertEqual(msg['From'], 'watcher@example.com')
        self.assertEqual(mock_smtp.send_message.call_args[1]['to_addrs'], ['team@example.com'])

    @patch('smtplib.SMTP')
    def test_plain_port_skips_tls_and_login_without_credentials(self, mock_smtp_class):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value.__enter__.return_value = mock_smtp
        notifier = EmailNotifier(
            make_email_config(smtp_port=25, smtp_username='', smtp_password='')
        )

        notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))

        mock_smtp.starttls.assert_not_called()
        mock_smtp.login.assert_not_called()
        mock_smtp.send_message.assert_called_once()

    @patch('smtplib.SMTP')
    def test_escalation_adds_extra_recipient(self, mock_smtp_class):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value.__enter__.return_value = mock_smtp
        notifier = EmailNotifier(make_email_config())

        notifier.send_escalation(
            make_pr(), timedelta(hours=7), timedelta(hours=6), 'lead@example.com'
        )

        self.assertEqual(
            mock_smtp.send_message.call_args[1]['to_addrs'],
            ['team@example.com', 'lead@example.com']
        )
        self.assertEqual(notifier.recipients, ['team@example.com'])

    @patch('smtplib.SMTP')
    def test_escalation_does_not_duplicate_recipient(self, mock_smtp_class):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value.__enter__.return_value = mock_smtp
        notifier = EmailNotifier(make_email_config())

        notifier.send_escalation(
            make_pr(), timedelta(hours=7), timedelta(hours=6), 'team@example.com'
        )

        self.assertEqual(mock_smtp.send_message.call_args[1]['to_addrs'], ['team@example.com'])

    @patch('pr_notifier.time.sleep')
    @patch('smtplib.SMTP')
    def test_retries_then_raises(self, mock_smtp_class, mock_sleep):
        """Three failed attempts back off 2s then 4s and raise."""
        mock_smtp_class.side_effect = smtplib.SMTPException('connection lost')
        notifier = EmailNotifier(make_email_config())

        with self.assertRaises(NotificationError) as ctx:
            notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))

        self.assertIn('3 attempts', str(ctx.exception))
        self.assertEqual(mock_smtp_class.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [2.0, 4.0])

    @patch('pr_notifier.time.sleep')
    @patch('smtplib.SMTP')
    def test_retry_recovers(self, mock_smtp_class, mock_sleep):
        connection = MagicMock()
        mock_smtp_class.side_effect = [ConnectionRefusedError('refused'), connection]
        notifier = EmailNotifier(make_email_config())

        notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))

        self.assertEqual(mock_smtp_class.call_count, 2)
        connection.__enter__.return_value.send_message.assert_called_once()
        mock_sleep.assert_called_once_with(2.0)

    def test_no_recipients_raises(self):
        notifier = EmailNotifier(make_email_config(to=[]))
        with patch('smtplib.SMTP') as mock_smtp_class:
            with self.assertRaises(NotificationError):
                notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))
        mock_smtp_class.assert_not_called()

    def test_closed_notifier_rejects_sends(self):
        notifier = EmailNotifier(make_email_config(), skip_emails=True)
        notifier.close()

        self.assertTrue(notifier.closed)
        with self.assertRaises(NotificationError):
            notifier.send_draft_overdue(make_pr(draft=True), timedelta(days=5), timedelta(days=4))


class TestRateLimit(unittest.TestCase):
    """Tests for the shared rate-limit gate."""

    @patch('pr_notifier.time.sleep')
    @patch('smtplib.SMTP')
    def test_consecutive_sends_are_spaced(self, mock_smtp_class, mock_sleep):
        notifier = EmailNotifier(make_email_config(rate_limit=0.5))

        notifier.send_approval_reminder(make_pr(), timedelta(hours=3), timedelta(hours=2))
        mock_sleep.assert_not_called()

        notifier.send_approval_reminder(make_pr(number=13), timedelta(hours=3), timedelta(hours=2))
        mock_sleep.assert_called_once()
        wait = mock_sleep.call_args[0][0]
        self.assertGreater(wait, 0)
        self.assertLessEqual(wait, 0.5)

    @patch('smtplib.SMTP')
    def test_concurrent_senders_all_deliver(self, mock_smtp_class):
        mock_smtp = MagicMock()
        mock_smtp_class.return_value.__enter__.return_value = mock_smtp
        notifier = EmailNotifier(make_email_config(rate_limit=0.01))

        threads = [
            threading.Thread(
                target=notifier.send_approval_reminder,
                args=(make_pr(number=n), timedelta(hours=3), timedelta(hours=2)),
            )
            for n in range(5)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(mock_smtp.send_message.call_count, 5)


if __name__ == '__main__':
    unittest.main()
