#!/usr/bin/env python3
"""
Flask-based status API for the PR age watcher.

This module provides a small read-only web interface for:
- Monitoring service health
- Inspecting the active configuration (secrets redacted)
- Viewing a live age/status summary of open pull requests
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from functools import wraps

import yaml
from flask import Flask, current_app, jsonify, request

# Import from the main module for shared functionality
import pr_age_watcher
from pr_rules import format_duration

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Application version
VERSION = '1.0.0'


def create_app(config_path=None, test_config=None, summary_provider=None):
    """
    Create and configure the Flask application.

    Args:
        config_path: Path to the YAML configuration file
        test_config: Optional test configuration dictionary
        summary_provider: Optional callable taking the watcher config and
            returning a PR summary; defaults to querying GitHub

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    app.config['WEBUI_USERNAME'] = os.environ.get('WEBUI_USERNAME', 'admin')
    app.config['WEBUI_PASSWORD'] = os.environ.get('WEBUI_PASSWORD', 'admin')
    app.config['SUMMARY_PROVIDER'] = summary_provider or fetch_summary

    if test_config:
        app.config.update(test_config)
    else:
        config_path = config_path or os.environ.get('CONFIG_PATH', pr_age_watcher.DEFAULT_CONFIG_PATH)
        app.config['CONFIG_PATH'] = config_path
        try:
            app.config['WATCHER_CONFIG'] = pr_age_watcher.load_config(config_path)
        except (OSError, yaml.YAMLError, pr_age_watcher.ConfigurationError) as e:
            logger.error(f"Error loading configuration: {e}")
            app.config['WATCHER_CONFIG'] = {}

    register_routes(app)

    return app


def fetch_summary(config: dict) -> dict:
    """Query GitHub for the open pull requests and summarize them."""
    gh = pr_age_watcher.create_github_client(config)
    pull_requests = pr_age_watcher.fetch_open_pull_requests(
        gh, config['github']['owner'], config['github']['repos']
    )
    return pr_age_watcher.summarize_pull_requests(
        pull_requests, pr_age_watcher.get_rule_thresholds(config)
    )


def sanitize_config(config: dict) -> dict:
    """Return a JSON-friendly copy of the config without secrets."""
    github = config.get('github', {})
    email = config.get('email', {})
    rules = config.get('rules', {})

    def _duration(value):
        return format_duration(value) if isinstance(value, timedelta) else value

    rate_limit = email.get('rate_limit')
    return {
        'github': {
            'owner': github.get('owner', ''),
            'repos': github.get('repos', []),
            'api_url': github.get('api_url', ''),
            'has_token': bool(github.get('token')),
        },
        'email': {
            'smtp_host': email.get('smtp_host', ''),
            'smtp_port': email.get('smtp_port', pr_age_watcher.DEFAULT_SMTP_PORT),
            'from': email.get('from', ''),
            'to': email.get('to', []),
            'subject': email.get('subject', ''),
            'rate_limit_seconds': (
                rate_limit.total_seconds() if isinstance(rate_limit, timedelta) else rate_limit
            ),
            'has_password': bool(email.get('smtp_password')),
        },
        'rules': {
            key: _duration(rules.get(key))
            for key in (
                'approval_time', 'merge_reminder_time', 'merge_time',
                'draft_time', 'check_interval', 'escalation_email'
            )
        },
        'debug': config.get('debug', {}),
    }


def requires_auth(f):
    """Decorator to require HTTP basic authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth = request.authorization
        if (not auth
                or auth.username != current_app.config['WEBUI_USERNAME']
                or auth.password != current_app.config['WEBUI_PASSWORD']):
            return jsonify({
                'error': 'Authentication required',
                'message': 'Please provide valid credentials'
            }), 401, {'WWW-Authenticate': 'Basic realm="pr-age-watcher"'}
        return f(*args, **kwargs)
    return decorated


def register_routes(app):
    """Register all routes for the application."""

    @app.route('/api/health')
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'version': VERSION
        })

    @app.route('/api/config')
    @requires_auth
    def get_config():
        """Get the current configuration (sanitized)."""
        config = app.config.get('WATCHER_CONFIG') or {}
        if not config:
            return jsonify({'error': 'Configuration not loaded'}), 503
        return jsonify(sanitize_config(config))

    @app.route('/api/summary')
    @requires_auth
    def get_summary():
        """Get a live status summary of all open pull requests."""
        config = app.config.get('WATCHER_CONFIG') or {}
        if not config:
            return jsonify({'error': 'Configuration not loaded'}), 503
        try:
            summary = app.config['SUMMARY_PROVIDER'](config)
        except (pr_age_watcher.FetchError, pr_age_watcher.ConfigurationError) as e:
            logger.error(f"Failed to build PR summary: {e}")
            return jsonify({'error': str(e)}), 502
        summary['generated_at'] = datetime.now(timezone.utc).isoformat()
        return jsonify(summary)


def main():
    """Run the WebUI server."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the PR age watcher status API')
    parser.add_argument(
        '-c', '--config',
        default=pr_age_watcher.DEFAULT_CONFIG_PATH,
        help='Path to configuration file (default: config.yaml)'
    )
    parser.add_argument(
        '-p', '--port',
        type=int,
        default=int(os.environ.get('WEBUI_PORT', 5000)),
        help='Port to run the server on (default: 5000)'
    )
    parser.add_argument(
        '-H', '--host',
        default=os.environ.get('WEBUI_HOST', '127.0.0.1'),
        help=(
            'Host to bind the server to (default: 127.0.0.1). '
            'Use 0.0.0.0 only in containerized deployments.'
        )
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Run in debug mode'
    )

    args = parser.parse_args()

    app = create_app(config_path=args.config)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == '__main__':
    main()
