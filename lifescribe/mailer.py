"""
Outbound e-mail through the Resend HTTP API.
"""

import logging

import requests
from flask import current_app

logger = logging.getLogger(__name__)

RESEND_ENDPOINT = 'https://api.resend.com/emails'


class MailerError(Exception):
    """Raised when e-mail cannot be sent at all (e.g. missing API key)"""


class ResendMailer:
    """Thin client for Resend's send-email endpoint"""

    def __init__(self, api_key, timeout=10, session=None):
        if not api_key:
            raise MailerError('Email service not configured')
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, sender, to, subject, html, text=None):
        """
        Send one message.

        Returns:
            dict: {'success': bool, 'email': recipient, 'error'?: str, 'id'?: str}
        """
        payload = {
            'from': sender,
            'to': [to],
            'subject': subject,
            'html': html
        }
        if text:
            payload['text'] = text

        try:
            response = self.session.post(
                RESEND_ENDPOINT,
                json=payload,
                headers={'Authorization': f'Bearer {self.api_key}'},
                timeout=self.timeout
            )
        except requests.RequestException as exc:
            logger.error('Failed to send email to %s: %s', to, exc)
            return {'success': False, 'email': to, 'error': str(exc)}

        if not response.ok:
            logger.error('Failed to send email to %s: %s %s', to, response.status_code, response.text)
            return {'success': False, 'email': to, 'error': response.text}

        message_id = None
        try:
            message_id = response.json().get('id')
        except ValueError:
            pass
        return {'success': True, 'email': to, 'id': message_id}


def get_mailer():
    """
    The mailer for the current app.

    Tests (or other deployments) may place a ready object under
    app.extensions['lifescribe_mailer'].
    """
    mailer = current_app.extensions.get('lifescribe_mailer')
    if mailer is None:
        mailer = ResendMailer(current_app.config.get('RESEND_API_KEY'))
        current_app.extensions['lifescribe_mailer'] = mailer
    return mailer
