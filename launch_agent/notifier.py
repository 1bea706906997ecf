"""
Webhook notifications.

Delivers arbitrary JSON payloads to a configured URL. Backup outcomes use
the model's webhook (falling back to the global one); pulse and supervisor
reports use the pulse webhook.
"""

import logging
from typing import Any, Dict, Optional

import requests

from launch_agent.errors import NotifierError
from launch_agent.models import ModelConfig, WebhookConfig


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class Webhook:
    """
    Sends JSON payloads with the configured method and headers.
    """

    service = 'Webhook'

    def __init__(self, config: WebhookConfig, timeout: int = DEFAULT_TIMEOUT):
        self.url = config.url
        self.method = config.method or 'POST'
        self.headers = dict(config.headers or {})
        self.timeout = timeout

    def notify(self, payload: Any):
        """
        Deliver a payload.

        Raises:
            NotifierError: On transport errors or any non-2xx response
        """
        headers = {'Content-Type': 'application/json'}
        headers.update(self.headers)

        logger.info(f"Sending notification to {self.url}...")
        try:
            response = requests.request(
                self.method,
                self.url,
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise NotifierError(f"Notification to {self.url} failed: {e}")

        if not 200 <= response.status_code < 300:
            raise NotifierError(f"status: {response.status_code}, body: {response.text}")

        logger.info("Notification sent successfully.")


def build_success_payload(model: ModelConfig, size: int) -> Dict[str, Any]:
    return {'status': 'finished', 'model': model.name, 'size': size}


def build_failure_payload(model: ModelConfig, error: str) -> Dict[str, Any]:
    return {'status': 'failed', 'model': model.name, 'error': error}


def send(webhook_config: Optional[WebhookConfig], payload: Dict[str, Any]) -> bool:
    """
    Deliver a payload, logging instead of raising on failure.

    Returns:
        True if delivered, False if no webhook is configured or delivery failed
    """
    if webhook_config is None:
        logger.debug("No webhook configured, skipping notification")
        return False

    try:
        Webhook(webhook_config).notify(payload)
        return True
    except Exception as e:
        logger.error(f"Notification failed: {e}")
        return False


def notify_success(model: ModelConfig, size: int) -> bool:
    return send(model.webhook, build_success_payload(model, size))


def notify_failure(model: ModelConfig, error: str) -> bool:
    return send(model.webhook, build_failure_payload(model, error))
