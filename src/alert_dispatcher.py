#!/usr/bin/env python3
"""
Alert Dispatcher

Formats balance alerts and posts them to a DingTalk chat robot webhook.

Delivery is a single attempt: failures are logged and reported to the caller
as ``False``, never raised. A missed alert is superseded by the next poll's
alert while the balance stays above the threshold.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

import requests

from logger_utils import with_fields
from rpc_failover import NetworkError


logger = logging.getLogger(__name__)


DINGTALK_ROBOT_URL = "https://oapi.dingtalk.com/robot/send"
DEFAULT_WEBHOOK_TIMEOUT = 10


@dataclass(frozen=True)
class AlertEvent:
    content: str
    is_at_all: bool = True
    at_mobiles: Tuple[str, ...] = ()


def build_alert(alias: str, symbol: str, amount_text: str, threshold: float,
                is_at_all: bool = True, at_mobiles: Sequence[str] = ()) -> AlertEvent:
    """Build the alert for a balance at or above the threshold"""
    content = f"{alias} {symbol} balance {amount_text} >= {threshold:.15g}"
    return AlertEvent(content=content, is_at_all=is_at_all, at_mobiles=tuple(at_mobiles))


def build_dingtalk_payload(event: AlertEvent) -> Dict[str, Any]:
    """Build the DingTalk text message body for ``event``"""
    content = event.content
    if not event.is_at_all and event.at_mobiles:
        # mentions only render when the numbers also appear in the text
        content = content + " \n @" + " @".join(event.at_mobiles)

    return {
        "msgtype": "text",
        "text": {
            "content": content,
        },
        "at": {
            "isAtAll": event.is_at_all,
            "atMobiles": list(event.at_mobiles),
        },
    }


def dingtalk_webhook_url(access_token: str, base_url: str = DINGTALK_ROBOT_URL) -> str:
    return f"{base_url}?access_token={access_token}"


class WebhookSender(Protocol):
    def post(self, url: str, body: Dict[str, Any]) -> int:
        ...


class DingTalkSender:
    """POSTs JSON bodies to DingTalk robot webhooks with a bounded timeout"""

    def __init__(self, timeout_s: float = DEFAULT_WEBHOOK_TIMEOUT, session: Optional[requests.Session] = None):
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def post(self, url: str, body: Dict[str, Any]) -> int:
        try:
            response = self.session.post(url, json=body, timeout=self.timeout_s)
        except requests.RequestException as e:
            raise NetworkError(f"Webhook request failed: {e}") from e

        if response.status_code >= 400:
            raise NetworkError(f"Webhook returned status {response.status_code}: {response.text}")

        # DingTalk answers 200 with an errcode for rejected messages
        try:
            result = response.json()
        except ValueError:
            result = {}
        errcode = result.get("errcode", 0) if isinstance(result, dict) else 0
        if errcode:
            raise NetworkError(f"DingTalk rejected message: errcode={errcode} errmsg={result.get('errmsg')}")

        logger.debug("ding notify rsp", extra=with_fields(status=response.status_code, body=response.text))
        return response.status_code


class AlertDispatcher:
    def __init__(self, sender: WebhookSender, webhook_url: str):
        self.sender = sender
        self.webhook_url = webhook_url

    def send(self, event: AlertEvent) -> bool:
        """Send ``event`` once; returns False on any failure"""
        payload = build_dingtalk_payload(event)
        try:
            status = self.sender.post(self.webhook_url, payload)
        except Exception as e:
            logger.error("Failed to send DingTalk alert", extra=with_fields(err=e))
            return False

        logger.info("Sent DingTalk alert", extra=with_fields(status=status, content=event.content))
        return True
