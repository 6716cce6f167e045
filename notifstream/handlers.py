"""
HTTP delivery handlers (generic webhook, Slack incoming webhooks, Discord webhooks)

These are swappable strategies: the pipeline only needs `send(event) -> DeliveryOutcome`. E-mail, SMS and push
gateways are expected to be supplied by the embedding application in the same shape

HTTP behavior
----------
- Reuses connections via a single requests.Session per handler (TLS/TCP pooling)
- The session only retries connection establishment; status-level retries belong to the pipeline's retry engine,
  which applies the configured fixed delay and fires the on-retry hook
- 2xx -> success, 408/429/5xx -> transient failure, other 4xx -> permanent failure
"""
import logging
from typing import Any, Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter, Retry

from .config import DISCORD_WEBHOOK_URL, SLACK_WEBHOOK_URL
from .models import ChannelType, NotificationEvent, SlackPayload, DiscordPayload, WebhookPayload
from .registry import DeliveryOutcome, HandlerRegistry, InvalidEventError

USER_AGENT = "notifstream-webhook/1.0"
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

log = logging.getLogger(__name__)


def make_session(pool_maxsize: int = 10) -> requests.Session:
    """
    Build a pooled HTTP client for webhook calls

    Features
    ----------
    - Connection pooling & TCP/TLS reuse
    - Connect-only retries with a short backoff (never re-POSTs a request the server may have processed)
    - Default User-Agent header
    """
    session = requests.Session()
    retries = Retry(
        total=2,
        connect=2,
        read=0,
        status=0,
        backoff_factor=0.2,
        raise_on_status=False
    )
    adapter = HTTPAdapter(max_retries=retries, pool_maxsize=pool_maxsize)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def outcome_for_response(response) -> DeliveryOutcome:
    status = response.status_code
    if 200 <= status < 300:
        return DeliveryOutcome.success()

    reason = f"HTTP {status}: {(response.text or '')[:200]}"
    if status in TRANSIENT_STATUSES:
        return DeliveryOutcome.transient(reason)
    return DeliveryOutcome.permanent(reason)


class _HttpHandler:
    default_timeout = 10.0

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.session = session or make_session()
        self.timeout = timeout or self.default_timeout

    def _request(self, method: str, url: str, event: NotificationEvent, **kwargs) -> DeliveryOutcome:
        timeout = kwargs.pop("timeout", None) or self.timeout
        try:
            response = self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as e:
            log.warning(f"{method} {url} failed for notification {event.id}: {e}")
            return DeliveryOutcome.transient(e)

        outcome = outcome_for_response(response)
        if outcome.ok:
            log.debug(f"Delivered notification {event.id} via {method} {url} -> {response.status_code}")
        return outcome

    def close(self):
        self.session.close()


class WebhookHandler(_HttpHandler):
    """Generic webhook: method, headers, JSON body and timeout come from the `WebhookPayload`"""

    def send(self, event: NotificationEvent) -> DeliveryOutcome:
        payload: WebhookPayload = event.payload
        url = payload.url or event.recipient
        headers = {"Content-Type": payload.content_type, **payload.headers}
        body: Dict[str, Any] = payload.body or {}
        timeout = payload.timeout or self.timeout                    # null or 0 on the wire means the default

        if payload.content_type == "application/json":
            return self._request(payload.method.upper(), url, event, json=body, headers=headers, timeout=timeout)
        return self._request(payload.method.upper(), url, event, data=body, headers=headers, timeout=timeout)


class SlackWebhookHandler(_HttpHandler):
    """
    Slack incoming-webhook handler

    `webhook_url` on the payload wins over the handler default, so one handler can serve several workspaces
    """

    def __init__(self, webhook_url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.webhook_url = webhook_url

    def send(self, event: NotificationEvent) -> DeliveryOutcome:
        payload: SlackPayload = event.payload
        url = payload.webhook_url or self.webhook_url
        if not url:
            return DeliveryOutcome.permanent(InvalidEventError(f"no Slack webhook URL for notification {event.id}"))

        body: Dict[str, Any] = {"channel": payload.channel or event.recipient}
        if payload.text:
            body["text"] = payload.text
        if payload.blocks:
            body["blocks"] = payload.blocks
        if payload.attachments:
            body["attachments"] = payload.attachments
        if payload.username:
            body["username"] = payload.username
        if payload.icon_emoji:
            body["icon_emoji"] = payload.icon_emoji
        elif payload.icon_url:
            body["icon_url"] = payload.icon_url
        if payload.thread_ts:
            body["thread_ts"] = payload.thread_ts
        return self._request("POST", url, event, json=body)


class DiscordWebhookHandler(_HttpHandler):
    def __init__(self, webhook_url: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.webhook_url = webhook_url

    def send(self, event: NotificationEvent) -> DeliveryOutcome:
        payload: DiscordPayload = event.payload
        url = payload.webhook_url or self.webhook_url or event.recipient
        if not url or not url.startswith("http"):
            return DeliveryOutcome.permanent(InvalidEventError(f"no Discord webhook URL for notification {event.id}"))

        body: Dict[str, Any] = {"content": payload.text, "tts": payload.tts}
        if payload.username:
            body["username"] = payload.username
        if payload.avatar_url:
            body["avatar_url"] = payload.avatar_url
        if payload.embeds:
            body["embeds"] = payload.embeds
        return self._request("POST", url, event, json=body)


class LoggingHandler:
    """
    Development stand-in for gateways not wired up yet: logs the rendered content and succeeds

    Only registered for channels named explicitly, since every event it sees counts as delivered
    """

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def send(self, event: NotificationEvent) -> DeliveryOutcome:
        log.log(self.level, f"[{event.channel.value}] -> {event.recipient}: {event.content()[:200]}")
        return DeliveryOutcome.success()


def default_registry(pool_maxsize: int = 10, log_only_channels: Iterable = ()) -> HandlerRegistry:
    """
    Registry used by `python -m notifstream.consumer`

    Slack, Discord and generic webhooks go over HTTP (sharing one pooled session). E-mail, SMS and push have no
    gateway here: they stay unregistered, so their events fail permanently (and reach the DLQ when enabled) unless
    listed in `log_only_channels`, which maps them to `LoggingHandler`
    """
    session = make_session(pool_maxsize)
    handlers = {
        ChannelType.SLACK: SlackWebhookHandler(SLACK_WEBHOOK_URL, session=session),
        ChannelType.DISCORD: DiscordWebhookHandler(DISCORD_WEBHOOK_URL, session=session),
        ChannelType.WEBHOOK: WebhookHandler(session=session),
    }
    for name in log_only_channels:
        channel = ChannelType.parse(name)
        log.warning(f"Deliveries on {channel.value} are only logged, never sent")
        handlers[channel] = LoggingHandler()
    return HandlerRegistry(handlers)
