# fake_events.py
from __future__ import annotations
import copy
import json
import random
import string
from typing import Any, Dict, List, Optional, Tuple

from .models import (
    ChannelType, DiscordPayload, EmailPayload, NotificationEvent, Priority, PushPayload, SlackPayload, SmsPayload,
    WebhookPayload, encode_event, event_to_dict
)

FUZZ_STRATEGIES = ["drop_field", "null_field", "wrong_type", "bad_scheduled_at", "missing_id", "extra_field",
                   "bad_channel"]


def _login(r: random.Random) -> str:
    base = r.choice(["alice", "bob", "charlie", "dora", "eve", "frank", "grace", "heidi", "ivan", "judy", "mihai", "ioana", "andrei"])
    suf = "".join(r.choice(string.ascii_lowercase + string.digits) for _ in range(3))
    return f"{base}{suf}"


def _email(r: random.Random, login: str) -> str:
    return f"{login}@{r.choice(['example.com', 'gmail.com', 'proton.me'])}"


def _phone(r: random.Random) -> str:
    return "+" + r.choice("123456789") + "".join(r.choice(string.digits) for _ in range(10))


def _token(r: random.Random, n: int = 32) -> str:
    return "".join(r.choice("0123456789abcdef") for _ in range(n))


def _subject(r: random.Random) -> str:
    tag = r.choice(["Welcome", "Reminder", "Alert", "Invoice", "Digest", "Security notice"])
    tail = r.choice(["for your account", "#951", "#1234", "weekly", "action required"])
    return f"{tag}: {tail}"


def _payload_for(channel: ChannelType, r: random.Random, login: str) -> Tuple[str, Any]:
    text = _subject(r)
    if channel is ChannelType.EMAIL:
        return _email(r, login), EmailPayload(subject=text, body=f"Hello {login}, {text.lower()}.",
                                              from_email="noreply@example.com", from_name="notifstream")
    if channel is ChannelType.SMS:
        return _phone(r), SmsPayload(message=f"{text} - reply STOP to opt out", country_code="+40")
    if channel is ChannelType.PUSH:
        return _token(r), PushPayload(title=text, body=f"Hi {login}", platform=r.choice(["ios", "android", "web"]),
                                      badge=r.randint(1, 9), data={"login": login})
    if channel is ChannelType.SLACK:
        return f"#{r.choice(['alerts', 'ops', 'general'])}", SlackPayload(text=text, username="notifstream")
    if channel is ChannelType.DISCORD:
        return r.choice(["ops", "general"]), DiscordPayload(text=text, username="notifstream")
    url = f"https://hooks.example.com/{login}/{_token(r, 8)}"
    return url, WebhookPayload(url=url, body={"login": login, "subject": text})


def make_event(channel: Optional[ChannelType] = None, rng: Optional[random.Random] = None,
               **kwargs) -> NotificationEvent:
    """Return a valid random event for `channel` (random channel when None)."""
    r = rng or random
    channel = ChannelType.parse(channel) if channel is not None else r.choice(list(ChannelType))
    login = _login(r)
    recipient, payload = _payload_for(channel, r, login)
    kwargs.setdefault("priority", r.choice(list(Priority)))
    kwargs.setdefault("metadata", {"source": "fake_events"})
    return NotificationEvent.create(channel, recipient, payload, **kwargs)


def make_events(total: int, channels: Optional[List[ChannelType]] = None,
                rng: Optional[random.Random] = None) -> List[NotificationEvent]:
    r = rng or random
    pool = [ChannelType.parse(c) for c in channels] if channels else list(ChannelType)
    return [make_event(r.choice(pool), rng=r) for _ in range(max(1, total))]


def fuzz_event(
    ev: Dict[str, Any],
    *,
    strategies: List[str],
    n_mutations: int = 1,
    rng: random.Random | None = None
) -> Dict[str, Any]:
    """
    Mutate an encoded event dict into one `decode_event` rejects.
    strategies: choose from
      - "drop_field"        -> remove a required field
      - "null_field"        -> set a field to None
      - "wrong_type"        -> swap types (string<->int etc.)
      - "bad_scheduled_at"  -> invalid timestamp or type
      - "missing_id"        -> remove top-level 'id'
      - "extra_field"       -> add an unexpected payload field
      - "bad_channel"       -> channel tag no consumer knows
    """
    r = rng or random
    out = copy.deepcopy(ev)
    required = ["id", "channel"]

    def mutate(strategy: str):
        if strategy == "missing_id":
            out.pop("id", None)
        elif strategy == "bad_scheduled_at":
            out["scheduled_at"] = r.choice(["2025-13-45", "09-31-2025 99:99:99", "not-a-timestamp"])
        elif strategy == "extra_field":
            payload = out.setdefault("payload", {})
            if isinstance(payload, dict):
                payload[f"extra_{r.randint(100, 999)}"] = r.choice([True, "junk", 3.1415])
        elif strategy == "bad_channel":
            out["channel"] = r.choice(["fax", "pigeon", "", 42])
        elif strategy == "drop_field":
            out.pop(r.choice(required), None)
        elif strategy == "null_field":
            out[r.choice(required)] = None
        elif strategy == "wrong_type":
            out["payload"] = r.choice(["[]", 42, ["x"]])

    for _ in range(n_mutations):
        mutate(r.choice(strategies))
    return out


def make_bad_value(rng: Optional[random.Random] = None, n_mutations: int = 1) -> bytes:
    """Encoded record value that fails to decode."""
    r = rng or random
    ev = event_to_dict(make_event(rng=r))
    bad = fuzz_event(ev, strategies=FUZZ_STRATEGIES, n_mutations=max(1, n_mutations), rng=r)
    return json.dumps(bad, default=str).encode("utf-8")


def make_value(channel: Optional[ChannelType] = None, rng: Optional[random.Random] = None) -> bytes:
    return encode_event(make_event(channel, rng=rng))
