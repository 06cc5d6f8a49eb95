"""
Brand copy registry.

Keys are ``"{stage}:{reply}"``; lookup falls back to ``"any:{reply}"`` and
then to ``"any:fallback"``. Every outbound body goes through lint_copy().
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from leadsms.config import settings
from leadsms.schema import Stage

MAX_SMS_CHARS = 600

# -------------------------------
# Customer copy
# -------------------------------
TEMPLATES: Dict[str, str] = {
    # top of funnel
    "cold:ask_photos": "Hi! Fastest way to get your Garage Raid estimate: please text a few photos of the garage.",
    "qualifying:ask_photos": "Got it. A couple photos of your garage is the fastest way to get a precise time estimate.",
    # photos arrive
    "awaiting_owner_quote:ack_photos": (
        "Got your photos, thank you. Our team will review them and text your time estimate shortly."
    ),
    "any:ack_photos": "Got your photos, thank you. We'll take a look and follow up here shortly.",
    # nurture after a quote
    "quote_sent:nudge_hold_window": (
        "Quick check-in: would you like to hold a morning or early afternoon arrival? "
        "If you want date options, just say “options”."
    ),
    "any:options_info": (
        "We can hold a morning or early afternoon arrival. Do you have 2–3 days that work best? "
        "I can check openings."
    ),
    "any:price_explain": (
        "We price by on-site hours for a two-person team. Photos help us quote precisely and avoid surprises. "
        "Two wide photos of the garage is perfect."
    ),
    "any:epoxy_qual": (
        "Happy to quote epoxy. What’s the square footage? Two wide photos of the space help. "
        "Close-ups aren’t needed now, we’ll inspect if you like the estimate."
    ),
    "any:services_info": (
        "We clear, sort and organize garages: haul-away, donation drop-off, shelving and racks. "
        "Two wide photos of the garage and we'll send a time estimate."
    ),
    "any:thanks": "You’re welcome! If you want date options, just say “options”.",
    "any:unsubscribe_ack": "Understood, we won't text you again. Reply START anytime if you change your mind.",
    "any:quote_long": (
        "Thanks for the photos! We estimate about {{hours}} hours with a two-person team. "
        "{{hours}} hrs x ${{rate}}/hr = ${{labor}}, plus a ${{fee}} haul-away fee, total ${{total}}. "
        "Want a morning or early afternoon arrival? Say “options” for dates."
    ),
    "any:fallback": "Noted. Two wide photos of your garage is the fastest way to get a precise time estimate.",
    # owner channel
    "owner:alert": "\U0001F4E9 New SMS from {{phone}} ({{stage}}): {{body}}",
    "owner:photo_alert": (
        "\U0001F4F8 {{count}} photo(s) from {{phone}}. Gallery: {{gallery_url}} "
        "Reply with hours (2-8) to send the quote."
    ),
    "owner:usage": (
        "Reply with hours 2-8 to quote the latest photo lead, e.g. \"4\" or \"4 +13135551212\". "
        "Close a lead with \"won +13135551212\" or \"lost +13135551212\"."
    ),
    "owner:no_lead": "No lead found {{target}}.",
    "owner:quote_confirm": "Quote sent to {{phone}}: {{hours}} hrs, ${{total}} total.",
    "owner:closed": "Marked {{phone}} as {{stage}}.",
    "owner:send_failed": "Could not text the quote to {{phone}}. Try again in a minute.",
}

# intent label -> reply key (unlisted intents map to themselves)
REPLY_KEYS: Dict[str, str] = {
    "estimate": "ask_photos",
    "options": "options_info",
    "pricing": "price_explain",
    "price_question": "price_explain",
    "epoxy": "epoxy_qual",
    "faq": "services_info",
    "unsubscribe": "unsubscribe_ack",
}

REPLACEMENTS: List[Tuple["re.Pattern[str]", str]] = [
    (re.compile(r"we appreciate your interest", re.IGNORECASE), "thanks for reaching out"),
    (re.compile(r"kindly", re.IGNORECASE), "please"),
]

FORBIDDEN: List["re.Pattern[str]"] = [
    re.compile(r"our team will be more than happy", re.IGNORECASE),
    re.compile(r"kindly", re.IGNORECASE),
    re.compile(r"at your earliest convenience", re.IGNORECASE),
    re.compile(r"dear customer", re.IGNORECASE),
    re.compile(r"we appreciate your interest", re.IGNORECASE),
]

_VAR = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_WS = re.compile(r"\s+")


# -------------------------------
# Helpers
# -------------------------------
def render(template: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    """Replace ``{{name}}`` placeholders; unknown names render empty."""
    values = variables or {}

    def _sub(match: "re.Match[str]") -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _VAR.sub(_sub, template or "")


def lint_copy(text: str) -> str:
    out = (text or "").strip()
    for pattern, replacement in REPLACEMENTS:
        out = pattern.sub(replacement, out)
    for pattern in FORBIDDEN:
        out = pattern.sub("", out)
    out = _WS.sub(" ", out).strip()
    if len(out) > MAX_SMS_CHARS:
        out = out[: MAX_SMS_CHARS - 3] + "…"
    return out


def reply_key(intent: str) -> str:
    return REPLY_KEYS.get(intent, intent)


def _stage_label(stage: Union[Stage, str, None]) -> str:
    if isinstance(stage, Stage):
        return stage.value
    return stage or "any"


def pick_template(stage: Union[Stage, str, None], intent: str) -> Tuple[str, str]:
    """Return (key, template) following stage -> any -> fallback."""
    key = reply_key(intent)
    for candidate in (f"{_stage_label(stage)}:{key}", f"any:{key}"):
        if candidate in TEMPLATES:
            return candidate, TEMPLATES[candidate]
    return "any:fallback", TEMPLATES["any:fallback"]


def compose(stage: Union[Stage, str, None], intent: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    _key, template = pick_template(stage, intent)
    return lint_copy(render(template, variables))


def compose_owner(name: str, variables: Optional[Mapping[str, Any]] = None) -> str:
    return lint_copy(render(TEMPLATES[f"owner:{name}"], variables))


def quote_breakdown(hours: int, rate: Optional[int] = None, fee: Optional[int] = None) -> Dict[str, int]:
    s = settings()
    rate = s.QUOTE_HOURLY_RATE if rate is None else rate
    fee = s.QUOTE_FIXED_FEE if fee is None else fee
    labor = rate * hours
    return {"hours": hours, "rate": rate, "labor": labor, "fee": fee, "total": labor + fee}


def compose_quote(hours: int, rate: Optional[int] = None, fee: Optional[int] = None) -> str:
    return lint_copy(render(TEMPLATES["any:quote_long"], quote_breakdown(hours, rate, fee)))
