# =============================================
# File: bazaar/utils/botdetect.py
# Purpose: Request and view heuristics that flag automated traffic
# =============================================
from __future__ import annotations

import ipaddress
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .config import BotToggles, bot_toggles

_BOT_UA = re.compile(
    "|".join(
        [
            r"bot", r"crawler", r"spider", r"slurp", r"archiver", r"monitoring",
            r"scraper", r"probe", r"phantom", r"headless", r"selenium",
            r"chrome-lighthouse", r"lighthouse", r"pingdom", r"gtmetrix", r"pagespeed",
            r"uptimerobot", r"statuscake", r"checkly", r"screaming frog", r"ahrefs",
            r"semrush", r"majestic", r"facebookexternalhit", r"whatsapp", r"telegram",
            r"discord", r"slack", r"linkedin", r"pinterest", r"yandex", r"baidu",
            r"duckduck", r"mailchimp", r"nessus", r"qualys", r"acunetix", r"nikto",
            r"jmeter", r"loadrunner", r"blazemeter", r"python-requests", r"curl/", r"wget",
        ]
    ),
    re.IGNORECASE,
)

_HEADLESS_MARKERS = (
    "HeadlessChrome", "PhantomJS", "Puppeteer", "Headless", "Electron", "Nightmare",
    "Selenium", "webdriver", "slimerjs", "jsdom", "zombie.js",
)

_AUTOMATION_HEADERS = (
    "x-puppeteer", "x-puppeteer-version", "x-automated-browser", "x-testing-request",
    "x-lighthouse", "x-crawler", "x-bot", "x-scraper",
)

_BROWSER_HEADERS = ("accept", "accept-language", "accept-encoding", "user-agent")

_BOT_RANGES = [
    ipaddress.ip_network(n)
    for n in (
        "66.249.64.0/19",    # Googlebot
        "64.233.160.0/19",   # Google
        "216.239.32.0/19",   # Google
        "157.55.39.0/24",    # Bingbot
        "207.46.13.0/24",    # Bingbot
        "40.77.167.0/24",    # Bingbot
        "72.30.196.0/24",    # Yahoo Slurp
        "180.76.15.0/24",    # Baiduspider
        "100.43.64.0/18",    # Yandex
        "199.59.148.0/22",   # Twitter
        "69.63.176.0/21",    # Facebook
        "185.181.102.0/24",  # SEMrush
        "104.193.88.0/24",   # Ahrefs
    )
]

MIN_INTERVAL_MS = 50
MIN_VIEW_SECONDS = 2.0

# session id -> last request monotonic time
_last_seen: Dict[str, float] = {}
_last_seen_lock = threading.Lock()


@dataclass
class BotVerdict:
    is_bot: bool = False
    signals: List[str] = field(default_factory=list)


def _ip_in_bot_range(ip: Optional[str]) -> bool:
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if addr.is_loopback or addr.is_private:
        return False
    return any(addr in net for net in _BOT_RANGES if net.version == addr.version)


def _too_fast(session_id: Optional[str], now: float) -> bool:
    if not session_id:
        return False
    with _last_seen_lock:
        last = _last_seen.get(session_id)
        _last_seen[session_id] = now
    return last is not None and (now - last) * 1000 < MIN_INTERVAL_MS


def detect_bot(
    headers: Mapping[str, str],
    ip: Optional[str] = None,
    session_id: Optional[str] = None,
    toggles: Optional[BotToggles] = None,
    now: Optional[float] = None,
) -> BotVerdict:
    """Evaluate request signals; any enabled signal marks the caller as a bot."""
    toggles = toggles or bot_toggles()
    h = {k.lower(): v for k, v in headers.items()}
    ua = h.get("user-agent", "") or ""
    verdict = BotVerdict()

    if toggles.user_agent and ua and _BOT_UA.search(ua):
        verdict.signals.append("user_agent")
    if toggles.user_agent and ua and any(m in ua for m in _HEADLESS_MARKERS):
        verdict.signals.append("headless")
    if toggles.ip_range and _ip_in_bot_range(ip):
        verdict.signals.append("ip_range")
    if toggles.headers and sum(1 for name in _BROWSER_HEADERS if not h.get(name)) >= 2:
        verdict.signals.append("missing_headers")
    if toggles.automation and any(h.get(name) for name in _AUTOMATION_HEADERS):
        verdict.signals.append("automation_headers")
    if toggles.timing and _too_fast(session_id, time.monotonic() if now is None else now):
        verdict.signals.append("timing")

    verdict.is_bot = bool(verdict.signals)
    return verdict


def detect_suspicious_view(
    duration: Optional[float],
    scrolls: int = 0,
    mouse_moves: int = 0,
    key_events: int = 0,
) -> bool:
    """A view is suspicious when it is too short or carries no interaction signals."""
    if duration is None or duration < MIN_VIEW_SECONDS:
        return True
    return not (scrolls or mouse_moves or key_events)


def reset_sessions() -> None:
    with _last_seen_lock:
        _last_seen.clear()
