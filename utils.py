#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Property of solutions reseaux chromatel
"""
Cats Display - Shared Utilities
================================
Shared functions used by both the render loop and the fact worker.
Includes: local clock, fact sanitizing, the daily fact cache, and the fact fetcher.
"""

import os
import time
import json
import logging
import tempfile
import urllib.request
from collections import namedtuple
from datetime import datetime

import pytz

log = logging.getLogger("FACTS")

# Global timezone (set by set_globals)
TZINFO = None

# =================================================================================================
# ===================================== FACT CONSTANTS ============================================
# =================================================================================================

FACT_URL = "https://uselessfacts.jsph.pl/api/v2/facts/today"
FACT_USER_AGENT = "LED-Matrix-Facts/1.0"
FACT_TIMEOUT = 30.0
FETCH_CHUNK_SIZE = 4096
FACT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "cats-cache")

FACT_MARKER = "Today's fact: "
FACT_MAX_LEN = 150
FACT_PLACEHOLDER = "Waiting for network... fact loading in background"

# Failure sentinels; none of them start with FACT_MARKER.
FETCH_FAILED = "Could not fetch today's fact"
PARSE_FAILED = "Error parsing today's fact"
NOT_FOUND = "Today's fact not found in response"
RETRIES_EXHAUSTED = "Could not fetch fact after retries"


def set_globals(**kwargs):
    """Set globals from the main module."""
    global TZINFO
    if 'TZINFO' in kwargs:
        TZINFO = kwargs['TZINFO']


def resolve_tz(name: str):
    """Return a pytz timezone for name, or None for host local time."""
    name = (name or "").strip()
    if not name:
        return None
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        log.warning("Timezone '%s' invalid; using local system time.", name)
        return None

# =================================================================================================
# ======================================== CLOCK ==================================================
# =================================================================================================

ClockReading = namedtuple("ClockReading", "year month day hour minute iso_date")


def now_local():
    """Get current time in local timezone."""
    return datetime.now(TZINFO) if TZINFO else datetime.now().astimezone()


def read_clock(now_dt=None) -> ClockReading:
    """Break the wall clock into the fields the panel needs, plus the YYYY-MM-DD date."""
    if now_dt is None:
        now_dt = now_local()
    return ClockReading(now_dt.year, now_dt.month, now_dt.day, now_dt.hour, now_dt.minute,
                        now_dt.strftime("%Y-%m-%d"))

# =================================================================================================
# ===================================== FACT TEXT HELPERS =========================================
# =================================================================================================

def sanitize_fact_text(text: str) -> str:
    """Flatten line breaks, collapse runs of spaces, trim, and cap the length for scrolling."""
    s = (text or "").replace("\r", " ").replace("\n", " ")
    while "  " in s:
        s = s.replace("  ", " ")
    s = s.strip(" ")
    # str slicing is per code point, so a multi-byte character is never split
    if len(s) > FACT_MAX_LEN:
        s = s[:FACT_MAX_LEN - 3] + "..."
    return s


def is_valid_fact(fact) -> bool:
    return isinstance(fact, str) and fact.startswith(FACT_MARKER)

# =================================================================================================
# ===================================== FACT CACHE ================================================
# =================================================================================================

class FactStore:
    """Daily fact cache: one <root>/<YYYY-MM-DD>.txt file per local date."""

    def __init__(self, root=FACT_CACHE_DIR):
        self.root = root

    def path_for(self, date_str: str) -> str:
        return os.path.join(self.root, f"{date_str}.txt")

    def load(self, date_str: str):
        """Return the cached fact for date_str, or None when missing, empty or unreadable."""
        try:
            with open(self.path_for(date_str), "r", encoding="utf-8", newline="") as f:
                fact = f.read()
        except (OSError, UnicodeDecodeError):
            return None
        return fact or None

    def save(self, date_str: str, fact: str) -> bool:
        """Write the fact for date_str. Errors are logged, never raised."""
        path = self.path_for(date_str)
        try:
            os.makedirs(self.root, exist_ok=True)
            with open(path + ".tmp", "w", encoding="utf-8", newline="") as f:
                f.write(fact)
            os.replace(path + ".tmp", path)
        except OSError as e:
            log.warning("Could not cache fact for %s: %s", date_str, e)
            return False
        log.info("Cached today's fact for %s", date_str)
        return True

# =================================================================================================
# ===================================== FACT FETCHER ==============================================
# =================================================================================================

def fetch_fact_of_the_day(url: str = FACT_URL, timeout: float = FACT_TIMEOUT,
                          user_agent: str = FACT_USER_AGENT) -> str:
    """
    GET the fact endpoint and return a marker-prefixed fact, or a failure sentinel.

    timeout bounds the whole request: the body is read in chunks against one deadline.
    """
    req = urllib.request.Request(url, headers={"User-Agent": user_agent})
    deadline = time.monotonic() + timeout
    chunks = []
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            while True:
                if time.monotonic() > deadline:
                    raise TimeoutError(f"no complete response within {timeout}s")
                chunk = resp.read(FETCH_CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
    except Exception as e:
        log.warning("Fetch error: %s", e)
        return FETCH_FAILED

    try:
        data = json.loads(b"".join(chunks).decode("utf-8"))
    except ValueError as e:
        log.warning("JSON parse error: %s", e)
        return PARSE_FAILED

    if not isinstance(data, dict) or data.get("text") is None:
        return NOT_FOUND
    text = data["text"]
    if not isinstance(text, str):
        text = str(text)
    text = sanitize_fact_text(text)
    if not text:
        return NOT_FOUND
    return FACT_MARKER + text


def fetch_or_load_fact(store: FactStore, date_str: str, fetch=fetch_fact_of_the_day) -> str:
    """Return the cached fact for date_str, falling back to the network (and caching it)."""
    cached = store.load(date_str)
    if is_valid_fact(cached):
        log.info("Loaded cached fact for %s", date_str)
        return cached

    log.info("Fetching today's fact from API for %s...", date_str)
    fact = fetch()
    if is_valid_fact(fact):
        store.save(date_str, fact)
    return fact


def fetch_fact_with_retry(store: FactStore, date_str: str, max_retries: int = 6,
                          wait_seconds: float = 10, stop_event=None,
                          fetch=fetch_fact_of_the_day) -> str:
    """
    Call fetch_or_load_fact up to max_retries times, waiting wait_seconds between attempts.
    A set stop_event cuts the wait short and abandons the remaining attempts.
    """
    for attempt in range(1, max_retries + 1):
        fact = fetch_or_load_fact(store, date_str, fetch=fetch)
        if is_valid_fact(fact):
            return fact
        if attempt == max_retries:
            log.warning("Attempt %d failed (%s). Giving up.", attempt, fact)
            break
        log.warning("Attempt %d failed (%s). Retrying in %s seconds...", attempt, fact, wait_seconds)
        if stop_event is not None:
            if stop_event.wait(wait_seconds):
                break
        else:
            time.sleep(wait_seconds)
    return RETRIES_EXHAUSTED
