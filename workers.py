#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Property of solutions reseaux chromatel
"""
Cats Display - Fact Worker
===========================
Background thread that refreshes the fact of the day when the local date rolls over.
The render loop reads the result through a FactSlot; nothing else is shared.
"""

import logging
import threading

from utils import (
    FactStore, FACT_PLACEHOLDER,
    fetch_fact_with_retry, is_valid_fact, read_clock
)

log = logging.getLogger("FACTS")

FACT_POLL_SEC = 30 * 60


class FactSlot:
    """Lock-guarded fact text plus its pixel width, replaced as one value."""

    def __init__(self, initial: str = FACT_PLACEHOLDER, measure=None):
        self._lock = threading.Lock()
        self._measure = measure or (lambda text: 0)
        self._text = initial
        self._width = self._measure(initial)

    def set(self, text: str):
        with self._lock:
            self._text = text
            self._width = self._measure(text)

    def get(self) -> str:
        with self._lock:
            return self._text

    def snapshot(self):
        """Return (text, width) from the same update."""
        with self._lock:
            return self._text, self._width


def fact_worker(slot: FactSlot, store: FactStore, stop_event: threading.Event,
                clock=read_clock, fetch=fetch_fact_with_retry,
                poll_sec=FACT_POLL_SEC, max_retries=6, wait_seconds=10):
    """Check for a new local day every poll_sec and publish the day's fact into slot."""
    last_date = ""

    while not stop_event.is_set():
        try:
            current_date = clock().iso_date
            if current_date != last_date:
                log.info("New day detected: %s (was: %s)", current_date, last_date or "-")
                fact = fetch(store, current_date, max_retries=max_retries,
                             wait_seconds=wait_seconds, stop_event=stop_event)
                if is_valid_fact(fact):
                    slot.set(fact)
                    log.info("Today's fact loaded for %s: %s", current_date, fact)
                else:
                    log.warning("Failed to fetch today's fact (%s), keeping current one", fact)
                # A failed day is retried on the next date change only.
                last_date = current_date
        except Exception:
            log.exception("Exception in fact update")

        stop_event.wait(poll_sec)

    log.info("Fact worker stopped")


def start_fact_worker(slot: FactSlot, store: FactStore, stop_event: threading.Event, **kwargs):
    """Spawn fact_worker on a daemon thread and return the thread."""
    t = threading.Thread(target=fact_worker, args=(slot, store, stop_event),
                         kwargs=kwargs, name="fact-worker", daemon=True)
    t.start()
    log.info("Fact worker started (cache=%s)", store.root)
    return t
