"""Tests for the rate limit counter and the JSON log formatter."""

import json
import logging

from clinsync.api.logging_config import StructuredFormatter, mask_patient_ids
from clinsync.api.security import SlidingWindowCounter
from clinsync.infrastructure.request_context import request_context


class TestSlidingWindowCounter:
    def test_limit_and_window(self):
        now = [100.0]
        counter = SlidingWindowCounter(clock=lambda: now[0])

        assert counter.hit("10.0.0.1", "login", limit=2, window=60) == (True, 1, 0)
        assert counter.hit("10.0.0.1", "login", limit=2, window=60) == (True, 0, 0)
        allowed, remaining, retry_after = counter.hit("10.0.0.1", "login", limit=2, window=60)
        assert not allowed
        assert retry_after == 60

        now[0] += 61
        assert counter.hit("10.0.0.1", "login", limit=2, window=60)[0]

    def test_clients_and_buckets_are_independent(self):
        counter = SlidingWindowCounter(clock=lambda: 0.0)
        counter.hit("a", "login", limit=1, window=60)
        assert counter.hit("b", "login", limit=1, window=60)[0]
        assert counter.hit("a", "export", limit=1, window=60)[0]

    def test_prune(self):
        now = [0.0]
        counter = SlidingWindowCounter(clock=lambda: now[0])
        counter.hit("a", "login", limit=1, window=60)
        now[0] = 500.0
        counter.prune(max_window=60)
        assert counter.hit("a", "login", limit=1, window=60)[0]


class TestStructuredFormatter:
    def make_record(self, message):
        return logging.LogRecord("clinsync.test", logging.INFO, __file__, 10, message, None, None)

    def test_masks_patient_ids(self):
        assert mask_patient_ids("sync of PAT-100000-AAA failed") == "sync of PAT-*** failed"

    def test_json_line_with_context(self):
        formatter = StructuredFormatter()
        with request_context("researcher@clinic.com", ip_address="10.0.0.9"):
            line = formatter.format(self.make_record("Created PAT-123456-XYZ"))

        payload = json.loads(line)
        assert payload["level"] == "INFO"
        assert payload["message"] == "Created PAT-***"
        assert payload["actor"] == "researcher@clinic.com"
        assert payload["client_ip"] == "10.0.0.9"

    def test_system_actor_is_omitted(self):
        payload = json.loads(StructuredFormatter().format(self.make_record("tick")))
        assert "actor" not in payload
