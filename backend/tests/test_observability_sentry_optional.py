from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from bazaarlink.utils.observability import _before_send_scrub, init_sentry


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            self.assertFalse(init_sentry(app))

    def test_scrub_redacts_secrets_and_body(self):
        event = {
            "request": {
                "headers": {
                    "Authorization": "Bearer abc",
                    "X-Payment-Signature": "deadbeef",
                    "Accept": "application/json",
                },
                "data": {"code": "4821"},
                "query_string": "code=4821",
            }
        }
        scrubbed = _before_send_scrub(event, None)
        headers = scrubbed["request"]["headers"]
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["X-Payment-Signature"], "[REDACTED]")
        self.assertEqual(headers["Accept"], "application/json")
        self.assertEqual(scrubbed["request"]["data"], "[REDACTED]")
        self.assertEqual(scrubbed["request"]["query_string"], "[REDACTED]")

    def test_scrub_leaves_events_without_request_alone(self):
        event = {"message": "boom"}
        self.assertEqual(_before_send_scrub(event, None), {"message": "boom"})


if __name__ == "__main__":
    unittest.main()
