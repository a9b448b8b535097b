"""
Unit tests for HttpCapabilityInvoker
Tests request payload, response parsing, error categorization and retries
"""

import os
import unittest
from unittest.mock import Mock, patch

import requests

from stepflow.pipeline.models import CapabilityRequest, CapabilityResponse
from stepflow.utils.exceptions import CapabilityAPIError, InvocationError
from stepflow.utils.http_invoker import HttpCapabilityInvoker


def make_response(status_code=200, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    response.text = text
    return response


class TestHttpCapabilityInvoker(unittest.TestCase):
    """Test suite for HttpCapabilityInvoker"""

    def setUp(self):
        """Set up test fixtures"""
        self.config = {
            "endpoint": "http://capabilities.local/invoke",
            "api_key": "config-key",
            "max_retries": 2,
            "retry_base_delay": 0,
        }
        self.request = CapabilityRequest(
            step_name="research",
            skill="web-research",
            agent=None,
            input={"query": "tides"},
            timeout_ms=2500,
            pipeline_id="run-1",
            pipeline_name="brief",
        )
        sleep_patcher = patch('stepflow.utils.retry.time.sleep')
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def make_invoker(self, *responses):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("CAPABILITY_API_KEY", None)
            invoker = HttpCapabilityInvoker(self.config)
        invoker.session = Mock()
        invoker.session.post.side_effect = list(responses)
        return invoker

    def test_successful_call(self):
        invoker = self.make_invoker(make_response(body={
            "output": {"summary": "s"},
            "model": "m-1",
            "input_tokens": 12,
            "output_tokens": 3,
            "estimated_cost_usd": 0.002,
        }))

        response = invoker(self.request)

        self.assertIsInstance(response, CapabilityResponse)
        self.assertEqual(response.output, {"summary": "s"})
        self.assertEqual(response.total_tokens, 15)

        args, kwargs = invoker.session.post.call_args
        self.assertEqual(args[0], "http://capabilities.local/invoke")
        self.assertEqual(kwargs["timeout"], 2.5)
        self.assertEqual(kwargs["json"]["step_name"], "research")
        self.assertEqual(kwargs["json"]["input"], {"query": "tides"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer config-key")

    def test_env_api_key_wins(self):
        with patch.dict(os.environ, {"CAPABILITY_API_KEY": "env-key"}):
            invoker = HttpCapabilityInvoker(self.config)
        self.assertEqual(invoker.api_key, "env-key")

    def test_server_error_is_retried(self):
        invoker = self.make_invoker(
            make_response(status_code=503),
            make_response(status_code=429),
            make_response(body={"output": "ok"}),
        )
        response = invoker(self.request)
        self.assertEqual(response.output, "ok")
        self.assertEqual(invoker.session.post.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_retries_exhausted(self):
        invoker = self.make_invoker(*[make_response(status_code=500) for _ in range(3)])
        with self.assertRaises(CapabilityAPIError) as ctx:
            invoker(self.request)
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertTrue(ctx.exception.recoverable)
        self.assertEqual(invoker.session.post.call_count, 3)

    def test_connection_error_is_retried(self):
        invoker = self.make_invoker(
            requests.exceptions.ConnectionError("refused"),
            make_response(body={"output": 1}),
        )
        self.assertEqual(invoker(self.request).output, 1)

    def test_timeout_maps_to_api_error(self):
        invoker = self.make_invoker(*[requests.exceptions.Timeout("slow") for _ in range(3)])
        with self.assertRaises(CapabilityAPIError) as ctx:
            invoker(self.request)
        self.assertIn("timed out", str(ctx.exception))

    def test_client_error_is_not_retried(self):
        invoker = self.make_invoker(make_response(status_code=400, body={"error": {"message": "bad skill"}}))
        with self.assertRaises(InvocationError) as ctx:
            invoker(self.request)
        self.assertIn("bad skill", str(ctx.exception))
        self.assertIn("HTTP 400", str(ctx.exception))
        self.assertEqual(invoker.session.post.call_count, 1)

    def test_invalid_json(self):
        invoker = self.make_invoker(make_response(body=ValueError("not json"), text="<html>"))
        with self.assertRaises(InvocationError):
            invoker(self.request)

    def test_non_object_body(self):
        invoker = self.make_invoker(make_response(body=[1, 2]))
        with self.assertRaises(InvocationError) as ctx:
            invoker(self.request)
        self.assertIn("expected an object", str(ctx.exception))


if __name__ == '__main__':
    unittest.main()
