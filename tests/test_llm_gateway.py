import os
import unittest
from unittest import mock

import requests

from llm_gateway import (
    CompletionOptions,
    MalformedUpstreamResponse,
    ModelClient,
    UpstreamError,
    UpstreamTimeout,
    resolve_target,
)


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


class _FakeSession:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def _ok(content):
    return _FakeResponse(200, {"choices": [{"message": {"content": content}}], "usage": {"total_tokens": 12}})


def _client(outcome):
    target = resolve_target(api_key="sk-test", base_url="https://llm.example/", model="test-model")
    session = _FakeSession(outcome)
    return ModelClient(target, session=session), session


class TestResolveTarget(unittest.TestCase):
    def test_requires_api_key(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                resolve_target()

    def test_reads_environment(self):
        env = {
            "LLM_API_KEY": "sk-env",
            "LLM_BASE_URL": "https://proxy.example/",
            "LLM_ENDPOINT": "v1/chat/completions",
            "LLM_MODEL": "gpt-4o",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            target = resolve_target()
        self.assertEqual(target.base_url, "https://proxy.example")
        self.assertEqual(target.endpoint, "/v1/chat/completions")
        self.assertEqual(target.default_model, "gpt-4o")
        self.assertEqual(target.headers["Authorization"], "Bearer sk-env")

    def test_timeouts_are_always_finite(self):
        target = resolve_target(api_key="k", timeout_sec="none", connect_timeout_sec="inf")
        connect, read = target.timeout_sec
        self.assertEqual(read, 45.0)
        self.assertEqual(connect, 10.0)

        target = resolve_target(api_key="k", timeout_sec="9999", connect_timeout_sec="0.01")
        self.assertEqual(target.timeout_sec, (1.0, 300.0))
        self.assertEqual(ModelClient(target, session=_FakeSession(None)).read_timeout_sec, 300.0)


class TestModelClient(unittest.TestCase):
    def test_returns_message_content(self):
        client, session = _client(_ok('{"score": 70}'))
        text = client.complete("sys", "user", CompletionOptions(model="", max_tokens=200, temperature=0.1))
        self.assertEqual(text, '{"score": 70}')
        call = session.calls[0]
        self.assertEqual(call["url"], "https://llm.example/v1/chat/completions")
        self.assertEqual(call["json"]["model"], "test-model")
        self.assertEqual(call["json"]["max_tokens"], 200)
        self.assertEqual(call["json"]["messages"][0], {"role": "system", "content": "sys"})
        self.assertNotIn("response_format", call["json"])

    def test_json_mode_requests_json_object(self):
        client, session = _client(_ok("{}"))
        client.complete("sys", "user", CompletionOptions(model="gpt-4o", json_mode=True))
        payload = session.calls[0]["json"]
        self.assertEqual(payload["response_format"], {"type": "json_object"})
        self.assertEqual(payload["model"], "gpt-4o")

    def test_rate_limited_upstream_is_retryable(self):
        resp = _FakeResponse(429, {"error": {"message": "slow down"}}, headers={"retry-after": "7"})
        client, _ = _client(resp)
        with self.assertRaises(UpstreamError) as ctx:
            client.complete("sys", "user")
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.retry_after_sec, 7.0)
        self.assertEqual(ctx.exception.detail, "slow down")

    def test_client_errors_are_not_retryable(self):
        client, _ = _client(_FakeResponse(400, None, text="bad payload"))
        with self.assertRaises(UpstreamError) as ctx:
            client.complete("sys", "user")
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.detail, "bad payload")
        self.assertTrue(UpstreamError(502).retryable)

    def test_timeout_maps_to_upstream_timeout(self):
        client, _ = _client(requests.Timeout("read timed out"))
        with self.assertRaises(UpstreamTimeout) as ctx:
            client.complete("sys", "user")
        self.assertTrue(ctx.exception.retryable)

    def test_connection_failure_maps_to_503(self):
        client, _ = _client(requests.ConnectionError("refused"))
        with self.assertRaises(UpstreamError) as ctx:
            client.complete("sys", "user")
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertTrue(ctx.exception.retryable)

    def test_malformed_bodies(self):
        for resp in (
            _FakeResponse(200, None),
            _FakeResponse(200, {"choices": []}),
            _FakeResponse(200, {"choices": [{"message": {"content": None}}]}),
        ):
            client, _ = _client(resp)
            with self.assertRaises(MalformedUpstreamResponse) as ctx:
                client.complete("sys", "user")
            self.assertFalse(ctx.exception.retryable)


if __name__ == "__main__":
    unittest.main()
