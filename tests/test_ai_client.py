import unittest
from unittest import mock

import requests

from agendasync.ai_client import OpenAICompatibleClient, _extract_json_payload
from agendasync.errors import PlannerUnavailableError
from agendasync.models import AIConfig


def _response(content: str) -> mock.Mock:
    response = mock.Mock()
    response.raise_for_status.return_value = None
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class ExtractJsonPayloadTests(unittest.TestCase):
    def test_plain_fenced_and_embedded(self) -> None:
        self.assertEqual(_extract_json_payload('{"items": []}'), '{"items": []}')
        self.assertEqual(_extract_json_payload('```json\n{"items": []}\n```'), '{"items": []}')
        self.assertEqual(_extract_json_payload('Here you go: {"a": 1} done'), '{"a": 1}')
        with self.assertRaises(ValueError):
            _extract_json_payload("no json here")


class OpenAICompatibleClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = OpenAICompatibleClient(AIConfig(base_url="https://api.example.com/v1/", api_key="k"))
        self.messages = [{"role": "user", "content": "plan"}]

    def test_unconfigured_client_is_unavailable(self) -> None:
        client = OpenAICompatibleClient(AIConfig(api_key=""))
        with self.assertRaises(PlannerUnavailableError):
            client.generate_plan(messages=self.messages)

    def test_generate_plan_parses_fenced_json(self) -> None:
        with mock.patch("agendasync.ai_client.requests.post", return_value=_response('```json\n{"items": []}\n```')) as post:
            plan = self.client.generate_plan(messages=self.messages)
        self.assertEqual(plan, {"items": []})
        self.assertEqual(post.call_args.args[0], "https://api.example.com/v1/chat/completions")
        self.assertEqual(post.call_args.kwargs["json"]["messages"], self.messages)

    def test_transport_error_is_unavailable(self) -> None:
        with mock.patch("agendasync.ai_client.requests.post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(PlannerUnavailableError):
                self.client.generate_plan(messages=self.messages)

    def test_garbage_and_non_object_roots_are_unavailable(self) -> None:
        for content in ("I cannot help", "```json\n{not json}\n```"):
            with mock.patch("agendasync.ai_client.requests.post", return_value=_response(content)):
                with self.assertRaises(PlannerUnavailableError):
                    self.client.generate_plan(messages=self.messages)

    def test_connectivity_reports_http_error(self) -> None:
        response = mock.Mock(ok=False, status_code=401, text="unauthorized")
        with mock.patch("agendasync.ai_client.requests.post", return_value=response):
            ok, message = self.client.test_connectivity()
        self.assertFalse(ok)
        self.assertIn("401", message)


if __name__ == "__main__":
    unittest.main()
