"""Tests for the LLM fallback: prompt building, reply parsing and providers."""

from __future__ import annotations

import json
import time

import httpx
import pytest

from jobsync.corrections.store import Correction
from jobsync.errors import LLMError
from jobsync.extraction.llm import (
    DEFAULT_CONFIDENCE,
    TRUNCATION_MARKER,
    OllamaProvider,
    build_classification_prompt,
    build_few_shot_block,
    classify_with_model,
    create_llm_provider,
    extract_with_model,
    find_json_object,
    generate_with_timeout,
    parse_classification_response,
    truncate_body,
)
from jobsync.extraction.types import ClassificationType

from conftest import StubProvider, make_message


def _correction(idx: int) -> Correction:
    return Correction(
        message_id=f"m{idx}@x",
        original_type="other",
        corrected_type="interview",
        subject=f"Chat next week {idx}",
        from_email="jane@startup.io",
        body_preview="Would love to chat about the role " * 40,
        high_variance=True,
    )


class TestParseClassificationResponse:
    def test_full_reply(self):
        reply = json.dumps({
            "type": "interview",
            "confidence": 0.85,
            "reasoning": "asks to schedule a call",
            "extractedData": {"company": "Acme", "jobTitle": "Engineer", "location": None},
        })
        result = parse_classification_response(reply)
        assert result.type is ClassificationType.INTERVIEW
        assert result.confidence == 0.85
        assert result.source == "llm"
        assert result.reason == "asks to schedule a call"
        assert result.extracted_data.company == "Acme"
        assert result.extracted_data.job_title == "Engineer"

    def test_json_wrapped_in_prose(self):
        reply = 'Sure! Here you go:\n```json\n{"type": "rejection", "confidence": 0.9, "reasoning": "uses {braces}"}\n```'
        result = parse_classification_response(reply)
        assert result.type is ClassificationType.REJECTION
        assert result.reason == "uses {braces}"

    def test_missing_confidence_defaults(self):
        result = parse_classification_response('{"classification": "offer"}')
        assert result.type is ClassificationType.OFFER
        assert result.confidence == DEFAULT_CONFIDENCE

    def test_confidence_is_clamped(self):
        assert parse_classification_response('{"type": "offer", "confidence": 3}').confidence == 1.0
        assert parse_classification_response('{"type": "offer", "confidence": "high"}').confidence == DEFAULT_CONFIDENCE

    @pytest.mark.parametrize("reply", ["", "no json here", '{"type": "spam"}', "{broken", "[1, 2]"])
    def test_unusable_reply_is_none_not_other(self, reply):
        assert parse_classification_response(reply) is None

    def test_find_json_object_ignores_braces_in_strings(self):
        assert find_json_object('x {"a": "}"} y') == '{"a": "}"}'
        assert find_json_object("nothing") is None


class TestPrompts:
    def test_few_shot_block_format(self):
        block = build_few_shot_block([_correction(1)])
        assert block.startswith("Here are some examples of previous corrections to learn from:")
        assert 'Example 1 (CORRECTED - was "other", should be "interview"):' in block
        assert "Direction: RECEIVED" in block
        assert "CORRECT classification: interview" in block
        assert block.rstrip().endswith("Now classify the following email:")
        preview_line = next(line for line in block.splitlines() if line.startswith("Body preview: "))
        assert len(preview_line) == len("Body preview: ") + 500

    def test_no_examples_no_block(self):
        assert build_few_shot_block([]) == ""

    def test_classification_prompt_fields(self):
        msg = make_message("Quick chat?", text_body="x" * 50, is_outbound=True)
        system, user = build_classification_prompt(msg, [_correction(1), _correction(2)], body_chars=10)
        assert "job_application" in system
        assert "Example 2" in user
        assert "Direction: SENT" in user
        assert "From: Acme Careers <careers@acme.io>" in user
        assert "Subject: Quick chat?" in user
        assert "Date: 2025-01-06T09:00:00+00:00" in user
        assert user.endswith("x" * 10 + TRUNCATION_MARKER)

    def test_truncate_body(self):
        assert truncate_body("short", 10) == "short"
        assert truncate_body("a" * 20, 10) == "a" * 10 + TRUNCATION_MARKER


class TestModelCalls:
    def test_classify_with_model_sends_examples(self):
        provider = StubProvider('{"type": "interview", "confidence": 0.7}')
        result = classify_with_model(provider, make_message("Coffee?"), [_correction(1)])
        assert result.type is ClassificationType.INTERVIEW
        assert "Example 1" in provider.prompts[0]

    def test_provider_error_returns_none(self):
        provider = StubProvider(error=LLMError("connection refused"))
        assert classify_with_model(provider, make_message("Coffee?")) is None

    def test_extract_with_model(self):
        provider = StubProvider('{"company": "Acme", "jobTitle": "Engineer", "source": null}')
        data = extract_with_model(provider, make_message("Coffee?"))
        assert data.company == "Acme"
        assert data.job_title == "Engineer"
        assert data.source is None

    def test_extract_with_model_bad_json(self):
        assert extract_with_model(StubProvider("not json"), make_message("Coffee?")) is None

    def test_hard_timeout(self):
        class SlowProvider:
            def generate(self, prompt, *, system=None, max_tokens=None):
                time.sleep(2)
                return "{}"

        with pytest.raises(LLMError):
            generate_with_timeout(SlowProvider(), "hi", timeout_sec=0.1)


class TestOllamaProvider:
    def test_generate_posts_json_request(self, config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": '{"type": "offer"}'})

        client = httpx.Client(base_url="http://ollama.test", transport=httpx.MockTransport(handler))
        provider = OllamaProvider(config, client=client)
        reply = provider.generate("classify this", system="be brief", max_tokens=50)

        assert reply == '{"type": "offer"}'
        assert seen["path"] == "/api/generate"
        assert seen["body"]["model"] == config.llm_model
        assert seen["body"]["format"] == "json"
        assert seen["body"]["stream"] is False
        assert seen["body"]["system"] == "be brief"
        assert seen["body"]["options"]["num_predict"] == 50

    def test_http_error_raises(self, config):
        client = httpx.Client(
            base_url="http://ollama.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )
        with pytest.raises(LLMError):
            OllamaProvider(config, client=client).generate("hi")

    def test_unknown_provider(self, config):
        with pytest.raises(ValueError):
            create_llm_provider(config.model_copy(update={"llm_provider": "nope"}))
