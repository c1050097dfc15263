"""Tests for the JSON-mode LiteLLM wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from scan_pipeline.services.llm_client import complete_json, image_message, parse_json_response

from conftest import llm_response


class TestParseJsonResponse:
    def test_plain_json(self):
        assert parse_json_response('{"producer": "Opus One Winery"}') == {"producer": "Opus One Winery"}

    def test_strips_markdown_fences(self):
        text = '```json\n{"year": 2019}\n```'
        assert parse_json_response(text) == {"year": 2019}

    @pytest.mark.parametrize("text", [None, "", "not json", "[1, 2]", '"just a string"'])
    def test_rejects_non_objects(self, text):
        with pytest.raises(ValueError):
            parse_json_response(text)


def test_image_message_shape():
    message = image_message("Read this label", "https://x.supabase.co/a.jpg")
    assert message["role"] == "user"
    assert message["content"][0] == {"type": "text", "text": "Read this label"}
    assert message["content"][1]["image_url"]["url"] == "https://x.supabase.co/a.jpg"


class TestCompleteJson:
    @pytest.mark.asyncio
    async def test_requests_json_mode_with_timeout(self):
        mock_litellm = MagicMock()
        mock_litellm.acompletion = AsyncMock(return_value=llm_response('{"ok": true}'))

        with patch("scan_pipeline.services.llm_client._get_litellm", return_value=mock_litellm):
            result = await complete_json(
                "gpt-4o-mini",
                [{"role": "user", "content": "hi"}],
                temperature=0.2,
                max_tokens=100,
                timeout=12,
            )

        assert result == {"ok": True}
        kwargs = mock_litellm.acompletion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["timeout"] == 12
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self, monkeypatch):
        monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "7")
        mock_litellm = MagicMock()
        mock_litellm.acompletion = AsyncMock(return_value=llm_response("{}"))

        with patch("scan_pipeline.services.llm_client._get_litellm", return_value=mock_litellm):
            await complete_json("m", [], temperature=0, max_tokens=10)

        assert mock_litellm.acompletion.call_args.kwargs["timeout"] == 7.0

    @pytest.mark.asyncio
    async def test_provider_errors_propagate(self):
        mock_litellm = MagicMock()
        mock_litellm.acompletion = AsyncMock(side_effect=TimeoutError("timed out"))

        with patch("scan_pipeline.services.llm_client._get_litellm", return_value=mock_litellm):
            with pytest.raises(TimeoutError):
                await complete_json("m", [], temperature=0, max_tokens=10)
