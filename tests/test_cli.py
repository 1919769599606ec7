"""Tests for the CLI JSON-lines adapter argument handling."""

from __future__ import annotations

import json

import pytest

from pipe_engine.adapters.cli.main import parse_args


class TestParseArgs:
    def test_model_and_text_from_argv(self):
        request = parse_args(["openai:gpt-4o-mini", "hello", "there"], "")
        assert request.model == "openai:gpt-4o-mini"
        assert request.messages[0].content == "hello there"
        assert request.stream is True

    def test_json_request_from_stdin(self):
        raw = json.dumps({
            "model": "anthropic:claude-3-5-haiku",
            "messages": [{"role": "user", "content": "hi {{who}}"}],
            "variables": {"who": "you"},
            "tools": [{"name": "ignored"}],
        })
        request = parse_args([], raw)
        assert request.model == "anthropic:claude-3-5-haiku"
        assert request.variables == {"who": "you"}
        assert request.tools == []
        assert request.stream is True

    def test_empty_input_is_usage_error(self):
        with pytest.raises(ValueError, match="Usage"):
            parse_args([], "   ")

    def test_bad_json_is_value_error(self):
        with pytest.raises(ValueError):
            parse_args([], "{not json")
