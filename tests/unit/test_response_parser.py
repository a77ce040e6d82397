"""Unit tests for extracting commands from reasoning-service replies."""
import pytest

from pentrelay.ai.response_parser import parse_agent_reply
from pentrelay.errors import AIResponseMalformed, ErrorCode


def test_bare_json():
    reply = parse_agent_reply('{"command": "nmap -sV 10.0.0.5", "explanation": "recon"}')
    assert reply == {"command": "nmap -sV 10.0.0.5", "explanation": "recon"}


def test_fenced_json_block():
    text = (
        "Sure, here is the next step.\n"
        "```json\n"
        '{"command": "nikto -h http://10.0.0.5"}\n'
        "```\n"
        "Let me know the output."
    )
    assert parse_agent_reply(text)["command"] == "nikto -h http://10.0.0.5"


def test_unlabelled_fence():
    assert parse_agent_reply('```\n{"command": "whois example.com"}\n```')["command"] == "whois example.com"


def test_content_after_thinking_delimiter():
    text = (
        "<think>The host has port 80 open, so {maybe} try a web scan.</think>\n"
        '{"command": "whatweb http://10.0.0.5", "reasoning": "port 80 open"}'
    )
    reply = parse_agent_reply(text)
    assert reply["command"] == "whatweb http://10.0.0.5"
    assert reply["reasoning"] == "port 80 open"


def test_fenced_block_after_thinking_delimiter():
    text = '<think>plan</think>\nNext:\n```json\n{"command": "dig example.com"}\n```'
    assert parse_agent_reply(text)["command"] == "dig example.com"


def test_json_without_command_key_is_skipped():
    text = '```json\n{"note": "nothing"}\n```\n```json\n{"command": "host example.com"}\n```'
    assert parse_agent_reply(text)["command"] == "host example.com"


@pytest.mark.parametrize("text", [
    None,
    "",
    "   ",
    "I think you should run nmap next.",
    '{"note": "no command here"}',
    "[1, 2, 3]",
])
def test_malformed_replies(text):
    with pytest.raises(AIResponseMalformed) as exc:
        parse_agent_reply(text)
    assert exc.value.code == ErrorCode.AI_JSON_PARSE_ERROR


def test_null_command_is_kept_for_the_validator():
    assert parse_agent_reply('{"command": null}') == {"command": None}
