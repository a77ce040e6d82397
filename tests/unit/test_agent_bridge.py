"""Unit tests for the autonomous agent loop."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from pentrelay.ai.agent_bridge import AgentBridge, BridgeState
from pentrelay.engine.models import Fingerprint
from pentrelay.errors import AIRequestFailed, AIResponseMalformed, CommandRejected, InvalidTransition


def make_bridge(replies, **kwargs):
    client = MagicMock()
    client.ask = AsyncMock(side_effect=replies)
    client.aclose = AsyncMock()
    frames = []
    bridge = AgentBridge("s1", "10.0.0.5", frames.append, client, additional_info="web only", **kwargs)
    return bridge, client, frames


@pytest.mark.asyncio
async def test_start_forwards_first_command():
    bridge, client, frames = make_bridge(['{"command": "nmap -sV 10.0.0.5", "explanation": "recon"}'])

    assert await bridge.start() is True

    assert bridge.state is BridgeState.AWAITING_EXECUTION
    assert frames == [{
        "type": "execute-command",
        "command": "nmap -sV 10.0.0.5",
        "autoExecute": False,
        "explanation": "recon",
    }]
    prompt = client.ask.call_args.args[0]
    assert "10.0.0.5" in prompt
    assert "web only" in prompt


@pytest.mark.asyncio
async def test_loop_alternates_reasoning_and_execution():
    bridge, client, frames = make_bridge([
        '{"command": "nmap 10.0.0.5"}',
        '```json\n{"command": "nikto -h http://10.0.0.5"}\n```',
    ], connection=Fingerprint("10.0.0.5", 22, "kali"), auto_execute=True)

    await bridge.start()
    assert await bridge.on_command_output("nmap 10.0.0.5", "80/tcp open http") is True

    assert [f["command"] for f in frames] == ["nmap 10.0.0.5", "nikto -h http://10.0.0.5"]
    assert all(f["autoExecute"] is True for f in frames)
    assert frames[1]["connection"] == {"host": "10.0.0.5", "port": 22, "username": "kali"}
    assert bridge.history[0].output == "80/tcp open http"
    assert bridge.mode == "autonomous"
    followup = client.ask.call_args.args[0]
    assert "80/tcp open http" in followup
    assert "- nmap 10.0.0.5 (done)" in followup


@pytest.mark.asyncio
async def test_malformed_reply_abandons_round():
    bridge, client, frames = make_bridge([
        "I would probably scan it.",
        '{"command": "nmap 10.0.0.5"}',
    ])

    with pytest.raises(AIResponseMalformed):
        await bridge.start()
    assert bridge.state is BridgeState.AWAITING_REASONING
    assert bridge.active
    assert frames == []

    # Next output retries the round
    assert await bridge.on_command_output("", "") is True
    assert frames[0]["command"] == "nmap 10.0.0.5"


@pytest.mark.asyncio
async def test_rejected_command_is_not_forwarded():
    bridge, _, frames = make_bridge(['{"command": "rm -rf / --no-preserve-root"}'])

    with pytest.raises(CommandRejected) as exc:
        await bridge.start()

    assert "dangerous operation" in exc.value.details["reason"]
    assert bridge.state is BridgeState.AWAITING_REASONING
    assert frames == []
    assert bridge.history == []


@pytest.mark.asyncio
async def test_request_failure_propagates_while_active():
    bridge, _, frames = make_bridge([AIRequestFailed("down")])

    with pytest.raises(AIRequestFailed):
        await bridge.start()
    assert bridge.active
    assert frames == []


@pytest.mark.asyncio
async def test_stop_discards_in_flight_reply():
    release = asyncio.Event()

    async def slow_ask(prompt):
        await release.wait()
        return '{"command": "nmap 10.0.0.5"}'

    bridge, client, frames = make_bridge(None)
    client.ask = AsyncMock(side_effect=slow_ask)

    task = asyncio.ensure_future(bridge.start())
    await asyncio.sleep(0)
    assert bridge.reasoning_outstanding

    await bridge.stop()
    client.aclose.assert_not_awaited()
    release.set()

    assert await task is False
    assert frames == []
    assert bridge.state is BridgeState.STOPPED
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_failure_after_stop_is_swallowed():
    release = asyncio.Event()

    async def failing_ask(prompt):
        await release.wait()
        raise AIRequestFailed("connection reset")

    bridge, client, _ = make_bridge(None)
    client.ask = AsyncMock(side_effect=failing_ask)

    task = asyncio.ensure_future(bridge.start())
    await asyncio.sleep(0)
    await bridge.stop()
    release.set()

    assert await task is False


@pytest.mark.asyncio
async def test_output_ignored_when_stopped_or_busy():
    release = asyncio.Event()

    async def slow_ask(prompt):
        await release.wait()
        return '{"command": "nmap 10.0.0.5"}'

    bridge, client, _ = make_bridge(None)
    client.ask = AsyncMock(side_effect=slow_ask)

    task = asyncio.ensure_future(bridge.start())
    await asyncio.sleep(0)
    # One reasoning call at a time
    assert await bridge.on_command_output("x", "y") is False
    release.set()
    await task
    assert client.ask.await_count == 1

    await bridge.stop()
    assert await bridge.on_command_output("nmap 10.0.0.5", "done") is False
    assert client.ask.await_count == 1


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    bridge, client, _ = make_bridge([])
    await bridge.stop()
    await bridge.stop()
    assert bridge.state is BridgeState.STOPPED
    client.aclose.assert_awaited_once()

    with pytest.raises(InvalidTransition):
        await bridge.start()


def test_snapshot():
    bridge, _, _ = make_bridge([])
    snap = bridge.snapshot()
    assert snap["state"] == "idle"
    assert snap["mode"] == "supervised"
    assert snap["history"] == []


@pytest.mark.asyncio
async def test_stop_between_begin_and_reason_skips_the_call():
    bridge, client, frames = make_bridge(['{"command": "nmap 10.0.0.5"}'])

    prompt = bridge.begin()
    assert bridge.active
    assert bridge.reasoning_outstanding
    await bridge.stop()
    client.aclose.assert_not_awaited()

    assert await bridge.reason(prompt) is False
    client.ask.assert_not_awaited()
    client.aclose.assert_awaited_once()
    assert frames == []


@pytest.mark.asyncio
async def test_resume_reserves_the_next_round():
    bridge, client, _ = make_bridge(['{"command": "nmap 10.0.0.5"}'])
    await bridge.start()

    prompt = bridge.resume("nmap 10.0.0.5", "22/tcp open")
    assert "22/tcp open" in prompt
    assert bridge.reasoning_outstanding
    # A second output before the reserved round runs is ignored
    assert bridge.resume("nmap 10.0.0.5", "again") is None


@pytest.mark.asyncio
async def test_close_releases_client_for_a_round_never_run():
    bridge, client, _ = make_bridge([])
    bridge.begin()

    await bridge.close()

    assert bridge.state is BridgeState.STOPPED
    assert not bridge.reasoning_outstanding
    client.aclose.assert_awaited_once()
