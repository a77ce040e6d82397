"""Module agent_bridge: per-session loop between the reasoning service and the browser."""
#
# PURPOSE:
# In autonomous mode the gateway asks an external reasoning service for the
# next command, hands that command to the browser for execution, and feeds
# the command's output back to get the command after that.
#
# STATE MACHINE:
#   idle → awaiting-reasoning → awaiting-execution → awaiting-reasoning → … → stopped
#
# - A reply that holds no command (AIResponseMalformed) or a command the
#   policy rejects (CommandRejected) abandons the round: the bridge stays in
#   awaiting-reasoning and the next command_output frame starts a new round.
# - Exactly one reasoning call is outstanding at a time. begin() and resume()
#   reserve it synchronously; reason() performs it.
# - stop() is cooperative: an in-flight call still completes, but its reply is
#   discarded because the bridge is no longer active.
#

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pentrelay.ai import prompts
from pentrelay.ai.reasoning_client import ReasoningClient
from pentrelay.ai.response_parser import parse_agent_reply
from pentrelay.base.command_policy import CommandVerdict, validate_command
from pentrelay.engine.models import Fingerprint
from pentrelay.errors import CommandRejected, InvalidTransition, RelayError
from pentrelay.server.frames import execute_command_frame

logger = logging.getLogger(__name__)

Emit = Callable[[Dict[str, Any]], None]

# Commands listed in follow-up prompts
HISTORY_WINDOW = 10


class BridgeState(str, Enum):
    IDLE = "idle"
    AWAITING_REASONING = "awaiting-reasoning"
    AWAITING_EXECUTION = "awaiting-execution"
    STOPPED = "stopped"


TRANSITIONS: Dict[BridgeState, frozenset] = {
    BridgeState.IDLE: frozenset({BridgeState.AWAITING_REASONING, BridgeState.STOPPED}),
    BridgeState.AWAITING_REASONING: frozenset({
        BridgeState.AWAITING_REASONING,
        BridgeState.AWAITING_EXECUTION,
        BridgeState.STOPPED,
    }),
    BridgeState.AWAITING_EXECUTION: frozenset({BridgeState.AWAITING_REASONING, BridgeState.STOPPED}),
    BridgeState.STOPPED: frozenset(),
}


@dataclass
class HistoryEntry:
    command: str
    timestamp: float
    output: Optional[str] = None
    explanation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "timestamp": self.timestamp,
            "output": self.output,
            "explanation": self.explanation,
        }


class AgentBridge:
    def __init__(
        self,
        session_id: str,
        target: str,
        emit: Emit,
        client: ReasoningClient,
        additional_info: str = "",
        system_prompt: Optional[str] = None,
        connection: Optional[Fingerprint] = None,
        auto_execute: bool = False,
        validator: Callable[[str], CommandVerdict] = validate_command,
    ):
        self.session_id = session_id
        self.target = target
        self.additional_info = additional_info
        self.system_prompt = system_prompt or prompts.PROMPT_TEMPLATES["default-pentest"]
        self.connection = connection
        self.auto_execute = auto_execute
        self.mode = "autonomous" if auto_execute else "supervised"
        self.client = client

        self.state = BridgeState.IDLE
        self.active = False
        self.history: List[HistoryEntry] = []
        self.rounds = 0

        self._emit = emit
        self._validate = validator
        self._outstanding = False

    def __repr__(self) -> str:
        return f"<AgentBridge {self.session_id} target={self.target!r} state={self.state.value}>"

    @property
    def reasoning_outstanding(self) -> bool:
        return self._outstanding

    def _transition(self, new_state: BridgeState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Agent bridge: {self.state.value} -> {new_state.value} is not allowed",
                details={"from": self.state.value, "to": new_state.value},
            )
        self.state = new_state

    async def start(self) -> bool:
        """
        Begin the loop with the initial prompt.

        Returns True when a command was forwarded to the browser.

        Raises:
            AIRequestFailed / AIResponseMalformed / CommandRejected for this
            round; the bridge stays active in awaiting-reasoning.
        """
        return await self.reason(self.begin())

    def begin(self) -> str:
        """
        Activate the loop and reserve the first reasoning call.

        Synchronous so the gateway can apply it in frame order; the returned
        prompt is then sent with reason().
        """
        self._transition(BridgeState.AWAITING_REASONING)
        self.active = True
        self._outstanding = True
        logger.info(f"[Bridge:{self.session_id}] Autonomous session started against {self.target} ({self.mode})")
        return prompts.build_initial_prompt(self.system_prompt, self.target, self.additional_info)

    async def on_command_output(self, command: str, output: str) -> bool:
        """
        Resume the loop with the output of the last forwarded command.

        Ignored (returns False) when the bridge is stopped, when a reasoning
        call is already outstanding, or before the loop has started.
        """
        prompt = self.resume(command, output)
        if prompt is None:
            return False
        return await self.reason(prompt)

    def resume(self, command: str, output: str) -> Optional[str]:
        """Record a command's output and reserve the follow-up call. None when ignored."""
        if not self.active:
            logger.debug(f"[Bridge:{self.session_id}] Ignoring command output: bridge inactive")
            return None
        if self._outstanding:
            logger.warning(f"[Bridge:{self.session_id}] Ignoring command output: reasoning call in flight")
            return None

        if self.state is BridgeState.AWAITING_EXECUTION:
            last = self.history[-1]
            if command and command.strip() != last.command:
                logger.warning(
                    f"[Bridge:{self.session_id}] Output is for {command!r}, expected {last.command!r}"
                )
            last.output = output
        elif self.state is BridgeState.AWAITING_REASONING:
            # Previous round was abandoned; this output starts a fresh one
            logger.info(f"[Bridge:{self.session_id}] Retrying abandoned round")
        else:
            return None

        prompt = prompts.build_followup_prompt(
            self.system_prompt,
            self.target,
            self.additional_info,
            command=command or (self.history[-1].command if self.history else ""),
            output=output,
            history_summary=self._history_summary(),
        )
        self._transition(BridgeState.AWAITING_REASONING)
        self._outstanding = True
        return prompt

    async def reason(self, prompt: str) -> bool:
        """Run one reserved reasoning round and forward the command it yields."""
        if not self.active:
            # Stopped between begin()/resume() and the call itself
            self._outstanding = False
            await self.client.aclose()
            logger.info(f"[Bridge:{self.session_id}] Stopped before the reasoning call was made")
            return False

        self._outstanding = True
        self.rounds += 1
        try:
            text = await self.client.ask(prompt)
        except RelayError:
            if not self.active:
                logger.info(f"[Bridge:{self.session_id}] Reasoning failed after stop; discarding")
                return False
            raise
        finally:
            self._outstanding = False
            if not self.active:
                await self.client.aclose()

        if not self.active:
            logger.info(f"[Bridge:{self.session_id}] Discarding reasoning reply received after stop")
            return False

        reply = parse_agent_reply(text)
        command = str(reply.get("command") or "").strip()

        verdict = self._validate(command)
        if not verdict.valid:
            logger.warning(f"[Bridge:{self.session_id}] Rejected AI command {command!r}: {verdict.reason}")
            raise CommandRejected(
                f"AI proposed a rejected command ({verdict.reason}): {command}",
                details={"command": command, "reason": verdict.reason},
            )

        explanation = reply.get("explanation") or reply.get("reasoning")
        self.history.append(HistoryEntry(
            command=command,
            timestamp=time.time(),
            explanation=str(explanation) if explanation else None,
        ))
        self._transition(BridgeState.AWAITING_EXECUTION)
        logger.info(f"[Bridge:{self.session_id}] Forwarding command #{len(self.history)}: {command}")
        self._emit(execute_command_frame(
            command,
            connection=self.connection,
            auto_execute=self.auto_execute,
            explanation=self.history[-1].explanation,
        ))
        return True

    def _history_summary(self) -> str:
        lines = []
        for entry in self.history[-HISTORY_WINDOW:]:
            status = "done" if entry.output is not None else "pending"
            lines.append(f"- {entry.command} ({status})")
        return "\n".join(lines)

    async def stop(self) -> None:
        """Deactivate the loop. Any reply still in flight is discarded when it lands."""
        if self.state is BridgeState.STOPPED:
            return
        self.active = False
        self._transition(BridgeState.STOPPED)
        logger.info(f"[Bridge:{self.session_id}] Stopped after {len(self.history)} command(s)")
        if not self._outstanding:
            await self.client.aclose()

    async def close(self) -> None:
        """Stop the loop and release the reasoning client, whatever round was pending."""
        await self.stop()
        if self._outstanding:
            self._outstanding = False
            await self.client.aclose()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "mode": self.mode,
            "state": self.state.value,
            "active": self.active,
            "rounds": self.rounds,
            "history": [entry.to_dict() for entry in self.history],
        }
