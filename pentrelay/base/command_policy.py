"""Module command_policy: advisory check for agent-proposed commands."""
#
# PURPOSE:
# The agent bridge runs every command the reasoning service proposes through
# validate_command() before forwarding it to the browser. A command passes
# when it is non-empty, contains none of the blocked patterns, and starts
# with one of the allowed security tools.
#
# LIMITATION:
# Matching is case-insensitive substring/prefix matching on the raw text.
# There is no shell parsing: "nmap x; rm -r ~", "/usr/bin/rm -rf" style paths,
# quoting or variable expansion can all slip through. Treat this as an
# advisory filter that keeps an over-eager model on task, not as a sandbox.
#

from __future__ import annotations

import logging
from typing import Iterable, NamedTuple, Optional

from pentrelay.base.config import get_config

logger = logging.getLogger(__name__)


class CommandVerdict(NamedTuple):
    valid: bool
    reason: Optional[str] = None


def validate_command(
    command: Optional[str],
    allowed_tools: Optional[Iterable[str]] = None,
    blocked_patterns: Optional[Iterable[str]] = None,
) -> CommandVerdict:
    """
    Check a command against the allow-list and deny-list.

    Blocked patterns are checked before the allow-list so a destructive
    command is always reported as dangerous.

    Args:
        command: Raw command text proposed by the agent
        allowed_tools: Override for the configured allow-list
        blocked_patterns: Override for the configured deny-list

    Returns:
        CommandVerdict(valid, reason) where reason is None for valid commands
    """
    policy = get_config().policy
    allowed = tuple(t.lower() for t in (allowed_tools if allowed_tools is not None else policy.allowed_tools))
    blocked = tuple(p.lower() for p in (blocked_patterns if blocked_patterns is not None else policy.blocked_patterns))

    if command is None or not command.strip():
        return CommandVerdict(False, "empty")

    lowered = command.strip().lower()

    for pattern in blocked:
        if pattern in lowered:
            logger.warning(f"[Policy] Blocked dangerous command: {command!r} (matched {pattern!r})")
            return CommandVerdict(False, f"dangerous operation: contains '{pattern}'")

    leading = lowered.split()[0]
    if not any(leading.startswith(tool) for tool in allowed):
        return CommandVerdict(
            False,
            f"'{leading}' is not an allowed tool. Allowed tools: {', '.join(allowed)}",
        )

    return CommandVerdict(True)
