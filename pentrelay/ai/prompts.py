"""Prompt templates for the autonomous agent loop."""

from __future__ import annotations

from typing import Dict, Optional

RESPONSE_CONTRACT = (
    "Reply with a single JSON object and nothing else, in the form "
    '{"command": "<one shell command to run next>", "explanation": "<why>"}. '
    "Propose exactly one command per reply, starting with the tool name "
    "(for example nmap, nikto, gobuster, sqlmap). Never propose destructive "
    "commands such as recursive deletes or raw disk writes."
)

PROMPT_TEMPLATES: Dict[str, str] = {
    "default-pentest": (
        "You are a security assistant driving a penetration test against {{TARGET}}.\n"
        "Find real vulnerabilities and choose the right tool for each step.\n\n"
        "Guidelines:\n"
        "1. Start with reconnaissance before anything invasive\n"
        "2. Base each next step on what earlier output revealed\n"
        "3. Explain your reasoning briefly\n"
        "4. Focus on real, demonstrable issues\n\n"
        "Additional context: {{ADDITIONAL_INFO}}"
    ),
    "web-app-pentest": (
        "You are a security assistant driving a web application penetration test against {{TARGET}}.\n"
        "Look for OWASP Top 10 issues such as XSS, CSRF and SQL injection.\n\n"
        "Guidelines:\n"
        "1. Map the application first (directories, technologies)\n"
        "2. Prefer web scanners such as nikto, gobuster, whatweb and sqlmap\n"
        "3. Concentrate on input validation, authentication and session handling\n\n"
        "Additional context: {{ADDITIONAL_INFO}}"
    ),
    "network-pentest": (
        "You are a security assistant driving a network infrastructure penetration test against {{TARGET}}.\n"
        "Look for exposed services, misconfigurations and entry points.\n\n"
        "Guidelines:\n"
        "1. Begin with port scanning and service enumeration\n"
        "2. Fingerprint each service before probing it\n"
        "3. Avoid tests likely to disrupt network services\n\n"
        "Additional context: {{ADDITIONAL_INFO}}"
    ),
}

# Tool output beyond this many characters is truncated in follow-up prompts
MAX_OUTPUT_CHARS = 12000


def render_template(template: str, target: str, additional_info: str) -> str:
    return (
        template
        .replace("{{TARGET}}", target)
        .replace("{{ADDITIONAL_INFO}}", additional_info or "None provided")
    )


def resolve_template(name: Optional[str], override: Optional[str], default_name: str) -> str:
    """Pick the system prompt: explicit override, then named template, then default."""
    if override and override.strip():
        return override
    if name and name in PROMPT_TEMPLATES:
        return PROMPT_TEMPLATES[name]
    return PROMPT_TEMPLATES.get(default_name, PROMPT_TEMPLATES["default-pentest"])


def build_initial_prompt(system_prompt: str, target: str, additional_info: str) -> str:
    return (
        f"{render_template(system_prompt, target, additional_info)}\n\n"
        f"Target: {target}\n"
        "What is the first command to run?\n\n"
        f"{RESPONSE_CONTRACT}"
    )


def build_followup_prompt(
    system_prompt: str,
    target: str,
    additional_info: str,
    command: str,
    output: str,
    history_summary: str,
) -> str:
    if len(output) > MAX_OUTPUT_CHARS:
        output = output[:MAX_OUTPUT_CHARS] + f"\n[... truncated {len(output) - MAX_OUTPUT_CHARS} characters]"
    return (
        f"{render_template(system_prompt, target, additional_info)}\n\n"
        f"Target: {target}\n"
        f"Commands run so far:\n{history_summary or '(none)'}\n\n"
        f"Last command: {command}\n"
        f"Output:\n{output or '(no output)'}\n\n"
        "Based on this output, what is the next command to run?\n\n"
        f"{RESPONSE_CONTRACT}"
    )
