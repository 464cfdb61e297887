"""Builds the system prompt and the message list for each chat turn."""

from __future__ import annotations

import json
import logging
from pathlib import Path

_log = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 16 * 1024

_TOOLS = (
    ("web_search",
     "Search the web for current information. Use this when you need up-to-date facts, "
     "news, weather, or anything beyond your training data."),
    ("get_current_time",
     "Get the current date and time. You do NOT have an internal clock \u2014 always use "
     "this tool when you need to know the time or date."),
    ("read_file", "Read a file from SPIFFS (path must start with /spiffs/)."),
    ("write_file", "Write/overwrite a file on SPIFFS."),
    ("edit_file", "Find-and-replace edit a file on SPIFFS."),
    ("list_dir", "List files on SPIFFS, optionally filter by prefix."),
    ("cron_add",
     "Schedule a recurring or one-shot task. The message will trigger an agent turn "
     "when the job fires."),
    ("cron_list", "List all scheduled cron jobs."),
    ("cron_remove", "Remove a scheduled cron job by ID."),
)

_MEMORY_LOCATIONS = (
    "Long-term memory: /spiffs/memory/MEMORY.md",
    "Daily notes: /spiffs/memory/daily/<YYYY-MM-DD>.md",
)

_MEMORY_RULES = (
    "When you learn something new about the user (name, preferences, habits, context), "
    "write it to MEMORY.md.",
    "When something noteworthy happens in a conversation, append it to today's daily note.",
    "Always read_file MEMORY.md before writing, so you can edit_file to update without "
    "losing existing content.",
    "Use get_current_time to know today's date before writing daily notes.",
    "Keep MEMORY.md concise and organized \u2014 summarize, don't dump raw conversation.",
    "You should proactively save memory without being asked. If the user tells you their "
    "name, preferences, or important facts, persist them immediately.",
)

_SKILL_NOTES = (
    "Skills are specialized instruction files stored in /spiffs/skills/.",
    "When a task matches a skill, read the full skill file for detailed instructions.",
    "You can create new skills using write_file to /spiffs/skills/<name>.md.",
)


def _bullets(items) -> str:
    return "\n".join(f"- {item}" for item in items)


def _base_prompt() -> str:
    paragraphs = [
        "# MimiClaw",
        "You are MimiClaw, a personal AI assistant running on an ESP32-S3 device.\n"
        "You communicate through Telegram and WebSocket.",
        "Be helpful, accurate, and concise.",
        "## Available Tools\nYou have access to the following tools:\n"
        + _bullets(f"{name}: {desc}" for name, desc in _TOOLS),
        "When using cron_add for Telegram delivery, always set channel='telegram' "
        "and a valid numeric chat_id.",
        "Use tools when needed. Provide your final answer as text after using tools.",
        "## Memory\nYou have persistent memory stored on local flash:\n"
        + _bullets(_MEMORY_LOCATIONS),
        "IMPORTANT: Actively use memory to remember things across conversations.\n"
        + _bullets(_MEMORY_RULES),
        "## Skills\n" + "\n".join(_SKILL_NOTES),
    ]
    return "\n\n".join(paragraphs) + "\n"


_BASE_PROMPT = _base_prompt()


def _file_section(path: str | Path | None, header: str) -> str:
    if path is None:
        return ""
    try:
        text = Path(path).read_bytes().decode("utf-8", errors="replace")
    except OSError:
        return ""
    return f"\n## {header}\n\n{text}"


def _clip_bytes(text: str, limit: int) -> str:
    data = text.encode("utf-8")
    if len(data) <= limit:
        return text
    return data[:limit].decode("utf-8", errors="ignore")


def build_system_prompt(
    soul_path: str | Path | None = None,
    user_path: str | Path | None = None,
    long_term_memory: str | None = None,
    recent_notes: str | None = None,
    skills_summary: str | None = None,
    max_size: int = DEFAULT_MAX_SIZE,
) -> str:
    """Compose the system prompt, cut to at most max_size - 1 UTF-8 bytes."""
    if max_size < 1:
        raise ValueError("max_size must be at least 1")

    parts = [
        _BASE_PROMPT,
        _file_section(soul_path, "Personality"),
        _file_section(user_path, "User Info"),
    ]
    if long_term_memory:
        parts.append(f"\n## Long-term Memory\n\n{long_term_memory}\n")
    if recent_notes:
        parts.append(f"\n## Recent Notes\n\n{recent_notes}\n")
    if skills_summary:
        parts.append(
            "\n## Available Skills\n\n"
            "Available skills (use read_file to load full instructions):\n"
            f"{skills_summary}\n"
        )

    prompt = _clip_bytes("".join(parts), max_size - 1)
    _log.info("System prompt built: %d bytes", len(prompt.encode("utf-8")))
    return prompt


def build_messages(history_json: str | None, user_message: str) -> str:
    """Append the user message to a JSON history array and return it as compact JSON."""
    history: list = []
    if history_json:
        try:
            parsed = json.loads(history_json)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            history = parsed
    history.append({"role": "user", "content": user_message})
    return json.dumps(history, separators=(",", ":"), ensure_ascii=False)