"""
agent/context_builder.py — Model Context Builder

Assembles the message list sent to the model on every round:
    System prompt → session history (including this turn's tool traffic)

Reasoning stored on assistant messages is left out unless replay_thinking is
set, in which case it is re-wrapped in <think>…</think> ahead of the content.
"""

from __future__ import annotations

import platform
import time
from typing import Optional

from llamacli.brain.types import Message, Role

_SYSTEM_TEMPLATE = """\
You are {agent_name}, a command-line assistant running in the user's terminal.

## Capabilities
You can call tools to read and write files, list directories, search, fetch
web pages and run shell commands. Prefer reading before writing, and writing
before deleting.

## Guidelines
- Report tool errors honestly and never invent results.
- Potentially dangerous shell commands pause for the user's approval; if one is
  denied, do not retry it, explain what you wanted to do instead.
- Keep answers concise and use markdown where it helps.

## Environment
Working directory: {cwd}
Platform: {platform}
Current UTC time: {utc_time}"""


class ContextBuilder:
    """Builds the model-visible message list for each round of a turn."""

    def __init__(
        self,
        agent_name: str = "LlamaCLI",
        system_prompt: Optional[str] = None,
        replay_thinking: bool = False,
    ):
        self.agent_name = agent_name
        self.system_prompt = system_prompt
        self.replay_thinking = replay_thinking

    def system_message(self, session) -> Message:
        if self.system_prompt:
            return Message.system(self.system_prompt)
        cwd = session.shell.working_directory if session.shell is not None else "."
        return Message.system(
            _SYSTEM_TEMPLATE.format(
                agent_name=self.agent_name,
                cwd=cwd,
                platform=platform.system(),
                utc_time=time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime()),
            )
        )

    def build(self, session) -> list[Message]:
        messages = [self.system_message(session)]
        for msg in session.messages:
            if msg.role == Role.SYSTEM:
                continue
            if self.replay_thinking and msg.role == Role.ASSISTANT and msg.reasoning:
                msg = msg.model_copy(
                    update={"content": f"<think>{msg.reasoning}</think>{msg.content}"}
                )
            messages.append(msg)
        return messages
