from __future__ import annotations

import re
from typing import Callable, Optional

from .logger_factory import get_logger
from .preference_store import PreferenceStore
from .prompt_library import PromptLibrary
from .utils.logfmt import fmt

HELP_MESSAGE = """
!chat systemprompt [value] Set the system prompt.
!chat help Show this help."""

_COMMAND_RE = re.compile(r"^!chat (systemprompt|help)")
_RESET_VALUES = ("''", '""')


def is_command(text: str) -> bool:
    return text.strip().startswith("!")


def is_chat_command(text: str) -> bool:
    return text.strip().startswith("!chat")


class ChatCommands:
    """The ``!chat`` administrative surface reachable behind the skip marker.

    ``clear_session(conversant_id)`` is called whenever the prompt changes so
    the next mention starts a fresh conversation under the new prompt.
    """

    def __init__(
        self,
        prefs: PreferenceStore,
        prompts: PromptLibrary,
        clear_session: Optional[Callable[[str], object]] = None,
    ):
        self.prefs = prefs
        self.prompts = prompts
        self._clear_session = clear_session
        self.log = get_logger("ChatCommands")

    def _reset_conversation(self, conversant_id: str) -> None:
        if self._clear_session is not None:
            self._clear_session(conversant_id)

    def handle(self, text: str, acct: str, conversant_id: str) -> str:
        text = text.strip()
        m = _COMMAND_RE.match(text)
        if not m:
            return HELP_MESSAGE
        command = m.group(1)
        self.log.info(f"[chat-command] {fmt('acct', acct)} {fmt('command', command)}")
        if command == "systemprompt":
            return self._systemprompt(text[len("!chat systemprompt"):].strip(), acct, conversant_id)
        return HELP_MESSAGE

    def _systemprompt(self, value: str, acct: str, conversant_id: str) -> str:
        if not value:
            current = self.prefs.get_system_prompt(acct) or "the default"
            values = "\n".join(f"- {name}" for name in self.prompts.list_names())
            return f"The system prompt is {current}.\n!chat systemprompt [value]\n\nvalues:\n{values}"
        if value in _RESET_VALUES:
            self.prefs.set_system_prompt(acct, "")
            self._reset_conversation(conversant_id)
            return "The system prompt has been reset."
        if self.prompts.exists(value):
            self.prefs.set_system_prompt(acct, value)
            self._reset_conversation(conversant_id)
            return f"The system prompt is now {value}."
        return "That system prompt was not found."
