from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from jinja2 import BaseLoader, Environment

from .utils.time_utils import format_prompt_datetime, now_in

DATE_LINE_TEMPLATE = "The current date and time is {{ now }}."

SYSTEM_TURN_TEMPLATE = """## Basic information
""" + DATE_LINE_TEMPLATE + """
The time zone is {{ tz }}.
When handling dates, take the user's language into account (e.g. Japanese -> JST, UTC+9, Asia/Tokyo).
The AI model in use is {{ model }}.
{% if speaker %}The name of the person you are talking to is "{{ speaker }}". Do not put "@" in front of their name.
{% endif %}
{{ body }}"""


class PromptTemplateEngine:
    """Renders the synthesized system turn that leads every completion request."""

    def __init__(self, tz_name: Optional[str] = None, now: Optional[Callable[[], datetime]] = None):
        self.tz_name = tz_name
        self._now = now or (lambda: now_in(self.tz_name))
        self.env = Environment(loader=BaseLoader(), autoescape=False, keep_trailing_newline=False)
        self._system_tmpl = self.env.from_string(SYSTEM_TURN_TEMPLATE)
        self._date_tmpl = self.env.from_string(DATE_LINE_TEMPLATE)

    def formatted_now(self) -> str:
        return format_prompt_datetime(self._now())

    def date_line(self) -> str:
        """The date sentence as it appears in the system turn right now."""
        return self._date_tmpl.render(now=self.formatted_now())

    def render_system_turn(self, *, model: str, body: str, speaker: Optional[str] = None) -> str:
        now = self._now()
        return self._system_tmpl.render(
            now=format_prompt_datetime(now),
            tz=self.tz_name or now.tzname() or "local time",
            model=model,
            speaker=speaker or "",
            body=body or "",
        ).strip()
