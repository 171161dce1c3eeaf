from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional

from .logger_factory import get_logger
from .utils.logfmt import fmt

DEFAULT_PROMPT_FILE = ".systemprompt"
NAMED_PROMPT_PREFIX = ".systemprompt_"
# "''" is how the default (unnamed) prompt is shown and selected
DEFAULT_PROMPT_LABEL = "''"

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class PromptLibrary:
    """System prompts stored as files in the data directory.

    ``.systemprompt`` is the default; ``.systemprompt_<name>`` are named
    alternatives users can pick with ``!chat systemprompt <name>``.
    """

    def __init__(self, base_path: Path | str):
        self.base_path = Path(base_path)
        self.log = get_logger("PromptLibrary")

    def path_for(self, name: Optional[str] = None) -> Path:
        if not name:
            return self.base_path / DEFAULT_PROMPT_FILE
        return self.base_path / f"{NAMED_PROMPT_PREFIX}{name}"

    def exists(self, name: str) -> bool:
        # Only plain names: no path separators or dots can sneak out of base_path
        if not name or not _SAFE_NAME_RE.match(name):
            return False
        return self.path_for(name).is_file()

    def list_names(self) -> list[str]:
        if not self.base_path.is_dir():
            return []
        names = []
        for p in sorted(self.base_path.iterdir()):
            if p.name == DEFAULT_PROMPT_FILE:
                names.append(DEFAULT_PROMPT_LABEL)
            elif p.name.startswith(NAMED_PROMPT_PREFIX) and p.is_file():
                names.append(p.name[len(NAMED_PROMPT_PREFIX):])
        return names

    def read_default(self) -> str:
        return self._read_file(self.path_for(None))

    def _read_file(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8") if path.is_file() else ""
        except OSError as e:
            self.log.error(f"[prompt-read-error] {fmt('path', path)} {fmt('error', e)}")
            return ""

    def read(self, name: Optional[str] = None, past_posts: str = "") -> str:
        """Prompt text for ``name`` (default when empty or unknown), with ``past_posts`` appended."""
        path = self.path_for(name) if (name and self.exists(name)) else self.path_for(None)
        base = self._read_file(path)
        if past_posts and past_posts.strip():
            return f"{base}\n\n{past_posts}"
        return base


def render_past_posts(posts: Iterable[str], limit: int = 20) -> str:
    """Markdown block listing the bot's own recent posts, or "" when there are none."""
    items = [p for p in posts if p and p.strip()][:limit]
    if not items:
        return ""
    return "## Past posts\n\n" + "\n".join(f"- {p}" for p in items)
