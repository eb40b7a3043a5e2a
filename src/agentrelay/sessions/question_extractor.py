"""Extract a question and numbered options from agent output."""

import re

from agentrelay.sessions.models import Option, Question

# Selection cursor drawn by Claude Code (❯) and Codex (›).
CURSOR_GLYPHS = "❯›"

# Leftover CSI/OSC sequences and control chars other than \n and \t.
_CONTROL_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|[\x00-\x08\x0b-\x1f\x7f]"
)

# "  ❯ 2. Run tests" / "3) Cancel"
_OPTION_RE = re.compile(
    rf"^\s*(?P<cursor>[{CURSOR_GLYPHS}])?\s*(?P<num>\d+)[.)]\s+(?P<title>.+)$"
)

# Start of an option line, used to reject it as a description.
_OPTION_START_RE = re.compile(rf"^[{CURSOR_GLYPHS}]?\s*\d+[.)]")

# Claude's greeting question outranks any other "?" line.
_GREETING_RE = re.compile(r"what would you like[^\n]*\?", re.IGNORECASE)


def clean_text(text: str) -> str:
    """Drop control characters, keeping line breaks."""
    return _CONTROL_RE.sub("", text)


def _find_question(lines: list[str], text: str) -> str | None:
    greeting = _GREETING_RE.search(text)
    if greeting:
        return greeting.group(0).strip()
    for line in reversed(lines):
        if "?" in line:
            return line.strip()
    return None


def _find_options(lines: list[str]) -> list[Option] | None:
    options: list[Option] = []
    for i, line in enumerate(lines):
        m = _OPTION_RE.match(line)
        if not m:
            continue
        description = None
        if i + 1 < len(lines):
            following = lines[i + 1].strip()
            if following and not _OPTION_START_RE.match(following):
                description = following
        options.append(
            Option(
                number=int(m.group("num")),
                title=m.group("title").strip(),
                description=description,
                selected=m.group("cursor") is not None,
            )
        )
    return options or None


def extract(stripped: str) -> Question:
    """Turn ANSI-stripped terminal text into a Question.

    ``options`` is None, never empty, when no numbered line is
    found. ``raw_text`` always holds the whole cleaned input so
    callers can fall back to showing the transcript.
    """
    text = clean_text(stripped)
    lines = text.split("\n")
    return Question(
        question=_find_question(lines, text),
        options=_find_options(lines),
        raw_text=text.strip(),
    )
