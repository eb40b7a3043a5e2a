"""Classify agent output as working or waiting for input.

A best-effort heuristic over visible text: a rolling window of
ANSI-stripped output is matched against two ordered rule tables.
Working rules propose ``working``; any waiting rule overrides
the proposal, because a prompt signature is a stronger signal
than a progress string that may itself look like a question.

Output evaluated while the agent is ``working`` is dropped from
the window afterwards, so the window seen on a transition to
``waiting`` starts at the frame that carried the prompt. While
``waiting`` the window keeps growing (bounded) until a frame
flips the state back.
"""

import re
from dataclasses import dataclass

import structlog

from agentrelay.sessions.models import AgentState, Question, StateChange
from agentrelay.sessions.question_extractor import extract

logger = structlog.get_logger()

# CSI (incl. private "<=>?" parameters), OSC, and two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()][0-9A-Za-z]"
    r"|\x1b[=>78DEHMc]"
)

# "..." or the unicode ellipsis Claude Code prints.
_ELLIPSIS = r"(?:\.\.\.|…)"

# Spinner glyphs of Claude Code status lines ("✳ Moonwalking…").
_SPINNER_CHARS = "·⏺✢✳✶✻✽"


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences."""
    return _ANSI_RE.sub("", text)


@dataclass(frozen=True)
class ClassifierRule:
    """One pattern in the rule table.

    Patterns are matched against the lower-cased window.
    """

    name: str
    pattern: re.Pattern[str]
    state: AgentState

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, pattern: str, state: AgentState) -> ClassifierRule:
    return ClassifierRule(name, re.compile(pattern, re.MULTILINE), state)


WORKING_RULES: tuple[ClassifierRule, ...] = (
    _rule("progress_word", rf"\+[a-z]+{_ELLIPSIS}", AgentState.WORKING),
    _rule("loading", rf"loading{_ELLIPSIS}", AgentState.WORKING),
    _rule("processing", rf"processing{_ELLIPSIS}", AgentState.WORKING),
    _rule("analyzing", rf"analyzing{_ELLIPSIS}", AgentState.WORKING),
    _rule("thinking", rf"thinking{_ELLIPSIS}", AgentState.WORKING),
    _rule("searching", rf"searching{_ELLIPSIS}", AgentState.WORKING),
    _rule("reading", rf"reading{_ELLIPSIS}", AgentState.WORKING),
    _rule("writing", rf"writing{_ELLIPSIS}", AgentState.WORKING),
    _rule("progress_bar", r"\[=+\]", AgentState.WORKING),
    _rule("spinner_line", rf"^\s*[{_SPINNER_CHARS}]\s+.*…", AgentState.WORKING),
    _rule("esc_to_interrupt", r"esc to interrupt", AgentState.WORKING),
)

# Trailing "?" and ">" only count at the very end of the window.
WAITING_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule("trailing_question", re.compile(r"\?\s*\Z"), AgentState.WAITING),
    ClassifierRule("trailing_prompt", re.compile(r">\s*\Z"), AgentState.WAITING),
    _rule("numbered_option", r"\d+[.)]\s+[a-z]", AgentState.WAITING),
    _rule("selection_cursor", r"❯", AgentState.WAITING),
    _rule("yes_no", r"\(y/n\)", AgentState.WAITING),
    _rule("press_enter", r"press\s+enter", AgentState.WAITING),
    _rule("select_option", r"select\s+an\s+option", AgentState.WAITING),
    _rule("what_would_you_like", r"what\s+would\s+you\s+like", AgentState.WAITING),
    _rule("waiting_for_input", r"waiting\s+for\s+(input|you)", AgentState.WAITING),
    _rule("please_choose", r"please\s+(choose|select|enter|type)", AgentState.WAITING),
    _rule("would_you_like", r"would\s+you\s+like", AgentState.WAITING),
    _rule("do_you_want", r"do\s+you\s+want", AgentState.WAITING),
    _rule("how_would", r"how\s+(would|should|can)", AgentState.WAITING),
    _rule("type_something", r"type\s+something", AgentState.WAITING),
)


def first_match(
    rules: tuple[ClassifierRule, ...],
    text: str,
) -> ClassifierRule | None:
    for rule in rules:
        if rule.matches(text):
            return rule
    return None


def evaluate(
    text: str,
    current: AgentState,
) -> tuple[AgentState, ClassifierRule | None]:
    """Run both rule phases over ``text``.

    Returns the candidate state and the rule that decided it
    (None when nothing matched and ``current`` is kept).
    """
    lowered = text.lower()
    candidate, decided_by = current, None

    working = first_match(WORKING_RULES, lowered)
    if working is not None:
        candidate, decided_by = AgentState.WORKING, working

    waiting = first_match(WAITING_RULES, lowered)
    if waiting is not None:
        candidate, decided_by = AgentState.WAITING, waiting

    return candidate, decided_by


class ClassifierWindow:
    """Bounded character buffer, truncated from the front."""

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = capacity
        self._text = ""

    def append(self, text: str) -> None:
        self._text = (self._text + text)[-self.capacity :]

    def clear(self) -> None:
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)


class StateClassifier:
    """Two-state machine fed with coalesced output frames."""

    def __init__(self, window_size: int = 1000) -> None:
        self.window = ClassifierWindow(window_size)
        self._state = AgentState.WORKING
        self._question: Question | None = None
        self._last_cleared = ""

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def current_question(self) -> Question | None:
        """Question attached to the current ``waiting`` state."""
        return self._question

    def snapshot(self) -> StateChange:
        """Current state as a StateChange, for newly joined clients."""
        return StateChange(state=self._state, question=self._question)

    def feed(self, frame: str) -> StateChange | None:
        """Classify one frame; returns a StateChange on a transition."""
        self.window.append(strip_ansi(frame))
        candidate, rule = evaluate(self.window.text, self._state)
        logger.debug(
            "classifier_evaluated",
            current=self._state.value,
            candidate=candidate.value,
            rule=rule.name if rule else None,
            tail=self.window.text[-200:],
        )
        change = self._transition(candidate)
        if self._state == AgentState.WORKING:
            # No prompt in here; keep it out of the next question's text.
            self._last_cleared = self.window.text
            self.window.clear()
        return change

    def force(self, state: AgentState) -> StateChange | None:
        """Manually override the state (debugging aid).

        A forced ``waiting`` extracts from the window, or from the
        last frame seen while working when the window is empty.
        """
        logger.info("classifier_forced", state=state.value)
        return self._transition(state, self.window.text or self._last_cleared)

    def reset(self) -> None:
        self.window.clear()
        self._last_cleared = ""
        self._state = AgentState.WORKING
        self._question = None

    def _transition(
        self,
        candidate: AgentState,
        source: str | None = None,
    ) -> StateChange | None:
        if candidate == self._state:
            return None
        previous = self._state
        self._state = candidate
        if candidate == AgentState.WAITING:
            text = self.window.text if source is None else source
            self._question = extract(text)
        else:
            self._question = None
        logger.info(
            "state_changed",
            previous=previous.value,
            state=candidate.value,
            options=len(self._question.options or []) if self._question else 0,
        )
        return StateChange(state=candidate, question=self._question)
