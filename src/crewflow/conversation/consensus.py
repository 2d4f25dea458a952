"""Consensus classifiers over a conversation.

Every function here is pure: it takes the entries to look at (a
ConversationLog or any sequence of ConversationEntry) plus the phrase sets,
and returns a value. Phrase matching is case-insensitive substring search;
when an entry carries both an affirmative and a negative signal the cautious
reading wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence, Union

from crewflow.conversation.log import ORCHESTRATOR, USER, ConversationLog
from crewflow.schemas.config import PhraseSets
from crewflow.schemas.status import ConversationEntry
from crewflow.schemas.tasks import Role

DEFAULT_PHRASES = PhraseSets()

Entries = Union[ConversationLog, Sequence[ConversationEntry]]

_NON_AGENT_SPEAKERS = {ORCHESTRATOR, USER}


@dataclass(frozen=True)
class Decision:
    """Whether another collaboration round (or dialogue turn) is needed."""

    should_continue: bool
    reason: str


@dataclass(frozen=True)
class AgentQuestion:
    """A message from one role addressed to another."""

    from_role: Role
    to_role: Role
    text: str
    index: int


@dataclass(frozen=True)
class DialogueRequest:
    """Two roles that should talk directly before the round continues."""

    agent_a: Role
    agent_b: Role
    reason: str
    question: AgentQuestion | None = None


def _as_list(entries: Entries) -> list[ConversationEntry]:
    if isinstance(entries, ConversationLog):
        return entries.entries()
    return list(entries)


def _as_role(speaker: str) -> Role | None:
    try:
        return Role(speaker)
    except ValueError:
        return None


def _contains_any(text: str, phrases: Sequence[str]) -> bool:
    return any(phrase.lower() in text for phrase in phrases)


def _strip(text: str, phrases: Sequence[str]) -> str:
    for phrase in sorted(phrases, key=len, reverse=True):
        text = text.replace(phrase.lower(), " ")
    return text


def _latest(entries: list[ConversationEntry], role: Role) -> tuple[int, ConversationEntry] | None:
    for index in range(len(entries) - 1, -1, -1):
        if entries[index].speaker_role == role.value:
            return index, entries[index]
    return None


def text_signals_issues(text: str, phrases: PhraseSets = DEFAULT_PHRASES) -> bool:
    """Check a single message for unresolved-issue phrases."""
    lowered = text.lower()
    if _contains_any(lowered, phrases.approval_negations):
        return True
    return _contains_any(_strip(lowered, phrases.issue_negations), phrases.issues)


def text_signals_approval(text: str, phrases: PhraseSets = DEFAULT_PHRASES) -> bool:
    """Check a single message for approval without any co-occurring objection."""
    lowered = text.lower()
    if _contains_any(lowered, phrases.approval_negations):
        return False
    if not _contains_any(lowered, phrases.approval):
        return False
    return not text_signals_issues(text, phrases)


def text_signals_ready(text: str, phrases: PhraseSets = DEFAULT_PHRASES) -> bool:
    """Check a single message for readiness without any hesitation."""
    lowered = text.lower()
    if _contains_any(lowered, phrases.not_ready):
        return False
    return _contains_any(lowered, phrases.ready)


def is_ready_to_proceed(
    entries: Entries,
    role: Role = Role.CODER,
    phrases: PhraseSets = DEFAULT_PHRASES,
) -> bool:
    """Check whether the latest message from ``role`` says it can proceed."""
    latest = _latest(_as_list(entries), role)
    if latest is None:
        return False
    return text_signals_ready(latest[1].text, phrases)


def is_approved(entries: Entries, phrases: PhraseSets = DEFAULT_PHRASES) -> bool:
    """Check whether the latest reviewer message approves the work."""
    latest = _latest(_as_list(entries), Role.REVIEWER)
    if latest is None:
        return False
    return text_signals_approval(latest[1].text, phrases)


def has_unresolved_issues(entries: Entries, phrases: PhraseSets = DEFAULT_PHRASES) -> bool:
    """Check whether the latest reviewer message raises issues."""
    latest = _latest(_as_list(entries), Role.REVIEWER)
    if latest is None:
        return False
    return text_signals_issues(latest[1].text, phrases)


def should_continue_collaboration(
    entries: Entries,
    phrases: PhraseSets = DEFAULT_PHRASES,
) -> Decision:
    """Decide whether agents need another round.

    Once a reviewer has spoken, the latest review decides: approval stops,
    anything else continues. Before review, an architect/coder exchange stops
    when the coder says it is ready. With no clear signal, continue.

    Args:
        entries: Conversation to judge
        phrases: Phrase sets driving the classifiers

    Returns:
        Decision with a human-readable reason
    """
    items = _as_list(entries)

    if _latest(items, Role.REVIEWER) is not None:
        if is_approved(items, phrases):
            return Decision(False, "Reviewer approved the implementation")
        if has_unresolved_issues(items, phrases):
            return Decision(True, "Reviewer found issues needing fixes")
        return Decision(True, "Review has no clear verdict")

    if _latest(items, Role.ARCHITECT) is not None and _latest(items, Role.CODER) is not None:
        if is_ready_to_proceed(items, Role.CODER, phrases):
            return Decision(False, "Coder is ready to implement")
        return Decision(True, "Coder still has open questions")

    return Decision(True, "Insufficient signals for consensus")


def _mentioned_role(text: str, speaker: Role) -> Role | None:
    lowered = text.lower()
    for role in Role:
        if role == speaker:
            continue
        if f"@{role.value}" in lowered:
            return role
        if "?" in text and re.search(rf"\b{role.value}\b[^?]*\?", lowered):
            return role
    return None


def detect_question_to_agent(
    entries: Entries,
    lookback: int = 2,
    phrases: PhraseSets = DEFAULT_PHRASES,
) -> AgentQuestion | None:
    """Find the most recent message that addresses another role.

    Scans the last ``lookback`` entries newest-first, skipping orchestrator
    and user messages. A message addresses a role when it mentions it
    explicitly (``@coder`` or ``coder ... ?``); otherwise direct-address
    phrasing ("why did you", "could you") or a plain question mark is taken
    as aimed at the previous other agent in the window.

    Args:
        entries: Conversation to scan
        lookback: Window size
        phrases: Phrase sets (direct-address list)

    Returns:
        AgentQuestion, or None if no message in the window asks anything
    """
    items = _as_list(entries)
    if lookback <= 0 or not items:
        return None

    window = items[-lookback:]
    offset = len(items) - len(window)

    for pos in range(len(window) - 1, -1, -1):
        entry = window[pos]
        speaker = _as_role(entry.speaker_role)
        if entry.speaker_role in _NON_AGENT_SPEAKERS or speaker is None:
            continue

        addressed = _mentioned_role(entry.text, speaker)
        if addressed is not None:
            return AgentQuestion(speaker, addressed, entry.text, offset + pos)

        lowered = entry.text.lower()
        if "?" not in entry.text and not _contains_any(lowered, phrases.direct_address):
            continue

        for earlier in reversed(window[:pos]):
            target = _as_role(earlier.speaker_role)
            if target is not None and target != speaker:
                return AgentQuestion(speaker, target, entry.text, offset + pos)

    return None


def _answered_after(items: list[ConversationEntry], index: int, role: Role) -> bool:
    return any(e.speaker_role == role.value for e in items[index + 1 :])


def needs_direct_dialogue(
    entries: Entries,
    lookback: int = 3,
    phrases: PhraseSets = DEFAULT_PHRASES,
) -> DialogueRequest | None:
    """Decide whether two roles should talk directly.

    Fires for a detected question whose addressee has not spoken since, or
    for reviewer concerns (without approval) the coder has not answered yet.

    Args:
        entries: Conversation to scan
        lookback: Window for question detection
        phrases: Phrase sets

    Returns:
        DialogueRequest naming asker and addressee, or None
    """
    items = _as_list(entries)

    question = detect_question_to_agent(items, lookback, phrases)
    if question is not None and not _answered_after(items, question.index, question.to_role):
        return DialogueRequest(
            agent_a=question.from_role,
            agent_b=question.to_role,
            reason=f"{question.from_role.value} has a question for {question.to_role.value}",
            question=question,
        )

    review = _latest(items, Role.REVIEWER)
    if review is not None and _latest(items, Role.CODER) is not None:
        index, entry = review
        if (
            _contains_any(entry.text.lower(), phrases.concerns)
            and not text_signals_approval(entry.text, phrases)
            and not _answered_after(items, index, Role.CODER)
        ):
            return DialogueRequest(
                agent_a=Role.REVIEWER,
                agent_b=Role.CODER,
                reason="Reviewer has concerns needing clarification",
            )

    return None
