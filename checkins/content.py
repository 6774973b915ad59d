"""
Content resolution and message composition.

Two independent lookups decide what a check-in says:

  1. Branch fallback — a fixed table (`BRANCH_FALLBACK`). The legacy
     "initial" branch may borrow the "same" copy; nothing else falls back.
  2. Diagnosis-strict insert lookup — exact (diagnosis_code, day, branch)
     against the store. There is no fallback by diagnosis.

`compose_message` is a pure substitution over the template shell; it has
no idea which diagnosis produced the insert.
"""
from __future__ import annotations

import random
import re
import structlog
from typing import Optional

from checkins.attribution import source_tag
from checkins.tokens import DEFAULT_TTL_SECONDS, TokenCodec
from database.store_base import BaseCheckinStore
from models.schemas import (
    ActionLink, Branch, ComposedMessage, ResolvedContent, ResponseValue, Template,
)

logger = structlog.get_logger()

DEFAULT_ENCOURAGEMENT = "Keep going - you are making progress."
DEFAULT_DISCLAIMER = (
    "Educational use only. Not a diagnosis or treatment. If symptoms worsen "
    "or new symptoms develop, seek medical care."
)

ACTION_LABELS: dict[ResponseValue, str] = {
    ResponseValue.BETTER: "Feeling Better",
    ResponseValue.SAME: "About the Same",
    ResponseValue.WORSE: "Feeling Worse",
}

BRANCH_FALLBACK: dict[Branch, tuple[Branch, ...]] = {
    Branch.INITIAL: (Branch.INITIAL, Branch.SAME),
    Branch.BETTER: (Branch.BETTER,),
    Branch.SAME: (Branch.SAME,),
    Branch.WORSE: (Branch.WORSE,),
}

INSERT_MARKER = re.compile(r"\{\{\s*insert\s*\}\}", re.IGNORECASE)
ENCOURAGEMENT_MARKER = re.compile(r"\{\{\s*encouragement\s*\}\}", re.IGNORECASE)
_TEMPLATE_KEY = re.compile(r"^day(\d+)(?:\.(\w+))?$")


def branch_candidates(branch: Branch | str) -> tuple[Branch, ...]:
    """Branches to try, in order, for an insert lookup."""
    return BRANCH_FALLBACK[Branch(branch)]


def template_key(day: int, branch: Branch | str = Branch.SAME) -> str:
    return f"day{int(day)}.{Branch(branch).value}"


def parse_template_key(key: str) -> Optional[tuple[int, Branch]]:
    """Split "day3.same" into (3, Branch.SAME); a key without a branch means "same"."""
    match = _TEMPLATE_KEY.match((key or "").strip())
    if not match:
        return None
    try:
        branch = Branch(match.group(2) or Branch.SAME.value)
    except ValueError:
        return None
    return int(match.group(1)), branch


def default_subject(day: int) -> str:
    return f"Quick check-in (Day {int(day)})"


# ──────────────────────────────────────────────────────────────
#  Resolver
# ──────────────────────────────────────────────────────────────

class ContentResolver:
    """Looks up inserts and encouragement lines in the store."""

    def __init__(self, store: BaseCheckinStore, rng: random.Random = None):
        self.store = store
        self.rng = rng or random.Random()

    async def _find_insert(
        self, diagnosis_code: str, day: int, branch: Branch | str,
    ) -> Optional[tuple[Branch, str]]:
        requested = Branch(branch)
        for candidate in branch_candidates(requested):
            found = await self.store.get_diagnosis_insert(diagnosis_code, day, candidate.value)
            if found is None:
                continue
            if candidate != requested:
                logger.debug("insert_branch_fallback", diagnosis_code=diagnosis_code,
                             day=day, requested=requested.value, used=candidate.value)
            return candidate, found.insert_text
        return None

    async def resolve_insert(self, diagnosis_code: str, day: int, branch: Branch | str) -> Optional[str]:
        found = await self._find_insert(diagnosis_code, day, branch)
        return found[1] if found else None

    async def pick_encouragement(self) -> str:
        pool = await self.store.list_encouragements()
        if not pool:
            return DEFAULT_ENCOURAGEMENT
        return self.rng.choice(pool)

    async def resolve_content(
        self, diagnosis_code: str, day: int, branch: Branch | str,
    ) -> Optional[ResolvedContent]:
        found = await self._find_insert(diagnosis_code, day, branch)
        if found is None:
            return None
        matched, insert_text = found
        return ResolvedContent(
            insert_text=insert_text,
            encouragement=await self.pick_encouragement(),
            branch=matched,
        )


# ──────────────────────────────────────────────────────────────
#  Composition
# ──────────────────────────────────────────────────────────────

def build_action_links(
    codec: TokenCodec,
    base_url: str,
    subject_id: str,
    day: int,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> list[ActionLink]:
    """One signed link per response value, tagged with the day's source."""
    base = base_url.rstrip("/")
    links = []
    for value in ResponseValue:
        token = codec.sign(subject_id, day, value, ttl_seconds=ttl_seconds)
        links.append(ActionLink(
            value=value,
            label=ACTION_LABELS[value],
            url=f"{base}/c/i?token={token}&source={source_tag(day)}",
        ))
    return links


def _substitute(shell: str, insert_text: str, encouragement: str) -> str:
    insert_text = insert_text.strip()
    encouragement = encouragement.strip()
    text = shell.strip()

    has_insert = INSERT_MARKER.search(text) is not None
    has_encouragement = ENCOURAGEMENT_MARKER.search(text) is not None

    # callables keep backslashes in copy from being read as group references
    text = INSERT_MARKER.sub(lambda _: insert_text, text)
    text = ENCOURAGEMENT_MARKER.sub(lambda _: encouragement, text)

    paragraphs = [p.strip() for p in re.split(r"\r?\n\s*\r?\n", text) if p.strip()]
    if not has_insert and insert_text:
        paragraphs.insert(min(1, len(paragraphs)), insert_text)
    if not has_encouragement and encouragement:
        paragraphs.append(encouragement)
    return "\n\n".join(paragraphs)


def compose_message(
    template: Template,
    insert_text: str,
    encouragement: str,
    action_links: list[ActionLink],
    day: int = None,
) -> ComposedMessage:
    """
    Fill the template shell and attach the action links.

    Markers are matched case-insensitively with optional inner whitespace.
    A shell missing the insert marker gets the insert after its first
    paragraph; one missing the encouragement marker gets it appended.
    """
    content = _substitute(template.shell_text or "", insert_text, encouragement)
    link_block = "\n".join(f"{link.label}: {link.url}" for link in action_links)
    body = f"{content}\n\n{link_block}" if link_block else content

    subject = template.subject
    if not subject:
        parsed = parse_template_key(template.key)
        subject = default_subject(day if day is not None else (parsed[0] if parsed else 0))

    return ComposedMessage(
        subject=subject,
        content=content,
        body=body,
        disclaimer=template.disclaimer_text or DEFAULT_DISCLAIMER,
        links=list(action_links),
    )
