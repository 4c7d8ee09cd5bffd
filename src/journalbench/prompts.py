# Copyright (c) Syntropy Systems
"""Persona system prompts and journal rendering for summary prompts."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from journalbench.models.enums import NeedlePosition, Persona
from journalbench.models.experiment import JournalEntry

SYSTEM_PROMPTS: dict[Persona, str] = {
    Persona.GOGGINS: """\
You are a mental performance coach in the style of David Goggins.

VOICE & TONE:
- Direct, challenging, no-nonsense
- Push the athlete to embrace discomfort
- Call out excuses without being cruel
- Acknowledge genuine effort and progress
- Use short, punchy sentences
- Occasional intensity: "Stay hard." "Who's gonna carry the boats?"

CRITICAL RULES:
- ALWAYS accurately reference specific facts from their journal entries
- NEVER make up details that aren't in the entries
- If they mentioned a specific barrier (e.g., "shin splints"), address it directly
- Challenge their mental barriers, not their physical limitations

Generate a weekly mental performance summary for this athlete.
""",
    Persona.LASSO: """\
You are a mental performance coach in the style of Ted Lasso.

VOICE & TONE:
- Warm, encouraging, genuinely optimistic
- Believe in the athlete's potential
- Find positives even in difficult weeks
- Acknowledge struggles with empathy, not dismissal
- Use folksy wisdom and occasional humor
- "Be a goldfish" energy - help them let go of bad days

CRITICAL RULES:
- ALWAYS accurately reference specific facts from their journal entries
- NEVER make up details that aren't in the entries
- If they mentioned a specific struggle, acknowledge it with compassion
- Build confidence without being fake or saccharine

Generate a weekly mental performance summary for this athlete.
""",
}

PROMPT_HEADER = "Here are the athlete's recent journal entries:"
PROMPT_FOOTER = (
    "Based on these entries, generate a weekly mental performance summary.\n"
    "Include: key patterns observed, areas of strength, concerns to address, "
    "and one specific actionable recommendation."
)
NO_ENTRIES_PROMPT = (
    "The athlete has not written any journal entries for this period.\n"
    "Generate a short weekly mental performance check-in that invites them to "
    "start journaling. Do not describe any sessions, feelings or barriers, "
    "because none were recorded."
)

ENTRY_HEADER = re.compile(r"^--- Entry #(-?\d+) \| (\d{4}-\d{2}-\d{2})(?: \[FLAGGED\])? ---$")
COMPRESSED_PREFIX = "Feeling: "
FIELD_LABELS = {
    "emotional_state": "Emotional State",
    "session_reflection": "Session Reflection",
    "mental_barriers": "Mental Barriers",
}

# Id given to the synthetic entry that carries a needle fact
NEEDLE_ENTRY_ID = 0


def system_prompt(persona: Persona) -> str:
    return SYSTEM_PROMPTS[persona]


def truncate(text: str, length: int) -> str:
    if not text:
        return ""
    return text if len(text) <= length else text[:length] + "..."


def render_entry(
    entry: JournalEntry,
    compressed: bool = False,
    include_metadata: bool = True,
    field_length: int = 50,
) -> str:
    lines = []
    if include_metadata:
        flag = " [FLAGGED]" if entry.is_flagged else ""
        lines.append(f"--- Entry #{entry.id} | {entry.entry_date.isoformat()}{flag} ---")
    if compressed:
        lines.append(
            f"{COMPRESSED_PREFIX}{truncate(entry.emotional_state, field_length)}"
            f" | Reflection: {truncate(entry.session_reflection, field_length)}"
            f" | Barriers: {truncate(entry.mental_barriers, field_length)}"
        )
    else:
        for name, value in entry.fields().items():
            lines.append(f"{FIELD_LABELS[name]}: {value}")
    return "\n".join(lines)


def build_user_prompt(
    entries: list[JournalEntry],
    compressed: bool = False,
    include_metadata: bool = True,
    field_length: int = 50,
) -> str:
    """Render entries into the summary request, or the no-entries variant."""
    if not entries:
        return NO_ENTRIES_PROMPT
    blocks = [PROMPT_HEADER, ""]
    for entry in entries:
        blocks.append(render_entry(entry, compressed, include_metadata, field_length))
        blocks.append("")
    blocks.append("---")
    blocks.append(PROMPT_FOOTER)
    return "\n".join(blocks)


def split_entry_blocks(prompt: str) -> list[list[str]]:
    """Recover the per-entry line groups of a rendered prompt, in prompt order.

    Header lines are dropped; compressed entries without metadata are one
    line each.
    """
    blocks: list[list[str]] = []
    current: Optional[list[str]] = None
    for raw in prompt.splitlines():
        line = raw.strip()
        if ENTRY_HEADER.match(line):
            current = []
            blocks.append(current)
        elif line.startswith(COMPRESSED_PREFIX):
            if current is None or current:
                current = []
                blocks.append(current)
            current.append(line)
            current = None
        elif not line or line == "---":
            if line == "---":
                current = None
        elif current is not None:
            current.append(line)
    return [b for b in blocks if b]


def needle_entry(needle_fact: str, entries: list[JournalEntry]) -> JournalEntry:
    """Wrap a needle fact in a synthetic journal entry."""
    if entries:
        entry_date = max(e.entry_date for e in entries) + timedelta(days=1)
        athlete_id = entries[0].athlete_id
    else:
        entry_date = date.today()
        athlete_id = 0
    return JournalEntry(
        id=NEEDLE_ENTRY_ID,
        athlete_id=athlete_id,
        entry_date=entry_date,
        emotional_state="Concerned about a specific issue",
        session_reflection=f"Today's session was affected by {needle_fact}. This has been bothering me.",
        mental_barriers=f"Dealing with {needle_fact} and trying to stay focused.",
    )


def insertion_index(position: NeedlePosition, count: int) -> int:
    if position is NeedlePosition.START:
        return 0
    if position is NeedlePosition.MIDDLE:
        return count // 2
    return count


def insert_needle(
    entries: list[JournalEntry],
    needle: JournalEntry,
    position: NeedlePosition,
) -> list[JournalEntry]:
    result = list(entries)
    result.insert(insertion_index(position, len(entries)), needle)
    return result


@dataclass(frozen=True)
class PromptPlan:
    """One capability call a run will make."""

    label: str
    system_prompt: str
    user_prompt: str
    persona: Persona
    position: Optional[NeedlePosition] = None
