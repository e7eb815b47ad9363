"""Default prompt builders for item and curriculum generation."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

# Keep the avoid-list short so prompts stay well inside small context windows.
MAX_AVOID_EXAMPLES = 8
MAX_REFERENCE_CHARS = 1200


def build_item_prompt(*, topic_id: str, item_type: str, difficulty: str, instructions: str | None, avoid: Sequence[str]) -> str:
  """Prompt for one exercise item, listing recent accepted items to steer away from."""
  lines = [
    f"Write one {difficulty} {item_type} exercise item for topic '{topic_id}'.",
    "Return only the item text, without numbering or commentary.",
  ]
  if instructions:
    lines.append(f"Additional instructions: {instructions.strip()}")
  if avoid:
    lines.append("It must be clearly different from these existing items:")
    lines.extend(f"- {text}" for text in list(avoid)[-MAX_AVOID_EXAMPLES:])
  return "\n".join(lines)


def build_curriculum_prompt(*, subject: str, class_name: str, board: str, academic_year: str | None, term: str | None, description: str | None, references: Sequence[Mapping[str, Any]]) -> str:
  """Prompt for a curriculum draft grounded in search references when available."""
  scope = " ".join(part for part in (board, class_name, subject, academic_year, term) if part)
  lines = [
    f"Draft a curriculum outline for {scope}.",
    "Organise it into units, each with topics and short learning objectives.",
  ]
  if description:
    lines.append(f"Course description: {description.strip()}")
  if references:
    lines.append("Use the following official syllabus references where relevant:")
    for index, reference in enumerate(references, start=1):
      content = str(reference.get("content") or "")[:MAX_REFERENCE_CHARS]
      lines.append(f"[{index}] {reference.get('title') or 'Untitled'} ({reference.get('url') or 'no url'})\n{content}")
  else:
    lines.append("No external references are available; rely on the standard syllabus for this board.")
  return "\n".join(lines)
