"""Prompt templates for discussion analysis."""

from typing import List, Optional

SUMMARY_PROMPT = """Analyze this discussion thread{source_context} and provide:

1. A concise summary (2-3 sentences)
2. 3-5 key points or decisions
3. Overall sentiment (positive, neutral, or negative)
4. The domain the discussion belongs to
{domain_instructions}
Discussion:
{discussion}
{custom_instructions}
Rules:
- If you are not confident about a field, use null. Never guess.

Respond in JSON format:
{{
  "summary": "...",
  "keyPoints": ["...", "...", "..."],
  "sentiment": "positive" | "neutral" | "negative" | null,
  "confidence": 0.0-1.0,
  "domain": "..." | null
}}"""


TASK_PROMPT = """Analyze this discussion and identify actionable tasks.

Discussion:
{discussion}
{custom_instructions}
Instructions:
- Identify specific, actionable tasks mentioned or implied
- Extract title, description and concrete action items for each task
- Determine if there are multiple distinct tasks (isMultiTask: true/false)
- Maximum {max_tasks} tasks
- If no clear tasks, return an empty array
- priority must be one of "low", "medium", "high", "urgent", or null
- type must be one of "bug", "feature", "question", "improvement", or null
- assignee is the handle of the person who should do the work, or null
{domain_instructions}- Use null for any field you are not confident about. Never guess.

Respond in JSON format:
{{
  "isMultiTask": true | false,
  "tasks": [
    {{
      "title": "...",
      "description": "...",
      "actionItems": ["..."],
      "priority": "low" | "medium" | "high" | "urgent" | null,
      "type": "bug" | "feature" | "question" | "improvement" | null,
      "assignee": "..." | null,
      "domain": "..." | null,
      "tags": ["..."]
    }}
  ],
  "confidence": 0.0-1.0
}}"""


def _domain_line(available_domains: Optional[List[str]], bullet: bool) -> str:
    if not available_domains:
        return ""
    joined = ", ".join(f'"{d}"' for d in available_domains)
    line = f"domain must be one of {joined}, or null"
    return f"- {line}\n" if bullet else f"\nThe {line}.\n"


def _custom_block(custom: Optional[str]) -> str:
    if not custom or not custom.strip():
        return ""
    return f"\nAdditional instructions:\n{custom.strip()}\n"


def build_summary_prompt(
    discussion: str,
    source_type: Optional[str] = None,
    available_domains: Optional[List[str]] = None,
    custom_prompt: Optional[str] = None,
) -> str:
    return SUMMARY_PROMPT.format(
        source_context=f" from {source_type}" if source_type else "",
        domain_instructions=_domain_line(available_domains, bullet=False),
        discussion=discussion,
        custom_instructions=_custom_block(custom_prompt),
    )


def build_task_prompt(
    discussion: str,
    max_tasks: int = 5,
    available_domains: Optional[List[str]] = None,
    custom_prompt: Optional[str] = None,
) -> str:
    return TASK_PROMPT.format(
        discussion=discussion,
        custom_instructions=_custom_block(custom_prompt),
        max_tasks=max_tasks,
        domain_instructions=_domain_line(available_domains, bullet=True),
    )
