"""
Canonical Prompt Generation
===========================

Pure functions for generating validator prompts from request DTOs.

INVARIANT: Same request content -> same prompt_hash
Prompts cite derived statistics and Tier-1 summaries, nothing else.
"""

from __future__ import annotations
from dataclasses import dataclass
import hashlib

from models.contracts import TraitName

from .contracts import ValidatorRequest


SYSTEM_PROMPT = (
    "You are a personality assessment expert. Analyze the conversation "
    "metrics and provide personality trait scores (0-100) for Big Five, "
    "DISC, and Emotional Intelligence frameworks. Return JSON only."
)


@dataclass(frozen=True)
class CanonicalPrompt:
    """
    Frozen prompt with hash for deterministic tracking.

    INVARIANT: Same request content -> same prompt_hash
    """
    request_hash: str
    system_text: str
    prompt_text: str
    prompt_hash: str

    @staticmethod
    def create(request: ValidatorRequest) -> CanonicalPrompt:
        """
        Factory method for creating canonical prompts.

        This is the ONLY way to create prompts.
        """
        prompt_text = PromptTemplates.render(request)
        prompt_hash = hashlib.sha256(
            f"{SYSTEM_PROMPT}\n{prompt_text}".encode()
        ).hexdigest()

        return CanonicalPrompt(
            request_hash=request.content_hash(),
            system_text=SYSTEM_PROMPT,
            prompt_text=prompt_text,
            prompt_hash=prompt_hash
        )


class PromptTemplates:
    """Prompt template for trait validation."""

    @staticmethod
    def render(request: ValidatorRequest) -> str:
        stats = "\n".join(f"- {name}: {value:g}" for name, value in request.statistics)
        tier1 = "\n".join(
            f"- {s.model_kind.value}: confidence {s.confidence:g}%"
            for s in request.tier1
        ) or "- none available"
        schema = ",\n".join(
            f'    "{trait.value}": <0-100>' for trait in TraitName.ordered()
        )

        return f"""TASK: Trait Validation
SUBJECT_WINDOW: {request.window_id}

CONVERSATION METRICS (aggregated, no message content):
{stats}

PRELIMINARY ASSESSMENTS:
{tier1}

INSTRUCTIONS:
Provide refined trait scores based ONLY on the metrics above.
Every score must be an integer between 0 and 100.
Include "confidence" (0-100) for your own assessment.

OUTPUT FORMAT (JSON):
{{
  "traits": {{
{schema}
  }},
  "confidence": <0-100>
}}"""
