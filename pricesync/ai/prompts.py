"""Prompt templates for LLM product matching."""

from typing import Optional

from pydantic import BaseModel


PRODUCT_MATCH_SYSTEM_PROMPT = """You decide whether two retail listings are the same physical product.

Rules:
- Different color, size, storage capacity, model tier (Pro, Max, Ultra, Plus, Mini)
  or bundle composition (single vs 2-pack, with/without accessories) means a
  DIFFERENT product. Such pairs must get confidence below 0.70.
- The same product sold by a different seller or marketplace is a match. Such pairs
  should get confidence of 0.85 or more.
- Price differences of up to 30% between marketplaces are normal and are not
  evidence against a match. Much larger gaps suggest a different product or bundle.
- Give each factor a score between 0 and 1: name_match (title/brand/model agreement),
  price_match (price plausibility), specs_match (distinguishing attributes).
- Keep the reasoning to one or two sentences."""

IMAGE_MATCH_NOTE = """Two product images follow the text: the reference first, then the candidate.
- The same product photographed from a different angle is a match.
- A visibly different color, size or bundle is NOT a match.
- Look for brand logos, model numbers and distinctive features.
- Also give image_match (visual agreement) a score between 0 and 1."""


class ListingSnapshot(BaseModel):
    """One side of a comparison."""

    title: str
    marketplace: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None

    def describe(self) -> str:
        parts = [self.title]
        if self.marketplace:
            parts.append(f"({self.marketplace})")
        if self.price is not None:
            parts.append(f"- ${self.price:.2f}")
        return " ".join(parts)


class ProductMatchPrompt(BaseModel):
    """Prompt schema for matching one candidate against a reference product."""

    reference: ListingSnapshot
    candidate: ListingSnapshot

    def image_urls(self) -> list[str]:
        """Reference and candidate image URLs, or nothing unless both sides have one."""
        if self.reference.image_url and self.candidate.image_url:
            return [self.reference.image_url, self.candidate.image_url]
        return []

    def to_prompt(self) -> str:
        return f"""Are these two listings the same product?

Reference: {self.reference.describe()}
Candidate: {self.candidate.describe()}"""


class BatchMatchPrompt(BaseModel):
    """Prompt schema for matching several candidates in one call."""

    reference: ListingSnapshot
    candidates: list[ListingSnapshot]

    def to_prompt(self) -> str:
        lines = [
            "For each numbered candidate, decide whether it is the same product as the reference.",
            "",
            f"Reference: {self.reference.describe()}",
            "",
            "Candidates:",
        ]
        for i, candidate in enumerate(self.candidates, 1):
            lines.append(f"  {i}. {candidate.describe()}")
        lines.append("")
        lines.append(
            f"Return exactly {len(self.candidates)} results in the same order as the candidates."
        )
        return "\n".join(lines)


# Response schemas for structured output
_DECISION_PROPERTIES = {
    "is_match": {"type": "boolean"},
    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    "reasoning": {"type": "string"},
    "factors": {
        "type": "object",
        "properties": {
            "name_match": {"type": "number"},
            "price_match": {"type": "number"},
            "specs_match": {"type": "number"},
            "image_match": {"type": "number"},
        },
        "required": ["name_match", "price_match", "specs_match"],
    },
}

PRODUCT_MATCH_SCHEMA = {
    "type": "object",
    "properties": _DECISION_PROPERTIES,
    "required": ["is_match", "confidence", "reasoning", "factors"],
}

BATCH_MATCH_SCHEMA = {
    "type": "object",
    "properties": {
        "results": {"type": "array", "items": PRODUCT_MATCH_SCHEMA},
    },
    "required": ["results"],
}
