"""Rule-based attribute extraction from product titles."""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ProductAttributes:
    """Distinguishing attributes found in a title, plus the remaining core tokens."""

    color: Optional[str] = None
    storage: Optional[str] = None  # normalized to GB, e.g. "512gb", "1024gb"
    size: Optional[str] = None
    tiers: frozenset[str] = frozenset()
    bundle: Optional[str] = None
    model: Optional[str] = None
    core_tokens: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "color": self.color,
            "storage": self.storage,
            "size": self.size,
            "tiers": sorted(self.tiers) or None,
            "bundle": self.bundle,
            "model": self.model,
        }
        return {k: v for k, v in data.items() if v}


class AttributeExtractor:
    """
    Extract the attributes a shopper treats as distinguishing.

    Two listings for the same model that differ in color, storage, size,
    tier (Pro/Max/...) or bundle composition are different products.
    """

    COLOR_PATTERN = re.compile(
        r'\b(black|white|red|blue|green|yellow|orange|purple|pink|brown|gray|grey|'
        r'silver|gold|bronze|beige|navy|teal|graphite|midnight|starlight|rose gold|'
        r'space gray|space grey)\b'
    )

    STORAGE_PATTERN = re.compile(r'\b(\d+(?:\.\d+)?)\s*(tb|gb)\b')

    SIZE_PATTERNS = [
        re.compile(r'\b\d+(?:\.\d+)?\s*-?\s*(?:inch(?:es)?|in|cm|mm|fl oz|oz|lbs?|kg|ml|l)\b|\b\d+(?:\.\d+)?"'),
        re.compile(r'\bsize\s+([a-z0-9.]+)\b'),
        re.compile(r'\b(xxs|xs|small|medium|large|xl|xxl|xxxl)\b'),
    ]

    TIER_WORDS = frozenset({
        "pro", "max", "plus", "ultra", "mini", "lite", "se", "air", "slim", "xl",
    })

    BUNDLE_PATTERNS = [
        re.compile(r'\b(\d+)\s*-?\s*(?:pack|pk|count|ct)\b'),
        re.compile(r'\b(?:set of|pack of)\s+(\d+)\b'),
        re.compile(r'\b(bundle|combo|kit)\b'),
        re.compile(r'\bwith\s+(case|charger|stand|dock|controller|accessories)\b'),
    ]

    MODEL_PATTERN = re.compile(r'\b(?=[a-z0-9-]*\d)(?=[a-z0-9-]*[a-z])[a-z0-9]+(?:-[a-z0-9]+)*\b')

    STOPWORDS = frozenset({"the", "a", "an", "and", "with", "for", "of", "new", "by", "in"})

    def normalize(self, title: str) -> str:
        """Lowercase and reduce punctuation to spaces, keeping hyphens and dots in tokens."""
        text = title.lower().replace("&", " and ")
        text = re.sub(r'[()\[\]{},/|:;!?*+_]', ' ', text)
        return re.sub(r'\s+', ' ', text).strip()

    def extract(self, title: str) -> ProductAttributes:
        """
        Extract attributes from a product title.

        Args:
            title: Product title

        Returns:
            ProductAttributes (empty if title is blank)
        """
        if not title or not title.strip():
            return ProductAttributes()

        text = self.normalize(title)
        attributes = ProductAttributes()
        consumed: list[tuple[int, int]] = []

        color_match = self.COLOR_PATTERN.search(text)
        if color_match:
            attributes.color = color_match.group(1).replace("grey", "gray")
            consumed.append(color_match.span())

        storage_match = self.STORAGE_PATTERN.search(text)
        if storage_match:
            attributes.storage = self._normalize_storage(*storage_match.groups())
            consumed.append(storage_match.span())

        for pattern in self.SIZE_PATTERNS:
            size_match = pattern.search(text)
            if size_match:
                attributes.size = size_match.group(0).replace(" ", "")
                consumed.append(size_match.span())
                break

        for pattern in self.BUNDLE_PATTERNS:
            bundle_match = pattern.search(text)
            if bundle_match:
                attributes.bundle = bundle_match.group(0).replace(" ", "")
                consumed.append(bundle_match.span())
                break

        remaining = self._strip_spans(text, consumed)
        tokens = [t for t in remaining.split() if t not in self.STOPWORDS]

        attributes.tiers = frozenset(t for t in tokens if t in self.TIER_WORDS)
        attributes.core_tokens = [t for t in tokens if t not in self.TIER_WORDS]

        model_match = self.MODEL_PATTERN.search(" ".join(attributes.core_tokens))
        if model_match:
            attributes.model = model_match.group(0)

        return attributes

    def conflicts(self, reference: ProductAttributes, candidate: ProductAttributes) -> list[str]:
        """
        List the distinguishing attributes on which two products differ.

        Color, storage and size conflict only when both titles state them.
        Tier and bundle markers conflict whenever either side has one the
        other lacks, since "X200" and "X200 Pro" are different products.
        """
        found = []

        for name in ("color", "storage", "size"):
            ref_value = getattr(reference, name)
            cand_value = getattr(candidate, name)
            if ref_value and cand_value and ref_value != cand_value:
                found.append(f"{name} differs ({ref_value} vs {cand_value})")

        if reference.tiers != candidate.tiers:
            ref_tiers = ", ".join(sorted(reference.tiers)) or "none"
            cand_tiers = ", ".join(sorted(candidate.tiers)) or "none"
            found.append(f"variant differs ({ref_tiers} vs {cand_tiers})")

        if reference.bundle != candidate.bundle:
            found.append(
                f"bundle differs ({reference.bundle or 'single'} vs {candidate.bundle or 'single'})"
            )

        if reference.model and candidate.model and reference.model != candidate.model:
            found.append(f"model differs ({reference.model} vs {candidate.model})")

        return found

    def one_sided(self, reference: ProductAttributes, candidate: ProductAttributes) -> list[str]:
        """Attributes stated by only one of the titles (weaker evidence than a conflict)."""
        found = []
        for name in ("storage", "size"):
            if bool(getattr(reference, name)) != bool(getattr(candidate, name)):
                found.append(name)
        return found

    def _normalize_storage(self, amount: str, unit: str) -> str:
        value = float(amount)
        if unit == "tb":
            value *= 1024
        return f"{value:g}gb"

    def _strip_spans(self, text: str, spans: list[tuple[int, int]]) -> str:
        for start, end in sorted(spans, reverse=True):
            text = text[:start] + " " + text[end:]
        return text


# Global attribute extractor instance
attribute_extractor = AttributeExtractor()
