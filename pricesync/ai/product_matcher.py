"""Cross-marketplace product matching with confidence scoring."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol, Union
from urllib.parse import urlsplit

import openai
from pydantic import BaseModel, ConfigDict, StrictBool, ValidationError
from rapidfuzz import fuzz

from pricesync.ai.attribute_extractor import AttributeExtractor, attribute_extractor
from pricesync.ai.llm_service import LLMService, LLMUnavailableError, llm_service
from pricesync.ai.prompts import (
    BATCH_MATCH_SCHEMA,
    IMAGE_MATCH_NOTE,
    PRODUCT_MATCH_SCHEMA,
    PRODUCT_MATCH_SYSTEM_PROMPT,
    BatchMatchPrompt,
    ListingSnapshot,
    ProductMatchPrompt,
)
from pricesync.config import settings
from pricesync.metrics import record_matching_fallback
from pricesync.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

AUTO_ACCEPT_THRESHOLD = 0.85
REVIEW_THRESHOLD = 0.70

UNAVAILABLE_REASONING = "Matching unavailable - manual review required"

Price = Union[Decimal, float, None]


class MatchingUnavailableError(RuntimeError):
    """Raised when a comparator produced no usable decision."""
    pass


class MatchVerdict(str, Enum):
    AUTO_ACCEPT = "auto_accept"
    REVIEW = "review"
    AUTO_REJECT = "auto_reject"


@dataclass
class ProductInfo:
    """A product as seen on one marketplace."""

    title: str
    price: Price = None
    marketplace: Optional[str] = None
    url: Optional[str] = None
    image_url: Optional[str] = None

    def snapshot(self) -> ListingSnapshot:
        return ListingSnapshot(
            title=self.title,
            marketplace=self.marketplace,
            price=float(self.price) if self.price is not None else None,
            image_url=self.image_url,
        )


@dataclass
class MatchFactors:
    name_match: float = 0.5
    price_match: float = 0.5
    specs_match: float = 0.5
    image_match: Optional[float] = None


@dataclass
class MatchDecision:
    """Result of comparing a candidate listing against a reference product."""

    is_match: bool
    confidence: float
    reasoning: str
    factors: MatchFactors = field(default_factory=MatchFactors)
    available: bool = True  # False for the review-required fallback

    @property
    def verdict(self) -> "MatchVerdict":
        # The review-required fallback goes to manual review whatever its score
        if not self.available:
            return MatchVerdict.REVIEW
        return decision_for(self.confidence)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["verdict"] = self.verdict.value
        return data


def decision_for(confidence: float) -> MatchVerdict:
    """
    Map a confidence score to a verdict.

    >= 0.85 auto-accept, [0.70, 0.85) review, < 0.70 auto-reject.
    """
    if confidence >= AUTO_ACCEPT_THRESHOLD:
        return MatchVerdict.AUTO_ACCEPT
    if confidence >= REVIEW_THRESHOLD:
        return MatchVerdict.REVIEW
    return MatchVerdict.AUTO_REJECT


def unavailable_decision() -> MatchDecision:
    """Safe default used whenever the comparator cannot decide."""
    return MatchDecision(
        is_match=False,
        confidence=0.5,
        reasoning=UNAVAILABLE_REASONING,
        factors=MatchFactors(name_match=0.5, price_match=0.5, specs_match=0.5),
        available=False,
    )


def _image_asset(url: str) -> tuple[str, str]:
    # Resize and cache-busting parameters live in the query string
    parts = urlsplit(url.strip())
    return parts.netloc.lower(), parts.path


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def clamp_decision(decision: MatchDecision) -> MatchDecision:
    factors = decision.factors
    return MatchDecision(
        is_match=bool(decision.is_match),
        confidence=_clamp(decision.confidence),
        reasoning=decision.reasoning,
        factors=MatchFactors(
            name_match=_clamp(factors.name_match),
            price_match=_clamp(factors.price_match),
            specs_match=_clamp(factors.specs_match),
            image_match=_clamp(factors.image_match) if factors.image_match is not None else None,
        ),
        available=decision.available,
    )


class Comparator(Protocol):
    """Capability that scores a candidate against a reference."""

    async def compare(self, reference: ProductInfo, candidate: ProductInfo) -> MatchDecision:
        ...

    async def compare_batch(
        self, reference: ProductInfo, candidates: list[ProductInfo]
    ) -> list[MatchDecision]:
        ...


class RuleComparator:
    """
    Deterministic comparator built on fuzzy title similarity and attribute rules.

    Factors are weighted name 0.45, specs 0.35, price 0.20. When both listings
    serve the same image asset the image factor joins the aggregate at 0.15,
    scaling the others down. Any conflict on a distinguishing attribute (color,
    storage, size, tier, bundle, model number) caps the confidence at 0.60 so
    such candidates are never auto-accepted nor queued for review.
    """

    NAME_WEIGHT = 0.45
    SPECS_WEIGHT = 0.35
    PRICE_WEIGHT = 0.20
    IMAGE_WEIGHT = 0.15

    CONFLICT_CAP = 0.60
    NORMAL_PRICE_DIVERGENCE = 0.30
    UNKNOWN_PRICE_SCORE = 0.75
    ONE_SIDED_PENALTY = 0.15

    def __init__(self, extractor: Optional[AttributeExtractor] = None):
        self.extractor = extractor or attribute_extractor

    def _name_score(self, ref_tokens: list[str], cand_tokens: list[str]) -> float:
        if not ref_tokens or not cand_tokens:
            return 0.0
        ref_text = " ".join(ref_tokens)
        cand_text = " ".join(cand_tokens)
        sort_ratio = fuzz.token_sort_ratio(ref_text, cand_text)
        set_ratio = fuzz.token_set_ratio(ref_text, cand_text)
        return (sort_ratio + set_ratio) / 200.0

    def _price_score(self, reference: Price, candidate: Price) -> float:
        if reference is None or candidate is None:
            return self.UNKNOWN_PRICE_SCORE
        ref_price = float(reference)
        cand_price = float(candidate)
        if ref_price <= 0:
            return 1.0 if cand_price <= 0 else self.UNKNOWN_PRICE_SCORE

        divergence = abs(cand_price - ref_price) / ref_price
        if divergence <= self.NORMAL_PRICE_DIVERGENCE:
            return 1.0
        return max(0.0, 1.0 - (divergence - self.NORMAL_PRICE_DIVERGENCE) / 0.7)

    def _image_score(self, reference: ProductInfo, candidate: ProductInfo) -> Optional[float]:
        """1.0 when both listings serve the same image asset, otherwise no evidence."""
        if not (reference.image_url and candidate.image_url):
            return None
        if _image_asset(reference.image_url) == _image_asset(candidate.image_url):
            return 1.0
        return None

    async def compare(self, reference: ProductInfo, candidate: ProductInfo) -> MatchDecision:
        ref_attrs = self.extractor.extract(reference.title)
        cand_attrs = self.extractor.extract(candidate.title)

        name_score = self._name_score(ref_attrs.core_tokens, cand_attrs.core_tokens)
        price_score = self._price_score(reference.price, candidate.price)

        conflicts = self.extractor.conflicts(ref_attrs, cand_attrs)
        one_sided = self.extractor.one_sided(ref_attrs, cand_attrs)

        if conflicts:
            specs_score = 0.0
        else:
            specs_score = max(0.0, 1.0 - self.ONE_SIDED_PENALTY * len(one_sided))

        confidence = (
            self.NAME_WEIGHT * name_score
            + self.SPECS_WEIGHT * specs_score
            + self.PRICE_WEIGHT * price_score
        )
        image_score = self._image_score(reference, candidate)
        if image_score is not None:
            confidence = (1 - self.IMAGE_WEIGHT) * confidence + self.IMAGE_WEIGHT * image_score
        if conflicts:
            confidence = min(confidence, self.CONFLICT_CAP)

        if conflicts:
            reasoning = "Different product: " + "; ".join(conflicts)
        elif confidence >= AUTO_ACCEPT_THRESHOLD:
            reasoning = "Same product; title and attributes agree"
        else:
            notes = [f"title similarity {name_score:.2f}"]
            if one_sided:
                notes.append("only one listing states " + ", ".join(one_sided))
            if price_score < 1.0 and reference.price is not None and candidate.price is not None:
                notes.append("price gap beyond normal marketplace variance")
            reasoning = "Uncertain match: " + "; ".join(notes)

        return clamp_decision(MatchDecision(
            is_match=not conflicts and confidence >= REVIEW_THRESHOLD,
            confidence=confidence,
            reasoning=reasoning,
            factors=MatchFactors(
                name_match=name_score,
                price_match=price_score,
                specs_match=specs_score,
                image_match=image_score,
            ),
        ))

    async def compare_batch(
        self, reference: ProductInfo, candidates: list[ProductInfo]
    ) -> list[MatchDecision]:
        return [await self.compare(reference, candidate) for candidate in candidates]


class _FactorsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name_match: float
    price_match: float
    specs_match: float
    image_match: Optional[float] = None


class _DecisionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    is_match: StrictBool
    confidence: float
    reasoning: str
    factors: _FactorsPayload

    def to_decision(self) -> MatchDecision:
        return clamp_decision(MatchDecision(
            is_match=self.is_match,
            confidence=self.confidence,
            reasoning=self.reasoning,
            factors=MatchFactors(**self.factors.model_dump()),
        ))


class _BatchPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    results: list[_DecisionPayload]


class LLMComparator:
    """
    Comparator backed by an OpenAI chat completion.

    When both products carry an image the two images are sent with the text
    and the model also scores ``image_match``. Images the API cannot load
    fall back to a text-only comparison.
    """

    def __init__(self, llm: Optional[LLMService] = None):
        self.llm = llm or llm_service

    async def _request(self, prompt: ProductMatchPrompt, images: list[str]):
        if not images:
            return await self.llm.call_llm_structured(
                prompt=prompt.to_prompt(),
                response_schema=PRODUCT_MATCH_SCHEMA,
                system_prompt=PRODUCT_MATCH_SYSTEM_PROMPT,
            )
        return await self.llm.call_llm_structured(
            prompt=prompt.to_prompt(),
            response_schema=PRODUCT_MATCH_SCHEMA,
            system_prompt=f"{PRODUCT_MATCH_SYSTEM_PROMPT}\n\n{IMAGE_MATCH_NOTE}",
            images=images,
        )

    async def compare(self, reference: ProductInfo, candidate: ProductInfo) -> MatchDecision:
        prompt = ProductMatchPrompt(
            reference=reference.snapshot(),
            candidate=candidate.snapshot(),
        )
        images = prompt.image_urls()
        try:
            try:
                payload = await self._request(prompt, images)
            except openai.BadRequestError as e:
                if not images:
                    raise
                logger.warning(f"Image comparison rejected, matching on text only: {e}")
                payload = await self._request(prompt, [])
            return _DecisionPayload.model_validate(payload).to_decision()
        except (ValueError, ValidationError) as e:
            raise MatchingUnavailableError(f"Malformed match response: {e}") from e

    async def compare_batch(
        self, reference: ProductInfo, candidates: list[ProductInfo]
    ) -> list[MatchDecision]:
        # Image comparisons are made one pair per request
        if reference.image_url and any(c.image_url for c in candidates):
            return [await self.compare(reference, c) for c in candidates]

        prompt = BatchMatchPrompt(
            reference=reference.snapshot(),
            candidates=[c.snapshot() for c in candidates],
        )
        try:
            payload = await self.llm.call_llm_structured(
                prompt=prompt.to_prompt(),
                response_schema=BATCH_MATCH_SCHEMA,
                system_prompt=PRODUCT_MATCH_SYSTEM_PROMPT,
            )
            batch = _BatchPayload.model_validate(payload)
        except (ValueError, ValidationError) as e:
            raise MatchingUnavailableError(f"Malformed batch match response: {e}") from e

        if len(batch.results) != len(candidates):
            raise MatchingUnavailableError(
                f"Batch match returned {len(batch.results)} results for {len(candidates)} candidates"
            )
        return [result.to_decision() for result in batch.results]


def build_comparator(kind: Optional[str] = None) -> Comparator:
    """Build the configured comparator (``rules`` or ``llm``)."""
    kind = (kind or settings.matching_comparator).lower()
    if kind == "llm":
        return LLMComparator()
    if kind != "rules":
        logger.warning(f"Unknown comparator '{kind}', falling back to rules")
    return RuleComparator()


class ProductMatcher:
    """
    Matching engine: wraps a comparator with retries and the review-required fallback.

    Neither ``match`` nor ``match_batch`` raises; a comparator that cannot
    decide yields ``unavailable_decision()``.
    """

    def __init__(
        self,
        comparator: Optional[Comparator] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep=asyncio.sleep,
    ):
        self.comparator = comparator or build_comparator()
        self.max_attempts = max_attempts or settings.matching_max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.matching_base_delay_seconds
        self.timeout = timeout or settings.matching_timeout_seconds
        self._sleep = sleep

    async def _call(self, fn, name: str):
        return await retry_with_backoff(
            fn,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            timeout=self.timeout,
            give_up_on=(LLMUnavailableError,),
            name=name,
            sleep=self._sleep,
        )

    async def match(self, reference: ProductInfo, candidate: ProductInfo) -> MatchDecision:
        """
        Score a candidate listing against a reference product.

        Args:
            reference: The tracked product
            candidate: Listing found on another marketplace

        Returns:
            MatchDecision with confidence in [0, 1]
        """
        try:
            decision = await self._call(
                lambda: self.comparator.compare(reference, candidate),
                name="product match",
            )
        except Exception as e:
            logger.warning(
                f"Matching unavailable for '{candidate.title[:60]}': {e}"
            )
            record_matching_fallback()
            return unavailable_decision()

        return clamp_decision(decision)

    async def match_batch(
        self, reference: ProductInfo, candidates: list[ProductInfo]
    ) -> list[MatchDecision]:
        """
        Score several candidates at once.

        Returns one decision per candidate, in input order. If the batch path
        fails or returns the wrong number of results, each candidate is
        matched individually instead.
        """
        if not candidates:
            return []

        try:
            decisions = await self._call(
                lambda: self.comparator.compare_batch(reference, candidates),
                name="batch product match",
            )
            if len(decisions) != len(candidates):
                raise MatchingUnavailableError(
                    f"expected {len(candidates)} decisions, got {len(decisions)}"
                )
            return [clamp_decision(d) for d in decisions]
        except Exception as e:
            logger.warning(
                f"Batch matching failed for {len(candidates)} candidates, "
                f"falling back to single matches: {e}"
            )

        return [await self.match(reference, candidate) for candidate in candidates]


# Global product matcher instance
product_matcher = ProductMatcher()
