"""Tests for the product matching engine."""

from decimal import Decimal

import httpx
import openai
import pytest

from pricesync.ai.llm_service import LLMUnavailableError
from pricesync.ai.prompts import IMAGE_MATCH_NOTE
from pricesync.ai.product_matcher import (
    UNAVAILABLE_REASONING,
    LLMComparator,
    MatchDecision,
    MatchVerdict,
    ProductInfo,
    ProductMatcher,
    RuleComparator,
    decision_for,
)

REFERENCE = ProductInfo(title="Wireless Headphones X200", price=Decimal("79.99"), marketplace="amazon")


def rule_matcher(sleep_recorder) -> ProductMatcher:
    return ProductMatcher(comparator=RuleComparator(), base_delay=0, sleep=sleep_recorder)


class FailingComparator:
    def __init__(self):
        self.calls = 0

    async def compare(self, reference, candidate):
        self.calls += 1
        raise RuntimeError("comparator exploded")

    async def compare_batch(self, reference, candidates):
        self.calls += 1
        raise RuntimeError("comparator exploded")


class FakeLLM:
    """Minimal stand-in for LLMService returning a canned payload."""

    def __init__(self, payload=None, error=None, image_error=None):
        self.payload = payload
        self.error = error
        self.image_error = image_error
        self.calls = 0
        self.requests = []

    async def call_llm_structured(self, prompt, response_schema, system_prompt="", images=()):
        self.calls += 1
        self.requests.append({"system_prompt": system_prompt, "images": list(images)})
        if self.error:
            raise self.error
        if images and self.image_error:
            raise self.image_error
        return self.payload


def llm_payload(is_match=True, confidence=0.9):
    return {
        "is_match": is_match,
        "confidence": confidence,
        "reasoning": "Same model and variant",
        "factors": {"name_match": 0.95, "price_match": 0.9, "specs_match": 1.0},
    }


def test_decision_thresholds():
    assert decision_for(0.85) == MatchVerdict.AUTO_ACCEPT
    assert decision_for(0.8499) == MatchVerdict.REVIEW
    assert decision_for(0.70) == MatchVerdict.REVIEW
    assert decision_for(0.6999) == MatchVerdict.AUTO_REJECT
    assert decision_for(0.0) == MatchVerdict.AUTO_REJECT


def test_decision_is_monotonic_in_confidence():
    rank = {MatchVerdict.AUTO_REJECT: 0, MatchVerdict.REVIEW: 1, MatchVerdict.AUTO_ACCEPT: 2}
    verdicts = [rank[decision_for(i / 100)] for i in range(101)]

    assert verdicts == sorted(verdicts)


@pytest.mark.asyncio
async def test_same_product_other_seller_is_accepted(sleep_recorder):
    """A color note on one listing and a small price gap still auto-accept."""
    candidate = ProductInfo(
        title="Wireless Headphones X200 (Black)", price=Decimal("82.00"), marketplace="walmart"
    )

    decision = await rule_matcher(sleep_recorder).match(REFERENCE, candidate)

    assert decision.is_match
    assert decision.confidence >= 0.85
    assert decision.verdict == MatchVerdict.AUTO_ACCEPT
    assert decision.available


@pytest.mark.asyncio
async def test_pro_variant_with_storage_is_rejected(sleep_recorder):
    candidate = ProductInfo(
        title="Wireless Headphones X200 PRO (512GB)", price=Decimal("79.99"), marketplace="target"
    )

    decision = await rule_matcher(sleep_recorder).match(REFERENCE, candidate)

    assert not decision.is_match
    assert decision.confidence < 0.70
    assert decision.factors.price_match == 1.0
    assert decision.verdict == MatchVerdict.AUTO_REJECT
    assert "variant" in decision.reasoning


@pytest.mark.asyncio
async def test_unrelated_product_scores_low(sleep_recorder):
    candidate = ProductInfo(title="Stainless Steel Kitchen Kettle", price=Decimal("15.00"))

    decision = await rule_matcher(sleep_recorder).match(REFERENCE, candidate)

    assert not decision.is_match
    assert decision.confidence < 0.70


@pytest.mark.asyncio
async def test_scores_stay_in_unit_range(sleep_recorder):
    candidate = ProductInfo(title="Wireless Headphones X200", price=Decimal("500.00"))

    decision = await rule_matcher(sleep_recorder).match(REFERENCE, candidate)

    for value in (
        decision.confidence,
        decision.factors.name_match,
        decision.factors.price_match,
        decision.factors.specs_match,
    ):
        assert 0.0 <= value <= 1.0
    assert decision.factors.price_match < 1.0


@pytest.mark.asyncio
async def test_comparator_failure_returns_review_default(sleep_recorder):
    """Never raises: exhausted retries yield the manual-review fallback."""
    comparator = FailingComparator()
    matcher = ProductMatcher(comparator=comparator, max_attempts=3, base_delay=2.0, sleep=sleep_recorder)

    decision = await matcher.match(REFERENCE, ProductInfo(title="Anything"))

    assert comparator.calls == 3
    assert sleep_recorder.delays == [2.0, 4.0]
    assert decision.is_match is False
    assert decision.confidence == 0.5
    assert decision.reasoning == UNAVAILABLE_REASONING
    assert decision.available is False
    assert decision.factors.name_match == 0.5
    assert decision.verdict == MatchVerdict.REVIEW


@pytest.mark.asyncio
async def test_malformed_llm_response_returns_default(sleep_recorder):
    llm = FakeLLM(payload={"is_match": "yes", "confidence": "very high"})
    matcher = ProductMatcher(comparator=LLMComparator(llm), base_delay=0, sleep=sleep_recorder)

    decision = await matcher.match(REFERENCE, ProductInfo(title="Wireless Headphones X200"))

    assert decision.available is False
    assert decision.reasoning == UNAVAILABLE_REASONING


@pytest.mark.asyncio
async def test_unconfigured_llm_is_not_retried(sleep_recorder):
    llm = FakeLLM(error=LLMUnavailableError("OPENAI_API_KEY not configured"))
    matcher = ProductMatcher(comparator=LLMComparator(llm), max_attempts=3, sleep=sleep_recorder)

    decision = await matcher.match(REFERENCE, ProductInfo(title="Wireless Headphones X200"))

    assert llm.calls == 1
    assert decision.available is False


@pytest.mark.asyncio
async def test_llm_confidence_is_clamped(sleep_recorder):
    llm = FakeLLM(payload=llm_payload(confidence=1.4))
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)

    decision = await matcher.match(REFERENCE, ProductInfo(title="Wireless Headphones X200"))

    assert decision.confidence == 1.0
    assert decision.is_match is True
    assert decision.available is True


@pytest.mark.asyncio
async def test_llm_batch_returns_one_decision_per_candidate(sleep_recorder):
    llm = FakeLLM(payload={"results": [llm_payload(), llm_payload(is_match=False, confidence=0.2)]})
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)

    decisions = await matcher.match_batch(
        REFERENCE,
        [ProductInfo(title="Wireless Headphones X200"), ProductInfo(title="Kettle")],
    )

    assert llm.calls == 1
    assert [d.is_match for d in decisions] == [True, False]


@pytest.mark.asyncio
async def test_batch_length_mismatch_falls_back_to_single_matches(sleep_recorder):
    class ShortBatchComparator(RuleComparator):
        async def compare_batch(self, reference, candidates):
            return [MatchDecision(is_match=True, confidence=0.99, reasoning="only one")]

    matcher = ProductMatcher(comparator=ShortBatchComparator(), base_delay=0, sleep=sleep_recorder)
    candidates = [
        ProductInfo(title="Wireless Headphones X200 (Black)", price=Decimal("82.00")),
        ProductInfo(title="Wireless Headphones X200 PRO (512GB)", price=Decimal("84.00")),
    ]

    decisions = await matcher.match_batch(REFERENCE, candidates)

    assert len(decisions) == 2
    assert decisions[0].verdict == MatchVerdict.AUTO_ACCEPT
    assert decisions[1].verdict == MatchVerdict.AUTO_REJECT


@pytest.mark.asyncio
async def test_empty_batch(sleep_recorder):
    assert await rule_matcher(sleep_recorder).match_batch(REFERENCE, []) == []


REF_IMAGE = "https://m.media-amazon.com/images/I/x200-front.jpg?w=500"


@pytest.mark.asyncio
async def test_shared_image_asset_strengthens_rule_match(sleep_recorder):
    matcher = rule_matcher(sleep_recorder)
    reference = ProductInfo(title="Wireless Headphones X200", price=Decimal("79.99"), image_url=REF_IMAGE)
    title = "Wireless Headphones X200 (Black)"

    text_only = await matcher.match(reference, ProductInfo(title=title, price=Decimal("82.00")))
    same_asset = await matcher.match(reference, ProductInfo(
        title=title, price=Decimal("82.00"),
        image_url="https://m.media-amazon.com/images/I/x200-front.jpg?w=120",
    ))
    other_asset = await matcher.match(reference, ProductInfo(
        title=title, price=Decimal("82.00"), image_url="https://i5.walmartimages.com/x200.jpg",
    ))

    assert text_only.factors.image_match is None
    assert same_asset.factors.image_match == 1.0
    assert same_asset.confidence >= text_only.confidence
    assert other_asset.factors.image_match is None
    assert other_asset.confidence == text_only.confidence


@pytest.mark.asyncio
async def test_shared_image_does_not_rescue_a_variant(sleep_recorder):
    reference = ProductInfo(title="Wireless Headphones X200", price=Decimal("79.99"), image_url=REF_IMAGE)
    candidate = ProductInfo(
        title="Wireless Headphones X200 PRO (512GB)", price=Decimal("79.99"), image_url=REF_IMAGE
    )

    decision = await rule_matcher(sleep_recorder).match(reference, candidate)

    assert decision.confidence <= 0.60
    assert decision.verdict == MatchVerdict.AUTO_REJECT


def image_payload(image_match=0.8):
    payload = llm_payload()
    payload["factors"]["image_match"] = image_match
    return payload


@pytest.mark.asyncio
async def test_llm_receives_both_images(sleep_recorder):
    llm = FakeLLM(payload=image_payload())
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)
    reference = ProductInfo(title="Wireless Headphones X200", image_url=REF_IMAGE)

    decision = await matcher.match(
        reference,
        ProductInfo(title="Wireless Headphones X200", image_url="https://i5.walmartimages.com/x200.jpg"),
    )

    assert llm.requests[0]["images"] == [REF_IMAGE, "https://i5.walmartimages.com/x200.jpg"]
    assert IMAGE_MATCH_NOTE in llm.requests[0]["system_prompt"]
    assert decision.factors.image_match == 0.8


@pytest.mark.asyncio
async def test_llm_matches_on_text_when_one_side_has_no_image(sleep_recorder):
    llm = FakeLLM(payload=llm_payload())
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)

    await matcher.match(
        ProductInfo(title="Wireless Headphones X200", image_url=REF_IMAGE),
        ProductInfo(title="Wireless Headphones X200"),
    )

    assert llm.requests[0]["images"] == []
    assert IMAGE_MATCH_NOTE not in llm.requests[0]["system_prompt"]


@pytest.mark.asyncio
async def test_rejected_images_fall_back_to_text(sleep_recorder):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    llm = FakeLLM(
        payload=llm_payload(),
        image_error=openai.BadRequestError(
            "Invalid image URL", response=httpx.Response(400, request=request), body=None
        ),
    )
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)

    decision = await matcher.match(
        ProductInfo(title="Wireless Headphones X200", image_url=REF_IMAGE),
        ProductInfo(title="Wireless Headphones X200", image_url="https://img.example/broken.jpg"),
    )

    assert [r["images"] for r in llm.requests] == [
        [REF_IMAGE, "https://img.example/broken.jpg"],
        [],
    ]
    assert decision.available is True
    assert decision.is_match is True


@pytest.mark.asyncio
async def test_llm_batch_with_images_compares_pairwise(sleep_recorder):
    llm = FakeLLM(payload=image_payload())
    matcher = ProductMatcher(comparator=LLMComparator(llm), sleep=sleep_recorder)
    candidates = [
        ProductInfo(title="Wireless Headphones X200", image_url="https://img.example/1.jpg"),
        ProductInfo(title="Wireless Headphones X200 (Black)", image_url="https://img.example/2.jpg"),
    ]

    decisions = await matcher.match_batch(
        ProductInfo(title="Wireless Headphones X200", image_url=REF_IMAGE), candidates
    )

    assert llm.calls == 2
    assert [r["images"][1] for r in llm.requests] == [c.image_url for c in candidates]
    assert [d.factors.image_match for d in decisions] == [0.8, 0.8]
