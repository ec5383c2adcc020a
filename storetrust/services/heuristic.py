"""Rule-based review risk evaluator.

Used directly for reviews that have no persisted analysis, and as the last
resort of the provider chain. Pure and deterministic: no I/O, same input ->
same output.

Scores (all clamped to [0, 1]):
- adRisk: marketing-like language and signals
- undisclosedAdRisk: always 0 here (disclosure cannot be inferred from text)
- lowQualityRisk: weak evidence / spam-like writing
- trustScore: experience specificity and consistency
"""

import re
from dataclasses import dataclass, field
from storetrust.models.review import ReviewSource

HEURISTIC_PROVIDER = "heuristic"
HEURISTIC_MODEL = "rule-based-v1"


@dataclass(frozen=True)
class AnalysisInput:
    """What every analyzer receives."""

    rating: float
    content: str
    is_disclosed_ad: bool = False
    source: ReviewSource = ReviewSource.EXTERNAL


@dataclass
class AnalysisResult:
    """Normalized analysis output plus provider meta."""

    ad_risk: float
    undisclosed_ad_risk: float
    low_quality_risk: float
    trust_score: float
    confidence: float
    signals: list[str] = field(default_factory=list)
    reason_summary: str = ""
    provider: str = HEURISTIC_PROVIDER
    model: str = HEURISTIC_MODEL
    version: str = "v1"


AD_KEYWORDS = [
    "협찬",
    "광고",
    "체험단",
    "지원받아",
    "제공받아",
    "원고료",
    "파트너스",
    "수수료",
    "promotion",
    "sponsored",
    "ad",
]

CTA_KEYWORDS = [
    "링크",
    "쿠폰",
    "코드",
    "할인",
    "프로필",
    "클릭",
    "dm",
    "문의",
    "구매",
    "주문",
]

DETAIL_WORDS = [
    "직원",
    "서비스",
    "가격",
    "양",
    "맛",
    "분위기",
    "대기",
    "화장실",
    "주차",
    "재방문",
    "메뉴",
    "portion",
    "service",
    "taste",
]

POSITIVE_WORDS = ["친절", "맛있", "추천", "만족", "좋", "great", "good"]
NEGATIVE_WORDS = ["불친절", "별로", "실망", "최악", "나쁘", "bad", "worst"]

_LINK_RE = re.compile(r"(https?://|www\.|bit\.ly|linktr\.ee|open\.kakao)")
_HASHTAG_RE = re.compile(r"#\w+")
_REPEATED_RE = re.compile(r"(.)\1{4,}")


def clamp01(value: float) -> float:
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return float(value)


def round4(value: float) -> float:
    return round(value, 4)


def combined_ad_probability(ad_risk: float, undisclosed_ad_risk: float) -> float:
    """Probability a review is ad-like from either signal (independent-event union)."""
    return 1 - (1 - ad_risk) * (1 - undisclosed_ad_risk)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # ASCII keywords must start on a word boundary ("ad" must not hit "bad").
    if keyword.isascii():
        return re.compile(rf"\b{re.escape(keyword)}")
    return re.compile(re.escape(keyword))


_AD_PATTERNS = [_keyword_pattern(k) for k in AD_KEYWORDS]
_CTA_PATTERNS = [_keyword_pattern(k) for k in CTA_KEYWORDS]
_DETAIL_PATTERNS = [_keyword_pattern(k) for k in DETAIL_WORDS]
_POSITIVE_PATTERNS = [_keyword_pattern(k) for k in POSITIVE_WORDS]
_NEGATIVE_PATTERNS = [_keyword_pattern(k) for k in NEGATIVE_WORDS]


def _includes_any(text: str, patterns: list[re.Pattern[str]]) -> bool:
    return any(p.search(text) for p in patterns)


def _strip_matches(text: str, patterns: list[re.Pattern[str]]) -> str:
    for p in patterns:
        text = p.sub(" ", text)
    return text


def heuristic_analyze_review(data: AnalysisInput, version: str = "v1") -> AnalysisResult:
    """Score one review with fixed keyword/shape rules.

    Args:
        data: Review rating, text and disclosure flag.
        version: Analysis version tag to stamp on the result.

    Returns:
        AnalysisResult with provider "heuristic".
    """
    rating = max(1.0, min(5.0, float(data.rating)))
    text = (data.content or "").strip().lower()
    disclosed = bool(data.is_disclosed_ad)

    ad_risk = 0.06
    undisclosed_ad_risk = 0.0
    low_quality_risk = 0.1
    trust_score = 0.75
    confidence = 0.55

    signals: list[str] = []

    has_ad_keyword = _includes_any(text, _AD_PATTERNS)
    has_cta_keyword = _includes_any(text, _CTA_PATTERNS)
    has_detail_word = _includes_any(text, _DETAIL_PATTERNS)
    has_negative_word = _includes_any(text, _NEGATIVE_PATTERNS)
    # "불친절" contains "친절": look for positives only outside negative words.
    has_positive_word = _includes_any(_strip_matches(text, _NEGATIVE_PATTERNS), _POSITIVE_PATTERNS)
    has_link = bool(_LINK_RE.search(text))
    hashtag_count = len(_HASHTAG_RE.findall(text))
    short_text = len(text) < 20
    repeated_chars = bool(_REPEATED_RE.search(text))

    rating_mismatch = (rating >= 4 and has_negative_word and not has_positive_word) or (
        rating <= 2 and has_positive_word and not has_negative_word
    )

    if disclosed:
        ad_risk += 0.45
        trust_score -= 0.08
        confidence += 0.08
        signals.append("disclosed_ad")

    if has_ad_keyword:
        ad_risk += 0.22
        trust_score -= 0.08
        confidence += 0.06
        signals.append("ad_keyword")

    if has_cta_keyword:
        ad_risk += 0.18
        trust_score -= 0.06
        confidence += 0.05
        signals.append("cta")

    if has_link:
        ad_risk += 0.16
        low_quality_risk += 0.06
        trust_score -= 0.05
        confidence += 0.04
        signals.append("has_link")

    if hashtag_count >= 5:
        ad_risk += 0.1
        low_quality_risk += 0.06
        trust_score -= 0.04
        signals.append("many_hashtags")

    if short_text:
        low_quality_risk += 0.22
        trust_score -= 0.14
        signals.append("too_short")

    if repeated_chars:
        low_quality_risk += 0.1
        trust_score -= 0.08
        signals.append("repetitive_text")

    if rating_mismatch:
        low_quality_risk += 0.18
        trust_score -= 0.1
        signals.append("rating_mismatch")

    if has_detail_word:
        low_quality_risk -= 0.12
        trust_score += 0.12
        confidence += 0.05
        signals.append("experience_detail")

    if has_positive_word and has_negative_word:
        trust_score += 0.06
        low_quality_risk -= 0.05
        confidence += 0.03
        signals.append("balanced_sentiment")

    ad_risk = clamp01(ad_risk)
    undisclosed_ad_risk = clamp01(undisclosed_ad_risk)
    low_quality_risk = clamp01(low_quality_risk)

    ad_any = combined_ad_probability(ad_risk, undisclosed_ad_risk)
    trust_score = clamp01(trust_score - ad_any * 0.35 - low_quality_risk * 0.45)
    confidence = clamp01(confidence)

    reason_parts: list[str] = []
    if ad_any >= 0.6:
        reason_parts.append("Likely advertising")
    if low_quality_risk >= 0.5:
        reason_parts.append("Low-quality signals with little supporting detail")
    if trust_score >= 0.7:
        reason_parts.append("Contains first-hand experience details")

    return AnalysisResult(
        ad_risk=round4(ad_risk),
        undisclosed_ad_risk=round4(undisclosed_ad_risk),
        low_quality_risk=round4(low_quality_risk),
        trust_score=round4(trust_score),
        confidence=round4(confidence),
        signals=signals,
        reason_summary=". ".join(reason_parts) or "Too few signals; scored conservatively.",
        provider=HEURISTIC_PROVIDER,
        model=HEURISTIC_MODEL,
        version=version,
    )
