"""AI risk review of newly inserted resources."""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.services.ai_client import ChatCompletionClient, extract_json_object
from app.services.resource_repository import update_resource_ai_review

logger = logging.getLogger(__name__)

REVIEW_PROMPT = """You are a content review assistant. Assess the quality and safety of
the resource below.

Title: {title}
Description: {description}
Link: {link}

Consider legal compliance, usefulness, description quality and link safety.
Ordinary learning material, tools, documents and entertainment are low risk
(usually 20-40). Only clearly illegal, fraudulent or malicious content deserves
a high score (70 or more). A higher score means a higher risk.

Reply with JSON only:
{{
  "riskScore": <number 0-100>,
  "reasoning": "why this score"
}}"""


@dataclass
class ReviewResult:
    risk_score: int
    should_auto_approve: bool
    reasoning: str


def score_resource_with_ai(
    title: str,
    description: str,
    link: str,
    client: Optional[ChatCompletionClient],
    enabled: bool = True,
    auto_approve_threshold: int = 60,
) -> ReviewResult:
    """Score one resource. Failures give a manual-review result instead of raising."""
    if not enabled:
        return ReviewResult(0, True, "AI review disabled, approved by default")
    if client is None:
        return ReviewResult(50, False, "AI API key not configured, manual review required")

    prompt = REVIEW_PROMPT.format(title=title, description=description, link=link)
    try:
        parsed = extract_json_object(client.complete(prompt, temperature=0.3, max_tokens=500))
        raw_score = parsed.get("riskScore")
        reasoning = parsed.get("reasoning")
        if not isinstance(raw_score, (int, float)) or not reasoning:
            raise ValueError("riskScore or reasoning missing")
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"❌ AI review failed for '{title}': {e}")
        return ReviewResult(50, False, f"AI review failed: {e}, manual review required")

    risk_score = max(0, min(100, round(raw_score)))
    logger.info(f"🤖 AI review of '{title}': risk={risk_score}")
    return ReviewResult(risk_score, risk_score < auto_approve_threshold, str(reasoning))


def review_resource(
    db: Session,
    resource_id: int,
    title: str,
    description: str,
    link: str,
    client: Optional[ChatCompletionClient],
    enabled: bool = True,
    auto_approve_threshold: int = 60,
) -> ReviewResult:
    """Score a resource and store the outcome, approving it when the risk is low."""
    result = score_resource_with_ai(
        title, description, link, client, enabled, auto_approve_threshold
    )
    update_resource_ai_review(
        db,
        resource_id,
        risk_score=result.risk_score,
        reasoning=result.reasoning,
        auto_approved=result.should_auto_approve,
    )
    return result
