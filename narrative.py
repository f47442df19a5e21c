"""
AI-written safety narrative for a property (Gemini).

The prompt carries the cached component scores, the property's name and
address, and up to ten recent reviews.  Generation is best-effort: any
failure (missing key, timeout, blocked or empty response) returns None,
and the enrichment worker marks the job failed.  Readers then see
NARRATIVE_FALLBACK instead of a stale or empty summary.
"""

import logging
import os
import time
from typing import List, Optional

import google.generativeai as genai

from score_trace import get_trace

logger = logging.getLogger(__name__)

GEMINI_LLM_MODEL = os.environ.get("GEMINI_LLM_MODEL", "gemini-1.5-flash")
NARRATIVE_TIMEOUT_S = 30
MAX_REVIEWS_IN_PROMPT = 10
REVIEW_SNIPPET_CHARS = 150

NARRATIVE_FALLBACK = (
    "The AI summary is temporarily unavailable. "
    "Please refer to the component scores above."
)


def _fmt(value) -> str:
    try:
        return f"{float(value):.1f}"
    except (TypeError, ValueError):
        return "n/a"


def _review_line(review: dict) -> str:
    text = (review.get("review_text") or "").strip()
    if not text:
        text = "(no comment)"
    elif len(text) > REVIEW_SNIPPET_CHARS:
        text = text[:REVIEW_SNIPPET_CHARS].rstrip() + "..."
    return f'- "{text}" (safety {review.get("safety_rating", "?")}/5)'


def build_prompt(scores: dict, prop: Optional[dict], reviews: List[dict]) -> str:
    """Assemble the narrative prompt.  Pure; no I/O."""
    prop = prop or {}
    reviews = list(reviews or [])[:MAX_REVIEWS_IN_PROMPT]
    review_block = "\n".join(_review_line(r) for r in reviews) or "- No tenant reviews yet."

    admin_line = ""
    if scores.get("admin") is not None:
        admin_line = f"\n- Staff inspection: {_fmt(scores.get('admin'))}"

    return f"""You are a rental housing advisor. Write a short assessment (about 150 words) of how safe this rental room is.

PROPERTY:
- Name: {prop.get('name') or 'Rental room'}
- Address: {prop.get('address') or 'Unknown'}

SCORES (0-10, higher is safer):
- Overall: {_fmt(scores.get('overall'))}
- Security: {_fmt(scores.get('crime'))} (recent incidents nearby, weighted by severity, age and distance)
- Community: {_fmt(scores.get('user'))} (based on {len(reviews)} tenant reviews)
- Environment: {_fmt(scores.get('environment'))} (nearby amenities, flood risk, rail noise){admin_line}

TENANT REVIEWS:
{review_block}

OUTPUT:
- Markdown.
- Go straight to strengths and weaknesses.
- Explain the risk behind any low score; acknowledge high scores briefly.
- End with a one-line recommendation on whether to rent."""


def generate_narrative(
    scores: dict,
    prop: Optional[dict],
    reviews: List[dict],
    api_key: Optional[str] = None,
    model_name: Optional[str] = None,
    timeout: float = NARRATIVE_TIMEOUT_S,
) -> Optional[str]:
    """Generate the narrative text, or None on any failure."""
    api_key = api_key if api_key is not None else os.environ.get("GEMINI_API_KEY")
    if not api_key:
        logger.warning("[narrative] GEMINI_API_KEY not configured; skipping generation")
        return None

    prompt = build_prompt(scores, prop, reviews)
    trace = get_trace()
    t0 = time.time()
    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(model_name or GEMINI_LLM_MODEL)
        result = model.generate_content(
            prompt,
            generation_config=genai.types.GenerationConfig(
                temperature=0.7,
                max_output_tokens=1024,
            ),
            request_options={"timeout": timeout},
        )
        text = (result.text or "").strip()
    except Exception:
        logger.warning("[narrative] Gemini generation failed", exc_info=True)
        if trace:
            trace.record_api_call(
                service="gemini",
                endpoint="generate_content",
                elapsed_ms=int((time.time() - t0) * 1000),
                status_code=0,
                provider_status="ERROR",
            )
        return None

    if trace:
        trace.record_api_call(
            service="gemini",
            endpoint="generate_content",
            elapsed_ms=int((time.time() - t0) * 1000),
            status_code=200,
            provider_status="OK" if text else "EMPTY",
        )
    return text or None


def summary_or_fallback(score_row: Optional[dict], latest_job: Optional[dict]) -> Optional[str]:
    """What readers see as ai_summary.

    The fallback replaces the summary only when the most recent narrative
    job failed; a pending job leaves the previous summary (or None) in place.
    """
    if latest_job and latest_job.get("status") == "failed":
        return NARRATIVE_FALLBACK
    if score_row:
        return score_row.get("ai_summary")
    return None
