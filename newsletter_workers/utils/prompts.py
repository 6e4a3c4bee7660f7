"""
Prompt Loading Utility for the Issue Assembly Workers
Loads system prompts from PostgreSQL, falling back to built-in templates.

Usage:
    from newsletter_workers.utils.prompts import get_prompt, ARTICLE_TITLE

    template = get_prompt(ARTICLE_TITLE)

Templates use {variable} syntax for Python .format() substitution; literal
braces in JSON examples are doubled.
"""

import logging
from typing import Optional, Dict, Any

from .db import get_db

logger = logging.getLogger(__name__)

# Cache for prompts (cleared per assembly run for freshness)
_prompt_cache: Dict[str, Dict[str, Any]] = {}


# =========================================================================
# PROMPT KEY CONSTANTS
# =========================================================================

CRITERION_SCORE = "criterion_score"
TOPIC_DEDUP = "topic_dedup"
ARTICLE_TITLE = "article_title"
ARTICLE_BODY = "article_body"
FACT_CHECK = "fact_check"
SUBJECT_LINE = "subject_line"
WELCOME_SECTION = "welcome_section"


DEFAULT_PROMPTS: Dict[str, str] = {
    CRITERION_SCORE: """You are rating a newsletter candidate on one criterion.

CRITERION: {criterion_name}
{criterion_guidance}

TITLE: {title}
DESCRIPTION: {description}
CONTENT:
{content}

Rate the candidate from 0 (worst) to 10 (best) on this criterion only.
Return JSON: {{"score": <0-10>, "reason": "<one sentence>"}}""",

    TOPIC_DEDUP: """You are deduplicating stories for a newsletter issue.
Group articles that cover the SAME underlying news event, even if worded differently.
Only group true duplicates; articles on related but distinct events stay separate.

ARTICLES:
{articles}

Return JSON:
{{"groups": [{{"primary_article_index": <index>, "duplicate_indices": [<index>, ...], "topic_signature": "<short topic>", "similarity_explanation": "<why>"}}]}}
Return {{"groups": []}} when there are no duplicates.""",

    ARTICLE_TITLE: """Write a headline for a newsletter article based on this source.

SOURCE TITLE: {title}
SOURCE DESCRIPTION: {description}
SOURCE CONTENT:
{content}

Rules: under 80 characters, factual, no clickbait, no quotation marks.
Return JSON: {{"headline": "<headline>"}}""",

    ARTICLE_BODY: """Write a short newsletter article under the headline below, using ONLY facts from the source.

HEADLINE: {headline}
SOURCE TITLE: {title}
SOURCE CONTENT:
{content}

Rules: 3 short paragraphs, 100-150 words, no facts that are not in the source.
Return JSON: {{"content": "<article text>", "word_count": <integer>}}""",

    FACT_CHECK: """Compare the newsletter article to its source.

SOURCE:
{source_content}

ARTICLE HEADLINE: {headline}
ARTICLE:
{content}

Score each dimension from 0 to 10:
- accuracy: every claim is supported by the source
- compliance: no added facts, quotes or speculation
- quality: clear, readable, on-topic
Return JSON: {{"accuracy": <0-10>, "compliance": <0-10>, "quality": <0-10>, "details": "<issues found>"}}""",

    SUBJECT_LINE: """Write an email subject line for today's newsletter issue.
It should lead with the top story.

TOP HEADLINES:
{headlines}

Rules: under 60 characters, no emojis, no quotation marks.
Return JSON: {{"subject_line": "<subject>"}}""",

    WELCOME_SECTION: """Write the welcome section for today's newsletter issue.

ARTICLES IN THIS ISSUE:
{articles}

Return JSON:
{{"intro": "<one-sentence greeting>", "tagline": "<short punchy tagline>", "summary": "<2-3 sentence overview of the issue>"}}""",
}


def get_prompt(prompt_key: str, use_cache: bool = True) -> Optional[str]:
    """
    Get prompt content by key from the database, or the built-in default

    Args:
        prompt_key: The prompt key (e.g., 'article_title', 'fact_check')
        use_cache: Whether to use cached value (default True)

    Returns:
        The prompt content string, or None if neither source has it
    """
    if use_cache and prompt_key in _prompt_cache:
        return _prompt_cache[prompt_key].get('content')

    try:
        prompt_data = get_db().get_prompt_by_key(prompt_key)
        if prompt_data and prompt_data.get('content'):
            _prompt_cache[prompt_key] = prompt_data
            return prompt_data['content']
    except Exception as e:
        logger.error(f"Error loading prompt {prompt_key}: {e}")

    default = DEFAULT_PROMPTS.get(prompt_key)
    if default is None:
        logger.warning(f"Prompt not found: {prompt_key}")
        return None

    logger.info(f"Prompt {prompt_key} not in database, using built-in template")
    _prompt_cache[prompt_key] = {'prompt_key': prompt_key, 'content': default}
    return default


def get_prompt_with_metadata(prompt_key: str) -> Dict[str, Any]:
    """
    Get prompt with metadata (model, temperature, max_tokens)

    Returns the cached row when present, otherwise just {prompt_key, content}.
    """
    content = get_prompt(prompt_key)
    return dict(_prompt_cache.get(prompt_key) or {'prompt_key': prompt_key, 'content': content})


def refresh_cache():
    """Clear prompt cache to force fresh load from database"""
    _prompt_cache.clear()
    logger.info("Prompt cache cleared")


def preload_all_prompts():
    """
    Preload all prompts into cache
    Call this at worker startup for better performance
    """
    try:
        for prompt in get_db().get_all_prompts():
            key = prompt.get('prompt_key')
            if key and prompt.get('content'):
                _prompt_cache[key] = prompt
        logger.info(f"Preloaded {len(_prompt_cache)} prompts into cache")
    except Exception as e:
        logger.error(f"Error preloading prompts: {e}")
