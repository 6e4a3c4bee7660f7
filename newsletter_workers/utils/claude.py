"""
Claude API Client for the Issue Assembly Workers
Used for: criteria scoring, topic deduplication, title/body generation,
fact-checking, subject line and welcome section.

Prompts are loaded from PostgreSQL via utils.prompts (built-in fallbacks).
Every call returns parsed JSON; anything unusable raises MalformedResponseError
so the step harness retries it.
"""

import os
import re
import json
import logging
from typing import Dict, Any, List, Optional

import anthropic
from anthropic import Anthropic

from .errors import MalformedResponseError, TransientError
from .prompts import (
    get_prompt,
    get_prompt_with_metadata,
    CRITERION_SCORE,
    TOPIC_DEDUP,
    ARTICLE_TITLE,
    ARTICLE_BODY,
    FACT_CHECK,
    SUBJECT_LINE,
    WELCOME_SECTION,
)

logger = logging.getLogger(__name__)

# Openers that mean the model declined instead of answering
AI_REFUSAL_PATTERNS = (
    "i'm sorry",
    "i am sorry",
    "i cannot",
    "i can't",
    "i apologize",
    "i'm unable to",
    "i am unable to",
    "as an ai",
    "i don't have access",
    "i do not have access",
)

# Source text sent to the model is capped at this many characters
MAX_SOURCE_CHARS = 6000


def detect_refusal(text: Optional[str]) -> Optional[str]:
    """Return the matched refusal pattern when the text opens like a refusal"""
    if not text:
        return None
    opening = text.strip().lower()[:200]
    for pattern in AI_REFUSAL_PATTERNS:
        if opening.startswith(pattern) or f"\n{pattern}" in opening:
            return pattern
    return None


def parse_json_response(text: str) -> Any:
    """
    Parse a model response as JSON.

    Strips ``` fences and falls back to the first {...} block in the text.
    Raises MalformedResponseError when nothing parses.
    """
    if text is None:
        raise MalformedResponseError("Empty AI response")

    cleaned = text.strip()
    if cleaned.startswith('```'):
        cleaned = re.sub(r'^```[a-zA-Z]*\s*', '', cleaned)
        cleaned = re.sub(r'\s*```$', '', cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    json_match = re.search(r'\{.*\}', cleaned, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    refusal = detect_refusal(cleaned)
    if refusal:
        raise MalformedResponseError(f"AI refused (matched: '{refusal}')", cleaned)
    raise MalformedResponseError("AI response is not valid JSON", cleaned)


def fill_template(template: str, **variables) -> str:
    """
    .format() a prompt template. Operator-edited templates sometimes contain
    stray braces; those fall back to plain {name} token replacement.
    """
    try:
        return template.format(**variables)
    except (KeyError, IndexError, ValueError) as e:
        logger.warning(f"Prompt template did not .format() cleanly ({e}), substituting tokens")
        filled = template
        for name, value in variables.items():
            filled = filled.replace('{' + name + '}', str(value))
        return filled


def _require_score(result: Dict[str, Any], field: str, raw: str) -> float:
    """A 0-10 numeric field of a parsed response"""
    value = result.get(field)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise MalformedResponseError(f"AI response missing numeric '{field}'", raw)
    if value < 0 or value > 10:
        raise MalformedResponseError(f"AI '{field}' out of range 0-10: {value}", raw)
    return float(value)


class ClaudeClient:
    """Claude API wrapper for issue assembly"""

    def __init__(self):
        self.api_key = os.environ.get('ANTHROPIC_API_KEY')
        if not self.api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.client = Anthropic(api_key=self.api_key)

        # Default model (can be overridden by prompt metadata)
        self.default_model = os.environ.get('CLAUDE_MODEL', "claude-sonnet-4-5-20250929")

    def _complete(self, prompt_key: str, prompt: str, max_tokens: int, temperature: float,
                  system: Optional[str] = None) -> str:
        """Send one prompt, return the raw text. API failures become TransientError."""
        prompt_meta = get_prompt_with_metadata(prompt_key)
        model = prompt_meta.get('model') or self.default_model
        if prompt_meta.get('temperature') is not None:
            temperature = prompt_meta['temperature']
        if prompt_meta.get('max_tokens'):
            max_tokens = prompt_meta['max_tokens']

        kwargs = {
            'model': model,
            'max_tokens': int(max_tokens),
            'temperature': float(temperature),
            'messages': [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs['system'] = system

        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise TransientError(f"Claude API error ({prompt_key}): {e}") from e

        if not response.content:
            raise MalformedResponseError(f"Empty Claude response for {prompt_key}")
        return response.content[0].text

    def generate(self, prompt_key: str, context: Dict[str, Any],
                 max_tokens: int = 1000, temperature: float = 0.5) -> Any:
        """
        Fill the prompt template for prompt_key with context and return the parsed JSON.
        """
        template = get_prompt(prompt_key)
        if not template:
            raise ValueError(f"No prompt template for {prompt_key}")

        text = self._complete(prompt_key, fill_template(template, **context), max_tokens, temperature)
        return parse_json_response(text)

    # =========================================================================
    # SCORING
    # =========================================================================

    def score_criterion(self, candidate: Dict[str, Any], criterion: Dict[str, Any]) -> Dict[str, Any]:
        """
        Rate one candidate against one criterion

        A criterion's own ai_prompt (when set) is used as the template,
        otherwise the shared criterion_score prompt.

        Returns:
            {score: float 0-10, reason: str}
        """
        context = {
            'criterion_name': criterion.get('name', ''),
            'criterion_guidance': criterion.get('ai_prompt') or '',
            'title': candidate.get('title') or '',
            'description': candidate.get('description') or '',
            'content': (candidate.get('content') or '')[:MAX_SOURCE_CHARS],
        }

        custom_prompt = criterion.get('ai_prompt')
        if custom_prompt and '{' in custom_prompt:
            text = self._complete(CRITERION_SCORE, fill_template(custom_prompt, **context), 300, 0.3)
            result = parse_json_response(text)
        else:
            result = self.generate(CRITERION_SCORE, context, max_tokens=300, temperature=0.3)

        if not isinstance(result, dict):
            raise MalformedResponseError("Criterion score response is not an object", str(result))

        return {
            'score': _require_score(result, 'score', json.dumps(result)),
            'reason': str(result.get('reason') or ''),
        }

    # =========================================================================
    # DEDUPLICATION
    # =========================================================================

    def find_topic_groups(self, candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Ask Claude which candidates cover the same story

        Args:
            candidates: [{title, description}] in index order

        Returns:
            [{primary_article_index, duplicate_indices, topic_signature, similarity_explanation}]
        """
        lines = []
        for index, candidate in enumerate(candidates):
            description = (candidate.get('description') or '')[:200]
            lines.append(f"{index}. {candidate.get('title') or '(untitled)'} | {description}")

        result = self.generate(TOPIC_DEDUP, {'articles': '\n'.join(lines)},
                               max_tokens=2000, temperature=0.2)

        if not isinstance(result, dict) or not isinstance(result.get('groups'), list):
            raise MalformedResponseError("Topic dedup response has no 'groups' list", json.dumps(result))

        groups = []
        for group in result['groups']:
            if not isinstance(group, dict) or 'primary_article_index' not in group:
                raise MalformedResponseError("Topic group missing primary_article_index", json.dumps(group))
            groups.append({
                'primary_article_index': int(group['primary_article_index']),
                'duplicate_indices': [int(i) for i in group.get('duplicate_indices') or []],
                'topic_signature': group.get('topic_signature') or '',
                'similarity_explanation': group.get('similarity_explanation') or '',
            })
        return groups

    # =========================================================================
    # CONTENT GENERATION
    # =========================================================================

    def generate_title(self, article: Dict[str, Any]) -> str:
        """Headline for a selected candidate"""
        result = self.generate(ARTICLE_TITLE, {
            'title': article.get('source_title') or '',
            'description': article.get('source_description') or '',
            'content': (article.get('source_content') or '')[:MAX_SOURCE_CHARS],
        }, max_tokens=200, temperature=0.7)

        headline = (result.get('headline') if isinstance(result, dict) else None) or ''
        headline = headline.strip().strip('"\'')
        if not headline:
            raise MalformedResponseError("Title response has no headline", json.dumps(result))

        refusal = detect_refusal(headline)
        if refusal:
            raise MalformedResponseError(f"AI refused title (matched: '{refusal}')", headline)
        return headline

    def generate_body(self, article: Dict[str, Any]) -> Dict[str, Any]:
        """
        Body text for an article that already has a headline

        Returns:
            {content: str, word_count: int}
        """
        result = self.generate(ARTICLE_BODY, {
            'headline': article.get('headline') or '',
            'title': article.get('source_title') or '',
            'content': (article.get('source_content') or article.get('source_description') or '')[:MAX_SOURCE_CHARS],
        }, max_tokens=1500, temperature=0.7)

        content = (result.get('content') if isinstance(result, dict) else None) or ''
        content = content.strip()
        if not content:
            raise MalformedResponseError("Body response has no content", json.dumps(result))

        refusal = detect_refusal(content)
        if refusal:
            raise MalformedResponseError(f"AI refused body (matched: '{refusal}')", content)

        word_count = result.get('word_count')
        if not isinstance(word_count, int) or word_count <= 0:
            word_count = len(content.split())

        return {'content': content, 'word_count': word_count}

    # =========================================================================
    # FACT CHECK
    # =========================================================================

    def fact_check(self, article: Dict[str, Any]) -> Dict[str, Any]:
        """
        Compare generated content against its source

        Returns:
            {accuracy, compliance, quality (each 0-10), details: str}
        """
        result = self.generate(FACT_CHECK, {
            'source_content': (article.get('source_content') or article.get('source_description') or '')[:MAX_SOURCE_CHARS],
            'headline': article.get('headline') or '',
            'content': article.get('content') or '',
        }, max_tokens=1000, temperature=0.0)

        if not isinstance(result, dict):
            raise MalformedResponseError("Fact check response is not an object", str(result))

        raw = json.dumps(result)
        return {
            'accuracy': _require_score(result, 'accuracy', raw),
            'compliance': _require_score(result, 'compliance', raw),
            'quality': _require_score(result, 'quality', raw),
            'details': str(result.get('details') or ''),
        }

    # =========================================================================
    # FINALIZE
    # =========================================================================

    def generate_subject_line(self, headlines: List[str]) -> str:
        """Email subject line led by the top-ranked headline"""
        headlines_text = "\n".join(f"{i + 1}. {h}" for i, h in enumerate(headlines[:5]))
        result = self.generate(SUBJECT_LINE, {'headlines': headlines_text},
                               max_tokens=100, temperature=0.7)

        subject = (result.get('subject_line') if isinstance(result, dict) else None) or ''
        subject = subject.strip().strip('"\'')
        if not subject:
            raise MalformedResponseError("Subject line response is empty", json.dumps(result))
        return subject

    def generate_welcome(self, articles: List[Dict[str, Any]]) -> Dict[str, str]:
        """
        Welcome section for the issue

        Returns:
            {intro, tagline, summary}
        """
        articles_text = "\n".join(
            f"{i + 1}. {a.get('headline') or ''}: {(a.get('content') or '')[:300]}"
            for i, a in enumerate(articles)
        )
        result = self.generate(WELCOME_SECTION, {'articles': articles_text},
                               max_tokens=800, temperature=0.7)

        if not isinstance(result, dict) or not result.get('summary'):
            raise MalformedResponseError("Welcome response missing summary", json.dumps(result))

        return {
            'intro': str(result.get('intro') or ''),
            'tagline': str(result.get('tagline') or ''),
            'summary': str(result['summary']),
        }
