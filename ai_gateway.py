"""Client for the OpenAI-compatible AI gateway used by translation, brandbook and dataset chat."""

import os
import re
import json
import time
import logging
from typing import Dict, Any, Optional, List

import requests

logger = logging.getLogger(__name__)

# AI Gateway Configuration
AI_GATEWAY_URL = os.environ.get('AI_GATEWAY_URL', 'https://ai.gateway.lovable.dev/v1')
AI_GATEWAY_API_KEY = os.environ.get('AI_GATEWAY_API_KEY')
AI_MODEL = os.environ.get('AI_MODEL', 'google/gemini-2.5-flash')

AI_TIMEOUT = (10, 120)

FENCE_RE = re.compile(r'^```(?:json)?\s*|\s*```$')


class AIGatewayError(Exception):
    pass


class AIRateLimitError(AIGatewayError):
    pass


def ai_configured() -> bool:
    return bool(AI_GATEWAY_API_KEY)


def chat_completion(messages: List[Dict[str, Any]], temperature: Optional[float] = None,
                    max_tokens: Optional[int] = None, max_retries: int = 3) -> str:
    """Run a chat completion and return the first choice's text."""
    if not AI_GATEWAY_API_KEY:
        raise AIGatewayError('AI_GATEWAY_API_KEY not configured')

    payload = {'model': AI_MODEL, 'messages': messages}
    if temperature is not None:
        payload['temperature'] = temperature
    if max_tokens is not None:
        payload['max_tokens'] = max_tokens

    for attempt in range(max_retries):
        try:
            response = requests.post(
                f"{AI_GATEWAY_URL.rstrip('/')}/chat/completions",
                headers={
                    'Authorization': f'Bearer {AI_GATEWAY_API_KEY}',
                    'Content-Type': 'application/json',
                },
                json=payload,
                timeout=AI_TIMEOUT
            )

            if response.status_code == 429:
                raise AIRateLimitError('AI gateway rate limit exceeded')

            if response.status_code in [502, 503, 529] and attempt < max_retries - 1:
                delay = 2 ** attempt
                logger.warning(f'AI gateway returned {response.status_code}, retrying in {delay}s '
                               f'(attempt {attempt + 1}/{max_retries})')
                time.sleep(delay)
                continue

            if not response.ok:
                raise AIGatewayError(f'AI gateway error: {response.status_code} {response.text[:200]}')

            content = response.json()['choices'][0]['message'].get('content')
            if not content:
                raise AIGatewayError('Empty response from AI gateway')
            return content

        except requests.exceptions.Timeout:
            if attempt < max_retries - 1:
                delay = 2 ** attempt
                logger.warning(f'AI gateway timeout, retrying in {delay}s (attempt {attempt + 1}/{max_retries})')
                time.sleep(delay)
                continue
            raise

    raise AIGatewayError('AI gateway failed after all retries')


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence from a model answer."""
    return FENCE_RE.sub('', (text or '').strip())


def parse_json_answer(text: str) -> Any:
    return json.loads(strip_code_fences(text))
