import os
import logging
from typing import Dict, List, Optional

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

LLM_API_URL = os.getenv("LLM_API_URL", "https://api.groq.com/openai/v1/chat/completions")
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_MODEL = os.getenv("LLM_MODEL", "llama-3.1-8b-instant")
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "20"))


class LLMError(Exception):
    """Raised when the completion API fails or returns no content."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


async def chat_completion(
    messages: List[Dict[str, str]],
    temperature: float = 0.7,
    max_tokens: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> str:
    """Send a chat completion request to the OpenAI-compatible endpoint and return the reply text."""
    payload = {"model": LLM_MODEL, "messages": messages, "temperature": temperature}
    if max_tokens is not None:
        payload["max_tokens"] = max_tokens
    headers = {"Authorization": f"Bearer {LLM_API_KEY}", "Content-Type": "application/json"}

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=LLM_TIMEOUT_SECONDS)
    try:
        response = await client.post(LLM_API_URL, json=payload, headers=headers)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as e:
        logger.error(f"LLM API returned {e.response.status_code}: {e.response.text[:200]}")
        raise LLMError(f"LLM API returned {e.response.status_code}", status_code=e.response.status_code) from e
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"LLM API request failed: {e}")
        raise LLMError(f"LLM API request failed: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    choices = data.get("choices") or []
    content = (choices[0].get("message") or {}).get("content") if choices else None
    if not content:
        raise LLMError("LLM API returned an empty completion")
    return content.strip()
