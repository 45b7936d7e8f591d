"""Writing help for daily update notes."""

import logging

from llm import chat_completion, LLMError

logger = logging.getLogger(__name__)

MIN_NOTE_LENGTH = 3


def is_usable_text(value) -> bool:
    return isinstance(value, str) and len(value.strip()) >= MIN_NOTE_LENGTH


async def autocomplete_note(partial_text: str, task_title: str = None) -> str:
    """Suggest a continuation for a half-typed note; empty string if the LLM is unavailable."""
    context = f' for the task "{task_title}"' if task_title else ""
    system = (
        f"You are an autocomplete assistant for a daily standup update note{context}. "
        "Given the partial text the user has typed so far, suggest a natural continuation. "
        "Output must be ONLY the completion text (the part that comes AFTER what the user already typed). "
        "Keep it concise (1-2 sentences max). Do not repeat the user's text. "
        "Do not add any prefixes, quotes, explanations, or extra characters. "
        "Ensure the output is clean and directly continuable from the partial text."
    )
    try:
        result = await chat_completion(
            [{"role": "system", "content": system}, {"role": "user", "content": partial_text}],
            temperature=0.6,
            max_tokens=100,
        )
        return result.strip()
    except LLMError as e:
        logger.error(f"Note autocomplete error: {e}")
        return ""


async def refine_note(note: str, task_title: str = None) -> str:
    """Rewrite a rough note in clean technical prose. Falls back to the note itself."""
    context = f' The task is: "{task_title}".' if task_title else ""
    system = f"""You are a professional technical writing assistant.{context} Given a rough daily update note, refine it by:
1. Fixing grammar and spelling errors
2. Making it more detailed and professional
3. Keeping the same meaning and intent
4. Using clear, concise technical language
Output must be ONLY the refined note text. Do not add any prefixes, explanations, quotes, or extra characters. Ensure the output is clean, standalone text without any wrappers."""
    try:
        result = await chat_completion(
            [{"role": "system", "content": system}, {"role": "user", "content": note}],
            temperature=0.4,
            max_tokens=300,
        )
        return result.strip() or note
    except LLMError as e:
        logger.error(f"Note refine error: {e}")
        return note
