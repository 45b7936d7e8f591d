import json
import logging

from llm import chat_completion, LLMError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

SYSTEM_PROMPT = (
    "You are a task breakdown assistant. You MUST respond with ONLY a valid JSON array. "
    "No explanations, no markdown, no extra text. Just the JSON array."
)


def parse_subtasks(response: str) -> list[dict]:
    """Pull the JSON array of {title, description} items out of a model reply; [] if it is not one."""
    response = response.strip()
    if "```json" in response:
        response = response.split("```json")[1].split("```")[0]
    elif "```" in response:
        response = response.split("```")[1].split("```")[0]

    start = response.find('[')
    end = response.rfind(']') + 1
    if start != -1 and end > start:
        response = response[start:end]

    try:
        items = json.loads(response)
    except ValueError:
        return []
    if not isinstance(items, list) or not items:
        return []
    if not all(isinstance(i, dict) and i.get("title") and i.get("description") for i in items):
        return []
    return [{"title": str(i["title"]), "description": str(i["description"])} for i in items]


async def generate_subtasks(title: str, description: str = None) -> list[dict]:
    """Ask the LLM to split a task into 3-5 subtasks. Returns [] when no usable answer arrives."""
    prompt = f"""Break this task into 3-5 subtasks:

Task: {title}
Description: {description or 'No description'}

Respond with ONLY this JSON format:
[{{"title": "Subtask 1", "description": "Details"}}, {{"title": "Subtask 2", "description": "Details"}}]"""
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            response = await chat_completion(messages, temperature=0.3, max_tokens=600)
        except LLMError as e:
            logger.error(f"Subtask generation attempt {attempt}/{MAX_ATTEMPTS} failed: {e}")
            # A rejected key will not get better on retry
            if e.status_code == 401:
                return []
            continue

        subtasks = parse_subtasks(response)
        if subtasks:
            logger.info(f"Generated {len(subtasks)} subtasks for '{title[:60]}'")
            return subtasks
        logger.warning(f"Subtask generation attempt {attempt}/{MAX_ATTEMPTS} returned unusable output: {response[:200]}")

    return []
