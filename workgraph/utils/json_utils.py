"""
JSON utilities for cleaning LLM extraction responses.
"""

import re

_FENCED_BLOCK = re.compile(r'```(?:json)?\s*([\s\S]*?)```')


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Handles a fenced block anywhere in the response as well as a bare
    leading ```json marker left by a stop sequence.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    match = _FENCED_BLOCK.search(response)
    if match:
        return match.group(1).strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()
