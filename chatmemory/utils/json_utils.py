"""
JSON utilities for cleaning and parsing LLM responses.
"""

import json
from typing import Any, Dict, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Optional[Dict[str, Any]]:
    """Parse an LLM response expected to hold a single JSON object.

    Text around the outermost braces is ignored, so a model that prefixes its
    answer with prose still parses.

    Args:
        response: Raw LLM response

    Returns:
        Parsed dict, or None if no object could be decoded
    """
    cleaned = clean_json_response(response or '')
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end < start:
        return None

    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None

    return parsed if isinstance(parsed, dict) else None
