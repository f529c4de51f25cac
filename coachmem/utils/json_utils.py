"""
JSON utilities for cleaning and parsing LLM responses.
"""

import json
from typing import Any


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


def parse_json_response(response: str, expected_type: type = dict) -> Any:
    """Clean and decode an LLM response, checking the top-level type.

    Args:
        response: Raw LLM response
        expected_type: Required type of the decoded value (dict or list)

    Returns:
        Decoded JSON value

    Raises:
        ValueError: If the response is not valid JSON of the expected type
    """
    try:
        data = json.loads(clean_json_response(response))
    except json.JSONDecodeError as e:
        raise ValueError(f'Invalid JSON in LLM response: {e}')

    if not isinstance(data, expected_type):
        raise ValueError(f'Expected {expected_type.__name__}, got {type(data).__name__}')
    return data
