"""
Access to credentials for the external AI capability.
"""

import os

from util.constants import GEMINI_API_KEY_ENV_VAR


def get_gemini_api_key() -> str:
    """Get the Gemini API key from the environment.

    Raises KeyError when the key is not configured.
    """
    api_key = os.environ.get(GEMINI_API_KEY_ENV_VAR, "").strip()
    if not api_key:
        raise KeyError(f"{GEMINI_API_KEY_ENV_VAR} is not set")
    return api_key


def has_gemini_api_key() -> bool:
    """Check whether a Gemini API key is configured."""
    return bool(os.environ.get(GEMINI_API_KEY_ENV_VAR, "").strip())
