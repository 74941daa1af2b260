"""
Where: services/host_engine/core/image_tag.py
What: Derive the Docker image tag of a function app from its name.
Why: Repeated builds of one app must overwrite the same image identity.
"""

import re

IMAGE_TAG_SUFFIX = "-container"

_WHITESPACE = re.compile(r"\s+")


def image_tag(app_name: str) -> str:
    """
    Return the deterministic image tag for ``app_name``.

    The name is trimmed, lower-cased and every whitespace run becomes a single ``-``.
    """
    normalized = _WHITESPACE.sub("-", app_name.strip()).lower()
    if not normalized:
        raise ValueError("Function app name is required")
    return f"{normalized}{IMAGE_TAG_SUFFIX}"
