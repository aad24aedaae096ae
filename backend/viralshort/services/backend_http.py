"""Shared helpers for the HTTP backends."""
from typing import List

import httpx


def extract_error_detail(response: httpx.Response) -> str:
    """Extract concise error detail from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:300] or f"HTTP {response.status_code}"

    if isinstance(payload, dict):
        error = payload.get("error") or payload.get("detail")
        parts: List[str] = []
        if isinstance(error, dict):
            # OpenAI style: {"error": {"message": ..., "type": ...}}
            for key in ("type", "message", "status"):
                if error.get(key):
                    parts.append(str(error[key]))
        elif error:
            parts.append(str(error))
        if parts:
            return ": ".join(parts)

    return f"HTTP {response.status_code}"
