"""Web search through the Brave Search API.

Used by agents to look up CVEs, library advisories and API documentation.
Missing credentials or a failed request produce a warning, never an error.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
MAX_RESULTS = 10
REQUEST_TIMEOUT = 15.0


async def web_search(query: str, api_key: str | None, count: int = 5, client: httpx.AsyncClient | None = None) -> dict:
    if not api_key:
        return {
            "results": [],
            "warning": "Web search is not configured. Set BRAVE_SEARCH_API_KEY to enable it.",
        }

    count = max(1, min(count, MAX_RESULTS))
    params = {"q": query, "count": count}
    headers = {"Accept": "application/json", "X-Subscription-Token": api_key}
    try:
        if client is not None:
            response = await client.get(BRAVE_SEARCH_URL, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as owned:
                response = await owned.get(BRAVE_SEARCH_URL, params=params, headers=headers)
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Web search failed: %s", e)
        return {"results": [], "warning": f"Web search failed: {e}"}

    results = [
        {
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "description": item.get("description", ""),
        }
        for item in (payload.get("web") or {}).get("results", [])[:count]
    ]
    return {"results": results, "query": query}
