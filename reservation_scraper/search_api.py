"""
Serper web search API client.

Used to find a restaurant's listing on a given booking platform with
`site:` restricted queries. Get an API key at https://serper.dev
"""

import logging
from typing import Dict, Any, List, Optional

import httpx

logger = logging.getLogger(__name__)

SERPER_API_URL = "https://google.serper.dev/search"


class SearchAPIError(Exception):
    """Raised when the search API returns an error"""
    pass


class SerperSearch:
    def __init__(self, api_key: Optional[str], base_url: str = SERPER_API_URL,
                 timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not api_key or api_key == "your-serper-api-key-here":
            raise ValueError(
                "Serper API key not found. Set SERPER_API_KEY environment variable. "
                "Get an API key at: https://serper.dev"
            )
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.call_count = 0

    async def search(self, query: str, num: int = 5) -> List[Dict[str, Any]]:
        """
        Run one web search.

        Args:
            query: Query text (e.g. 'site:tablecheck.com "Sushi Saito" roppongi')
            num: Number of results requested

        Returns:
            List of organic results, each with 'title', 'link' and 'snippet'
        """
        data = await self._request({"q": query, "num": num})
        results = []
        for item in data.get("organic") or []:
            if not item.get("link"):
                continue
            results.append({
                "title": item.get("title", ""),
                "link": item["link"],
                "snippet": item.get("snippet", ""),
            })
        return results

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "X-API-KEY": self.api_key,
            "Content-Type": "application/json",
        }

        self.call_count += 1
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(self.base_url, headers=headers, json=payload)
            except httpx.HTTPError as e:
                raise SearchAPIError(f"Search request failed: {e}")

        if response.status_code == 401 or response.status_code == 403:
            raise SearchAPIError("Invalid Serper API key")
        if response.status_code == 429:
            raise SearchAPIError("Serper rate limit exceeded")
        if response.status_code != 200:
            raise SearchAPIError(f"Serper API error {response.status_code}: {response.text[:200]}")

        return response.json()
