"""URL builders for the listings API."""
from urllib.parse import urlencode


def get_cars_page_url(base_url: str, page: int, page_size: int) -> str:
    """Get the paginated cars URL for a page."""
    query = urlencode({"page": page, "per_page": page_size})
    return f"{base_url.rstrip('/')}/cars?{query}"


def get_api_headers(api_key: str, user_agent: str) -> dict[str, str]:
    """Auth headers expected by the listings API."""
    return {
        "Accept": "application/json",
        "Authorization": f"Bearer {api_key}",
        "X-API-Key": api_key,
        "User-Agent": user_agent,
    }
