import httpx
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.entities import Candidate
from core.errors import CredentialError, SourceError
from core.schemas import SearchConfig
from ingestion.base import SearchAdapter, TokenExchange

TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
OAUTH_BASE_URL = "https://oauth.reddit.com"

# Reddit's `t` parameter for the top listing
_TOP_PERIOD = {"24h": "day", "7d": "week", "30d": "month"}


class RedditTokenExchange(TokenExchange):
    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        user_agent: str = "engage-bot/1.0",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_agent = user_agent
        self._client = client

    async def exchange(self, refresh_token: str) -> str:
        if not self.client_id or not self.client_secret:
            raise CredentialError("Reddit client id/secret are not configured")
        if not refresh_token:
            raise CredentialError("Reddit account not connected for this workspace")

        try:
            async with _ClientContext(self._client) as client:
                resp = await client.post(
                    TOKEN_URL,
                    data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                    auth=(self.client_id, self.client_secret),
                    headers={"User-Agent": self.user_agent},
                )
        except httpx.HTTPError as e:
            raise CredentialError(f"Reddit token refresh failed: {e}") from e

        if resp.status_code != 200:
            raise CredentialError(f"Reddit token refresh failed: {resp.status_code}")

        try:
            access_token = resp.json().get("access_token")
        except ValueError as e:
            raise CredentialError(f"Reddit token refresh returned invalid JSON: {e}") from e
        if not access_token:
            raise CredentialError("Reddit token refresh returned no access token")
        return access_token


class RedditAdapter(SearchAdapter):
    source = "reddit"

    def __init__(
        self,
        user_agent: str = "engage-bot/1.0",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.user_agent = user_agent
        self._client = client

    async def search(self, access_token: str, config: SearchConfig) -> List[Candidate]:
        params: Dict[str, Any] = {"limit": config.max_results, "raw_json": 1}
        if config.listing == "top":
            params["t"] = _TOP_PERIOD[config.time_window]

        url = f"{OAUTH_BASE_URL}/r/{config.channel}/{config.listing}.json"

        try:
            async with _ClientContext(self._client) as client:
                resp = await client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "User-Agent": self.user_agent,
                    },
                )
        except httpx.HTTPError as e:
            raise SourceError(f"Reddit API error: {e}") from e

        if resp.status_code != 200:
            raise SourceError(f"Reddit API error: {resp.status_code}")

        try:
            children = resp.json()["data"]["children"]
        except (ValueError, KeyError, TypeError) as e:
            raise SourceError(f"Unexpected Reddit listing payload: {e}") from e

        posts = [child["data"] for child in children if child.get("kind", "t3") == "t3"]
        return [self._to_candidate(post) for post in posts[:config.max_results]]

    @staticmethod
    def _to_candidate(data: Dict[str, Any]) -> Candidate:
        permalink = data.get("permalink", "")
        return Candidate(
            external_id=data["id"],
            channel=data.get("subreddit", ""),
            title=data.get("title", ""),
            body=data.get("selftext", "") or "",
            author=data.get("author", "[deleted]") or "[deleted]",
            score=int(data.get("score", 0)),
            num_comments=int(data.get("num_comments", 0)),
            created_at=datetime.fromtimestamp(float(data.get("created_utc", 0)), tz=timezone.utc),
            url=data.get("url", ""),
            permalink=f"https://reddit.com{permalink}" if permalink.startswith("/") else permalink,
        )


class _ClientContext:
    """Uses an injected client as-is, otherwise opens and closes a fresh one."""

    def __init__(self, client: Optional[httpx.AsyncClient]):
        self._client = client
        self._owned: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._owned = httpx.AsyncClient(timeout=30)
        return self._owned

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owned is not None:
            await self._owned.aclose()
