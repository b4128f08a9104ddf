"""Ollama client used for short trivia blurbs about the playing track."""

import logging

import httpx

logger = logging.getLogger(__name__)

DESCRIBE_PROMPT = (
    "You are DJ Boba, an upbeat radio DJ. In one or two short sentences, "
    "share a fun fact or bit of trivia about the song \"{title}\" by {author}. "
    "No preamble, no hashtags."
)


class OllamaClient:
    """Async HTTP client for the Ollama generate API."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3",
        timeout: int = 20,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def describe(self, title: str, author: str = "") -> str:
        """Return a short trivia blurb, or "" if anything goes wrong."""
        if not title:
            return ""
        try:
            client = await self._get_client()
            response = await client.post(
                f"{self.host}/api/generate",
                json={
                    "model": self.model,
                    "prompt": DESCRIBE_PROMPT.format(
                        title=title, author=author or "an unknown artist"
                    ),
                    "stream": False,
                },
            )
            response.raise_for_status()
            return (response.json().get("response") or "").strip()
        except Exception as e:
            logger.warning(f"Trivia lookup failed for '{title}': {e}")
            return ""
