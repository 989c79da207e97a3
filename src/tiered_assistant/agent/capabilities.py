"""Generation and retrieval capabilities consumed by the tier executors."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx
from langchain_core.messages import HumanMessage, SystemMessage

from tiered_assistant.agent.retry import retry_generation_call, retry_search_call
from tiered_assistant.types import SearchHit

logger = logging.getLogger(__name__)


class Generator(Protocol):
    model_name: str

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        ...

    def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        ...


class Retriever(Protocol):
    async def search(
        self,
        query: str,
        *,
        source_class: str | None = None,
        max_results: int = 5,
    ) -> list[SearchHit]:
        ...


class ChatModelGenerator:
    """Adapter over a LangChain chat model (`ainvoke` / `astream`)."""

    def __init__(self, llm: Any, *, model_name: str) -> None:
        self.llm = llm
        self.model_name = model_name

    @retry_generation_call
    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        response = await self.llm.ainvoke(_messages(system_prompt, user_prompt))
        return message_text(response)

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        # Not retried: chunks may already have reached the client.
        async for chunk in self.llm.astream(_messages(system_prompt, user_prompt)):
            text = message_text(chunk)
            if text:
                yield text


class DeterministicGenerator:
    """Generator used when no language model is configured.

    Keeps the same contract as `ChatModelGenerator` and answers from the
    numbered search results rendered into the prompt, so local and offline
    environments still produce grounded output.
    """

    model_name = "deterministic"

    _RESULT_LINE = re.compile(r"^\[(?P<idx>\d+)\]\s+(?P<title>.+?)\s+\((?P<cls>[^)]+)\):\s+(?P<body>.+)$")
    _QUESTION_LINE = re.compile(r"^Question:\s*(?P<question>.+)$", re.M)

    async def generate(self, system_prompt: str, user_prompt: str) -> str:
        del system_prompt  # static answer shape, independent of tier guidance.
        return self._compose(user_prompt)

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        answer = await self.generate(system_prompt, user_prompt)
        for word in re.findall(r"\S+\s*", answer):
            yield word

    def _compose(self, user_prompt: str) -> str:
        findings: list[tuple[str, str]] = []
        for line in user_prompt.splitlines():
            match = self._RESULT_LINE.match(line.strip())
            if match:
                findings.append((match.group("title"), match.group("body")))

        if findings:
            lines = ["Here is what the sources I found say:"]
            for idx, (title, body) in enumerate(findings[:3], start=1):
                lines.append(f"{idx}. {body} ({title})")
            return "\n".join(lines)

        question_match = self._QUESTION_LINE.search(user_prompt)
        question = question_match.group("question").strip() if question_match else "your question"
        return (
            f'I\'m running without a language model right now, so I can\'t give a tailored answer to "{question}". '
            "Keep tracking your readings and bring this question to your next diabetes care visit."
        )


class HttpSearchRetriever:
    """Search provider client over HTTP.

    Expects `POST {base_url}/search` with `{"query", "max_results", "source_class"?}`
    and a `{"results": [{"title", "url", "snippet" | "content", "source_class"?}]}` body.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, headers=headers)

    @retry_search_call
    async def search(
        self,
        query: str,
        *,
        source_class: str | None = None,
        max_results: int = 5,
    ) -> list[SearchHit]:
        payload: dict[str, Any] = {"query": query, "max_results": max_results}
        if source_class:
            payload["source_class"] = source_class
        response = await self._client.post(f"{self.base_url}/search", json=payload)
        response.raise_for_status()
        items = response.json().get("results", [])
        hits = [_to_hit(item, source_class) for item in items if isinstance(item, dict)]
        logger.debug("Search %r (%s) returned %d hits", query, source_class or "web", len(hits))
        return hits[:max_results]

    async def aclose(self) -> None:
        await self._client.aclose()


def message_text(message: Any) -> str:
    """Flatten a LangChain message or chunk into plain text."""
    if isinstance(message, str):
        return message
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content)


def _messages(system_prompt: str, user_prompt: str) -> list[Any]:
    return [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]


def _to_hit(item: dict[str, Any], source_class: str | None) -> SearchHit:
    return SearchHit(
        title=str(item.get("title") or "Untitled"),
        url=str(item.get("url") or ""),
        snippet=str(item.get("snippet") or item.get("content") or ""),
        source_class=str(item.get("source_class") or source_class or "web"),
        published=_published(item),
    )


def _published(item: dict[str, Any]) -> str | None:
    for key in ("published_date", "publishedDate", "published", "date"):
        if item.get(key):
            return str(item[key])
    return None
