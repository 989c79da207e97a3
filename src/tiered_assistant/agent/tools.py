"""Built-in search tools, one per source class."""

from __future__ import annotations

from pydantic import BaseModel, Field

from tiered_assistant.agent.capabilities import Retriever
from tiered_assistant.agent.registry import ToolRegistry, ToolSpec
from tiered_assistant.types import SearchHit


class SearchToolInput(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=5, ge=1, le=25)


_BUILTIN_TOOLS: tuple[tuple[str, str, str], ...] = (
    ("web_search", "web", "General web search for current diabetes information."),
    ("pubmed_search", "pubmed", "Peer-reviewed literature indexed by PubMed."),
    ("clinical_trials_search", "clinical_trials", "Clinical trial registry records."),
    ("arxiv_search", "arxiv", "Preprints from arXiv and medRxiv."),
    ("medical_web_search", "medical_web", "Curated medical web sources."),
)


def register_search_tools(registry: ToolRegistry, retriever: Retriever) -> None:
    """Register the default search tool set on top of one retrieval capability.

    Tools:
    - `web_search`: general web search, used by tiers 1 and 2.
    - `pubmed_search`, `clinical_trials_search`, `arxiv_search`,
      `medical_web_search`: per-source-class searches used by deep research.

    The registry takes ownership of `retriever` and closes it in `aclose`.
    """

    registry.own(retriever)
    for name, source_class, description in _BUILTIN_TOOLS:
        registry.register(
            ToolSpec(
                name=name,
                description=description,
                args_schema=SearchToolInput,
                handler=_bind_search(retriever, source_class),
                source_class=source_class,
            )
        )


def _bind_search(retriever: Retriever, source_class: str):
    async def _search(input_data: SearchToolInput) -> list[SearchHit]:
        return await retriever.search(
            input_data.query,
            source_class=None if source_class == "web" else source_class,
            max_results=input_data.max_results,
        )

    return _search
