# branchchat/providers/websearch.py

"""
Web search with fallbacks

1. the model's own provider, when it has native search
2. Tavily
3. Brave Search
4. a synthetic "search unavailable" answer

search() never raises.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from branchchat.config import Settings
from branchchat.errors import ChatError
from branchchat.model import Citation
from branchchat.providers.base import ChatTurn, GenerationOptions, SearchResult

logger = logging.getLogger(__name__)

SEARCH_UNAVAILABLE = (
    "I apologize, but I'm unable to perform a web search at the moment. "
    "Please try again later or rephrase your question."
)

SYNTHESIS_PROMPT = """Answer the question using the web search results below.
Cite sources inline as [n] using the result numbers.

Question: {query}

Results:
{results}
"""


class WebSearch:
    def __init__(self, settings: Settings, factory):
        self.settings = settings
        self.factory = factory

    async def search(
        self,
        query: str,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
    ) -> SearchResult:
        provider = None
        try:
            provider = await self.factory.for_model(model)
            if provider.supports_web_search:
                result = await provider.collect(
                    model, turns, options.model_copy(update={"web_search": True})
                )
                if result.text.strip():
                    logger.info(f"🔍 Native search via {provider.name.value}: {len(result.citations)} citations")
                    return result
        except ChatError as exc:
            logger.warning(f"⚠️ Native search failed for {model}: {exc}")

        for source, fetch in (("tavily", self._tavily), ("brave", self._brave)):
            try:
                found = await asyncio.to_thread(fetch, query)
            except (requests.RequestException, ValueError, KeyError, AttributeError, TypeError) as exc:
                logger.warning(f"⚠️ {source} search failed: {exc}")
                continue
            if found is None:
                continue
            answer, citations = found
            logger.info(f"🔍 {source} returned {len(citations)} results")
            return await self._synthesize(query, model, turns, options, source, answer, citations, provider)

        logger.error(f"❌ All search backends failed for query: {query[:100]}")
        return SearchResult(text=SEARCH_UNAVAILABLE, citations=[], source="none")

    # =========================================================
    # Third-party backends (blocking, run in a thread)
    # =========================================================

    def _tavily(self, query: str) -> Optional[tuple]:
        cfg = self.settings.search
        if not cfg.tavily_api_key:
            return None
        resp = requests.post(
            cfg.tavily_url,
            json={"query": query, "max_results": cfg.max_results, "include_answer": True},
            headers={"Authorization": f"Bearer {cfg.tavily_api_key}"},
            timeout=cfg.timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        citations = [
            Citation(
                number=i,
                title=r.get("title") or r["url"],
                url=r["url"],
                source="tavily",
                cited_text=r.get("content"),
            )
            for i, r in enumerate(data.get("results", [])[: cfg.max_citations], start=1)
        ]
        return data.get("answer"), citations

    def _brave(self, query: str) -> Optional[tuple]:
        cfg = self.settings.search
        if not cfg.brave_api_key:
            return None
        resp = requests.get(
            cfg.brave_url,
            params={"q": query, "count": cfg.max_results},
            headers={"X-Subscription-Token": cfg.brave_api_key, "Accept": "application/json"},
            timeout=cfg.timeout,
        )
        resp.raise_for_status()
        results: List[Dict[str, Any]] = (resp.json().get("web") or {}).get("results", [])
        citations = [
            Citation(
                number=i,
                title=r.get("title") or r["url"],
                url=r["url"],
                source="brave",
                cited_text=r.get("description"),
            )
            for i, r in enumerate(results[: cfg.max_citations], start=1)
        ]
        return None, citations

    # =========================================================
    # Answer
    # =========================================================

    async def _synthesize(
        self,
        query: str,
        model: str,
        turns: List[ChatTurn],
        options: GenerationOptions,
        source: str,
        answer: Optional[str],
        citations: List[Citation],
        provider,
    ) -> SearchResult:
        listing = "\n".join(
            f"[{c.number}] {c.title} ({c.url}): {c.cited_text or ''}" for c in citations
        )
        if provider is not None and citations:
            prompt = SYNTHESIS_PROMPT.format(query=query, results=listing)
            try:
                result = await provider.collect(
                    model,
                    turns[:-1] + [ChatTurn(role="user", content=prompt)],
                    options.model_copy(update={"web_search": False}),
                )
                if result.text.strip():
                    return SearchResult(text=result.text, citations=citations, source=source)
            except ChatError as exc:
                logger.warning(f"⚠️ Could not summarize {source} results with {model}: {exc}")

        lines = []
        if answer:
            lines += [answer, ""]
        lines.append(f"**Search results for:** {query}")
        lines += [
            f"{c.number}. [{c.title}]({c.url})" + (f" - {c.cited_text}" if c.cited_text else "")
            for c in citations
        ]
        return SearchResult(text="\n".join(lines), citations=citations, source=source)
