# Selection oracle adapters
# Boundary to the external ranking service: a chat-completion model or an embedding model

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx
import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, Field

from ..models.tool import Query, RawToolMatch, ToolDescriptor
from .error_handler import OracleMalformedResponse, OracleUnavailable, SelectionFailed

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class OracleResponse(BaseModel):
    """Unchecked candidates returned by an oracle."""

    matches: list[RawToolMatch] = Field(default_factory=list)
    reasoning: str = ""


class SelectionOracle(ABC):
    """Maps a query and the available tools to scored candidates."""

    @abstractmethod
    async def rank(self, query: Query, tools: Sequence[ToolDescriptor]) -> OracleResponse:
        """Return candidate matches; raise OracleUnavailable on transport failure."""

    async def aclose(self) -> None:
        return None


class LLMSelectionOracle(SelectionOracle):
    """Asks an OpenAI-compatible chat-completions endpoint to rank tools."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 30.0,
        max_selections: int = 5,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.max_selections = max_selections
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def build_system_prompt(self, tools: Sequence[ToolDescriptor]) -> str:
        tools_json = json.dumps(
            [
                {
                    "id": tool.id,
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameter_schema,
                }
                for tool in tools
            ],
            indent=2,
        )
        return (
            "You are a tool selection expert. Your task is to analyze the available tools "
            "and the user's intent to select the most appropriate tools.\n\n"
            f"Available Tools:\n{tools_json}\n\n"
            f"Analyze the user's intent and select up to {self.max_selections} most relevant tools. "
            "For each tool provide:\n"
            "1. Tool id\n"
            "2. Confidence score (0-1)\n"
            "3. Reasoning for selection\n"
            "4. Suggested parameters based on the tool's schema\n\n"
            "Format your response as JSON:\n"
            "{\n"
            '    "selections": [\n'
            "        {\n"
            '            "tool_id": "string",\n'
            '            "confidence": 0.95,\n'
            '            "reasoning": "string",\n'
            '            "parameters": {}\n'
            "        }\n"
            "    ],\n"
            '    "overall_reasoning": "string"\n'
            "}"
        )

    async def rank(self, query: Query, tools: Sequence[ToolDescriptor]) -> OracleResponse:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.build_system_prompt(tools)},
                {"role": "user", "content": query.raw},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            raise OracleUnavailable(f"Oracle request timed out: {e}") from e
        except httpx.TransportError as e:
            raise OracleUnavailable(f"Oracle transport error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise OracleUnavailable(
                f"Oracle returned HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise SelectionFailed(
                f"Oracle rejected the request with HTTP {response.status_code}",
                {"status_code": response.status_code, "body": response.text[:500]},
            )

        return self.parse_completion(response, tools)

    def parse_completion(self, response: httpx.Response, tools: Sequence[ToolDescriptor]) -> OracleResponse:
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OracleMalformedResponse(f"Unexpected completion payload: {e}") from e

        content = (content or "").strip()
        fenced = _CODE_FENCE.match(content)
        if fenced:
            content = fenced.group(1)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise OracleMalformedResponse(f"Oracle reply is not JSON: {e}") from e

        if not isinstance(parsed, dict) or not isinstance(parsed.get("selections", []), list):
            raise OracleMalformedResponse("Oracle reply has no 'selections' list")

        ids_by_name = {tool.name: tool.id for tool in tools}
        known_ids = {tool.id for tool in tools}
        matches: list[RawToolMatch] = []
        for entry in parsed.get("selections", []):
            if not isinstance(entry, dict):
                continue
            ref = entry.get("tool_id") or entry.get("tool_name") or entry.get("tool") or ""
            ref = str(ref)
            tool_id = ref if ref in known_ids else ids_by_name.get(ref, ref)
            parameters = entry.get("parameters")
            matches.append(
                RawToolMatch(
                    tool_id=tool_id,
                    confidence=entry.get("confidence"),
                    reasoning=str(entry.get("reasoning") or ""),
                    suggested_parameters=parameters if isinstance(parameters, dict) else None,
                )
            )

        return OracleResponse(matches=matches, reasoning=str(parsed.get("overall_reasoning") or ""))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class EmbeddingSelectionOracle(SelectionOracle):
    """Ranks tools by cosine similarity between query and tool embeddings."""

    def __init__(self, encoder: Any) -> None:
        self.encoder = encoder
        # tool id -> (embedded text, embedding)
        self._tool_embeddings_cache: dict[str, tuple[str, NDArray[np.float64]]] = {}

    @classmethod
    def from_model_name(cls, model_name: str = "all-MiniLM-L6-v2") -> "EmbeddingSelectionOracle":
        from sentence_transformers import SentenceTransformer

        return cls(SentenceTransformer(model_name))

    async def rank(self, query: Query, tools: Sequence[ToolDescriptor]) -> OracleResponse:
        if not tools:
            return OracleResponse()
        return await asyncio.to_thread(self._rank_sync, query, list(tools))

    def _rank_sync(self, query: Query, tools: list[ToolDescriptor]) -> OracleResponse:
        self._prune_embeddings({tool.id for tool in tools})
        query_embedding = self._get_embedding(query.normalized)

        matches = []
        for tool in tools:
            tool_text = f"{tool.name} {tool.description}"
            tool_embedding = self._get_embedding(tool_text, cache_key=tool.id)
            similarity = self._cosine_similarity(query_embedding, tool_embedding)
            score = float(max(0.0, min(1.0, similarity)))
            matches.append(
                RawToolMatch(
                    tool_id=tool.id,
                    confidence=score,
                    reasoning=f"Semantic similarity {score:.2f} between the query and '{tool.name}'",
                )
            )

        return OracleResponse(matches=matches, reasoning="Ranked by embedding similarity")

    def _prune_embeddings(self, tool_ids: set[str]) -> None:
        """Forget embeddings of tools that left the registry."""
        for tool_id in [key for key in self._tool_embeddings_cache if key not in tool_ids]:
            self._tool_embeddings_cache.pop(tool_id, None)

    def _get_embedding(self, text: str, cache_key: str | None = None) -> NDArray[np.float64]:
        """Get embedding for text, using cache if available."""
        if cache_key:
            cached = self._tool_embeddings_cache.get(cache_key)
            if cached is not None and cached[0] == text:
                return cached[1]

        embedding: NDArray[np.float64] = np.array(self.encoder.encode(text), dtype=np.float64)

        if cache_key:
            self._tool_embeddings_cache[cache_key] = (text, embedding)

        return embedding

    def _cosine_similarity(self, vec1: Any, vec2: Any) -> float:
        """Compute cosine similarity between two vectors."""
        vec1 = np.asarray(vec1, dtype=np.float64)
        vec2 = np.asarray(vec2, dtype=np.float64)

        norm1 = np.linalg.norm(vec1)
        norm2 = np.linalg.norm(vec2)

        if norm1 == 0 or norm2 == 0:
            return 0.0

        return float(np.dot(vec1, vec2) / (norm1 * norm2))
