"""
Retrieval Tool Layer

Four tools the agent's model can call: searchNotes, summarizeNotes, findGaps
and extractEntities. Each tool declares its arguments as a pydantic model;
the model's JSON schema is what the chat model sees, and incoming arguments
are validated against it before the handler runs. Tools never raise: bad
arguments, handler exceptions and generation failures all come back as
``{"success": False, "error": ...}`` so the model can react to them.
"""

import os
import copy
import json
import time
import logging
from typing import Any, Callable, Literal, Optional
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .llm_client import ToolCallRequest
from .prompts import (
    TOOL_DESCRIPTIONS,
    SUMMARIZE_FOCUSED,
    SUMMARIZE_GENERAL,
    FIND_GAPS,
    EXTRACT_ENTITIES,
    NO_CONTENT_FOUND,
)
from .response_parsing import ENTITY_KEYS, parse_gap_analysis, parse_entities

logger = logging.getLogger(__name__)

GAPS_ERROR_QUESTION = "Could you provide more details?"
MAX_TOP_K = 20

EntityType = Literal["people", "dates", "topics", "locations", "organizations", "keywords"]


# =============================================================================
# Argument models
# =============================================================================

class ToolArgs(BaseModel):
    """Base for tool arguments: camelCase names, unknown arguments rejected."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class SearchNotesArgs(ToolArgs):
    query: str = Field(
        ...,
        min_length=1,
        description="The search query. Be specific: include key identifiers, names, dates or other context.",
    )
    top_k: Optional[int] = Field(None, ge=1, le=MAX_TOP_K, description="Number of results to return")


class SummarizeNotesArgs(ToolArgs):
    content: str = Field(..., description="The content to summarize")
    focus: Optional[str] = Field(None, description="Optional aspect to focus the summary on")


class SearchResultArg(BaseModel):
    """A search hit passed back in by the model; extra hit fields are ignored."""
    content: str
    source: Optional[str] = None


class FindGapsArgs(ToolArgs):
    query: str = Field(..., description="The user's question")
    relevant_content: Optional[str] = Field(None, description="Relevant content already found in the notes, if any")
    search_results: Optional[list[SearchResultArg]] = Field(
        None, description="Search results already retrieved, if any",
    )


class ExtractEntitiesArgs(ToolArgs):
    content: str = Field(..., description="The content to analyze")
    entity_types: Optional[list[EntityType]] = Field(None, description="Entity types to extract (default: all)")


def describe_validation_error(error: ValidationError) -> str:
    """One line per problem, e.g. ``topK: Input should be greater than or equal to 1``."""
    problems = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"])
        problems.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(problems)


def function_parameters(args_model: type[BaseModel]) -> dict:
    """JSON schema of an argument model, as sent in a function tool definition."""
    schema = args_model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    return schema


# =============================================================================
# Tools
# =============================================================================

@dataclass
class Tool:
    """A named, schema-checked callable exposed to the model."""
    name: str
    description: str
    args_model: type[ToolArgs]
    handler: Callable[[Any], dict]
    failure_payload: dict = field(default_factory=dict)

    def execute(self, arguments) -> dict:
        # JSON null means "not given"
        if isinstance(arguments, dict):
            arguments = {k: v for k, v in arguments.items() if v is not None}

        try:
            args = self.args_model.model_validate(arguments)
        except ValidationError as e:
            problems = describe_validation_error(e)
            logger.warning(f"[{self.name}] rejected arguments: {problems}")
            return {"success": False, "error": f"Invalid arguments: {problems}"}

        try:
            return self.handler(args)
        except Exception as e:
            logger.error(f"[{self.name}] failed: {type(e).__name__}: {e}")
            result = {"success": False, "error": str(e) or type(e).__name__}
            result.update(copy.deepcopy(self.failure_payload))
            return result

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": function_parameters(self.args_model),
            },
        }


@dataclass
class ToolInvocation:
    """Record of a single tool call within one agent turn."""
    tool_name: str
    arguments: Any
    result: dict
    call_id: str = ""
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return bool(self.result.get("success"))

    @property
    def error(self) -> Optional[str]:
        return None if self.success else self.result.get("error")

    def to_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "arguments": self.arguments,
            "result": self.result,
            "success": self.success,
            "error": self.error,
            "call_id": self.call_id,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class ToolConfig:
    """Configuration for the tool layer."""
    default_top_k: int = field(default_factory=lambda: int(os.getenv("SEARCH_TOP_K", "5")))
    snippet_chars: int = 200  # per search hit in the findGaps prompt


class NotesToolkit:
    """
    The agent's tools, bound to one tenant.

    Args:
        store: VectorStore (search is always scoped to ``tenant_id``)
        llm: ChatModel used by the generative tools
        tenant_id: The requesting tenant
    """

    def __init__(self, store, llm, tenant_id: str, config: Optional[ToolConfig] = None):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self.store = store
        self.llm = llm
        self.tenant_id = tenant_id
        self.config = config or ToolConfig()

        tools = [
            Tool("searchNotes", TOOL_DESCRIPTIONS["searchNotes"], SearchNotesArgs, self._search_notes),
            Tool("summarizeNotes", TOOL_DESCRIPTIONS["summarizeNotes"], SummarizeNotesArgs, self._summarize_notes),
            Tool(
                "findGaps", TOOL_DESCRIPTIONS["findGaps"], FindGapsArgs, self._find_gaps,
                failure_payload={
                    "contentSuggestions": [],
                    "clarifyingQuestions": [GAPS_ERROR_QUESTION],
                },
            ),
            Tool(
                "extractEntities", TOOL_DESCRIPTIONS["extractEntities"], ExtractEntitiesArgs, self._extract_entities,
                failure_payload={"entities": {key: [] for key in ENTITY_KEYS}},
            ),
        ]
        self.tools: dict[str, Tool] = {t.name: t for t in tools}

    def openai_tools(self) -> list[dict]:
        return [tool.to_openai() for tool in self.tools.values()]

    def invoke(self, call: ToolCallRequest) -> ToolInvocation:
        """Run one model-requested tool call. Never raises."""
        start = time.time()
        arguments: Any = None
        tool = self.tools.get(call.name)

        try:
            arguments = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            result = {"success": False, "error": f"Invalid arguments: not valid JSON ({e.msg})"}
        else:
            if tool is None:
                result = {"success": False, "error": f"Unknown tool: {call.name}"}
            else:
                result = tool.execute(arguments)

        elapsed = (time.time() - start) * 1000
        logger.info(f"[{call.name}] success={result.get('success')} in {elapsed:.0f}ms")
        return ToolInvocation(
            tool_name=call.name,
            arguments=arguments if arguments is not None else call.arguments,
            result=result,
            call_id=call.id,
            duration_ms=elapsed,
        )

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    def _search_notes(self, args: SearchNotesArgs) -> dict:
        top_k = args.top_k or self.config.default_top_k
        logger.info(f"[searchNotes] Searching for: {args.query!r} (top_k={top_k})")

        results = self.store.search(args.query, top_k=top_k, tenant_id=self.tenant_id)
        hits = [
            {
                "chunkId": r.chunk_id,
                "content": r.content,
                "source": r.metadata.label,
                "chunkIndex": r.metadata.chunk_index,
                "similarity": round(r.score, 4),
            }
            for r in results
        ]
        return {"success": True, "results": hits, "count": len(hits)}

    def _summarize_notes(self, args: SummarizeNotesArgs) -> dict:
        if args.focus:
            prompt = SUMMARIZE_FOCUSED.format(focus=args.focus, content=args.content)
        else:
            prompt = SUMMARIZE_GENERAL.format(content=args.content)

        summary = self.llm.generate_text(prompt)
        return {"success": True, "summary": summary, "focus": args.focus or "general"}

    def _find_gaps(self, args: FindGapsArgs) -> dict:
        search_results = args.search_results or []

        if args.relevant_content:
            content_summary = f"Relevant content found in notes:\n{args.relevant_content}"
        elif search_results:
            lines = [
                f"[{r.source or 'unknown'}]: {r.content[:self.config.snippet_chars]}..."
                for r in search_results
            ]
            content_summary = "Search results found:\n" + "\n".join(lines)
        else:
            content_summary = NO_CONTENT_FOUND

        raw = self.llm.generate_text(FIND_GAPS.format(query=args.query, content_summary=content_summary))
        parsed = parse_gap_analysis(raw)
        return {
            "success": True,
            "contentSuggestions": parsed["contentSuggestions"],
            "clarifyingQuestions": parsed["clarifyingQuestions"],
            "hasRelevantContent": bool(args.relevant_content) or bool(search_results),
        }

    def _extract_entities(self, args: ExtractEntitiesArgs) -> dict:
        types = args.entity_types or list(ENTITY_KEYS)
        prompt = EXTRACT_ENTITIES.format(types_list=", ".join(types), content=args.content)
        raw = self.llm.generate_text(prompt)
        return {"success": True, "entities": parse_entities(raw)}
