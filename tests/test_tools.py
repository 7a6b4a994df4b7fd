"""
Tests for execution/notes_rag/tools.py

Covers: parameter schema validation, the four tools, failure payloads and
tenant scoping of searchNotes.
"""

import json
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from execution.notes_rag.ingestion import IngestionPipeline
from execution.notes_rag.llm_client import ToolCallRequest
from execution.notes_rag.response_parsing import ENTITY_KEYS
from execution.notes_rag.tools import (
    MAX_TOP_K,
    ExtractEntitiesArgs,
    FindGapsArgs,
    NotesToolkit,
    SearchNotesArgs,
    ToolConfig,
    describe_validation_error,
    function_parameters,
)
from tests.conftest import ScriptedChatModel, TENANT_A, TENANT_B


def _call(name, **arguments):
    return ToolCallRequest(id="call_1", name=name, arguments=json.dumps(arguments))


@pytest.fixture
def populated_store(mock_vector_store, sample_note, recipe_note):
    pipeline = IngestionPipeline(mock_vector_store)
    pipeline.ingest("planning.md", sample_note, TENANT_A)
    pipeline.ingest("sourdough.md", recipe_note, TENANT_B)
    return mock_vector_store


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------

def _tool(name="searchNotes"):
    return NotesToolkit(MagicMock(), ScriptedChatModel(), TENANT_A).tools[name]


class TestToolArguments:

    def test_required_missing(self):
        result = _tool().execute({})
        assert result == {"success": False, "error": "Invalid arguments: query: Field required"}

    def test_null_treated_as_absent(self):
        with pytest.raises(ValidationError):
            SearchNotesArgs.model_validate({"query": None})
        tool = _tool()
        tool.handler = MagicMock(return_value={"success": True})
        assert tool.execute({"query": "x", "topK": None}) == {"success": True}
        assert tool.handler.call_args.args[0].top_k is None

    def test_wrong_type(self):
        result = _tool().execute({"query": "x", "topK": "five"})
        assert result["error"].startswith("Invalid arguments: topK: ")

    def test_integral_float_accepted(self):
        assert SearchNotesArgs.model_validate({"query": "x", "topK": 3.0}).top_k == 3

    def test_range(self):
        with pytest.raises(ValidationError) as exc:
            SearchNotesArgs.model_validate({"query": "x", "topK": 0})
        assert describe_validation_error(exc.value).startswith("topK: ")
        with pytest.raises(ValidationError):
            SearchNotesArgs.model_validate({"query": "x", "topK": MAX_TOP_K + 1})

    def test_unexpected_argument(self):
        result = _tool().execute({"query": "x", "extra": 1})
        assert result["success"] is False
        assert "extra" in result["error"]

    def test_non_object_arguments(self):
        result = _tool().execute(["not", "a", "dict"])
        assert result["success"] is False
        assert result["error"].startswith("Invalid arguments: ")

    def test_entity_types_restricted(self):
        with pytest.raises(ValidationError) as exc:
            ExtractEntitiesArgs.model_validate({"content": "c", "entityTypes": ["people", "planets"]})
        assert describe_validation_error(exc.value).startswith("entityTypes.1: ")

    def test_nested_search_result_requires_content(self):
        with pytest.raises(ValidationError) as exc:
            FindGapsArgs.model_validate({"query": "q", "searchResults": [{"source": "x"}]})
        assert describe_validation_error(exc.value).startswith("searchResults.0.content: ")

    def test_nested_search_result_extra_fields_ignored(self):
        args = FindGapsArgs.model_validate({
            "query": "q",
            "searchResults": [{"content": "c", "source": "a.md", "similarity": 0.8}],
        })
        assert args.search_results[0].source == "a.md"

    def test_function_parameters(self):
        params = function_parameters(SearchNotesArgs)
        assert params["type"] == "object"
        assert set(params["properties"]) == {"query", "topK"}
        assert params["required"] == ["query"]
        assert params["additionalProperties"] is False
        assert "title" not in params
        assert "description" in params["properties"]["query"]


# ---------------------------------------------------------------------------
# Toolkit
# ---------------------------------------------------------------------------

class TestNotesToolkit:

    def test_requires_tenant(self, mock_vector_store):
        with pytest.raises(ValueError):
            NotesToolkit(mock_vector_store, ScriptedChatModel(), "")

    def test_exposes_four_tools(self, mock_vector_store):
        toolkit = NotesToolkit(mock_vector_store, ScriptedChatModel(), TENANT_A)
        names = [t["function"]["name"] for t in toolkit.openai_tools()]
        assert names == ["searchNotes", "summarizeNotes", "findGaps", "extractEntities"]
        assert all(t["type"] == "function" for t in toolkit.openai_tools())

    def test_unknown_tool(self, mock_vector_store):
        toolkit = NotesToolkit(mock_vector_store, ScriptedChatModel(), TENANT_A)
        invocation = toolkit.invoke(_call("deleteEverything"))
        assert invocation.result == {"success": False, "error": "Unknown tool: deleteEverything"}

    def test_malformed_json_arguments(self, mock_vector_store):
        toolkit = NotesToolkit(mock_vector_store, ScriptedChatModel(), TENANT_A)
        invocation = toolkit.invoke(ToolCallRequest(id="c", name="searchNotes", arguments='{"query": '))
        assert not invocation.success
        assert invocation.error.startswith("Invalid arguments: not valid JSON")

    def test_empty_arguments_means_no_arguments(self, mock_vector_store):
        toolkit = NotesToolkit(mock_vector_store, ScriptedChatModel(), TENANT_A)
        invocation = toolkit.invoke(ToolCallRequest(id="c", name="searchNotes", arguments=""))
        assert invocation.error == "Invalid arguments: query: Field required"

    def test_invocation_record(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A)
        invocation = toolkit.invoke(_call("searchNotes", query="billing migration"))
        assert invocation.tool_name == "searchNotes"
        assert invocation.call_id == "call_1"
        assert invocation.arguments == {"query": "billing migration"}
        assert invocation.duration_ms >= 0
        assert invocation.to_dict()["success"] is True


# ---------------------------------------------------------------------------
# searchNotes
# ---------------------------------------------------------------------------

class TestSearchNotes:

    def test_returns_hits_with_similarity(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A)
        result = toolkit.invoke(_call("searchNotes", query="billing migration plan")).result

        assert result["success"] is True
        assert result["count"] == len(result["results"]) == 1
        hit = result["results"][0]
        assert hit["source"] == "planning.md"
        assert hit["chunkIndex"] == 0
        assert 0 < hit["similarity"] <= 1
        assert set(hit) == {"chunkId", "content", "source", "chunkIndex", "similarity"}

    def test_never_returns_other_tenant(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A)
        result = toolkit.invoke(_call("searchNotes", query="sourdough starter flour")).result
        assert all(hit["source"] != "sourdough.md" for hit in result["results"])
        assert populated_store.search_calls[-1]["tenant_id"] == TENANT_A

    def test_top_k_passed_through(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A)
        toolkit.invoke(_call("searchNotes", query="x", topK=3))
        assert populated_store.search_calls[-1]["top_k"] == 3

    def test_default_top_k(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A, ToolConfig(default_top_k=7))
        toolkit.invoke(_call("searchNotes", query="x"))
        assert populated_store.search_calls[-1]["top_k"] == 7

    def test_invalid_top_k_rejected_before_search(self, populated_store):
        toolkit = NotesToolkit(populated_store, ScriptedChatModel(), TENANT_A)
        result = toolkit.invoke(_call("searchNotes", query="x", topK=0)).result
        assert result["success"] is False
        assert result["error"].startswith("Invalid arguments")
        assert populated_store.search_calls == []

    def test_store_failure_becomes_error_result(self):
        store = MagicMock()
        store.search.side_effect = RuntimeError("connection refused")
        toolkit = NotesToolkit(store, ScriptedChatModel(), TENANT_A)
        result = toolkit.invoke(_call("searchNotes", query="x")).result
        assert result == {"success": False, "error": "connection refused"}


# ---------------------------------------------------------------------------
# summarizeNotes
# ---------------------------------------------------------------------------

class TestSummarizeNotes:

    def test_general_summary(self, mock_vector_store):
        model = ScriptedChatModel(generated="Short summary.")
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        result = toolkit.invoke(_call("summarizeNotes", content="Long text")).result
        assert result == {"success": True, "summary": "Short summary.", "focus": "general"}
        assert "Long text" in model.prompts[0]

    def test_focused_summary(self, mock_vector_store):
        model = ScriptedChatModel(generated="Deadlines: Aug 12.")
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        result = toolkit.invoke(_call("summarizeNotes", content="Text", focus="deadlines")).result
        assert result["focus"] == "deadlines"
        assert "focusing on: deadlines" in model.prompts[0]

    def test_generation_failure(self, mock_vector_store):
        model = ScriptedChatModel(generated=RuntimeError("model unavailable"))
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        result = toolkit.invoke(_call("summarizeNotes", content="Text")).result
        assert result == {"success": False, "error": "model unavailable"}


# ---------------------------------------------------------------------------
# findGaps
# ---------------------------------------------------------------------------

class TestFindGaps:

    def test_parses_json_reply(self, mock_vector_store):
        model = ScriptedChatModel(generated='{"contentSuggestions": ["Add budget"], "clarifyingQuestions": ["Which quarter?"]}')
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        result = toolkit.invoke(_call("findGaps", query="What is the budget?", relevantContent="Budget TBD")).result
        assert result == {
            "success": True,
            "contentSuggestions": ["Add budget"],
            "clarifyingQuestions": ["Which quarter?"],
            "hasRelevantContent": True,
        }
        assert "Relevant content found in notes:\nBudget TBD" in model.prompts[0]

    def test_plain_text_reply_fallback(self, mock_vector_store):
        toolkit = NotesToolkit(mock_vector_store, ScriptedChatModel(generated="I don't know"), TENANT_A)
        result = toolkit.invoke(_call("findGaps", query="Anything?")).result
        assert result["success"] is True
        assert result["contentSuggestions"] == ["I don't know"]
        assert len(result["clarifyingQuestions"]) == 1
        assert result["hasRelevantContent"] is False

    def test_no_content_prompt(self, mock_vector_store):
        model = ScriptedChatModel(generated="{}")
        NotesToolkit(mock_vector_store, model, TENANT_A).invoke(_call("findGaps", query="q"))
        assert "No relevant content found in notes." in model.prompts[0]

    def test_search_results_are_truncated_in_prompt(self, mock_vector_store):
        model = ScriptedChatModel(generated="{}")
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        long_content = "x" * 500
        result = toolkit.invoke(_call(
            "findGaps", query="q", searchResults=[{"content": long_content, "source": "a.md"}],
        )).result
        assert result["hasRelevantContent"] is True
        assert f"[a.md]: {'x' * 200}..." in model.prompts[0]
        assert "x" * 201 not in model.prompts[0]

    def test_failure_payload(self, mock_vector_store):
        model = ScriptedChatModel(generated=RuntimeError("timeout"))
        result = NotesToolkit(mock_vector_store, model, TENANT_A).invoke(_call("findGaps", query="q")).result
        assert result == {
            "success": False,
            "error": "timeout",
            "contentSuggestions": [],
            "clarifyingQuestions": ["Could you provide more details?"],
        }


# ---------------------------------------------------------------------------
# extractEntities
# ---------------------------------------------------------------------------

class TestExtractEntities:

    def test_extracts_and_fills_keys(self, mock_vector_store):
        model = ScriptedChatModel(generated='```json\n{"people": ["Alice Chen", "Bob Martinez"]}\n```')
        toolkit = NotesToolkit(mock_vector_store, model, TENANT_A)
        result = toolkit.invoke(_call("extractEntities", content="Alice and Bob met.")).result
        assert result["success"] is True
        assert result["entities"]["people"] == ["Alice Chen", "Bob Martinez"]
        assert set(result["entities"]) == set(ENTITY_KEYS)

    def test_requested_types_in_prompt(self, mock_vector_store):
        model = ScriptedChatModel(generated="{}")
        NotesToolkit(mock_vector_store, model, TENANT_A).invoke(
            _call("extractEntities", content="c", entityTypes=["people", "dates"])
        )
        assert "people, dates" in model.prompts[0]

    def test_unknown_entity_type_rejected(self, mock_vector_store):
        model = ScriptedChatModel(generated="{}")
        result = NotesToolkit(mock_vector_store, model, TENANT_A).invoke(
            _call("extractEntities", content="c", entityTypes=["planets"])
        ).result
        assert result["success"] is False
        assert model.prompts == []

    def test_failure_payload(self, mock_vector_store):
        model = ScriptedChatModel(generated=RuntimeError("boom"))
        result = NotesToolkit(mock_vector_store, model, TENANT_A).invoke(
            _call("extractEntities", content="c")
        ).result
        assert result["success"] is False
        assert result["entities"] == {key: [] for key in ENTITY_KEYS}
