"""Tests for the agent loop driving one user turn."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from quizsmith.ai.cancellation import CancellationToken
from quizsmith.ai.errors import BudgetExceededError, Cancelled, ProviderError, TransportError
from quizsmith.ai.messages import ChatMessage, ImageAttachment
from quizsmith.ai.orchestration import (
    AgentConfig,
    AgentLoop,
    AgentState,
    DocumentAttachment,
    SelectionDescriptor,
    TemplateDescriptor,
    ToolExecutor,
    TurnInput,
)
from quizsmith.ai.orchestration.tool_executor import RETRY_HINT
from quizsmith.ai.services import ContextBudgetManager, ResponseCache, RetryPolicy
from quizsmith.ai.tools import EditDocumentTool, EditMatcher, ReadDocumentTool
from quizsmith.ai.transport.types import FunctionCall, ResponseChunk
from quizsmith.services.settings import ContextPolicySettings
from tests.helpers import BlockingStream, RecordingSleep, ScriptedTransport, call_chunk, text_chunk


def _loop(
    transport: ScriptedTransport,
    *,
    max_turns: int = 5,
    policy: ContextPolicySettings | None = None,
    cache: ResponseCache | None = None,
    sleep: RecordingSleep | None = None,
    counter: Any = None,
) -> AgentLoop:
    tools = ToolExecutor([EditDocumentTool(EditMatcher()), ReadDocumentTool()])
    return AgentLoop(
        transport,  # type: ignore[arg-type]
        tools,
        config=AgentConfig(model="test-model", max_agent_turns=max_turns, api_key="key-1"),
        budget=ContextBudgetManager(policy, counter=counter),
        retry=RetryPolicy(sleep=sleep or RecordingSleep()),
        cache=cache,
    )


def _answer_call(value: str) -> ResponseChunk:
    return call_chunk(edit_type="edit_question", question_number=1, field="answer", new_content=value)


def _last_text(contents: list[dict[str, Any]]) -> str:
    return contents[-1]["parts"][0]["text"]


# -----------------------------------------------------------------------------
# Plain replies
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_text_reply_streams_and_finishes(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("Hello"), text_chunk(" world")]])
    states: list[AgentState] = []
    deltas: list[str] = []
    loop = _loop(transport)

    result = await loop.run(
        TurnInput(message="Hi", document_markup=sky_document), on_text=deltas.append, on_state=states.append
    )

    assert result.ok
    assert result.text == "Hello world"
    assert deltas == ["Hello", " world"]
    assert states == [AgentState.REQUESTING, AgentState.STREAMING, AgentState.DONE]
    assert loop.state is AgentState.DONE
    assert not result.document_changed
    assert result.document_markup == sky_document
    assert result.iterations == 1
    assert result.messages == [ChatMessage.user("Hi"), ChatMessage.model("Hello world")]

    request = transport.requests[0]
    assert request.model == "test-model"
    assert request.cached_content is None
    assert request.system_instruction is not None
    assert "## Current document" in request.system_instruction
    assert sky_document in request.system_instruction
    assert "No source documents are attached" in request.system_instruction
    assert [tool["name"] for tool in request.tools] == ["edit_document", "read_document"]
    assert request.contents == [{"role": "user", "parts": [{"text": "Hi"}]}]


@pytest.mark.asyncio
async def test_thinking_is_kept_apart_from_text(sky_document: str) -> None:
    transport = ScriptedTransport([[ResponseChunk(thinking="pondering"), text_chunk("Answer")]])

    result = await _loop(transport).run(TurnInput(message="Hi", document_markup=sky_document))

    assert result.text == "Answer"
    assert result.thinking == "pondering"
    assert result.messages[1].thinking == "pondering"


@pytest.mark.asyncio
async def test_history_precedes_the_new_message(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("Sure")]])
    history = [ChatMessage.user("earlier question"), ChatMessage.model("earlier answer")]

    await _loop(transport).run(TurnInput(message="Next", document_markup=sky_document, history=history))

    contents = transport.requests[0].contents
    assert [item["role"] for item in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][0]["text"] == "earlier question"
    assert _last_text(contents) == "Next"


# -----------------------------------------------------------------------------
# Tool rounds
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sequential_rounds_see_previous_edits(sky_document: str) -> None:
    transport = ScriptedTransport(
        [
            [text_chunk("Changing the answer."), _answer_call("Azure")],
            [
                call_chunk(
                    edit_type="snippet_replace",
                    html_snippet_to_replace="<strong>Azure</strong>",
                    replacement_html="<strong>Azure blue</strong>",
                )
            ],
            [text_chunk("Done.")],
        ]
    )
    states: list[AgentState] = []

    result = await _loop(transport).run(
        TurnInput(message="Make it Azure blue", document_markup=sky_document), on_state=states.append
    )

    assert result.ok
    assert result.document_changed
    assert result.document_markup == (
        "<p><strong>1: What color is the sky?</strong></p><p><strong>Azure blue</strong></p>"
    )
    assert result.text == "Changing the answer.\n\nDone."
    assert result.iterations == 3
    assert [record.iteration for record in result.tool_calls] == [1, 2]
    assert all(record.success for record in result.tool_calls)
    assert result.scroll_hint is not None
    assert states.count(AgentState.APPLYING_EDIT) == 2
    assert states[-1] is AgentState.DONE

    second = transport.requests[1]
    assert "<strong>Azure</strong>" in (second.system_instruction or "")
    roles = [item["role"] for item in second.contents]
    assert roles == ["user", "model", "user"]
    assert second.contents[1]["parts"][0]["text"].startswith("Changing the answer.\n[Tool Call] edit_document(")
    assert "[Edit Result] ✅ Edit applied successfully: Updated answer of question 1" in _last_text(second.contents)
    assert _last_text(second.contents).endswith("(Agent step 1/5)")
    assert len(transport.requests[2].contents) == 5


@pytest.mark.asyncio
async def test_multiple_calls_in_one_response_apply_in_order(quiz_document: str) -> None:
    calls = ResponseChunk(
        function_calls=(
            FunctionCall(name="edit_document", args={"edit_type": "delete_question", "question_number": 1}),
            FunctionCall(
                name="edit_document",
                args={"edit_type": "edit_question", "question_number": 2, "field": "answer", "new_content": "Three"},
            ),
        )
    )
    transport = ScriptedTransport([[calls], [text_chunk("Updated.")]])

    result = await _loop(transport).run(TurnInput(message="Fix it", document_markup=quiz_document))

    assert [record.success for record in result.tool_calls] == [True, True]
    assert "Sun" not in result.document_markup
    assert "<p><strong>1. Which planet has rings?</strong></p>" in result.document_markup
    assert result.document_markup.endswith("<p><strong>2) How many moons does Mars have?</strong></p>\n<p>Answer: Three</p>\n")


@pytest.mark.asyncio
async def test_failed_edit_is_reported_back_to_the_model(sky_document: str) -> None:
    transport = ScriptedTransport(
        [
            [call_chunk(edit_type="delete_question", question_number=4)],
            [text_chunk("Question 4 does not exist.")],
        ]
    )

    result = await _loop(transport).run(TurnInput(message="Delete 4", document_markup=sky_document))

    assert result.ok
    assert not result.document_changed
    assert result.tool_calls[0].success is False
    feedback = _last_text(transport.requests[1].contents)
    assert "[Edit Result] ❌ Edit failed:" in feedback
    assert RETRY_HINT in feedback


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_back_to_the_model(sky_document: str) -> None:
    transport = ScriptedTransport([[call_chunk("summon_cat")], [text_chunk("Sorry.")]])

    result = await _loop(transport).run(TurnInput(message="Hi", document_markup=sky_document))

    assert result.ok
    assert result.tool_calls[0].name == "summon_cat"
    assert "Tool 'summon_cat' is not available" in _last_text(transport.requests[1].contents)


@pytest.mark.asyncio
async def test_step_limit_stops_the_turn(sky_document: str) -> None:
    transport = ScriptedTransport([[call_chunk("read_document")], [call_chunk("read_document")]])

    result = await _loop(transport, max_turns=2).run(TurnInput(message="Loop", document_markup=sky_document))

    assert result.ok
    assert result.step_limit_reached
    assert result.iterations == 2
    assert len(transport.requests) == 2
    assert "Reached the step limit (2 tool rounds)" in result.text
    assert _last_text(transport.requests[1].contents).endswith("(Agent step 1/2)")


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_while_streaming_discards_text(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("Partial"), text_chunk(" more")]])
    token = CancellationToken()

    def on_text(delta: str) -> None:
        token.cancel("user stop")

    result = await _loop(transport).run(
        TurnInput(message="Hi", document_markup=sky_document), cancel=token, on_text=on_text
    )

    assert result.status == "failed"
    assert result.cancelled
    assert result.text == ""
    assert isinstance(result.error, Cancelled)
    assert result.messages == [ChatMessage.user("Hi")]


@pytest.mark.asyncio
async def test_cancel_interrupts_a_stalled_stream(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("Partial"), BlockingStream()]])
    token = CancellationToken()
    loop = _loop(transport)

    def on_state(state: AgentState) -> None:
        if state is AgentState.STREAMING:
            asyncio.get_running_loop().call_soon(token.cancel)

    result = await asyncio.wait_for(
        loop.run(TurnInput(message="Hi", document_markup=sky_document), cancel=token, on_state=on_state),
        timeout=5,
    )

    assert result.cancelled
    assert loop.state is AgentState.FAILED


@pytest.mark.asyncio
async def test_cancel_keeps_edits_that_already_applied(sky_document: str) -> None:
    transport = ScriptedTransport([[_answer_call("Azure")], [text_chunk("never sent")]])
    token = CancellationToken()
    requests_seen = 0

    def on_state(state: AgentState) -> None:
        nonlocal requests_seen
        if state is AgentState.REQUESTING:
            requests_seen += 1
            if requests_seen == 2:
                token.cancel()

    result = await _loop(transport).run(
        TurnInput(message="Change", document_markup=sky_document), cancel=token, on_state=on_state
    )

    assert result.cancelled
    assert result.document_changed
    assert "<strong>Azure</strong>" in result.document_markup
    assert len(result.tool_calls) == 1
    assert len(transport.requests) == 1


# -----------------------------------------------------------------------------
# Provider failures
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_transient_failure_is_retried(sky_document: str) -> None:
    sleep = RecordingSleep()
    transport = ScriptedTransport(
        [TransportError(message="503 Service Unavailable", status_code=503), [text_chunk("Recovered")]]
    )
    states: list[AgentState] = []

    result = await _loop(transport, sleep=sleep).run(
        TurnInput(message="Hi", document_markup=sky_document), on_state=states.append
    )

    assert result.ok
    assert result.text == "Recovered"
    assert sleep.delays == [3.0]
    assert states == [AgentState.REQUESTING, AgentState.REQUESTING, AgentState.STREAMING, AgentState.DONE]


@pytest.mark.asyncio
async def test_auth_failure_fails_the_turn(sky_document: str) -> None:
    transport = ScriptedTransport([TransportError(message="401 Unauthorized", status_code=401)])

    result = await _loop(transport).run(TurnInput(message="Hi", document_markup=sky_document))

    assert result.status == "failed"
    assert not result.cancelled
    assert isinstance(result.error, ProviderError)
    assert result.error.kind == "auth"
    assert result.text.startswith("🔑")
    assert result.messages == [ChatMessage.user("Hi")]
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_context_overflow_retries_with_compacted_history(sky_document: str) -> None:
    history: list[ChatMessage] = []
    for index in range(6):
        history.extend([ChatMessage.user(f"question {index}"), ChatMessage.model(f"answer {index}")])
    transport = ScriptedTransport(
        [TransportError(message="400 INVALID_ARGUMENT: request content is too big", status_code=400), [text_chunk("ok")]]
    )
    sleep = RecordingSleep()

    result = await _loop(transport, sleep=sleep).run(
        TurnInput(message="Hi", document_markup=sky_document, history=history)
    )

    assert result.ok
    assert sleep.delays == [0.0]
    assert len(transport.requests[0].contents) == 13
    retried = transport.requests[1].contents
    assert len(retried) == 9
    assert retried[0]["parts"][0]["text"].startswith("[Earlier in this conversation, the user discussed:")
    assert retried[2]["parts"][0]["text"] == "question 3"


@pytest.mark.asyncio
async def test_over_budget_request_records_one_warning(sky_document: str) -> None:
    transport = ScriptedTransport([[call_chunk("read_document")], [text_chunk("ok")]])
    policy = ContextPolicySettings(practical_token_budget=50)

    result = await _loop(transport, policy=policy).run(TurnInput(message="Hi", document_markup=sky_document))

    assert result.ok
    assert len(result.warnings) == 1
    assert isinstance(result.warnings[0], BudgetExceededError)
    assert result.budget is not None and result.budget.over_budget
    assert len(transport.requests) == 2


class _SmallContentsCounter:
    def __init__(self) -> None:
        self.calls = 0

    async def count_tokens(self, model: str, contents: Any) -> int:
        self.calls += 1
        return 5


@pytest.mark.asyncio
async def test_exact_count_keeps_a_large_document_over_budget(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("ok")]])
    counter = _SmallContentsCounter()
    document = sky_document + "<p>filler paragraph</p>" * 1_000
    policy = ContextPolicySettings(practical_token_budget=2_000)

    result = await _loop(transport, policy=policy, counter=counter).run(
        TurnInput(message="Hi", document_markup=document)
    )

    assert counter.calls == 1
    assert len(result.warnings) == 1
    assert isinstance(result.warnings[0], BudgetExceededError)
    assert result.budget is not None and result.budget.over_budget


# -----------------------------------------------------------------------------
# Request assembly
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_attachments_images_selection_and_template(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("ok")]])
    image = ImageAttachment(mime_type="image/png", data=b"png-bytes")
    turn = TurnInput(
        message="Make it bluer",
        document_markup=sky_document,
        attachments=[
            DocumentAttachment.from_text("notes.txt", "The sky is blue."),
            DocumentAttachment.from_bytes("scan.pdf", b"%PDF-1.4", "application/pdf"),
        ],
        images=[image],
        selection=SelectionDescriptor(text="Blue", markup="<strong>Blue</strong>", start_line=2, end_line=2),
        template=TemplateDescriptor(question_type="short answer", markup_template="<p><strong>[number]: [question]</strong></p>"),
    )

    result = await _loop(transport).run(turn)

    request = transport.requests[0]
    system = request.system_instruction or ""
    assert "Source documents are attached" in system
    assert "--- SOURCE DOCUMENTS START ---\n[notes.txt]\nThe sky is blue.\n--- SOURCE DOCUMENTS END ---" in system
    assert "## Question template\nQuestion type: short answer" in system
    assert "## User selection\nThe user highlighted this content at Line 2:" in system
    parts = request.contents[-1]["parts"]
    assert parts[0]["text"].startswith("Make it bluer\n\nApply this to the selected content at Line 2:")
    assert parts[1]["inlineData"]["mimeType"] == "application/pdf"
    assert parts[2]["inlineData"]["mimeType"] == "image/png"
    assert result.messages[0].images == (image,)


@pytest.mark.asyncio
async def test_cached_mode_sends_only_dynamic_context(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("one")], [text_chunk("two")]], supports_caching=True)
    cache = ResponseCache(transport)  # type: ignore[arg-type]
    loop = _loop(transport, cache=cache)
    turn = TurnInput(
        message="Hi",
        document_markup=sky_document,
        attachments=[DocumentAttachment.from_text("notes.txt", "The sky is blue.")],
    )

    await loop.run(turn)
    await loop.run(turn)

    assert len(transport.created_caches) == 1
    created = transport.created_caches[0]
    assert created["system_instruction"].startswith("You are an assistant inside a question-and-answer")
    assert "[notes.txt]\nThe sky is blue." in created["contents"][0]["parts"][0]["text"]
    for request in transport.requests:
        assert request.cached_content == "cachedContents/1"
        assert request.system_instruction is None
        assert _last_text(request.contents).startswith("## Current document")
        assert _last_text(request.contents).endswith("\n\nHi")


@pytest.mark.asyncio
async def test_cache_failure_falls_back_to_full_request(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("ok")]], supports_caching=True)
    transport.fail_cache_create = True
    loop = _loop(transport, cache=ResponseCache(transport))  # type: ignore[arg-type]

    result = await loop.run(TurnInput(message="Hi", document_markup=sky_document))

    assert result.ok
    request = transport.requests[0]
    assert request.cached_content is None
    assert request.system_instruction is not None
    assert _last_text(request.contents) == "Hi"


@pytest.mark.asyncio
async def test_cache_is_skipped_for_transports_without_caching(sky_document: str) -> None:
    transport = ScriptedTransport([[text_chunk("ok")]])
    loop = _loop(transport, cache=ResponseCache(transport))  # type: ignore[arg-type]

    await loop.run(TurnInput(message="Hi", document_markup=sky_document))

    assert transport.created_caches == []
    assert transport.requests[0].cached_content is None
