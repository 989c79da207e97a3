import pytest
from conftest import FakeGenerator, FakeRetriever, failing_llm, fixed_reply, make_service, parse_sse
from langchain_core.runnables import RunnableLambda

from tiered_assistant.config import RateLimitConfig
from tiered_assistant.errors import InputValidationError, LimiterBackendError, RateLimitExceededError
from tiered_assistant.streaming.transport import SSEChannel
from tiered_assistant.types import DiabetesProfile, Question


class _BrokenStore:
    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        raise ConnectionError("counter backend down")

    async def get(self, key: str) -> int:
        raise ConnectionError("counter backend down")


async def _stream(service, question: Question) -> list[tuple[str, dict]]:
    channel = SSEChannel()
    await service.stream(question, channel)
    return parse_sse("".join([frame async for frame in channel.frames()]))


@pytest.mark.asyncio
async def test_plain_question_is_answered_directly() -> None:
    retriever = FakeRetriever()
    research = FakeGenerator(model_name="fake-research-model")
    service = make_service(retriever=retriever, research_generator=research)

    envelope = await service.ask(Question(text="What is A1C?", user_id="user-1"))

    assert envelope.tier == 1
    assert envelope.processing_tier == "MODEL"
    assert envelope.metadata.routing["confidence"] > 0
    assert retriever.calls == []
    assert research.calls == []
    assert envelope.rate_limit_info is None
    assert envelope.metadata.trace_id in {record.trace_id for record in service.trace_store.list_recent()}


@pytest.mark.asyncio
async def test_research_request_is_rejected_at_the_daily_cap() -> None:
    research = FakeGenerator(model_name="fake-research-model")
    service = make_service(
        research_generator=research,
        rate_limit=RateLimitConfig(pro_research_daily_limit=2),
    )
    question = Question(text="What does the latest research say about metformin and longevity?", user_id="user-1")

    first = await service.ask(question)
    second = await service.ask(question)
    with pytest.raises(RateLimitExceededError) as excinfo:
        await service.ask(question)

    assert first.tier == 3
    assert first.rate_limit_info.remaining == 1
    assert second.rate_limit_info.remaining == 0
    assert excinfo.value.remaining == 0
    assert excinfo.value.limit == 2
    assert len(research.calls) == 2


@pytest.mark.asyncio
async def test_research_envelope_carries_summary_and_sources() -> None:
    service = make_service()

    envelope = await service.ask(
        Question(text="Do a deep research on beta cell regeneration", user_id="user-1")
    )
    payload = envelope.to_payload()

    assert payload["processingTier"] == "RESEARCH"
    assert payload["researchSummary"]["totalStudies"] == 12
    assert payload["rateLimitInfo"]["remaining"] == 9
    assert payload["metadata"]["modelUsed"] == "fake-research-model"
    assert len(payload["sources"]) == 12


@pytest.mark.asyncio
async def test_classifier_failure_still_completes_on_tier_one() -> None:
    service = make_service(router_llm=failing_llm(RuntimeError("classifier unavailable")))

    envelope = await service.ask(
        Question(text="Do a deep research on beta cell regeneration", user_id="user-1")
    )

    assert envelope.tier == 1
    assert envelope.metadata.routing["confidence"] == 0.0
    assert envelope.metadata.routing["method"] == "fallback"
    assert "classifier unavailable" in envelope.metadata.routing["reasoning"]
    assert envelope.answer
    assert service.trace_store.summary()["router_fallbacks"] == 1


@pytest.mark.asyncio
async def test_fail_open_limiter_admits_research_as_degraded() -> None:
    service = make_service(store=_BrokenStore(), rate_limit=RateLimitConfig(fail_open=True))

    envelope = await service.ask(Question(text="Deep research on GLP-1 and kidneys", user_id="user-1"))

    assert envelope.tier == 3
    assert envelope.metadata.degraded
    assert envelope.to_payload()["rateLimitInfo"]["degraded"] is True


@pytest.mark.asyncio
async def test_fail_closed_limiter_refuses_research() -> None:
    service = make_service(store=_BrokenStore(), rate_limit=RateLimitConfig(fail_open=False))

    with pytest.raises(LimiterBackendError):
        await service.ask(Question(text="Deep research on GLP-1 and kidneys", user_id="user-1"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("text", "user_id", "message"),
    [
        ("", "user-1", "Question is required"),
        ("   ", "user-1", "Question is required"),
        ("What is A1C?", "", "User ID is required"),
        ("x" * 5000, "user-1", "at most"),
    ],
)
async def test_invalid_input_is_rejected_before_routing(text: str, user_id: str, message: str) -> None:
    calls: list[object] = []

    async def _record(prompt_value: object) -> str:
        calls.append(prompt_value)
        return '{"tier": 1, "reasoning": "ok", "confidence": 0.9}'

    service = make_service(router_llm=RunnableLambda(_record))

    with pytest.raises(InputValidationError, match=message):
        await service.ask(Question(text=text, user_id=user_id))
    assert calls == []


@pytest.mark.asyncio
async def test_stream_emits_routing_tokens_and_done() -> None:
    service = make_service(generator=FakeGenerator("Eat more fiber."))

    events = await _stream(service, Question(text="What is A1C?", user_id="user-1"))

    names = [name for name, _ in events]
    assert names[0] == "routing"
    assert names[-1] == "done"
    assert set(names[1:-1]) == {"token"}
    assert "".join(data["content"] for name, data in events if name == "token") == "Eat more fiber."
    done = events[-1][1]
    assert done["answer"] == "Eat more fiber."
    assert done["sessionId"] == events[0][1]["sessionId"]


@pytest.mark.asyncio
async def test_stream_emits_sources_before_tokens_for_search() -> None:
    service = make_service()

    events = await _stream(
        service, Question(text="What are the latest ADA guidelines on CGM?", user_id="user-1")
    )

    names = [name for name, _ in events]
    assert names[0] == "routing"
    assert names.index("sources") < names.index("token")
    assert events[-1][1]["processingTier"] == "SEARCH"


@pytest.mark.asyncio
async def test_follow_up_reference_is_resolved_before_routing() -> None:
    routed: list[str] = []

    async def _record(prompt_value: object) -> str:
        routed.append(prompt_value.to_string())
        return '{"tier": 1, "reasoning": "Carb question.", "confidence": 0.9}'

    generator = FakeGenerator("That depends on your insulin-to-carb ratio.")
    service = make_service(router_llm=RunnableLambda(_record), generator=generator)
    profile = DiabetesProfile(diabetes_type="type 1")

    first = await _stream(
        service,
        Question(text="I had 40g carbs at breakfast, how much insulin do I need?", user_id="user-1", profile=profile),
    )
    session_id = first[-1][1]["sessionId"]
    second = await _stream(
        service,
        Question(text="what about the same for dinner", user_id="user-1", profile=profile, session_id=session_id),
    )

    assert second[-1][0] == "done"
    assert second[-1][1]["sessionId"] == session_id
    assert 'Question: "what about the same for dinner (the same = 40g carbs)"' in routed[1]
    assert 'Previous question: "I had 40g carbs at breakfast, how much insulin do I need?"' in routed[1]
    user_prompt = generator.calls[-1][1]
    assert "REFERENCE RESOLUTION GUIDANCE:" in user_prompt
    assert '"the same" (comparative) refers to "40g carbs"' in user_prompt


@pytest.mark.asyncio
async def test_session_context_is_not_shared_across_users() -> None:
    routed: list[str] = []

    async def _record(prompt_value: object) -> str:
        routed.append(prompt_value.to_string())
        return '{"tier": 1, "reasoning": "ok", "confidence": 0.9}'

    service = make_service(router_llm=RunnableLambda(_record))
    first = await _stream(service, Question(text="I had 40g carbs at breakfast", user_id="alice"))
    session_id = first[-1][1]["sessionId"]

    await _stream(service, Question(text="what about the same for dinner", user_id="bob", session_id=session_id))

    assert "40g carbs" not in routed[1]


@pytest.mark.asyncio
async def test_stream_reports_rate_limit_as_error_event() -> None:
    service = make_service(rate_limit=RateLimitConfig(pro_research_daily_limit=1))
    question = Question(text="Deep research on GLP-1 and kidneys", user_id="user-1")

    await _stream(service, question)
    events = await _stream(service, question)

    assert [name for name, _ in events] == ["routing", "error"]
    error = events[-1][1]
    assert error["code"] == "rate_limit_exceeded"
    assert error["remaining"] == 0
    assert error["limit"] == 1


@pytest.mark.asyncio
async def test_stream_reports_invalid_input_as_error_event() -> None:
    service = make_service()

    events = await _stream(service, Question(text="", user_id="user-1"))

    assert events == [("error", {"code": "invalid_input", "message": "Question is required and must be a non-empty string"})]


@pytest.mark.asyncio
async def test_llm_routing_drives_tier_selection() -> None:
    service = make_service(
        router_llm=fixed_reply('{"tier": 2, "reasoning": "Needs current guidance.", "confidence": 0.8}')
    )

    envelope = await service.ask(Question(text="What are the current ADA guidelines on CGM?", user_id="user-1"))

    assert envelope.tier == 2
    assert envelope.metadata.routing["reasoning"] == "Needs current guidance."
    assert envelope.sources


@pytest.mark.asyncio
async def test_blank_session_id_gets_a_fresh_session() -> None:
    service = make_service()

    events = await _stream(service, Question(text="What is A1C?", user_id="user-1", session_id="   "))

    session_id = events[-1][1]["sessionId"]
    assert session_id.strip()
    assert session_id != "   "
    assert events[0][1]["sessionId"] == session_id


@pytest.mark.asyncio
async def test_follow_up_search_uses_the_question_as_asked() -> None:
    retriever = FakeRetriever()
    service = make_service(
        router_llm=fixed_reply('{"tier": 2, "reasoning": "Needs sources.", "confidence": 0.8}'),
        retriever=retriever,
    )

    first = await _stream(service, Question(text="I had 40g carbs at breakfast", user_id="user-1"))
    session_id = first[-1][1]["sessionId"]
    retriever.calls.clear()
    follow_up = "what are the current guidelines for the same"
    events = await _stream(service, Question(text=follow_up, user_id="user-1", session_id=session_id))

    assert events[-1][1]["processingTier"] == "SEARCH"
    assert [query for query, _ in retriever.calls] == [follow_up]


@pytest.mark.asyncio
async def test_research_stream_reports_progress_before_sources() -> None:
    service = make_service()

    events = await _stream(service, Question(text="Do a deep research on beta cell regeneration", user_id="user-1"))

    names = [name for name, _ in events]
    progress = [data for name, data in events if name == "progress"]
    assert names[0] == "routing"
    assert len(progress) == 8
    assert names.index("sources") > max(index for index, name in enumerate(names) if name == "progress")
    assert names[-1] == "done"
