from tiered_assistant.resolution.detector import detect_references
from tiered_assistant.resolution.resolver import GUIDANCE_FOOTER, GUIDANCE_HEADER, ReferenceResolver
from tiered_assistant.resolution.state import ConversationState
from tiered_assistant.types import ConversationTurn

_BREAKFAST_TURN = ConversationTurn(
    question="I had 40g carbs at breakfast, how much insulin do I need?",
    answer="That depends on your insulin-to-carb ratio, which your care team can help you set.",
)


def test_question_without_references_is_unchanged() -> None:
    resolution = ReferenceResolver().resolve("What is A1C?", [_BREAKFAST_TURN])

    assert resolution.resolved_question == "What is A1C?"
    assert resolution.guidance_text == ""
    assert resolution.references == ()


def test_same_binds_to_prior_quantity() -> None:
    resolution = ReferenceResolver().resolve("what about the same for dinner", [_BREAKFAST_TURN])

    assert len(resolution.references) == 1
    reference = resolution.references[0]
    assert reference.category == "comparative"
    assert reference.pattern == "the same"
    assert reference.antecedent == "40g carbs"
    assert reference.turn_index == 1
    assert resolution.guidance_text.startswith(GUIDANCE_HEADER)
    assert 'The user\'s "the same" (comparative) refers to "40g carbs" from turn 1.' in resolution.guidance_text
    assert resolution.guidance_text.endswith(GUIDANCE_FOOTER)
    assert resolution.resolved_question == "what about the same for dinner (the same = 40g carbs)"


def test_most_recent_matching_mention_wins() -> None:
    turns = [
        _BREAKFAST_TURN,
        ConversationTurn(question="And 60g carbs at lunch?", answer="Lunch is often the biggest meal."),
    ]

    resolution = ReferenceResolver().resolve("what about the same for dinner", turns)

    assert resolution.references[0].antecedent == "60g carbs"
    assert resolution.references[0].turn_index == 2


def test_unresolvable_reference_is_noted_without_failing() -> None:
    resolution = ReferenceResolver().resolve("is that safe?", [])

    assert resolution.references
    assert all(not reference.resolved for reference in resolution.references)
    assert "could not be resolved" in resolution.guidance_text
    assert resolution.resolved_question == "is that safe?"


def test_ordinal_reference_picks_list_item() -> None:
    turns = [
        ConversationTurn(
            question="Give me low-carb snack ideas",
            answer="Here are a few:\n1. Greek yogurt with berries\n2. A handful of nuts\n3. Celery with peanut butter",
        )
    ]

    resolution = ReferenceResolver().resolve("I like the second one", turns)

    bound = {reference.category: reference.antecedent for reference in resolution.references}
    assert bound["ai_output"] == "A handful of nuts"


def test_detector_reports_one_reference_per_category() -> None:
    references = detect_references("you said the same dose earlier, is that safe?")

    categories = [reference.category for reference in references]
    assert len(categories) == len(set(categories))
    assert {"comparative", "temporal", "ai_output", "evaluation"} <= set(categories)


def test_state_ignores_out_of_range_glucose_values() -> None:
    state = ConversationState.from_turns(
        [ConversationTurn(question="My meter said 900 mg/dL and then 180 mg/dL", answer="Okay.")]
    )

    measurements = [mention.text for mention in state.mentions if mention.kind == "measurement"]
    assert measurements == ["180 mg/dL"]


_METFORMIN_TURN = ConversationTurn(question="I take metformin with 40g carbs", answer="Okay.")


def test_difference_between_is_not_a_reference() -> None:
    question = "What is the difference between type 1 and type 2?"

    resolution = ReferenceResolver().resolve(question, [_METFORMIN_TURN])

    assert resolution.resolved_question == question
    assert resolution.guidance_text == ""
    assert resolution.references == ()


def test_bare_difference_still_refers_back() -> None:
    resolution = ReferenceResolver().resolve("what's the difference?", [_METFORMIN_TURN])

    assert [reference.category for reference in resolution.references] == ["comparative"]
    assert resolution.references[0].pattern == "the difference"


def test_pronoun_with_antecedent_in_same_question_is_not_bound() -> None:
    question = "What is A1C and why does it matter?"

    resolution = ReferenceResolver().resolve(question, [_METFORMIN_TURN])

    assert resolution.resolved_question == question
    assert resolution.guidance_text == ""


def test_leading_pronoun_binds_to_prior_medication() -> None:
    resolution = ReferenceResolver().resolve("Does it cause stomach upset?", [_METFORMIN_TURN])

    bound = {reference.category: reference.antecedent for reference in resolution.references}
    assert bound["definite"] == "metformin"


def test_similar_alone_is_not_comparative() -> None:
    references = detect_references("Are type 1 and type 2 similar?")

    assert "comparative" not in {reference.category for reference in references}
