"""Tests for prompt rendering and preset evaluators."""

from traceval.parser import parse_evaluation_response
from traceval.prompts import (
    JUDGE_SYSTEM_PROMPT,
    build_judge_messages,
    preset_evaluators,
    render_evaluation_prompt,
)


def test_replaces_input_and_output_placeholders():
    prompt = render_evaluation_prompt("Q: {{input}}\nA: {{output}}", "What is 2+2?", "4")
    assert prompt == "Q: What is 2+2?\nA: 4"


def test_replaces_alias_placeholders():
    template = "{{user_input}} | {{ai_response}} | {{response}} | {{input}}"
    assert render_evaluation_prompt(template, "in", "out") == "in | out | out | in"


def test_replaces_every_occurrence():
    prompt = render_evaluation_prompt("{{output}} and again {{output}}", "in", "out")
    assert prompt == "out and again out"


def test_template_without_placeholders_gets_input_and_output_appended():
    prompt = render_evaluation_prompt("Judge the helpfulness of the answer.", "hello there", "general kenobi")
    assert prompt.startswith("Judge the helpfulness of the answer.")
    assert "User input: hello there" in prompt
    assert "AI response: general kenobi" in prompt


def test_substituted_text_is_not_rescanned():
    prompt = render_evaluation_prompt("Q: {{input}} A: {{output}}", "say {{output}}", "done")
    assert prompt == "Q: say {{output}} A: done"


def test_unknown_placeholders_are_left_untouched():
    prompt = render_evaluation_prompt("{{context}} {{input}}", "in", "out")
    assert prompt == "{{context}} in"


def test_judge_messages_carry_system_prompt():
    messages = build_judge_messages("Rate {{output}}", "q", "a")
    assert messages[0] == {"role": "system", "content": JUDGE_SYSTEM_PROMPT}
    assert messages[1] == {"role": "user", "content": "Rate a"}


def test_presets_are_complete_and_well_formed():
    presets = preset_evaluators()
    names = [p.name for p in presets]
    assert names == [
        "Relevance", "Accuracy", "Coherence", "Completeness",
        "Conciseness", "Safety", "Tone", "Creativity",
    ]
    for preset in presets:
        assert preset.is_preset
        assert preset.project_id is None
        assert preset.min_score == 0 and preset.max_score == 10
        assert "{{input}}" in preset.prompt_template
        assert "{{output}}" in preset.prompt_template
        assert '"reasoning"' in preset.prompt_template
    assert len({p.id for p in presets}) == len(presets)


def test_rendered_preset_contains_trace_text():
    relevance = preset_evaluators()[0]
    prompt = render_evaluation_prompt(relevance.prompt_template, "How do I reset my password?", "Click 'Forgot password'.")
    assert "How do I reset my password?" in prompt
    assert "Click 'Forgot password'." in prompt
    assert "{{" not in prompt


def test_preset_answer_format_is_parseable():
    example = '{\n  "score": 9,\n  "reasoning": "Directly answers the question."\n}'
    result = parse_evaluation_response(example)
    assert result.score == 9
    assert result.reason == "Directly answers the question."
