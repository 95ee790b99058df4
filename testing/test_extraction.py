import json

import pytest

import extraction


class FakeResponse:
    def __init__(self, status_code, body=None, reason="OK"):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.reason = reason

    def json(self):
        return self._body


def gemini_body(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def chat_body(text):
    return {"choices": [{"message": {"content": text}}]}


@pytest.fixture
def posts(monkeypatch):
    """Queue of responses handed out by a fake requests.post; calls are recorded."""
    state = {"responses": [], "calls": []}

    def fake_post(url, **kwargs):
        state["calls"].append({"url": url, **kwargs})
        return state["responses"].pop(0)

    monkeypatch.setattr(extraction.requests, "post", fake_post)
    return state


def test_load_keys_splits_and_trims():
    assert extraction.load_keys(" k1, k2,,k3 ") == ["k1", "k2", "k3"]
    assert extraction.load_keys(None) == []


def test_key_pool_reports_wrap():
    pool = extraction.KeyPool(["k1", "k2"])
    assert pool.current() == "k1"
    assert pool.advance() is False
    assert pool.current() == "k2"
    assert pool.advance() is True
    assert pool.current() == "k1"


@pytest.mark.parametrize("model, expected", [
    ("gemini-2.0-flash", ("gemini", "gemini-2.0-flash")),
    ("gpt-4o", ("openai", "gpt-4o")),
    ("llama-3.2-90b-vision-preview", ("groq", "llama-3.2-90b-vision-preview")),
    ("", ("gemini", extraction.DEFAULT_GEMINI_MODEL)),
    ("something-else", ("gemini", extraction.DEFAULT_GEMINI_MODEL)),
])
def test_resolve_provider(model, expected):
    assert extraction.resolve_provider(model) == expected


def test_custom_prompt_is_appended():
    prompt = extraction.build_prompt("Only extract chemistry questions")
    assert prompt.startswith(extraction.BASE_PROMPT)
    assert prompt.endswith("ADDITIONAL INSTRUCTIONS:\nOnly extract chemistry questions")
    assert extraction.build_prompt("   ") == extraction.BASE_PROMPT


def test_clean_model_json_strips_fences():
    reply = '```json\n{"questions": [{"text": "Q1"}]}\n```'
    assert extraction.clean_model_json(reply) == {"questions": [{"text": "Q1"}]}


def test_clean_model_json_keeps_latex_backslashes():
    reply = r'{"questions": [{"text": "Find \(x^2\) when \(x = 3\)"}]}'
    parsed = extraction.clean_model_json(reply)
    assert parsed["questions"][0]["text"] == r"Find \(x^2\) when \(x = 3\)"


def test_clean_model_json_repairs_truncated_reply():
    reply = '{"questions": [{"text": "Q1", "marks": 1}, {"text": "Q2", "mar'
    parsed = extraction.clean_model_json(reply)
    assert [q["text"] for q in parsed["questions"]] == ["Q1", "Q2"]


def test_clean_model_json_without_object_raises():
    with pytest.raises(extraction.ExtractionError):
        extraction.clean_model_json("I could not read this page.")


def test_normalize_correct_answer():
    assert extraction.normalize_correct_answer("Option b") == "B"
    assert extraction.normalize_correct_answer(["a", "c"]) == "A,C"
    assert extraction.normalize_correct_answer(None) == ""


def test_generate_rotates_key_on_rate_limit(posts):
    posts["responses"] = [
        FakeResponse(429, {"error": {"message": "quota"}}, "Too Many Requests"),
        FakeResponse(200, gemini_body('{"questions": []}')),
    ]
    sleeps = []
    pool = extraction.KeyPool(["k1", "k2"])
    text = extraction.generate("gemini", "gemini-flash-latest", "prompt", "data:image/jpeg;base64,AAA",
                               pool, pacing=False, sleep=sleeps.append)
    assert text == '{"questions": []}'
    assert [c["params"]["key"] for c in posts["calls"]] == ["k1", "k2"]
    assert pool.current() == "k2"
    assert sleeps == [1.0]
    assert posts["calls"][0]["json"]["contents"][0]["parts"][1]["inline_data"]["data"] == "AAA"


def test_generate_does_not_retry_other_errors(posts):
    posts["responses"] = [FakeResponse(400, {"error": {"message": "bad image"}}, "Bad Request")]
    with pytest.raises(extraction.ProviderHTTPError) as excinfo:
        extraction.generate("gemini", "gemini-flash-latest", "p", "AAA",
                            extraction.KeyPool(["k1", "k2"]), pacing=False, sleep=lambda s: None)
    assert excinfo.value.status == 400
    assert "bad image" in str(excinfo.value)
    assert len(posts["calls"]) == 1


def test_generate_gives_up_after_two_rounds(posts):
    posts["responses"] = [FakeResponse(429, reason="Too Many Requests") for _ in range(4)]
    sleeps = []
    with pytest.raises(extraction.RateLimitError):
        extraction.generate("groq", "llama-3.2-90b-vision-preview", "p", "AAA",
                            extraction.KeyPool(["g1", "g2"]), pacing=False, sleep=sleeps.append)
    assert len(posts["calls"]) == 4
    assert len(sleeps) == 4


def test_extract_requires_key_before_images():
    with pytest.raises(extraction.ExtractionError, match="Gemini API Key missing."):
        extraction.extract_questions([], environ={})
    with pytest.raises(ValueError, match="No images provided."):
        extraction.extract_questions([], environ={"GEMINI_API_KEY": "k1"})


def test_extract_questions_collects_pages(posts):
    page1 = {
        "instructions": ["Attempt all questions"],
        "paragraphs": [{"id": "p1", "text": "Passage"}],
        "questions": [
            {"type": "mcq", "text": "2 + 2", "options": ["3", "4"], "correctAnswer": "Option b"},
            {"type": "fill_blank", "text": "H_2O is ____", "options": [], "correctAnswer": "water"},
        ],
    }
    posts["responses"] = [
        FakeResponse(200, chat_body("```json\n" + json.dumps(page1) + "\n```")),
        FakeResponse(200, chat_body("Sorry, the page is blank.")),
    ]
    result = extraction.extract_questions(
        ["data:image/png;base64,AAA", "BBB"],
        model="gpt-4o",
        environ={"OPENAI_API_KEY": "sk-1"},
        pacing=False,
        sleep=lambda s: None,
        clock=lambda: 1.5,
    )
    assert result["provider"] == "openai"
    assert result["failedPages"] == [2]
    assert result["rateLimitedPages"] == []
    assert result["instructions"] == ["Attempt all questions"]
    assert result["paragraphs"] == [{"id": "p1", "text": "Passage"}]
    assert [q["id"] for q in result["questions"]] == ["page1_q1_1500", "page1_q2_1500"]
    assert [q["correctAnswer"] for q in result["questions"]] == ["B", "WATER"]

    first, second = posts["calls"]
    assert first["headers"]["Authorization"] == "Bearer sk-1"
    image_part = second["json"]["messages"][1]["content"][1]
    assert image_part["image_url"]["url"] == "data:image/jpeg;base64,BBB"


def test_extract_marks_rate_limited_pages(posts):
    posts["responses"] = [FakeResponse(429, reason="Too Many Requests") for _ in range(2)]
    result = extraction.extract_questions(["AAA"], environ={"GEMINI_API_KEY": "k1"},
                                          pacing=False, sleep=lambda s: None)
    assert result["failedPages"] == [1]
    assert result["rateLimitedPages"] == [1]
    assert result["questions"] == []
