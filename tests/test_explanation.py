from __future__ import annotations

import pytest

from errors import NotFoundError, QuotaExceededError, ValidationFailure
from explanation import (
    MAX_SAVED_EXPLANATIONS,
    ExplanationService,
    explanation_stats,
    validate_code,
)

CODE = "<html><body><p>Hello</p></body></html>"


@pytest.fixture
def service(fake_ai, storage):
    return ExplanationService(fake_ai, storage)


class TestValidateCode:
    @pytest.mark.parametrize("code, message", [
        ("", "No code provided"),
        (None, "No code provided"),
        ("<p></p>", "too short"),
        ("x" * 100001, "too large"),
    ])
    def test_rejects(self, code, message):
        with pytest.raises(ValidationFailure) as exc:
            validate_code(code)
        assert message in exc.value.message

    def test_bounds_are_inclusive(self):
        validate_code("x" * 10)
        validate_code("x" * 100000)


def test_stats():
    markup = "<h3>Title</h3><p>one two three</p><ul><li>a</li></ul>"
    stats = explanation_stats(markup, "overview")
    assert stats["words"] == 5
    assert stats["headers"] == 1
    assert stats["paragraphs"] == 1
    assert stats["lists"] == 1
    assert stats["reading_time"] == 1
    assert stats["type"] == "overview"


class TestExplain:
    def test_returns_markup_and_description(self, service, fake_ai):
        result = service.explain(CODE, "concepts")
        assert result["html"] == fake_ai.explanation
        assert result["description"].startswith("Learn about")
        assert fake_ai.calls == [("explanation", "concepts")]

    def test_unknown_type_makes_no_call(self, service, fake_ai):
        with pytest.raises(ValidationFailure):
            service.explain(CODE, "haiku")
        assert fake_ai.calls == []

    def test_ai_errors_propagate(self, service, fake_ai):
        fake_ai.error = QuotaExceededError("quota")
        with pytest.raises(QuotaExceededError):
            service.explain(CODE)


class TestSavedExplanations:
    def test_save_is_newest_first_and_capped(self, service):
        for i in range(MAX_SAVED_EXPLANATIONS + 1):
            service.save("overview", f"<p>{i}</p>")
        saved = service.list_saved()
        assert len(saved) == MAX_SAVED_EXPLANATIONS
        assert saved[0].content == f"<p>{MAX_SAVED_EXPLANATIONS}</p>"
        assert all(e.content != "<p>0</p>" for e in saved)
        assert len({e.id for e in saved}) == MAX_SAVED_EXPLANATIONS

    def test_save_rejects_empty(self, service):
        with pytest.raises(ValidationFailure):
            service.save("overview", "  ")

    def test_delete_and_clear(self, service):
        first = service.save("overview", "<p>a</p>")
        service.save("breakdown", "<p>b</p>")
        service.delete_saved(first.id)
        assert [e.type for e in service.list_saved()] == ["breakdown"]
        with pytest.raises(NotFoundError):
            service.delete_saved(first.id)
        service.clear_saved()
        assert service.list_saved() == []
