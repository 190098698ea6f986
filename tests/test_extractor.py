"""Tests for candidate memory extraction from conversation turns."""

import pytest

from memdock.extractor import (
    CANDIDATE_TYPES,
    CandidateExtractor,
    classify_line,
    is_generic_capability_noise,
    slugify,
    split_lines,
    title_from_content,
)


@pytest.fixture
def extractor():
    return CandidateExtractor(max_candidates=5)


class TestExtraction:

    def test_constraint(self, extractor):
        candidates = extractor.extract(
            assistant_message=(
                "Do not call Stripe in self-hosted mode, only run billing checks "
                "when NEXT_PUBLIC_SELF_HOSTED is false."
            )
        )
        assert len(candidates) == 1
        assert candidates[0].type == "constraints"
        assert candidates[0].priority == 78
        assert "signal:constraint" in candidates[0].tags

    def test_never_rule_is_constraint(self, extractor):
        candidates = extractor.extract(
            assistant_message="Never push directly to the main branch without a passing review."
        )
        assert [c.type for c in candidates] == ["constraints"]
        assert "signal:constraint" in candidates[0].tags

    def test_fix_with_file_path_is_lesson(self, extractor):
        candidates = extractor.extract(
            assistant_message=(
                "We fixed the OAuth callback bug in apps/web/app/api/auth/callback/route.ts "
                "by validating state before token exchange."
            )
        )
        assert len(candidates) == 1
        assert candidates[0].type == "lessons_learned"
        assert candidates[0].priority == 82
        assert candidates[0].key.startswith("agent/context/lessons_learned/hook_")

    def test_generic_capability_text_yields_nothing(self, extractor):
        assert extractor.extract(assistant_message="Use rg to search for patterns in files.") == []

    def test_decision(self, extractor):
        candidates = extractor.extract(
            user_message="We decided to use Postgres for the job queue table instead of Redis."
        )
        assert [c.type for c in candidates] == ["decisions"]

    def test_known_issue(self, extractor):
        candidates = extractor.extract(
            assistant_message="The e2e login spec is flaky on CI because the api-server boots slowly."
        )
        assert candidates[0].type == "known_issues"

    def test_user_idea(self, extractor):
        candidates = extractor.extract(
            user_message="It would be nice to show a memory capacity bar on the project settings page."
        )
        assert candidates[0].type == "user_ideas"

    def test_testing(self, extractor):
        candidates = extractor.extract(
            assistant_message="Run pytest with the tests/fixtures directory mounted so every test gets fresh data."
        )
        assert candidates[0].type == "testing"

    def test_outcome_is_workflow(self, extractor):
        candidates = extractor.extract(
            assistant_message="I refactored the sync module so pages are fetched through the client."
        )
        assert candidates[0].type == "workflow"
        assert candidates[0].priority == 66

    def test_output_is_capped(self, extractor):
        message = " ".join([
            "Do not call Stripe in self-hosted mode, only run billing checks when SELF_HOSTED is false.",
            "We fixed the OAuth callback bug in apps/web/app/api/auth/route.ts by validating state.",
            "We decided to use Postgres for the job queue table instead of Redis.",
            "The e2e login spec is flaky on CI because the api-server boots slowly.",
            "It would be nice to show a memory capacity bar on the project settings page.",
            "Never commit the .env file, the deploy script must read secrets from the vault.",
            "The migration failed because the users table was missing the org_id column.",
        ])
        candidates = extractor.extract(assistant_message=message)
        assert len(candidates) == 5

    @pytest.mark.parametrize("copies", [1, 10, 100])
    def test_never_more_than_five(self, extractor, copies):
        lines = [
            f"Line {i}: we fixed the regression in src/module_{i}.py by adding a guard."
            for i in range(copies)
        ]
        assert len(extractor.extract(assistant_message="\n".join(lines))) <= 5

    def test_strongest_first_and_stable(self, extractor):
        message = "\n".join([
            "We refactored the billing module into services/billing for clarity today.",
            "The deploy failed because the docker image was missing the api config.",
            "We updated the client config so that retries back off more gently now.",
        ])
        candidates = extractor.extract(assistant_message=message)
        assert candidates[0].type == "lessons_learned"
        # Equal scores keep input order
        assert [c.text for c in candidates[1:]] == [
            "We refactored the billing module into services/billing for clarity today.",
            "We updated the client config so that retries back off more gently now.",
        ]

    def test_confidence_range(self, extractor):
        candidates = extractor.extract(
            assistant_message=(
                "We fixed the OAuth callback bug in apps/web/app/api/auth/callback/route.ts "
                "by validating state before token exchange."
            )
        )
        for candidate in candidates:
            assert 0.0 < candidate.confidence <= 1.0
            assert candidate.confidence == min(1.0, candidate.score / 15)
            assert candidate.type in CANDIDATE_TYPES

    def test_duplicates_are_dropped(self, extractor):
        line = "We decided to use Postgres for the job queue table instead of Redis."
        candidates = extractor.extract(user_message=line, assistant_message=line.upper())
        assert len(candidates) == 1

    @pytest.mark.parametrize("kwargs", [
        {},
        {"user_message": ""},
        {"user_message": "   ", "assistant_message": None},
        {"assistant_message": "ok"},
    ])
    def test_empty_input(self, extractor, kwargs):
        assert extractor.extract(**kwargs) == []

    def test_short_question_dropped(self, extractor):
        assert extractor.extract(user_message="How do we deploy the api server to staging?") == []

    def test_force_store_keeps_generic_lines(self, extractor):
        text = "Use rg to search for patterns, the search failed with an error every single time."
        assert is_generic_capability_noise(text)
        assert extractor.extract(assistant_message=text) == []

        forced = extractor.extract(assistant_message=text, force_store=True)
        assert [c.type for c in forced] == ["lessons_learned"]


class TestHelpers:

    def test_split_lines_strips_markdown(self):
        text = "# Heading that is long enough to keep\n- `code` bullet that is long enough\nshort"
        assert split_lines(text) == [
            "Heading that is long enough to keep",
            "code bullet that is long enough",
        ]

    def test_split_lines_splits_sentences(self):
        text = "First sentence is long enough. Second sentence is also long enough!"
        assert split_lines(text) == [
            "First sentence is long enough.",
            "Second sentence is also long enough!",
        ]

    def test_split_lines_drops_very_long_lines(self):
        assert split_lines("x" * 321) == []

    def test_classify_line_needs_eight_words(self):
        assert classify_line("We fixed the bug in auth.ts") is None

    def test_slugify(self):
        assert slugify("Use Postgres, not MySQL!") == "use_postgres_not_mysql"
        assert slugify("!!!") == "note"

    def test_title_from_content(self):
        assert title_from_content("Short line.") == "Short line"
        long = "x" * 100
        assert title_from_content(long) == "x" * 69 + "..."
