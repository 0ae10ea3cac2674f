"""Tests for search orchestration: routing, filters, merging and fallbacks."""

from datetime import datetime

import pytest
import pytest_asyncio

from notesearch.engine.cancellation import CancellationToken
from notesearch.engine.errors import InvalidQueryError, SemanticSearchAborted
from notesearch.engine.models import (
    DateRange, MatchInfo, MatchType, NoteMetadata, SearchFilters, SmartSearchResult,
)
from notesearch.engine.orchestrator import (
    HYBRID_FALLBACK_NOTICE, SEMANTIC_FALLBACK_NOTICE, ProgressReporter, SearchPhase, SearchRun,
    detect_template, merge_results, note_date,
)
from notesearch.engine.service import SearchService


def make_result(path, score, match_type, match_type_name):
    now = datetime(2025, 1, 1)
    return SmartSearchResult(
        file_path=path,
        score=score,
        match_type=match_type,
        matches=[MatchInfo(type=match_type_name, text=path, confidence=score)],
        preview="",
        metadata=NoteMetadata(created=now, modified=now),
    )


def names(results):
    return [r.file_name for r in results]


@pytest_asyncio.fixture
async def make_service(config):
    services = []

    async def build(provider):
        service = SearchService(config, provider=provider)
        await service.initialize()
        services.append(service)
        return service

    yield build
    for service in services:
        await service.close()


class TestMergeResults:
    """Test hybrid score combination."""

    def test_weighted_merge(self):
        keyword = [make_result("/n/a.md", 0.6, MatchType.KEYWORD, "content")]
        semantic = [make_result("/n/a.md", 0.9, MatchType.SEMANTIC, "semantic")]

        merged = merge_results(keyword, semantic)

        assert len(merged) == 1
        assert merged[0].score == pytest.approx(0.78)
        assert merged[0].match_type is MatchType.BOTH
        assert [m.type for m in merged[0].matches] == ["content", "semantic"]

    def test_single_source_keeps_score(self):
        keyword = [
            make_result("/n/a.md", 0.6, MatchType.KEYWORD, "content"),
            make_result("/n/b.md", 0.5, MatchType.KEYWORD, "content"),
        ]
        semantic = [make_result("/n/c.md", 0.7, MatchType.SEMANTIC, "semantic")]

        merged = merge_results(keyword, semantic)

        assert [r.file_path for r in merged] == ["/n/c.md", "/n/a.md", "/n/b.md"]
        assert [r.match_type for r in merged] == [MatchType.SEMANTIC, MatchType.KEYWORD, MatchType.KEYWORD]

    def test_ties_are_stable(self):
        keyword = [
            make_result("/n/b.md", 0.5, MatchType.KEYWORD, "content"),
            make_result("/n/a.md", 0.5, MatchType.KEYWORD, "content"),
        ]
        assert [r.file_path for r in merge_results(keyword, [])] == ["/n/a.md", "/n/b.md"]


class TestHelpers:

    @pytest.mark.parametrize("content,template,expected", [
        ("Problem: x\nSolution: y", "problem-solution", True),
        ("Problem: x only", "problem-solution", False),
        ("Attendees: Ana", "meeting", True),
        ("Weekly meeting, see agenda", "meeting", True),
        ("Research plan\nFindings: none", "research", True),
        ("2025-03-01 buy milk", "quick", True),
        ("buy milk", "quick", False),
        ("Retro: what went well", "retro", True),
    ])
    def test_detect_template(self, content, template, expected):
        assert detect_template(content, template) is expected

    def test_note_date(self):
        assert note_date("/n/2025-01-10 standup.md").isoformat() == "2025-01-10"
        assert note_date("/n/ideas.txt") is None
        assert note_date("/n/2025-13-45 bad.md") is None

    def test_progress_never_goes_backwards(self):
        seen = []
        reporter = ProgressReporter(lambda message, percent: seen.append(percent))
        reporter.report("a", 40)
        reporter.report("b", 30)
        reporter.report("c")
        reporter.report("d", 100)
        assert seen == [40, 40, None, 100]


class TestApplyFilters:
    """Test compound candidate filtering."""

    @pytest_asyncio.fixture
    async def orchestrator(self, make_service, make_provider):
        service = await make_service(make_provider())
        return service.orchestrator

    @pytest_asyncio.fixture
    async def files(self, orchestrator):
        return await orchestrator.corpus.list_files()

    @pytest.mark.asyncio
    async def test_templates_folder_excluded(self, files):
        assert len(files) == 5
        assert all(".templates" not in f for f in files)

    @pytest.mark.asyncio
    async def test_date_range_keeps_undated_notes(self, orchestrator, files):
        filters = SearchFilters(date_range=DateRange(start=datetime(2025, 1, 1), end=datetime(2025, 1, 31)))
        kept = names(await orchestrator.apply_filters(files, filters))
        assert "2025-01-10 standup.md" in kept
        assert "2025-02-20 incident.txt" not in kept
        assert "ideas.txt" in kept

    @pytest.mark.asyncio
    async def test_date_end_is_inclusive(self, orchestrator, files):
        filters = SearchFilters(date_range=DateRange(end=datetime(2025, 2, 20, 9, 0)))
        assert "2025-02-20 incident.txt" in names(await orchestrator.apply_filters(files, filters))

    @pytest.mark.asyncio
    async def test_format(self, orchestrator, files):
        kept = names(await orchestrator.apply_filters(files, SearchFilters(file_format="txt")))
        assert sorted(kept) == ["2025-02-20 incident.txt", "ideas.txt"]
        assert len(await orchestrator.apply_filters(files, SearchFilters(file_format="both"))) == 5

    @pytest.mark.asyncio
    async def test_tags_require_all(self, orchestrator, files):
        work = names(await orchestrator.apply_filters(files, SearchFilters(tags=("work",))))
        assert sorted(work) == ["2025-01-10 standup.md", "2025-02-20 incident.txt"]

        both = names(await orchestrator.apply_filters(files, SearchFilters(tags=("work", "bug"))))
        assert both == ["2025-02-20 incident.txt"]

        front_matter = names(await orchestrator.apply_filters(files, SearchFilters(tags=("research",))))
        assert front_matter == ["research-notes.md"]

    @pytest.mark.asyncio
    async def test_templates(self, orchestrator, files):
        meeting = names(await orchestrator.apply_filters(files, SearchFilters(templates=("meeting",))))
        assert meeting == ["2025-01-10 standup.md"]

        fixes = names(await orchestrator.apply_filters(files, SearchFilters(templates=("problem-solution",))))
        assert fixes == ["2025-02-20 incident.txt"]

    @pytest.mark.asyncio
    async def test_cancelled_template_scan_stops(self, orchestrator, files):
        token = CancellationToken()
        token.cancel()
        filters = SearchFilters(templates=("meeting",))
        assert await orchestrator.apply_filters(files, filters, token) == []


class TestSearchRouting:
    """Test end-to-end search through the service."""

    @pytest.mark.asyncio
    async def test_empty_query(self, make_service, provider):
        service = await make_service(provider)
        assert await service.search("") == []
        assert await service.search("   ") == []
        assert provider.acquire_calls == 0

    @pytest.mark.asyncio
    async def test_no_candidates_means_no_model_calls(self, make_service, provider):
        service = await make_service(provider)
        results = await service.search("what about #nonexistent?")

        assert results == []
        assert provider.acquire_calls == 0
        assert provider.prompts == []

    @pytest.mark.asyncio
    async def test_keyword_query(self, make_service, provider):
        service = await make_service(provider)
        results = await service.search("database")

        assert names(results)[0] == "database-migration.md"
        assert all(r.match_type is MatchType.KEYWORD for r in results)
        assert provider.acquire_calls == 0

    @pytest.mark.asyncio
    async def test_keyword_query_applies_min_score(self, make_service, provider, config):
        config.search.min_relevance_score = 0.5
        service = await make_service(provider)
        results = await service.search("database")
        assert names(results) == ["database-migration.md"]

    @pytest.mark.asyncio
    async def test_keyword_query_with_tag_filter(self, make_service, provider):
        service = await make_service(provider)
        results = await service.search("#work")

        assert sorted(names(results)) == ["2025-01-10 standup.md", "2025-02-20 incident.txt"]

    @pytest.mark.asyncio
    async def test_hashtag_matches_front_matter_tag(self, make_service, provider):
        service = await make_service(provider)

        assert names(await service.search("#research")) == ["research-notes.md"]
        assert names(await service.search("tag:research")) == ["research-notes.md"]

    @pytest.mark.asyncio
    async def test_hashtag_with_keywords(self, make_service, provider):
        service = await make_service(provider)
        results = await service.search("#research findings")

        assert names(results) == ["research-notes.md"]
        assert results[0].matches[0].text.startswith("Findings")

    @pytest.mark.asyncio
    async def test_invalid_regex_raises(self, make_service, provider):
        service = await make_service(provider)
        messages = []

        with pytest.raises(InvalidQueryError):
            await service.search(
                "regex: (unclosed",
                progress_callback=lambda message, percent: messages.append(message),
            )
        assert messages[-1] == "Search failed"

    @pytest.mark.asyncio
    async def test_model_abort_reports_failure(self, make_service, make_provider):
        provider = make_provider(default_score=RuntimeError("rate limited"))
        service = await make_service(provider)
        messages = []

        with pytest.raises(SemanticSearchAborted):
            await service.search(
                "what did we decide about caching?",
                progress_callback=lambda message, percent: messages.append(message),
            )
        assert messages[-1] == "Search failed"
        assert "Search complete" not in messages

    @pytest.mark.asyncio
    async def test_semantic_query(self, make_service, make_provider):
        provider = make_provider()
        service = await make_service(provider)
        notices = []

        results = await service.search("what did we decide about caching?", notify=notices.append)

        assert notices == []
        assert len(results) == 5
        assert all(r.match_type is MatchType.SEMANTIC for r in results)
        assert "caching" in provider.score_prompts[0]
        assert "what did we decide about caching?" in provider.score_prompts[0]

    @pytest.mark.asyncio
    async def test_semantic_scores_at_most_max_candidates(self, make_service, make_provider, config):
        config.search.max_candidates = 2
        provider = make_provider()
        service = await make_service(provider)

        results = await service.search("what did we decide about caching?")
        assert len(results) == 2
        assert len(provider.score_prompts) == 2

    @pytest.mark.asyncio
    async def test_thorough_strategy_scores_every_candidate(self, make_service, make_provider, config):
        config.search.max_candidates = 2
        config.search.search_strategy = "thorough"
        provider = make_provider()
        service = await make_service(provider)

        results = await service.search("what did we decide about caching?")
        assert len(results) == 5
        assert len(provider.score_prompts) == 5

    @pytest.mark.asyncio
    async def test_previews_dropped_without_context(self, make_service, provider, config):
        config.search.include_context = False
        service = await make_service(provider)

        results = await service.search("database")
        assert results
        assert all(r.preview == "" for r in results)
        assert results[0].matches[0].line_number is not None

    @pytest.mark.asyncio
    async def test_semantic_falls_back_to_keywords(self, make_service, make_provider):
        provider = make_provider(available=False)
        service = await make_service(provider)
        notices = []

        results = await service.search("notes about the database migration", notify=notices.append)

        assert notices == [SEMANTIC_FALLBACK_NOTICE]
        assert results
        assert all(r.match_type is MatchType.KEYWORD for r in results)
        assert provider.prompts == []

    @pytest.mark.asyncio
    async def test_semantic_abort_propagates(self, make_service, make_provider):
        provider = make_provider(default_score=RuntimeError("rate limited"))
        service = await make_service(provider)

        with pytest.raises(SemanticSearchAborted) as exc_info:
            await service.search("what did we decide about caching?")
        assert "rate limited" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_semantic_cancellation_returns_partial_results(self, make_service, make_provider):
        token = CancellationToken()

        def on_score(count):
            if count == 3:
                token.cancel()

        provider = make_provider(on_score=on_score)
        service = await make_service(provider)
        files = await service.corpus.list_files()
        messages = []

        results = await service.search(
            "what did we decide about caching?",
            progress_callback=lambda message, percent: messages.append(message),
            cancellation=token,
        )

        assert {r.file_path for r in results} == set(files[:2])
        assert messages[-1] == "Search cancelled"

    @pytest.mark.asyncio
    async def test_hybrid_query_merges(self, make_service, make_provider):
        provider = make_provider(default_score="0.9")
        service = await make_service(provider)
        keyword_only = await service.keyword_engine.search(
            "database migration timeline plan", await service.corpus.list_files(), max_results=50
        )

        results = await service.search("database migration timeline plan")

        assert results
        expected = {r.file_path: 0.4 * r.score + 0.6 * 0.9 for r in keyword_only}
        for r in results:
            assert r.match_type is MatchType.BOTH
            assert r.score == pytest.approx(expected[r.file_path])
        assert len(provider.score_prompts) == len(keyword_only)

    @pytest.mark.asyncio
    async def test_hybrid_fallback_notice(self, make_service, make_provider):
        provider = make_provider(available=False)
        service = await make_service(provider)
        notices = []

        results = await service.search("database migration timeline plan", notify=notices.append)

        assert notices == [HYBRID_FALLBACK_NOTICE]
        assert results
        assert all(r.match_type is MatchType.KEYWORD for r in results)

    @pytest.mark.asyncio
    async def test_hybrid_progress_is_monotonic(self, make_service, make_provider):
        service = await make_service(make_provider())
        percents = []

        def on_progress(message, percent):
            if percent is not None:
                percents.append(percent)

        await service.search("database migration timeline plan", progress_callback=on_progress)

        assert percents == sorted(percents)
        assert percents[-1] == 100

    @pytest.mark.asyncio
    async def test_results_are_bounded(self, make_service, make_provider, config):
        config.search.max_results = 1
        service = await make_service(make_provider())
        results = await service.search("database migration timeline plan")
        assert len(results) == 1


class TestSearchRun:

    def test_phase_history(self):
        run = SearchRun(query=None, progress=ProgressReporter(), cancellation=CancellationToken())
        run.enter(SearchPhase.ANALYZING)
        run.enter(SearchPhase.DONE)
        assert run.history == [SearchPhase.ANALYZING, SearchPhase.DONE]
        assert run.phase is SearchPhase.DONE
        assert not run.cancelled
