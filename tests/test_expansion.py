"""Tests for LLM query expansion and the expanded lexical search."""

import asyncio
import json

import pytest

from recollect.core.types import (
    CompletionResult,
    ExpandedQuery,
    ExpansionType,
    LexicalHit,
    Memory,
    MemoryType,
)
from recollect.retrieval.expansion import (
    ExpandedSearch,
    QueryExpander,
    build_prompt,
    extract_json_object,
    merge_expanded_results,
    parse_expansion_response,
    should_expand,
)
from recollect.retrieval.lexical import LexicalIndex
from recollect.store.sqlite_store import SQLiteMemoryStore

ORIGINAL = ExpandedQuery(query="auth errors", expansion_type=ExpansionType.ORIGINAL)


def _reply(*expansions):
    return json.dumps(
        {
            "expansions": [
                {"query": q, "expansionType": t, "reasoning": f"because {q}"} for q, t in expansions
            ]
        }
    )


class FakeCompleter:
    def __init__(self, text="", success=True, error=None, exc=None, delay=0.0):
        self.text = text
        self.success = success
        self.error = error
        self.exc = exc
        self.delay = delay
        self.prompts = []

    async def complete(self, prompt, system_prompt=None, timeout=None):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return CompletionResult(text=self.text, success=self.success, error=self.error)


class TestShouldExpand:
    @pytest.mark.parametrize(
        "query",
        [
            "auth",
            "api AND rest",
            "login failures",
            "database connection pooling strategy",
        ],
    )
    def test_expands(self, query):
        assert should_expand(query) is True

    @pytest.mark.parametrize(
        "query",
        [
            "error handling OR exceptions in async code",
            'how to "retry budget" with jitter',
            "how do we handle retries for flaky network calls",
        ],
    )
    def test_does_not_expand(self, query):
        assert should_expand(query) is False


class TestParsing:
    def test_extract_json_from_surrounding_text(self):
        text = 'Sure! Here you go:\n{"expansions": []}\nHope this helps {not json}'
        assert extract_json_object(text) == {"expansions": []}
        assert extract_json_object("no json here") is None

    def test_original_first_then_deduplicated(self):
        text = "Result: " + _reply(
            ("authentication failures", "synonym"),
            ("Auth Errors", "rephrase"),
            ("AUTHENTICATION FAILURES", "related"),
            ("login 401", "technical"),
        )
        queries = parse_expansion_response(text, ORIGINAL)
        assert [q.query for q in queries] == ["auth errors", "authentication failures", "login 401"]
        assert queries[0].expansion_type == ExpansionType.ORIGINAL
        assert queries[1].expansion_type == ExpansionType.SYNONYM
        assert queries[2].expansion_type == ExpansionType.TECHNICAL
        assert queries[1].reasoning == "because authentication failures"

    def test_unknown_and_original_types_become_related(self):
        queries = parse_expansion_response(_reply(("a", "weird"), ("b", "original")), ORIGINAL)
        assert [q.expansion_type for q in queries[1:]] == [ExpansionType.RELATED, ExpansionType.RELATED]

    def test_malformed_reply_keeps_only_original(self):
        assert parse_expansion_response("not json", ORIGINAL) == [ORIGINAL]
        assert parse_expansion_response('{"other": 1}', ORIGINAL) == [ORIGINAL]
        assert parse_expansion_response('{"expansions": [1, {"query": ""}]}', ORIGINAL) == [ORIGINAL]

    def test_prompt_carries_query_count_and_hint(self):
        prompt = build_prompt("auth errors", 3, "technical")
        assert '"auth errors"' in prompt
        assert "exactly 3" in prompt
        assert "technical terms" in prompt
        assert "everyday language" in build_prompt("x", 3, "unknown-context")


class TestQueryExpander:
    def test_success(self):
        completer = FakeCompleter(text=_reply(("authentication failures", "synonym")))
        result = asyncio.run(QueryExpander(completer, count=2).expand("  auth errors "))
        assert result.success is True
        assert result.error is None
        assert [q.query for q in result.expanded_queries] == ["auth errors", "authentication failures"]
        assert "exactly 2" in completer.prompts[0]

    def test_empty_query(self):
        result = asyncio.run(QueryExpander(FakeCompleter()).expand("   "))
        assert result.success is False
        assert result.expanded_queries == []
        assert result.error

    @pytest.mark.parametrize(
        "completer",
        [
            None,
            FakeCompleter(success=False, error="HTTP 500"),
            FakeCompleter(exc=RuntimeError("connection refused")),
            FakeCompleter(text="I cannot help with that"),
        ],
    )
    def test_failures_leave_exactly_the_original(self, completer):
        result = asyncio.run(QueryExpander(completer).expand("auth errors"))
        assert [q.query for q in result.expanded_queries] == ["auth errors"]
        assert result.expanded_queries[0].expansion_type == ExpansionType.ORIGINAL

    def test_timeout(self):
        expander = QueryExpander(FakeCompleter(text=_reply(("x", "synonym")), delay=1.0), timeout=0.05)
        result = asyncio.run(expander.expand("auth errors"))
        assert result.success is False
        assert "timed out" in result.error
        assert [q.query for q in result.expanded_queries] == ["auth errors"]

    def test_expanded_queries_helper(self):
        expander = QueryExpander(FakeCompleter(text=_reply(("b", "synonym"))))
        assert asyncio.run(expander.expanded_queries("a")) == ["a", "b"]


def _hit(memory_id, score):
    memory = Memory(id=memory_id, content=memory_id, type=MemoryType.FACT)
    return LexicalHit(memory=memory, score=score, snippet=memory_id)


def test_merge_first_occurrence_wins_then_sorts():
    synonym = ExpandedQuery(query="syn", expansion_type=ExpansionType.SYNONYM)
    merged = merge_expanded_results(
        [
            (ORIGINAL, [_hit("a", 1.0)]),
            (synonym, [_hit("a", 9.0), _hit("b", 5.0)]),
        ],
        limit=10,
    )
    assert [h.memory.id for h in merged] == ["b", "a"]
    by_id = {h.memory.id: h for h in merged}
    assert by_id["a"].matched_query == "auth errors"
    assert by_id["a"].score == 1.0
    assert by_id["b"].matched_query == "syn"
    assert by_id["b"].expansion_type == ExpansionType.SYNONYM
    assert len(merge_expanded_results([(synonym, [_hit("a", 1), _hit("b", 2)])], limit=1)) == 1


class TestExpandedSearch:
    @pytest.fixture
    def store(self, tmp_path):
        s = SQLiteMemoryStore(tmp_path / "expanded.db")
        yield s
        s.close()

    def test_expansions_add_recall(self, store):
        direct = store.create("Auth errors spike after deploys", MemoryType.LESSON)
        via_synonym = store.create("Login failures come from expired tokens", MemoryType.LESSON)
        completer = FakeCompleter(text=_reply(("login failures", "synonym")))
        search = ExpandedSearch(LexicalIndex(store), QueryExpander(completer))

        result = asyncio.run(search.search("auth errors"))

        assert result.expansion_used is True
        assert result.warnings == []
        by_id = {h.memory.id: h for h in result.hits}
        assert set(by_id) == {direct.id, via_synonym.id}
        assert by_id[direct.id].matched_query == "auth errors"
        assert by_id[direct.id].expansion_type == ExpansionType.ORIGINAL
        assert by_id[via_synonym.id].matched_query == "login failures"

    def test_failed_expansion_still_searches_original(self, store):
        direct = store.create("Auth errors spike after deploys", MemoryType.LESSON)
        search = ExpandedSearch(LexicalIndex(store), QueryExpander(FakeCompleter(exc=RuntimeError("down"))))

        result = asyncio.run(search.search("auth errors"))

        assert result.expansion_used is False
        assert [h.memory.id for h in result.hits] == [direct.id]
        assert len(result.warnings) == 1

    def test_precise_queries_skip_expansion_unless_forced(self, store):
        store.create("Retries with jitter avoid thundering herds", MemoryType.PATTERN)
        completer = FakeCompleter(text=_reply(("backoff", "related")))
        search = ExpandedSearch(LexicalIndex(store), QueryExpander(completer))
        query = "how do we handle retries for flaky network calls"

        result = asyncio.run(search.search(query))
        assert result.expansion is None
        assert completer.prompts == []

        forced = asyncio.run(search.search(query, force_expansion=True))
        assert forced.expansion is not None
        assert len(completer.prompts) == 1

    def _deploy_notes(self, store, count=15):
        return [store.create(f"deploy note number {i}", MemoryType.CONTEXT) for i in range(count)]

    def test_failed_expansion_matches_plain_search_recall(self, store):
        self._deploy_notes(store)
        lexical = LexicalIndex(store)
        search = ExpandedSearch(lexical, QueryExpander(None), per_query_limit=10)

        plain = lexical.search("deploy", 20)
        result = asyncio.run(search.search("deploy", limit=20))

        assert len(plain) == 15
        assert result.expansion_used is False
        assert len(result.hits) == 15
        assert {h.memory.id for h in result.hits} == {h.memory.id for h in plain}

    def test_skipped_expansion_matches_plain_search_recall(self, store):
        self._deploy_notes(store)
        lexical = LexicalIndex(store)
        completer = FakeCompleter(text=_reply(("release", "synonym")))
        search = ExpandedSearch(lexical, QueryExpander(completer), per_query_limit=10)
        query = "deploy OR rollout OR release OR shipping"

        result = asyncio.run(search.search(query, limit=20))

        assert result.expansion is None
        assert completer.prompts == []
        assert len(result.hits) == len(lexical.search(query, 20)) == 15
