import asyncio
import textwrap

import pytest

from catalog import Challenge
from engines.knowledge_base import (
    KnowledgeBase,
    KnowledgeConfigError,
    build_context,
    knowledge_category,
    load_articles,
)

ARTICLES = textwrap.dedent(
    """
    articles:
      - id: grouping
        title: Grouping alternatives
        category: boolean
        quality: 0.9
        summary: Put every group of synonyms in parentheses.
        content: Parentheses keep OR alternatives together.
        key_points: [Group OR alternatives, Quote exact titles]
        good_examples: ['(java OR kotlin) AND berlin']
        common_mistakes: [Ungrouped OR terms]
      - id: proximity
        title: Proximity operators
        category: boolean
        quality: 0.8
        summary: NEAR keeps two terms within a few words.
        content: Use NEAR/3 between a title and a seniority keyword.
        key_points: [NEAR/n limits distance, Group OR alternatives]
        good_examples: ['"engineer" NEAR/3 senior']
        common_mistakes: [NEAR used on single words only]
      - id: ethics
        title: Ethical sourcing
        category: general
        quality: 0.7
        summary: Be transparent with candidates.
        content: Explain who you are and why you reach out.
    """
)


class KeywordEmbedder:
    """Two-axis vectors: one for NEAR, one for parentheses."""

    def __init__(self, available=True):
        self.available = available
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if not self.available:
            return []
        lowered = text.lower()
        return [1.0 if "near" in lowered else 0.0, 1.0 if "parenthes" in lowered else 0.0, 0.01]


@pytest.fixture
def articles_path(tmp_path):
    path = tmp_path / "knowledge.yaml"
    path.write_text(ARTICLES, encoding="utf-8")
    return path


def _challenge(skill="boolean", task="Write a search string for backend engineers."):
    return Challenge(id="c1", title="Backend search", skill_category=skill, difficulty="medium", task=task)


def _retrieve(kb, challenge, submission):
    return asyncio.run(kb.retrieve(challenge, submission))


@pytest.mark.parametrize(
    "skill, category",
    [("boolean", "boolean"), ("multiplatform", "xray"), ("negotiation", "outreach"), ("ats", "general"), ("multi", "general")],
)
def test_knowledge_category(skill, category):
    assert knowledge_category(skill) == category


def test_semantic_match_keeps_articles_over_the_floor(articles_path):
    kb = KnowledgeBase(KeywordEmbedder(), articles_path)
    result = _retrieve(kb, _challenge(), '"engineer" NEAR/3 senior')

    assert result.semantic is True
    assert result.article_ids == ["proximity"]
    assert result.max_similarity == pytest.approx(1.0, abs=1e-3)
    assert result.context.startswith("## DOMAIN EXPERTISE\nNEAR keeps two terms")


def test_no_semantic_match_falls_back_to_best_rated(articles_path):
    kb = KnowledgeBase(KeywordEmbedder(), articles_path)
    result = _retrieve(kb, _challenge(), "java AND berlin")

    assert result.semantic is False
    assert result.article_ids == ["grouping", "proximity"]
    assert {s for _, s in result.articles} == {0.8}
    assert result.context.startswith("## DOMAIN EXPERTISE\nPut every group")


def test_missing_query_embedding_gives_no_context(articles_path):
    kb = KnowledgeBase(KeywordEmbedder(available=False), articles_path)
    result = _retrieve(kb, _challenge(), '"engineer" NEAR/3 senior')

    assert result.articles == []
    assert result.context == ""


def test_article_vectors_are_cached(articles_path):
    embedder = KeywordEmbedder()
    kb = KnowledgeBase(embedder, articles_path)
    _retrieve(kb, _challenge(), "first answer")
    _retrieve(kb, _challenge(), "second answer")

    # two queries plus one embedding per boolean article
    assert len(embedder.calls) == 4


def test_unmapped_skill_uses_general_articles(articles_path):
    kb = KnowledgeBase(KeywordEmbedder(), articles_path)
    result = _retrieve(kb, _challenge(skill="screening"), "Tell me about your last role.")

    assert result.category == "general"
    assert result.article_ids == ["ethics"]


def test_build_context_dedupes_and_orders_sections(articles_path):
    articles = load_articles(articles_path)["boolean"]
    context = build_context(articles)

    assert context.count("Group OR alternatives") == 1
    assert context.index("## BEST PRACTICES TO REWARD") < context.index("## COMMON MISTAKES TO PENALIZE")
    assert context.index("## COMMON MISTAKES TO PENALIZE") < context.index("## EXAMPLE PATTERNS")
    assert "1. (java OR kotlin) AND berlin" in context
    assert context.rstrip().endswith("Consider whether the submission shows understanding of the core principles")
    assert build_context([]) == ""


@pytest.mark.parametrize(
    "body, message",
    [
        ("articles: nope", "'articles' list"),
        ("articles:\n  - title: No id\n", "non-empty 'id'"),
        ("articles:\n  - id: a\n  - id: a\n", "Duplicate article id"),
        ("articles:\n  - id: a\n    category: cooking\n", "unknown category"),
        ("articles:\n  - id: a\n    key_points: just one\n", "must be a list"),
    ],
)
def test_invalid_knowledge_file(tmp_path, body, message):
    path = tmp_path / "knowledge.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(KnowledgeConfigError, match=message):
        load_articles(path)


def test_bundled_knowledge_covers_every_category():
    kb = KnowledgeBase()
    for category in ("boolean", "xray", "outreach", "diversity", "persona", "general"):
        assert kb.by_category(category), category
