"""Sourcing knowledge retrieval for the judge prompt.

Articles are loaded from ``knowledge.yaml``. The challenge task plus the
submission is embedded and compared with each article of the skill's
knowledge category; articles under the similarity floor are dropped. When
nothing clears the floor the best-rated articles of the category are used
instead. Without a query embedding the judge gets no knowledge context.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import yaml

from catalog import Challenge
from engines.base import cosine_similarity
from engines.embeddings import EmbeddingClient

logger = logging.getLogger(__name__)

KNOWLEDGE_CATEGORIES: Tuple[str, ...] = ("boolean", "xray", "outreach", "linkedin", "diversity", "persona", "general")

_CATEGORY_FOR_SKILL: Dict[str, str] = {
    "boolean": "boolean",
    "xray": "xray",
    "multiplatform": "xray",
    "outreach": "outreach",
    "negotiation": "outreach",
    "linkedin": "linkedin",
    "diversity": "diversity",
    "persona": "persona",
}

EVALUATION_GUIDELINES: Tuple[str, ...] = (
    "Award higher scores for submissions that follow these best practices",
    "Deduct points for the common mistakes listed above",
    "Consider whether the submission shows understanding of the core principles",
)


class KnowledgeConfigError(ValueError):
    """Raised when ``knowledge.yaml`` contains invalid data."""


@dataclass(frozen=True)
class KnowledgeConfig:
    max_articles: int = 3
    min_similarity: float = 0.45
    fallback_similarity: float = 0.8
    max_summary_chars: int = 2000
    max_best_practices: int = 6
    max_mistakes: int = 5
    max_examples: int = 3


DEFAULT_KNOWLEDGE_CONFIG = KnowledgeConfig()


@dataclass(frozen=True)
class KnowledgeArticle:
    id: str
    title: str
    category: str
    summary: str
    content: str
    key_points: Tuple[str, ...] = ()
    good_examples: Tuple[str, ...] = ()
    common_mistakes: Tuple[str, ...] = ()
    quality: float = 0.5

    @property
    def embed_text(self) -> str:
        return f"{self.title}\n{self.summary}\n{self.content}"


@dataclass
class KnowledgeRetrieval:
    category: str
    articles: List[Tuple[KnowledgeArticle, float]] = field(default_factory=list)
    context: str = ""
    semantic: bool = False
    retrieval_ms: int = 0

    @property
    def article_ids(self) -> List[str]:
        return [a.id for a, _ in self.articles]

    @property
    def avg_similarity(self) -> float:
        sims = [s for _, s in self.articles if s > 0]
        return sum(sims) / len(sims) if sims else 0.0

    @property
    def max_similarity(self) -> float:
        return max((s for _, s in self.articles), default=0.0)


def knowledge_category(skill_category: str) -> str:
    return _CATEGORY_FOR_SKILL.get(skill_category, "general")


def _strings(raw, article_id: str, key: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise KnowledgeConfigError(f"Article {article_id}: '{key}' must be a list")
    return tuple(str(item).strip() for item in raw if str(item).strip())


def load_articles(path: Path) -> Dict[str, List[KnowledgeArticle]]:
    if not path.exists():
        raise FileNotFoundError(f"Knowledge file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    entries = raw.get("articles") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise KnowledgeConfigError("Knowledge file must contain an 'articles' list")

    by_category: Dict[str, List[KnowledgeArticle]] = {c: [] for c in KNOWLEDGE_CATEGORIES}
    seen = set()
    for idx, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise KnowledgeConfigError(f"Article #{idx} must be a mapping")
        article_id = str(entry.get("id", "")).strip()
        if not article_id:
            raise KnowledgeConfigError(f"Article #{idx} is missing a non-empty 'id'")
        if article_id in seen:
            raise KnowledgeConfigError(f"Duplicate article id: {article_id}")
        seen.add(article_id)
        category = str(entry.get("category", "general")).strip().lower()
        if category not in by_category:
            raise KnowledgeConfigError(f"Article {article_id}: unknown category '{category}'")
        by_category[category].append(
            KnowledgeArticle(
                id=article_id,
                title=str(entry.get("title", article_id)),
                category=category,
                summary=str(entry.get("summary", "")).strip(),
                content=str(entry.get("content", "")).strip(),
                key_points=_strings(entry.get("key_points"), article_id, "key_points"),
                good_examples=_strings(entry.get("good_examples"), article_id, "good_examples"),
                common_mistakes=_strings(entry.get("common_mistakes"), article_id, "common_mistakes"),
                quality=float(entry.get("quality", 0.5)),
            )
        )
    for articles in by_category.values():
        articles.sort(key=lambda a: a.quality, reverse=True)
    return by_category


def _unique(items: Sequence[str], limit: int) -> List[str]:
    out: List[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out[:limit]


def build_context(articles: Sequence[KnowledgeArticle], config: KnowledgeConfig = DEFAULT_KNOWLEDGE_CONFIG) -> str:
    """Prompt text: top article summary, then practices, mistakes, examples and guidelines."""
    if not articles:
        return ""
    practices: List[str] = []
    mistakes: List[str] = []
    examples: List[str] = []
    for article in articles:
        practices.extend(article.key_points[:3])
        mistakes.extend(article.common_mistakes[:3])
        examples.extend(article.good_examples[:2])

    top = articles[0]
    expertise = top.summary or top.content[:500]
    if len(expertise) > config.max_summary_chars:
        expertise = expertise[: config.max_summary_chars] + "..."

    sections = [f"## DOMAIN EXPERTISE\n{expertise}"]
    practices = _unique(practices, config.max_best_practices)
    if practices:
        sections.append("## BEST PRACTICES TO REWARD\n" + "\n".join(f"- {p}" for p in practices))
    mistakes = _unique(mistakes, config.max_mistakes)
    if mistakes:
        sections.append("## COMMON MISTAKES TO PENALIZE\n" + "\n".join(f"- {m}" for m in mistakes))
    examples = _unique(examples, config.max_examples)
    if examples:
        sections.append("## EXAMPLE PATTERNS\n" + "\n".join(f"{i}. {e}" for i, e in enumerate(examples, start=1)))
    sections.append("## EVALUATION GUIDELINES\n" + "\n".join(f"- {g}" for g in EVALUATION_GUIDELINES))
    return "\n\n".join(sections)


class KnowledgeBase:
    def __init__(
        self,
        embedder: Optional[EmbeddingClient] = None,
        path: str | Path | None = None,
        config: KnowledgeConfig = DEFAULT_KNOWLEDGE_CONFIG,
    ) -> None:
        base_path = Path(__file__).resolve().parents[1]
        self.path = Path(path) if path is not None else base_path / "knowledge.yaml"
        self.embedder = embedder
        self.config = config
        self._articles = load_articles(self.path)
        self._vectors: Dict[str, List[float]] = {}

    def by_category(self, category: str) -> List[KnowledgeArticle]:
        return list(self._articles.get(category, ()))

    def fallback(self, category: str) -> List[Tuple[KnowledgeArticle, float]]:
        cfg = self.config
        return [(a, cfg.fallback_similarity) for a in self.by_category(category)[: cfg.max_articles]]

    async def _article_vector(self, article: KnowledgeArticle) -> List[float]:
        vector = self._vectors.get(article.id)
        if vector is None:
            vector = await self.embedder.embed(article.embed_text)
            if vector:
                self._vectors[article.id] = vector
        return vector

    async def retrieve(self, challenge: Challenge, submission: str) -> KnowledgeRetrieval:
        start = time.perf_counter()
        cfg = self.config
        result = KnowledgeRetrieval(category=knowledge_category(challenge.skill_category))
        if self.embedder is None:
            return result
        query = await self.embedder.embed(f"{challenge.task}\n{submission}")
        if not query:
            return result

        scored: List[Tuple[KnowledgeArticle, float]] = []
        for article in self.by_category(result.category):
            vector = await self._article_vector(article)
            similarity = cosine_similarity(query, vector)
            if similarity >= cfg.min_similarity:
                scored.append((article, similarity))
        scored.sort(key=lambda pair: pair[1], reverse=True)

        if scored:
            result.articles = scored[: cfg.max_articles]
            result.semantic = True
        else:
            result.articles = self.fallback(result.category)
        result.context = build_context([a for a, _ in result.articles], cfg)
        result.retrieval_ms = int((time.perf_counter() - start) * 1000)
        if result.articles:
            logger.info(
                "Retrieved %d knowledge article(s) for %s (avg similarity %.2f, %dms)",
                len(result.articles),
                challenge.id,
                result.avg_similarity,
                result.retrieval_ms,
            )
        return result
