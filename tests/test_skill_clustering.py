from catalog import Challenge
from engines.skill_clustering import (
    SkillClusterer,
    content_tokens,
    relationship,
    render_cluster_block,
    similarity,
)

TASK = "Build a Boolean search string for senior Java developers in Berlin"


def _challenge(id, difficulty="medium", skill="boolean", task=TASK, active=True):
    return Challenge(id=id, title=id.replace("-", " ").title(), skill_category=skill, difficulty=difficulty, task=task, active=active)


CURRENT = _challenge("java-medium")
EASIER = _challenge("java-easy", "easy")
HARDER = _challenge("java-hard", "hard")
TWIN = _challenge("java-medium-twin")
OUTREACH = _challenge("cold-email", "medium", "outreach", "Write a short cold email to a passive designer")
CATALOG = [CURRENT, EASIER, HARDER, TWIN, OUTREACH]


def test_content_tokens_drop_stopwords():
    tokens = content_tokens(CURRENT)
    assert "boolean" in tokens and "berlin" in tokens
    assert "for" not in tokens and "a" not in tokens


def test_similarity_weights():
    assert similarity(CURRENT, TWIN) > 0.9
    assert similarity(CURRENT, OUTREACH) < 0.5
    assert similarity(CURRENT, EASIER) < similarity(CURRENT, TWIN)


def test_relationships():
    assert relationship(CURRENT, EASIER) == "prerequisite"
    assert relationship(CURRENT, HARDER) == "advanced"
    assert relationship(CURRENT, TWIN) == "variation"
    assert relationship(CURRENT, _challenge("other", task="Screen applicants by phone")) == "parallel"
    assert relationship(CURRENT, OUTREACH) == "related"


def test_high_score_suggests_harder_work_first():
    analysis = SkillClusterer().analyze(CURRENT, CATALOG, completed=set(), score=88)

    assert [r.challenge.id for r in analysis.suggestions] == ["java-hard", "java-medium-twin", "java-easy"]
    assert analysis.cluster_size == 4
    assert analysis.completed_in_cluster == 1


def test_low_score_suggests_prerequisites_and_skips_completed():
    analysis = SkillClusterer().analyze(CURRENT, CATALOG, completed={"java-medium-twin"}, score=40)

    assert [r.challenge.id for r in analysis.suggestions] == ["java-easy", "java-hard"]
    assert analysis.completed_in_cluster == 2


def test_inactive_challenges_are_ignored():
    retired = _challenge("java-retired", active=False)
    analysis = SkillClusterer().analyze(CURRENT, [retired], completed=set(), score=70)
    assert analysis.related == []
    assert render_cluster_block(analysis, "boolean") == ""


def test_render_cluster_block():
    analysis = SkillClusterer().analyze(CURRENT, CATALOG, completed=set(), score=88)
    html = render_cluster_block(analysis, "boolean")

    assert "Try Next:" in html
    assert "Java Hard (hard, advanced)" in html
    assert "You've completed 1 of 4 boolean challenges." in html
