import textwrap

import pytest

from catalog import CatalogConfigError, ChallengeCatalog, get_catalog, set_catalog


def _write(tmp_path, body):
    path = tmp_path / "challenges.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_bundled_catalog_loads(catalog):
    challenge = catalog.get("boolean-java-berlin")

    assert challenge.difficulty == "easy"
    assert challenge.skill_category == "boolean"
    assert challenge.rubric_total == 100
    assert challenge.validation.require_location is True
    assert challenge.validation.keywords == ("java", "spring")
    assert {c.id for c in catalog.by_category("boolean")} == {"boolean-java-berlin", "boolean-data-engineer"}
    assert catalog.get("persona-data-scientist").curve_mode == "bell"


def test_defaults_are_filled_in(tmp_path):
    path = _write(
        tmp_path,
        """
        challenges:
          - id: Plain-One
            task: Describe your sourcing plan
            skill_category: Screening
        """,
    )
    challenge = ChallengeCatalog(path).get("Plain-One")

    assert challenge.title == "Plain-One"
    assert challenge.difficulty == "medium"
    assert challenge.skill_category == "screening"
    assert challenge.validation.type == "screening"
    assert challenge.rubric == ()
    assert challenge.active is True


@pytest.mark.parametrize(
    "body, message",
    [
        ("challenges:\n  - id: ''\n", "missing a non-empty 'id'"),
        ("challenges:\n  - id: a\n  - id: a\n", "Duplicate challenge id"),
        ("challenges:\n  - id: a\n    difficulty: brutal\n", "unknown difficulty"),
        ("challenges:\n  - id: a\n    curve_mode: cubic\n", "unknown curve_mode"),
        ("challenges:\n  - id: a\n    rubric: lots\n", "'rubric' must be a list"),
        ("challenges:\n  - id: a\n    rubric:\n      - max_points: 5\n", "rubric entries need a 'name'"),
        ("challenges: 7\n", "'challenges' list"),
    ],
)
def test_invalid_catalogs_are_rejected(tmp_path, body, message):
    path = _write(tmp_path, body)
    with pytest.raises(CatalogConfigError) as exc:
        ChallengeCatalog(path)
    assert message in str(exc.value)


def test_missing_catalog_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ChallengeCatalog(tmp_path / "nope.yaml")


def test_catalog_path_from_environment(tmp_path, monkeypatch):
    path = _write(tmp_path, "challenges:\n  - id: only-one\n")
    monkeypatch.setenv("CATALOG_PATH", str(path))
    set_catalog(None)
    try:
        assert [c.id for c in get_catalog().all()] == ["only-one"]
    finally:
        set_catalog(None)
