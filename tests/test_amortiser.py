import pytest

from studygraph.graph.amortiser import Amortiser, score_read_match, score_search_match
from studygraph.graph.models import Chunk, Concept, EntityType, Provenance, ResourceType

from .conftest import SESSION, add_resource


def concept(db, name, **kw):
    with db.transaction() as tx:
        c, _ = tx.upsert_concept(session_id=SESSION, name=name, **kw)
    return c


def amortised(db):
    with db.read() as tx:
        return [r for r in tx.list_relationships(SESSION) if r.created_by is Provenance.AMORTISED]


def test_search_scores():
    heat = Concept(id="1", session_id=SESSION, name="Heat Equation", aliases=["Diffusion PDE"],
                   description="Parabolic equation for heat flow")
    assert score_search_match(heat, "heat  equation", ["heat", "equation"]) == 0.7
    assert score_search_match(heat, "equation heat", ["equation", "heat"]) == 0.6
    assert score_search_match(heat, "diffusion", ["diffusion"]) == 0.5
    assert score_search_match(heat, "parabolic", ["parabolic"]) == 0.4
    assert score_search_match(heat, "wave", ["wave"]) is None
    assert score_search_match(heat, "a", []) is None


def test_read_scores():
    heat = Concept(id="1", session_id=SESSION, name="Heat Equation", aliases=["diffusion equation"])
    both = Chunk(id="c", resource_id="r", index=0, title="The Heat Equation", content="the heat equation is")
    title = Chunk(id="c", resource_id="r", index=0, title="Heat equation", content="nothing here")
    body = Chunk(id="c", resource_id="r", index=0, title="Intro", content="solve the heat equation")
    alias = Chunk(id="c", resource_id="r", index=0, title="Intro", content="a diffusion equation")
    partial = Chunk(id="c", resource_id="r", index=0, title="Preheat equations", content="")
    assert score_read_match(heat, both) == 0.7
    assert score_read_match(heat, title) == 0.6
    assert score_read_match(heat, body) == 0.5
    assert score_read_match(heat, alias) == 0.45
    assert score_read_match(heat, partial) is None


def test_search_amortisation_is_capped(db):
    _, chunks = add_resource(db, "Notes", ResourceType.LECTURE_NOTES, [(f"S{i}", "text") for i in range(4)])
    for i in range(4):
        concept(db, f"Heat Equation Variant {i}")

    created = Amortiser(db, max_new=10).amortise_search(SESSION, "heat equation", [c.id for c in chunks])

    assert created == 10
    rels = amortised(db)
    assert len(rels) == 10
    assert all(r.source_type is EntityType.CHUNK and r.relationship == "related_to" for r in rels)
    assert all(r.confidence == pytest.approx(0.6) for r in rels)


def test_search_amortisation_never_duplicates(db):
    _, chunks = add_resource(db, "Notes", ResourceType.LECTURE_NOTES, [("S1", "text"), ("S2", "text")])
    concept(db, "Heat Equation")
    amortiser = Amortiser(db)

    assert amortiser.amortise_search(SESSION, "Heat Equation", [c.id for c in chunks]) == 2
    assert amortiser.amortise_search(SESSION, "heat equation", [c.id for c in chunks]) == 0
    assert amortiser.amortise_search(SESSION, "heat equation", []) == 0
    assert all(r.confidence == pytest.approx(0.7) for r in amortised(db))


def test_read_amortisation(db):
    _, chunks = add_resource(
        db,
        "Notes",
        ResourceType.LECTURE_NOTES,
        [("Fourier Series", "Expand in a Fourier series, then solve the heat equation.")],
    )
    concept(db, "Fourier Series")
    concept(db, "Heat Equation")
    concept(db, "Wave Equation")
    amortiser = Amortiser(db)

    assert amortiser.amortise_read(SESSION, chunks[0].id) == 2
    assert amortiser.amortise_read(SESSION, chunks[0].id) == 0
    scores = {r.target_label: r.confidence for r in amortised(db)}
    assert scores == {"Fourier Series": pytest.approx(0.7), "Heat Equation": pytest.approx(0.5)}


def test_failures_are_swallowed(db, monkeypatch):
    amortiser = Amortiser(db)

    def boom():
        raise RuntimeError("database is gone")

    monkeypatch.setattr(db, "read", boom)
    assert amortiser.amortise_read(SESSION, "chunk") == 0
    assert amortiser.amortise_search(SESSION, "heat", ["chunk"]) == 0
