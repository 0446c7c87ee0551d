import pytest

from studygraph.agents.schemas import CrossLinkResult, ExtractionResult, MetadataResult
from studygraph.graph.models import EntityType, Provenance
from studygraph.graph.relationships import RelationshipStore

from .conftest import SESSION


def extraction(**fields):
    return ExtractionResult.model_validate(fields)


HEAT = {"name": "Heat Equation", "description": "u_t = k u_xx"}
FOURIER = {"name": "Fourier Series", "aliases": "Fourier Expansion, Fourier Sums"}
SEPARATION = {"name": "separation of variables"}


def _keys(db):
    with db.read() as tx:
        return sorted(
            (r.source_type.value, r.source_id, r.target_id, r.relationship, r.confidence)
            for r in tx.list_relationships(SESSION)
        )


def test_heat_equation_scenario(db, lecture):
    resource, chunks = lecture
    result = extraction(
        concepts=[HEAT],
        file_concept_links=[
            {"conceptName": "heat equation", "relationship": "introduces", "chunkTitle": "1.1 Overview"}
        ],
    )
    stats = RelationshipStore(db).apply_extraction(resource.id, result)

    with db.read() as tx:
        concepts = tx.list_concepts(SESSION)
        rels = tx.list_relationships(SESSION)
        stored = tx.get_resource(resource.id)
    assert [c.name for c in concepts] == ["Heat Equation"]
    assert len(rels) == 1
    rel = rels[0]
    assert rel.source_type is EntityType.CHUNK
    assert rel.source_id == chunks[0].id
    assert rel.relationship == "introduces"
    assert rel.target_id == concepts[0].id
    assert rel.created_by is Provenance.SYSTEM
    assert rel.created_from_resource_id == resource.id
    assert stats.concepts_created == 1
    assert stats.relationships_created == 1
    assert stored.is_graph_indexed


def test_unmatched_section_falls_back_to_resource(db, lecture):
    resource, _ = lecture
    result = extraction(
        concepts=[HEAT],
        file_concept_links=[
            {"conceptName": "Heat Equation", "relationship": "covers", "chunkTitle": "Linear Algebra"}
        ],
    )
    RelationshipStore(db).apply_extraction(resource.id, result)
    with db.read() as tx:
        (rel,) = tx.list_relationships(SESSION)
    assert rel.source_type is EntityType.RESOURCE
    assert rel.source_id == resource.id


def test_reindex_is_idempotent(db, lecture):
    resource, _ = lecture
    result = extraction(
        concepts=[HEAT, FOURIER, SEPARATION],
        file_concept_links=[
            {"conceptName": "Heat Equation", "relationship": "introduces", "chunkTitle": "overview"},
            {"conceptName": "Fourier Series", "relationship": "applies", "chunkTitle": "1.3 Fourier Series"},
            # Same key as the first link, lower confidence: collapsed in the batch.
            {
                "conceptName": "heat equation",
                "relationship": "introduces",
                "chunkTitle": "1.1 overview",
                "confidence": 0.5,
            },
        ],
        concept_concept_links=[
            {"sourceConcept": "Fourier Series", "targetConcept": "Heat Equation", "relationship": "prerequisite"},
            {"sourceConcept": "Heat Equation", "targetConcept": "Heat Equation", "relationship": "related_to"},
        ],
    )
    store = RelationshipStore(db)
    store.apply_extraction(resource.id, result)
    first = _keys(db)
    store.apply_extraction(resource.id, result)
    assert _keys(db) == first
    assert len(first) == 3

    with db.read() as tx:
        names = sorted(c.name for c in tx.list_concepts(SESSION))
        fourier = tx.get_concept_by_name(SESSION, "Fourier Series")
    assert names == ["Fourier Series", "Heat Equation", "Separation Of Variables"]
    assert fourier.aliases == ["Fourier Expansion", "Fourier Sums"]


def test_reindex_drops_stale_edges(db, lecture):
    resource, _ = lecture
    store = RelationshipStore(db)
    store.apply_extraction(
        resource.id,
        extraction(
            concepts=[HEAT],
            file_concept_links=[{"conceptName": "Heat Equation", "relationship": "covers"}],
        ),
    )
    stats = store.apply_extraction(resource.id, extraction(concepts=[HEAT]))
    assert stats.relationships_removed == 1
    assert _keys(db) == []


def test_reindex_keeps_other_resources_edges(db, lecture, past_paper):
    lec, _ = lecture
    paper, paper_chunks = past_paper
    store = RelationshipStore(db)
    store.apply_extraction(
        lec.id,
        extraction(concepts=[HEAT], file_concept_links=[{"conceptName": "Heat Equation", "relationship": "covers"}]),
    )
    result = extraction(
        question_concept_links=[{"questionLabel": "Q1a", "conceptName": "heat equation", "relationship": "tests"}]
    )
    store.apply_extraction(paper.id, result)
    store.apply_extraction(paper.id, result)

    with db.read() as tx:
        rels = tx.list_relationships(SESSION)
    assert len(rels) == 2
    q = next(r for r in rels if r.created_from_resource_id == paper.id)
    assert q.source_type is EntityType.CHUNK
    assert q.source_id == paper_chunks[0].id
    assert q.source_label == "Q1a"
    assert q.confidence == pytest.approx(0.8)


def test_links_to_unknown_concepts_are_dropped(db, lecture):
    resource, _ = lecture
    result = extraction(
        concepts=[HEAT],
        file_concept_links=[{"conceptName": "Navier Stokes", "relationship": "covers"}],
        concept_concept_links=[
            {"sourceConcept": "Heat Equation", "targetConcept": "Navier Stokes", "relationship": "extends"}
        ],
    )
    stats = RelationshipStore(db).apply_extraction(resource.id, result)
    assert stats.relationships_created == 0


def test_missing_resource_raises(db):
    with pytest.raises(LookupError):
        RelationshipStore(db).apply_extraction("nope", extraction())


def test_cross_links_skip_existing(db, lecture):
    resource, _ = lecture
    store = RelationshipStore(db)
    store.apply_extraction(
        resource.id,
        extraction(
            concepts=[HEAT, FOURIER],
            concept_concept_links=[
                {"sourceConcept": "Heat Equation", "targetConcept": "Fourier Series", "relationship": "related_to"}
            ],
        ),
    )
    links = CrossLinkResult.model_validate(
        {
            "links": [
                {"sourceConcept": "Fourier Series", "targetConcept": "Heat Equation", "relationship": "related_to"},
                {"sourceConcept": "Fourier Series", "targetConcept": "Heat Equation", "relationship": "prerequisite"},
                {"sourceConcept": "Fourier Series", "targetConcept": "Unknown", "relationship": "extends"},
            ]
        }
    )
    assert store.apply_cross_links(SESSION, links) == 1
    assert store.apply_cross_links(SESSION, links) == 0

    with db.read() as tx:
        agent = [r for r in tx.list_relationships(SESSION) if r.created_by is Provenance.AGENT]
    assert [r.relationship for r in agent] == ["prerequisite"]
    assert agent[0].confidence == pytest.approx(0.7)


def test_metadata_replaces_questions_and_keeps_first_content(db, lecture, past_paper):
    lec, _ = lecture
    paper, paper_chunks = past_paper
    store = RelationshipStore(db)
    store.apply_extraction(
        lec.id,
        extraction(concepts=[HEAT], file_concept_links=[{"conceptName": "Heat Equation", "relationship": "covers"}]),
    )
    meta = MetadataResult.model_validate(
        {
            "questions": [
                {
                    "questionNumber": "1a",
                    "content": "Solve the heat equation.",
                    "marks": 6,
                    "chunkTitle": "Q1a",
                    "markSchemeText": "Separate variables (2), apply BCs (4)",
                    "conceptLinks": [{"conceptName": "heat equation", "relationship": "tests"}],
                }
            ],
            "conceptUpdates": [{"name": "Heat Equation", "content": "u_t = k u_xx", "contentType": "formula"}],
            "resourceMetadata": {"year": 2023},
            "chunkMetadata": [{"chunkTitle": "Q1b", "metadata": {"marks": 4}}],
        }
    )
    stats = store.apply_metadata(paper.id, meta)
    assert (stats.questions, stats.question_links, stats.concepts_updated, stats.chunks_updated) == (1, 1, 1, 1)
    store.apply_metadata(paper.id, meta)

    later = MetadataResult.model_validate(
        {"conceptUpdates": [{"name": "Heat Equation", "content": "something else"}]}
    )
    store.apply_metadata(lec.id, later)

    with db.read() as tx:
        questions = tx.list_questions(paper.id)
        q_edges = [r for r in tx.list_relationships(SESSION) if r.source_type is EntityType.QUESTION]
        heat = tx.get_concept_by_name(SESSION, "Heat Equation")
        stored = tx.get_resource(paper.id)
        q1b = tx.get_chunk(paper_chunks[1].id)
    assert len(questions) == 1
    assert questions[0].chunk_id == paper_chunks[0].id
    assert questions[0].marks == 6
    assert len(q_edges) == 1
    assert q_edges[0].source_id == questions[0].id
    assert q_edges[0].created_from_resource_id == paper.id
    assert heat.content == "u_t = k u_xx"
    assert heat.content_type == "formula"
    assert stored.is_meta_indexed
    assert stored.metadata == {"year": 2023}
    assert q1b.metadata == {"marks": 4}

    # Re-extracting the paper leaves the question edges alone.
    store.apply_extraction(paper.id, extraction())
    with db.read() as tx:
        assert len([r for r in tx.list_relationships(SESSION) if r.source_type is EntityType.QUESTION]) == 1
