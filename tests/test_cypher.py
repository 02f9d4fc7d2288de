import asyncio

import pytest

from doc_graph import cypher
from doc_graph.cypher import (
    compile_query_script,
    escape_string,
    generate_fallback_cypher,
    node_label,
    relationship_type,
    validate_cypher_syntax,
)
from doc_graph.errors import CompilationError
from doc_graph.schemas import Entity, EntityType, RawGraph, Relationship


def _company() -> RawGraph:
    return RawGraph(
        entities=(
            Entity("jane", "Jane Doe", EntityType.PERSON, description="Founder", importance=0.8),
            Entity("acme", "Acme", EntityType.ORGANIZATION, importance=0.9),
        ),
        relationships=(
            Relationship("r1", "jane", "acme", "founded", weight=0.9, description="in 2001"),
            Relationship("r2", "acme", "ghost", "owns", weight=0.5),
        ),
    )


def test_fallback_script_layout():
    script = generate_fallback_cypher(_company())
    lines = script.splitlines()

    assert lines[0] == "// Generated Cypher code for Knowledge Graph"
    constraint = script.index("CREATE CONSTRAINT IF NOT EXISTS FOR (n:Person) REQUIRE n.id IS UNIQUE;")
    node = script.index('MERGE (n:Person {id: "jane"})')
    rel = script.index('MATCH (source {id: "jane"}), (target {id: "acme"})')
    index = script.index("CREATE INDEX IF NOT EXISTS FOR (n:Person) ON (n.label);")
    assert constraint < node < rel < index

    assert "CREATE CONSTRAINT IF NOT EXISTS FOR (n:Organization)" in script
    assert 'SET n.label = "Jane Doe",' in script
    assert "    n.importance = 0.8;" in script
    assert "MERGE (source)-[r:FOUNDED]->(target)" in script
    assert '    r.description = "in 2001";' in script
    assert validate_cypher_syntax(script) == (True, None)


def test_fallback_skips_dangling_relationships():
    script = generate_fallback_cypher(_company())
    assert "ghost" not in script
    assert "OWNS" not in script


def test_fallback_is_deterministic():
    assert generate_fallback_cypher(_company()) == generate_fallback_cypher(_company())


def test_single_entity_script():
    graph = RawGraph(entities=(Entity("p1", "Ada", EntityType.PERSON),))
    script = generate_fallback_cypher(graph)
    assert script.count("CREATE CONSTRAINT") == 1
    assert script.count("MERGE (n:Person") == 1
    assert script.count("CREATE INDEX") == 1
    assert "MATCH" not in script


def test_string_escaping():
    assert escape_string('say "hi"') == 'say \\"hi\\"'
    assert escape_string("back\\slash") == "back\\\\slash"
    assert escape_string("two\nlines\r\nhere") == "two lines here"
    assert escape_string(None) == ""


def test_relationship_type_tokens():
    assert relationship_type("works for") == "WORKS_FOR"
    assert relationship_type("located-in") == "LOCATED_IN"
    assert relationship_type("") == "RELATED_TO"
    assert relationship_type("!!") == "RELATED_TO"
    assert relationship_type("2nd tier") == "REL_2ND_TIER"


def test_node_labels():
    assert node_label(EntityType.ORGANIZATION) == "Organization"
    assert node_label("EVENT") == "Event"
    assert node_label("") == "Entity"


def test_validation():
    assert validate_cypher_syntax("") == (False, "Empty Cypher code")
    assert validate_cypher_syntax("hello there")[1] == "No valid Cypher keywords found"
    assert validate_cypher_syntax("MERGE (n {id: 1}")[1] == "Unbalanced parentheses in Cypher code"
    assert validate_cypher_syntax("MERGE (n {id: 1)")[1] == "Unbalanced braces in Cypher code"
    # brackets inside literals and comments are ignored
    assert validate_cypher_syntax('// (\nMERGE (n {label: "a) {"})')[0] is True


def test_model_script_is_used_when_it_parses(make_engine):
    engine = make_engine('```cypher\nMERGE (n:Person {id: "jane"}) SET n.label = "Jane";\n```')
    compiled = asyncio.run(compile_query_script(_company(), engine))

    assert compiled.source == "model"
    assert compiled.script.startswith('MERGE (n:Person {id: "jane"})')
    assert compiled.valid
    assert engine.options[0].max_tokens == 4096
    assert engine.options[0].temperature == 0.1
    # the prompt only carries resolvable relationships
    assert '"r1"' in engine.prompts[0]
    assert "ghost" not in engine.prompts[0]


def test_keywordless_model_answer_uses_fallback(make_engine):
    graph = RawGraph(entities=(Entity("p1", "Ada", EntityType.PERSON),))
    engine = make_engine("I'm sorry, I can't help with that.")
    compiled = asyncio.run(compile_query_script(graph, engine))

    assert compiled.source == "fallback"
    assert compiled.script == generate_fallback_cypher(graph)
    assert "CREATE CONSTRAINT IF NOT EXISTS FOR (n:Person)" in compiled.script
    assert 'MERGE (n:Person {id: "p1"})' in compiled.script
    assert "CREATE INDEX IF NOT EXISTS FOR (n:Person) ON (n.label);" in compiled.script


def test_engine_errors_use_fallback(make_engine):
    engine = make_engine(error=RuntimeError("boom"))
    compiled = asyncio.run(compile_query_script(_company(), engine))
    assert compiled.source == "fallback"


def test_no_engine_uses_fallback(make_engine):
    assert asyncio.run(compile_query_script(_company(), None)).source == "fallback"
    offline = make_engine("MERGE (n)", available=False)
    assert asyncio.run(compile_query_script(_company(), offline)).source == "fallback"
    assert offline.prompts == []


def test_both_paths_failing_raises(monkeypatch, make_engine):
    def broken(graph):
        raise ValueError("cannot render")

    monkeypatch.setattr(cypher, "generate_fallback_cypher", broken)
    with pytest.raises(CompilationError):
        asyncio.run(compile_query_script(_company(), make_engine("no keywords here")))
