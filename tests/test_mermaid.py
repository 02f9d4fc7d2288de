from doc_graph.mermaid import (
    MermaidConfig,
    arrow_for_weight,
    render_fallback_mermaid,
    render_mermaid,
    sanitize_label,
    validate_mermaid_syntax,
)
from doc_graph.schemas import Entity, EntityType, RawGraph, Relationship


def _graph(entities, relationships=()):
    return RawGraph(entities=tuple(entities), relationships=tuple(relationships))


def _node_lines(diagram):
    return [line for line in diagram.splitlines() if ":::" in line]


def test_basic_flowchart():
    graph = _graph(
        [
            Entity("jane", "Jane Doe", EntityType.PERSON, importance=0.8),
            Entity("acme", "Acme", EntityType.ORGANIZATION, importance=0.9),
        ],
        [Relationship("r1", "jane", "acme", "founded", weight=0.9)],
    )
    diagram = render_mermaid(graph)

    assert diagram.splitlines()[0] == "flowchart TD"
    assert '    acme["Acme"]:::organization' in diagram
    assert '    jane["Jane Doe"]:::person' in diagram
    assert '    jane ==>|"founded"| acme' in diagram
    assert "    classDef person fill:#e1f5fe,stroke:#01579b,stroke-width:2px" in diagram
    assert validate_mermaid_syntax(diagram) == (True, None)


def test_arrow_tiers():
    assert arrow_for_weight(0.8) == "==>"
    assert arrow_for_weight(0.79) == "-->"
    assert arrow_for_weight(0.5) == "-->"
    assert arrow_for_weight(0.49) == "-.->"


def test_most_important_nodes_are_kept():
    entities = [Entity(f"e{i}", f"Entity {i}", importance=i / 100) for i in range(80)]
    relationships = [
        Relationship(f"r{i}", f"e{i}", f"e{i + 1}", "next", weight=0.6) for i in range(79)
    ]
    diagram = render_mermaid(_graph(entities, relationships), MermaidConfig(max_nodes=50))

    nodes = _node_lines(diagram)
    assert len(nodes) == 50
    assert any(line.startswith("    e79[") for line in nodes)
    assert not any(line.startswith("    e29[") for line in nodes)
    # only edges between surviving nodes (e30..e79)
    edges = [line for line in diagram.splitlines() if "-->" in line]
    assert len(edges) == 49
    assert "e29 -->" not in diagram


def test_edges_are_capped_by_weight():
    entities = [Entity(f"n{i}", f"N{i}") for i in range(4)]
    relationships = [
        Relationship("weak", "n0", "n1", "weak", weight=0.1),
        Relationship("strong", "n1", "n2", "strong", weight=0.95),
        Relationship("mid", "n2", "n3", "mid", weight=0.6),
    ]
    diagram = render_mermaid(_graph(entities, relationships), MermaidConfig(max_edges=2))
    assert '"strong"' in diagram
    assert '"mid"' in diagram
    assert '"weak"' not in diagram


def test_dangling_edges_are_not_drawn():
    graph = _graph(
        [Entity("a", "A")],
        [Relationship("r", "a", "ghost", "haunts", weight=0.9)],
    )
    diagram = render_mermaid(graph)
    assert "ghost" not in diagram
    assert "haunts" not in diagram


def test_labels_and_ids_are_sanitized():
    graph = _graph(
        [
            Entity("a-b", 'The "Quoted" `name`'),
            Entity("a_b", "x" * 40),
            Entity("end", "End node"),
        ]
    )
    diagram = render_mermaid(graph)

    assert '    a_b["The Quoted name"]:::other' in diagram
    assert f'    a_b_1["{"x" * 30}..."]:::other' in diagram
    assert '    end_1["End node"]:::other' in diagram


def test_sanitize_label_collapses_whitespace():
    assert sanitize_label("  two\n  lines  ") == "two lines"


def test_theme_directive():
    diagram = render_mermaid(_graph([Entity("a", "A")]), MermaidConfig(theme="dark"))
    assert diagram.splitlines()[0] == "%%{init: {'theme': 'dark'}}%%"
    assert diagram.splitlines()[1] == "flowchart TD"


def test_render_errors_produce_fallback_diagram():
    # importance None cannot be ordered against floats
    graph = _graph([Entity("a", "Alpha", importance=None), Entity("b", "Beta", importance=0.4)])
    diagram = render_mermaid(graph)
    assert "%% Simplified Knowledge Graph" in diagram
    assert '    E0["Alpha"]' in diagram
    assert "    E0 --> E1" in diagram


def test_fallback_limits_nodes_and_edges():
    graph = _graph([Entity(f"e{i}", f"Entity {i}") for i in range(12)])
    diagram = render_fallback_mermaid(graph)
    assert '    E9["Entity 9"]' in diagram
    assert "E10" not in diagram
    assert [line.strip() for line in diagram.splitlines() if "-->" in line] == [
        "E0 --> E1",
        "E1 --> E2",
    ]


def test_validation_errors():
    assert validate_mermaid_syntax("")[0] is False
    assert validate_mermaid_syntax("graph TD\n a --> b")[1] == "Missing flowchart declaration"
    assert validate_mermaid_syntax('flowchart TD\n a["x"')[0] is False
