from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from textwrap import dedent
from typing import Dict, List, Mapping, Optional, Sequence

from .schemas import SourceDocument


class AnalysisTask(str, Enum):
    SUMMARIZE = "summarize"
    EXTRACT_ENTITIES = "extract_entities"
    ANALYZE_SENTIMENT = "analyze_sentiment"
    GENERATE_KEYWORDS = "generate_keywords"
    EXTRACT_RELATIONSHIPS = "extract_relationships"
    KNOWLEDGE_GRAPH = "knowledge_graph"
    CYPHER_COMPILE = "cypher_compile"
    FREE_QUERY = "free_query"


class FieldKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    LIST = "list"
    OBJECT = "object"


@dataclass(frozen=True)
class ExpectedShape:
    """Declarative contract for a task's response; consumed by the parser."""

    task: AnalysisTask
    format: str = "json"  # "json" or "cypher"
    required: Mapping[str, FieldKind] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptSpec:
    prompt_text: str
    expected_shape: ExpectedShape


SHAPES: Dict[AnalysisTask, ExpectedShape] = {
    AnalysisTask.SUMMARIZE: ExpectedShape(
        AnalysisTask.SUMMARIZE, required={"summary": FieldKind.STRING}
    ),
    AnalysisTask.EXTRACT_ENTITIES: ExpectedShape(
        AnalysisTask.EXTRACT_ENTITIES, required={"entities": FieldKind.LIST}
    ),
    AnalysisTask.ANALYZE_SENTIMENT: ExpectedShape(
        AnalysisTask.ANALYZE_SENTIMENT, required={"sentiment": FieldKind.NUMBER}
    ),
    AnalysisTask.GENERATE_KEYWORDS: ExpectedShape(
        AnalysisTask.GENERATE_KEYWORDS, required={"keywords": FieldKind.LIST}
    ),
    AnalysisTask.EXTRACT_RELATIONSHIPS: ExpectedShape(
        AnalysisTask.EXTRACT_RELATIONSHIPS, required={"relationships": FieldKind.LIST}
    ),
    AnalysisTask.KNOWLEDGE_GRAPH: ExpectedShape(
        AnalysisTask.KNOWLEDGE_GRAPH,
        required={"entities": FieldKind.LIST, "relationships": FieldKind.LIST},
    ),
    AnalysisTask.CYPHER_COMPILE: ExpectedShape(AnalysisTask.CYPHER_COMPILE, format="cypher"),
    AnalysisTask.FREE_QUERY: ExpectedShape(
        AnalysisTask.FREE_QUERY, required={"answer": FieldKind.STRING}
    ),
}

_FRAMING: Dict[AnalysisTask, str] = {
    AnalysisTask.SUMMARIZE: (
        "You are a document analysis expert. Your task is to create a concise, "
        "accurate summary of the provided document."
    ),
    AnalysisTask.EXTRACT_ENTITIES: (
        "You are an expert at extracting entities from documents. Your task is to "
        "identify and classify all important entities in the text."
    ),
    AnalysisTask.ANALYZE_SENTIMENT: (
        "You are a sentiment analysis expert. Your task is to analyze the emotional "
        "tone and sentiment of the provided document."
    ),
    AnalysisTask.GENERATE_KEYWORDS: (
        "You are a keyword extraction expert. Your task is to identify the most "
        "important keywords and phrases from the document."
    ),
    AnalysisTask.EXTRACT_RELATIONSHIPS: (
        "You are an expert at identifying relationships between entities in documents. "
        "Your task is to extract meaningful connections and relationships."
    ),
    AnalysisTask.KNOWLEDGE_GRAPH: (
        "You are a knowledge graph expert. Extract entities and relationships from the "
        "provided documents to create a comprehensive knowledge graph."
    ),
    AnalysisTask.CYPHER_COMPILE: (
        "You are a Neo4j Cypher expert. Convert the following knowledge graph data into "
        "executable Cypher code for creating nodes and relationships in a Neo4j database."
    ),
    AnalysisTask.FREE_QUERY: (
        "You are a helpful AI assistant with access to document context. Answer the "
        "user's question based on the provided context."
    ),
}

_CONTENT_HEADING: Dict[AnalysisTask, str] = {
    AnalysisTask.KNOWLEDGE_GRAPH: "Documents",
    AnalysisTask.CYPHER_COMPILE: "Knowledge Graph Data",
    AnalysisTask.FREE_QUERY: "Context",
}

_GUIDELINES: Dict[AnalysisTask, List[str]] = {
    AnalysisTask.SUMMARIZE: [
        "Focus on key points and main ideas",
        "Maintain the original context and meaning",
        "Keep the summary between 100-300 words",
        "Use clear, professional language",
    ],
    AnalysisTask.EXTRACT_ENTITIES: [
        "Identify people, organizations, locations, and key concepts",
        "Classify each entity by type",
        "Provide confidence scores (0.0-1.0)",
        "Count mentions of each entity",
        "Focus on entities that are central to the document's meaning",
    ],
    AnalysisTask.ANALYZE_SENTIMENT: [
        "Determine overall sentiment (positive, negative, neutral)",
        "Provide a sentiment score from -1.0 (very negative) to 1.0 (very positive)",
        "Identify specific phrases that contribute to the sentiment",
        "Consider context and nuanced expressions",
    ],
    AnalysisTask.GENERATE_KEYWORDS: [
        "Extract 10-20 most relevant keywords",
        "Include both single words and key phrases",
        "Focus on terms that capture the document's core topics",
        "Rank keywords by importance and frequency",
        "Consider domain-specific terminology",
    ],
    AnalysisTask.EXTRACT_RELATIONSHIPS: [
        "Identify relationships between people, organizations, concepts, and locations",
        "Specify the type of relationship (works_for, located_in, causes, etc.)",
        "Provide confidence scores for each relationship",
        "Focus on explicitly stated relationships",
        "Include temporal relationships when relevant",
    ],
    AnalysisTask.KNOWLEDGE_GRAPH: [
        "Extract entities that are central to the documents' meaning: people, "
        "organizations, locations, concepts, events, and other important items",
        "Focus on explicitly stated relationships and connections",
        'Use clear, descriptive relationship types (e.g., "works_for", "located_in", '
        '"causes", "leads_to")',
        "Give every entity a unique id and reference those ids in relationships",
        "Provide importance scores (0.0-1.0) based on how central entities are to the content",
        "Provide relationship weights (0.0-1.0) based on how strongly the text supports them",
        "Include temporal information when available",
        "Summarize the main themes and key findings",
        "Excerpts marked as truncated are incomplete; do not guess what follows them",
    ],
    AnalysisTask.CYPHER_COMPILE: [
        "Create nodes for each entity with a label based on its type",
        "Set properties for each node including label, description and importance",
        "Create relationships between nodes with proper relationship types and properties",
        "Use MERGE statements so the script can be run repeatedly without duplicates",
        "Use SET clauses for property assignment",
        "Start with constraint creation, then nodes, then relationships, then indexes",
        "End every statement with a semicolon",
    ],
    AnalysisTask.FREE_QUERY: [
        "Base your answer primarily on the provided context",
        "If the context doesn't contain sufficient information, clearly state this",
        "Provide specific references to relevant parts of the context",
        "Be accurate and avoid making assumptions beyond the given information",
        "If asked for analysis or interpretation, explain your reasoning",
    ],
}

_OUTPUT_EXAMPLE: Dict[AnalysisTask, str] = {
    AnalysisTask.SUMMARIZE: """
        {
          "summary": "Your concise summary here",
          "keyPoints": ["key point 1", "key point 2", "key point 3"],
          "wordCount": 150
        }""",
    AnalysisTask.EXTRACT_ENTITIES: """
        {
          "entities": [
            {
              "name": "Entity name",
              "type": "person|organization|location|concept|other",
              "confidence": 0.95,
              "mentions": 3
            }
          ]
        }""",
    AnalysisTask.ANALYZE_SENTIMENT: """
        {
          "sentiment": 0.2,
          "label": "positive|negative|neutral",
          "confidence": 0.85,
          "keyPhrases": ["phrase that indicates sentiment"]
        }""",
    AnalysisTask.GENERATE_KEYWORDS: """
        {
          "keywords": [
            {"term": "keyword or phrase", "importance": 0.9, "frequency": 5}
          ]
        }""",
    AnalysisTask.EXTRACT_RELATIONSHIPS: """
        {
          "relationships": [
            {
              "source": "Entity A",
              "target": "Entity B",
              "type": "relationship_type",
              "confidence": 0.8
            }
          ]
        }""",
    AnalysisTask.KNOWLEDGE_GRAPH: """
        {
          "entities": [
            {
              "id": "unique_identifier",
              "label": "Entity Name",
              "type": "person|organization|location|concept|event|other",
              "properties": {
                "description": "Brief description of the entity",
                "aliases": ["alternative names if any"]
              },
              "importance": 0.8
            }
          ],
          "relationships": [
            {
              "id": "rel_unique_id",
              "source": "source_entity_id",
              "target": "target_entity_id",
              "type": "relationship_type",
              "properties": {
                "description": "Description of the relationship",
                "temporal": "time information if relevant"
              },
              "weight": 0.9
            }
          ],
          "summary": "Brief summary of main themes and key findings",
          "themes": ["theme1", "theme2", "theme3"]
        }""",
    AnalysisTask.CYPHER_COMPILE: """
        // Create constraints
        CREATE CONSTRAINT IF NOT EXISTS FOR (n:Person) REQUIRE n.id IS UNIQUE;

        // Create nodes
        MERGE (p:Person {id: "person_1"})
        SET p.label = "Ada Lovelace", p.importance = 0.9;

        // Create relationships
        MATCH (a {id: "person_1"}), (b {id: "org_1"})
        MERGE (a)-[r:WORKS_FOR]->(b)
        SET r.weight = 0.8;

        // Create indexes
        CREATE INDEX IF NOT EXISTS FOR (n:Person) ON (n.label);""",
    AnalysisTask.FREE_QUERY: """
        {
          "answer": "Your answer to the question",
          "references": ["short quote or section of the context supporting the answer"]
        }""",
}

JSON_ONLY = (
    "**IMPORTANT**: Respond with a single valid JSON document only, in exactly the "
    "format below. No additional text, explanations, or markdown formatting."
)
CYPHER_ONLY = (
    "**IMPORTANT**: Respond with executable Cypher statements only, following the "
    "example format below. No explanations, no additional text, no markdown code fences."
)


def build_prompt(
    task: AnalysisTask | str,
    content: str,
    instructions: Optional[str] = None,
) -> PromptSpec:
    """Return the prompt text for `task` together with the response contract."""
    task = AnalysisTask(task)
    shape = SHAPES[task]

    parts = [_FRAMING[task]]
    if instructions and instructions.strip():
        heading = "User Question" if task == AnalysisTask.FREE_QUERY else "User Instructions"
        parts.append(f"{heading}:\n{instructions.strip()}")
    heading = _CONTENT_HEADING.get(task, "Document Content")
    parts.append(f"{heading}:\n---\n{content}\n---")
    parts.append("Guidelines:\n" + "\n".join(f"- {g}" for g in _GUIDELINES[task]))
    closing = CYPHER_ONLY if shape.format == "cypher" else JSON_ONLY
    parts.append(closing + "\n\n" + dedent(_OUTPUT_EXAMPLE[task]).strip())

    return PromptSpec(prompt_text="\n\n".join(parts), expected_shape=shape)


def truncation_marker(shown: int, total: int) -> str:
    return (
        f"[... excerpt truncated: showing the first {shown} of {total} characters; "
        "the remainder of this document is not included ...]"
    )


def format_documents_for_prompt(
    documents: Sequence[SourceDocument],
    excerpt_chars: int = 3000,
) -> str:
    blocks = []
    for index, doc in enumerate(documents, start=1):
        body = doc.content[:excerpt_chars]
        if len(doc.content) > excerpt_chars:
            body = body + "\n" + truncation_marker(excerpt_chars, len(doc.content))
        blocks.append(
            f'Document {index}: "{doc.title}" ({doc.content_type})\n---\n{body}\n---'
        )
    return "\n\n".join(blocks)
