from __future__ import annotations

from ..graph.models import Resource, ResourceFile

STRATEGIES = {
    "selective": (
        "Strategy: SELECTIVE. Read the overview, then only the two or three key sections.\n"
        "Extract only the most important concepts and skip peripheral ones."
    ),
    "standard": (
        "Strategy: STANDARD. Read the overview, then every major section.\n"
        "Extract meaningful concepts and check existing concepts for connections."
    ),
    "comprehensive": (
        "Strategy: COMPREHENSIVE. Read every section in detail.\n"
        "Extract all definitions, theorems, methods and named results, query existing concepts, "
        "and re-read sections afterwards to find anything missed."
    ),
}

_LINK_GUIDE = """\
Concept-to-concept kinds, most specific first:
  prerequisite (source must be understood before target), extends, generalizes,
  special_case_of, contradicts, related_to (last resort only).
Section-to-concept kinds: introduces, covers, applies, references, proves.
Question-to-concept kinds: tests, applies, requires.
Confidence: 0.95+ explicit, 0.85+ strongly implied, 0.7+ clear, 0.5+ weak; below 0.5 omit."""


def _describe_resource(resource: Resource, files: list[ResourceFile]) -> str:
    lines = [f"Name: {resource.name}", f"Type: {resource.type.value}"]
    if resource.label:
        lines.append(f"Label: {resource.label}")
    lines.append("Files:")
    lines += [f"  - {f.filename} ({f.role})" for f in files]
    return "\n".join(lines)


def extraction_prompt(resource: Resource, files: list[ResourceFile], strategy: str) -> str:
    return f"""You are a knowledge graph extraction agent for study materials.

## Resource
{_describe_resource(resource, files)}

## Workflow
1. get_material_overview to see the structure.
2. read_section and search_material to read what matters.
3. get_existing_concepts and get_concept_relationships to reuse existing names.
4. submit_extraction exactly once with the complete result.

## {STRATEGIES[strategy]}

## Rules
- Concept names in Title Case; reuse existing names exactly.
- Give chunkTitle on section links; use question labels as printed (e.g. "Q1a").
{_LINK_GUIDE}
- You MUST call submit_extraction before finishing."""


def extraction_instruction(resource: Resource) -> str:
    return (
        f'Analyze the {resource.type.value} resource "{resource.name}" and extract its knowledge graph. '
        "Start with the material overview. When done, call submit_extraction."
    )


CLEANUP_PROMPT = """You are a knowledge graph cleanup agent for one study session.

Goals:
1. Merge concepts that are the same thing under different names
   (plurals, abbreviations, "ODE" vs "Ordinary Differential Equation").
2. Delete concepts that are meaningless or too generic to be useful.

Rules:
- Never merge related but distinct concepts ("Fourier Transform" vs "Inverse Fourier Transform").
- Prefer the more formal name, in Title Case, as the canonical name.
- When unsure, do not merge. False merges are worse than duplicates.

Workflow: list_concepts, find_similar_concepts on key names, get_concept_detail and
preview_merge to check, then submit_cleanup. If the graph is clean, submit an empty
cleanup with a note saying so."""

CLEANUP_INSTRUCTION = (
    "Clean up the knowledge graph for this study session. Start by listing concepts "
    "and finding similar names."
)

CROSS_LINK_PROMPT = f"""You are a knowledge graph cross-linking agent for one study session.

Find missing concept-to-concept links, especially across resources: exam questions
and exercises that practise lecture concepts, prerequisites, generalisations and
extensions. Never resubmit a relationship that already exists.

{_LINK_GUIDE}

Workflow: list_concepts, list_resources, get_resource_concepts and
get_concept_relationships, then submit_cross_links once."""

CROSS_LINK_INSTRUCTION = (
    "Find missing relationships between concepts of this session's resources and submit them."
)


def metadata_prompt(resource: Resource, files: list[ResourceFile]) -> str:
    return f"""You are a metadata extraction agent for study materials.

## Resource
{_describe_resource(resource, files)}

Extract:
- questions: every numbered question and sub-question with marks, type, command words,
  the mark scheme and solution text when a MARK_SCHEME or SOLUTIONS file exists,
  the section title it appears in, and the concepts it tests.
- conceptUpdates: the defining statement (definition, theorem, formula) of existing concepts.
- resourceMetadata and chunkMetadata: structured facts about the material and its sections.

Use read_file_by_role to cross-reference mark schemes and solutions. Only reference concepts
returned by get_existing_concepts. Call submit_metadata exactly once."""


def metadata_instruction(resource: Resource) -> str:
    return (
        f'Extract structured metadata from the {resource.type.value} resource "{resource.name}". '
        "When done, call submit_metadata."
    )
