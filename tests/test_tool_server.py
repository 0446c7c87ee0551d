import io
import json

import pytest

from studygraph.agents.protocol import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
)
from studygraph.agents.snapshot import (
    Snapshot,
    SnapshotChunk,
    SnapshotConcept,
    SnapshotFile,
    SnapshotRelationship,
    load_snapshot,
    write_snapshot,
)
from studygraph.agents.tool_server import ToolServer
from studygraph.agents.tools import TOOLSETS, SnapshotTools, ToolError


def material_snapshot(kind="extraction"):
    return Snapshot(
        kind=kind,
        chunks=[
            SnapshotChunk(id="c1", title="Chapter 1", content="Intro", depth=0),
            SnapshotChunk(
                id="c2", title="1.1 Heat Equation", content="The heat equation u_t = k u_xx.", depth=1, parent_id="c1"
            ),
            SnapshotChunk(id="c3", title="Worked example", content="x", depth=2, parent_id="c2", node_type="example"),
        ],
        files=[SnapshotFile(filename="ms.pdf", role="MARK_SCHEME", content="Q1: 6 marks")],
        concepts=[
            SnapshotConcept(name="Heat Equation", description="Diffusion PDE"),
            SnapshotConcept(name="Heat Equations"),
            SnapshotConcept(name="Fourier Series", aliases=["Fourier Expansion"]),
        ],
        relationships=[
            SnapshotRelationship(
                id="r1",
                source_type="concept",
                source_label="Fourier Series",
                target_type="concept",
                target_label="Heat Equation",
                relationship="prerequisite",
                confidence=0.7,
            )
        ],
    )


@pytest.fixture
def server(tmp_path):
    return ToolServer(SnapshotTools(material_snapshot(), tmp_path))


def call(server, name, arguments=None, request_id=1):
    return server.handle(
        {"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": {"name": name, "arguments": arguments or {}}}
    )


def text_of(response):
    return response["result"]["content"][0]["text"]


def test_initialize_handshake(server):
    response = server.handle({"jsonrpc": "2.0", "id": 0, "method": "initialize", "params": {}})
    assert response["id"] == 0
    assert response["result"]["serverInfo"]["name"] == "studygraph-extraction"
    assert "tools" in response["result"]["capabilities"]
    assert server.handle({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None


@pytest.mark.parametrize("kind", sorted(TOOLSETS))
def test_tools_list_matches_kind(tmp_path, kind):
    server = ToolServer(SnapshotTools(material_snapshot(kind), tmp_path))
    response = server.handle({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})
    names = [t["name"] for t in response["result"]["tools"]]
    assert names == list(TOOLSETS[kind])
    assert all("inputSchema" in t for t in response["result"]["tools"])


def test_overview_and_read_section(server):
    overview = text_of(call(server, "get_material_overview"))
    assert overview.splitlines() == [
        "Chapter 1 (5 chars)",
        "  1.1 Heat Equation (31 chars)",
        "    [example] Worked example (1 chars)",
    ]

    section = text_of(call(server, "read_section", {"title": "heat equation"}))
    assert section.startswith("1.1 Heat Equation")
    assert "[example] Worked example" in section
    assert "Intro" not in section

    missing = text_of(call(server, "read_section", {"title": "zzzz"}))
    assert missing == "No section found matching: zzzz"


def test_search_and_concepts(server):
    assert "1.1 Heat Equation" in text_of(call(server, "search_material", {"query": "U_T"}))
    assert text_of(call(server, "search_material", {"query": "laplace"})) == "No matches found for: laplace"
    concepts = text_of(call(server, "get_existing_concepts", {"query": "heat"}))
    assert concepts.splitlines() == ["Heat Equation: Diffusion PDE", "Heat Equations"]
    rels = text_of(call(server, "get_concept_relationships", {"conceptName": "Heat Equation"}))
    assert rels == "Fourier Series --[prerequisite]--> Heat Equation (confidence: 0.7)"


def test_cleanup_tools(tmp_path):
    server = ToolServer(SnapshotTools(material_snapshot("cleanup"), tmp_path))
    listing = text_of(call(server, "list_concepts"))
    assert "Fourier Series (1 rels) [aliases: Fourier Expansion]" in listing
    similar = text_of(call(server, "find_similar_concepts", {"name": "Heat Equation"}))
    assert similar.startswith("Heat Equations (similarity:")
    assert "Fourier" not in similar
    preview = text_of(
        call(server, "preview_merge", {"canonicalName": "Heat Equation", "mergeNames": ["Heat Equations", "Nope"]})
    )
    assert "Not found: Nope" in preview
    assert "Relationships to redirect: 0" in preview
    stats = text_of(call(server, "get_relationship_stats"))
    assert "Total relationships: 1" in stats
    assert "concept->concept: 1" in stats


def test_tool_outside_toolset_is_an_error_result(server):
    response = call(server, "list_concepts")
    assert response["result"]["isError"] is True
    assert text_of(response) == "Unknown tool: list_concepts"


def test_submit_writes_result(server, tmp_path):
    response = call(
        server,
        "submit_extraction",
        {
            "concepts": [{"name": "Heat Equation", "aliases": "Diffusion Equation"}],
            "fileConceptLinks": [{"conceptName": "Heat Equation", "relationship": "introduces"}],
        },
    )
    assert "isError" not in response["result"]
    written = json.loads((tmp_path / "result.json").read_text(encoding="utf-8"))
    assert written["concepts"][0]["aliases"] == ["Diffusion Equation"]
    assert written["fileConceptLinks"][0]["conceptName"] == "Heat Equation"


def test_invalid_submission_can_be_retried(server, tmp_path):
    bad = call(server, "submit_extraction", {"fileConceptLinks": [{"conceptName": "X", "relationship": "likes"}]})
    assert bad["result"]["isError"] is True
    assert "Submission rejected" in text_of(bad)
    assert not (tmp_path / "result.json").exists()

    good = call(server, "submit_extraction", {"concepts": []}, request_id=2)
    assert "isError" not in good["result"]
    assert (tmp_path / "result.json").exists()


def test_protocol_errors(server):
    unknown = server.handle({"jsonrpc": "2.0", "id": 3, "method": "resources/list"})
    assert unknown["error"]["code"] == METHOD_NOT_FOUND
    assert server.handle({"jsonrpc": "2.0", "method": "notifications/cancelled"}) is None

    invalid = server.handle({"jsonrpc": "2.0", "id": 4})
    assert invalid["error"]["code"] == INVALID_REQUEST
    assert invalid["id"] == 4

    no_name = server.handle({"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {}})
    assert no_name["error"]["code"] == INVALID_PARAMS


def test_handle_line(server):
    assert server.handle_line("   \n") is None
    assert server.handle_line("{not json")["error"]["code"] == PARSE_ERROR
    assert server.handle_line("[1, 2]")["error"]["code"] == PARSE_ERROR
    response = server.handle_line(json.dumps({"jsonrpc": "2.0", "id": 9, "method": "tools/list"}))
    assert response["id"] == 9


def test_from_dir_round_trip(tmp_path):
    write_snapshot(tmp_path, material_snapshot("metadata"))
    assert load_snapshot(tmp_path).kind == "metadata"
    server = ToolServer.from_dir(tmp_path)
    text = text_of(call(server, "read_file_by_role", {"role": "MARK_SCHEME"}))
    assert text == "=== ms.pdf (MARK_SCHEME) ===\n\nQ1: 6 marks"


def test_argument_types_are_checked(tmp_path):
    server = ToolServer(SnapshotTools(material_snapshot("cleanup"), tmp_path))

    bad = call(server, "find_similar_concepts", {"name": "Heat Equation", "threshold": "high"})
    assert bad["result"]["isError"] is True
    assert text_of(bad) == "Invalid arguments for find_similar_concepts: threshold must be of type number"
    flag = call(server, "find_similar_concepts", {"name": "Heat Equation", "threshold": True})
    assert flag["result"]["isError"] is True

    strict = text_of(call(server, "find_similar_concepts", {"name": "Heat Equation", "threshold": 0.99}))
    assert strict == "No similar concepts found above threshold 0.99"

    as_string = call(server, "preview_merge", {"canonicalName": "Heat Equation", "mergeNames": "Heat Equations"})
    assert as_string["result"]["isError"] is True
    assert "mergeNames must be of type array" in text_of(as_string)
    mixed = call(server, "preview_merge", {"canonicalName": "Heat Equation", "mergeNames": ["Heat Equations", 3]})
    assert mixed["result"]["isError"] is True
    assert "every mergeNames entry must be of type string" in text_of(mixed)


def test_preview_merge_rejects_non_list_names(tmp_path):
    tools = SnapshotTools(material_snapshot("cleanup"), tmp_path)
    with pytest.raises(ToolError, match="mergeNames must be a list"):
        tools._tool_preview_merge({"canonicalName": "Heat Equation", "mergeNames": "Heat Equations"})


def test_handler_errors_become_error_results(server, monkeypatch):
    def broken(args):
        raise ValueError("could not convert string to float: 'x'")

    monkeypatch.setattr(server.tools, "_tool_read_section", broken)
    response = call(server, "read_section", {"title": "x"})
    assert response["result"]["isError"] is True
    assert text_of(response) == "Invalid arguments for read_section: could not convert string to float: 'x'"


def test_unexpected_tool_failure_is_an_internal_error(server, monkeypatch, caplog):
    def broken(args):
        raise RuntimeError("snapshot corrupted")

    monkeypatch.setattr(server.tools, "_tool_get_material_overview", broken)
    response = call(server, "get_material_overview", request_id=7)
    assert response["id"] == 7
    assert response["error"]["code"] == INTERNAL_ERROR
    assert "Tool get_material_overview failed" in caplog.text


def test_serve_survives_bad_calls(tmp_path, monkeypatch):
    server = ToolServer(SnapshotTools(material_snapshot("cleanup"), tmp_path))

    def broken(args):
        raise RuntimeError("boom")

    monkeypatch.setattr(server.tools, "_tool_get_relationship_stats", broken)
    requests = [
        {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
         "params": {"name": "find_similar_concepts", "arguments": {"name": "Heat", "threshold": "high"}}},
        {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "get_relationship_stats"}},
        {"jsonrpc": "2.0", "id": 3, "method": "tools/list"},
    ]
    stdin = io.StringIO("".join(json.dumps(r) + "\n" for r in requests))
    stdout = io.StringIO()
    server.serve(stdin, stdout)

    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [r["id"] for r in responses] == [1, 2, 3]
    assert responses[0]["result"]["isError"] is True
    assert responses[1]["error"]["code"] == INTERNAL_ERROR
    assert "tools" in responses[2]["result"]
