"""Unit tests for graph synthesis."""

import pytest

from audit import GraphSynthesizer, NODE_STYLE, RunContext, ToolError
from models import AuditSession, Concept, Dataset, EdgeType, Element, MergeResult, NodeType, SourceDataset
from repositories import MemoryRepository
from repositories.memory_backend import MemoryGraphRepository


class FlakyGraphRepository(MemoryGraphRepository):
    """Rejects edges from the given element node ids."""

    def __init__(self, sessions, reject_element_ids):
        super().__init__(sessions)
        self.reject_element_ids = set(reject_element_ids)

    def insert_edge(self, session_id, token, edge):
        source = self.get_node(session_id, token, edge.source_node_id)
        if source and set(source.source_element_ids) & self.reject_element_ids:
            raise RuntimeError("write rejected")
        return super().insert_edge(session_id, token, edge)


@pytest.fixture
def merge_result():
    return MergeResult(concepts=[
        Concept(label="Authentication", description="Login", d1_ids=["A", "B"], d2_ids=["X"]),
        Concept(label="Logging", d1_ids=["C"]),
        Concept(label="Misc", d2_ids=["Y"]),
    ])


@pytest.fixture
def synth(repo):
    return GraphSynthesizer(repo)


@pytest.fixture
def seeded(synth, ctx, d1_elements, d2_elements):
    synth.create_element_nodes(ctx, Dataset.D1, d1_elements)
    synth.create_element_nodes(ctx, Dataset.D2, d2_elements)
    return synth


def _nodes(repo):
    return repo.graph.get_existing_nodes_by_session("session-1", "")


def _edges(repo):
    return repo.graph.get_edges_by_session("session-1", "")


class TestElementNodes:
    """Test create_element_nodes."""

    def test_one_node_per_element(self, synth, repo, ctx, d1_elements):
        report = synth.create_element_nodes(ctx, Dataset.D1, d1_elements)

        assert report.ok
        assert report.nodes_written == 3
        nodes = _nodes(repo)
        assert [n.source_element_ids for n in nodes] == [["A"], ["B"], ["C"]]
        assert all(n.node_type is NodeType.D1_ELEMENT for n in nodes)
        assert all(n.source_dataset is SourceDataset.DATASET1 for n in nodes)
        assert nodes[0].color == NODE_STYLE["d1_element"][0]

    def test_upsert_is_idempotent(self, synth, repo, ctx, d2_elements):
        synth.create_element_nodes(ctx, Dataset.D2, d2_elements)
        synth.create_element_nodes(ctx, Dataset.D2, d2_elements)

        nodes = _nodes(repo)
        assert len(nodes) == 2
        assert {n.node_type for n in nodes} == {NodeType.D2_ELEMENT}

    def test_same_id_on_both_sides_gets_two_nodes(self, synth, repo, ctx):
        element = Element(id="shared-1", label="Shared")
        synth.create_element_nodes(ctx, Dataset.D1, [element])
        synth.create_element_nodes(ctx, Dataset.D2, [element])
        assert len(_nodes(repo)) == 2

    def test_description_truncated_and_category_kept(self, synth, repo, ctx):
        element = Element(id="L", label="Long", content="x" * 900, category="spec")
        synth.create_element_nodes(ctx, Dataset.D1, [element])
        node = _nodes(repo)[0]
        assert len(node.description) == 500
        assert node.metadata == {"category": "spec"}

    def test_unknown_session_recorded_not_raised(self, repo, d1_elements):
        report = GraphSynthesizer(repo).create_element_nodes(RunContext(session_id="nope"), Dataset.D1, d1_elements)
        assert report.nodes_written == 0
        assert len(report.errors) == 3
        assert report.errors[0].operation == "upsert_element_node"


class TestConceptGraph:
    """Test build_concept_graph."""

    def test_roles_and_styles(self, seeded, repo, ctx, merge_result):
        report = seeded.build_concept_graph(ctx, merge_result)

        assert report.ok
        concepts = {n.label: n for n in _nodes(repo) if n.node_type is NodeType.CONCEPT}
        assert concepts["Authentication"].source_dataset is SourceDataset.BOTH
        assert concepts["Authentication"].color == NODE_STYLE["merged"][0]
        assert concepts["Authentication"].metadata == {"merged": True, "d1Count": 2, "d2Count": 1}
        assert concepts["Logging"].color == NODE_STYLE["gap"][0]
        assert concepts["Logging"].metadata["gap"] is True
        assert concepts["Misc"].color == NODE_STYLE["orphan"][0]
        assert concepts["Misc"].metadata["orphan"] is True

    def test_one_edge_per_member(self, seeded, repo, ctx, merge_result):
        report = seeded.build_concept_graph(ctx, merge_result)

        nodes = {n.id: n for n in _nodes(repo)}
        edges = _edges(repo)
        assert report.edges_written == 5
        assert len(edges) == 5

        by_element = {}
        for edge in edges:
            element = nodes[edge.source_node_id]
            concept = nodes[edge.target_node_id]
            by_element.setdefault(element.source_element_ids[0], []).append((concept.label, edge.edge_type))

        assert by_element == {
            "A": [("Authentication", EdgeType.DEFINES)],
            "B": [("Authentication", EdgeType.DEFINES)],
            "X": [("Authentication", EdgeType.IMPLEMENTS)],
            "C": [("Logging", EdgeType.DEFINES)],
            "Y": [("Misc", EdgeType.IMPLEMENTS)],
        }

    def test_missing_element_node_is_reported(self, synth, repo, ctx, merge_result, d1_elements):
        synth.create_element_nodes(ctx, Dataset.D1, d1_elements)
        report = synth.build_concept_graph(ctx, merge_result)

        assert not report.ok
        assert sorted(e.target for e in report.errors) == ["X", "Y"]
        assert report.edges_written == 3

    def test_failed_edges_do_not_stop_synthesis(self, ctx, merge_result, d1_elements, d2_elements):
        repo = MemoryRepository()
        repo._graph = FlakyGraphRepository(repo.sessions, reject_element_ids=["B"])
        repo.sessions.create(AuditSession(id="session-1"))
        synth = GraphSynthesizer(repo)
        synth.create_element_nodes(ctx, Dataset.D1, d1_elements)
        synth.create_element_nodes(ctx, Dataset.D2, d2_elements)

        report = synth.build_concept_graph(ctx, merge_result)

        assert [(e.operation, e.target) for e in report.errors] == [("insert_edge", "B")]
        assert report.edges_written == 4
        assert report.to_dict()["errorCount"] == 1

    def test_rebuild_keeps_one_concept_node(self, seeded, repo, ctx, merge_result):
        seeded.build_concept_graph(ctx, merge_result)
        second = seeded.build_concept_graph(ctx, merge_result)
        concepts = [n for n in _nodes(repo) if n.node_type is NodeType.CONCEPT]
        assert len(concepts) == 3
        assert len(_edges(repo)) == 5
        assert second.edges_written == 0
        assert second.ok

    def test_rebuild_links_only_new_members(self, seeded, repo, ctx, merge_result):
        seeded.build_concept_graph(ctx, merge_result)
        node, report = seeded.create_concept(ctx, "Cleanup", "", "theme", "both", ["B", "Y"])
        again, second = seeded.create_concept(ctx, "Cleanup", "", "theme", "both", ["B", "Y"])

        assert again.id == node.id
        assert report.edges_written == 2
        assert second.edges_written == 0
        links = [(e.source_node_id, e.target_node_id) for e in _edges(repo)]
        assert len(links) == len(set(links)) == 7


class TestAgentOperations:
    """Test create_concept and link_concepts."""

    def test_create_concept_links_both_sides(self, seeded, repo, ctx):
        node, report = seeded.create_concept(
            ctx, "Cleanup", "Session cleanup", "shared_concept", "both", ["B", "Y", "B"],
        )

        assert node.node_type is NodeType.SHARED_CONCEPT
        assert node.source_element_ids == ["B", "Y"]
        assert report.edges_written == 2
        edge_types = sorted(e.edge_type.value for e in _edges(repo))
        assert edge_types == ["defines", "implements"]

    def test_create_concept_unknown_id(self, seeded, ctx):
        _, report = seeded.create_concept(ctx, "Ghost", "", "theme", "dataset1", ["Z"])
        assert report.errors[0].target == "Z"

    @pytest.mark.parametrize("node_type,source,ids", [
        ("theme", "dataset1", []),
        ("planet", "dataset1", ["A"]),
        ("theme", "dataset9", ["A"]),
        ("d1_element", "dataset1", ["A"]),
    ])
    def test_create_concept_rejects(self, seeded, ctx, node_type, source, ids):
        with pytest.raises(ToolError):
            seeded.create_concept(ctx, "Bad", "", node_type, source, ids)

    def test_link_by_short_id(self, seeded, repo, ctx):
        a, _ = seeded.create_concept(ctx, "One", "", "theme", "dataset1", ["A"])
        b, _ = seeded.create_concept(ctx, "Two", "", "risk", "dataset2", ["X"])

        edge = seeded.link_concepts(ctx, a.id[:8], b.id, "depends_on")

        assert edge.source_node_id == a.id
        assert edge.target_node_id == b.id
        assert edge.label == "depends_on"

    def test_link_unknown_node(self, seeded, ctx):
        a, _ = seeded.create_concept(ctx, "One", "", "theme", "dataset1", ["A"])
        with pytest.raises(ToolError, match="Unknown node"):
            seeded.link_concepts(ctx, a.id, "deadbeef", "relates_to")

    def test_link_unknown_edge_type(self, seeded, ctx):
        with pytest.raises(ToolError):
            seeded.link_concepts(ctx, "a", "b", "loves")
