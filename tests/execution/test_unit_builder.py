"""Tests for flowsync.execution.unit."""

from flowsync.execution.unit import TEMP_UNIT_PREFIX, build_unit
from flowsync.flows.models import SyncAction, SyncConfig, new_operation


def _op(**config):
    return new_operation(
        "gdrive",
        "local",
        source_path="/photos",
        target_path="/backup/photos",
        sync_config=SyncConfig(**config),
    )


class TestBuildUnit:
    def test_two_nodes_one_edge(self):
        unit = build_unit(_op())
        assert len(unit.nodes) == 2
        assert len(unit.edges) == 1
        source, target = unit.nodes
        assert (source.remote, source.path) == ("gdrive", "/photos")
        assert (target.remote, target.path) == ("local", "/backup/photos")
        assert unit.edge.source_id == source.id
        assert unit.edge.target_id == target.id

    def test_sync_config_copied_verbatim(self):
        op = _op(action=SyncAction.BI, dry_run=True, excluded_paths=("*.tmp",))
        unit = build_unit(op)
        assert unit.edge.sync_config == op.sync_config
        assert unit.edge.action == "bi"

    def test_ids_unique_per_call(self):
        op = _op()
        first, second = build_unit(op), build_unit(op)
        assert first.id != second.id
        assert first.edge.id != second.edge.id
        assert {n.id for n in first.nodes}.isdisjoint({n.id for n in second.nodes})

    def test_temp_marked_name(self):
        unit = build_unit(_op())
        assert unit.name.startswith(TEMP_UNIT_PREFIX)
        assert unit.name.endswith("__")
        assert unit.id.startswith("board-")

    def test_custom_prefix(self):
        unit = build_unit(_op(), name_prefix="__scratch_")
        assert unit.name.startswith("__scratch_")

    def test_stream_key_and_operation_link(self):
        op = _op()
        unit = build_unit(op)
        assert unit.stream_key == unit.id
        assert unit.operation_id == op.id

    def test_to_dict(self):
        data = build_unit(_op()).to_dict()
        assert [n["remote_name"] for n in data["nodes"]] == ["gdrive", "local"]
        assert data["edges"][0]["action"] == "push"
        assert data["edges"][0]["sync_config"]["action"] == "push"
