"""Execution unit - the throwaway work descriptor handed to the sync engine.

Each operation run gets a fresh unit: exactly two nodes (source and
target) and one edge between them carrying the operation's
:class:`~flowsync.flows.models.SyncConfig`. The unit is submitted, awaited
and deleted; it never outlives its run.

Manifesto:
    The engine speaks in graphs of remotes and edges. Translating one
    operation into a one-edge graph keeps the engine contract unchanged
    while the core stays strictly sequential.

Tags:
    flowsync, execution, work-descriptor, engine-contract

Doc-Types:
    api-reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from flowsync.flows.models import Operation, SyncConfig, generate_id

__all__ = ["UnitNode", "UnitEdge", "ExecutionUnit", "build_unit", "TEMP_UNIT_PREFIX"]

TEMP_UNIT_PREFIX = "__temp_"

# Cosmetic layout; the engine ignores coordinates.
_SOURCE_POSITION = (100.0, 100.0)
_TARGET_POSITION = (400.0, 100.0)


@dataclass(frozen=True)
class UnitNode:
    """One endpoint (remote + path)."""

    id: str
    remote: str
    path: str
    label: str = ""
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "remote_name": self.remote,
            "path": self.path,
            "label": self.label,
            "x": self.x,
            "y": self.y,
        }


@dataclass(frozen=True)
class UnitEdge:
    """The single source → target sync edge."""

    id: str
    source_id: str
    target_id: str
    sync_config: SyncConfig

    @property
    def action(self) -> str:
        return self.sync_config.action.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "action": self.action,
            "sync_config": self.sync_config.to_dict(),
        }


@dataclass(frozen=True)
class ExecutionUnit:
    """Ephemeral unit of work submitted to the engine."""

    id: str
    """Engine-visible id (``board-<timestamp>-<random>``)"""

    name: str
    """Temp-marked name; stale units are found by this prefix at startup"""

    nodes: tuple[UnitNode, ...]
    edges: tuple[UnitEdge, ...]

    operation_id: str | None = None
    """Operation this unit was built from (bookkeeping only)"""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def edge(self) -> UnitEdge:
        return self.edges[0]

    @property
    def stream_key(self) -> str:
        """Key under which the engine tags this unit's log output."""
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "created_at": self.created_at.isoformat(),
        }


def build_unit(operation: Operation, *, name_prefix: str = TEMP_UNIT_PREFIX) -> ExecutionUnit:
    """Build a fresh execution unit for *operation*.

    Pure apart from id generation: every call returns new, collision
    resistant ids for the unit, both nodes and the edge.

    Example:
        >>> op = new_operation("gdrive", "local")
        >>> unit = build_unit(op)
        >>> unit.edge.source_id == unit.nodes[0].id
        True
    """
    source = UnitNode(
        id=f"node-{generate_id()}",
        remote=operation.source_remote,
        path=operation.source_path,
        label=operation.source_remote,
        x=_SOURCE_POSITION[0],
        y=_SOURCE_POSITION[1],
    )
    target = UnitNode(
        id=f"node-{generate_id()}",
        remote=operation.target_remote,
        path=operation.target_path,
        label=operation.target_remote,
        x=_TARGET_POSITION[0],
        y=_TARGET_POSITION[1],
    )
    edge = UnitEdge(
        id=f"edge-{generate_id()}",
        source_id=source.id,
        target_id=target.id,
        sync_config=operation.sync_config,
    )
    return ExecutionUnit(
        id=f"board-{generate_id()}",
        name=f"{name_prefix}{generate_id()}__",
        nodes=(source, target),
        edges=(edge,),
        operation_id=operation.id,
    )
