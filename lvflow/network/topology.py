"""Radial network topology resolution.

Breadth-first traversal from the single source node over the undirected
cable adjacency. Produces the parent tree, the circuits (cables incident to
the source, numbered by cable id order), the cable path of every node back
to the source, and the sets of connected and disconnected elements.

Structural problems are detected before any electrical computation and
raised as ``InvalidTopologyError``:
  - no source node or more than one
  - duplicate node ids
  - a cable referencing an unknown node, or both ends on the same node
  - a cycle in the part of the network reached from the source

Nodes not reached from the source are reported as disconnected; they are
not an error and are excluded from electrical aggregates.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from lvflow.errors import InvalidTopologyError
from lvflow.network.network_model import Cable, Node


@dataclass
class Circuit:
    """Subtree hanging off one cable directly connected to the source."""
    number: int
    cable_id: str
    head_node_id: str
    node_ids: list[str] = field(default_factory=list)
    cable_ids: list[str] = field(default_factory=list)


@dataclass
class NetworkTopology:
    """Resolved radial tree rooted at the source."""
    source_id: str
    order: list[str]                       # BFS order, source first
    parent: dict[str, str | None]
    parent_cable: dict[str, str | None]
    children: dict[str, list[tuple[str, str]]]  # node -> [(cable_id, child_id)]
    depth: dict[str, int]
    circuits: list[Circuit]
    node_circuit: dict[str, int]
    disconnected_node_ids: set[str]
    disconnected_cable_ids: set[str]

    @property
    def connected_node_ids(self) -> set[str]:
        return set(self.order)

    @property
    def connected_cable_ids(self) -> set[str]:
        return {c for c in self.parent_cable.values() if c is not None}

    def is_connected(self, node_id: str) -> bool:
        return node_id in self.parent

    def path_to_source(self, node_id: str) -> list[str]:
        """Cable ids from the source down to ``node_id``."""
        if node_id not in self.parent:
            raise KeyError(f"Node {node_id} is not connected to the source")
        path: list[str] = []
        current = node_id
        while self.parent_cable[current] is not None:
            path.append(self.parent_cable[current])
            current = self.parent[current]
        path.reverse()
        return path

    def downstream_nodes(self, node_id: str, include_self: bool = False) -> list[str]:
        """Nodes of the subtree rooted at ``node_id`` in BFS order."""
        result = [node_id] if include_self else []
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for _, child in self.children.get(current, []):
                result.append(child)
                queue.append(child)
        return result

    def path_between(self, ancestor_id: str, node_id: str) -> list[str]:
        """Cable ids from ``ancestor_id`` down to ``node_id`` (empty if not an ancestor)."""
        full = self.path_to_source(node_id)
        prefix = self.path_to_source(ancestor_id)
        if full[:len(prefix)] != prefix:
            return []
        return full[len(prefix):]

    def ordered_cable_ids(self) -> list[str]:
        """Cables for presentation: by circuit number, then BFS order."""
        ordered: list[str] = []
        for circuit in self.circuits:
            ordered.extend(circuit.cable_ids)
        return ordered

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "circuits": [
                {
                    "number": c.number,
                    "cable_id": c.cable_id,
                    "head_node_id": c.head_node_id,
                    "node_count": len(c.node_ids),
                }
                for c in self.circuits
            ],
            "disconnected_node_ids": sorted(self.disconnected_node_ids),
            "disconnected_cable_ids": sorted(self.disconnected_cable_ids),
        }


def _find_source(nodes: list[Node]) -> Node:
    sources = [n for n in nodes if n.is_source]
    if not sources:
        raise InvalidTopologyError(InvalidTopologyError.NO_SOURCE, "Network has no source node")
    if len(sources) > 1:
        raise InvalidTopologyError(
            InvalidTopologyError.MULTIPLE_SOURCES,
            f"Network has {len(sources)} source nodes: {', '.join(n.id for n in sources)}",
        )
    return sources[0]


def resolve_topology(nodes: list[Node], cables: list[Cable]) -> NetworkTopology:
    """Build the radial tree from an unordered node/cable set.

    Raises:
        InvalidTopologyError: on any structural problem (see module docstring).
    """
    node_ids: set[str] = set()
    for n in nodes:
        if n.id in node_ids:
            raise InvalidTopologyError(
                InvalidTopologyError.DUPLICATE_NODE, f"Duplicate node id {n.id}", n.id,
            )
        node_ids.add(n.id)

    source = _find_source(nodes)

    adjacency: dict[str, list[Cable]] = {nid: [] for nid in node_ids}
    for cable in sorted(cables, key=lambda c: c.id):
        for end in (cable.node_a_id, cable.node_b_id):
            if end not in node_ids:
                raise InvalidTopologyError(
                    InvalidTopologyError.UNKNOWN_NODE,
                    f"Cable {cable.id} references unknown node {end}",
                    cable.id,
                )
        if cable.node_a_id == cable.node_b_id:
            raise InvalidTopologyError(
                InvalidTopologyError.CYCLE,
                f"Cable {cable.id} connects node {cable.node_a_id} to itself",
                cable.id,
            )
        adjacency[cable.node_a_id].append(cable)
        adjacency[cable.node_b_id].append(cable)

    parent: dict[str, str | None] = {source.id: None}
    parent_cable: dict[str, str | None] = {source.id: None}
    children: dict[str, list[tuple[str, str]]] = {source.id: []}
    depth: dict[str, int] = {source.id: 0}
    order: list[str] = [source.id]
    used_cables: set[str] = set()

    queue = deque([source.id])
    while queue:
        current = queue.popleft()
        for cable in adjacency[current]:
            if cable.id in used_cables:
                continue
            used_cables.add(cable.id)
            neighbour = cable.other_end(current)
            if neighbour in parent:
                raise InvalidTopologyError(
                    InvalidTopologyError.CYCLE,
                    f"Cable {cable.id} closes a loop at node {neighbour}",
                    cable.id,
                )
            parent[neighbour] = current
            parent_cable[neighbour] = cable.id
            children[current].append((cable.id, neighbour))
            children[neighbour] = []
            depth[neighbour] = depth[current] + 1
            order.append(neighbour)
            queue.append(neighbour)

    circuits: list[Circuit] = []
    node_circuit: dict[str, int] = {}
    for number, (cable_id, head) in enumerate(sorted(children[source.id]), start=1):
        circuit = Circuit(number=number, cable_id=cable_id, head_node_id=head)
        circuits.append(circuit)

    by_head = {c.head_node_id: c for c in circuits}
    for nid in order[1:]:
        if parent[nid] == source.id:
            circuit = by_head[nid]
        else:
            circuit = circuits[node_circuit[parent[nid]] - 1]
        node_circuit[nid] = circuit.number
        circuit.node_ids.append(nid)
        circuit.cable_ids.append(parent_cable[nid])

    disconnected_nodes = node_ids - set(order)
    disconnected_cables = {c.id for c in cables} - used_cables

    return NetworkTopology(
        source_id=source.id,
        order=order,
        parent=parent,
        parent_cable=parent_cable,
        children=children,
        depth=depth,
        circuits=circuits,
        node_circuit=node_circuit,
        disconnected_node_ids=disconnected_nodes,
        disconnected_cable_ids=disconnected_cables,
    )


def connected_nodes(nodes: list[Node], cables: list[Cable]) -> set[str]:
    """Ids of nodes reachable from any source node.

    Tolerant lookup for collaborators greying out unreachable parts of a
    network: never raises, ignores cables to unknown nodes.
    """
    known = {n.id for n in nodes}
    adjacency: dict[str, list[str]] = {nid: [] for nid in known}
    for cable in cables:
        if cable.node_a_id in known and cable.node_b_id in known:
            adjacency[cable.node_a_id].append(cable.node_b_id)
            adjacency[cable.node_b_id].append(cable.node_a_id)

    reached = {n.id for n in nodes if n.is_source}
    queue = deque(reached)
    while queue:
        current = queue.popleft()
        for neighbour in adjacency[current]:
            if neighbour not in reached:
                reached.add(neighbour)
                queue.append(neighbour)
    return reached


def connected_cables(nodes: list[Node], cables: list[Cable]) -> set[str]:
    """Ids of cables whose both ends are reachable from a source node."""
    reached = connected_nodes(nodes, cables)
    return {c.id for c in cables if c.node_a_id in reached and c.node_b_id in reached}
