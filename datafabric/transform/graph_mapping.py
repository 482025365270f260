"""
Relational -> graph mapping

A pure, stateless function from a ChangeEvent's row images and the table's
mapping metadata to graph mutations. Nothing is remembered between calls;
the mapping is regenerated from configuration every time.

- entity tables: one node per row, one edge per non-null foreign key
- join tables (``edge_from``/``edge_to``): one edge per row, no node
"""
from typing import Any, Dict, List, Optional

from ..events.models import ChangeEvent, GraphMutation, GraphMutationKind, format_record_id
from ..utils.config import ForeignKeyConfig, TableConfig
from .projection import project_fields


def node_label(table: TableConfig) -> str:
    return table.graph.label or table.name


def is_join_table(table: TableConfig) -> bool:
    graph = table.graph
    return graph.edge_from is not None and graph.edge_to is not None


def _target_id(fk: ForeignKeyConfig, row: Optional[Dict[str, Any]]) -> Optional[str]:
    if not row:
        return None
    value = row.get(fk.column)
    if value is None:
        return None
    return format_record_id(fk.target_table, (value,))


def _label_for(table_name: str, labels: Optional[Dict[str, str]]) -> str:
    if labels and table_name in labels:
        return labels[table_name]
    return table_name


def map_event(
    event: ChangeEvent,
    table: TableConfig,
    labels: Optional[Dict[str, str]] = None
) -> List[GraphMutation]:
    """
    Derive graph mutations for one change event

    Args:
        event: the change event
        table: mapping metadata of ``event.source_table``
        labels: table name -> node label for FK targets (defaults to the table name)

    Returns:
        Ordered mutations; the node upsert precedes its edges, edge deletes
        for re-pointed foreign keys precede the new edge upserts.
    """
    if is_join_table(table):
        return _map_join_row(event, table, labels)

    node_id = event.record_id
    label = node_label(table)

    if event.is_delete:
        mutations = [
            GraphMutation(
                kind=GraphMutationKind.EDGE_DELETE,
                label=fk.rel_type,
                from_id=node_id,
                from_label=label,
                to_id=target,
                to_label=_label_for(fk.target_table, labels),
            )
            for fk in table.graph.foreign_keys
            for target in [_target_id(fk, event.before)]
            if target is not None
        ]
        mutations.append(GraphMutation(kind=GraphMutationKind.NODE_DELETE, label=label, node_id=node_id))
        return mutations

    mutations = [GraphMutation(
        kind=GraphMutationKind.NODE_UPSERT,
        label=label,
        node_id=node_id,
        properties=project_fields(event.after, table),
    )]
    for fk in table.graph.foreign_keys:
        old_target = _target_id(fk, event.before)
        new_target = _target_id(fk, event.after)
        target_label = _label_for(fk.target_table, labels)
        if old_target is not None and old_target != new_target:
            mutations.append(GraphMutation(
                kind=GraphMutationKind.EDGE_DELETE,
                label=fk.rel_type,
                from_id=node_id,
                from_label=label,
                to_id=old_target,
                to_label=target_label,
            ))
        if new_target is not None:
            mutations.append(GraphMutation(
                kind=GraphMutationKind.EDGE_UPSERT,
                label=fk.rel_type,
                from_id=node_id,
                from_label=label,
                to_id=new_target,
                to_label=target_label,
            ))
    return mutations


def _map_join_row(
    event: ChangeEvent,
    table: TableConfig,
    labels: Optional[Dict[str, str]]
) -> List[GraphMutation]:
    graph = table.graph
    edge_type = graph.edge_type or table.name.upper()
    from_label = _label_for(graph.edge_from.target_table, labels)
    to_label = _label_for(graph.edge_to.target_table, labels)

    def edge(kind: GraphMutationKind, row: Dict[str, Any], properties: Dict[str, Any]) -> Optional[GraphMutation]:
        from_id = _target_id(graph.edge_from, row)
        to_id = _target_id(graph.edge_to, row)
        if from_id is None or to_id is None:
            return None
        return GraphMutation(
            kind=kind,
            label=edge_type,
            node_id=event.record_id,  # the join row owning the edge
            from_id=from_id,
            to_id=to_id,
            from_label=from_label,
            to_label=to_label,
            properties=properties,
        )

    mutations: List[GraphMutation] = []
    if event.before is not None:
        old_edge = edge(GraphMutationKind.EDGE_DELETE, event.before, {})
        new_endpoints = (
            (_target_id(graph.edge_from, event.after), _target_id(graph.edge_to, event.after))
            if event.after is not None else None
        )
        if old_edge is not None and (old_edge.from_id, old_edge.to_id) != new_endpoints:
            mutations.append(old_edge)
    if event.after is not None:
        new_edge = edge(GraphMutationKind.EDGE_UPSERT, event.after, project_fields(event.after, table))
        if new_edge is not None:
            mutations.append(new_edge)
    if event.is_delete and not mutations:
        # no before image: the store resolves the edge from its owning row
        mutations.append(GraphMutation(kind=GraphMutationKind.EDGE_DELETE, label=edge_type, node_id=event.record_id))
    return mutations
