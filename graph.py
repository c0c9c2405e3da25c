"""
Relationship engine: tag co-occurrence graphs and stash graphs.

Both graphs are derived on every call from one read snapshot of the store;
nothing here writes.
"""

import logging
from collections import Counter
from itertools import combinations
from typing import Dict, List, Optional, Set

from sqlalchemy import func, or_, select

from models import Stash, StashVersion, to_iso
from schemas import StashGraphQuery, TagGraphQuery, parse_model
from utils import clamp, parse_time_bound

logger = logging.getLogger(__name__)

MAX_DEPTH = 5
TEMPORAL_WINDOW_HOURS = 24.0


# Tag graph ---------------------------------------------------------------------
def _tag_lists(session, include_archived: bool) -> List[List[str]]:
    stmt = select(Stash)
    if not include_archived:
        stmt = stmt.where(Stash.archived.is_(False))
    return [stash.tags for stash in session.scalars(stmt)]


def _co_occurrence(tag_lists: List[List[str]]):
    counts = Counter()
    weights = Counter()
    for tags in tag_lists:
        counts.update(tags)
        for pair in combinations(sorted(set(tags)), 2):
            weights[pair] += 1
    return counts, weights


def _neighborhood(focus: str, weights: Counter, depth: int, min_weight: Optional[int]) -> Set[str]:
    """Tags reachable from ``focus`` in at most ``depth`` hops over qualifying edges."""
    adjacency: Dict[str, Set[str]] = {}
    for (a, b), weight in weights.items():
        if min_weight and weight < min_weight:
            continue
        adjacency.setdefault(a, set()).add(b)
        adjacency.setdefault(b, set()).add(a)

    included = {focus}
    frontier = {focus}
    for _ in range(depth):
        frontier = {
            neighbor
            for tag in frontier
            for neighbor in adjacency.get(tag, ())
            if neighbor not in included
        }
        if not frontier:
            break
        included |= frontier
    return included


def get_tag_graph(store, tag: str = None, depth: int = 1, min_weight: int = None,
                  min_count: int = None, limit: int = None, include_archived: bool = True) -> Dict:
    """
    Tag co-occurrence graph.

    Nodes are tags with the number of stashes carrying them; an edge joins two
    tags and weighs the number of stashes carrying both. With ``tag`` the graph
    is narrowed to that tag's neighborhood, expanded breadth-first up to
    ``depth`` hops (clamped to 1..5) along edges of at least ``min_weight``.
    Nodes are then filtered by ``min_count`` and cut to the ``limit`` most used;
    edges are those among the kept nodes. Archived stashes count unless
    ``include_archived`` is False, matching ``stashes.get_all_tags``.

    Returns:
        ``{"nodes": [{"tag", "count"}], "edges": [{"source", "target", "weight"}],
        "stash_count": n}`` plus ``filter`` when focused
    """
    options = parse_model(TagGraphQuery, {
        'tag': tag or None,
        'depth': depth,
        'min_weight': min_weight or None,
        'min_count': min_count or None,
        'limit': limit or None,
        'include_archived': include_archived,
    })
    hops = clamp(options.depth, 1, MAX_DEPTH)

    with store.session() as session:
        tag_lists = _tag_lists(session, options.include_archived)

    counts, weights = _co_occurrence(tag_lists)
    result = {'nodes': [], 'edges': [], 'stash_count': len(tag_lists)}
    if options.tag:
        result['filter'] = {'tag': options.tag, 'depth': hops}
        if options.tag not in counts:
            return result
        included = _neighborhood(options.tag, weights, hops, options.min_weight)
    else:
        included = set(counts)

    nodes = [
        {'tag': name, 'count': count}
        for name, count in counts.items()
        if name in included and (not options.min_count or count >= options.min_count)
    ]
    nodes.sort(key=lambda n: (-n['count'], n['tag']))
    if options.limit:
        nodes = nodes[:options.limit]

    kept = {n['tag'] for n in nodes}
    edges = [
        {'source': a, 'target': b, 'weight': weight}
        for (a, b), weight in weights.items()
        if a in kept and b in kept and (not options.min_weight or weight >= options.min_weight)
    ]
    edges.sort(key=lambda e: (-e['weight'], e['source'], e['target']))

    result['nodes'] = nodes
    result['edges'] = edges
    return result


# Stash graph -------------------------------------------------------------------
def _stash_node(stash: Stash) -> Dict:
    return {
        'id': stash.id,
        'type': 'stash',
        'label': stash.name or 'Untitled',
        'created_at': to_iso(stash.created_at),
        'updated_at': to_iso(stash.updated_at),
        'version': stash.version,
        'archived': stash.archived,
        'file_count': len(stash.files),
        'total_size': stash.total_size,
        'tags': stash.tags,
    }


def _candidates(session, options: StashGraphQuery) -> List[Stash]:
    """Stashes passing the tag and time filters, most recently updated first."""
    since = parse_time_bound(options.since)
    until = parse_time_bound(options.until, end_of_day=True)

    stmt = select(Stash).where(*Stash.filter_clauses(options.tag))
    # A stash is in range if it was created or updated inside [since, until]
    if since and until:
        stmt = stmt.where(or_(
            Stash.created_at.between(since, until),
            Stash.updated_at.between(since, until),
        ))
    elif since:
        stmt = stmt.where(or_(Stash.created_at >= since, Stash.updated_at >= since))
    elif until:
        stmt = stmt.where(or_(Stash.created_at <= until, Stash.updated_at <= until))

    stmt = stmt.order_by(Stash.updated_at.desc(), Stash.id.asc())
    if options.limit > 0:
        stmt = stmt.limit(options.limit)
    return list(session.scalars(stmt))


def _relation_edges(stashes: List[Stash], min_shared_tags: int) -> tuple:
    nodes = []
    edges = []
    tag_counts = Counter()
    for stash in stashes:
        tag_counts.update(stash.tags)
        for name in stash.tags:
            edges.append({'source': stash.id, 'target': f'tag:{name}', 'type': 'has_tag', 'weight': 1})
    for name, count in sorted(tag_counts.items(), key=lambda item: (-item[1], item[0])):
        nodes.append({'id': f'tag:{name}', 'type': 'tag', 'label': name, 'count': count})

    tag_sets = {stash.id: set(stash.tags) for stash in stashes}
    for left, right in combinations(stashes, 2):
        shared = [name for name in left.tags if name in tag_sets[right.id]]
        if len(shared) >= min_shared_tags:
            source, target = sorted((left.id, right.id))
            edges.append({
                'source': source,
                'target': target,
                'type': 'shared_tags',
                'weight': len(shared),
                'metadata': {'shared_tags': shared},
            })
    return nodes, edges


def _temporal_edges(stashes: List[Stash]) -> List[Dict]:
    """Join stashes created within a day of each other; closer means heavier."""
    edges = []
    for left, right in combinations(stashes, 2):
        hours = abs((left.created_at - right.created_at).total_seconds()) / 3600.0
        if 0 < hours <= TEMPORAL_WINDOW_HOURS:
            edges.append({
                'source': left.id,
                'target': right.id,
                'type': 'temporal_proximity',
                'weight': max(0.1, 1.0 - hours / TEMPORAL_WINDOW_HOURS),
                'metadata': {'time_delta_hours': round(hours, 1)},
            })
    return edges


def _version_lineage(session, stash_ids: List[str]) -> tuple:
    """
    Version nodes for each stash with ``version_of`` edges chaining each
    version to its successor (the newest to the stash itself) and
    ``restored_from`` edges from a restore to the version it copied.
    """
    rows = session.execute(
        select(
            StashVersion.stash_id,
            StashVersion.version,
            StashVersion.created_by,
            StashVersion.created_at,
            StashVersion.change_summary,
            StashVersion.restored_from,
        )
        .where(StashVersion.stash_id.in_(stash_ids))
        .order_by(StashVersion.stash_id, StashVersion.version)
    ).all()

    by_stash: Dict[str, list] = {}
    for row in rows:
        by_stash.setdefault(row.stash_id, []).append(row)

    nodes = []
    edges = []
    for stash_id in stash_ids:
        versions = by_stash.get(stash_id, [])
        numbers = {row.version for row in versions}
        successor = stash_id
        for row in reversed(versions):
            node_id = f'version:{stash_id}:{row.version}'
            nodes.append({
                'id': node_id,
                'type': 'version',
                'label': f'v{row.version}',
                'stash_id': stash_id,
                'version_number': row.version,
                'created_by': row.created_by,
                'created_at': to_iso(row.created_at),
                'change_summary': dict(row.change_summary or {}),
            })
            edges.append({'source': node_id, 'target': successor, 'type': 'version_of', 'weight': 1})
            successor = node_id
        for row in versions:
            if row.restored_from and row.restored_from in numbers:
                edges.append({
                    'source': f'version:{stash_id}:{row.version}',
                    'target': f'version:{stash_id}:{row.restored_from}',
                    'type': 'restored_from',
                    'weight': 1,
                })
    return nodes, edges


def get_stash_graph(store, mode: str = "relations", since: str = None, until: str = None,
                    tag: str = None, limit: int = 200, include_versions: bool = False,
                    min_shared_tags: int = 1) -> Dict:
    """
    Stash relationship graph in one of three modes.

    - ``relations``: stash and tag nodes, ``has_tag`` edges, and
      ``shared_tags`` edges between stashes sharing at least
      ``min_shared_tags`` tags (weight = shared count).
    - ``timeline``: stash nodes ordered by creation time with
      ``temporal_proximity`` edges between stashes created within 24 hours.
    - ``versions``: stash nodes; with ``include_versions`` also version
      nodes linked by ``version_of`` and ``restored_from`` edges.

    ``tag``, ``since`` and ``until`` narrow the candidate stashes first;
    ``limit`` keeps the most recently updated ones (0 means no cap).

    Returns:
        ``{"nodes", "edges", "mode", "time_range": {"min", "max"}, "total_stashes"}``
    """
    options = parse_model(StashGraphQuery, {
        'mode': mode or 'relations',
        'since': since or None,
        'until': until or None,
        'tag': tag or None,
        'limit': store.config.GRAPH_NODE_LIMIT if limit is None else limit,
        'include_versions': bool(include_versions),
        'min_shared_tags': min_shared_tags or 1,
    })

    with store.session() as session:
        total = session.scalar(select(func.count(Stash.id)))
        stashes = _candidates(session, options)
        if options.mode == 'timeline':
            stashes.sort(key=lambda s: (s.created_at, s.id))

        nodes = [_stash_node(stash) for stash in stashes]
        edges: List[Dict] = []
        if options.mode == 'relations':
            tag_nodes, tag_edges = _relation_edges(stashes, options.min_shared_tags)
            nodes.extend(tag_nodes)
            edges.extend(tag_edges)
        elif options.mode == 'timeline':
            edges.extend(_temporal_edges(stashes))
        elif options.include_versions and stashes:
            version_nodes, version_edges = _version_lineage(session, [s.id for s in stashes])
            nodes.extend(version_nodes)
            edges.extend(version_edges)

        created = sorted(stash.created_at for stash in stashes)

    logger.debug("Stash graph (%s): %d nodes, %d edges", options.mode, len(nodes), len(edges))
    return {
        'nodes': nodes,
        'edges': edges,
        'mode': options.mode,
        'time_range': {
            'min': to_iso(created[0]) if created else '',
            'max': to_iso(created[-1]) if created else '',
        },
        'total_stashes': total,
    }
