"""
Full-text search index over stash names, descriptions, tags, filenames and
file contents.

The index is an inverted table of ``(stash, field, term, frequency)`` rows. It
is rewritten inside the same transaction as every stash mutation, so a query
never sees results that disagree with the stored stashes.
"""

import logging
import math
from typing import Dict, List, Optional

from sqlalchemy import delete, insert, select

from models import SearchTerm, Stash
from schemas import ListQuery, parse_model
from utils import escape_like, make_snippet, term_frequencies, tokenize

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000
MAX_QUERY_TERMS = 50
MAX_TERM_LENGTH = 200

# A hit in the name counts for more than the same hit in file content
FIELD_WEIGHTS = {
    'name': 4.0,
    'tags': 3.0,
    'filenames': 3.0,
    'description': 2.0,
    'content': 1.0,
}

# Match classes: every exact hit outranks any prefix hit, which outranks any substring hit
EXACT = 3
PREFIX = 2
PARTIAL = 1


def _indexed_fields(stash: Stash) -> Dict[str, str]:
    return {
        'name': stash.name or '',
        'description': stash.description or '',
        'tags': ' '.join(stash.tags),
        'filenames': ' '.join(f.filename for f in stash.files),
        'content': '\n'.join(f.content or '' for f in stash.files),
    }


def index_stash(session, stash: Stash) -> int:
    """Replace the index rows of one stash. Returns the number of rows written."""
    remove_stash_from_index(session, stash.id)
    rows = []
    for field, text in _indexed_fields(stash).items():
        for term, frequency in term_frequencies(text).items():
            rows.append({
                'stash_id': stash.id,
                'field': field,
                'term': term[:MAX_TERM_LENGTH],
                'frequency': frequency,
            })
    if rows:
        session.execute(insert(SearchTerm), rows)
    return len(rows)


def remove_stash_from_index(session, stash_id: str) -> None:
    session.execute(delete(SearchTerm).where(SearchTerm.stash_id == stash_id))


def rebuild_search_index(store, stash_ids: Optional[List[str]] = None) -> int:
    """
    Rebuild the index for all stashes, or only for ``stash_ids``.

    Returns:
        Number of stashes indexed
    """
    with store.transaction() as session:
        if stash_ids is None:
            session.execute(delete(SearchTerm))
            stashes = session.scalars(select(Stash)).all()
        else:
            stashes = session.scalars(select(Stash).where(Stash.id.in_(stash_ids))).all()
        for stash in stashes:
            index_stash(session, stash)
    logger.info("Search index rebuilt for %d stash(es)", len(stashes))
    return len(stashes)


def query_terms(query: Optional[str]) -> List[str]:
    """
    Normalize a user query into distinct search terms.

    Over-long queries and queries with too many terms yield no terms.
    """
    text = (query or '').strip()
    if not text or len(text) > MAX_QUERY_LENGTH:
        return []
    terms = []
    for token in tokenize(text):
        if token not in terms:
            terms.append(token)
    if len(terms) > MAX_QUERY_TERMS:
        return []
    return terms


def _match_class(found: str, term: str) -> int:
    if found == term:
        return EXACT
    if found.startswith(term):
        return PREFIX
    return PARTIAL


def _score_matches(session, terms: List[str]) -> Dict[str, tuple]:
    """
    Score stashes that match every term.

    Returns:
        stash id -> (match class total, term-frequency score)
    """
    scores: Dict[str, List[float]] = {}
    for position, term in enumerate(terms):
        pattern = f"%{escape_like(term)}%"
        rows = session.execute(
            select(SearchTerm.stash_id, SearchTerm.field, SearchTerm.term, SearchTerm.frequency)
            .where(SearchTerm.term.like(pattern, escape='\\'))
        ).all()

        best: Dict[str, int] = {}
        weight: Dict[str, float] = {}
        for stash_id, field, found, frequency in rows:
            match = _match_class(found, term)
            best[stash_id] = max(best.get(stash_id, 0), match)
            weight[stash_id] = weight.get(stash_id, 0.0) + (
                match * FIELD_WEIGHTS.get(field, 1.0) * (1.0 + math.log(frequency))
            )

        if position == 0:
            scores = {sid: [best[sid], weight[sid]] for sid in best}
        else:
            scores = {
                sid: [score[0] + best[sid], score[1] + weight[sid]]
                for sid, score in scores.items()
                if sid in best
            }
        if not scores:
            break
    return {sid: (score[0], score[1]) for sid, score in scores.items()}


def _snippets(stash: Stash, terms: List[str]) -> Dict[str, str]:
    fields = _indexed_fields(stash)
    sources = {
        'name': fields['name'],
        'description': fields['description'],
        'tags': fields['tags'],
        'filenames': fields['filenames'],
        'file_content': fields['content'],
    }
    snippets = {}
    for key, text in sources.items():
        snippet = make_snippet(text, terms)
        if snippet:
            snippets[key] = snippet
    return snippets


def search_stashes(store, query: str, tag: str = None, archived: bool = None,
                   page: int = 1, limit: int = None) -> Dict:
    """
    Ranked search.

    Every query term must match somewhere in the stash. Stashes are ranked by
    match class (exact word, then prefix, then substring) and then by a
    field-weighted term-frequency score; ties fall back to recency.

    Returns:
        ``{"stashes": [...], "total": n, "query": query, "page": p, "limit": l}``;
        each item is a list summary plus ``relevance`` and ``snippets``
    """
    options = parse_model(ListQuery, {
        'tag': tag or None,
        'archived': archived,
        'page': page,
        'limit': limit or store.config.SEARCH_PAGE_SIZE,
    })
    result = {'stashes': [], 'total': 0, 'query': query, 'page': options.page, 'limit': options.limit}
    terms = query_terms(query)
    if not terms:
        return result

    with store.session() as session:
        scores = _score_matches(session, terms)
        if not scores:
            return result

        candidates = session.scalars(
            select(Stash).where(
                Stash.id.in_(list(scores)),
                *Stash.filter_clauses(options.tag, options.archived),
            )
        ).all()
        ranked = sorted(
            candidates,
            key=lambda s: (-scores[s.id][0], -scores[s.id][1], -s.updated_at.timestamp(), s.id),
        )
        start = (options.page - 1) * options.limit
        page_items = ranked[start:start + options.limit]

        items = []
        for stash in page_items:
            matches, weight = scores[stash.id]
            item = stash.to_list_item()
            item['relevance'] = round(matches + weight / (weight + 1.0), 6)
            snippets = _snippets(stash, terms)
            if snippets:
                item['snippets'] = snippets
            items.append(item)

    result['stashes'] = items
    result['total'] = len(ranked)
    return result
