"""
Stash store operations: versioned create/update/restore, reads and stats.

Every content-changing write appends a ``StashVersion`` that mirrors the new
state, so a stash's ``version`` always equals the number of its versions and
the current file set always equals the files of the latest version.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select

import search
from errors import NotFoundError, ValidationError
from models import (
    ACCESS_SOURCES,
    AccessLog,
    Stash,
    StashFile,
    StashTag,
    StashVersion,
    StashVersionFile,
    Tag,
    new_id,
    utcnow,
)
from schemas import ListQuery, StashCreate, StashUpdate, parse_model
from utils import detect_language

logger = logging.getLogger(__name__)

TOP_LANGUAGES = 10


def check_source(source: str) -> str:
    if source not in ACCESS_SOURCES:
        raise ValidationError(
            f"Invalid source {source!r}; expected one of {', '.join(ACCESS_SOURCES)}"
        )
    return source


def check_version_number(value: Any) -> int:
    """Reject anything that is not a positive integer version number."""
    if isinstance(value, bool):
        raise ValidationError("Version must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Version must be a positive integer") from None
    if number < 1 or str(number) != str(value).strip():
        raise ValidationError("Version must be a positive integer")
    return number


# Change tracking -------------------------------------------------------------
def _file_key(f: Dict) -> tuple:
    return (f['content'], f.get('language') or '')


def summarize_changes(old: Dict, new: Dict) -> Dict[str, Any]:
    """
    Structural difference between two stash states.

    Both arguments are dicts shaped like ``Stash.to_dict()`` or
    ``StashVersion.to_dict()``. Only changed aspects appear in the result,
    so an empty dict means the states are equivalent.
    """
    summary: Dict[str, Any] = {}
    for field in ('name', 'description'):
        if old.get(field, '') != new.get(field, ''):
            summary[field] = True
    if dict(old.get('metadata') or {}) != dict(new.get('metadata') or {}):
        summary['metadata'] = True

    old_tags = list(old.get('tags') or [])
    new_tags = list(new.get('tags') or [])
    added = [t for t in new_tags if t not in old_tags]
    removed = [t for t in old_tags if t not in new_tags]
    if added or removed:
        summary['tags'] = True
        summary['tags_added'] = added
        summary['tags_removed'] = removed

    old_files = {f['filename']: f for f in old.get('files') or []}
    new_files = {f['filename']: f for f in new.get('files') or []}
    files_added = [name for name in new_files if name not in old_files]
    files_removed = [name for name in old_files if name not in new_files]
    files_changed = [
        name for name in new_files
        if name in old_files and _file_key(new_files[name]) != _file_key(old_files[name])
    ]
    common_old = [name for name in old_files if name in new_files]
    common_new = [name for name in new_files if name in old_files]
    if files_added or files_removed or files_changed or common_old != common_new:
        summary['files'] = True
        if files_added:
            summary['files_added'] = files_added
        if files_removed:
            summary['files_removed'] = files_removed
        if files_changed:
            summary['files_changed'] = files_changed
    return summary


# Internal writers --------------------------------------------------------------
def set_stash_tags(session, stash: Stash, tags: List[str]) -> None:
    """Replace the stash's tags, reusing existing tag rows and links."""
    existing = {}
    if tags:
        existing = {
            tag.name: tag
            for tag in session.scalars(select(Tag).where(Tag.name.in_(tags)))
        }
    links = {link.tag.name: link for link in stash.tag_links}
    new_links = []
    for position, name in enumerate(tags):
        link = links.get(name)
        if link is None:
            tag = existing.get(name)
            if tag is None:
                tag = Tag(name=name)
                session.add(tag)
                existing[name] = tag
            link = StashTag(tag=tag)
        link.position = position
        new_links.append(link)
    stash.tag_links = new_links


def _set_files(stash: Stash, files: List[Dict]) -> None:
    """
    Replace the current file set.

    Rows for filenames that survive are updated in place so the
    (stash_id, filename) uniqueness holds during the flush.
    """
    current = {f.filename: f for f in stash.files}
    new_files = []
    for order, data in enumerate(files):
        row = current.get(data['filename'])
        if row is None:
            row = StashFile(id=new_id(), filename=data['filename'])
        row.content = data.get('content') or ''
        row.language = data.get('language') or detect_language(data['filename'])
        row.sort_order = order
        new_files.append(row)
    stash.files = new_files


def record_version(
    session,
    stash: Stash,
    source: str,
    change_summary: Optional[Dict] = None,
    restored_from: Optional[int] = None,
) -> StashVersion:
    """Append an immutable snapshot of the stash's current state."""
    snapshot = StashVersion(
        id=new_id(),
        stash_id=stash.id,
        version=stash.version,
        name=stash.name,
        description=stash.description,
        tags=list(stash.tags),
        meta=dict(stash.meta or {}),
        created_by=source,
        change_summary=change_summary or {},
        restored_from=restored_from,
        created_at=stash.updated_at,
        files=[
            StashVersionFile(
                id=new_id(),
                filename=f.filename,
                content=f.content,
                language=f.language,
                sort_order=f.sort_order,
            )
            for f in stash.files
        ],
    )
    session.add(snapshot)
    return snapshot


def _resolved_files(files) -> List[Dict]:
    return [
        {
            'filename': f.filename,
            'content': f.content,
            'language': f.language or detect_language(f.filename),
        }
        for f in files
    ]


def _apply_state(session, stash: Stash, state: Dict, source: str, summary: Dict,
                 restored_from: Optional[int] = None) -> None:
    stash.name = state['name']
    stash.description = state['description']
    stash.meta = dict(state['metadata'])
    set_stash_tags(session, stash, state['tags'])
    _set_files(stash, state['files'])
    stash.version += 1
    stash.updated_at = utcnow()
    session.flush()
    record_version(session, stash, source, summary, restored_from)
    search.index_stash(session, stash)


def _get_stash_or_raise(session, stash_id: str) -> Stash:
    stash = session.get(Stash, stash_id)
    if stash is None:
        raise NotFoundError("Stash not found", stash_id=stash_id)
    return stash


# Mutations ---------------------------------------------------------------------
def create_stash(store, data, source: str = "api") -> Dict:
    """
    Create a stash at version 1.

    Args:
        store: Open store
        data: Mapping or ``StashCreate`` with name, description, tags,
            metadata and a non-empty ``files`` list
        source: Origin recorded on the initial version

    Returns:
        The full stash view, file contents included

    Raises:
        ValidationError: If files are missing or any field is malformed
    """
    payload = parse_model(StashCreate, data)
    check_source(source)
    stash_id = new_id()

    with store.transaction(stash_id) as session:
        now = utcnow()
        stash = Stash(
            id=stash_id,
            name=payload.name,
            description=payload.description,
            meta=dict(payload.metadata),
            archived=False,
            version=1,
            created_at=now,
            updated_at=now,
        )
        session.add(stash)
        set_stash_tags(session, stash, payload.tags)
        _set_files(stash, _resolved_files(payload.files))
        session.flush()
        record_version(session, stash, source)
        search.index_stash(session, stash)
        result = stash.to_dict()

    logger.info("Stash created: %s (%d files)", stash_id, len(result['files']))
    return result


def update_stash(store, stash_id: str, data, source: str = "api") -> Dict:
    """
    Apply a partial update.

    Omitted fields are left unchanged; present ``tags``, ``metadata`` and
    ``files`` replace the stored value. A new version is written only when the
    merged state differs from the current one. ``updated_at`` always moves.

    Raises:
        NotFoundError: If the stash does not exist
        ValidationError: If the payload is malformed
    """
    payload = parse_model(StashUpdate, data)
    check_source(source)

    with store.transaction(stash_id) as session:
        stash = _get_stash_or_raise(session, stash_id)
        if payload.present('archived'):
            stash.archived = payload.archived

        current = stash.to_dict()
        merged = {
            'name': payload.name if payload.present('name') else current['name'],
            'description': payload.description if payload.present('description') else current['description'],
            'tags': payload.tags if payload.present('tags') else current['tags'],
            'metadata': payload.metadata if payload.present('metadata') else current['metadata'],
            'files': _resolved_files(payload.files) if payload.present('files') else current['files'],
        }
        summary = summarize_changes(current, merged)

        if summary:
            _apply_state(session, stash, merged, source, summary)
            logger.info("Stash updated: %s -> v%d", stash_id, stash.version)
        else:
            if payload.present('tags'):
                # same tag set, possibly a new display order
                set_stash_tags(session, stash, merged['tags'])
            stash.updated_at = utcnow()
        session.flush()
        result = stash.to_dict()

    return result


def archive_stash(store, stash_id: str, archived: bool) -> Dict:
    """
    Set the archived flag. No version is written and content is untouched.

    Raises:
        NotFoundError: If the stash does not exist
    """
    if not isinstance(archived, bool):
        raise ValidationError("archived must be a boolean")
    with store.transaction(stash_id) as session:
        stash = _get_stash_or_raise(session, stash_id)
        stash.archived = archived
        session.flush()
        result = stash.to_dict()
    logger.info("Stash %s: %s", "archived" if archived else "unarchived", stash_id)
    return result


def delete_stash(store, stash_id: str) -> bool:
    """Delete a stash with its files, versions, tags links, index rows and log."""
    with store.transaction(stash_id) as session:
        stash = session.get(Stash, stash_id)
        if stash is None:
            return False
        session.execute(delete(AccessLog).where(AccessLog.stash_id == stash_id))
        search.remove_stash_from_index(session, stash_id)
        session.delete(stash)
    store.forget_stash_lock(stash_id)
    logger.info("Stash deleted: %s", stash_id)
    return True


def restore_stash_version(store, stash_id: str, version, source: str = "api") -> Optional[Dict]:
    """
    Copy version ``version`` forward as a new version.

    History is never rewound: restoring v2 of a stash at v5 produces v6 with
    v2's content, and v3..v5 stay available.

    Returns:
        The resulting current stash, or None if the stash or version is absent
    """
    number = check_version_number(version)
    check_source(source)

    with store.transaction(stash_id) as session:
        stash = session.get(Stash, stash_id)
        if stash is None:
            return None
        snapshot = session.scalar(
            select(StashVersion).where(
                StashVersion.stash_id == stash_id,
                StashVersion.version == number,
            )
        )
        if snapshot is None:
            return None

        target = snapshot.to_dict()
        summary = summarize_changes(stash.to_dict(), target)
        summary['restored_from'] = number
        _apply_state(session, stash, target, source, summary, restored_from=number)
        result = stash.to_dict()

    logger.info("Stash %s restored from v%d as v%d", stash_id, number, result['version'])
    return result


# Reads -------------------------------------------------------------------------
def stash_exists(store, stash_id: str) -> bool:
    with store.session() as session:
        return session.scalar(select(Stash.id).where(Stash.id == stash_id)) is not None


def get_stash(store, stash_id: str) -> Optional[Dict]:
    with store.session() as session:
        stash = session.get(Stash, stash_id)
        return stash.to_dict() if stash else None


def get_stash_meta(store, stash_id: str) -> Optional[Dict]:
    """Stash view without file contents (filename, language and size only)."""
    with store.session() as session:
        stash = session.get(Stash, stash_id)
        return stash.to_meta_dict() if stash else None


def get_stash_file(store, stash_id: str, filename: str) -> Optional[Dict]:
    """Exact filename lookup in the current file set."""
    with store.session() as session:
        row = session.scalar(
            select(StashFile).where(
                StashFile.stash_id == stash_id,
                StashFile.filename == filename,
            )
        )
        return row.to_dict() if row else None


def list_stashes(store, tag: str = None, archived: bool = None, page: int = 1, limit: int = None) -> Dict:
    """
    List stashes, most recently updated first.

    Ties on ``updated_at`` are broken by id so pages are deterministic.
    A page past the end returns no items but the correct ``total``.
    """
    query = parse_model(ListQuery, {
        'tag': tag or None,
        'archived': archived,
        'page': page,
        'limit': limit or store.config.DEFAULT_PAGE_SIZE,
    })
    clauses = Stash.filter_clauses(query.tag, query.archived)

    with store.session() as session:
        total = session.scalar(select(func.count(Stash.id)).where(*clauses))
        rows = session.scalars(
            select(Stash)
            .where(*clauses)
            .order_by(Stash.updated_at.desc(), Stash.id.asc())
            .limit(query.limit)
            .offset((query.page - 1) * query.limit)
        ).all()
        stashes = [stash.to_list_item() for stash in rows]

    return {'stashes': stashes, 'total': total, 'page': query.page, 'limit': query.limit}


def get_stash_versions(store, stash_id: str) -> List[Dict]:
    """
    Version history in ascending order.

    Raises:
        NotFoundError: If the stash does not exist
    """
    with store.session() as session:
        _get_stash_or_raise(session, stash_id)
        rows = session.scalars(
            select(StashVersion)
            .where(StashVersion.stash_id == stash_id)
            .order_by(StashVersion.version.asc())
        ).all()
        return [row.to_summary() for row in rows]


def get_stash_version(store, stash_id: str, version) -> Optional[Dict]:
    """Exact version lookup; None when absent."""
    number = check_version_number(version)
    with store.session() as session:
        row = session.scalar(
            select(StashVersion).where(
                StashVersion.stash_id == stash_id,
                StashVersion.version == number,
            )
        )
        return row.to_dict() if row else None


def diff_stash_versions(store, stash_id: str, v1, v2) -> Dict:
    """
    Return two snapshots and the changes from ``v1`` to ``v2``.

    The payload is labelled by argument position, not by numeric order, so
    ``diff(5, 2)`` reports version 5 as ``v1``.

    Raises:
        ValidationError: If either number is not positive or they are equal
        NotFoundError: If the stash or either version is missing
    """
    first = check_version_number(v1)
    second = check_version_number(v2)
    if first == second:
        raise ValidationError("Provide two different version numbers")

    with store.session() as session:
        _get_stash_or_raise(session, stash_id)
        rows = {
            row.version: row
            for row in session.scalars(
                select(StashVersion).where(
                    StashVersion.stash_id == stash_id,
                    StashVersion.version.in_([first, second]),
                )
            )
        }
        if first not in rows or second not in rows:
            raise NotFoundError(
                "One or both versions not found",
                stash_id=stash_id,
                missing=[n for n in (first, second) if n not in rows],
            )
        old = rows[first].to_dict()
        new = rows[second].to_dict()

    return {
        'stash_id': stash_id,
        'v1': old,
        'v2': new,
        'changes': summarize_changes(old, new),
    }


def get_all_tags(store, include_archived: bool = True) -> List[Dict]:
    """Tags with the number of stashes carrying them, most used first."""
    with store.session() as session:
        stmt = (
            select(Tag.name, func.count(StashTag.stash_id))
            .join(StashTag, StashTag.tag_id == Tag.id)
            .join(Stash, Stash.id == StashTag.stash_id)
            .group_by(Tag.name)
        )
        if not include_archived:
            stmt = stmt.where(Stash.archived.is_(False))
        rows = session.execute(stmt).all()
    return [
        {'tag': name, 'count': count}
        for name, count in sorted(rows, key=lambda r: (-r[1], r[0]))
    ]


def get_all_metadata_keys(store) -> List[str]:
    keys = set()
    with store.session() as session:
        for meta in session.scalars(select(Stash.meta)):
            keys.update((meta or {}).keys())
    return sorted(keys)


def get_stats(store) -> Dict:
    """Aggregate counts: stashes, files and top languages by file count."""
    with store.session() as session:
        total_stashes = session.scalar(select(func.count(Stash.id)))
        total_files = session.scalar(select(func.count(StashFile.id)))
        count = func.count(StashFile.id)
        rows = session.execute(
            select(StashFile.language, count)
            .where(StashFile.language != '')
            .group_by(StashFile.language)
            .order_by(count.desc(), StashFile.language.asc())
            .limit(TOP_LANGUAGES)
        ).all()
    return {
        'total_stashes': total_stashes,
        'total_files': total_files,
        'top_languages': [{'language': lang, 'count': n} for lang, n in rows],
    }
