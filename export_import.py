"""
Export/Import utilities for the whole vault.

The export is the full relational snapshot: stashes, their current files,
their versions and the versions' files. Import accepts the same shape and
applies it in one transaction under an explicit collision policy.
"""

import enum
import logging
from collections import defaultdict
from typing import Any, Dict, List

from sqlalchemy import delete, select

import search
from errors import ConflictError, ValidationError
from models import (
    AccessLog,
    SearchTerm,
    Stash,
    StashFile,
    StashTag,
    StashVersion,
    StashVersionFile,
    Tag,
    new_id,
    to_iso,
    utcnow,
)
from schemas import ImportBundle, parse_model
from stashes import record_version, set_stash_tags
from utils import detect_language

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = '1.0'


class ImportPolicy(enum.Enum):
    """What to do when an imported stash id already exists."""

    REPLACE_ALL = 'replace_all'  # wipe every stash first, then insert
    OVERWRITE = 'overwrite'      # replace colliding stashes, keep the rest
    SKIP = 'skip'                # keep the stored stash, ignore the incoming one
    ERROR = 'error'              # refuse the whole import

    @classmethod
    def parse(cls, value) -> 'ImportPolicy':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ', '.join(p.value for p in cls)
            raise ValidationError(f"Unknown import policy {value!r}; expected one of {choices}") from None


def export_all_data(store) -> Dict[str, Any]:
    """
    Export every stash with its files and full version history.

    Returns:
        Dictionary with ``stashes``, ``stash_files``, ``stash_versions`` and
        ``stash_version_files`` lists
    """
    export_data = {
        'version': EXPORT_FORMAT_VERSION,
        'exported_at': to_iso(utcnow()),
        'stashes': [],
        'stash_files': [],
        'stash_versions': [],
        'stash_version_files': [],
    }

    with store.session() as session:
        for stash in session.scalars(select(Stash).order_by(Stash.created_at, Stash.id)):
            export_data['stashes'].append({
                'id': stash.id,
                'name': stash.name,
                'description': stash.description,
                'tags': stash.tags,
                'metadata': dict(stash.meta or {}),
                'archived': stash.archived,
                'version': stash.version,
                'created_at': to_iso(stash.created_at),
                'updated_at': to_iso(stash.updated_at),
            })
            for f in stash.files:
                export_data['stash_files'].append({
                    'id': f.id,
                    'stash_id': stash.id,
                    'filename': f.filename,
                    'content': f.content,
                    'language': f.language,
                    'sort_order': f.sort_order,
                })

        versions = session.scalars(
            select(StashVersion).order_by(StashVersion.stash_id, StashVersion.version)
        )
        for version in versions:
            export_data['stash_versions'].append({
                'id': version.id,
                'stash_id': version.stash_id,
                'version': version.version,
                'name': version.name,
                'description': version.description,
                'tags': list(version.tags or []),
                'metadata': dict(version.meta or {}),
                'created_by': version.created_by,
                'change_summary': dict(version.change_summary or {}),
                'restored_from': version.restored_from,
                'created_at': to_iso(version.created_at),
            })
            for f in version.files:
                export_data['stash_version_files'].append({
                    'id': f.id,
                    'version_id': version.id,
                    'filename': f.filename,
                    'content': f.content,
                    'language': f.language,
                    'sort_order': f.sort_order,
                })

    logger.info(
        "Exported %d stash(es), %d version(s)",
        len(export_data['stashes']),
        len(export_data['stash_versions']),
    )
    return export_data


def _group_rows(bundle: ImportBundle):
    """Index bundle rows by owner and check they hang together."""
    stash_ids = [s.id for s in bundle.stashes]
    duplicates = sorted({i for i in stash_ids if stash_ids.count(i) > 1})
    if duplicates:
        raise ValidationError("Duplicate stash ids in import", ids=duplicates)
    known = set(stash_ids)

    files = defaultdict(list)
    for f in bundle.stash_files:
        if f.stash_id not in known:
            raise ValidationError("File references an unknown stash", stash_id=f.stash_id)
        files[f.stash_id].append(f)
    for stash_id, rows in files.items():
        names = [f.filename for f in rows]
        if len(names) != len(set(names)):
            raise ValidationError("Duplicate filenames in imported stash", stash_id=stash_id)

    versions = defaultdict(list)
    version_ids = set()
    for v in bundle.stash_versions:
        if v.stash_id not in known:
            raise ValidationError("Version references an unknown stash", stash_id=v.stash_id)
        if v.id in version_ids:
            raise ValidationError("Duplicate version ids in import", version_id=v.id)
        version_ids.add(v.id)
        versions[v.stash_id].append(v)

    version_files = defaultdict(list)
    for vf in bundle.stash_version_files:
        if vf.version_id not in version_ids:
            raise ValidationError("Version file references an unknown version", version_id=vf.version_id)
        version_files[vf.version_id].append(vf)

    for stash in bundle.stashes:
        rows = sorted(versions.get(stash.id, []), key=lambda v: v.version)
        numbers = [v.version for v in rows]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValidationError("Version numbers must run 1..n without gaps", stash_id=stash.id)
        # n == version, or the live state is one past the stored history
        if numbers and len(numbers) not in (stash.version, stash.version - 1):
            raise ValidationError(
                "Stash version does not match its version history",
                stash_id=stash.id,
                version=stash.version,
                versions=len(numbers),
            )
        versions[stash.id] = rows
    return files, versions, version_files


def _ordered(rows) -> List:
    return [row for _, row in sorted(enumerate(rows), key=lambda item: (item[1].sort_order, item[0]))]


def _wipe_all(session) -> None:
    for model in (AccessLog, SearchTerm, StashVersionFile, StashVersion, StashFile, StashTag, Stash, Tag):
        session.execute(delete(model))


def _remove_stash(session, stash: Stash) -> None:
    session.execute(delete(AccessLog).where(AccessLog.stash_id == stash.id))
    search.remove_stash_from_index(session, stash.id)
    session.delete(stash)


def _insert_stash(session, row, files, versions, version_files) -> bool:
    """Insert one stash; returns True when a v1 snapshot had to be backfilled."""
    created_at = row.created_at or utcnow()
    stash = Stash(
        id=row.id,
        name=row.name,
        description=row.description,
        meta=dict(row.metadata),
        archived=row.archived,
        version=row.version,
        created_at=created_at,
        updated_at=row.updated_at or created_at,
    )
    session.add(stash)
    set_stash_tags(session, stash, row.tags)
    stash.files = [
        StashFile(
            id=new_id(),
            filename=f.filename,
            content=f.content,
            language=f.language or detect_language(f.filename),
            sort_order=order,
        )
        for order, f in enumerate(_ordered(files))
    ]

    for v in versions:
        session.add(StashVersion(
            id=new_id(),
            stash_id=stash.id,
            version=v.version,
            name=v.name,
            description=v.description,
            tags=list(v.tags),
            meta=dict(v.metadata),
            created_by=v.created_by,
            change_summary=dict(v.change_summary),
            restored_from=v.restored_from,
            created_at=v.created_at or created_at,
            files=[
                StashVersionFile(
                    id=new_id(),
                    filename=vf.filename,
                    content=vf.content,
                    language=vf.language or detect_language(vf.filename),
                    sort_order=order,
                )
                for order, vf in enumerate(_ordered(version_files.get(v.id, [])))
            ],
        ))
    session.flush()

    backfilled = False
    if not versions:
        stash.version = 1
        backfilled = True
    if len(versions) < stash.version:
        # The live state was never snapshotted; record it as the latest version
        record_version(session, stash, 'api')
    search.index_stash(session, stash)
    return backfilled


def import_all_data(store, data: Dict[str, Any], on_conflict) -> Dict[str, int]:
    """
    Import a snapshot produced by ``export_all_data``.

    Args:
        store: Open store
        data: Export dictionary
        on_conflict: ``ImportPolicy`` (or its value) deciding what happens to
            stash ids that already exist; there is no default

    Returns:
        Counts of imported stashes, files, versions and version files, plus
        ``skipped``, ``replaced`` and ``backfilled`` stashes

    Raises:
        ValidationError: If the snapshot is malformed or inconsistent
        ConflictError: If ``on_conflict`` is ERROR and any id already exists
    """
    policy = ImportPolicy.parse(on_conflict)
    bundle = parse_model(ImportBundle, data)
    files, versions, version_files = _group_rows(bundle)

    results = {
        'stashes': 0,
        'files': 0,
        'versions': 0,
        'version_files': 0,
        'skipped': 0,
        'replaced': 0,
        'backfilled': 0,
    }

    with store.transaction() as session:
        if policy is ImportPolicy.REPLACE_ALL:
            _wipe_all(session)
            existing = {}
        else:
            incoming = [s.id for s in bundle.stashes]
            existing = {
                stash.id: stash
                for stash in session.scalars(select(Stash).where(Stash.id.in_(incoming)))
            } if incoming else {}

        if existing and policy is ImportPolicy.ERROR:
            raise ConflictError("Import would overwrite existing stashes", ids=sorted(existing))

        for row in bundle.stashes:
            current = existing.get(row.id)
            if current is not None:
                if policy is ImportPolicy.SKIP:
                    results['skipped'] += 1
                    continue
                _remove_stash(session, current)
                session.flush()
                results['replaced'] += 1

            stash_versions = versions.get(row.id, [])
            if _insert_stash(session, row, files.get(row.id, []), stash_versions, version_files):
                results['backfilled'] += 1
            results['stashes'] += 1
            results['files'] += len(files.get(row.id, []))
            results['versions'] += len(stash_versions)
            results['version_files'] += sum(len(version_files.get(v.id, [])) for v in stash_versions)

    logger.info(
        "Import (%s): %d stash(es), %d skipped, %d replaced, %d backfilled",
        policy.value,
        results['stashes'],
        results['skipped'],
        results['replaced'],
        results['backfilled'],
    )
    return results
