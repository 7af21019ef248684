"""
Recipient resolution for one job run.

An empty targeting configuration means "everyone", and an exclusion always
wins over an inclusion, whichever way the user got into the base set.
"""

from __future__ import annotations

from typing import Iterable, List, Set

from .types import JobTargets


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    out: List[str] = []
    for value in values:
        key = str(value)
        if key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


def resolve_targets(
    include_user_ids: Iterable[str],
    exclude_user_ids: Iterable[str],
    pack_ids: Iterable[str],
    pack_member_ids: Iterable[str],
    all_user_ids: Iterable[str],
) -> JobTargets:
    includes = _dedupe(include_user_ids)
    excludes = _dedupe(exclude_user_ids)
    packs = _dedupe(pack_ids)

    base_user_ids = list(includes)
    if packs:
        base_user_ids = _dedupe([*base_user_ids, *pack_member_ids])
    if not base_user_ids:
        base_user_ids = _dedupe(all_user_ids)

    excluded = set(excludes)
    final_user_ids = [user_id for user_id in base_user_ids if user_id not in excluded]

    return JobTargets(
        include_user_ids=includes,
        exclude_user_ids=excludes,
        pack_ids=packs,
        final_user_ids=final_user_ids,
    )
