#  HDR Backend - Bracket Grouping
#
#  Turns an order's brackets into HDR image requests
#  ([{bracket_ids: [...]}, ...]) according to a grouping strategy.
#  Pure functions, no I/O.
#
#  Depends on: models/enums.py
#  Used by:    services/processing.py

from hdr_backend.models.enums import BracketGrouping

Grouping = BracketGrouping | str | list[list[str]]


def _chunk(ids: list[str], size: int) -> list[list[str]]:
    size = max(1, size)
    return [ids[i:i + size] for i in range(0, len(ids), size)]


def group_auto(ids: list[str], brackets_per_image: int) -> list[list[str]]:
    """Sequential fixed-size chunks; the last one may be short."""
    return _chunk(ids, brackets_per_image)


def group_by_upload(brackets: list[dict], brackets_per_image: int) -> list[list[str]]:
    """One group per metadata.group_id, in first-seen order.

    Brackets without a group are auto-chunked among themselves and
    appended after the named groups.
    """
    groups: dict[str, list[str]] = {}
    ungrouped: list[str] = []
    for b in brackets:
        group_id = (b.get("metadata") or {}).get("group_id")
        if group_id:
            groups.setdefault(str(group_id), []).append(b["bracket_id"])
        else:
            ungrouped.append(b["bracket_id"])
    return list(groups.values()) + group_auto(ungrouped, brackets_per_image)


def group_explicit(ids: list[str], requested: list[list[str]]) -> list[list[str]]:
    """Keep requested groups whose members all belong to the order."""
    known = set(ids)
    return [list(g) for g in requested if g and all(bid in known for bid in g)]


def group_brackets(
    brackets: list[dict],
    strategy: Grouping | None = None,
    brackets_per_image: int = 3,
) -> list[list[str]]:
    """Return bracket_id groups, one per HDR image to be produced.

    Falls back to auto chunking when the chosen strategy yields nothing.
    """
    ids = [b["bracket_id"] for b in brackets]
    if not ids:
        return []

    if isinstance(strategy, list):
        result = group_explicit(ids, strategy)
    else:
        mode = BracketGrouping(strategy or BracketGrouping.BY_UPLOAD_GROUP)
        if mode == BracketGrouping.ALL:
            result = [ids]
        elif mode == BracketGrouping.INDIVIDUAL:
            result = [[bid] for bid in ids]
        elif mode == BracketGrouping.AUTO:
            result = group_auto(ids, brackets_per_image)
        else:
            result = group_by_upload(brackets, brackets_per_image)

    return result or group_auto(ids, brackets_per_image)


def describe_grouping(strategy: Grouping | None) -> str:
    if isinstance(strategy, list):
        return "explicit"
    if isinstance(strategy, BracketGrouping):
        return strategy.value
    return strategy or BracketGrouping.BY_UPLOAD_GROUP.value
