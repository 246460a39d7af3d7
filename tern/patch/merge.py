"""Line-based three-way merge.

`merge3(base, ours, theirs)` walks the regions where all three sides agree
and, between them, takes whichever side changed. When both sides changed the
same region differently the merge fails and returns None.
"""

from difflib import SequenceMatcher

from tern.constants import MERGE_MIN_SIMILARITY, MERGE_SLACK


def _matching_blocks(a: list[str], b: list[str]) -> list[tuple[int, int, int]]:
    return [tuple(m) for m in SequenceMatcher(None, a, b, autojunk=False).get_matching_blocks()]


def _sync_regions(base: list[str], ours: list[str], theirs: list[str]) -> list[tuple[int, int, int, int, int, int]]:
    a_blocks = _matching_blocks(base, ours)
    b_blocks = _matching_blocks(base, theirs)
    regions = []
    i = j = 0
    # Both block lists end with a (len, len, 0) sentinel.
    while i < len(a_blocks) - 1 and j < len(b_blocks) - 1:
        a_base, a_start, a_len = a_blocks[i]
        b_base, b_start, b_len = b_blocks[j]
        lo = max(a_base, b_base)
        hi = min(a_base + a_len, b_base + b_len)
        if lo < hi:
            regions.append(
                (
                    lo,
                    hi,
                    a_start + (lo - a_base),
                    a_start + (hi - a_base),
                    b_start + (lo - b_base),
                    b_start + (hi - b_base),
                )
            )
        if a_base + a_len < b_base + b_len:
            i += 1
        else:
            j += 1
    regions.append((len(base), len(base), len(ours), len(ours), len(theirs), len(theirs)))
    return regions


def merge3(base: list[str], ours: list[str], theirs: list[str]) -> list[str] | None:
    result: list[str] = []
    iz = ia = ib = 0
    for z_start, z_end, a_start, a_end, b_start, b_end in _sync_regions(base, ours, theirs):
        base_chunk = base[iz:z_start]
        ours_chunk = ours[ia:a_start]
        theirs_chunk = theirs[ib:b_start]
        if ours_chunk == theirs_chunk or theirs_chunk == base_chunk:
            result.extend(ours_chunk)
        elif ours_chunk == base_chunk:
            result.extend(theirs_chunk)
        else:
            return None
        result.extend(base[z_start:z_end])
        iz, ia, ib = z_end, a_end, b_end
    return result


def align_region(
    lines: list[str],
    context: list[str],
    expected: int,
    max_drift: int,
    slack: int = MERGE_SLACK,
) -> tuple[int, int] | None:
    """Find the live region most similar to `context` near `expected`.

    Returns (start, length) or None when nothing within the drift window is
    similar enough to merge against.
    """
    if not context:
        return None
    best: tuple[float, int, int, int] | None = None  # (ratio, -|offset|, start, length)
    matcher = SequenceMatcher(None, autojunk=False)
    matcher.set_seq2(context)
    for offset in range(-max_drift, max_drift + 1):
        start = expected + offset
        if start < 0 or start > len(lines):
            continue
        for length in range(max(len(context) - slack, 1), len(context) + slack + 1):
            if start + length > len(lines):
                break
            matcher.set_seq1(lines[start : start + length])
            ratio = matcher.ratio()
            key = (ratio, -abs(offset), start, length)
            if best is None or key[:2] > best[:2]:
                best = key
    if best is None or best[0] < MERGE_MIN_SIMILARITY:
        return None
    return best[2], best[3]
