from typing import Any, Dict, List, Optional, Sequence

from contractnest_edge.domain.schemas import PaginationParams

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


def _parse_int(raw: Optional[str], fallback: int) -> int:
    if raw is None:
        return fallback
    try:
        return int(str(raw).strip())
    except ValueError:
        return fallback


def parse_pagination_params(page: Optional[str], limit: Optional[str]) -> Optional[PaginationParams]:
    """
    Parse page/limit query params.

    Returns None when neither is supplied so callers keep the unpaginated
    (but still capped) listing.
    """
    if not page and not limit:
        return None

    page_num = max(1, _parse_int(page, 1))
    limit_num = min(max(1, _parse_int(limit, DEFAULT_PAGE_SIZE)), MAX_PAGE_SIZE)
    return PaginationParams(page=page_num, limit=limit_num, offset=(page_num - 1) * limit_num)


def paginate(
    items: Sequence[Any],
    pagination: Optional[PaginationParams],
    max_unpaginated: int = MAX_PAGE_SIZE,
) -> List[Any]:
    if pagination is None:
        return list(items[:max_unpaginated])
    return list(items[pagination.offset : pagination.offset + pagination.limit])


def paginated_response(
    items: List[Any],
    pagination: Optional[PaginationParams],
    total: int,
) -> Dict[str, Any]:
    if pagination is None:
        return {"items": items}
    return {
        "items": items,
        "pagination": {
            "page": pagination.page,
            "limit": pagination.limit,
            "total": total,
            "has_more": pagination.offset + pagination.limit < total,
        },
    }
