from typing import Any, Mapping, Optional

from ionsync.services.entities import EntitySpec


def _quote(value: Any) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def _where_clause(entity: EntitySpec, warehouse_id: Optional[str], filters: Mapping[str, Any]) -> str:
    conditions = []
    if warehouse_id:
        conditions.append(f"WHSEID = {_quote(warehouse_id)}")
    if filters.get("start_date"):
        conditions.append(f"{entity.date_filter_column} >= {_quote(filters['start_date'])}")
    if filters.get("end_date"):
        conditions.append(f"{entity.date_filter_column} <= {_quote(filters['end_date'])}")
    if filters.get("task_type") and entity.task_type_column:
        conditions.append(f"{entity.task_type_column} = {_quote(filters['task_type'])}")
    return f" WHERE {' AND '.join(conditions)}" if conditions else ""


def build_count_query(
    entity: EntitySpec,
    warehouse_id: Optional[str] = None,
    filters: Optional[Mapping[str, Any]] = None,
) -> str:
    where = _where_clause(entity, warehouse_id, filters or {})
    return f'SELECT COUNT(*) AS count FROM "{entity.table}"{where}'


def build_page_query(
    entity: EntitySpec,
    offset: int,
    limit: int,
    warehouse_id: Optional[str] = None,
    filters: Optional[Mapping[str, Any]] = None,
) -> str:
    # Stable ORDER BY keeps LIMIT/OFFSET windows disjoint across pages
    where = _where_clause(entity, warehouse_id, filters or {})
    return (
        f'SELECT * FROM "{entity.table}"{where}'
        f" ORDER BY {entity.order_by} LIMIT {int(limit)} OFFSET {int(offset)}"
    )
