from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class EntitySpec:
    name: str
    table: str
    key_fields: tuple[str, ...]
    date_fields: tuple[str, ...] = ()
    numeric_fields: tuple[str, ...] = ()
    order_by: str = "SERIALKEY"
    date_filter_column: str = "ADDDATE"
    task_type_column: Optional[str] = None

    @property
    def collection(self) -> str:
        return self.name


TASKDETAIL = EntitySpec(
    name="taskdetail",
    table="CSWMS_wmwhse_TASKDETAIL",
    key_fields=("WHSEID", "TASKDETAILKEY"),
    date_fields=(
        "STARTTIME", "ENDTIME", "RELEASEDATE", "ADDDATE", "EDITDATE",
        "ORIGINALSTARTTIME", "ORIGINALENDTIME", "REQUESTEDSHIPDATE",
        "EXT_UDF_DATE1", "EXT_UDF_DATE2", "EXT_UDF_DATE3", "EXT_UDF_DATE4", "EXT_UDF_DATE5",
    ),
    numeric_fields=(
        "UOMQTY", "QTY", "TAREWGT", "NETWGT", "GROSSWGT",
        "EXT_UDF_FLOAT1", "EXT_UDF_FLOAT2", "EXT_UDF_FLOAT3", "EXT_UDF_FLOAT4", "EXT_UDF_FLOAT5",
    ),
    task_type_column="TASKTYPE",
)

ORDERS = EntitySpec(
    name="orders",
    table="CSWMS_wmwhse_ORDERS",
    key_fields=("WHSEID", "ORDERKEY"),
    date_fields=("ORDERDATE", "DELIVERYDATE", "ADDDATE", "EDITDATE"),
)

ORDERDETAIL = EntitySpec(
    name="orderdetail",
    table="CSWMS_wmwhse_ORDERDETAIL",
    key_fields=("WHSEID", "ORDERKEY", "ORDERLINENUMBER"),
    date_fields=("ADDDATE", "EDITDATE"),
    numeric_fields=(
        "QTYORDERED", "QTYPICKED", "QTYSHIPPED", "OPENQTY",
        "ALLOCATEDQTY", "PICKEDQTY", "SHIPPEDQTY", "UOMQTY",
    ),
)

RECEIPT = EntitySpec(
    name="receipt",
    table="CSWMS_wmwhse_RECEIPT",
    key_fields=("WHSEID", "RECEIPTKEY"),
    date_fields=(
        "RECEIPTDATE", "STATUSDATE", "SCHEDULEDARRIVALDATE", "ACTUALARRIVALDATE",
        "CLOSEDDATE", "ADDDATE", "EDITDATE", "EFFECTIVEDATE",
    ),
    numeric_fields=(
        "TOTALCUBIC", "TOTALGROSS", "TOTALNET", "TOTALCASES", "TOTALPALLETS",
        "TOTALVALUE", "TOTALLINES", "TOTALUNITS", "TOTALWEIGHT",
    ),
)

RECEIPTDETAIL = EntitySpec(
    name="receiptdetail",
    table="CSWMS_wmwhse_RECEIPTDETAIL",
    key_fields=("WHSEID", "RECEIPTKEY", "RECEIPTLINENUMBER"),
    date_fields=("STATUSDATE", "ADDDATE", "EDITDATE", "EFFECTIVEDATE"),
    numeric_fields=("QTYEXPECTED", "QTYRECEIVED", "QTYREJECTED", "UOMQTY"),
)

ENTITIES: dict[str, EntitySpec] = {
    spec.name: spec for spec in (TASKDETAIL, ORDERS, ORDERDETAIL, RECEIPT, RECEIPTDETAIL)
}


def get_entity(name: str) -> EntitySpec:
    """Look up an entity by name (case-insensitive). Raises KeyError for unknown entities."""
    key = (name or "").strip().lower()
    if key not in ENTITIES:
        raise KeyError(f"Unknown entity: {name}")
    return ENTITIES[key]
