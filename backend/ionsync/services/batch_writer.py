import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from pymongo import ASCENDING, UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError

from ionsync.exceptions import StoreError, WriteError
from ionsync.services.entities import ENTITIES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpsertOperation:
    filter: dict[str, Any]
    update: dict[str, Any]

    def to_mongo(self) -> UpdateOne:
        return UpdateOne(self.filter, self.update, upsert=True)


@dataclass
class WriteResult:
    inserted: int = 0
    modified: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)


def build_operations(documents: Iterable[dict[str, Any]], key_fields: Sequence[str]) -> list[UpsertOperation]:
    """Turn transformed documents into upsert-by-natural-key operations.

    The filter only contains the key fields, and the update sets every field of
    the document, so writing the same document twice leaves exactly one
    document for that key.
    """
    operations = []
    for document in documents:
        missing = [key for key in key_fields if document.get(key) in (None, "")]
        if missing:
            raise ValueError(f"Document is missing natural key field(s): {', '.join(missing)}")
        operations.append(
            UpsertOperation(
                filter={key: document[key] for key in key_fields},
                update={"$set": dict(document)},
            )
        )
    return operations


class MongoDocumentStore:
    def __init__(self, database) -> None:
        self.database = database

    async def ensure_indexes(self) -> None:
        for spec in ENTITIES.values():
            await self.database[spec.collection].create_index(
                [(key, ASCENDING) for key in spec.key_fields],
                unique=True,
                name=f"{spec.collection}_natural_key",
            )
        logger.info("Natural key indexes created/verified for %d collections", len(ENTITIES))

    async def bulk_upsert(self, collection: str, operations: Sequence[UpsertOperation]) -> WriteResult:
        if not operations:
            return WriteResult()
        try:
            result = await self.database[collection].bulk_write(
                [op.to_mongo() for op in operations],
                ordered=False,
            )
        except BulkWriteError as e:
            # Unordered bulk writes report what did get applied
            details = e.details or {}
            write_errors = details.get("writeErrors", [])
            logger.warning(
                "Bulk upsert into %s partially failed: %d of %d operations rejected",
                collection, len(write_errors), len(operations),
            )
            return WriteResult(
                inserted=details.get("nUpserted", 0),
                modified=details.get("nModified", 0),
                errors=len(write_errors),
                messages=[str(err.get("errmsg", err)) for err in write_errors],
            )
        except PyMongoError as e:
            raise WriteError(f"Bulk upsert into {collection} failed: {e}") from e
        return WriteResult(inserted=result.upserted_count, modified=result.modified_count)

    async def count_documents(self, collection: str) -> int:
        try:
            return await self.database[collection].estimated_document_count()
        except PyMongoError as e:
            raise StoreError(f"Counting documents in {collection} failed: {e}") from e
