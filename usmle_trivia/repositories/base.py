"""
Base Repository

Base class for all table repositories.
Provides common PostgREST operations on a single table.
"""

from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from usmle_trivia.backend.base import ApplicationError
from usmle_trivia.db.supabase import SupabaseClient, eq

SchemaType = TypeVar("SchemaType", bound=BaseModel)


class BaseRepository:
    """
    Base repository class with common CRUD operations.

    All repositories should inherit from this class.
    """
    table: str = ""
    columns: str = "*"

    def __init__(self, client: SupabaseClient):
        """
        Initialize repository.

        Args:
            client: Supabase client (possibly bound to a user's token)
        """
        self.client = client

    # -----------------------------
    # Get Element By id
    # -----------------------------
    async def get_by_id(self, id: Any) -> Optional[Dict[str, Any]]:
        """Get a row by primary key."""
        return await self.client.select_one(
            self.table,
            columns=self.columns,
            filters={"id": eq(id)},
            operation=f"get {self.table}",
        )

    # -----------------------------
    # Get all Records
    # -----------------------------
    async def get_all(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = 100,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Get rows with optional filters and ordering."""
        return await self.client.select(
            self.table,
            columns=self.columns,
            filters=filters,
            order=order_by,
            limit=limit,
            operation=f"list {self.table}",
        )

    # -----------------------------
    # Row -> Schema
    # -----------------------------
    @staticmethod
    def parse(model: Type[SchemaType], row: Dict[str, Any], operation: str) -> SchemaType:
        """Validate a row into a schema; a bad shape is an ApplicationError."""
        try:
            return model.model_validate(row)
        except ValidationError as e:
            raise ApplicationError(
                f"unexpected row shape for {model.__name__}: {e.error_count()} error(s)",
                operation=operation,
            ) from e
