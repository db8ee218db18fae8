"""Storage collaborator: transactions over an asyncpg pool."""

from occrace.storage.transactions import TransactionHandle, affected_rows

__all__ = ["TransactionHandle", "affected_rows"]
