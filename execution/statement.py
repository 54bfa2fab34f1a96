"""
Statements and mutations sent to the database
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True)
class Statement:
    """SQL text plus named parameters"""
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sql": self.sql}
        if self.params:
            body["params"] = dict(self.params)
        return body


class MutationOp(Enum):
    INSERT = "insert"
    UPDATE = "update"
    INSERT_OR_UPDATE = "insertOrUpdate"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """A buffered write, applied atomically at Commit"""
    op: MutationOp
    table: str
    columns: Sequence[str] = ()
    values: Sequence[Sequence[Any]] = ()
    keys: Sequence[Sequence[Any]] = ()

    @classmethod
    def insert(cls, table: str, columns: Sequence[str], values: Sequence[Any]) -> 'Mutation':
        return cls(MutationOp.INSERT, table, tuple(columns), (tuple(values),))

    @classmethod
    def update(cls, table: str, columns: Sequence[str], values: Sequence[Any]) -> 'Mutation':
        return cls(MutationOp.UPDATE, table, tuple(columns), (tuple(values),))

    @classmethod
    def insert_or_update(cls, table: str, columns: Sequence[str], values: Sequence[Any]) -> 'Mutation':
        return cls(MutationOp.INSERT_OR_UPDATE, table, tuple(columns), (tuple(values),))

    @classmethod
    def replace(cls, table: str, columns: Sequence[str], values: Sequence[Any]) -> 'Mutation':
        return cls(MutationOp.REPLACE, table, tuple(columns), (tuple(values),))

    @classmethod
    def delete(cls, table: str, keys: Sequence[Sequence[Any]]) -> 'Mutation':
        return cls(MutationOp.DELETE, table, keys=tuple(tuple(key) for key in keys))

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used by the REST transport"""
        if self.op == MutationOp.DELETE:
            return {"delete": {"table": self.table, "keySet": {"keys": [list(k) for k in self.keys]}}}
        return {
            self.op.value: {
                "table": self.table,
                "columns": list(self.columns),
                "values": [list(row) for row in self.values]
            }
        }


def mutations_to_dicts(mutations: Optional[List[Mutation]]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in (mutations or [])]
