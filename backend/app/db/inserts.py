"""Race-safe row creation for per-user records"""
from typing import List

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_if_missing(db: Session, model, index_elements: List[str], **values) -> None:
    """INSERT ... ON CONFLICT DO NOTHING on a unique key. Does not commit.

    When two transactions create the same row, one inserts and the other
    silently keeps the existing row; both can then lock it with FOR UPDATE.
    """
    dialect = db.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"No conflict-free insert for dialect {dialect}")
    db.execute(insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements))
