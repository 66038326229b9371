"""
SQLAlchemy-backed database collaborator.

Provides the two operations the backup core relies on: writing SQL dumps of
schemas, and opening transactions to replay them.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, TextIO

from sqlalchemy import create_engine, inspect, literal_column, select, MetaData
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable, DropTable


logger = logging.getLogger(__name__)

# Never dumped unless explicitly included
SYSTEM_SCHEMAS = ('information_schema', 'performance_schema', 'sys', 'mysql')

SERIALIZABLE = 'SERIALIZABLE'


class DatabaseError(Exception):
    """Raised when a database connection, dump or transaction fails."""

    def __init__(self, message: str, unit: str = None):
        super().__init__(message)
        self.unit = unit


@dataclass
class DumpWriter:
    """A text stream and the schemas to dump into it."""
    schemas: List[str]
    out: TextIO


def database_url(server: str, port: int = 3306, user: str = None, password: str = None,
                 database: str = None, drivername: str = 'mysql+pymysql') -> URL:
    return URL.create(
        drivername,
        username=user,
        password=password,
        host=server,
        port=port,
        database=database
    )


def _literal_row(mapping) -> dict:
    """Row values ready for literal rendering; binary values become hex literals."""
    values = {}
    for key, value in mapping.items():
        if isinstance(value, memoryview):
            value = value.tobytes()
        if isinstance(value, (bytes, bytearray)):
            value = literal_column(f"X'{bytes(value).hex()}'")
        values[key] = value
    return values


class Transaction:
    """One open transaction on a dedicated connection."""

    def __init__(self, connection):
        self.connection = connection
        self._transaction = connection.begin()

    def execute(self, statement: str):
        # no_parameters keeps '%' in dumped literals from being treated as a placeholder
        self.connection.exec_driver_sql(statement, execution_options={'no_parameters': True})

    def commit(self):
        try:
            self._transaction.commit()
        finally:
            self.connection.close()

    def rollback(self):
        try:
            self._transaction.rollback()
        finally:
            self.connection.close()


class Database:
    """
    Database collaborator over a SQLAlchemy engine.

    Args:
        url: SQLAlchemy URL (string or URL object)
        engine: Existing engine to use instead of creating one
    """

    def __init__(self, url=None, engine=None):
        if engine is None and url is None:
            raise ValueError("Either url or engine must be provided")
        self.engine = engine if engine is not None else create_engine(url)

    def list_schemas(self) -> List[str]:
        try:
            return inspect(self.engine).get_schema_names()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to list schemas: {e}") from e

    def dump(self, writers: List[DumpWriter]):
        """
        Write every writer's schemas to its stream as SQL statements.

        Each statement ends with ';' on its last line, which is what the
        restore replay relies on.

        Raises:
            DatabaseError: If reading from the database fails
        """
        try:
            with self.engine.connect() as connection:
                default_schema = inspect(connection).default_schema_name
                for writer in writers:
                    for schema in writer.schemas:
                        logger.debug("Dumping schema %s", schema)
                        self._dump_schema(connection, schema, default_schema, writer.out)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to dump database: {e}") from e

    def _dump_schema(self, connection, schema: str, default_schema: Optional[str], out: TextIO):
        dialect = connection.dialect
        reflect_schema = None if schema == default_schema else schema

        metadata = MetaData()
        metadata.reflect(bind=connection, schema=reflect_schema)

        out.write(f"-- schema: {schema}\n\n")

        for table in metadata.sorted_tables:
            out.write(str(DropTable(table, if_exists=True).compile(dialect=dialect)).strip() + ";\n")
            out.write(str(CreateTable(table).compile(dialect=dialect)).strip() + ";\n")

            result = connection.execution_options(stream_results=True).execute(select(table))
            for row in result:
                insert = table.insert().values(_literal_row(row._mapping))
                compiled = insert.compile(dialect=dialect, compile_kwargs={'literal_binds': True})
                out.write(str(compiled).strip() + ";\n")

            out.write("\n")

    def begin(self, isolation_level: str = SERIALIZABLE) -> Transaction:
        """
        Open a transaction on a new connection.

        Raises:
            DatabaseError: If the connection cannot be opened
        """
        try:
            connection = self.engine.connect().execution_options(isolation_level=isolation_level)
            return Transaction(connection)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to begin transaction: {e}") from e

    def dispose(self):
        self.engine.dispose()
