"""
Database dump engine.

Each configured connection is dumped to a single file by a driver-specific
strategy:
- mysql: in-process SQL dump through SQLAlchemy (no mysqldump required)
- postgres: pg_dump subprocess
- sqlite: file copy
- mssql: sqlcmd BACKUP DATABASE subprocess
"""

import os
import shutil
import logging
import platform
import subprocess
from decimal import Decimal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import MetaData, String, Table, create_engine, inspect, select, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable

from .errors import (
    BackupTimeoutError,
    ConnectionConfigError,
    DumpCommandError,
    EmptyDumpError,
    UnsupportedDriverError,
)

logger = logging.getLogger(__name__)

DRIVER_ALIASES = {
    'pgsql': 'postgres',
    'postgresql': 'postgres',
    'sqlsrv': 'mssql',
}

INSERT_BATCH_SIZE = 100


@dataclass(frozen=True)
class DumpResult:
    connection: str
    driver: str
    path: str
    size: int


def run_command(args: List[str], timeout: int, env: Optional[Dict[str, str]] = None, **context) -> str:
    """
    Run a dump command and return its standard output.

    Args:
        args: Command and arguments (no shell)
        timeout: Timeout in seconds
        env: Extra environment variables (credentials)
        **context: Error context (connection, driver)

    Raises:
        BackupTimeoutError: If the command exceeds the timeout
        DumpCommandError: If the command cannot start or exits non-zero
    """
    full_env = dict(os.environ)
    full_env.update(env or {})

    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env
        )
    except subprocess.TimeoutExpired:
        raise BackupTimeoutError(f"{args[0]} timed out after {timeout} seconds", timeout=timeout, **context)
    except OSError as e:
        raise DumpCommandError(f"Failed to run {args[0]}: {e}", **context)

    if result.returncode != 0:
        raise DumpCommandError(
            f"{args[0]} exited with code {result.returncode}",
            exit_code=result.returncode,
            command_output=(result.stderr or result.stdout or '').strip(),
            **context
        )

    return result.stdout


class DumpStrategy:
    """Dumps one connection of one driver kind to a file."""

    driver = ''
    extension = 'sql'
    required_fields = ('database',)

    def __init__(self, config, timeout: int = 3600):
        self.config = config
        self.timeout = timeout

    @property
    def context(self) -> Dict[str, str]:
        return {'connection': self.config.name, 'driver': self.driver}

    def validate(self):
        """
        Check the connection descriptor is complete.

        Raises:
            ConnectionConfigError: If a required field is missing
        """
        missing = [name for name in self.required_fields if not getattr(self.config, name)]
        if missing:
            raise ConnectionConfigError(
                f"Connection '{self.config.name}' is missing: {', '.join(missing)}",
                **self.context
            )

    def dump(self, output_path: str):
        raise NotImplementedError


class MySQLDumpStrategy(DumpStrategy):
    """
    Pure SQL dump: reflected CREATE TABLE statements followed by batched
    INSERTs, wrapped with foreign key checks disabled.
    """

    driver = 'mysql'
    extension = 'sql'
    required_fields = ('host', 'database')

    def validate(self):
        # A full URL replaces the individual fields
        if not self.config.url:
            super().validate()

    def _engine(self):
        if self.config.url:
            return create_engine(self.config.url)
        return create_engine(URL.create(
            'mysql+pymysql',
            username=self.config.username,
            password=self.config.password,
            host=self.config.host,
            port=self.config.port,
            database=self.config.database,
        ))

    def _header(self) -> List[str]:
        generated = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
        return [
            "-- MySQL Database Backup",
            f"-- Database: {self.config.database or ''}",
            f"-- Generated: {generated}",
            f"-- Host: {self.config.host or ''}",
            f"-- Python Version: {platform.python_version()}",
            "",
            "SET FOREIGN_KEY_CHECKS=0;",
            'SET SQL_MODE="NO_AUTO_VALUE_ON_ZERO";',
            'SET time_zone = "+00:00";',
            "",
        ]

    @staticmethod
    def format_value(value, dialect) -> str:
        """
        Render a Python value as a SQL literal.

        Args:
            value: Column value
            dialect: SQLAlchemy dialect used for string escaping

        Returns:
            SQL literal
        """
        if value is None:
            return 'NULL'
        if isinstance(value, bool):
            return '1' if value else '0'
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"X'{bytes(value).hex()}'"
        return String().literal_processor(dialect=dialect)(str(value))

    def dump(self, output_path: str):
        try:
            engine = self._engine()
        except SQLAlchemyError as e:
            raise ConnectionConfigError(f"Invalid MySQL connection settings: {e}", **self.context)
        dialect = engine.dialect
        quote = dialect.identifier_preparer.quote

        try:
            with engine.connect() as conn, open(output_path, 'w', encoding='utf-8') as out:
                out.write('\n'.join(self._header()) + '\n')

                metadata = MetaData()
                for table_name in inspect(conn).get_table_names():
                    table = Table(table_name, metadata, autoload_with=conn)
                    quoted = quote(table_name)

                    out.write(f"\n--\n-- Table structure for table {quoted}\n--\n\n")
                    out.write(f"DROP TABLE IF EXISTS {quoted};\n")
                    out.write(str(CreateTable(table).compile(dialect=dialect)).strip() + ";\n\n")

                    self._dump_rows(conn, table, out, dialect)

                out.write("SET FOREIGN_KEY_CHECKS=1;\n")

        except SQLAlchemyError as e:
            raise DumpCommandError(f"MySQL dump failed: {e}", **self.context)
        except OSError as e:
            raise DumpCommandError(f"Failed to write dump file: {e}", path=output_path, **self.context)
        finally:
            engine.dispose()

    def _dump_rows(self, conn, table, out, dialect):
        quote = dialect.identifier_preparer.quote
        columns = ', '.join(quote(column.name) for column in table.columns)
        insert = f"INSERT INTO {quote(table.name)} ({columns}) VALUES\n"

        batch = []
        wrote_header = False
        for row in conn.execute(select(table)):
            if not wrote_header:
                out.write(f"--\n-- Dumping data for table {quote(table.name)}\n--\n\n")
                wrote_header = True

            batch.append('(' + ', '.join(self.format_value(value, dialect) for value in row) + ')')
            if len(batch) == INSERT_BATCH_SIZE:
                out.write(insert + ',\n'.join(batch) + ';\n')
                batch = []

        if batch:
            out.write(insert + ',\n'.join(batch) + ';\n')
        if wrote_header:
            out.write('\n')


class PostgresDumpStrategy(DumpStrategy):
    driver = 'postgres'
    extension = 'sql'

    def dump(self, output_path: str):
        if shutil.which('pg_dump') is None:
            raise DumpCommandError(
                'pg_dump command not found. Please install PostgreSQL client.',
                **self.context
            )

        args = [
            'pg_dump',
            f"--username={self.config.username or 'postgres'}",
            f"--host={self.config.host or '127.0.0.1'}",
            f"--port={self.config.port or 5432}",
            '--no-owner',
            '--no-acl',
            '--clean',
            '--if-exists',
            f"--file={output_path}",
            self.config.database,
        ]

        run_command(args, self.timeout, env={'PGPASSWORD': self.config.password or ''}, **self.context)


class SQLiteDumpStrategy(DumpStrategy):
    driver = 'sqlite'
    extension = 'sqlite'
    required_fields = ()

    def dump(self, output_path: str):
        source = self.config.database
        if not source or source == ':memory:':
            self._create_placeholder(output_path)
            return

        if not os.path.isfile(source):
            raise DumpCommandError(f"SQLite database file not found: {source}", path=source, **self.context)
        if not os.access(source, os.R_OK):
            raise DumpCommandError(f"SQLite database file is not readable: {source}", path=source, **self.context)

        try:
            shutil.copyfile(source, output_path)
        except OSError as e:
            raise DumpCommandError(f"Failed to copy SQLite database: {e}", path=source, **self.context)

    def _create_placeholder(self, output_path: str):
        # In-memory databases have nothing on disk; write a marker database instead
        engine = create_engine(f"sqlite:///{output_path}")
        try:
            with engine.begin() as conn:
                conn.execute(text('CREATE TABLE IF NOT EXISTS _backup_metadata (created_at TEXT)'))
                conn.execute(
                    text('INSERT INTO _backup_metadata (created_at) VALUES (:created_at)'),
                    {'created_at': datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')}
                )
        except SQLAlchemyError as e:
            raise DumpCommandError(f"Failed to create SQLite dump: {e}", path=output_path, **self.context)
        finally:
            engine.dispose()


class MSSQLDumpStrategy(DumpStrategy):
    driver = 'mssql'
    extension = 'bak'
    required_fields = ('database', 'username')

    def dump(self, output_path: str):
        if shutil.which('sqlcmd') is None:
            raise DumpCommandError(
                'sqlcmd command not found. Please install SQL Server tools.',
                **self.context
            )

        server = self.config.host or 'localhost'
        if self.config.port and self.config.port != 1433:
            server = f"{server},{self.config.port}"

        query = "BACKUP DATABASE [{}] TO DISK = N'{}' WITH FORMAT, INIT".format(
            self.config.database.replace(']', ']]'),
            output_path.replace("'", "''")
        )

        args = ['sqlcmd', '-b', '-S', server, '-U', self.config.username, '-Q', query]
        run_command(args, self.timeout, env={'SQLCMDPASSWORD': self.config.password or ''}, **self.context)


DUMP_STRATEGIES = {
    'mysql': MySQLDumpStrategy,
    'postgres': PostgresDumpStrategy,
    'sqlite': SQLiteDumpStrategy,
    'mssql': MSSQLDumpStrategy,
}


def validate_dump_file(path: str, **context):
    """
    Raises:
        EmptyDumpError: If the dump file is missing or empty
    """
    if not os.path.exists(path):
        raise EmptyDumpError(f"Dump file was not created: {path}", path=path, **context)
    if os.path.getsize(path) == 0:
        raise EmptyDumpError(f"Dump file is empty: {path}", path=path, **context)


class DatabaseDumper:
    """
    Dumps configured database connections to files.
    """

    def __init__(self, connections: Mapping[str, object], timeout: int = 3600):
        """
        Initialize the dumper.

        Args:
            connections: ConnectionConfig instances by connection name
            timeout: Timeout in seconds for dump subprocesses
        """
        self.connections = connections
        self.timeout = timeout

    def strategy_for(self, connection_name: str) -> DumpStrategy:
        """
        Build and validate the strategy for a connection.

        Raises:
            ConnectionConfigError: If the connection is unknown or incomplete
            UnsupportedDriverError: If the driver has no strategy
        """
        config = self.connections.get(connection_name)
        if config is None:
            raise ConnectionConfigError(
                f"Database connection '{connection_name}' not found in config",
                connection=connection_name
            )

        driver = DRIVER_ALIASES.get(config.driver, config.driver)
        strategy_class = DUMP_STRATEGIES.get(driver)
        if strategy_class is None:
            raise UnsupportedDriverError(
                f"Unsupported database driver: {config.driver}",
                connection=connection_name,
                driver=config.driver
            )

        strategy = strategy_class(config, self.timeout)
        strategy.validate()
        return strategy

    def dump(self, connection_name: str, output_dir: str) -> DumpResult:
        """
        Dump one connection into output_dir.

        Args:
            connection_name: Name of a configured connection
            output_dir: Directory for the dump file

        Returns:
            DumpResult describing the written file

        Raises:
            ConnectionConfigError, UnsupportedDriverError, DumpCommandError,
            BackupTimeoutError, EmptyDumpError
        """
        strategy = self.strategy_for(connection_name)

        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d-%H-%M-%S')
        output_path = os.path.join(output_dir, f"{connection_name}-{timestamp}.{strategy.extension}")

        logger.info(f"Dumping {strategy.driver} connection '{connection_name}'")
        strategy.dump(output_path)
        validate_dump_file(output_path, **strategy.context)

        size = os.path.getsize(output_path)
        logger.info(f"Dumped '{connection_name}' to {output_path} ({size} bytes)")

        return DumpResult(connection_name, strategy.driver, output_path, size)

    def validate_connections(self, names: Iterable[str]) -> List[str]:
        """Return the names that have no connection configured."""
        return [name for name in names if name not in self.connections]
