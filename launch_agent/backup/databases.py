"""
Database dump handlers.

Supports:
- PostgreSQL: pg_dump
- MySQL: mysqldump
- Redis: redis-cli --rdb

Each configured database is dumped into {dump_path}/{type}/{name}/ using the
vendor's command line tool, so the tool must be installed on the host.
"""

import logging
import os
import subprocess
from typing import Dict, List, Type

from launch_agent.errors import DumpError
from launch_agent.models import ModelConfig, SubConfig


logger = logging.getLogger(__name__)


class BaseDatabase:
    """
    Common state for database dump handlers.
    """

    database_type = ''
    default_binary = ''

    def __init__(self, model: ModelConfig, db_config: SubConfig):
        self.model = model
        self.db_config = db_config
        self.name = db_config.name
        self.dump_path = os.path.join(model.dump_path, db_config.type, db_config.name)

    @property
    def binary(self) -> str:
        return self.db_config.get('bin', self.default_binary)

    def build_command(self) -> List[str]:
        raise NotImplementedError

    def build_env(self) -> Dict[str, str]:
        return dict(os.environ)

    def perform(self):
        """
        Run the dump command.

        Raises:
            DumpError: If the tool is missing or exits with an error
        """
        os.makedirs(self.dump_path, exist_ok=True)
        command = self.build_command()

        try:
            subprocess.run(
                command,
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.build_env()
            )
        except FileNotFoundError as e:
            raise DumpError(f"{self.binary} not found, is the {self.database_type} client installed?") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b'').decode(errors='replace').strip()
            raise DumpError(f"{self.binary} failed for {self.name}: {stderr or e}") from e


class PostgreSQL(BaseDatabase):
    """
    Settings:
        host (localhost), port (5432), database, username, password, tables, exclude_tables, args
    """

    database_type = 'postgresql'
    default_binary = 'pg_dump'

    def build_command(self) -> List[str]:
        cfg = self.db_config
        database = cfg.get('database', self.name)
        command = [
            self.binary,
            f"--host={cfg.get('host', 'localhost')}",
            f"--port={cfg.get('port', 5432)}",
        ]
        if cfg.get('username'):
            command.append(f"--username={cfg.get('username')}")
        for table in cfg.get('tables', []):
            command.append(f"--table={table}")
        for table in cfg.get('exclude_tables', []):
            command.append(f"--exclude-table={table}")
        if cfg.get('args'):
            command.extend(str(cfg.get('args')).split())
        command.append(f"--file={os.path.join(self.dump_path, database + '.sql')}")
        command.append(database)
        return command

    def build_env(self) -> Dict[str, str]:
        env = super().build_env()
        if self.db_config.get('password'):
            env['PGPASSWORD'] = str(self.db_config.get('password'))
        return env


class MySQL(BaseDatabase):
    """
    Settings:
        host (localhost), port (3306), database, username (root), password, tables, exclude_tables, args
    """

    database_type = 'mysql'
    default_binary = 'mysqldump'

    def build_command(self) -> List[str]:
        cfg = self.db_config
        database = cfg.get('database', self.name)
        command = [
            self.binary,
            f"--host={cfg.get('host', 'localhost')}",
            f"--port={cfg.get('port', 3306)}",
            f"--user={cfg.get('username', 'root')}",
        ]
        for table in cfg.get('exclude_tables', []):
            command.append(f"--ignore-table={database}.{table}")
        if cfg.get('args'):
            command.extend(str(cfg.get('args')).split())
        command.append(f"--result-file={os.path.join(self.dump_path, database + '.sql')}")
        command.append(database)
        command.extend(str(table) for table in cfg.get('tables', []))
        return command

    def build_env(self) -> Dict[str, str]:
        env = super().build_env()
        if self.db_config.get('password'):
            env['MYSQL_PWD'] = str(self.db_config.get('password'))
        return env


class Redis(BaseDatabase):
    """
    Settings:
        host (localhost), port (6379), password, args
    """

    database_type = 'redis'
    default_binary = 'redis-cli'

    def build_command(self) -> List[str]:
        cfg = self.db_config
        command = [
            self.binary,
            '-h', str(cfg.get('host', 'localhost')),
            '-p', str(cfg.get('port', 6379)),
        ]
        if cfg.get('args'):
            command.extend(str(cfg.get('args')).split())
        command.extend(['--rdb', os.path.join(self.dump_path, 'dump.rdb')])
        return command

    def build_env(self) -> Dict[str, str]:
        env = super().build_env()
        if self.db_config.get('password'):
            env['REDISCLI_AUTH'] = str(self.db_config.get('password'))
        return env


DATABASE_TYPES: Dict[str, Type[BaseDatabase]] = {
    PostgreSQL.database_type: PostgreSQL,
    MySQL.database_type: MySQL,
    Redis.database_type: Redis,
}


def create_database(model: ModelConfig, db_config: SubConfig) -> BaseDatabase:
    """
    Factory function to create the dump handler for a database.

    Raises:
        DumpError: If the database type is unknown
    """
    database_class = DATABASE_TYPES.get(db_config.type)
    if database_class is None:
        raise DumpError(
            f"Invalid database type: {db_config.type!r}. "
            f"Valid options: {sorted(DATABASE_TYPES)}"
        )
    return database_class(model, db_config)


def run(model: ModelConfig):
    """
    Dump every database of a model, in configuration order.

    Raises:
        DumpError: On the first database that fails
    """
    if not model.databases:
        return

    for db_config in model.databases:
        logger.info(f"=> database | {db_config.type}: {db_config.name}")
        create_database(model, db_config).perform()
        logger.info(f"dump succeeded: {db_config.name}")
