"""
Restore executor - pulls one archive and replays it into the database.

Workflow:
1. Run pre-restore hooks
2. Resolve the target backend and pull the archive to a local file
3. Uncompress and unpack it into a temporary directory
4. Replay each extracted file in its own serializable transaction
5. Run post-restore hooks
6. Cleanup temporary files
"""

import os
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from dbbackup.config import RestoreOptions
from .compression import extract_archive, get_compressor, Compressor
from .database import DatabaseError, SERIALIZABLE
from .hooks import run_hooks
from .storage import parse_target, create_storage, Deadline


logger = logging.getLogger(__name__)

RESTORE_FILE_NAME = 'restorefile'
STATEMENT_DELIMITER = ';'


@dataclass
class UnitResult:
    name: str
    statements: int = 0
    error: Optional[DatabaseError] = None

    @property
    def committed(self) -> bool:
        return self.error is None


@dataclass
class RestoreResult:
    target: str
    bytes_pulled: int = 0
    units: List[UnitResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(unit.committed for unit in self.units)

    @property
    def failed_units(self) -> List[UnitResult]:
        return [unit for unit in self.units if not unit.committed]


def replay(database, lines: Iterable[str], unit: str = None) -> int:
    """
    Replay a SQL stream inside one serializable transaction.

    Lines are accumulated until one ends with ';', then the accumulated
    statement is executed. Empty lines are skipped. Semicolons inside string
    literals or comments are not recognized. A trailing statement with no
    terminating ';' is not executed.

    Args:
        database: Collaborator providing begin()
        lines: Text lines, e.g. an open file
        unit: Name used in errors and logs

    Returns:
        Number of statements executed

    Raises:
        DatabaseError: If a statement or the commit fails; the transaction
            is rolled back and nothing from this stream is kept
    """
    transaction = database.begin(isolation_level=SERIALIZABLE)
    pending = []
    executed = 0

    try:
        for raw_line in lines:
            line = raw_line.rstrip('\n').rstrip('\r')
            if line == '':
                continue

            pending.append(line + '\n')
            if line[-1] != STATEMENT_DELIMITER:
                continue

            transaction.execute(''.join(pending))
            executed += 1
            pending = []

    except Exception as e:
        transaction.rollback()
        raise DatabaseError(f"Failed to restore {unit or 'stream'}: {e}", unit=unit) from e

    if pending:
        logger.warning("Ignoring unterminated statement at end of %s", unit or 'stream')

    try:
        transaction.commit()
    except Exception as e:
        raise DatabaseError(f"Failed to commit {unit or 'stream'}: {e}", unit=unit) from e

    return executed


class RestoreExecutor:
    """
    Orchestrates restoring one backup archive.
    """

    def __init__(self, options: RestoreOptions, database, compressor: Compressor = None):
        """
        Args:
            options: Restore options
            database: Database collaborator providing begin()
            compressor: Compressor to use; resolved from options.compression if omitted
        """
        self.options = options
        self.database = database
        self.compressor = compressor or get_compressor(options.compression)
        self.restore_file = None
        self.temp_dir = None
        self.result = None

    def execute(self) -> RestoreResult:
        """
        Run the restore.

        Returns:
            RestoreResult listing every replayed unit

        Raises:
            ConfigError: If the target URL is invalid
            HookError: If a pre- or post-restore hook fails
            TransferError: If the archive cannot be pulled
            CompressionError: If the archive cannot be unpacked
        """
        self.result = RestoreResult(target=self.options.target, started_at=datetime.now(timezone.utc))
        hook_env = {'DB_RESTORE_TARGET': self.options.target}

        self._log(f"Beginning restore from {self.options.target}")

        try:
            run_hooks(self.options.pre_restore_scripts, hook_env, stage='pre-restore')

            target = parse_target(self.options.target)
            storage = create_storage(target.scheme)

            os.makedirs(self.options.temp_dir, exist_ok=True)
            self.restore_file = os.path.join(self.options.temp_dir, RESTORE_FILE_NAME)
            self.result.bytes_pulled = storage.pull(
                self.options.credentials, target, self.restore_file, Deadline(self.options.timeout)
            )
            self._log(f"Pulled {self.result.bytes_pulled} bytes via {storage.name}")

            self.temp_dir = tempfile.mkdtemp(prefix='dbbackup_restore_', dir=self.options.temp_dir)
            names = extract_archive(self.restore_file, self.temp_dir, self.compressor)
            self._log(f"Extracted {len(names)} file(s)")

            for name in names:
                self.result.units.append(self._restore_unit(name))

            if self.result.success:
                run_hooks(self.options.post_restore_scripts, hook_env, stage='post-restore')
                self._log("Restore completed successfully")
            else:
                self._log(
                    f"Restore completed with {len(self.result.failed_units)} failed unit(s); "
                    f"post-restore hooks skipped",
                    level=logging.ERROR
                )

        except Exception as e:
            self._log(f"Restore failed: {e}", level=logging.ERROR)
            raise

        finally:
            self.result.completed_at = datetime.now(timezone.utc)
            self._cleanup()

        return self.result

    def _restore_unit(self, name: str) -> UnitResult:
        """Replay one extracted file; a failure is recorded, not raised."""
        unit = UnitResult(name=name)
        path = os.path.join(self.temp_dir, name)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                unit.statements = replay(self.database, f, unit=name)
            self._log(f"Restored {name}: {unit.statements} statement(s)")
        except DatabaseError as e:
            unit.error = e
            self._log(f"Failed to restore {name}: {e}", level=logging.ERROR)
        except (OSError, UnicodeDecodeError) as e:
            unit.error = DatabaseError(f"Failed to read {name}: {e}", unit=name)
            self._log(f"Failed to read {name}: {e}", level=logging.ERROR)

        return unit

    def _cleanup(self):
        """Remove the downloaded archive and the extraction directory."""
        if self.restore_file and os.path.exists(self.restore_file):
            try:
                os.remove(self.restore_file)
            except OSError as e:
                self._log(f"Warning: Failed to remove {self.restore_file}: {e}", level=logging.WARNING)

        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.result is not None:
            self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def restore(options: RestoreOptions, database, compressor: Compressor = None) -> RestoreResult:
    """
    Restore a backup and raise if any unit failed.

    Raises:
        DatabaseError: If one or more units were rolled back
    """
    result = RestoreExecutor(options, database, compressor).execute()

    if not result.success:
        names = ', '.join(unit.name for unit in result.failed_units)
        raise DatabaseError(f"Failed to restore database: {names}")

    return result
