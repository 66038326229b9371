"""
Backup executor - orchestrates one backup cycle.

Workflow:
1. Validate targets and resolve a storage backend for each (no I/O yet)
2. Create temporary working directory
3. Run pre-backup hooks
4. Dump the database once into one or more SQL files
5. Create the compressed archive
6. Push the archive to every target in parallel, isolating failures
7. Run post-backup hooks
8. Cleanup temporary files
"""

import os
import shutil
import hashlib
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from dbbackup.config import ConfigError, DumpOptions
from .compression import (
    create_archive, generate_archive_filename, format_timestamp, get_compressor, Compressor
)
from .database import DatabaseError, DumpWriter, SYSTEM_SCHEMAS
from .hooks import run_hooks, HookError
from .storage import (
    parse_target, create_storage, Deadline, StorageBackend, Target, TransferError
)


logger = logging.getLogger(__name__)

SINGLE_DUMP_NAME = 'dump.sql'


class BackupError(Exception):
    """Raised when a backup cycle finished with transfer or hook failures."""

    def __init__(self, message: str, result: 'BackupResult' = None):
        super().__init__(message)
        self.result = result


@dataclass
class Artifact:
    filename: str
    path: str
    size: int = 0
    sha256: Optional[str] = None


@dataclass
class BackupResult:
    """Outcome of one backup cycle."""
    artifact: Optional[Artifact] = None
    succeeded: Dict[str, int] = field(default_factory=dict)
    errors: List[TransferError] = field(default_factory=list)
    hook_error: Optional[HookError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and self.hook_error is None

    def raise_for_errors(self) -> 'BackupResult':
        """Raise BackupError if any target or post-backup hook failed."""
        if self.success:
            return self

        problems = [str(e) for e in self.errors]
        if self.hook_error is not None:
            problems.append(str(self.hook_error))
        raise BackupError(
            f"Backup completed with {len(problems)} error(s): " + '; '.join(problems),
            result=self
        )


def resolve_targets(raw_targets: List[str], keep_permissions: bool = True) -> List[Tuple[Target, StorageBackend]]:
    """
    Parse every target and pick its backend.

    Raises:
        ConfigError: If the list is empty or any target has an unknown scheme
    """
    if not raw_targets:
        raise ConfigError("At least one target must be provided")

    resolved = []
    for raw in raw_targets:
        target = parse_target(raw)
        resolved.append((target, create_storage(target.scheme, keep_permissions=keep_permissions)))
    return resolved


def select_schemas(available: List[str], include: List[str], exclude: List[str]) -> List[str]:
    """
    Decide which schemas to dump.

    An include list is used as given. Otherwise every available schema is
    dumped except the excluded ones and the system schemas.
    """
    if include:
        return list(include)

    skipped = set(exclude) | set(SYSTEM_SCHEMAS)
    return [schema for schema in available if schema not in skipped]


def _sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            digest.update(chunk)
    return digest.hexdigest()


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one cycle.
    """

    def __init__(self, options: DumpOptions, database, compressor: Compressor = None):
        """
        Initialize backup executor.

        Args:
            options: Dump options for this cycle
            database: Database collaborator providing list_schemas() and dump()
            compressor: Compressor to use; resolved from options.compression if omitted

        Raises:
            ConfigError: If the compression name is unknown
        """
        self.options = options
        self.database = database
        self.compressor = compressor or get_compressor(options.compression)
        self.temp_dir = None
        self.result = None

    def execute(self) -> BackupResult:
        """
        Run the cycle.

        Returns:
            BackupResult with per-target outcomes

        Raises:
            ConfigError: Before any I/O, if targets are invalid
            HookError: If a pre-backup hook fails (nothing is dumped)
            DatabaseError: If the dump fails or no schema is selected
            CompressionError: If the archive cannot be created
        """
        resolved = resolve_targets(self.options.targets, self.options.keep_permissions)
        deadline = Deadline(self.options.timeout)

        self.result = BackupResult(started_at=datetime.now(timezone.utc))
        self._log(f"Starting backup to {len(resolved)} target(s)")

        try:
            self._execute_workflow(resolved, deadline)

            if self.result.success:
                self._log("Backup completed successfully")
            else:
                self._log(f"Backup completed with {len(self.result.errors)} failed target(s)")

        except Exception as e:
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            raise

        finally:
            self.result.completed_at = datetime.now(timezone.utc)
            self._cleanup()

        return self.result

    def _execute_workflow(self, resolved: List[Tuple[Target, StorageBackend]], deadline: Deadline):
        """Execute the main backup workflow steps."""
        now = datetime.now(timezone.utc)

        # Step 1: Create temporary directory
        os.makedirs(self.options.temp_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='dbbackup_', dir=self.options.temp_dir)
        self._log(f"Temporary directory: {self.temp_dir}")

        filename = generate_archive_filename(
            self.options.filename_pattern, self.compressor, self.options.safechars, now
        )
        archive_path = os.path.join(self.temp_dir, os.path.basename(filename))
        hook_env = {
            'NOW': format_timestamp(now, self.options.safechars),
            'DUMPFILE': archive_path,
            'DUMPDIR': self.temp_dir,
            'DB_DUMP_DEBUG': 'true' if self.options.debug else 'false'
        }

        # Step 2: Pre-backup hooks
        run_hooks(self.options.pre_backup_scripts, hook_env, stage='pre-backup')

        # Step 3: Dump and archive
        self.result.artifact = self._create_artifact(filename, archive_path)
        self._log(
            f"Archive created: {self.result.artifact.filename} "
            f"({self.result.artifact.size / 1024 / 1024:.2f} MB)"
        )

        # Step 4: Push to every target
        self._push_all(resolved, deadline)

        # Step 5: Post-backup hooks, whatever the push outcome
        hook_env['DB_DUMP_TARGETS'] = ' '.join(self.result.succeeded)
        try:
            run_hooks(self.options.post_backup_scripts, hook_env, stage='post-backup')
        except HookError as e:
            self.result.hook_error = e
            self._log(f"Post-backup hook failed: {e}", level=logging.ERROR)

    def _create_artifact(self, filename: str, archive_path: str) -> Artifact:
        """
        Dump the selected schemas and package them into one archive.

        By-schema mode writes one <schema>.sql per schema; otherwise a single
        dump.sql holds them all. The collaborator is called once either way.
        """
        dump_dir = os.path.join(self.temp_dir, 'dump')
        os.makedirs(dump_dir)

        schemas = select_schemas(
            [] if self.options.include else self.database.list_schemas(),
            self.options.include,
            self.options.exclude
        )
        if not schemas:
            raise DatabaseError("No schemas left to dump after include/exclude filtering")
        self._log(f"Dumping schemas: {', '.join(schemas)}")

        if self.options.by_schema:
            layout = [([schema], os.path.join(dump_dir, f"{schema}.sql")) for schema in schemas]
        else:
            layout = [(schemas, os.path.join(dump_dir, SINGLE_DUMP_NAME))]

        handles = [open(path, 'w', encoding='utf-8') for _, path in layout]
        try:
            writers = [DumpWriter(schemas=group, out=handle) for (group, _), handle in zip(layout, handles)]
            self.database.dump(writers)
        finally:
            for handle in handles:
                handle.close()

        create_archive([path for _, path in layout], archive_path, self.compressor)

        return Artifact(
            filename=os.path.basename(filename),
            path=archive_path,
            size=os.path.getsize(archive_path),
            sha256=_sha256(archive_path)
        )

    def _push_all(self, resolved: List[Tuple[Target, StorageBackend]], deadline: Deadline):
        """
        Push the artifact to every target on a bounded pool and wait for all.

        Failures are recorded per target and never stop the other pushes.
        """
        artifact = self.result.artifact

        with ThreadPoolExecutor(max_workers=len(resolved), thread_name_prefix='push') as pool:
            futures = [
                (target, backend, pool.submit(
                    backend.push, self.options.credentials, target,
                    artifact.filename, artifact.path, deadline
                ))
                for target, backend in resolved
            ]

            for target, backend, future in futures:
                try:
                    copied = future.result()
                    self.result.succeeded[target.raw] = copied
                    self._log(f"Pushed {copied} bytes to {target.raw}")
                except TransferError as e:
                    self.result.errors.append(e)
                    self._log(f"Push to {target.raw} failed: {e}", level=logging.ERROR)
                except Exception as e:
                    error = TransferError(str(e), target=target.raw, backend=backend.name, operation='push')
                    self.result.errors.append(error)
                    self._log(f"Push to {target.raw} failed: {error}", level=logging.ERROR)

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Record a log line on the result and forward it to the module logger.
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.result is not None:
            self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup_cycle(options: DumpOptions, database, compressor: Compressor = None) -> BackupResult:
    """
    Execute one backup cycle and raise if anything failed.

    Raises:
        BackupError: If a target or post-backup hook failed
    """
    executor = BackupExecutor(options, database, compressor)
    return executor.execute().raise_for_errors()
