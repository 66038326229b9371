"""
Unit tests for backup executor (dbbackup/backup/executor.py).

Tests BackupExecutor fan-out to targets, failure isolation and hooks.
"""

import os
import hashlib
import tarfile
from unittest.mock import MagicMock, patch

import pytest

from dbbackup.config import ConfigError
from dbbackup.backup.executor import (
    BackupExecutor,
    BackupError,
    run_backup_cycle,
    resolve_targets,
    select_schemas
)
from dbbackup.backup.hooks import HookError
from dbbackup.backup.database import DatabaseError
from dbbackup.backup.storage import FileStorage, TransferError


def _sha256(path):
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _artifacts(directory):
    return sorted(p for p in directory.iterdir() if p.is_file())


class TestResolveTargets:
    """Test target validation before any I/O."""

    def test_empty_targets(self):
        with pytest.raises(ConfigError, match="At least one target"):
            resolve_targets([])

    def test_resolves_each_scheme(self):
        resolved = resolve_targets(['/backups', 'smb://host/share', 's3://bucket/path'])

        assert [backend.name for _, backend in resolved] == ['file', 'smb', 's3']

    def test_unknown_scheme(self):
        with pytest.raises(ConfigError):
            resolve_targets(['/backups', 'ftp://host/path'])


class TestSelectSchemas:

    def test_include_wins(self):
        assert select_schemas(['a', 'b'], ['mysql'], ['mysql']) == ['mysql']

    def test_excludes_and_system_schemas(self):
        available = ['app', 'audit', 'information_schema', 'mysql', 'sys', 'performance_schema']

        assert select_schemas(available, [], ['audit']) == ['app']


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, dump_options, fake_db):
        executor = BackupExecutor(dump_options, fake_db)

        assert executor.options == dump_options
        assert executor.database == fake_db
        assert executor.compressor.name == 'gzip'
        assert executor.temp_dir is None
        assert executor.result is None

    def test_unknown_compression(self, dump_options, fake_db):
        dump_options.compression = 'lz4'

        with pytest.raises(ConfigError):
            BackupExecutor(dump_options, fake_db)

    def test_identical_artifact_to_every_target(self, dump_options, fake_db, target_dirs):
        result = BackupExecutor(dump_options, fake_db).execute()

        assert result.success
        assert set(result.succeeded) == set(dump_options.targets)

        hashes = set()
        for directory in target_dirs:
            files = _artifacts(directory)
            assert len(files) == 1
            assert files[0].name == result.artifact.filename
            hashes.add(_sha256(files[0]))

        assert hashes == {result.artifact.sha256}

    def test_database_dumped_once(self, dump_options, fake_db):
        BackupExecutor(dump_options, fake_db).execute()

        assert fake_db.dump_calls == [[['app']]]

    def test_single_file_archive(self, dump_options, fake_db, target_dirs):
        dump_options.include = []

        BackupExecutor(dump_options, fake_db).execute()

        archive = _artifacts(target_dirs[0])[0]
        with tarfile.open(archive, 'r:gz') as tar:
            assert tar.getnames() == ['dump.sql']
            content = tar.extractfile('dump.sql').read().decode()
        assert 'app.t' in content and 'audit.t' in content
        assert fake_db.dump_calls == [[['app', 'audit']]]

    def test_by_schema_archive(self, dump_options, fake_db, target_dirs):
        dump_options.include = []
        dump_options.by_schema = True

        BackupExecutor(dump_options, fake_db).execute()

        archive = _artifacts(target_dirs[0])[0]
        with tarfile.open(archive, 'r:gz') as tar:
            assert sorted(tar.getnames()) == ['app.sql', 'audit.sql']
        assert fake_db.dump_calls == [[['app'], ['audit']]]

    def test_bzip2_artifact_name(self, dump_options, fake_db, target_dirs):
        dump_options.compression = 'bzip2'
        dump_options.safechars = True

        result = BackupExecutor(dump_options, fake_db).execute()

        assert result.artifact.filename.endswith('.tbz2')
        assert ':' not in result.artifact.filename

    def test_one_failing_target_is_isolated(self, dump_options, fake_db, target_dirs, tmp_path):
        missing = str(tmp_path / 'does-not-exist')
        dump_options.targets = [str(target_dirs[0]), missing, str(target_dirs[1])]

        result = BackupExecutor(dump_options, fake_db).execute()

        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].target == missing
        assert result.errors[0].backend == 'file'
        assert set(result.succeeded) == {str(target_dirs[0]), str(target_dirs[1])}
        assert _sha256(_artifacts(target_dirs[0])[0]) == _sha256(_artifacts(target_dirs[1])[0])

    def test_unexpected_push_exception_is_captured(self, dump_options, fake_db):
        with patch.object(FileStorage, 'push', side_effect=RuntimeError("boom")):
            result = BackupExecutor(dump_options, fake_db).execute()

        assert len(result.errors) == 3
        assert all(isinstance(e, TransferError) for e in result.errors)
        assert result.succeeded == {}

    def test_unknown_scheme_has_no_side_effects(self, dump_options, fake_db, target_dirs, work_dir,
                                                hook_dir, make_script, tmp_path):
        marker = tmp_path / 'hook-ran'
        make_script(hook_dir, 'pre.sh', f'touch "{marker}"')
        dump_options.pre_backup_scripts = str(hook_dir)
        dump_options.targets = [str(target_dirs[0]), 'ftp://host/backups']

        with pytest.raises(ConfigError):
            BackupExecutor(dump_options, fake_db).execute()

        assert fake_db.dump_calls == []
        assert not marker.exists()
        assert _artifacts(target_dirs[0]) == []
        assert list(work_dir.iterdir()) == []

    def test_empty_targets_rejected(self, dump_options, fake_db):
        dump_options.targets = []

        with pytest.raises(ConfigError):
            BackupExecutor(dump_options, fake_db).execute()

        assert fake_db.dump_calls == []

    def test_pre_hook_failure_stops_cycle(self, dump_options, fake_db, target_dirs, hook_dir, make_script):
        make_script(hook_dir, 'pre.sh', 'exit 1')
        dump_options.pre_backup_scripts = str(hook_dir)

        with pytest.raises(HookError) as exc_info:
            BackupExecutor(dump_options, fake_db).execute()

        assert exc_info.value.stage == 'pre-backup'
        assert fake_db.dump_calls == []
        assert all(_artifacts(d) == [] for d in target_dirs)

    def test_hook_environment(self, dump_options, fake_db, tmp_path, make_script):
        pre_dir = tmp_path / 'pre'
        post_dir = tmp_path / 'post'
        pre_dir.mkdir()
        post_dir.mkdir()
        pre_log = tmp_path / 'pre.log'
        post_log = tmp_path / 'post.log'
        make_script(pre_dir, 'env.sh', f'echo "$DUMPFILE|$DUMPDIR|$NOW|$DB_DUMP_DEBUG" > "{pre_log}"')
        make_script(post_dir, 'env.sh', f'echo "$DB_DUMP_TARGETS" > "{post_log}"')
        dump_options.pre_backup_scripts = str(pre_dir)
        dump_options.post_backup_scripts = str(post_dir)

        result = BackupExecutor(dump_options, fake_db).execute()

        dumpfile, dumpdir, now, debug = pre_log.read_text().strip().split('|')
        assert os.path.basename(dumpfile) == result.artifact.filename
        assert dumpfile.startswith(dumpdir)
        assert now in result.artifact.filename
        assert debug == 'false'
        assert post_log.read_text().split() == dump_options.targets

    def test_post_hooks_run_after_failed_push(self, dump_options, fake_db, hook_dir, make_script, tmp_path):
        marker = tmp_path / 'post-ran'
        make_script(hook_dir, 'post.sh', f'touch "{marker}"')
        dump_options.post_backup_scripts = str(hook_dir)
        dump_options.targets = [str(tmp_path / 'missing')]

        result = BackupExecutor(dump_options, fake_db).execute()

        assert len(result.errors) == 1
        assert marker.exists()

    def test_post_hook_failure_keeps_transfers(self, dump_options, fake_db, target_dirs, hook_dir, make_script):
        make_script(hook_dir, 'post.sh', 'exit 2')
        dump_options.post_backup_scripts = str(hook_dir)

        result = BackupExecutor(dump_options, fake_db).execute()

        assert result.hook_error is not None
        assert result.hook_error.stage == 'post-backup'
        assert len(result.succeeded) == 3
        assert all(len(_artifacts(d)) == 1 for d in target_dirs)
        assert not result.success

    def test_database_failure_propagates_and_cleans_up(self, dump_options, work_dir, target_dirs):
        database = MagicMock()
        database.dump.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError, match="connection lost"):
            BackupExecutor(dump_options, database).execute()

        assert list(work_dir.iterdir()) == []
        assert all(_artifacts(d) == [] for d in target_dirs)

    @pytest.mark.parametrize("by_schema", [False, True])
    def test_no_schema_selected(self, by_schema, dump_options, make_fake_db, target_dirs, work_dir):
        database = make_fake_db(schemas=['scratch'])
        dump_options.include = []
        dump_options.exclude = ['scratch']
        dump_options.by_schema = by_schema

        with pytest.raises(DatabaseError, match="No schemas left to dump"):
            BackupExecutor(dump_options, database).execute()

        assert database.dump_calls == []
        assert all(_artifacts(d) == [] for d in target_dirs)
        assert list(work_dir.iterdir()) == []

    def test_deadline_covers_hooks(self, dump_options, fake_db, target_dirs, hook_dir, make_script):
        make_script(hook_dir, 'slow.sh', 'sleep 1')
        dump_options.pre_backup_scripts = str(hook_dir)
        dump_options.timeout = 0.5

        result = BackupExecutor(dump_options, fake_db).execute()

        assert result.succeeded == {}
        assert len(result.errors) == 3
        assert all('Deadline' in str(e) for e in result.errors)

    def test_temp_dir_cleaned_up(self, dump_options, fake_db, work_dir):
        result = BackupExecutor(dump_options, fake_db).execute()

        assert list(work_dir.iterdir()) == []
        assert any('Cleaned up temporary directory' in line for line in result.logs)


class TestRunBackupCycle:
    """Test run_backup_cycle helper."""

    def test_success_returns_result(self, dump_options, fake_db):
        result = run_backup_cycle(dump_options, fake_db)

        assert result.success

    def test_failure_raises_backup_error(self, dump_options, fake_db, tmp_path):
        dump_options.targets.append(str(tmp_path / 'missing'))

        with pytest.raises(BackupError) as exc_info:
            run_backup_cycle(dump_options, fake_db)

        assert len(exc_info.value.result.errors) == 1
        assert len(exc_info.value.result.succeeded) == 3
