"""
Shared pytest fixtures for dbbackup tests.

This module provides fixtures for:
- Fake database collaborator recording dumps and transactions
- SQLite-backed Database instances
- Dump and restore options pointing at temporary directories
- Hook script directories
- Mock fixtures for external services (S3, SMB)
"""

import os
import stat
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import create_engine, text

from dbbackup.config import DumpOptions, RestoreOptions, Credentials, SchedulePolicy
from dbbackup.backup.database import Database


class FakeTransaction:
    """Records executed statements; fails on statements containing fail_on."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.executed = []
        self.committed = False
        self.rolled_back = False

    def execute(self, statement):
        if self.fail_on and self.fail_on in statement:
            raise RuntimeError(f"statement failed: {statement.strip()}")
        self.executed.append(statement)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class FakeDatabase:
    """
    In-memory database collaborator.

    dump() writes one INSERT per schema; begin() hands out FakeTransactions.
    """

    def __init__(self, schemas=None, fail_on=None):
        self.schemas = schemas or ['app', 'audit']
        self.fail_on = fail_on
        self.dump_calls = []
        self.transactions = []
        self.isolation_levels = []

    def list_schemas(self):
        return list(self.schemas) + ['information_schema', 'mysql']

    def dump(self, writers):
        self.dump_calls.append([list(w.schemas) for w in writers])
        for writer in writers:
            for schema in writer.schemas:
                writer.out.write(f"INSERT INTO {schema}.t VALUES (1);\n")

    def begin(self, isolation_level='SERIALIZABLE'):
        self.isolation_levels.append(isolation_level)
        transaction = FakeTransaction(self.fail_on)
        self.transactions.append(transaction)
        return transaction


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def make_fake_db():
    return FakeDatabase


@pytest.fixture
def sqlite_db(tmp_path):
    """
    SQLite database with a populated table 'items'.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name VARCHAR(50))"))
        conn.execute(text("INSERT INTO items (id, name) VALUES (1, 'alpha'), (2, 'beta'), (3, 'it''s')"))

    database = Database(engine=engine)
    yield database
    database.dispose()


@pytest.fixture
def empty_sqlite_db(tmp_path):
    """Empty SQLite database used as a restore destination."""
    database = Database(f"sqlite:///{tmp_path / 'destination.db'}")
    yield database
    database.dispose()


@pytest.fixture
def target_dirs(tmp_path):
    """Three existing local target directories."""
    dirs = []
    for name in ('target_a', 'target_b', 'target_c'):
        path = tmp_path / name
        path.mkdir()
        dirs.append(path)
    return dirs


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def dump_options(target_dirs, work_dir):
    """
    DumpOptions for a single-file gzip dump to three local targets, no hooks.
    """
    return DumpOptions(
        targets=[str(path) for path in target_dirs],
        credentials=Credentials(),
        compression='gzip',
        include=['app'],
        pre_backup_scripts=None,
        post_backup_scripts=None,
        temp_dir=str(work_dir),
        schedule=SchedulePolicy(once=True)
    )


@pytest.fixture
def restore_options(work_dir):
    def _make(target, **kwargs):
        kwargs.setdefault('pre_restore_scripts', None)
        kwargs.setdefault('post_restore_scripts', None)
        return RestoreOptions(target=target, temp_dir=str(work_dir), **kwargs)
    return _make


def write_script(directory, name, body, executable=True):
    """Create a shell script in directory."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    if executable:
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def make_script():
    return write_script


@pytest.fixture
def hook_dir(tmp_path):
    """Empty hook directory."""
    directory = tmp_path / 'hooks'
    directory.mkdir()
    return directory


@pytest.fixture
def mock_s3(monkeypatch):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')

    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_smbclient():
    """
    Mock smbclient module used by SMBStorage.

    open_file returns a MagicMock file whose writes are collected in
    .written and whose reads come from .content.
    """
    with patch('dbbackup.backup.storage.smbclient') as mock_client:
        remote = MagicMock()
        remote.written = bytearray()
        remote.content = [b'remote data', b'']
        remote.write.side_effect = lambda data: remote.written.extend(data)
        remote.read.side_effect = lambda size=-1: remote.content.pop(0) if remote.content else b''
        remote.__enter__.return_value = remote
        remote.__exit__.return_value = False
        mock_client.open_file.return_value = remote
        mock_client.remote = remote
        yield mock_client
