"""
Shared pytest fixtures for autobackup tests.

This module provides fixtures for:
- Task configuration
- Temporary file fixtures
- Filesystem and S3 stores (S3 mocked with moto)
- Fake sources and stores for task/scheduler tests
"""

import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from autobackup.config import Config
from autobackup.backup.compression import TIMESTAMP_FORMAT
from autobackup.backup.sources import Source
from autobackup.backup.storage import FilesystemStore, S3Store, Store


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never touches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def config():
    """Configuration for a single immediate run keeping 3 backups."""
    return Config(schedule='none', max_backups=3)


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a directory with test files.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()

    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir


def _artifact_names(count, prefix='backup', extension='.tar.gz', start=None):
    start = start or datetime(2024, 1, 15, 12, 0, 0)
    return [
        f"{prefix}-{(start + timedelta(seconds=i)).strftime(TIMESTAMP_FORMAT)}{extension}"
        for i in range(count)
    ]


@pytest.fixture
def artifact_names():
    """Return a helper generating artifact names one second apart, oldest first."""
    return _artifact_names


@pytest.fixture
def fs_store(tmp_path):
    """Filesystem store in a temporary directory."""
    return FilesystemStore(str(tmp_path / 'store'))


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_store(mock_s3, tmp_path):
    """S3 store on the mocked bucket with prefix 'backups'."""
    download_dir = tmp_path / 'downloads'
    download_dir.mkdir()
    return S3Store(
        bucket='test-bucket',
        prefix='backups',
        region='us-east-1',
        save_dir=str(download_dir)
    )


@pytest.fixture
def mock_source():
    """Source mock whose backup returns /tmp/backup-20240115120000.tar.gz."""
    source = MagicMock(spec=Source)
    source.backup.return_value = '/tmp/backup-20240115120000.tar.gz'
    return source


@pytest.fixture
def mock_store():
    """Store mock retrieving to /tmp/retrieved.tar.gz."""
    store = MagicMock(spec=Store)
    store.find_latest_backup.return_value = 'backup-20240115120000.tar.gz'
    store.retrieve.return_value = '/tmp/retrieved.tar.gz'
    return store


@pytest.fixture
def write_artifacts():
    """Return a helper writing artifact files into a directory."""
    def _write(directory, names, content=b'data'):
        os.makedirs(directory, exist_ok=True)
        for name in names:
            with open(os.path.join(directory, name), 'wb') as f:
                f.write(content)
        return names
    return _write
