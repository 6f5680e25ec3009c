"""
Shared pytest fixtures for DokSnap tests.

This module provides fixtures for:
- Flask app and test client
- Sources, settings and configuration objects
- Encryptors and a fake encryptor for pipeline tests
- Mock fixtures for external services (S3, APScheduler)
- Temporary file fixtures
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from doksnap.config import (
    DokSnapConfig, S3Settings, EncryptionSettings, StatusServerSettings
)
from doksnap.models import Source, RetentionPolicy, Hooks, RemoteObject
from doksnap.backup.encryption import AES256Encryptor, Encryptor
from doksnap.backup.storage import S3Uploader


class CopyEncryptor(Encryptor):
    """Encryptor that copies the input; keeps pipeline tests fast."""

    method = 'aes256'
    extension = 'enc'

    def __init__(self):
        self.calls = []

    def encrypt(self, input_path, output_path):
        self.calls.append((input_path, output_path))
        with open(input_path, 'rb') as src, open(output_path, 'wb') as out:
            out.write(b'ENC' + src.read())


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a source directory with a few files.

    Creates:
    - data/file1.txt
    - data/file2.log
    - data/nested/file3.txt
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'file1.txt').write_text('Test content 1')
    (data / 'file2.log').write_text('Test log content')

    nested_dir = data / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'file3.txt').write_text('Nested test content')

    return data


@pytest.fixture
def make_source(temp_files):
    """Factory for Source objects pointing at temp_files by default."""
    def factory(name='blog', path=None, schedule='0 3 * * *', retention=None, hooks=None,
                source_type='directory'):
        return Source(
            name=name,
            type=source_type,
            path=str(path or temp_files),
            schedule=schedule,
            retention=retention or RetentionPolicy(),
            hooks=hooks or Hooks(),
        )
    return factory


@pytest.fixture
def source(make_source):
    return make_source()


@pytest.fixture
def aes_encryptor():
    return AES256Encryptor('test_password_123')


@pytest.fixture
def copy_encryptor():
    return CopyEncryptor()


@pytest.fixture
def s3_settings():
    return S3Settings(
        bucket='test-bucket',
        access_key_id='testing',
        secret_access_key='testing',
        region='us-east-1',
    )


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        client = boto3.client('s3', region_name='us-east-1')
        client.create_bucket(Bucket='test-bucket')
        yield client


@pytest.fixture
def uploader(mock_s3, s3_settings):
    """S3Uploader talking to the moto bucket."""
    return S3Uploader(s3_settings, client=mock_s3)


@pytest.fixture
def doksnap_config(s3_settings, make_source):
    return DokSnapConfig(
        s3=s3_settings,
        encryption=EncryptionSettings(method='aes256', password='test_password_123'),
        sources=[make_source('blog'), make_source('api')],
        status_server=StatusServerSettings(),
    )


@pytest.fixture
def mock_uploader():
    uploader = MagicMock()
    uploader.list_backups.return_value = []
    uploader.upload.return_value = {'key': 'backups/blog/20240115_120000_blog.tar.gz.enc', 'success': True}
    return uploader


@pytest.fixture(scope='function')
def app(doksnap_config, mock_uploader):
    """Flask app with test configuration; the scheduler stays off."""
    from doksnap import create_app

    app = create_app('testing', doksnap_config=doksnap_config, uploader=mock_uploader)
    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def remote_backups():
    """
    Factory for newest-first RemoteObject lists.

    Takes datetimes (any order) and returns objects keyed by timestamp.
    """
    def factory(*timestamps, source_name='blog'):
        objects = [
            RemoteObject(
                key=f"backups/{source_name}/{ts.strftime('%Y%m%d_%H%M%S')}_{source_name}.tar.gz.enc",
                size=1024,
                last_modified=ts,
            )
            for ts in timestamps
        ]
        return sorted(objects, key=lambda o: o.last_modified, reverse=True)
    return factory


@pytest.fixture
def utc():
    def factory(*args):
        return datetime(*args, tzinfo=timezone.utc)
    return factory


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    from doksnap import scheduler as scheduler_module

    with patch('doksnap.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    scheduler_module.reset_scheduler()
