"""
S3 storage for encrypted backups.

Objects are stored under:
    backups/{source_name}/{YYYYMMDD_HHMMSS}_{filename}
"""

import os
import re
import logging
from typing import List, Dict, Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from doksnap.models import BackupMetadata, RemoteObject


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
CHUNK_SIZE = 100 * 1024 * 1024  # 100MB
KEY_PREFIX = 'backups'
DEFAULT_ENDPOINT = 's3.amazonaws.com'


class UploadError(Exception):
    """Raised when an object store operation fails."""
    pass


def sanitize_source_name(source_name: str) -> str:
    sanitized = re.sub(r'[^a-zA-Z0-9_\-]', '_', str(source_name))
    if not sanitized:
        raise UploadError(f"Invalid source name for S3 key generation: {source_name!r}")
    return sanitized


def sanitize_filename(filename: str) -> str:
    return re.sub(r'[^a-zA-Z0-9_\-.]', '_', str(filename))


def compact_timestamp(iso_timestamp: str) -> str:
    """'2024-01-15T12:30:45Z' -> '20240115_123045'"""
    compact = iso_timestamp.replace('-', '').replace(':', '').replace('T', '_')
    compact = compact.split('.')[0].split('+')[0]
    return compact.rstrip('Z')


def generate_s3_key(metadata: BackupMetadata) -> str:
    """Build the object key for a backup artifact."""
    source = sanitize_source_name(metadata.source_name)
    timestamp = compact_timestamp(metadata.timestamp)
    filename = sanitize_filename(metadata.filename)
    return f"{KEY_PREFIX}/{source}/{timestamp}_{filename}"


def source_prefix(source_name: str) -> str:
    return f"{KEY_PREFIX}/{sanitize_source_name(source_name)}/"


class S3Uploader:
    """
    Uploads backups to an S3 compatible object store.

    Files above the multipart threshold are sent in fixed size chunks; a
    failed chunk aborts the whole multipart upload.
    """

    def __init__(self, settings, client=None):
        """
        Args:
            settings: S3Settings
            client: Optional pre-built boto3 S3 client
        """
        self.bucket_name = settings.bucket
        self.region = settings.region
        self.multipart_threshold = MULTIPART_THRESHOLD
        self.chunk_size = CHUNK_SIZE

        if client is not None:
            self.s3_client = client
            return

        client_kwargs = {
            'aws_access_key_id': settings.access_key_id,
            'aws_secret_access_key': settings.secret_access_key,
            'region_name': settings.region,
        }

        s3_options = {}
        if settings.endpoint and settings.endpoint != DEFAULT_ENDPOINT:
            client_kwargs['endpoint_url'] = f"https://{settings.endpoint}"
            # Path-style for custom endpoints
            s3_options['addressing_style'] = 'path'

        client_kwargs['config'] = BotoConfig(
            connect_timeout=30,
            read_timeout=300,
            retries={'max_attempts': 3, 'mode': 'standard'},
            s3=s3_options or None,
        )

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def upload(self, file_path: str, metadata: BackupMetadata) -> Dict[str, Any]:
        """
        Upload an encrypted backup.

        Args:
            file_path: Local encrypted file
            metadata: Metadata produced by the archive builder

        Returns:
            {'key': str, 'success': True} or
            {'key': str, 'success': False, 'error': str}
        """
        key = None
        try:
            key = generate_s3_key(metadata)

            if not os.path.exists(file_path):
                raise UploadError("Local file not found")

            if os.path.getsize(file_path) > self.multipart_threshold:
                self._multipart_upload(file_path, key, metadata)
            else:
                self._simple_upload(file_path, key, metadata)

            logger.info(f"Uploaded {key}")
            return {'key': key, 'success': True}

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error = f"S3 upload failed ({error_code}): {e}"
        except Exception as e:
            error = str(e)

        logger.error(f"Upload of {key} failed: {error}")
        return {'key': key, 'success': False, 'error': error}

    def _simple_upload(self, file_path: str, key: str, metadata: BackupMetadata):
        with open(file_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f,
                Metadata=metadata.s3_metadata(),
                ServerSideEncryption='AES256',
            )

    def _multipart_upload(self, file_path: str, key: str, metadata: BackupMetadata):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            Metadata=metadata.s3_metadata(),
            ServerSideEncryption='AES256',
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(file_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data,
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag'],
                    })
                    part_number += 1

            if not parts:
                raise UploadError("No parts uploaded for multipart upload")

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts},
            )

        except Exception:
            self._abort_multipart_upload(key, upload_id)
            raise

    def _abort_multipart_upload(self, key: str, upload_id: str):
        """Best effort: failures are logged, never raised."""
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
            )
        except Exception as e:
            logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")

    def list_backups(self, source_name: str, include_metadata: bool = True) -> List[RemoteObject]:
        """
        List backups of a source, newest first.

        Raises:
            UploadError: If listing fails
        """
        prefix = source_prefix(source_name)

        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append(RemoteObject(
                        key=obj['Key'],
                        size=obj['Size'],
                        last_modified=obj['LastModified'],
                        metadata=self.get_object_metadata(obj['Key']) if include_metadata else {},
                    ))

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"Failed to list S3 objects: {e}")

        objects.sort(key=lambda o: o.last_modified, reverse=True)
        return objects

    def get_object_metadata(self, key: str) -> Dict[str, str]:
        """Object tags of a key, empty when the object is gone."""
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return response.get('Metadata') or {}
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return {}
            raise UploadError(f"S3 head failed ({error_code}): {e}")

    def delete_backup(self, key: str):
        """
        Delete a backup object.

        Raises:
            UploadError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            UploadError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise UploadError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise UploadError(f"Access denied to bucket: {self.bucket_name}")
            raise UploadError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"Failed to connect to S3: {e}")
