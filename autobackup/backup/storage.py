"""
Storage handlers for backup artifacts.

Supports:
- FilesystemStore: Keep artifacts in a local directory
- S3Store: Upload to AWS S3 (or any S3 compatible endpoint)

Every store persists artifacts, lists them for retention and "latest"
lookups, and hands a local copy back for restores.
"""

import os
import shutil
import logging
import posixpath
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional

import boto3
from botocore.config import Config as BotoConfig
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError, BotoCoreError

from autobackup.config import ConfigurationError, env_bool, env_str
from .retention import latest, select_expired


logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


class StoreError(Exception):
    """Raised when storage operation fails."""
    pass


class BackupNotFoundError(StoreError):
    """Raised when a store holds no backup, or not the requested one."""
    pass


class Store(ABC):
    """
    A destination that persists backup artifacts.

    Stores are context managers; leaving the block calls close().
    """

    @abstractmethod
    def store(self, path: str, name: str):
        """Persist the local file at `path` under `name`."""

    @abstractmethod
    def retrieve(self, name: str) -> str:
        """Return a local path holding the artifact `name`."""

    @abstractmethod
    def list_backups(self) -> List[str]:
        """Return the names of all stored artifacts."""

    @abstractmethod
    def delete(self, name: str):
        """Delete one stored artifact."""

    def remove_older_backups(self, keep: int) -> int:
        """
        Keep the `keep` most recent artifacts and delete the rest.

        A failure to delete one artifact is logged and does not stop the
        remaining deletions.

        Returns:
            Number of artifacts deleted

        Raises:
            StoreError: If the artifacts cannot be listed
        """
        deleted = 0

        for name in select_expired(self.list_backups(), keep):
            try:
                self.delete(name)
                deleted += 1
            except StoreError as e:
                logger.error(f"Failed to remove {name}: {e}")

        if deleted:
            logger.info(f"Deleted {deleted} backups from {self}")

        return deleted

    def find_latest_backup(self) -> str:
        """
        Return the name of the most recent artifact.

        Raises:
            BackupNotFoundError: If the store is empty
        """
        name = latest(self.list_backups())
        if name is None:
            raise BackupNotFoundError(f"Cannot find a recent backup on {self}")
        return name

    def close(self):
        """Release resources held by the store."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class FilesystemStore(Store):
    """
    Handler for storing backups in a local directory.

    Artifacts live directly in save_dir, one file per backup.
    """

    def __init__(self, save_dir: str):
        """
        Initialize filesystem store.

        Args:
            save_dir: Directory holding the artifacts (created if missing)
        """
        self.save_dir = save_dir

        try:
            os.makedirs(self.save_dir, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to create storage directory {save_dir}: {e}") from e

    def __str__(self):
        return self.save_dir

    def _path(self, name: str) -> str:
        return os.path.normpath(os.path.join(self.save_dir, name))

    def store(self, path: str, name: str):
        """
        Move an artifact into the store.

        Tries a rename first; across filesystems the file is copied, flushed to
        disk, and only then is the source removed.

        Raises:
            StoreError: If the artifact cannot be moved or copied
        """
        dest = self._path(name)

        if os.path.abspath(path) == os.path.abspath(dest):
            logger.info("Using the same path as source and destination, do nothing")
            return

        try:
            os.replace(path, dest)
            return
        except OSError:
            logger.info(f"Cannot rename {path} to {dest}, trying to copy instead")

        try:
            with open(path, 'rb') as src_file, open(dest, 'wb') as dest_file:
                shutil.copyfileobj(src_file, dest_file)
                dest_file.flush()
                os.fsync(dest_file.fileno())
        except OSError as e:
            # A truncated copy must not be listed as a backup
            if os.path.exists(dest):
                try:
                    os.remove(dest)
                except OSError as remove_error:
                    logger.warning(f"Cannot remove partial copy {dest}: {remove_error}")
            raise StoreError(f"Error while copying {path} to {dest}: {e}") from e

        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Cannot remove source file {path}: {e}")

    def retrieve(self, name: str) -> str:
        path = self._path(name)
        if not os.path.isfile(path):
            raise BackupNotFoundError(f"Backup not found: {path}")
        return path

    def list_backups(self) -> List[str]:
        try:
            return sorted(
                entry.name for entry in os.scandir(self.save_dir)
                if entry.is_file()
            )
        except OSError as e:
            raise StoreError(f"Cannot list contents of directory {self.save_dir}: {e}") from e

    def delete(self, name: str):
        path = self._path(name)
        try:
            os.remove(path)
        except OSError as e:
            raise StoreError(f"Failed to remove file {path}: {e}") from e


class S3Store(Store):
    """
    Handler for storing backups in AWS S3.

    Objects are stored under {prefix}/{artifact filename}. A retrieved
    artifact is downloaded to save_dir and owned by the store until close().
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = '',
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        force_path_style: bool = False,
        keep_after_upload: bool = False,
        save_dir: str = '/tmp/',
        client=None
    ):
        """
        Initialize S3 store.

        Args:
            bucket: S3 bucket name
            prefix: Key prefix for artifacts
            region: AWS region
            endpoint: Custom endpoint URL for S3 compatible services
            force_path_style: Use path-style addressing
            keep_after_upload: Keep the local artifact after uploading it
            save_dir: Directory where retrieved artifacts are downloaded
            client: Preconfigured boto3 S3 client
        """
        if not bucket:
            raise ConfigurationError("S3 bucket name is required")

        self.bucket = bucket
        self.prefix = self._clean_prefix(prefix)
        self.region = region
        self.endpoint = endpoint
        self.force_path_style = force_path_style
        self.keep_after_upload = keep_after_upload
        self.save_dir = save_dir
        self.retrieved_file = None

        if client is not None:
            self.s3_client = client
            return

        boto_config = None
        if force_path_style:
            boto_config = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client(
                's3',
                region_name=region or None,
                endpoint_url=endpoint or None,
                config=boto_config
            )
        except (BotoCoreError, ValueError) as e:
            raise StoreError(f"Failed to initialize S3 client: {e}") from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'S3Store':
        """
        Build from S3_ENDPOINT, S3_REGION, S3_BUCKET, S3_PREFIX,
        S3_FORCE_PATH_STYLE, KEEP_AFTER_UPLOAD and SAVEDIR.
        """
        options = {
            'endpoint': env_str('S3_ENDPOINT', '', environ),
            'region': env_str('S3_REGION', '', environ),
            'bucket': env_str('S3_BUCKET', '', environ),
            'prefix': env_str('S3_PREFIX', '', environ),
            'force_path_style': env_bool('S3_FORCE_PATH_STYLE', False, environ),
            'keep_after_upload': env_bool('KEEP_AFTER_UPLOAD', False, environ),
            'save_dir': env_str('SAVEDIR', '/tmp/', environ),
        }
        options.update(overrides)
        return cls(**options)

    @staticmethod
    def _clean_prefix(prefix: str) -> str:
        prefix = (prefix or '').strip('/')
        if not prefix:
            return ''
        return posixpath.normpath(prefix)

    def __str__(self):
        if self.prefix:
            return f"s3://{self.bucket}/{self.prefix}"
        return f"s3://{self.bucket}"

    def object_key(self, name: str) -> str:
        """Return the S3 key of an artifact name."""
        if self.prefix:
            return f"{self.prefix}/{name}"
        return name

    def _error(self, action: str, e: Exception) -> StoreError:
        if isinstance(e, ClientError):
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            return StoreError(f"S3 {action} failed ({error_code}): {e}")
        return StoreError(f"S3 {action} failed: {e}")

    def store(self, path: str, name: str):
        """
        Upload an artifact.

        Unless keep_after_upload is set the local file is removed afterwards,
        whether or not the upload succeeded.

        Raises:
            StoreError: If upload fails
        """
        key = self.object_key(name)

        try:
            if not os.path.exists(path):
                raise StoreError(f"Local file not found: {path}")

            self.s3_client.upload_file(path, self.bucket, key)
            logger.info(f"File uploaded to s3://{self.bucket}/{key}")

        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise self._error('upload', e) from e

        finally:
            if not self.keep_after_upload and os.path.exists(path):
                logger.info(f"Removing source file {path}")
                try:
                    os.remove(path)
                except OSError as e:
                    logger.warning(f"Cannot remove file {path}: {e}")

    def list_backups(self) -> List[str]:
        """
        List artifact keys under the prefix.

        Raises:
            StoreError: If listing fails
        """
        listing_prefix = f"{self.prefix}/" if self.prefix else ''
        keys = []

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket, Prefix=listing_prefix):
                for obj in page.get('Contents', []):
                    # Skip folder markers
                    if not obj['Key'].endswith('/'):
                        keys.append(obj['Key'])

        except (ClientError, BotoCoreError) as e:
            raise self._error('list', e) from e

        return sorted(keys)

    def delete(self, name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=name)
        except (ClientError, BotoCoreError) as e:
            raise self._error('delete', e) from e

    def remove_older_backups(self, keep: int) -> int:
        """
        Keep the `keep` most recent objects and delete the rest in batches.

        Returns:
            Number of objects deleted

        Raises:
            StoreError: If listing or a delete request fails
        """
        expired = select_expired(self.list_backups(), keep)
        deleted = 0

        for start in range(0, len(expired), DELETE_BATCH_SIZE):
            batch = expired[start:start + DELETE_BATCH_SIZE]
            for key in batch:
                logger.info(f"Marked to delete: s3://{self.bucket}/{key}")

            try:
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': [{'Key': key} for key in batch]}
                )
            except (ClientError, BotoCoreError) as e:
                raise self._error('delete', e) from e

            deleted += len(response.get('Deleted', []))
            for error in response.get('Errors', []):
                logger.error(f"Failed to delete s3://{self.bucket}/{error.get('Key')}: {error.get('Message')}")

        if expired:
            logger.info(f"Deleted {deleted} objects from S3")

        return deleted

    def retrieve(self, name: str) -> str:
        """
        Download an artifact into save_dir.

        Args:
            name: Full object key, or an artifact filename under the prefix

        Returns:
            Local path of the downloaded file

        Raises:
            StoreError: If the download fails
        """
        key = name
        if self.prefix and not name.startswith(self.prefix + '/'):
            key = self.object_key(name)

        filepath = os.path.join(self.save_dir, posixpath.basename(key))

        try:
            os.makedirs(self.save_dir, exist_ok=True)
            self.s3_client.download_file(self.bucket, key, filepath)
        except ClientError as e:
            if os.path.exists(filepath):
                os.remove(filepath)
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey'):
                raise BackupNotFoundError(f"Backup not found: s3://{self.bucket}/{key}") from e
            raise self._error('download', e) from e
        except (BotoCoreError, OSError) as e:
            raise self._error('download', e) from e

        logger.info(f"File downloaded to {filepath}")
        self.retrieved_file = filepath

        return filepath

    def close(self):
        """Remove the retrieved file, if any."""
        if self.retrieved_file:
            try:
                os.remove(self.retrieved_file)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Cannot remove file {self.retrieved_file}: {e}")

            self.retrieved_file = None
