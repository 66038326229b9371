"""
Storage backends for backup archives.

Supports:
- FileStorage: Copy to/from a local path (file:// or a bare /path)
- SMBStorage: Copy to/from an SMB share (smb://host/share/path)
- S3Storage: Upload to/download from S3 or an S3-compatible endpoint (s3://bucket/path)

Every backend implements the same push/pull contract and streams data in
chunks, so an archive is never held in memory as a whole.
"""

import os
import shutil
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Optional, Callable, Tuple
from urllib.parse import urlparse, unquote

import boto3
import smbclient
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from smbprotocol.exceptions import SMBException

from dbbackup.config import ConfigError, Credentials


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

# Multipart threshold and part size for S3 uploads
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

SMB_DEFAULT_PORT = 445
SMB_UNSAFE_CHARS = '\\/:*?"<>|'


class TransferError(Exception):
    """Raised when a push or pull fails for one target."""

    def __init__(self, message: str, target: str = None, backend: str = None, operation: str = None):
        super().__init__(message)
        self.target = target
        self.backend = backend
        self.operation = operation

    def __str__(self):
        context = ', '.join(
            f"{name}={value}" for name, value in (
                ('operation', self.operation),
                ('backend', self.backend),
                ('target', self.target)
            ) if value
        )
        message = super().__str__()
        return f"{message} ({context})" if context else message


class TransferCancelled(TransferError):
    """Raised by a cancellation check when the run deadline has passed."""
    pass


class Deadline:
    """
    Per-run deadline used as a cancellation check between transfer chunks.

    Calling the instance raises TransferCancelled once the deadline is past.
    """

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self.expires_at = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def __call__(self):
        if self.expires_at is not None and time.monotonic() >= self.expires_at:
            raise TransferCancelled(f"Deadline of {self.seconds}s exceeded")


@dataclass(frozen=True)
class Target:
    """A parsed backup destination or source URL."""
    raw: str
    scheme: str
    host: str
    port: Optional[int]
    path: str
    username: Optional[str] = None
    password: Optional[str] = None


def normalize_target(raw: str) -> str:
    """Rewrite a bare local path ("/backups") into a file:// URL."""
    raw = raw.strip()
    if raw.startswith('/'):
        return f"file://{raw}"
    return raw


def parse_target(raw: str) -> Target:
    """
    Parse a target URL into a Target.

    An absent scheme is treated as a local file path.

    Raises:
        ConfigError: If the URL cannot be parsed or the scheme is unknown
    """
    if not raw or not raw.strip():
        raise ConfigError("Empty target URL")

    try:
        url = urlparse(normalize_target(raw))
        port = url.port
    except ValueError as e:
        raise ConfigError(f"Invalid target URL {raw!r}: {e}")

    scheme = url.scheme.lower() or 'file'
    if scheme not in _BACKENDS:
        raise ConfigError(
            f"Unknown target URL scheme: {scheme!r} in {raw!r}. "
            f"Valid options: {list(_BACKENDS.keys())}"
        )

    return Target(
        raw=raw,
        scheme=scheme,
        host=url.hostname or '',
        port=port,
        path=unquote(url.path),
        username=unquote(url.username) if url.username else None,
        password=unquote(url.password) if url.password else None
    )


def _copy_stream(source, destination, cancellation_check: Optional[Callable] = None) -> int:
    """
    Copy one file object to another in fixed-size chunks.

    Returns:
        Number of bytes copied
    """
    copied = 0
    while True:
        if cancellation_check:
            cancellation_check()

        data = source.read(CHUNK_SIZE)
        if not data:
            break

        destination.write(data)
        copied += len(data)

    return copied


class StorageBackend:
    """
    Push/pull contract shared by all backends.

    push() copies a local file to the target under remote_name;
    pull() copies the object named by the target to a local path.
    Both return the number of bytes transferred.
    """

    name = None

    def push(self, credentials: Credentials, target: Target, remote_name: str,
             local_path: str, cancellation_check: Optional[Callable] = None) -> int:
        raise NotImplementedError

    def pull(self, credentials: Credentials, target: Target, local_path: str,
             cancellation_check: Optional[Callable] = None) -> int:
        raise NotImplementedError

    def _error(self, message: str, target: Target, operation: str) -> TransferError:
        return TransferError(message, target=target.raw, backend=self.name, operation=operation)


class FileStorage(StorageBackend):
    """
    Handler for local filesystem targets.

    The target directory must already exist; it is not created.
    """

    name = 'file'

    def __init__(self, keep_permissions: bool = True):
        """
        Initialize local storage handler.

        Args:
            keep_permissions: Copy permission bits from source to destination
        """
        self.keep_permissions = keep_permissions

    def push(self, credentials, target, remote_name, local_path, cancellation_check=None):
        dest_path = os.path.join(target.path, remote_name)
        return self._copy(local_path, dest_path, target, 'push', cancellation_check)

    def pull(self, credentials, target, local_path, cancellation_check=None):
        return self._copy(target.path, local_path, target, 'pull', cancellation_check)

    def _copy(self, source_path: str, dest_path: str, target: Target, operation: str,
              cancellation_check: Optional[Callable]) -> int:
        if not os.path.isfile(source_path):
            raise self._error(f"Source file not found: {source_path}", target, operation)

        try:
            with open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
                copied = _copy_stream(src, dst, cancellation_check)

            if self.keep_permissions:
                shutil.copymode(source_path, dest_path)

            return copied

        except TransferError as e:
            raise self._error(str(e), target, operation) from e
        except PermissionError as e:
            raise self._error(f"Permission denied writing to {dest_path}: {e}", target, operation) from e
        except OSError as e:
            raise self._error(f"Failed to copy {source_path} to {dest_path}: {e}", target, operation) from e


def parse_smb_path(path: str) -> Tuple[str, str]:
    """
    Split a URL path into share name and in-share path.

    "/share/dir/file" -> ("share", "/dir/file")
    """
    parts = path.lstrip('/').split('/', 1)
    if len(parts) <= 1:
        return parts[0], ''
    return parts[0], f"/{parts[1]}"


def parse_smb_user(user: str) -> str:
    """Turn a "domain;user" string into the "domain\\user" form used by NTLM."""
    parts = user.split(';', 1)
    if len(parts) < 2:
        return user
    return f"{parts[0]}\\{parts[1]}"


def resolve_smb_credentials(credentials: Credentials, target: Target) -> Tuple[str, str]:
    """
    Choose SMB username and password.

    Order: explicit smb_credentials ("user%password"), then URL userinfo,
    then empty strings.
    """
    username, password = '', ''

    if credentials and credentials.smb_credentials:
        parts = credentials.smb_credentials.split('%', 1)
        username = parts[0]
        if len(parts) == 2:
            password = parts[1]

    if not username and target.username:
        username = target.username
        password = target.password or ''

    if not username:
        password = ''

    return parse_smb_user(username), password


def sanitize_remote_name(name: str) -> str:
    """Keep only the base name and replace characters SMB servers reject."""
    name = posixpath.basename(name.replace('\\', '/'))
    return ''.join('-' if c in SMB_UNSAFE_CHARS else c for c in name)


class SMBStorage(StorageBackend):
    """
    Handler for SMB share targets.

    Authenticates with NTLM. The first URL path segment is the share; the
    rest is the directory (push) or file (pull) within the share. Each
    operation uses its own connection cache, closed when it completes.
    """

    name = 'smb'

    def push(self, credentials, target, remote_name, local_path, cancellation_check=None):
        if not os.path.isfile(local_path):
            raise self._error(f"Local file not found: {local_path}", target, 'push')

        share, share_path = parse_smb_path(target.path)
        remote_path = self._unc_path(target.host, share, share_path, sanitize_remote_name(remote_name))

        return self._transfer(credentials, target, 'push', local_path, remote_path, cancellation_check)

    def pull(self, credentials, target, local_path, cancellation_check=None):
        share, share_path = parse_smb_path(target.path)
        remote_path = self._unc_path(target.host, share, share_path)

        return self._transfer(credentials, target, 'pull', local_path, remote_path, cancellation_check)

    def _transfer(self, credentials, target, operation, local_path, remote_path, cancellation_check) -> int:
        """
        Register an NTLM session and stream between local_path and remote_path.

        Direction follows operation: 'push' writes the remote file, 'pull'
        writes the local one.
        """
        if not target.host:
            raise self._error("SMB target has no host", target, operation)

        username, password = resolve_smb_credentials(credentials, target)
        port = target.port or SMB_DEFAULT_PORT
        connection_cache = {}

        session_kwargs = {}
        remaining = getattr(cancellation_check, 'remaining', None)
        if remaining and remaining() is not None:
            session_kwargs['connection_timeout'] = max(1, int(remaining()))

        try:
            smbclient.register_session(
                target.host,
                username=username or None,
                password=password or None,
                port=port,
                auth_protocol='ntlm',
                connection_cache=connection_cache,
                **session_kwargs
            )

            if operation == 'push':
                with open(local_path, 'rb') as src, \
                        smbclient.open_file(remote_path, mode='wb', port=port,
                                            connection_cache=connection_cache) as dst:
                    return _copy_stream(src, dst, cancellation_check)

            with smbclient.open_file(remote_path, mode='rb', port=port,
                                     connection_cache=connection_cache) as src, \
                    open(local_path, 'wb') as dst:
                return _copy_stream(src, dst, cancellation_check)

        except TransferError as e:
            raise self._error(str(e), target, operation) from e
        except SMBException as e:
            raise self._error(f"SMB {operation} failed: {e}", target, operation) from e
        except (OSError, ValueError) as e:
            raise self._error(f"Failed to {operation} via SMB: {e}", target, operation) from e
        finally:
            smbclient.reset_connection_cache(fail_on_error=False, connection_cache=connection_cache)

    @staticmethod
    def _unc_path(host: str, share: str, share_path: str, filename: str = None) -> str:
        parts = [share] + [p for p in share_path.split('/') if p]
        if filename:
            parts.append(filename)
        return f"\\\\{host}\\" + '\\'.join(parts)


class S3Storage(StorageBackend):
    """
    Handler for S3 targets.

    Bucket is the URL host; the key is the URL path joined with the remote
    name on push, and the URL path itself on pull.
    """

    name = 's3'

    def _client(self, credentials: Credentials, cancellation_check: Optional[Callable] = None):
        """Create an S3 client honouring the endpoint override and explicit keys."""
        client_kwargs = {}
        if credentials.aws_endpoint_url:
            client_kwargs['endpoint_url'] = credentials.aws_endpoint_url
        if credentials.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = credentials.aws_access_key_id
            client_kwargs['aws_secret_access_key'] = credentials.aws_secret_access_key
        if credentials.aws_region:
            client_kwargs['region_name'] = credentials.aws_region

        remaining = getattr(cancellation_check, 'remaining', None)
        if remaining and remaining() is not None:
            timeout = max(1, int(remaining()))
            client_kwargs['config'] = BotoConfig(connect_timeout=timeout, read_timeout=timeout)

        return boto3.client('s3', **client_kwargs)

    @staticmethod
    def object_key(target: Target, remote_name: str = None) -> str:
        key = target.path.lstrip('/')
        if remote_name:
            key = posixpath.join(key, remote_name) if key else remote_name
        return key

    def push(self, credentials, target, remote_name, local_path, cancellation_check=None):
        """
        Upload archive to S3.

        Files above MULTIPART_THRESHOLD go through a multipart upload, which
        checks for cancellation between parts.

        Raises:
            TransferError: If upload fails
        """
        if not os.path.isfile(local_path):
            raise self._error(f"Local file not found: {local_path}", target, 'push')

        bucket = target.host
        key = self.object_key(target, remote_name)

        try:
            client = self._client(credentials, cancellation_check)
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(client, bucket, key, local_path, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(client, bucket, key, local_path)

            return file_size

        except TransferError as e:
            raise self._error(str(e), target, 'push') from e
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise self._error(f"S3 upload failed ({error_code}): {e}", target, 'push') from e
        except BotoCoreError as e:
            raise self._error(f"S3 upload failed: {e}", target, 'push') from e
        except OSError as e:
            raise self._error(f"Failed to read {local_path}: {e}", target, 'push') from e

    def _simple_upload(self, client, bucket: str, key: str, local_path: str):
        with open(local_path, 'rb') as f:
            client.put_object(Bucket=bucket, Key=key, Body=f)

    def _multipart_upload(self, client, bucket: str, key: str, local_path: str,
                          cancellation_check: Optional[Callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any error, including cancellation.
        """
        response = client.create_multipart_upload(Bucket=bucket, Key=key)
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning("Failed to abort multipart upload %s for s3://%s/%s: %s",
                               upload_id, bucket, key, abort_error)
            raise

    def pull(self, credentials, target, local_path, cancellation_check=None):
        """
        Download an object from S3, streaming the body to local_path.

        Raises:
            TransferError: If download fails
        """
        bucket = target.host
        key = self.object_key(target)

        try:
            client = self._client(credentials, cancellation_check)
            response = client.get_object(Bucket=bucket, Key=key)
            body = response['Body']

            try:
                with open(local_path, 'wb') as f:
                    return _copy_stream(body, f, cancellation_check)
            finally:
                body.close()

        except TransferError as e:
            raise self._error(str(e), target, 'pull') from e
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise self._error(f"S3 download failed ({error_code}): {e}", target, 'pull') from e
        except BotoCoreError as e:
            raise self._error(f"S3 download failed: {e}", target, 'pull') from e
        except OSError as e:
            raise self._error(f"Failed to write {local_path}: {e}", target, 'pull') from e


_BACKENDS = {
    'file': FileStorage,
    'smb': SMBStorage,
    's3': S3Storage
}


def create_storage(scheme: str, keep_permissions: bool = True) -> StorageBackend:
    """
    Factory function to create the backend for a URL scheme.

    Raises:
        ConfigError: If the scheme is unknown
    """
    if scheme not in _BACKENDS:
        raise ConfigError(
            f"Unknown storage scheme: {scheme!r}. "
            f"Valid options: {list(_BACKENDS.keys())}"
        )

    if scheme == 'file':
        return FileStorage(keep_permissions=keep_permissions)
    return _BACKENDS[scheme]()
