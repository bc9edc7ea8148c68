"""Object-store bucket provider (S3)."""

import json
import logging
import os
import tempfile
from dataclasses import dataclass

from common import NotFoundError
from providers.aws import AwsCli

logger = logging.getLogger(__name__)

# Intelligent tiering after 30 days; non-current versions expire after 7 days
LIFECYCLE_CONFIGURATION = {
    'Rules': [
        {
            'ID': 'IntelligentTiering',
            'Status': 'Enabled',
            'Filter': {'Prefix': ''},
            'Transitions': [{'Days': 30, 'StorageClass': 'INTELLIGENT_TIERING'}],
            'NoncurrentVersionExpiration': {'NoncurrentDays': 7},
        }
    ]
}

# delete-objects accepts at most 1000 keys per request
DELETE_BATCH_SIZE = 1000


@dataclass
class S3ObjectStore:
    """Versioned bucket holding storage-node layer files."""
    aws: AwsCli

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self.aws.call('s3api', 'head-bucket', '--bucket', bucket)
        except NotFoundError:
            return False
        return True

    def create_bucket(self, bucket: str) -> None:
        args = ['--bucket', bucket]
        # us-east-1 rejects an explicit LocationConstraint
        if self.aws.region != 'us-east-1':
            args += ['--create-bucket-configuration', f'LocationConstraint={self.aws.region}']
        self.aws.call('s3api', 'create-bucket', *args)
        logger.info(f"Bucket {bucket} created")

    def configure_bucket(self, bucket: str) -> None:
        """Enable versioning and put the lifecycle policy. Both calls replace the previous setting."""
        self.aws.call(
            's3api', 'put-bucket-versioning', '--bucket', bucket,
            '--versioning-configuration', 'Status=Enabled',
        )
        self.aws.call(
            's3api', 'put-bucket-lifecycle-configuration', '--bucket', bucket,
            '--lifecycle-configuration', json.dumps(LIFECYCLE_CONFIGURATION),
        )
        logger.info(f"Bucket {bucket} has versioning and lifecycle policy")

    def _list_versions(self, bucket: str) -> list[dict]:
        """All object versions and delete markers as {Key, VersionId} dicts."""
        entries: list[dict] = []
        token_args: list[str] = []
        while True:
            page = self.aws.call('s3api', 'list-object-versions', '--bucket', bucket, *token_args) or {}
            for section in ('Versions', 'DeleteMarkers'):
                for item in page.get(section) or []:
                    entries.append({'Key': item['Key'], 'VersionId': item['VersionId']})
            if not page.get('IsTruncated'):
                return entries
            token_args = ['--key-marker', page['NextKeyMarker']]
            if page.get('NextVersionIdMarker'):
                token_args += ['--version-id-marker', page['NextVersionIdMarker']]

    def drain(self, bucket: str) -> int:
        """Delete every object version and delete marker. Returns the count removed."""
        entries = self._list_versions(bucket)
        for i in range(0, len(entries), DELETE_BATCH_SIZE):
            batch = entries[i:i + DELETE_BATCH_SIZE]
            self._delete_batch(bucket, batch)
        return len(entries)

    def _delete_batch(self, bucket: str, batch: list[dict]) -> None:
        # A full batch of long keys exceeds the argv limit, so pass it as a file
        fd, path = tempfile.mkstemp(prefix='s3-delete-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump({'Objects': batch, 'Quiet': True}, f)
            self.aws.call('s3api', 'delete-objects', '--bucket', bucket, '--delete', f'file://{path}')
        finally:
            os.unlink(path)

    def delete_bucket(self, bucket: str) -> None:
        self.aws.call('s3api', 'delete-bucket', '--bucket', bucket)
