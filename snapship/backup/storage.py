"""
Object storage upload for backup artifacts.

S3Storage talks to any S3-compatible service (AWS S3, Aliyun OSS, MinIO)
through boto3. The caller decides the object key; the storage handler only
moves bytes.
"""

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class UploadError(Exception):
    """Raised when an artifact cannot be uploaded."""
    pass


def _endpoint_url(endpoint: Optional[str]) -> Optional[str]:
    if not endpoint:
        return None
    if '://' not in endpoint:
        return f"https://{endpoint}"
    return endpoint


class S3Storage:
    """
    Handler for uploading artifacts to an S3-compatible bucket.
    """

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint: Service endpoint for non-AWS providers, with or
                without scheme (https is assumed)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = _endpoint_url(endpoint)

        client_kwargs = {
            'aws_access_key_id': access_key,
            'aws_secret_access_key': secret_key,
            'region_name': region,
        }
        if self.endpoint_url:
            client_kwargs['endpoint_url'] = self.endpoint_url
            # OSS only accepts virtual-hosted style requests
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'virtual'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}") from e

    @classmethod
    def from_settings(cls, settings) -> 'S3Storage':
        return cls(
            access_key=settings.access_key,
            secret_key=settings.secret_key,
            bucket_name=settings.bucket,
            region=settings.region,
            endpoint=settings.endpoint,
        )

    def upload(self, local_path: str, key: str) -> str:
        """
        Upload an artifact under the given key.

        Args:
            local_path: Path to local artifact
            key: Destination object key

        Returns:
            The object key

        Raises:
            UploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

            logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{key}")
            return key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"Upload failed ({error_code}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise UploadError(f"Upload failed: {e}") from e

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload a large file in parts, aborting the upload on any failure.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
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

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

