"""Stack template locations and their resolution."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..core.aws_client import AWSClientManager
from ..core.errors import TemplateNotFound


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TemplateLocation:
    """Where a stack template body comes from.

    Exactly one of a local path, an S3 object or an inline body is set.
    """

    path: Optional[str] = None
    s3_bucket: Optional[str] = None
    s3_key: Optional[str] = None
    body: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateLocation':
        """Build a location from a request descriptor.

        Accepts ``{path}``, ``{s3BucketName, s3ObjectKey}``, ``{bucket, key}``
        or ``{body}``.

        Raises:
            TemplateNotFound: When the descriptor names no usable location
        """
        if not isinstance(data, dict):
            raise TemplateNotFound(f"Invalid template location: {data!r}")
        location = cls(
            path=data.get('path'),
            s3_bucket=data.get('s3BucketName') or data.get('bucket'),
            s3_key=data.get('s3ObjectKey') or data.get('key'),
            body=data.get('body'),
        )
        location.validate()
        return location

    @classmethod
    def inline(cls, body: str) -> 'TemplateLocation':
        return cls(body=body)

    def validate(self) -> None:
        sources = [
            self.path is not None,
            self.s3_bucket is not None or self.s3_key is not None,
            self.body is not None,
        ]
        if sum(sources) != 1:
            raise TemplateNotFound(f"Template location must name exactly one source: {self}")
        if (self.s3_bucket is None) != (self.s3_key is None):
            raise TemplateNotFound(f"S3 template location needs both bucket and key: {self}")

    def __str__(self) -> str:
        if self.path is not None:
            return self.path
        if self.s3_bucket is not None:
            return f"s3://{self.s3_bucket}/{self.s3_key}"
        return '<inline template>'


class TemplateStore:
    """Resolves template locations to template bodies."""

    def __init__(self, aws_client: Optional[AWSClientManager] = None) -> None:
        """Initialize the template store.

        Args:
            aws_client: AWS client manager, required for S3 locations
        """
        self.aws_client = aws_client

    def resolve(self, location: TemplateLocation) -> str:
        """Load a template body.

        Args:
            location: Template location

        Returns:
            Template body string

        Raises:
            TemplateNotFound: When the template cannot be read
        """
        location.validate()
        if location.body is not None:
            return location.body
        if location.path is not None:
            return self._read_file(location.path)
        return self._read_s3(location.s3_bucket, location.s3_key)

    def _read_file(self, path: str) -> str:
        try:
            return Path(path).read_text(encoding='utf-8')
        except (IOError, UnicodeDecodeError) as e:
            raise TemplateNotFound(f"Unable to read template {path}: {e}")

    def _read_s3(self, bucket: str, key: str) -> str:
        if self.aws_client is None:
            raise TemplateNotFound(f"No AWS client available to read s3://{bucket}/{key}")
        try:
            s3_client = self.aws_client.get_client('s3')
            response = s3_client.get_object(Bucket=bucket, Key=key)
            body = response['Body'].read()
        except ClientError as e:
            error_message = e.response['Error']['Message']
            raise TemplateNotFound(f"Unable to get template s3://{bucket}/{key}: {error_message}")
        except BotoCoreError as e:
            raise TemplateNotFound(f"Unable to get template s3://{bucket}/{key}: {e}")

        logger.debug(f"Loaded template s3://{bucket}/{key}")
        return body.decode('utf-8') if isinstance(body, bytes) else body
