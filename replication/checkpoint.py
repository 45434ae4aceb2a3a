"""
Resume Token Checkpoints
========================

Durable storage of the resume token of the last processed change event, so a
restarted daemon continues right after it instead of losing the changes made
while it was down.

Backends:
- file: JSON document on local disk (default)
- minio: JSON object in a MinIO / S3 bucket, for stateless containers
"""

import io
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from bson import json_util
from minio import Minio
from minio.error import MinioException, S3Error
from urllib3.exceptions import HTTPError

from .errors import CheckpointError, ConfigError

logger = logging.getLogger(__name__)


def _empty_checkpoint() -> Dict:
    return {"resume_token": None, "last_timestamp": None, "events_processed": 0}


def _encode_checkpoint(resume_token: Mapping[str, Any], events_processed: int) -> Dict:
    return {
        # Extended JSON keeps binary token payloads intact
        "resume_token": json_util.dumps(resume_token),
        "last_timestamp": datetime.now().isoformat(),
        "events_processed": events_processed,
    }


def _decode_token(checkpoint: Dict) -> Optional[Mapping[str, Any]]:
    token = checkpoint.get("resume_token")
    if not token:
        return None
    try:
        return json_util.loads(token)
    except ValueError as e:
        raise CheckpointError(f"Stored resume token is not valid: {e}") from e


class FileCheckpointStore:
    """Checkpoint kept in a local JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> Dict:
        """Load the raw checkpoint document."""
        if not self.path.exists():
            return _empty_checkpoint()
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise CheckpointError(f"Cannot read checkpoint {self.path}: {e}") from e

    def load(self) -> Optional[Mapping[str, Any]]:
        """Get the stored resume token, or None when starting fresh."""
        return _decode_token(self.read())

    def save(self, resume_token: Mapping[str, Any], events_processed: int = 0):
        """Persist the token atomically (write to a temp file, then rename)."""
        checkpoint = _encode_checkpoint(resume_token, events_processed)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            os.makedirs(self.path.parent, exist_ok=True)
            with open(tmp_path, 'w') as f:
                json.dump(checkpoint, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise CheckpointError(f"Cannot write checkpoint {self.path}: {e}") from e

    def clear(self):
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Checkpoint removed: {self.path}")

    def describe(self) -> str:
        return str(self.path)


class MinIOCheckpointStore:
    """Checkpoint kept as a JSON object in a MinIO bucket."""

    def __init__(self, config: Dict, client: Optional[Minio] = None):
        """
        Args:
            config: Dict with endpoint, access_key, secret_key, bucket, object_name, secure
            client: Already constructed Minio client
        """
        self.config = config
        self.bucket = config.get("bucket", "cdc-checkpoints")
        self.object_name = config.get("object_name", "mongodb_changes/checkpoint.json")
        self.client = client

    def connect(self):
        """Create the client and make sure the bucket exists."""
        if self.client is None:
            self.client = Minio(
                endpoint=self.config["endpoint"],
                access_key=self.config["access_key"],
                secret_key=self.config["secret_key"],
                secure=self.config.get("secure", False)
            )
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
                logger.info(f"Created bucket: {self.bucket}")
        except (MinioException, HTTPError) as e:
            raise CheckpointError(f"Cannot reach checkpoint bucket {self.bucket}: {e}") from e

    def read(self) -> Dict:
        try:
            response = self.client.get_object(self.bucket, self.object_name)
        except S3Error as e:
            if e.code == "NoSuchKey":
                return _empty_checkpoint()
            raise CheckpointError(f"Cannot read checkpoint {self.describe()}: {e}") from e
        except (MinioException, HTTPError) as e:
            raise CheckpointError(f"Cannot read checkpoint {self.describe()}: {e}") from e
        try:
            return json.loads(response.read())
        except ValueError as e:
            raise CheckpointError(f"Checkpoint {self.describe()} is not valid JSON: {e}") from e
        finally:
            response.close()
            response.release_conn()

    def load(self) -> Optional[Mapping[str, Any]]:
        return _decode_token(self.read())

    def save(self, resume_token: Mapping[str, Any], events_processed: int = 0):
        data = json.dumps(_encode_checkpoint(resume_token, events_processed), indent=2).encode('utf-8')
        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=self.object_name,
                data=io.BytesIO(data),
                length=len(data),
                content_type="application/json"
            )
        except (MinioException, HTTPError) as e:
            raise CheckpointError(f"Cannot write checkpoint {self.describe()}: {e}") from e

    def clear(self):
        try:
            self.client.remove_object(self.bucket, self.object_name)
        except (MinioException, HTTPError) as e:
            raise CheckpointError(f"Cannot delete checkpoint {self.describe()}: {e}") from e
        logger.info(f"Checkpoint removed: {self.describe()}")

    def describe(self) -> str:
        return f"s3://{self.bucket}/{self.object_name}"


def create_checkpoint_store(checkpoint_settings: Dict):
    """
    Build the checkpoint store selected in task settings.

    Args:
        checkpoint_settings: The ``task_settings.checkpoint`` section
    """
    backend = checkpoint_settings.get("backend", "file")
    if backend == "file":
        return FileCheckpointStore(checkpoint_settings["path"])
    if backend == "minio":
        store = MinIOCheckpointStore(checkpoint_settings["minio"])
        store.connect()
        return store
    raise ConfigError(f"Unknown checkpoint backend: {backend}")
