"""
artifact_store
--------------

stage 사이에 아티팩트를 넘기는 암호화 객체 저장소.

아티팩트 하나는 파일 묶음 하나이며, zip 객체 하나로 저장된다.
객체 키는 <pipeline>/<run_id>/<artifact>.zip 으로, 실행(run)마다 네임스페이스가 분리된다.
한 번 기록된 아티팩트는 같은 run 안에서 다시 쓸 수 없다.
"""

from __future__ import annotations

import io
import os
import tempfile
import zipfile
from dataclasses import dataclass
from typing import FrozenSet, List, Optional

from google.cloud import storage

from .access_role import AccessRole
from .errors import ArtifactError
from .kms_key import EncryptionKey
from .logging_utils import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class Artifact:
    name: str


@dataclass(frozen=True)
class ArtifactLocation:
    bucket_name: str
    object_key: str


def pack_directory(source_dir: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for root, _dirs, files in os.walk(source_dir):
            for filename in sorted(files):
                path = os.path.join(root, filename)
                arcname = os.path.relpath(path, source_dir).replace(os.sep, "/")
                zf.write(path, arcname)
    return buf.getvalue()


def unpack_to_directory(data: bytes, dest_dir: str) -> List[str]:
    os.makedirs(dest_dir, exist_ok=True)
    dest_root = os.path.realpath(dest_dir)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = zf.namelist()
        for name in names:
            target = os.path.realpath(os.path.join(dest_root, name))
            if os.path.commonpath([dest_root, target]) != dest_root:
                raise ArtifactError(f"아티팩트에 잘못된 경로가 포함되어 있습니다: {name}")
        zf.extractall(dest_root)
    return names


class ArtifactStore:
    supported_permissions: FrozenSet[str] = frozenset({"read", "write"})

    def __init__(self, bucket_name: str, pipeline_name: str, key: EncryptionKey) -> None:
        self.bucket_name = bucket_name
        self.pipeline_name = pipeline_name
        self.key = key

    @property
    def resource_id(self) -> str:
        return f"bucket/{self.bucket_name}"

    def object_key(self, run_id: str, artifact: Artifact) -> str:
        return f"{self.pipeline_name}/{run_id}/{artifact.name}.zip"

    def location(self, run_id: str, artifact: Artifact) -> ArtifactLocation:
        return ArtifactLocation(self.bucket_name, self.object_key(run_id, artifact))

    # 백엔드별 구현
    def _write(self, object_key: str, data: bytes) -> None:
        raise NotImplementedError

    def _read(self, object_key: str) -> Optional[bytes]:
        raise NotImplementedError

    def _exists(self, object_key: str) -> bool:
        raise NotImplementedError

    def exists(self, run_id: str, artifact: Artifact) -> bool:
        return self._exists(self.object_key(run_id, artifact))

    def put(self, run_id: str, artifact: Artifact, source_dir: str, role: AccessRole) -> ArtifactLocation:
        """
        source_dir 아래 파일 전체를 아티팩트로 기록하고 위치를 반환한다.
        """
        role.check(self, "write")
        self.key.check_encrypt(role)

        object_key = self.object_key(run_id, artifact)
        if self._exists(object_key):
            raise ArtifactError(
                f"아티팩트는 한 번만 기록할 수 있습니다: {artifact.name} (run={run_id})"
            )

        data = pack_directory(source_dir)
        self._write(object_key, data)
        logger.info("아티팩트 기록: %s -> %s/%s (%d bytes)", artifact.name, self.bucket_name, object_key, len(data))
        return ArtifactLocation(self.bucket_name, object_key)

    def get(self, run_id: str, artifact: Artifact, dest_dir: str, role: AccessRole) -> List[str]:
        """
        아티팩트를 dest_dir 에 풀고, 풀린 파일의 상대 경로 목록을 반환한다.
        """
        role.check(self, "read")
        self.key.check_decrypt(role)

        object_key = self.object_key(run_id, artifact)
        data = self._read(object_key)
        if data is None:
            raise ArtifactError(
                f"아티팩트가 없습니다: {artifact.name} (run={run_id}, key={object_key})"
            )
        names = unpack_to_directory(data, dest_dir)
        logger.debug("아티팩트 조회: %s -> %s (%d files)", artifact.name, dest_dir, len(names))
        return names

    def ensure_bucket(self, location: Optional[str] = None) -> None:
        raise NotImplementedError

    def check(self) -> str:
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    """
    로컬 디렉토리 <root_dir>/<bucket_name>/ 아래에 객체를 파일로 저장한다.
    """

    def __init__(self, root_dir: str, bucket_name: str, pipeline_name: str, key: EncryptionKey) -> None:
        super().__init__(bucket_name, pipeline_name, key)
        self.root_dir = root_dir

    def _path(self, object_key: str) -> str:
        return os.path.join(self.root_dir, self.bucket_name, *object_key.split("/"))

    def _exists(self, object_key: str) -> bool:
        return os.path.exists(self._path(object_key))

    def _write(self, object_key: str, data: bytes) -> None:
        path = self._path(object_key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        # 중간에 실패해도 반쯤 쓴 파일이 남지 않도록 임시 파일에 쓰고 rename 한다
        fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read(self, object_key: str) -> Optional[bytes]:
        path = self._path(object_key)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def ensure_bucket(self, location: Optional[str] = None) -> None:  # noqa: ARG002
        path = os.path.join(self.root_dir, self.bucket_name)
        os.makedirs(path, exist_ok=True)
        logger.info("로컬 아티팩트 디렉토리를 준비했습니다: %s", path)

    def check(self) -> str:
        path = os.path.join(self.root_dir, self.bucket_name)
        if os.path.isdir(path):
            return f"Artifact store: 로컬 디렉토리 존재함 ({path})"
        return f"Artifact store: 로컬 디렉토리 없음 (첫 실행 시 생성됨) ({path})"


class GcsArtifactStore(ArtifactStore):
    """
    GCS 버킷을 아티팩트 저장소로 사용한다.
    key.key_name 이 있으면 객체를 해당 Cloud KMS 키로 암호화한다.
    """

    def __init__(
        self,
        project_id: str,
        bucket_name: str,
        pipeline_name: str,
        key: EncryptionKey,
        client: Optional[storage.Client] = None,
    ) -> None:
        super().__init__(bucket_name, pipeline_name, key)
        self.project_id = project_id
        self._client = client

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client(project=self.project_id)
        return self._client

    def _bucket(self) -> storage.Bucket:
        return self.client.bucket(self.bucket_name)

    def ensure_bucket(self, location: Optional[str] = None) -> None:
        bucket = self._bucket()
        if bucket.exists():
            logger.info("기존 GCS 버킷을 사용합니다: %s", self.bucket_name)
            return

        if location:
            bucket.location = location
        if self.key.key_name:
            bucket.default_kms_key_name = self.key.key_name
        self.client.create_bucket(bucket)
        logger.info("GCS 버킷을 생성했습니다: %s", self.bucket_name)

    def _exists(self, object_key: str) -> bool:
        return self._bucket().blob(object_key).exists()

    def _write(self, object_key: str, data: bytes) -> None:
        blob = self._bucket().blob(object_key, kms_key_name=self.key.key_name)
        # 동시에 같은 키를 쓰는 경우에도 덮어쓰지 않도록 generation 조건을 건다
        blob.upload_from_string(data, content_type="application/zip", if_generation_match=0)

    def _read(self, object_key: str) -> Optional[bytes]:
        blob = self._bucket().blob(object_key)
        if not blob.exists():
            return None
        return blob.download_as_bytes()

    def check(self) -> str:
        if self._bucket().exists():
            return f"Artifact store: 버킷 존재함 ({self.bucket_name})"
        return f"Artifact store: 버킷 없음 (생성이 필요함) ({self.bucket_name})"
