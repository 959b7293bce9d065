import json
import mimetypes
import os
import re
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote, unquote

from chunkstream.config import Settings
from chunkstream.errors import BlobNotFound, InvalidArgument

ByteRange = tuple[int, int]

DEFAULT_PIECE_BYTES = 64 * 1024
MIN_S3_PART_SIZE = 5 * 1024 * 1024
_HANDLE_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_handle() -> str:
    return uuid.uuid4().hex


def is_valid_handle(handle: str) -> bool:
    return bool(_HANDLE_PATTERN.match(handle or ""))


@dataclass(frozen=True)
class BlobStat:
    total_size: int | None
    content_type: str | None
    name: str
    metadata: dict = field(default_factory=dict)


class BlobWriter:
    """Sequential append-only handle. Nothing is addressable until ``commit``."""

    handle: str

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def commit(self) -> str:
        raise NotImplementedError

    def abort(self) -> None:
        raise NotImplementedError


class BlobStore:
    def open_writer(self, name: str, content_type: str | None, metadata: dict) -> BlobWriter:
        raise NotImplementedError

    def open_reader(self, handle: str, byte_range: ByteRange | None = None) -> Iterator[bytes]:
        raise NotImplementedError

    def stat(self, handle: str) -> BlobStat:
        raise NotImplementedError

    def delete(self, handle: str) -> None:
        raise NotImplementedError


def _read_file_range(path: Path, byte_range: ByteRange | None, piece_size: int) -> Iterator[bytes]:
    start = byte_range[0] if byte_range else 0
    remaining = byte_range[1] - byte_range[0] + 1 if byte_range else None
    with open(path, "rb") as fh:
        fh.seek(start)
        while remaining is None or remaining > 0:
            size = piece_size if remaining is None else min(piece_size, remaining)
            data = fh.read(size)
            if not data:
                break
            if remaining is not None:
                remaining -= len(data)
            yield data


class LocalBlobWriter(BlobWriter):
    def __init__(self, store: "LocalBlobStore", handle: str, sidecar: dict) -> None:
        self.handle = handle
        self._store = store
        self._sidecar = sidecar
        self._tmp_path = store.incoming_dir / f"{handle}.part"
        self._fh = open(self._tmp_path, "wb")
        self._done = False

    def write(self, data: bytes) -> None:
        self._fh.write(data)

    def commit(self) -> str:
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self._fh.close()
        data_path = self._store.data_path(self.handle)
        data_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(self._tmp_path, data_path)
        meta_tmp = self._store.incoming_dir / f"{self.handle}.json.part"
        meta_tmp.write_text(json.dumps(self._sidecar, sort_keys=True), encoding="utf-8")
        os.replace(meta_tmp, self._store.meta_path(self.handle))
        self._done = True
        return self.handle

    def abort(self) -> None:
        if self._done:
            return
        self._fh.close()
        self._tmp_path.unlink(missing_ok=True)
        self._done = True


class LocalBlobStore(BlobStore):
    def __init__(self, root: str | Path, piece_size: int = DEFAULT_PIECE_BYTES) -> None:
        self.root = Path(root)
        self.piece_size = piece_size
        self.incoming_dir = self.root / ".incoming"
        self.incoming_dir.mkdir(parents=True, exist_ok=True)

    def data_path(self, handle: str) -> Path:
        return self.root / handle[:2] / handle

    def meta_path(self, handle: str) -> Path:
        return self.root / handle[:2] / f"{handle}.json"

    def open_writer(self, name: str, content_type: str | None, metadata: dict) -> BlobWriter:
        sidecar = {"name": name, "content_type": content_type, "metadata": metadata}
        return LocalBlobWriter(self, new_handle(), sidecar)

    def open_reader(self, handle: str, byte_range: ByteRange | None = None) -> Iterator[bytes]:
        if not self.meta_path(handle).is_file():
            raise BlobNotFound("blob not found", blob_handle=handle)
        return _read_file_range(self.data_path(handle), byte_range, self.piece_size)

    def stat(self, handle: str) -> BlobStat:
        try:
            sidecar = json.loads(self.meta_path(handle).read_text(encoding="utf-8"))
            total_size = self.data_path(handle).stat().st_size
        except FileNotFoundError as exc:
            raise BlobNotFound("blob not found", blob_handle=handle) from exc
        return BlobStat(
            total_size=total_size,
            content_type=sidecar.get("content_type"),
            name=sidecar.get("name") or handle,
            metadata=sidecar.get("metadata") or {},
        )

    def delete(self, handle: str) -> None:
        self.meta_path(handle).unlink(missing_ok=True)
        self.data_path(handle).unlink(missing_ok=True)


def _is_missing_object(exc: Exception) -> bool:
    response = getattr(exc, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class S3BlobWriter(BlobWriter):
    def __init__(
        self,
        client,
        bucket: str,
        key: str,
        handle: str,
        content_type: str | None,
        metadata: dict[str, str],
        part_size: int,
    ) -> None:
        self.handle = handle
        self.client = client
        self.bucket = bucket
        self.key = key
        self.part_size = part_size
        params = {"Bucket": bucket, "Key": key, "Metadata": metadata}
        if content_type:
            params["ContentType"] = content_type
        result = client.create_multipart_upload(**params)
        self.multipart_upload_id = result["UploadId"]
        self._buffer = bytearray()
        self._parts: list[dict] = []

    def _upload_part(self, data: bytes) -> None:
        part_number = len(self._parts) + 1
        result = self.client.upload_part(
            Bucket=self.bucket,
            Key=self.key,
            PartNumber=part_number,
            UploadId=self.multipart_upload_id,
            Body=data,
        )
        self._parts.append({"PartNumber": part_number, "ETag": result.get("ETag")})

    def write(self, data: bytes) -> None:
        self._buffer.extend(data)
        while len(self._buffer) >= self.part_size:
            self._upload_part(bytes(self._buffer[: self.part_size]))
            del self._buffer[: self.part_size]

    def commit(self) -> str:
        if self._buffer or not self._parts:
            self._upload_part(bytes(self._buffer))
            self._buffer.clear()
        self.client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.multipart_upload_id,
            MultipartUpload={"Parts": self._parts},
        )
        return self.handle

    def abort(self) -> None:
        self._buffer.clear()
        self.client.abort_multipart_upload(Bucket=self.bucket, Key=self.key, UploadId=self.multipart_upload_id)


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        region: str,
        prefix: str = "blobs/",
        part_size: int = MIN_S3_PART_SIZE,
        piece_size: int = DEFAULT_PIECE_BYTES,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.prefix = prefix
        self.part_size = max(MIN_S3_PART_SIZE, part_size)
        self.piece_size = piece_size
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def object_key(self, handle: str) -> str:
        return f"{self.prefix}{handle}"

    def open_writer(self, name: str, content_type: str | None, metadata: dict) -> BlobWriter:
        encoded = {key: quote(str(value), safe="") for key, value in metadata.items() if value is not None}
        encoded["name"] = quote(name, safe="")
        handle = new_handle()
        return S3BlobWriter(
            self.client,
            self.bucket,
            self.object_key(handle),
            handle,
            content_type,
            encoded,
            self.part_size,
        )

    def open_reader(self, handle: str, byte_range: ByteRange | None = None) -> Iterator[bytes]:
        params = {"Bucket": self.bucket, "Key": self.object_key(handle)}
        if byte_range:
            params["Range"] = f"bytes={byte_range[0]}-{byte_range[1]}"
        try:
            obj = self.client.get_object(**params)
        except Exception as exc:
            if _is_missing_object(exc):
                raise BlobNotFound("blob not found", blob_handle=handle) from exc
            raise
        return self._iter_body(obj["Body"])

    def _iter_body(self, body) -> Iterator[bytes]:
        try:
            while True:
                data = body.read(self.piece_size)
                if not data:
                    break
                yield data
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    def stat(self, handle: str) -> BlobStat:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=self.object_key(handle))
        except Exception as exc:
            if _is_missing_object(exc):
                raise BlobNotFound("blob not found", blob_handle=handle) from exc
            raise
        metadata = {key: unquote(value) for key, value in (head.get("Metadata") or {}).items()}
        return BlobStat(
            total_size=head.get("ContentLength"),
            content_type=head.get("ContentType"),
            name=metadata.pop("name", handle),
            metadata=metadata,
        )

    def delete(self, handle: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.object_key(handle))
        except Exception as exc:
            if not _is_missing_object(exc):
                raise


class LegacyFileStore(BlobStore):
    """Read-only access to media written by the pre-blob-store flat file layout."""

    def __init__(self, root: str | Path, piece_size: int = DEFAULT_PIECE_BYTES) -> None:
        self.root = Path(root)
        self.piece_size = piece_size

    def _path(self, handle: str) -> Path:
        root = self.root.resolve()
        path = (root / handle).resolve()
        if root not in path.parents:
            raise InvalidArgument("legacy path escapes media root", legacy_path=handle)
        return path

    def open_writer(self, name: str, content_type: str | None, metadata: dict) -> BlobWriter:
        raise NotImplementedError("legacy media store is read-only")

    def open_reader(self, handle: str, byte_range: ByteRange | None = None) -> Iterator[bytes]:
        path = self._path(handle)
        if not path.is_file():
            raise BlobNotFound("legacy media file not found", legacy_path=handle)
        return _read_file_range(path, byte_range, self.piece_size)

    def stat(self, handle: str) -> BlobStat:
        path = self._path(handle)
        try:
            total_size = path.stat().st_size
        except FileNotFoundError as exc:
            raise BlobNotFound("legacy media file not found", legacy_path=handle) from exc
        content_type, _ = mimetypes.guess_type(path.name)
        return BlobStat(total_size=total_size, content_type=content_type, name=path.name)

    def delete(self, handle: str) -> None:
        self._path(handle).unlink(missing_ok=True)


class BlobLocator:
    """Resolves a session to the store variant that holds its bytes."""

    def __init__(self, primary: BlobStore, legacy: BlobStore | None = None) -> None:
        self.primary = primary
        self.legacy = legacy

    def locate(self, session) -> tuple[BlobStore, str] | None:
        if session.blob_handle:
            return self.primary, session.blob_handle
        if session.legacy_path and self.legacy is not None:
            return self.legacy, session.legacy_path
        return None


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.blob_backend.lower()
    if backend == "local":
        return LocalBlobStore(Path(settings.storage_root) / settings.blob_dir, piece_size=settings.stream_piece_bytes)
    if backend == "s3":
        return S3BlobStore(
            settings.s3_bucket,
            settings.aws_region,
            prefix=settings.s3_prefix,
            part_size=settings.s3_part_size_bytes,
            piece_size=settings.stream_piece_bytes,
        )
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when blob_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when blob_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3BlobStore(
            bucket=settings.r2_bucket,
            region="auto",
            prefix=settings.s3_prefix,
            part_size=settings.s3_part_size_bytes,
            piece_size=settings.stream_piece_bytes,
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported blob backend: {settings.blob_backend}")


def build_legacy_store(settings: Settings) -> LegacyFileStore:
    return LegacyFileStore(Path(settings.storage_root) / settings.legacy_media_dir, piece_size=settings.stream_piece_bytes)
