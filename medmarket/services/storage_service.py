import mimetypes
import os
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional
import logging

import boto3
from fastapi import UploadFile
from jose import ExpiredSignatureError
from sqlalchemy.orm import Session

from medmarket.core.config import settings
from medmarket.core.constants import STORAGE_BUCKETS
from medmarket.core.security import create_storage_token, decode_storage_token
from medmarket.models.base import row_to_dict
from medmarket.models.clinic import Clinic, ClinicMedia
from medmarket.models.medical import MedicalRecord
from medmarket.services.table_registry import Caller
from medmarket.utils.errors import ForbiddenError, GoneError, NotFoundError, PayloadTooLargeError, Unauthorized

logger = logging.getLogger(__name__)

PUBLIC_BUCKETS = ("clinic-media", "avatars")


def _get_s3_client():
    return boto3.client(
        "s3",
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        region_name=settings.AWS_REGION,
    )


def _check_bucket(bucket: str):
    if bucket not in STORAGE_BUCKETS:
        raise NotFoundError("Bucket not found")


def _local_path(bucket: str, path: str) -> Path:
    root = (Path(settings.UPLOAD_DIR) / bucket).resolve()
    target = (root / path).resolve()
    if root not in target.parents:
        raise NotFoundError("Object not found")
    return target


def object_name(filename: Optional[str], folder: Optional[str] = None) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    name = f"{uuid.uuid4().hex}{ext}"
    return f"{folder.strip('/')}/{name}" if folder else name


class StorageService:
    """
    Bucketed object storage on the local filesystem or S3.
    Private objects are handed out through expiring signed URLs.
    """

    @staticmethod
    def put_bytes(bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        _check_bucket(bucket)
        if settings.STORAGE_BACKEND == "s3":
            extra = {"ContentType": content_type} if content_type else {}
            _get_s3_client().put_object(
                Bucket=settings.AWS_S3_BUCKET, Key=f"{bucket}/{path}", Body=data, **extra,
            )
        else:
            target = _local_path(bucket, path)
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as f:
                f.write(data)
        logger.info(f"Stored {len(data)} bytes at {bucket}/{path}")
        return path

    @staticmethod
    async def upload(bucket: str, file: UploadFile, folder: Optional[str] = None) -> Dict[str, Any]:
        _check_bucket(bucket)
        limit = settings.MAX_UPLOAD_MB * 1024 * 1024
        contents = await file.read(limit + 1)
        await file.close()
        if len(contents) > limit:
            raise PayloadTooLargeError(f"File exceeds the {settings.MAX_UPLOAD_MB} MB upload limit")
        if not contents:
            raise ValueError("Uploaded file is empty")

        content_type = file.content_type or mimetypes.guess_type(file.filename or "")[0]
        path = StorageService.put_bytes(bucket, object_name(file.filename, folder), contents, content_type)
        return {
            "bucket": bucket,
            "path": path,
            "size": len(contents),
            "content_type": content_type,
            "url": StorageService.object_url(bucket, path),
        }

    @staticmethod
    def object_url(bucket: str, path: str) -> str:
        """Stable URL for public buckets, a short-lived signed URL otherwise."""
        if bucket in PUBLIC_BUCKETS:
            if settings.STORAGE_BACKEND == "s3":
                return f"https://{settings.AWS_S3_BUCKET}.s3.{settings.AWS_REGION}.amazonaws.com/{bucket}/{path}"
            return f"{settings.PUBLIC_BASE_URL}/storage/public/{bucket}/{path}"
        return StorageService.signed_url(bucket, path, timedelta(hours=1))

    @staticmethod
    def signed_url(bucket: str, path: str, expires_in: timedelta) -> str:
        _check_bucket(bucket)
        if settings.STORAGE_BACKEND == "s3":
            return _get_s3_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": settings.AWS_S3_BUCKET, "Key": f"{bucket}/{path}"},
                ExpiresIn=int(expires_in.total_seconds()),
            )
        token = create_storage_token(bucket, path, expires_in)
        return f"{settings.PUBLIC_BASE_URL}/storage/signed/{token}"

    @staticmethod
    def resolve_signed(token: str) -> Path:
        try:
            claims = decode_storage_token(token)
        except ExpiredSignatureError:
            raise GoneError("Signed URL has expired")
        if not claims:
            raise Unauthorized("Invalid signed URL")
        target = _local_path(claims["bucket"], claims["path"])
        if not target.is_file():
            raise NotFoundError("Object not found")
        return target

    @staticmethod
    def resolve_public(bucket: str, path: str) -> Path:
        if bucket not in PUBLIC_BUCKETS:
            raise NotFoundError("Object not found")
        target = _local_path(bucket, path)
        if not target.is_file():
            raise NotFoundError("Object not found")
        return target

    @staticmethod
    def remove(bucket: str, path: str):
        if settings.STORAGE_BACKEND == "s3":
            _get_s3_client().delete_object(Bucket=settings.AWS_S3_BUCKET, Key=f"{bucket}/{path}")
        else:
            _local_path(bucket, path).unlink(missing_ok=True)
        logger.info(f"Removed {bucket}/{path}")

    # -------------------------------------------------------------------------
    # Upload bookkeeping
    # -------------------------------------------------------------------------
    @staticmethod
    def authorize_upload(
        db: Session,
        caller: Caller,
        bucket: str,
        clinic_id: Optional[int] = None,
        patient_id: Optional[int] = None,
    ):
        """Reject an upload before anything is written."""
        _check_bucket(bucket)
        if bucket == "clinic-media":
            if not clinic_id:
                raise ValueError("clinic_id is required for clinic media")
            clinic = db.query(Clinic).filter(Clinic.id == clinic_id).first()
            if not clinic:
                raise NotFoundError("Clinic not found")
            if not caller.is_admin and clinic.owner_id != caller.user_id:
                raise ForbiddenError("You do not manage this clinic")
        elif bucket == "medical-records":
            owner = patient_id or caller.user_id
            if owner != caller.user_id and caller.user_type not in ("specialist", "admin"):
                raise ForbiddenError("You cannot upload records for another patient")

    @staticmethod
    async def store_upload(
        db: Session,
        caller: Caller,
        bucket: str,
        file: UploadFile,
        folder: Optional[str] = None,
        clinic_id: Optional[int] = None,
        patient_id: Optional[int] = None,
        title: Optional[str] = None,
        caption: Optional[str] = None,
        record_type: str = "document",
    ) -> Dict[str, Any]:
        """Authorize, store, then create the row that points at the object."""
        StorageService.authorize_upload(db, caller, bucket, clinic_id=clinic_id, patient_id=patient_id)
        stored = await StorageService.upload(bucket, file, folder=folder)
        try:
            record = StorageService.record_upload(
                db, caller, stored,
                clinic_id=clinic_id, patient_id=patient_id,
                title=title, caption=caption, record_type=record_type,
            )
        except Exception:
            db.rollback()
            StorageService.remove(bucket, stored["path"])
            raise
        return {**stored, "record": record}

    @staticmethod
    def record_upload(
        db: Session,
        caller: Caller,
        stored: Dict[str, Any],
        clinic_id: Optional[int] = None,
        patient_id: Optional[int] = None,
        title: Optional[str] = None,
        caption: Optional[str] = None,
        record_type: str = "document",
    ) -> Optional[Dict[str, Any]]:
        """Create the row for buckets that have one. Callers authorize first."""
        bucket = stored["bucket"]

        if bucket == "clinic-media":
            media_type = "video" if (stored.get("content_type") or "").startswith("video/") else "photo"
            row = ClinicMedia(
                clinic_id=clinic_id,
                url=stored["url"],
                media_type=media_type,
                caption=caption,
                uploaded_by=caller.user_id,
            )

        elif bucket == "medical-records":
            row = MedicalRecord(
                patient_id=patient_id or caller.user_id,
                specialist_id=caller.specialist_id,
                record_type=record_type,
                title=title or "Uploaded document",
                # the object path, signed on demand
                file_url=f"medical-records/{stored['path']}",
                content_type=stored.get("content_type"),
            )

        else:
            return None

        db.add(row)
        db.commit()
        db.refresh(row)
        return row_to_dict(row)
